"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Replicate
    replicate_api_token: Optional[str] = None
    replicate_api_base: str = "https://api.replicate.com/v1"
    replicate_username: str = "user"
    http_timeout_seconds: float = 30.0

    # Job store backend
    job_store: str = "memory"  # "memory" or "supabase"

    # Polling policy
    lora_poll_interval_seconds: float = 30.0
    prediction_poll_interval_seconds: float = 5.0
    max_wait_seconds: float = 30 * 60
    timeout_policy: str = "fail"  # "fail" or "detach"
    max_consecutive_poll_errors: int = 5
    max_concurrent_pollers: int = 8
    resume_active_jobs_on_startup: bool = True

    # Object storage
    models_bucket: str = "models"
    products_bucket: str = "products"
    max_upload_bytes: int = 50 * 1024 * 1024

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
