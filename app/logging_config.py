import logging
import logging.config

from app.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_logging_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,  # keep uvicorn/fastapi loggers
        "formatters": {
            "default": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
            },
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            "uvicorn.error": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": level, "handlers": ["console"], "propagate": False},
            "app": {"level": level, "handlers": ["console"], "propagate": False},
            # request lines from the provider client are noisy at INFO
            "httpx": {"level": "WARNING"},
        },
    }


def setup_logging(level: str = None) -> None:
    logging.config.dictConfig(build_logging_config((level or settings.log_level).upper()))
