"""Fashion Studio Jobs Service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.logging_config import setup_logging
from app.api.v1.router import v1_router
from app.api.v1.errors import register_exception_handlers
from app.api.v1 import health as health_api
from app.api.v1 import jobs as jobs_api
from app.api.v1 import upload as upload_api
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.poller import StatusPoller
from app.jobs.reactor import CompletionReactor
from app.jobs.service import JobService
from app.jobs.store import InMemoryJobStore, JobStore
from app.kinds.base import JobContext
from app.kinds.registry import KindRegistry, registry
from app.providers.replicate_client import RemoteJobClient, build_remote_client
from app.storage.blob_store import BlobStore, InMemoryBlobStore

logger = logging.getLogger(__name__)


def build_stores():
    """Job store and blob store for the configured backend."""
    if settings.job_store == "supabase":
        from app.db.supabase_client import ensure_buckets, get_supabase
        from app.jobs.supabase_store import SupabaseJobStore
        from app.storage.blob_store import SupabaseBlobStore

        client = get_supabase()
        ensure_buckets(client, (settings.products_bucket, settings.models_bucket))
        return SupabaseJobStore(client), SupabaseBlobStore(client, timeout=settings.http_timeout_seconds)
    if settings.job_store != "memory":
        raise RuntimeError(f"Unknown JOB_STORE {settings.job_store!r}; use 'memory' or 'supabase'")
    return InMemoryJobStore(), InMemoryBlobStore(timeout=settings.http_timeout_seconds)


def build_job_service(
    store: JobStore,
    blobs: BlobStore,
    client: RemoteJobClient,
    kinds: KindRegistry = registry,
    **poller_options,
) -> JobService:
    """Wire store, provider client, kinds, reactor and poller into a JobService.

    ``poller_options`` override the settings-derived StatusPoller arguments
    (tests pass a fake ``sleep`` and ``clock``).
    """
    ctx = JobContext(store=store, blobs=blobs)
    reactor = CompletionReactor(ctx)
    options = {
        "max_wait": settings.max_wait_seconds,
        "max_consecutive_errors": settings.max_consecutive_poll_errors,
        "timeout_policy": settings.timeout_policy,
        **poller_options,
    }
    poller = StatusPoller(store, client, reactor, kinds, **options)
    return JobService(ctx, client, kinds, reactor, poller)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    setup_logging()
    logger.info("Starting Fashion Studio Jobs Service (store=%s, timeout_policy=%s)",
                settings.job_store, settings.timeout_policy)

    registry.discover()
    logger.info("Found %d job kind(s)", len(registry.list_kinds()))

    store, blobs = build_stores()
    client = build_remote_client()
    service = build_job_service(store, blobs, client)

    # Pollers run detached from the request that started the job
    dispatcher = InProcessQueue(
        runner=service.poller.poll_until_terminal,
        max_concurrent=settings.max_concurrent_pollers,
    )
    service.set_dispatcher(dispatcher)
    await dispatcher.start()

    # Wire service, blob store and dispatcher into API endpoints
    jobs_api.set_service(service)
    upload_api.set_blob_store(blobs)
    health_api.set_dispatcher(dispatcher)

    if settings.resume_active_jobs_on_startup:
        await service.resume_active()

    yield

    logger.info("Shutting down Fashion Studio Jobs Service")
    await dispatcher.stop()
    await client.aclose()


app = FastAPI(
    title="Fashion Studio Jobs Service",
    description="Async provider jobs for LoRA training, pose generation and garment extraction",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - allow the dashboard dev server and any configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, log_config=None)
