"""Map job lifecycle exceptions to HTTP responses."""

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from app.jobs.errors import (
    BlobStoreError,
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    RemoteJobError,
    TargetBusyError,
)
from app.jobs.models import ErrorKind, JobRecord
from app.storage.images import InvalidImageError

_STATUS_CODES = (
    (JobValidationError, 400),
    (InvalidImageError, 400),
    (JobNotFoundError, 404),
    (TargetBusyError, 409),
    (InvalidTransitionError, 409),
    (RemoteJobError, 502),
    (BlobStoreError, 502),
)


def register_exception_handlers(app: FastAPI) -> None:
    for exc_type, status_code in _STATUS_CODES:
        app.add_exception_handler(exc_type, _handler(status_code))


def _handler(status_code: int):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        content = {"detail": str(exc)}
        if isinstance(exc, TargetBusyError) and exc.active_job_id:
            content["active_job_id"] = exc.active_job_id
        return JSONResponse(status_code=status_code, content=content)
    return handle


def raise_if_start_failed(job: JobRecord) -> None:
    """A job that failed while uploading or starting is reported as a bad gateway."""
    if job.error_kind in (ErrorKind.UPLOAD, ErrorKind.REMOTE_START):
        raise HTTPException(
            status_code=502,
            detail={
                "message": job.error,
                "job_id": job.id,
                "error_kind": job.error_kind.value,
            },
        )
