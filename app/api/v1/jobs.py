"""Job API: stored status, explicit status checks, cancellation."""

from typing import Optional

from fastapi import APIRouter, HTTPException

from app.jobs.models import JobRecord, JobStatus

router = APIRouter()

# Set by main.py during lifespan
_service = None

# Result keys that hold the job's primary output, by kind
_RESULT_URL_KEYS = ("output_url", "garment_url", "lora_weights_url")


def set_service(service):
    global _service
    _service = service


def get_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Job service not initialized")
    return _service


def result_url(job: JobRecord) -> Optional[str]:
    if not job.result:
        return None
    for key in _RESULT_URL_KEYS:
        if job.result.get(key):
            return job.result[key]
    return None


def job_view(job: JobRecord) -> dict:
    return {
        "job_id": job.id,
        "kind": job.kind,
        "target_id": job.target_id,
        "external_id": job.external_id,
        "status": job.status.value,
        "progress": job.progress,
        "result_url": result_url(job),
        "result": job.result,
        "error": job.error,
        "error_kind": job.error_kind.value if job.error_kind else None,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.get("/jobs")
async def list_jobs(
    kind: Optional[str] = None,
    status: Optional[JobStatus] = None,
    target_id: Optional[str] = None,
):
    jobs = get_service().list(kind=kind, status=status, target_id=target_id)
    return {"jobs": [job_view(j) for j in jobs], "count": len(jobs)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    """Stored status of a job. Never calls the provider and never writes."""
    return job_view(get_service().get(job_id))


@router.post("/jobs/{job_id}/check")
async def check_job(job_id: str):
    """Poll the provider once and persist any change. Terminal jobs are returned as stored."""
    return job_view(await get_service().check(job_id))


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    return job_view(await get_service().cancel(job_id))


@router.post("/jobs/{job_id}/resume")
async def resume_job(job_id: str):
    """Re-attach a background poller to a running job, e.g. after a detached timeout."""
    service = get_service()
    resumed = await service.resume(job_id)
    return {**job_view(service.get(job_id)), "resumed": resumed}
