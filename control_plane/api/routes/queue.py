from typing import List

from fastapi import APIRouter, Depends, HTTPException

from control_plane.api.dependencies import get_queue_service
from control_plane.api.schemas.queue import (
    ClearResponse,
    FailedJobResponse,
    QueuedJobResponse,
    QueueStatisticsResponse,
    RetryResponse,
)

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/statistics", response_model=QueueStatisticsResponse)
def statistics(service=Depends(get_queue_service)):
    return QueueStatisticsResponse(**service.statistics())


# -------------------------
# PENDING
# -------------------------

@router.get("/pending", response_model=List[QueuedJobResponse])
def pending_jobs(limit: int = 50, service=Depends(get_queue_service)):
    return [QueuedJobResponse.from_domain(job) for job in service.pending_jobs(limit)]


@router.get("/jobs/{job_id}", response_model=QueuedJobResponse)
def job_details(job_id: str, service=Depends(get_queue_service)):
    job = service.job_details(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return QueuedJobResponse.from_domain(job)


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, service=Depends(get_queue_service)):
    if not service.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"status": "deleted"}


# -------------------------
# FAILED
# -------------------------

@router.get("/failed", response_model=List[FailedJobResponse])
def failed_jobs(limit: int = 50, service=Depends(get_queue_service)):
    return [FailedJobResponse.from_domain(failed) for failed in service.failed_jobs(limit)]


@router.get("/failed/{failed_uuid}", response_model=FailedJobResponse)
def failed_job_details(failed_uuid: str, service=Depends(get_queue_service)):
    failed = service.failed_job_details(failed_uuid)
    if failed is None:
        raise HTTPException(status_code=404, detail="Failed job not found")
    return FailedJobResponse.from_domain(failed)


@router.post("/failed/retry-all", response_model=RetryResponse)
def retry_all(service=Depends(get_queue_service)):
    return RetryResponse(retried=service.retry_all())


@router.post("/failed/{failed_uuid}/retry")
def retry_failed_job(failed_uuid: str, service=Depends(get_queue_service)):
    if not service.retry(failed_uuid):
        raise HTTPException(status_code=404, detail="Failed job not found or could not be retried")
    return {"status": "queued"}


@router.delete("/failed/{failed_uuid}")
def delete_failed_job(failed_uuid: str, service=Depends(get_queue_service)):
    if not service.delete_failed_job(failed_uuid):
        raise HTTPException(status_code=404, detail="Failed job not found")
    return {"status": "deleted"}


@router.delete("/failed", response_model=ClearResponse)
def clear_failed(service=Depends(get_queue_service)):
    return ClearResponse(cleared=service.clear_failed())
