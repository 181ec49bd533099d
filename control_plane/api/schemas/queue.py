from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from control_plane.core.models import FailedJob, QueuedJob


class QueueStatisticsResponse(BaseModel):
    pending_jobs: int
    failed_jobs: int
    recent_failed: int
    jobs_by_queue: Dict[str, int]


class QueuedJobResponse(BaseModel):
    id: Union[int, str]
    queue: str
    display_name: str
    attempts: int
    reserved_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    payload: Dict[str, Any]

    @classmethod
    def from_domain(cls, job: QueuedJob) -> "QueuedJobResponse":
        return cls(
            id=job.id,
            queue=job.queue,
            display_name=job.display_name,
            attempts=job.attempts,
            reserved_at=job.reserved_at,
            available_at=job.available_at,
            created_at=job.created_at,
            payload=job.payload,
        )


class FailedJobResponse(BaseModel):
    uuid: str
    connection: str
    queue: str
    display_name: str
    failed_at: datetime
    exception: str
    payload: Dict[str, Any]

    @classmethod
    def from_domain(cls, failed: FailedJob) -> "FailedJobResponse":
        return cls(
            uuid=failed.uuid,
            connection=failed.connection,
            queue=failed.queue,
            display_name=failed.display_name,
            failed_at=failed.failed_at,
            exception=failed.exception,
            payload=failed.payload,
        )


class RetryResponse(BaseModel):
    retried: int


class ClearResponse(BaseModel):
    cleared: int
