# control_plane/jobqueue/base.py
"""Job queue contract shared by the database and Redis backends."""

import json
import logging
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.errors import JobTimeoutError
from control_plane.core.events import NullEventEmitter
from control_plane.core.events_model import ControlPlaneEvent
from control_plane.core.models import QueuedJob

logger = logging.getLogger(__name__)

UNKNOWN_JOB = "Unknown Job"


# ============================================
# Job types
# ============================================

@dataclass(frozen=True)
class JobOptions:
    """Attempt budget and execution limits carried by each job type."""

    max_tries: int = 1
    timeout: int = 60
    backoff: Tuple[int, ...] = ()

    def backoff_for(self, attempts: int) -> int:
        """Delay (seconds) before the next attempt after `attempts` tries."""
        if not self.backoff:
            return 0
        index = min(max(attempts - 1, 0), len(self.backoff) - 1)
        return self.backoff[index]


@dataclass(frozen=True)
class JobType:
    name: str
    options: JobOptions


def build_payload(job_type: JobType, data: Dict[str, Any], pushed_at: datetime) -> Dict[str, Any]:
    """Payload envelope stored by every backend."""
    return {
        "uuid": str(uuid4()),
        "displayName": job_type.name,
        "job": job_type.name,
        "maxTries": job_type.options.max_tries,
        "timeout": job_type.options.timeout,
        "backoff": list(job_type.options.backoff),
        "attempts": 0,
        "data": data,
        "pushedAt": to_timestamp(pushed_at),
    }


def options_from_payload(payload: Dict[str, Any]) -> JobOptions:
    return JobOptions(
        max_tries=int(payload.get("maxTries") or 1),
        timeout=int(payload.get("timeout") or 60),
        backoff=tuple(payload.get("backoff") or ()),
    )


# ============================================
# Helpers
# ============================================

def to_timestamp(moment: datetime) -> float:
    """Naive UTC datetime -> epoch seconds."""
    return moment.replace(tzinfo=timezone.utc).timestamp()


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _basename(name: str) -> str:
    return name.replace("\\", ".").rsplit(".", 1)[-1]


def job_display_name(payload: Union[str, Dict[str, Any], None]) -> str:
    """Best-effort human name for a payload. Never raises."""
    try:
        data = json.loads(payload) if isinstance(payload, str) else payload
        if not isinstance(data, dict):
            return UNKNOWN_JOB

        if data.get("displayName"):
            return str(data["displayName"])

        inner = data.get("data")
        if isinstance(inner, dict) and inner.get("commandName"):
            return _basename(str(inner["commandName"]))

        if data.get("job"):
            return _basename(str(data["job"]))

        return UNKNOWN_JOB
    except Exception:
        return UNKNOWN_JOB


def format_exception(exc: BaseException) -> str:
    """Exception text with trace, as stored in the failed store."""
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return trace or f"{type(exc).__name__}: {exc}"


# ============================================
# Queue contract
# ============================================

class JobQueue(ABC):
    """
    Pending-job store.

    Both backends must behave identically from the caller's perspective:
    enqueue appends with attempts=0, lease is atomic across workers,
    fail either re-queues with backoff or moves the job to the failed store.
    """

    connection_name = "abstract"

    def __init__(self, failed_store, clock: Optional[Clock] = None, event_emitters=None):
        self._failed = failed_store
        self._clock = clock or SystemClock()
        self._emitters = event_emitters or NullEventEmitter()

    @property
    def failed_store(self):
        return self._failed

    # -------------------------
    # ENQUEUE
    # -------------------------

    def enqueue(
        self,
        queue: str,
        job_type: JobType,
        data: Dict[str, Any],
        delay: int = 0,
    ) -> Union[int, str]:
        """Append a job; returns the backend's job id."""
        payload = build_payload(job_type, data, self._clock.now())
        job_id = self.push_payload(queue, payload, delay=delay)
        logger.info(f"[queue] Enqueued {job_type.name} on '{queue}' -> {job_id}")
        return job_id

    @abstractmethod
    def push_payload(self, queue: str, payload: Dict[str, Any], delay: int = 0) -> Union[int, str]:
        """Insert a raw envelope with attempts reset to 0."""
        raise NotImplementedError

    # -------------------------
    # LEASE / ACK
    # -------------------------

    @abstractmethod
    def lease(self, queue: str) -> Optional[QueuedJob]:
        """
        Pop the earliest available job and reserve it for its timeout.
        Increments attempts. Returns None when nothing is available.
        """
        raise NotImplementedError

    # A lease is identified by the job id plus the attempt number it handed
    # out. ack and release only act while that exact reservation is still in
    # the store, so exactly one caller settles each lease.

    @abstractmethod
    def ack(self, job: QueuedJob) -> bool:
        """Remove a job permanently. False if the lease was already settled."""
        raise NotImplementedError

    @abstractmethod
    def release(self, job: QueuedJob, delay: int = 0) -> bool:
        """Return a reserved job to the pending list after `delay` seconds. False if the lease was lost."""
        raise NotImplementedError

    # -------------------------
    # FAIL
    # -------------------------

    def fail(self, job: QueuedJob, exc: BaseException) -> Optional[bool]:
        """
        Record a failed attempt.

        Returns True when the job was re-queued, False when it was moved
        to the failed store, None when the lease had already been settled
        by someone else (nothing is recorded twice).
        """
        options = options_from_payload(job.payload)

        if job.attempts < options.max_tries:
            delay = options.backoff_for(job.attempts)
            if not self.release(job, delay=delay):
                self._lease_lost(job, exc)
                return None

            logger.warning(
                f"[queue] {job.display_name} ({job.id}) failed attempt "
                f"{job.attempts}/{options.max_tries}, retrying in {delay}s: {exc}"
            )
            return True

        # Claim the reservation first; only the claimant writes the failed record
        if not self.ack(job):
            self._lease_lost(job, exc)
            return None

        try:
            failed = self._failed.record(
                connection=self.connection_name,
                queue=job.queue,
                payload=job.payload,
                exception=format_exception(exc),
            )
        except Exception:
            logger.error(
                f"[queue] Could not record failed job {job.id}, payload: {json.dumps(job.payload)}",
                exc_info=True,
            )
            raise

        logger.error(
            f"[queue] ❌ {job.display_name} ({job.id}) moved to failed store as {failed.uuid}: {exc}"
        )
        self._emitters.emit([ControlPlaneEvent.job_failed(job, str(exc))])
        return False

    def _lease_lost(self, job: QueuedJob, exc: BaseException) -> None:
        logger.warning(
            f"[queue] {job.display_name} ({job.id}) attempt {job.attempts} was already settled "
            f"elsewhere, ignoring failure: {exc}"
        )

    # -------------------------
    # ABANDONED LEASES
    # -------------------------

    @abstractmethod
    def list_expired(self, queue: str) -> List[QueuedJob]:
        """Reserved jobs whose reservation deadline has passed."""
        raise NotImplementedError

    def release_expired(self, queue: str) -> int:
        """Fail every abandoned reservation; returns how many this call settled."""
        handled = 0
        for job in self.list_expired(queue):
            try:
                outcome = self.fail(job, JobTimeoutError(
                    f"{job.display_name} exceeded its {job.timeout}s budget"
                ))
                if outcome is not None:
                    handled += 1
            except Exception as e:
                logger.error(f"[queue] Failed to release expired job {job.id}: {e}", exc_info=True)
        return handled

    # -------------------------
    # INSPECTION
    # -------------------------

    @abstractmethod
    def list_pending(self, limit: int = 50) -> List[QueuedJob]:
        raise NotImplementedError

    @abstractmethod
    def get_job(self, job_id: Union[int, str]) -> Optional[QueuedJob]:
        raise NotImplementedError

    @abstractmethod
    def delete_job(self, job_id: Union[int, str]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def pending_counts(self) -> Dict[str, int]:
        """Pending job count per queue name."""
        raise NotImplementedError
