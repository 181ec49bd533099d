# control_plane/jobqueue/service.py
"""Queue management surface used by the API and the dashboard."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.models import FailedJob, QueuedJob
from control_plane.jobqueue.base import JobQueue

logger = logging.getLogger(__name__)


class QueueService:
    """
    Inspect and repair the job queue.

    Read operations never raise on storage trouble: they log and return
    empty defaults so the dashboard keeps rendering.
    """

    def __init__(self, queue: JobQueue, failed_store=None, clock: Optional[Clock] = None):
        self._queue = queue
        self._failed = failed_store or queue.failed_store
        self._clock = clock or SystemClock()

    # -------------------------
    # PENDING
    # -------------------------

    def pending_jobs(self, limit: int = 50) -> List[QueuedJob]:
        try:
            return self._queue.list_pending(limit)
        except Exception as e:
            logger.error(f"[queue-service] Failed to list pending jobs: {e}")
            return []

    def job_details(self, job_id: Union[int, str]) -> Optional[QueuedJob]:
        try:
            return self._queue.get_job(job_id)
        except Exception as e:
            logger.error(f"[queue-service] Failed to load job {job_id}: {e}")
            return None

    def delete_job(self, job_id: Union[int, str]) -> bool:
        try:
            deleted = self._queue.delete_job(job_id)
        except Exception as e:
            logger.error(f"[queue-service] Failed to delete job {job_id}: {e}")
            return False

        if deleted:
            logger.info(f"[queue-service] Deleted pending job {job_id}")
        return deleted

    # -------------------------
    # FAILED
    # -------------------------

    def failed_jobs(self, limit: int = 50) -> List[FailedJob]:
        try:
            return self._failed.list(limit)
        except Exception as e:
            logger.error(f"[queue-service] Failed to list failed jobs: {e}")
            return []

    def failed_job_details(self, failed_uuid: str) -> Optional[FailedJob]:
        try:
            return self._failed.get(failed_uuid)
        except Exception as e:
            logger.error(f"[queue-service] Failed to load failed job {failed_uuid}: {e}")
            return None

    def delete_failed_job(self, failed_uuid: str) -> bool:
        try:
            return self._failed.delete(failed_uuid)
        except Exception as e:
            logger.error(f"[queue-service] Failed to delete failed job {failed_uuid}: {e}")
            return False

    def retry(self, failed_uuid: str) -> bool:
        """
        Move a failed job back to its queue with attempts reset to 0.

        The failed record is claimed first, so concurrent or repeated calls
        for the same uuid enqueue at most once. If the push fails the record
        is restored.
        """
        try:
            failed = self._failed.claim(failed_uuid)
        except Exception as e:
            logger.error(f"[queue-service] Failed to claim failed job {failed_uuid}: {e}")
            return False

        if failed is None:
            logger.warning(f"[queue-service] Failed job {failed_uuid} not found")
            return False

        try:
            job_id = self._queue.push_payload(failed.queue, failed.payload)
        except Exception as e:
            logger.error(f"[queue-service] Retry of {failed_uuid} could not be enqueued: {e}")
            try:
                self._failed.restore(failed)
            except Exception as restore_error:
                logger.error(
                    f"[queue-service] Could not restore failed job {failed_uuid}: {restore_error}",
                    exc_info=True,
                )
            return False

        logger.info(f"[queue-service] 🔄 Retried {failed.display_name} ({failed_uuid}) -> job {job_id}")
        return True

    def retry_all(self) -> int:
        """Retry every failed job; returns how many were re-queued."""
        try:
            uuids = self._failed.uuids()
        except Exception as e:
            logger.error(f"[queue-service] Failed to list failed jobs: {e}")
            return 0

        retried = 0
        for failed_uuid in uuids:
            try:
                if self.retry(failed_uuid):
                    retried += 1
            except Exception as e:
                logger.error(f"[queue-service] Retry of {failed_uuid} raised: {e}", exc_info=True)

        logger.info(f"[queue-service] Retried {retried}/{len(uuids)} failed jobs")
        return retried

    def clear_failed(self) -> int:
        try:
            cleared = self._failed.clear()
        except Exception as e:
            logger.error(f"[queue-service] Failed to clear failed jobs: {e}")
            return 0

        logger.info(f"[queue-service] Cleared {cleared} failed jobs")
        return cleared

    # -------------------------
    # STATISTICS
    # -------------------------

    def statistics(self) -> Dict[str, Any]:
        try:
            by_queue = self._queue.pending_counts()
            since = self._clock.now() - timedelta(hours=24)

            return {
                "pending_jobs": sum(by_queue.values()),
                "failed_jobs": self._failed.count(),
                "recent_failed": self._failed.count_since(since),
                "jobs_by_queue": by_queue,
            }
        except Exception as e:
            logger.error(f"[queue-service] Failed to compute statistics: {e}")
            return {
                "pending_jobs": 0,
                "failed_jobs": 0,
                "recent_failed": 0,
                "jobs_by_queue": {},
            }
