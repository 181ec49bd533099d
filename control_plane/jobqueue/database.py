# control_plane/jobqueue/database.py
"""Job queue backed by the SQL `jobs` table."""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from control_plane.core.clock import Clock
from control_plane.core.errors import PersistenceError
from control_plane.core.models import QueuedJob
from control_plane.infrastructure.sql.database import SessionLocal, session_scope
from control_plane.infrastructure.sql.models import JobORM
from control_plane.jobqueue.base import JobQueue, job_display_name

logger = logging.getLogger(__name__)

# Rows examined per lease attempt before giving up for this poll
LEASE_CANDIDATES = 5


def job_to_domain(orm: JobORM) -> QueuedJob:
    try:
        payload = json.loads(orm.payload)
    except (TypeError, ValueError):
        payload = {}

    return QueuedJob(
        id=orm.id,
        queue=orm.queue,
        payload=payload if isinstance(payload, dict) else {},
        attempts=orm.attempts,
        reserved_at=orm.reserved_at,
        available_at=orm.available_at,
        created_at=orm.created_at,
        display_name=job_display_name(orm.payload),
    )


class DatabaseJobQueue(JobQueue):
    """
    Ordered persistent list in the `jobs` table.

    Lease = SELECT candidates (SKIP LOCKED where supported) followed by a
    conditional UPDATE on reserved_at IS NULL. The UPDATE rowcount decides
    which worker owns the job, so the guarantee holds on every dialect.
    """

    connection_name = "database"

    def __init__(
        self,
        failed_store,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        event_emitters=None,
    ):
        super().__init__(failed_store, clock=clock, event_emitters=event_emitters)
        self._session_factory = session_factory or SessionLocal

    def _get_session(self):
        return self._session_factory()

    # -------------------------
    # ENQUEUE
    # -------------------------

    def push_payload(self, queue: str, payload: Dict[str, Any], delay: int = 0) -> int:
        now = self._clock.now()
        payload = dict(payload, attempts=0)

        try:
            with session_scope(self._session_factory) as session:
                orm = JobORM(
                    queue=queue,
                    payload=json.dumps(payload),
                    attempts=0,
                    available_at=now + timedelta(seconds=delay),
                    created_at=now,
                )
                session.add(orm)
                session.flush()
                return orm.id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to enqueue job on '{queue}': {e}") from e

    # -------------------------
    # LEASE
    # -------------------------

    def lease(self, queue: str) -> Optional[QueuedJob]:
        now = self._clock.now()
        session = self._get_session()
        try:
            candidates = session.query(JobORM).filter(
                JobORM.queue == queue,
                JobORM.reserved_at.is_(None),
                JobORM.available_at <= now,
            ).order_by(
                JobORM.available_at.asc(),
                JobORM.id.asc(),
            ).limit(LEASE_CANDIDATES).with_for_update(skip_locked=True).all()

            for candidate in candidates:
                timeout = job_to_domain(candidate).timeout

                claimed = session.execute(
                    update(JobORM)
                    .where(JobORM.id == candidate.id, JobORM.reserved_at.is_(None))
                    .values(
                        reserved_at=now,
                        reserved_until=now + timedelta(seconds=timeout),
                        attempts=JobORM.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )

                if claimed.rowcount != 1:
                    # Another worker won this row
                    continue

                session.commit()

                orm = session.get(JobORM, candidate.id, populate_existing=True)
                job = job_to_domain(orm)
                logger.info(
                    f"[queue] Leased {job.display_name} ({job.id}) from '{queue}', attempt {job.attempts}"
                )
                return job

            session.commit()
            return None
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[queue] Lease on '{queue}' failed: {e}")
            return None
        finally:
            session.close()

    # -------------------------
    # ACK / RELEASE
    # -------------------------

    def _holds_lease(self, job: QueuedJob):
        """WHERE clause matching only the reservation `job` was handed."""
        return (
            JobORM.id == job.id,
            JobORM.reserved_at.isnot(None),
            JobORM.attempts == job.attempts,
        )

    def ack(self, job: QueuedJob) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                deleted = session.query(JobORM).filter(
                    *self._holds_lease(job)
                ).delete(synchronize_session=False)
                return deleted == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete job {job.id}: {e}") from e

    def release(self, job: QueuedJob, delay: int = 0) -> bool:
        now = self._clock.now()
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    update(JobORM)
                    .where(*self._holds_lease(job))
                    .values(
                        reserved_at=None,
                        reserved_until=None,
                        available_at=now + timedelta(seconds=delay),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to release job {job.id}: {e}") from e

    def list_expired(self, queue: str) -> List[QueuedJob]:
        now = self._clock.now()
        session = self._get_session()
        try:
            results = session.query(JobORM).filter(
                JobORM.queue == queue,
                JobORM.reserved_at.isnot(None),
                JobORM.reserved_until < now,
            ).order_by(JobORM.id.asc()).all()
            return [job_to_domain(orm) for orm in results]
        except SQLAlchemyError as e:
            logger.error(f"[queue] Could not scan expired reservations on '{queue}': {e}")
            return []
        finally:
            session.close()

    # -------------------------
    # INSPECTION
    # -------------------------

    def list_pending(self, limit: int = 50) -> List[QueuedJob]:
        session = self._get_session()
        try:
            results = session.query(JobORM).order_by(
                JobORM.created_at.desc(),
                JobORM.id.desc(),
            ).limit(limit).all()
            return [job_to_domain(orm) for orm in results]
        finally:
            session.close()

    def get_job(self, job_id: Union[int, str]) -> Optional[QueuedJob]:
        session = self._get_session()
        try:
            orm = session.get(JobORM, int(job_id))
            return job_to_domain(orm) if orm else None
        except ValueError:
            return None
        finally:
            session.close()

    def delete_job(self, job_id: Union[int, str]) -> bool:
        try:
            job_id = int(job_id)
        except ValueError:
            return False

        try:
            with session_scope(self._session_factory) as session:
                deleted = session.query(JobORM).filter(
                    JobORM.id == job_id
                ).delete(synchronize_session=False)
                return deleted > 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete job {job_id}: {e}") from e

    def pending_counts(self) -> Dict[str, int]:
        session = self._get_session()
        try:
            rows = session.query(JobORM.queue, func.count(JobORM.id)).group_by(JobORM.queue).all()
            return {queue: count for queue, count in rows}
        finally:
            session.close()
