# control_plane/jobqueue/failed_store.py
"""SQL-backed failed job store shared by every queue backend."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.errors import PersistenceError
from control_plane.core.models import FailedJob
from control_plane.infrastructure.sql.database import SessionLocal, session_scope
from control_plane.infrastructure.sql.models import FailedJobORM
from control_plane.jobqueue.base import job_display_name

logger = logging.getLogger(__name__)


def _decode(payload: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(payload)
        return decoded if isinstance(decoded, dict) else {}
    except (TypeError, ValueError):
        return {}


def failed_to_domain(orm: FailedJobORM) -> FailedJob:
    return FailedJob(
        id=orm.id,
        uuid=orm.uuid,
        connection=orm.connection,
        queue=orm.queue,
        payload=_decode(orm.payload),
        exception=orm.exception,
        failed_at=orm.failed_at,
        display_name=job_display_name(orm.payload),
    )


class FailedJobStore:
    """Jobs that exhausted their attempt budget, keyed by uuid."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or SystemClock()

    # -------------------------
    # WRITE
    # -------------------------

    def record(self, connection: str, queue: str, payload: Dict[str, Any], exception: str) -> FailedJob:
        failed_uuid = str(uuid4())
        try:
            with session_scope(self._session_factory) as session:
                orm = FailedJobORM(
                    uuid=failed_uuid,
                    connection=connection,
                    queue=queue,
                    payload=json.dumps(payload),
                    exception=exception,
                    failed_at=self._clock.now(),
                )
                session.add(orm)
                session.flush()
                return failed_to_domain(orm)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record failed job: {e}") from e

    def claim(self, failed_uuid: str) -> Optional[FailedJob]:
        """
        Remove and return a failed record.

        Only one caller can claim a given uuid; the others get None.
        """
        try:
            with session_scope(self._session_factory) as session:
                orm = session.query(FailedJobORM).filter(
                    FailedJobORM.uuid == failed_uuid
                ).first()
                if orm is None:
                    return None

                failed = failed_to_domain(orm)
                deleted = session.query(FailedJobORM).filter(
                    FailedJobORM.id == orm.id
                ).delete(synchronize_session=False)
                return failed if deleted == 1 else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to claim failed job {failed_uuid}: {e}") from e

    def restore(self, failed: FailedJob) -> None:
        """Put a claimed record back (used when a retry could not be enqueued)."""
        try:
            with session_scope(self._session_factory) as session:
                session.add(FailedJobORM(
                    uuid=failed.uuid,
                    connection=failed.connection,
                    queue=failed.queue,
                    payload=json.dumps(failed.payload),
                    exception=failed.exception,
                    failed_at=failed.failed_at,
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to restore failed job {failed.uuid}: {e}") from e

    def delete(self, failed_uuid: str) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                deleted = session.query(FailedJobORM).filter(
                    FailedJobORM.uuid == failed_uuid
                ).delete(synchronize_session=False)
                return deleted > 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete failed job {failed_uuid}: {e}") from e

    def clear(self) -> int:
        try:
            with session_scope(self._session_factory) as session:
                return session.query(FailedJobORM).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to clear failed jobs: {e}") from e

    # -------------------------
    # READ
    # -------------------------

    def get(self, failed_uuid: str) -> Optional[FailedJob]:
        session = self._session_factory()
        try:
            orm = session.query(FailedJobORM).filter(
                FailedJobORM.uuid == failed_uuid
            ).first()
            return failed_to_domain(orm) if orm else None
        finally:
            session.close()

    def list(self, limit: int = 50) -> List[FailedJob]:
        session = self._session_factory()
        try:
            results = session.query(FailedJobORM).order_by(
                FailedJobORM.failed_at.desc(),
                FailedJobORM.id.desc(),
            ).limit(limit).all()
            return [failed_to_domain(orm) for orm in results]
        finally:
            session.close()

    def uuids(self) -> List[str]:
        session = self._session_factory()
        try:
            rows = session.query(FailedJobORM.uuid).order_by(FailedJobORM.id.asc()).all()
            return [row[0] for row in rows]
        finally:
            session.close()

    def count(self) -> int:
        session = self._session_factory()
        try:
            return session.query(func.count(FailedJobORM.id)).scalar() or 0
        finally:
            session.close()

    def count_since(self, since: datetime) -> int:
        session = self._session_factory()
        try:
            return session.query(func.count(FailedJobORM.id)).filter(
                FailedJobORM.failed_at >= since
            ).scalar() or 0
        finally:
            session.close()
