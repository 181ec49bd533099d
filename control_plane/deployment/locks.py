# control_plane/deployment/locks.py
"""Per-target deployment lock (at most one reconciliation per target)."""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.errors import PersistenceError
from control_plane.infrastructure.sql.database import SessionLocal, session_scope
from control_plane.infrastructure.sql.models import DeploymentLockORM

logger = logging.getLogger(__name__)


class TargetLockManager(ABC):

    @abstractmethod
    def acquire(self, target_id: int, owner: str, ttl_seconds: int) -> bool:
        """Take the lock without waiting. Returns False if someone else holds it."""
        raise NotImplementedError

    @abstractmethod
    def release(self, target_id: int, owner: str) -> bool:
        """Drop the lock if `owner` still holds it."""
        raise NotImplementedError

    @abstractmethod
    def renew(self, target_id: int, owner: str, ttl_seconds: int) -> bool:
        """Push the expiry out to now + ttl. False if `owner` no longer holds the lock."""
        raise NotImplementedError


class SqlTargetLockManager(TargetLockManager):
    """
    Lease rows in `deployment_locks`.

    The primary key on target_id makes the insert the arbiter; a lease
    past its expiry (crashed worker) may be taken over with a conditional
    UPDATE.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or SystemClock()

    def _get_session(self):
        return self._session_factory()

    def acquire(self, target_id: int, owner: str, ttl_seconds: int) -> bool:
        now = self._clock.now()
        expires_at = now + timedelta(seconds=ttl_seconds)

        session = self._get_session()
        try:
            try:
                session.add(DeploymentLockORM(
                    target_id=target_id,
                    owner=owner,
                    acquired_at=now,
                    expires_at=expires_at,
                ))
                session.commit()
                logger.info(f"[lock] 🔒 Target {target_id} locked by {owner}")
                return True
            except IntegrityError:
                session.rollback()

            # Held already: take it over only if the holder's lease expired
            result = session.execute(
                update(DeploymentLockORM)
                .where(
                    DeploymentLockORM.target_id == target_id,
                    DeploymentLockORM.expires_at < now,
                )
                .values(owner=owner, acquired_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            session.commit()

            if result.rowcount == 1:
                logger.warning(f"[lock] Took over expired lock on target {target_id} for {owner}")
                return True

            logger.info(f"[lock] Target {target_id} is locked by another deployment")
            return False
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to lock target {target_id}: {e}") from e
        finally:
            session.close()

    def release(self, target_id: int, owner: str) -> bool:
        session = self._get_session()
        try:
            deleted = session.query(DeploymentLockORM).filter(
                DeploymentLockORM.target_id == target_id,
                DeploymentLockORM.owner == owner,
            ).delete(synchronize_session=False)
            session.commit()

            if deleted:
                logger.info(f"[lock] 🔓 Target {target_id} released by {owner}")
            return deleted > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to release lock on target {target_id}: {e}") from e
        finally:
            session.close()

    def renew(self, target_id: int, owner: str, ttl_seconds: int) -> bool:
        now = self._clock.now()
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    update(DeploymentLockORM)
                    .where(
                        DeploymentLockORM.target_id == target_id,
                        DeploymentLockORM.owner == owner,
                    )
                    .values(expires_at=now + timedelta(seconds=ttl_seconds))
                    .execution_options(synchronize_session=False)
                )
                renewed = result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to renew lock on target {target_id}: {e}") from e

        if not renewed:
            logger.warning(f"[lock] {owner} no longer holds the lock on target {target_id}")
        return renewed

    def holder(self, target_id: int) -> Optional[str]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentLockORM, target_id)
            return orm.owner if orm else None
        finally:
            session.close()
