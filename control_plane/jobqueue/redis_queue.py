# control_plane/jobqueue/redis_queue.py
"""
Job queue backed by Redis lists.

Keys per queue:
    queues:<name>            FIFO list of ready payloads (LPOP = lease)
    queues:<name>:delayed    sorted set, score = available-at epoch
    queues:<name>:reserved   sorted set, score = reservation deadline epoch
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from uuid import uuid4

import redis

from control_plane.core.clock import Clock
from control_plane.core.errors import PersistenceError
from control_plane.core.models import QueuedJob
from control_plane.jobqueue.base import JobQueue, from_timestamp, job_display_name, to_timestamp

logger = logging.getLogger(__name__)

KEY_PREFIX = "queues:"
DELAYED_SUFFIX = ":delayed"
RESERVED_SUFFIX = ":reserved"
AUX_SUFFIXES = (DELAYED_SUFFIX, RESERVED_SUFFIX, ":notify")


def connect(redis_url: str) -> "redis.Redis":
    return redis.Redis.from_url(redis_url, decode_responses=True)


class RedisJobQueue(JobQueue):
    """Broker-list backend; failed jobs still go to the SQL failed store."""

    connection_name = "redis"

    def __init__(self, client, failed_store, clock: Optional[Clock] = None, event_emitters=None):
        super().__init__(failed_store, clock=clock, event_emitters=event_emitters)
        self._redis = client

    # -------------------------
    # KEYS
    # -------------------------

    @staticmethod
    def _key(queue: str) -> str:
        return f"{KEY_PREFIX}{queue}"

    def _queue_names(self) -> List[str]:
        names = set()
        for key in self._redis.scan_iter(match=f"{KEY_PREFIX}*"):
            name = key[len(KEY_PREFIX):]
            for suffix in AUX_SUFFIXES:
                if name.endswith(suffix):
                    name = name[:-len(suffix)]
                    break
            names.add(name)
        return sorted(names)

    def _to_job(self, queue: str, raw: str, reserved_score: Optional[float] = None,
                available_score: Optional[float] = None) -> QueuedJob:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        pushed_at = payload.get("pushedAt")
        reserved_at = None
        if reserved_score is not None:
            reserved_at = from_timestamp(reserved_score - int(payload.get("timeout") or 60))

        return QueuedJob(
            id=payload.get("uuid") or "",
            queue=queue,
            payload=payload,
            attempts=int(payload.get("attempts") or 0),
            reserved_at=reserved_at,
            available_at=from_timestamp(available_score) if available_score is not None else None,
            created_at=from_timestamp(pushed_at) if pushed_at else None,
            display_name=job_display_name(payload),
            raw=raw,
        )

    # -------------------------
    # ENQUEUE
    # -------------------------

    def push_payload(self, queue: str, payload: Dict[str, Any], delay: int = 0) -> str:
        payload = dict(payload, attempts=0)
        payload.setdefault("uuid", str(uuid4()))
        encoded = json.dumps(payload)

        try:
            if delay > 0:
                available = to_timestamp(self._clock.now()) + delay
                self._redis.zadd(self._key(queue) + DELAYED_SUFFIX, {encoded: available})
            else:
                self._redis.rpush(self._key(queue), encoded)
        except redis.exceptions.RedisError as e:
            raise PersistenceError(f"Failed to enqueue job on '{queue}': {e}") from e

        return payload["uuid"]

    # -------------------------
    # LEASE
    # -------------------------

    def _migrate_delayed(self, queue: str, now_ts: float) -> None:
        delayed_key = self._key(queue) + DELAYED_SUFFIX
        for member in self._redis.zrangebyscore(delayed_key, "-inf", now_ts):
            # ZREM decides which worker moves the entry
            if self._redis.zrem(delayed_key, member) == 1:
                self._redis.rpush(self._key(queue), member)

    def lease(self, queue: str) -> Optional[QueuedJob]:
        now = self._clock.now()
        now_ts = to_timestamp(now)

        try:
            self._migrate_delayed(queue, now_ts)

            raw = self._redis.lpop(self._key(queue))
            if raw is None:
                return None

            try:
                payload = json.loads(raw)
            except ValueError:
                logger.error(f"[queue] Dropping undecodable payload from '{queue}': {raw[:200]}")
                return None

            payload["attempts"] = int(payload.get("attempts") or 0) + 1
            reserved = json.dumps(payload)
            deadline = now_ts + int(payload.get("timeout") or 60)
            self._redis.zadd(self._key(queue) + RESERVED_SUFFIX, {reserved: deadline})
        except redis.exceptions.RedisError as e:
            logger.error(f"[queue] Lease on '{queue}' failed: {e}")
            return None

        job = self._to_job(queue, reserved, reserved_score=deadline)
        logger.info(
            f"[queue] Leased {job.display_name} ({job.id}) from '{queue}', attempt {job.attempts}"
        )
        return job

    # -------------------------
    # ACK / RELEASE
    # -------------------------

    def _claim_reservation(self, job: QueuedJob) -> bool:
        # ZREM on the exact reserved member: only one caller gets 1 back
        reserved_key = self._key(job.queue) + RESERVED_SUFFIX
        return self._redis.zrem(reserved_key, job.raw or job.encoded_payload()) == 1

    def ack(self, job: QueuedJob) -> bool:
        try:
            return self._claim_reservation(job)
        except redis.exceptions.RedisError as e:
            raise PersistenceError(f"Failed to delete job {job.id}: {e}") from e

    def release(self, job: QueuedJob, delay: int = 0) -> bool:
        encoded = json.dumps(job.payload)
        try:
            if not self._claim_reservation(job):
                return False

            if delay > 0:
                available = to_timestamp(self._clock.now()) + delay
                self._redis.zadd(self._key(job.queue) + DELAYED_SUFFIX, {encoded: available})
            else:
                self._redis.rpush(self._key(job.queue), encoded)
            return True
        except redis.exceptions.RedisError as e:
            raise PersistenceError(f"Failed to release job {job.id}: {e}") from e

    def list_expired(self, queue: str) -> List[QueuedJob]:
        reserved_key = self._key(queue) + RESERVED_SUFFIX
        now_ts = to_timestamp(self._clock.now())

        try:
            members = self._redis.zrangebyscore(reserved_key, "-inf", now_ts, withscores=True)
        except redis.exceptions.RedisError as e:
            logger.error(f"[queue] Could not scan expired reservations on '{queue}': {e}")
            return []

        return [self._to_job(queue, member, reserved_score=score) for member, score in members]

    # -------------------------
    # INSPECTION
    # -------------------------

    def _entries(self) -> Iterator[Tuple[str, str, QueuedJob]]:
        """(key, kind, job) for every pending entry across all queues."""
        for queue in self._queue_names():
            key = self._key(queue)
            for raw in self._redis.lrange(key, 0, -1):
                yield key, "list", self._to_job(queue, raw)
            for raw, score in self._redis.zrange(key + DELAYED_SUFFIX, 0, -1, withscores=True):
                yield key + DELAYED_SUFFIX, "zset", self._to_job(queue, raw, available_score=score)
            for raw, score in self._redis.zrange(key + RESERVED_SUFFIX, 0, -1, withscores=True):
                yield key + RESERVED_SUFFIX, "zset", self._to_job(queue, raw, reserved_score=score)

    def list_pending(self, limit: int = 50) -> List[QueuedJob]:
        jobs = [job for _, _, job in self._entries()]
        jobs.sort(key=lambda job: job.payload.get("pushedAt") or 0, reverse=True)
        return jobs[:limit]

    def get_job(self, job_id: Union[int, str]) -> Optional[QueuedJob]:
        for _, _, job in self._entries():
            if job.id == str(job_id):
                return job
        return None

    def delete_job(self, job_id: Union[int, str]) -> bool:
        try:
            for key, kind, job in self._entries():
                if job.id != str(job_id):
                    continue
                if kind == "list":
                    removed = self._redis.lrem(key, 1, job.raw)
                else:
                    removed = self._redis.zrem(key, job.raw)
                return removed > 0
        except redis.exceptions.RedisError as e:
            raise PersistenceError(f"Failed to delete job {job_id}: {e}") from e
        return False

    def pending_counts(self) -> Dict[str, int]:
        counts = {}
        for queue in self._queue_names():
            key = self._key(queue)
            total = (
                self._redis.llen(key)
                + self._redis.zcard(key + DELAYED_SUFFIX)
                + self._redis.zcard(key + RESERVED_SUFFIX)
            )
            if total:
                counts[queue] = total
        return counts
