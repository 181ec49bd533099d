# control_plane/jobqueue/worker.py
"""Queue worker - leases jobs and runs their handlers under a time budget."""

import threading
import time
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from control_plane.core.errors import JobTimeoutError, QueueError
from control_plane.core.models import QueuedJob
from control_plane.jobqueue.base import JobQueue

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class QueueWorker:
    """
    Worker - polls one or more queues and dispatches jobs by name.

    Each handler runs in its own thread joined with the job's timeout.
    A handler that overruns is reported as failed; the thread itself is
    left to finish in the background (Python threads cannot be killed).
    """

    def __init__(
        self,
        *,
        worker_id: str,
        queue: JobQueue,
        handlers: Dict[str, Handler],
        queues: Iterable[str],
        poll_interval: float = 2.0,
    ):
        self.worker_id = worker_id
        self.queue = queue
        self.handlers = dict(handlers)
        self.queues = list(queues)
        self.poll_interval = poll_interval

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def start(self):
        """Start the worker loop in a background thread."""
        logger.info(f"[worker {self.worker_id}] 🚀 Starting worker")
        logger.info(f"[worker] Queues: {', '.join(self.queues)}")
        logger.info(f"[worker] Handlers: {', '.join(sorted(self.handlers))}")
        logger.info(f"[worker] Poll interval: {self.poll_interval}s")

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self):
        logger.info(f"[worker {self.worker_id}] Stopping worker")
        self._stop_event.set()
        if self._thread:
            self._thread.join()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self):
        while not self._stop_event.is_set():
            processed = 0
            try:
                processed = self.run_once()
            except Exception as e:
                logger.error(f"[worker] Error in main loop: {e}", exc_info=True)

            # Drain without sleeping while there is work
            if processed == 0:
                self._stop_event.wait(self.poll_interval)

    # -------------------------
    # CYCLE
    # -------------------------

    def run_once(self) -> int:
        """One pass over every queue; returns the number of jobs processed."""
        processed = 0
        for queue_name in self.queues:
            released = self.queue.release_expired(queue_name)
            if released:
                logger.warning(f"[worker] Released {released} abandoned job(s) on '{queue_name}'")

            job = self.queue.lease(queue_name)
            if job is None:
                continue

            self.process(job)
            processed += 1
        return processed

    def process(self, job: QueuedJob) -> bool:
        """Run one leased job to completion. Returns True when acked."""
        handler = self.handlers.get(job.name)
        if handler is None:
            self.queue.fail(job, QueueError(f"No handler registered for job '{job.name}'"))
            return False

        outcome: Dict[str, Any] = {}

        def target():
            try:
                handler(job.data)
            except BaseException as e:
                outcome["error"] = e

        started = time.monotonic()
        thread = threading.Thread(
            target=target,
            name=f"job-{job.id}",
            daemon=True,
        )
        thread.start()
        thread.join(job.timeout)

        if thread.is_alive():
            logger.error(
                f"[worker] ⏱️ {job.display_name} ({job.id}) exceeded {job.timeout}s, marking failed"
            )
            self.queue.fail(job, JobTimeoutError(
                f"{job.display_name} exceeded its {job.timeout}s budget"
            ))
            return False

        if "error" in outcome:
            error = outcome["error"]
            logger.error(f"[worker] ❌ {job.display_name} ({job.id}) failed: {error}")
            self.queue.fail(job, error)
            return False

        if not self.queue.ack(job):
            logger.warning(
                f"[worker] {job.display_name} ({job.id}) finished after its lease was settled elsewhere"
            )
            return False

        logger.info(
            f"[worker] ✅ {job.display_name} ({job.id}) done in {time.monotonic() - started:.1f}s"
        )
        return True
