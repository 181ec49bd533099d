# control_plane/run_worker.py
"""Queue worker process - runs deployments and monitoring jobs."""

import logging
import signal
import sys
import time

from control_plane.config import settings
from control_plane.container import job_handlers, job_queue
from control_plane.jobqueue.worker import QueueWorker

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


class WorkerProcess:
    """Owns one QueueWorker and stops it on SIGINT/SIGTERM."""

    def __init__(self, worker: QueueWorker):
        self.worker = worker
        self._stop_requested = False

    def start(self):
        logger.info("=" * 80)
        logger.info("🚀 QUEUE WORKER STARTED")
        logger.info("=" * 80)
        logger.info(f"Worker id: {self.worker.worker_id}")
        logger.info(f"Queue driver: {settings.queue_driver}")
        logger.info(f"Queues: {', '.join(self.worker.queues)}")
        logger.info("Press Ctrl+C to stop")
        logger.info("=" * 80)

        # Register signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.worker.start()

        while not self._stop_requested and self.worker.is_running():
            time.sleep(1)

        self.worker.stop()
        logger.info("Queue Worker stopped")

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self._stop_requested = True


def main():
    """Main entry point."""
    worker = QueueWorker(
        worker_id=settings.worker_id,
        queue=job_queue,
        handlers=job_handlers,
        queues=[settings.deployment_queue, settings.default_queue],
        poll_interval=settings.worker_poll_interval,
    )

    try:
        WorkerProcess(worker).start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
