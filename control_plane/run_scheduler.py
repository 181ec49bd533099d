# control_plane/run_scheduler.py
"""Monitoring scheduler - enqueues the periodic metrics and alert jobs."""

import logging
import signal
import sys
import time

from control_plane.config import settings
from control_plane.container import job_queue
from control_plane.jobqueue.jobs import CHECK_ALERTS, RECORD_METRICS

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


class MonitoringScheduler:
    """
    Emits one monitoring tick per interval:
    - SystemMonitor (record sample + prune by retention)
    - CheckAlerts (evaluate active rules against the latest sample)
    """

    def __init__(self, queue, queue_name: str, interval: int = 60):
        self.queue = queue
        self.queue_name = queue_name
        self.interval = interval
        self._stop_requested = False

    def start(self):
        logger.info("=" * 80)
        logger.info("⏰ MONITORING SCHEDULER STARTED")
        logger.info("=" * 80)
        logger.info(f"Interval: {self.interval}s")
        logger.info(f"Queue: {self.queue_name}")
        logger.info("=" * 80)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop_requested:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}", exc_info=True)

            # Sleep in short steps so signals are honoured quickly
            deadline = time.monotonic() + self.interval
            while not self._stop_requested and time.monotonic() < deadline:
                time.sleep(min(1.0, self.interval))

        logger.info("Monitoring Scheduler stopped")

    def tick(self):
        # Metrics first so alert evaluation sees the fresh sample
        self.queue.enqueue(self.queue_name, RECORD_METRICS, {})
        self.queue.enqueue(self.queue_name, CHECK_ALERTS, {})

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self._stop_requested = True


def main():
    """Main entry point."""
    scheduler = MonitoringScheduler(
        job_queue,
        queue_name=settings.default_queue,
        interval=settings.monitor_interval_seconds,
    )

    try:
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
