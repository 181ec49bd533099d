# control_plane/monitoring/probes.py
"""Service liveness probe."""

import logging
from typing import Optional

from control_plane.deployment.runner import CommandRunner

logger = logging.getLogger(__name__)


class ServiceProbe:
    """
    Asks systemd whether a unit is active.

    Returns 1.0 (active), 0.0 (anything else) or None when the probe
    itself could not run, which skips the rule for this tick.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: int = 10):
        self._runner = runner or CommandRunner()
        self._timeout = timeout

    def status(self, service_name: Optional[str]) -> Optional[float]:
        if not service_name:
            return None

        try:
            result = self._runner.run(
                ["systemctl", "is-active", service_name],
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error(f"[probe] Failed to check service status: {service_name}: {e}")
            return None

        if result.timed_out or result.returncode == 127:
            logger.error(f"[probe] Service status unavailable for {service_name}: {result.error_output}")
            return None

        return 1.0 if result.output.strip() == "active" else 0.0
