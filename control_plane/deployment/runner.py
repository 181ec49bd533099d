# control_plane/deployment/runner.py
"""External process execution for git, hooks and probes."""

import getpass
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command. Never raised, always returned."""

    returncode: int
    output: str = ""
    error_output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def failed(self) -> bool:
        return not self.ok


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


def run_as_user(
    command: Sequence[str],
    deploy_user: Optional[str],
    process_user: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> List[str]:
    """
    Prefix a command with `sudo -u <deploy_user>` when it must run as
    another account.

    sudo resets the environment, so overrides are passed through `env`
    on the command line instead.
    """
    process_user = process_user or current_user()
    if not deploy_user or deploy_user == process_user:
        return list(command)

    prefix = ["sudo", "-u", deploy_user]
    if env:
        prefix += ["env"] + [f"{key}={value}" for key, value in env.items()]
    return prefix + list(command)


class CommandRunner:
    """Thin wrapper over subprocess.run with captured text output."""

    def run(
        self,
        command: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)

        logger.debug(f"[runner] $ {' '.join(command)} (cwd={cwd}, timeout={timeout})")

        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                env=merged_env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[runner] Command timed out after {timeout}s: {command[0]}")
            return CommandResult(
                returncode=-1,
                output=_as_text(e.stdout),
                error_output=f"Command timed out after {timeout} seconds",
                timed_out=True,
            )
        except OSError as e:
            logger.error(f"[runner] Could not start {command[0]}: {e}")
            return CommandResult(returncode=127, error_output=str(e))

        return CommandResult(
            returncode=completed.returncode,
            output=completed.stdout or "",
            error_output=completed.stderr or "",
        )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
