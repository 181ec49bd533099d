# control_plane/deployment/engine.py
"""
Deployment engine - reconciles a target's working copy with its branch.

One call to deploy() produces exactly one DeploymentRun: created in
processing, finished as completed or failed, with the transcript kept
either way.
"""

import logging
import os
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.errors import (
    DeploymentError,
    DeploymentLockedError,
    DeploymentTimeoutError,
    GitCommandError,
    RepositoryConflictError,
)
from control_plane.core.events import NullEventEmitter
from control_plane.core.events_model import ControlPlaneEvent
from control_plane.core.models import DeploymentRun, DeploymentTarget
from control_plane.credentials.vault import CredentialVault, KeyLoan
from control_plane.deployment.locks import TargetLockManager
from control_plane.deployment.payloads import parse_payload
from control_plane.deployment.runner import CommandResult, CommandRunner, current_user, run_as_user

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "\n✓ Deployment completed successfully!"

# Lock lease beyond the time limit, covers process start/kill overhead
LOCK_GRACE_SECONDS = 60


class WorkingCopy(Enum):
    """What currently sits at a target's local path."""
    ABSENT = "absent"
    EMPTY = "empty"
    REPOSITORY = "repository"
    CONFLICT = "conflict"


def inspect_working_copy(path: str) -> WorkingCopy:
    if not os.path.lexists(path):
        return WorkingCopy.ABSENT

    if not os.path.isdir(path):
        return WorkingCopy.CONFLICT

    if os.path.isdir(os.path.join(path, ".git")):
        return WorkingCopy.REPOSITORY

    if not os.listdir(path):
        return WorkingCopy.EMPTY

    return WorkingCopy.CONFLICT


def normalize_script(script: str) -> str:
    """CRLF/CR to LF, each line trimmed (scripts pasted from browsers carry stray whitespace)."""
    script = script.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.strip() for line in script.split("\n"))


class Deadline:
    """Wall-clock limit for a whole deployment, shared by all its commands."""

    def __init__(self, clock: Clock, seconds: int):
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock.now() + timedelta(seconds=seconds)

    def remaining(self) -> float:
        return (self.expires_at - self._clock.now()).total_seconds()

    def check(self) -> float:
        """Seconds left; raises once the limit has passed."""
        remaining = self.remaining()
        if remaining <= 0:
            raise DeploymentTimeoutError(f"Deployment exceeded its {self.seconds}s time limit")
        return remaining


class StepGuard:
    """
    Checked before every command of a run.

    Refuses to start a command once the deadline has passed, renews the
    target lock so it outlives the command, and clips the command's own
    timeout to the time left.
    """

    def __init__(self, deadline: Deadline, locks: TargetLockManager, target_id: int, owner: str, lock_ttl: int):
        self.deadline = deadline
        self._locks = locks
        self._target_id = target_id
        self._owner = owner
        self._lock_ttl = lock_ttl

    def timeout_for(self, step_timeout: int) -> float:
        remaining = self.deadline.check()

        if not self._locks.renew(self._target_id, self._owner, self._lock_ttl):
            raise DeploymentLockedError(f"Lost the deployment lock on target {self._target_id}")

        return min(step_timeout, remaining)


class DeploymentEngine:
    """Runs deployments for targets on this host."""

    def __init__(
        self,
        *,
        targets,
        runs,
        credentials,
        vault: CredentialVault,
        runner: CommandRunner,
        locks: TargetLockManager,
        clock: Optional[Clock] = None,
        event_emitters=None,
        worker_id: str = "worker",
        process_user: Optional[str] = None,
        hook_timeout: int = 300,
        git_timeout: int = 600,
        time_limit: int = 600,
        lock_ttl: Optional[int] = None,
    ):
        if lock_ttl is None:
            lock_ttl = time_limit + LOCK_GRACE_SECONDS
        if lock_ttl < time_limit:
            raise ValueError(f"lock_ttl ({lock_ttl}s) must cover the deployment time limit ({time_limit}s)")

        self._targets = targets
        self._runs = runs
        self._credentials = credentials
        self._vault = vault
        self._runner = runner
        self._locks = locks
        self._clock = clock or SystemClock()
        self._emitters = event_emitters or NullEventEmitter()
        self._worker_id = worker_id
        self._process_user = process_user or current_user()
        self._hook_timeout = hook_timeout
        self._git_timeout = git_timeout
        self._time_limit = time_limit
        self._lock_ttl = lock_ttl

    # -------------------------
    # DEPLOY
    # -------------------------

    def deploy(self, target: DeploymentTarget, payload: Optional[dict] = None) -> DeploymentRun:
        deadline = Deadline(self._clock, self._time_limit)
        commit = parse_payload(target.git_provider, payload)

        run = DeploymentRun(
            target_id=target.target_id,
            commit_hash=commit["commit_hash"],
            commit_message=commit["commit_message"],
            author=commit["author"],
        )
        run.start(self._clock.now())
        self._runs.create(run)

        logger.info(
            f"[deploy] 🚀 Run {run.run_id} started for '{target.name}' "
            f"({target.branch} @ {run.short_commit_hash or 'HEAD'})"
        )
        self._emit(ControlPlaneEvent.deployment_started(run, target))

        transcript: List[str] = []
        loan: Optional[KeyLoan] = None
        lock_owner: Optional[str] = None

        try:
            loan = self._loan_credential(target, transcript)
            lock_owner = self._acquire_lock(target, run)
            guard = StepGuard(deadline, self._locks, target.target_id, lock_owner, self._lock_ttl)
            self._execute(target, loan, transcript, guard)
        except Exception as e:
            logger.error(
                f"[deploy] ❌ Deployment failed: {e} (target_id={target.target_id}, run_id={run.run_id})"
            )
            self._record_outcome(run, target, transcript, error_message=str(e))
        else:
            self._record_outcome(run, target, transcript)
        finally:
            if lock_owner:
                self._release_lock(target, lock_owner)
            self._vault.revoke(loan)

        return run

    # -------------------------
    # FINISH
    # -------------------------

    def _record_outcome(
        self,
        run: DeploymentRun,
        target: DeploymentTarget,
        transcript: List[str],
        error_message: Optional[str] = None,
    ) -> None:
        """Persist the final state; bookkeeping errors are logged, never raised to the worker."""
        try:
            if error_message is None:
                self._finish_completed(run, target, transcript)
            else:
                self._finish_failed(run, transcript, error_message)
        except Exception as e:
            logger.error(f"[deploy] Could not record outcome of run {run.run_id}: {e}", exc_info=True)

    def _finish_completed(self, run: DeploymentRun, target: DeploymentTarget, transcript: List[str]) -> None:
        run.attach_output("\n".join(transcript))
        run.complete(self._clock.now())
        self._runs.update(run)

        try:
            self._targets.touch_last_deployed(target.target_id, run.completed_at)
            target.last_deployed_at = run.completed_at
        except Exception as e:
            logger.error(f"[deploy] Run {run.run_id} completed but last_deployed_at was not saved: {e}")

        logger.info(f"[deploy] ✅ Run {run.run_id} completed in {run.duration_seconds}s")
        self._emit(ControlPlaneEvent.deployment_completed(run))

    def _finish_failed(self, run: DeploymentRun, transcript: List[str], message: str) -> None:
        run.attach_output("\n".join(transcript))
        run.fail(self._clock.now(), message)
        self._runs.update(run)
        self._emit(ControlPlaneEvent.deployment_failed(run))

    def _emit(self, event: ControlPlaneEvent) -> None:
        try:
            self._emitters.emit([event])
        except Exception as e:
            logger.error(f"[deploy] Event {event.event_type} not delivered: {e}")

    # -------------------------
    # CREDENTIAL / LOCK
    # -------------------------

    def _loan_credential(self, target: DeploymentTarget, transcript: List[str]) -> Optional[KeyLoan]:
        credential = self._credentials.get_for_target(target.target_id)
        if credential is None:
            return None

        try:
            return self._vault.loan(credential)
        except Exception as e:
            # Public repositories still deploy without the key
            logger.warning(f"[deploy] Could not loan key for target {target.target_id}: {e}")
            transcript.append(f"Warning: deploy key unavailable: {e}")
            return None

    def _acquire_lock(self, target: DeploymentTarget, run: DeploymentRun) -> str:
        owner = f"{self._worker_id}:{run.run_id}"
        if not self._locks.acquire(target.target_id, owner, self._lock_ttl):
            raise DeploymentLockedError(
                f"Another deployment is already running for target {target.target_id}"
            )
        return owner

    def _release_lock(self, target: DeploymentTarget, owner: str) -> None:
        try:
            self._locks.release(target.target_id, owner)
        except Exception as e:
            logger.error(f"[deploy] Failed to release lock on target {target.target_id}: {e}")

    # -------------------------
    # RECONCILE
    # -------------------------

    def _execute(
        self,
        target: DeploymentTarget,
        loan: Optional[KeyLoan],
        transcript: List[str],
        guard: StepGuard,
    ) -> None:
        path = target.local_path
        git_env = dict(loan.env) if loan else {}

        if target.deploy_user:
            transcript.append(f"Running deployment as user: {target.deploy_user}\n")

        state = inspect_working_copy(path)

        if state == WorkingCopy.CONFLICT:
            raise RepositoryConflictError(
                f"Directory {path} exists but is not a git repository and contains files. "
                "Please remove it manually."
            )

        if state == WorkingCopy.EMPTY:
            transcript.append(f"Removing empty directory: {path}")
            result = self._run(["rmdir", path], target, guard, timeout=self._git_timeout)
            if result.failed:
                raise DeploymentError(f"Failed to remove directory: {result.error_output}")
            state = WorkingCopy.ABSENT

        if state == WorkingCopy.ABSENT:
            transcript.append("Cloning repository...")
            result = self._run(
                ["git", "clone", "-b", target.branch, target.repository_url, path],
                target,
                guard,
                env=git_env,
                timeout=self._git_timeout,
            )
            transcript.append(result.output)
            if result.failed:
                raise GitCommandError(f"Git clone failed: {result.error_output}")
        else:
            transcript.append("Pulling latest changes...")

            result = self._run(
                ["git", "fetch", "origin", target.branch],
                target,
                guard,
                cwd=path,
                env=git_env,
                timeout=self._git_timeout,
            )
            transcript.append(result.output)
            if result.failed:
                raise GitCommandError(f"Git fetch failed: {result.error_output}")

            result = self._run(
                ["git", "reset", "--hard", f"origin/{target.branch}"],
                target,
                guard,
                cwd=path,
                timeout=self._git_timeout,
            )
            transcript.append(result.output)
            if result.failed:
                raise GitCommandError(f"Git reset failed: {result.error_output}")

        if target.pre_deploy_script:
            self._run_hook("Pre-deploy", target.pre_deploy_script, target, guard, transcript)

        if target.post_deploy_script:
            self._run_hook("Post-deploy", target.post_deploy_script, target, guard, transcript)

        # A hook cut short by the deadline is only a warning; the run still fails
        guard.deadline.check()
        transcript.append(SUCCESS_MARKER)

    def _run_hook(
        self,
        label: str,
        script: str,
        target: DeploymentTarget,
        guard: StepGuard,
        transcript: List[str],
    ) -> None:
        """Hooks are advisory: a failure is recorded, the deployment goes on."""
        transcript.append(f"\nRunning {label.lower()} script...")

        result = self._run(
            ["bash", "-c", normalize_script(script)],
            target,
            guard,
            cwd=target.local_path,
            timeout=self._hook_timeout,
        )
        transcript.append(result.output)

        if result.failed:
            logger.warning(f"[deploy] {label} script failed for target {target.target_id}: {result.error_output}")
            transcript.append(f"Warning: {label} script failed: {result.error_output}")

    def _run(
        self,
        command: Sequence[str],
        target: DeploymentTarget,
        guard: StepGuard,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: int = 600,
    ) -> CommandResult:
        step_timeout = guard.timeout_for(timeout)
        argv = run_as_user(command, target.deploy_user, self._process_user, env=env)
        return self._runner.run(argv, cwd=cwd, env=env, timeout=step_timeout)
