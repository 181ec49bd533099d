# control_plane/credentials/vault.py
"""
Credential vault - deploy key lifecycle.

Keys are generated per target, stored in the credentials table and
materialized to disk only for the duration of one deployment run.
"""

import base64
import hashlib
import logging
import os
import shlex
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from control_plane.core.clock import Clock, SystemClock
from control_plane.core.errors import CredentialError, ValidationError
from control_plane.core.models import Credential, DeploymentTarget, KeyType
from control_plane.core.repository import CredentialRepository

logger = logging.getLogger(__name__)


# ============================================
# Key material
# ============================================

def generate_keypair(key_type: KeyType, comment: str) -> Tuple[str, str]:
    """
    Generate a passphrase-less keypair.

    Returns:
        (private key in OpenSSH PEM format, public key line with comment)
    """
    if key_type != KeyType.ED25519:
        raise CredentialError(f"Unsupported key type: {key_type.value}")

    private_key = Ed25519PrivateKey.generate()

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")

    public_line = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("utf-8")

    return private_pem, f"{public_line} {comment}"


def compute_fingerprint(public_key: str) -> Optional[str]:
    """SHA256 fingerprint body as printed by `ssh-keygen -lf` (no prefix, no padding)."""
    parts = public_key.split()
    if len(parts) < 2:
        return None

    try:
        blob = base64.b64decode(parts[1], validate=True)
    except ValueError:
        return None

    digest = hashlib.sha256(blob).digest()
    return base64.b64encode(digest).decode("ascii").rstrip("=")


# ============================================
# Loan handle
# ============================================

@dataclass(frozen=True)
class KeyLoan:
    """Temporary on-disk copy of a private key."""

    path: str
    env: Dict[str, str] = field(default_factory=dict)


def git_ssh_env(key_path: str) -> Dict[str, str]:
    """Environment making git use the loaned key (throwaway deploy keys, no host pinning)."""
    return {
        "GIT_SSH_COMMAND": (
            f"ssh -i {shlex.quote(key_path)} "
            "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"
        )
    }


# ============================================
# Vault
# ============================================

class CredentialVault:
    """Generates, stores and loans ephemeral deploy keys."""

    def __init__(
        self,
        repository: CredentialRepository,
        temp_dir: Optional[str] = None,
        clock: Optional[Clock] = None,
        key_type: KeyType = KeyType.ED25519,
    ):
        self._repo = repository
        self._temp_dir = temp_dir or os.path.join(tempfile.gettempdir(), "control-plane-keys")
        self._clock = clock or SystemClock()
        self._key_type = key_type

    # -------------------------
    # ISSUE
    # -------------------------

    def issue(self, target: DeploymentTarget) -> Credential:
        """Generate a new keypair for the target, replacing any prior one."""
        if target.target_id is None:
            raise ValidationError("Target must be persisted before issuing a credential")

        comment = f"target_{target.target_id}@control-plane"
        try:
            private_key, public_key = generate_keypair(self._key_type, comment)
        except CredentialError:
            raise
        except Exception as e:
            raise CredentialError(f"Key generation failed for target {target.target_id}: {e}") from e

        credential = Credential(
            target_id=target.target_id,
            public_key=public_key,
            private_key=private_key,
            fingerprint=compute_fingerprint(public_key),
            key_type=self._key_type,
            created_at=self._clock.now(),
        )

        credential = self._repo.replace_for_target(credential)
        logger.info(
            f"[vault] Issued {self._key_type.value} key for target {target.target_id} "
            f"(SHA256:{credential.fingerprint})"
        )
        return credential

    # -------------------------
    # LOAN / REVOKE
    # -------------------------

    def loan(self, credential: Credential) -> KeyLoan:
        """Write the private key to an owner-only temp file."""
        os.makedirs(self._temp_dir, mode=0o700, exist_ok=True)

        fd, path = tempfile.mkstemp(
            prefix=f"deploy_key_{credential.target_id}_",
            dir=self._temp_dir,
        )
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(credential.private_key)
                if not credential.private_key.endswith("\n"):
                    handle.write("\n")
        except Exception:
            self._remove(path)
            raise

        logger.debug(f"[vault] Loaned key for target {credential.target_id} -> {path}")
        return KeyLoan(path=path, env=git_ssh_env(path))

    def revoke(self, loan: Optional[KeyLoan]) -> None:
        """Delete the loaned key file. Best-effort, never raises."""
        if loan is None:
            return
        self._remove(loan.path)

    @contextmanager
    def loaned(self, credential: Credential) -> Iterator[KeyLoan]:
        """Loan for the duration of a block, revoked on every exit path."""
        loan = self.loan(credential)
        try:
            yield loan
        finally:
            self.revoke(loan)

    def _remove(self, path: str) -> None:
        try:
            os.remove(path)
            logger.debug(f"[vault] Revoked key file {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[vault] Failed to delete key file {path}: {e}")
