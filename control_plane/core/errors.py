# control_plane/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class ControlPlaneError(Exception):
    """Base class for all control plane errors."""
    pass


# -----------------------------
# Validation / Domain Errors
# -----------------------------

class ValidationError(ControlPlaneError):
    """Invalid input or malformed entity."""
    pass


class InvalidStateTransition(ControlPlaneError):
    """Illegal state transition attempted."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class PersistenceError(ControlPlaneError):
    pass


class AlreadyExistsError(PersistenceError):
    pass


class NotFoundError(PersistenceError):
    pass


class ConcurrencyError(PersistenceError):
    pass


# -----------------------------
# Credential Errors
# -----------------------------

class CredentialError(ControlPlaneError):
    """Key generation or key material handling failed."""
    pass


# -----------------------------
# Deployment Errors
# -----------------------------

class DeploymentError(ControlPlaneError):
    """Fatal-to-run deployment failure."""
    pass


class RepositoryConflictError(DeploymentError):
    """Local path holds non-repository content."""
    pass


class GitCommandError(DeploymentError):
    pass


class DeploymentLockedError(DeploymentError):
    """Another deployment holds the target lock."""
    pass


class DeploymentTimeoutError(DeploymentError):
    """Run passed its overall time limit."""
    pass


# -----------------------------
# Queue Errors
# -----------------------------

class QueueError(ControlPlaneError):
    pass


class JobTimeoutError(QueueError):
    """Job exceeded its execution budget."""
    pass
