"""
Error taxonomy for the edit worker.

Infrastructure errors abort the current request and are reported to the
caller as an ``error`` field. Tool-level problems never surface as these
exceptions; they stay inside the agent's context as failed tool outcomes.
"""


class WorkerError(Exception):
    """Base class for all worker errors."""

    status_code = 500


class ConfigurationError(WorkerError):
    """Raised when required configuration is missing or invalid."""
    pass


class AuthenticationError(WorkerError):
    """Raised when the shared-secret header is missing or wrong."""

    status_code = 401


class NotFoundError(WorkerError):
    """Raised when a project, sandbox or thread does not exist."""

    status_code = 404


class ValidationError(WorkerError):
    """Raised when a request payload is malformed."""

    status_code = 400


class ExecutionError(WorkerError):
    """A command exited non-zero. Only ever carried as tool result data."""

    def __init__(self, message: str, exit_code: int):
        super().__init__(message)
        self.exit_code = exit_code


class TransientInfraError(WorkerError):
    """The sandbox is not healthy yet. Informational after one retry."""
    pass


class InfrastructureError(WorkerError):
    """The sandbox substrate failed; the request cannot continue."""

    status_code = 502


class ProvisioningError(InfrastructureError):
    """Creating or re-attaching a sandbox failed."""
    pass


class StartError(InfrastructureError):
    """Starting the preview server (or seeding its workspace) failed."""
    pass


class ExposureError(InfrastructureError):
    """A sandbox port could not be published as an external URL."""
    pass


class ModelInvocationError(WorkerError):
    """The language model could not be invoked; the agent loop failed."""

    status_code = 502
