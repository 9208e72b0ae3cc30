"""
Error taxonomy for the server lifecycle.

Retryable errors fail the current job attempt and let the queue redeliver it.
Terminal errors are surfaced to the caller directly and are never retried.
"""


class ServerManagerError(Exception):
    """Base class for all server manager errors."""


class RetryableError(ServerManagerError):
    """The operation may succeed if attempted again."""


class TerminalError(ServerManagerError):
    """Retrying cannot change the outcome."""


class ProvisioningError(RetryableError):
    """Container pull, create or start failed."""


class ReadinessTimeoutError(RetryableError):
    """No sentinel output within the idle window."""

    def __init__(self, container_ref: str, idle_timeout: float):
        self.container_ref = container_ref
        self.idle_timeout = idle_timeout
        super().__init__(
            f"Timed out after {idle_timeout:g}s without output waiting for "
            f"container {container_ref[:12]} to become ready"
        )


class StreamError(RetryableError):
    """The log stream broke while watching for readiness."""


class NotFoundError(TerminalError):
    """A job or server identifier is unknown."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class DuplicateRegistrationError(TerminalError):
    """A client is already waiting on this job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already has a pending registration")
