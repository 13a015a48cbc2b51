"""Exception hierarchy for cftunnel.

Every error carries a short ``kind`` used when reporting which step of an
operation failed and why.
"""

from collections.abc import Sequence


class CfTunnelError(Exception):
    """Base exception for all cftunnel errors."""

    kind = "error"


class NotInitializedError(CfTunnelError):
    """Raised when no configuration exists yet."""

    kind = "not-initialized"


class LocalStoreCorruptError(CfTunnelError):
    """Raised when a persisted state file cannot be parsed or validated."""

    kind = "local-store-corrupt"


class ValidationError(CfTunnelError):
    """Raised when user input (name, target, zone) is invalid."""

    kind = "invalid-input"


class LookupFailure(CfTunnelError):
    """Raised when a locally known entity cannot be found."""

    kind = "not-found"


class AccountNotFoundError(LookupFailure):
    pass


class ZoneNotFoundError(LookupFailure):
    pass


class TunnelNotFoundError(LookupFailure):
    pass


class TunnelExistsError(CfTunnelError):
    """Raised when adding a tunnel that already exists with different settings."""

    kind = "exists"


class RegistryError(CfTunnelError):
    """Base class for failures reported by the remote registry."""

    kind = "remote"
    retryable = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(RegistryError):
    kind = "unauthorized"


class NotFoundError(RegistryError):
    kind = "not-found"


class RateLimitedError(RegistryError):
    kind = "rate-limited"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class RemoteTransientError(RegistryError):
    kind = "remote-transient"
    retryable = True


class RemoteRejectedError(RegistryError):
    kind = "remote-rejected"


class ProcessError(CfTunnelError):
    """Raised when an external command cannot be run or times out."""

    kind = "process"


class BinaryNotFoundError(ProcessError):
    """Raised when the cloudflared binary is not found or not executable."""

    kind = "binary-not-found"


class OSServiceFailure(CfTunnelError):
    """Raised when the OS service manager rejects an install/start/stop."""

    kind = "os-service"


class DaemonUnreachableError(CfTunnelError):
    """Raised when a tunnel daemon's metrics endpoint does not answer."""

    kind = "daemon-unreachable"


class UpdateCheckError(CfTunnelError):
    """Raised when the latest release cannot be read from PyPI."""

    kind = "update-check"


class OperationBusyError(CfTunnelError):
    """Raised when an operation is already in flight for the same tunnel."""

    kind = "busy"

    def __init__(self, tunnel: str, running: str):
        super().__init__(f"Tunnel '{tunnel}' is busy ({running} in progress)")
        self.tunnel = tunnel
        self.running = running


class OperationCancelledError(CfTunnelError):
    """Raised when an operation stops early because it was cancelled."""

    kind = "cancelled"

    def __init__(self, operation: str, tunnel: str, completed: Sequence[str] = ()):
        done = ", ".join(completed) or "none"
        super().__init__(
            f"{operation} of '{tunnel}' cancelled (completed steps: {done})"
        )
        self.operation = operation
        self.tunnel = tunnel
        self.completed = tuple(completed)


class OperationFailed(CfTunnelError):
    """Raised when one step of a multi-step operation fails.

    ``completed`` lists the steps that succeeded before ``step``; the local
    store reflects exactly those.
    """

    def __init__(
        self,
        operation: str,
        tunnel: str,
        step: str,
        cause: BaseException,
        completed: Sequence[str] = (),
        report: object | None = None,
    ):
        super().__init__(f"{operation} of '{tunnel}' failed at step '{step}': {cause}")
        self.operation = operation
        self.tunnel = tunnel
        self.step = step
        self.cause = cause
        self.completed = tuple(completed)
        self.report = report

    @property
    def kind(self) -> str:  # type: ignore[override]
        return getattr(self.cause, "kind", "error")
