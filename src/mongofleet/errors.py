"""Error taxonomy shared by the executor, engines and orchestrator."""
from __future__ import annotations


class FleetError(RuntimeError):
    """Base class for orchestration failures."""

    kind = "error"
    retryable = False


class NotFoundError(FleetError):
    """Raised when an environment or artifact reference cannot be resolved."""

    kind = "not_found"


class UnreachableError(FleetError):
    """Raised when a node cannot be reached or a unit of work timed out."""

    kind = "unreachable"
    retryable = True


class AuthFailedError(FleetError):
    """Raised when a node rejects the supplied credentials."""

    kind = "auth_failed"


class RemoteError(FleetError):
    """Raised when a remote command exits with a non-zero status."""

    kind = "remote_error"

    def __init__(
        self,
        code: int,
        stderr: str = "",
        *,
        command: str | None = None,
        transient: bool = False,
    ) -> None:
        """Record the exit *code* and captured *stderr* of the failed command."""
        self.code = code
        self.stderr = stderr
        self.command = command
        self.retryable = transient
        detail = stderr.strip() or "no output"
        prefix = f"{command} failed" if command else "Remote command failed"
        super().__init__(f"{prefix} (exit {code}): {detail}")


class ArtifactInvalidError(FleetError):
    """Raised when a backup artifact is missing, corrupt or of the wrong format."""

    kind = "artifact_invalid"


class ConfirmationRequiredError(FleetError):
    """Raised when a destructive action lacks an explicit confirmation token."""

    kind = "confirmation_required"


class OperationTimeoutError(FleetError):
    """Raised when a bounded wait (e.g. replica bootstrap) is exceeded."""

    kind = "timeout"


class PreconditionFailedError(FleetError):
    """Raised when a requested change is not supported from the observed state."""

    kind = "precondition_failed"


class CancelledError(FleetError):
    """Raised when the caller cancelled the operation before work was dispatched."""

    kind = "cancelled"


def error_kind(exc: BaseException) -> str:
    """Return the taxonomy label for *exc* (``error`` for foreign exceptions)."""
    if isinstance(exc, FleetError):
        return exc.kind
    return "error"


__all__ = [
    "ArtifactInvalidError",
    "AuthFailedError",
    "CancelledError",
    "ConfirmationRequiredError",
    "FleetError",
    "NotFoundError",
    "OperationTimeoutError",
    "PreconditionFailedError",
    "RemoteError",
    "UnreachableError",
    "error_kind",
]
