from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Cause of a failed lifecycle operation."""

    INVALID_CONFIG = "InvalidConfig"
    RUNTIME_UNREACHABLE = "RuntimeUnreachable"
    SNAPSHOT_FAILED = "SnapshotFailed"
    MUTATION_FAILED = "MutationFailed"
    VERIFICATION_TIMEOUT = "VerificationTimeout"
    VERIFICATION_FAILED = "VerificationFailed"
    ROLLBACK_FAILED = "RollbackFailed"
    NO_SNAPSHOT_AVAILABLE = "NoSnapshotAvailable"
    CONCURRENT_OPERATION = "ConcurrentOperationInProgress"


class LifecycleError(Exception):
    """Base error for lifecycle operations.

    Carries an ErrorKind plus the phase it occurred in and a diagnostic
    payload, so callers can branch on cause instead of parsing text.
    """

    default_kind: ErrorKind = ErrorKind.MUTATION_FAILED

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        phase: str | None = None,
        detail: dict[str, Any] | None = None,
    ):
        self.message = message
        self.kind = kind or self.default_kind
        self.phase = phase
        self.detail = detail or {}
        super().__init__(message)

    def to_info(self, phase: str | None = None):
        from models.deployment import ErrorInfo

        return ErrorInfo(
            kind=self.kind,
            phase=phase or self.phase,
            message=self.message,
            detail=self.detail,
        )


class ConfigError(LifecycleError):
    """Configuration is missing, malformed or uses an insecure default."""

    default_kind = ErrorKind.INVALID_CONFIG


class DriverError(LifecycleError):
    """The container runtime rejected or failed an operation.

    Transient errors (daemon briefly unreachable, socket timeouts) are
    retried inside the verification poll loop. A fatal one ends the loop early.
    """

    default_kind = ErrorKind.MUTATION_FAILED

    def __init__(self, message: str, transient: bool = False, **kwargs):
        self.transient = transient
        super().__init__(message, **kwargs)


class StoreError(LifecycleError):
    """The snapshot store could not create, find or restore a snapshot."""

    default_kind = ErrorKind.SNAPSHOT_FAILED


class ProbeError(LifecycleError):
    """A probe could not execute. Counted as a failed probe."""

    default_kind = ErrorKind.VERIFICATION_FAILED


class ConcurrentOperationError(LifecycleError):
    """Another lifecycle operation holds the lock for this managed unit."""

    default_kind = ErrorKind.CONCURRENT_OPERATION
