from .guardrails import (
    INSECURE_DEFAULTS,
    OperationLock,
    confirm_restore,
    validate_app_config,
    with_timeout,
)
from .health_check import BackoffPolicy, HealthCheckLoop
from .rollback import RollbackManager, RollbackResult
from .snapshot import SnapshotStore

__all__ = [
    "RollbackManager",
    "RollbackResult",
    "SnapshotStore",
    "OperationLock",
    "INSECURE_DEFAULTS",
    "with_timeout",
    "confirm_restore",
    "validate_app_config",
    "BackoffPolicy",
    "HealthCheckLoop",
]
