from .deployment import (
    AppConfig,
    DeploymentAttempt,
    DeploymentOutcome,
    ErrorInfo,
    LifecyclePhase,
    OperationType,
    ResultStatus,
    RollbackRequest,
)
from .probe import ProbeResult, VerificationReport
from .snapshot import ARTIFACT_FILES, Snapshot, SnapshotArtifact, SnapshotSources

__all__ = [
    "AppConfig",
    "DeploymentAttempt",
    "DeploymentOutcome",
    "ErrorInfo",
    "LifecyclePhase",
    "OperationType",
    "ResultStatus",
    "RollbackRequest",
    "ProbeResult",
    "VerificationReport",
    "ARTIFACT_FILES",
    "Snapshot",
    "SnapshotArtifact",
    "SnapshotSources",
]
