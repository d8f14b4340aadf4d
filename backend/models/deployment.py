from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from errors import ErrorKind
from models.probe import VerificationReport


class LifecyclePhase(str, Enum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    SNAPSHOTTING = "snapshotting"
    MUTATING = "mutating"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    TERMINAL = "terminal"


class DeploymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED_NO_ROLLBACK = "failed_no_rollback"


class ResultStatus(str, Enum):
    """Tri-state result reported across the process boundary."""

    SUCCESS = "success"
    RECOVERED = "recovered"
    UNRECOVERABLE = "unrecoverable"


class OperationType(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"
    RESTORE = "restore"


class AppConfig(BaseModel):
    """Resolved settings of the managed unit (its .env file)."""

    host_ip: str
    port: int = Field(default=5678, ge=1, le=65535)
    basic_auth_user: str
    basic_auth_password: str
    values: dict[str, str] = Field(default_factory=dict)

    @property
    def base_url(self) -> str:
        return f"http://{self.host_ip}:{self.port}"

    @property
    def credentials(self) -> tuple[str, str]:
        return self.basic_auth_user, self.basic_auth_password

    def redacted(self) -> dict[str, Any]:
        return {
            "host_ip": self.host_ip,
            "port": self.port,
            "basic_auth_user": self.basic_auth_user,
            "basic_auth_password": "***",
        }


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    phase: str | None = None
    message: str
    detail: dict[str, Any] = Field(default_factory=dict)


class DeploymentAttempt(BaseModel):
    """Audit record of one orchestrator invocation.

    Built once the terminal outcome is known and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    operation: OperationType = OperationType.DEPLOY
    started_at: datetime
    ended_at: datetime
    outcome: DeploymentOutcome
    phase: LifecyclePhase = LifecyclePhase.TERMINAL
    transitions: list[LifecyclePhase] = Field(default_factory=list)
    preceding_snapshot: str | None = None
    error: ErrorInfo | None = None
    verification: VerificationReport | None = None
    rollback_verification: VerificationReport | None = None
    snapshots_deleted: int = 0

    @property
    def status(self) -> ResultStatus:
        if self.outcome == DeploymentOutcome.SUCCEEDED:
            return ResultStatus.SUCCESS
        if self.outcome == DeploymentOutcome.ROLLED_BACK:
            # A requested rollback/restore that lands is what the user asked for
            if self.operation == OperationType.DEPLOY:
                return ResultStatus.RECOVERED
            return ResultStatus.SUCCESS
        return ResultStatus.UNRECOVERABLE

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def needs_intervention(self) -> bool:
        return self.outcome == DeploymentOutcome.FAILED_NO_ROLLBACK

    def summary(self) -> str:
        line = f"{self.operation.value} {self.id}: {self.outcome.value} ({self.status.value})"
        if self.preceding_snapshot:
            line += f" snapshot={self.preceding_snapshot}"
        if self.error is not None:
            line += f" [{self.error.kind.value} in {self.error.phase}: {self.error.message}]"
        return line


class RollbackRequest(BaseModel):
    """Body of a rollback request; no id means the most recent snapshot."""

    snapshot_id: str | None = None
