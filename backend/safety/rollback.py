import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from errors import ErrorKind, LifecycleError
from models.deployment import DeploymentOutcome
from models.probe import VerificationReport
from models.snapshot import Snapshot
from observability.metrics import METRICS
from safety.health_check import HealthCheckLoop

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    outcome: DeploymentOutcome
    snapshot_id: str | None = None
    restored: list[str] = field(default_factory=list)
    verification: VerificationReport | None = None
    error: LifecycleError | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == DeploymentOutcome.ROLLED_BACK


class RollbackManager:
    """Restores the managed unit from a snapshot and verifies it once.

    Stop is best-effort; restore and restart failures end the rollback
    immediately as unrecoverable. There is no rollback of a rollback.
    """

    def __init__(
        self,
        driver,
        store,
        verifier_factory: Callable[[], HealthCheckLoop],
        unit_id: str,
        grace_period: int = 30,
        start_timeout: float = 600.0,
    ):
        self.driver = driver
        self.store = store
        self.verifier_factory = verifier_factory
        self.unit_id = unit_id
        self.grace_period = grace_period
        self.start_timeout = start_timeout

    def _failed(self, snapshot_id, error: LifecycleError, **kwargs) -> RollbackResult:
        METRICS.record_rollback("failed")
        logger.error("Rollback failed: %s", error.message)
        return RollbackResult(
            outcome=DeploymentOutcome.FAILED_NO_ROLLBACK,
            snapshot_id=snapshot_id,
            error=error,
            **kwargs,
        )

    async def rollback(self, snapshot: Snapshot | None) -> RollbackResult:
        if snapshot is None:
            return self._failed(
                None,
                LifecycleError(
                    "No snapshot available for rollback",
                    kind=ErrorKind.NO_SNAPSHOT_AVAILABLE,
                    phase="rolling_back",
                ),
            )

        logger.warning("Rolling back to snapshot %s...", snapshot.id)

        try:
            await asyncio.wait_for(
                self.driver.stop(self.unit_id, self.grace_period),
                timeout=self.grace_period + self.start_timeout,
            )
        except (LifecycleError, TimeoutError) as e:
            logger.warning("Could not stop %s cleanly, restoring anyway: %s", self.unit_id, e)

        try:
            restored = await self.store.restore(snapshot)
        except LifecycleError as e:
            e.phase = "rolling_back"
            return self._failed(snapshot.id, e)

        try:
            await asyncio.wait_for(self.driver.start(), timeout=self.start_timeout)
        except (LifecycleError, TimeoutError) as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            return self._failed(
                snapshot.id,
                LifecycleError(
                    f"Could not start unit from snapshot {snapshot.id}: {message}",
                    kind=ErrorKind.ROLLBACK_FAILED,
                    phase="rolling_back",
                    detail=getattr(e, "detail", {}),
                ),
                restored=restored,
            )

        report = await self.verifier_factory().run()
        if not report.passed:
            return self._failed(
                snapshot.id,
                LifecycleError(
                    f"Verification after rollback to {snapshot.id} failed",
                    kind=ErrorKind.ROLLBACK_FAILED,
                    phase="rolling_back",
                    detail={
                        "failed_probes": [r.probe_name for r in report.failed_probes()],
                        "timed_out": report.timed_out,
                    },
                ),
                restored=restored,
                verification=report,
            )

        METRICS.record_rollback("success")
        logger.info("Rollback to %s completed successfully", snapshot.id)
        return RollbackResult(
            outcome=DeploymentOutcome.ROLLED_BACK,
            snapshot_id=snapshot.id,
            restored=restored,
            verification=report,
        )
