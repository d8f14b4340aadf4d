import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from errors import ConfigError, ErrorKind, LifecycleError
from models.deployment import (
    AppConfig,
    DeploymentAttempt,
    DeploymentOutcome,
    ErrorInfo,
    LifecyclePhase,
    OperationType,
)
from models.probe import VerificationReport
from models.snapshot import Snapshot, SnapshotSources
from observability.metrics import METRICS
from probes.container_probe import ContainerHealthProbe
from probes.probe_set import ProbeSet, build_default_probe_set
from safety.guardrails import OperationLock, confirm_restore, validate_app_config
from safety.health_check import BackoffPolicy, HealthCheckLoop
from safety.rollback import RollbackManager, RollbackResult
from settings import LifecycleSettings

from .docker_engine import ComposeSpec

logger = logging.getLogger(__name__)

AttemptSink = Callable[[DeploymentAttempt], Awaitable[None]]


def compose_spec_for(settings: LifecycleSettings) -> ComposeSpec:
    return ComposeSpec(
        project_dir=settings.root,
        compose_file=settings.compose_path,
        env_file=settings.env_path,
    )


def _error_info(e: BaseException, kind: ErrorKind, phase: LifecyclePhase) -> ErrorInfo:
    if isinstance(e, LifecycleError):
        return ErrorInfo(kind=kind, phase=phase.value, message=e.message, detail=e.detail)
    return ErrorInfo(kind=kind, phase=phase.value, message=str(e) or type(e).__name__)


class _AttemptTracker:
    """Phase bookkeeping for one operation; produces the frozen attempt."""

    def __init__(self, operation: OperationType, now: datetime):
        self.operation = operation
        self.started_at = now
        self.id = f"{operation.value}_{now:%Y%m%d_%H%M%S}_{secrets.token_hex(2)}"
        self.transitions: list[LifecyclePhase] = [LifecyclePhase.IDLE]
        self.preceding_snapshot: str | None = None
        self.verification: VerificationReport | None = None
        self.rollback_verification: VerificationReport | None = None
        self.snapshots_deleted = 0
        self._monotonic_start = time.monotonic()

    @property
    def phase(self) -> LifecyclePhase:
        return self.transitions[-1]

    def enter(self, phase: LifecyclePhase) -> None:
        logger.info("[%s] %s -> %s", self.id, self.phase.value, phase.value)
        self.transitions.append(phase)

    def finish(
        self, outcome: DeploymentOutcome, now: datetime, error: ErrorInfo | None = None
    ) -> DeploymentAttempt:
        self.enter(LifecyclePhase.TERMINAL)
        return DeploymentAttempt(
            id=self.id,
            operation=self.operation,
            started_at=self.started_at,
            ended_at=now,
            outcome=outcome,
            phase=LifecyclePhase.TERMINAL,
            transitions=list(self.transitions),
            preceding_snapshot=self.preceding_snapshot,
            error=error,
            verification=self.verification,
            rollback_verification=self.rollback_verification,
            snapshots_deleted=self.snapshots_deleted,
        )

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._monotonic_start


class LifecycleOrchestrator:
    """Deploy, rollback and restore for one managed unit.

    A deploy walks preflight -> snapshotting -> mutating -> verifying and then
    either commits or rolls back to the snapshot it just took. Recovery depth
    is one: a failed rollback ends the attempt as failed_no_rollback.
    Expected failures never raise; they come back as a DeploymentAttempt
    whose `error` names the kind and phase.
    """

    def __init__(
        self,
        settings: LifecycleSettings,
        driver,
        store,
        config_source,
        probe_set_factory: Callable[..., ProbeSet] = build_default_probe_set,
        lock: OperationLock | None = None,
        attempt_sink: AttemptSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self.driver = driver
        self.store = store
        self.config_source = config_source
        self.probe_set_factory = probe_set_factory
        self.lock = lock or OperationLock(settings.backup_path / ".locks", settings.container_name)
        self.attempt_sink = attempt_sink
        self.clock = clock
        self.sleep = sleep
        self._now = now or (lambda: datetime.now(UTC))

    @property
    def unit_id(self) -> str:
        return self.settings.container_name

    # ── wiring ──────────────────────────────

    def compose_spec(self) -> ComposeSpec:
        return compose_spec_for(self.settings)

    def snapshot_sources(self) -> SnapshotSources:
        return SnapshotSources(
            files={
                "env": self.settings.env_path,
                "compose": self.settings.compose_path,
                "dockerfile": self.settings.root / "Dockerfile",
            },
            volume_name=self.settings.volume_name,
            unit_id=self.unit_id,
        )

    def _probe_set(self, config: AppConfig | None) -> ProbeSet:
        if config is None:
            logger.warning("No usable configuration, verifying liveness only")
            return ProbeSet(primary=ContainerHealthProbe("liveness", self.driver, self.unit_id))
        return self.probe_set_factory(config, self.driver, self.settings)

    def verifier(self, config: AppConfig | None) -> HealthCheckLoop:
        s = self.settings
        return HealthCheckLoop(
            self._probe_set(config),
            timeout=s.healthcheck_timeout,
            backoff=BackoffPolicy(s.healthcheck_interval, s.healthcheck_backoff, s.healthcheck_max_interval),
            probe_timeout=s.probe_timeout,
            driver=self.driver,
            unit_id=self.unit_id,
            clock=self.clock,
            sleep=self.sleep,
        )

    def _rollback_verifier_factory(self, fallback: AppConfig | None):
        """Verify against the restored .env, falling back to the config in use."""

        def factory() -> HealthCheckLoop:
            try:
                config = self.config_source.resolve()
            except ConfigError as e:
                logger.warning("Restored configuration is not usable: %s", e.message)
                config = fallback
            return self.verifier(config)

        return factory

    def _rollback_manager(self, fallback: AppConfig | None) -> RollbackManager:
        return RollbackManager(
            self.driver,
            self.store,
            self._rollback_verifier_factory(fallback),
            unit_id=self.unit_id,
            grace_period=self.settings.stop_grace_period,
            start_timeout=self.settings.converge_timeout,
        )

    # ── bookkeeping ──────────────────────────────

    def _begin(self, operation: OperationType) -> _AttemptTracker:
        METRICS.record_operation_start()
        tracker = _AttemptTracker(operation, self._now())
        logger.info("Starting %s %s", operation.value, tracker.id)
        return tracker

    async def _end(
        self,
        tracker: _AttemptTracker,
        outcome: DeploymentOutcome,
        error: ErrorInfo | None = None,
    ) -> DeploymentAttempt:
        attempt = tracker.finish(outcome, self._now(), error)
        METRICS.record_operation_end(tracker.operation.value, outcome.value, tracker.elapsed)

        if outcome == DeploymentOutcome.SUCCEEDED:
            logger.info("%s", attempt.summary())
        elif outcome == DeploymentOutcome.ROLLED_BACK:
            logger.warning("%s", attempt.summary())
        else:
            logger.critical("%s", attempt.summary())
            logger.critical("Manual intervention required for %s", self.unit_id)

        if self.attempt_sink is not None:
            try:
                await self.attempt_sink(attempt)
            except Exception as e:
                logger.warning("Could not persist attempt %s: %s", attempt.id, e)
        return attempt

    def _acquire(self) -> ErrorInfo | None:
        try:
            self.lock.acquire()
        except LifecycleError as e:
            return _error_info(e, ErrorKind.CONCURRENT_OPERATION, LifecyclePhase.PREFLIGHT)
        return None

    # ── deploy ──────────────────────────────

    async def _preflight(self, config: AppConfig | None) -> AppConfig:
        compose_path = self.settings.compose_path
        if not compose_path.is_file():
            raise ConfigError(
                f"{compose_path.name} not found at {compose_path}",
                detail={"compose_file": str(compose_path)},
            )
        if config is None:
            config = self.config_source.resolve()
        else:
            config = validate_app_config(config)
        logger.info("Configuration validated: %s", config.redacted())

        try:
            await self.driver.ping()
        except (LifecycleError, TimeoutError) as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            raise LifecycleError(
                f"Container runtime is not reachable: {message}",
                kind=ErrorKind.RUNTIME_UNREACHABLE,
                phase=LifecyclePhase.PREFLIGHT.value,
                detail=getattr(e, "detail", {}),
            ) from e

        self.store.check_writable()
        return config

    async def _mutate(self) -> None:
        try:
            await asyncio.wait_for(
                self.driver.converge(self.compose_spec(), self.settings.stop_grace_period),
                timeout=self.settings.converge_timeout,
            )
        except TimeoutError as e:
            raise LifecycleError(
                f"Converge did not finish within {self.settings.converge_timeout:.0f}s",
                kind=ErrorKind.MUTATION_FAILED,
                phase=LifecyclePhase.MUTATING.value,
            ) from e

    async def _recover(
        self,
        tracker: _AttemptTracker,
        snapshot: Snapshot,
        cause: ErrorInfo,
        config: AppConfig | None,
    ) -> tuple[DeploymentOutcome, ErrorInfo]:
        tracker.enter(LifecyclePhase.ROLLING_BACK)
        logger.error("%s during %s: %s", cause.kind.value, cause.phase, cause.message)

        # Re-read from disk; the directory may have gone away since it was taken
        current = self.store.get(snapshot.id)
        result: RollbackResult = await self._rollback_manager(config).rollback(current)
        tracker.rollback_verification = result.verification

        if result.succeeded:
            return DeploymentOutcome.ROLLED_BACK, cause

        error = result.error.to_info(LifecyclePhase.ROLLING_BACK.value)
        detail = dict(error.detail)
        detail["cause"] = cause.model_dump(mode="json")
        return DeploymentOutcome.FAILED_NO_ROLLBACK, error.model_copy(update={"detail": detail})

    async def deploy(self, config: AppConfig | None = None) -> DeploymentAttempt:
        tracker = self._begin(OperationType.DEPLOY)
        tracker.enter(LifecyclePhase.PREFLIGHT)

        lock_error = self._acquire()
        if lock_error is not None:
            return await self._end(tracker, DeploymentOutcome.FAILED_NO_ROLLBACK, lock_error)

        try:
            return await self._deploy(tracker, config)
        finally:
            self.lock.release()

    async def _deploy(self, tracker: _AttemptTracker, config: AppConfig | None) -> DeploymentAttempt:
        try:
            config = await self._preflight(config)
        except LifecycleError as e:
            return await self._end(
                tracker,
                DeploymentOutcome.FAILED_NO_ROLLBACK,
                _error_info(e, e.kind, LifecyclePhase.PREFLIGHT),
            )

        tracker.enter(LifecyclePhase.SNAPSHOTTING)
        try:
            snapshot = await self.store.create(self.snapshot_sources())
        except LifecycleError as e:
            return await self._end(
                tracker,
                DeploymentOutcome.FAILED_NO_ROLLBACK,
                _error_info(e, ErrorKind.SNAPSHOT_FAILED, LifecyclePhase.SNAPSHOTTING),
            )
        tracker.preceding_snapshot = snapshot.id

        cause: ErrorInfo | None = None
        try:
            tracker.enter(LifecyclePhase.MUTATING)
            try:
                await self._mutate()
            except LifecycleError as e:
                cause = _error_info(e, ErrorKind.MUTATION_FAILED, LifecyclePhase.MUTATING)
            except Exception as e:
                logger.exception("Unexpected error while converging")
                cause = _error_info(e, ErrorKind.MUTATION_FAILED, LifecyclePhase.MUTATING)

            if cause is None:
                tracker.enter(LifecyclePhase.VERIFYING)
                report = await self.verifier(config).run()
                tracker.verification = report
                if report.timed_out:
                    cause = ErrorInfo(
                        kind=ErrorKind.VERIFICATION_TIMEOUT,
                        phase=LifecyclePhase.VERIFYING.value,
                        message=f"Unit did not become healthy within {self.settings.healthcheck_timeout:.0f}s",
                        detail={"liveness_attempts": report.liveness_attempts},
                    )
                elif not report.passed:
                    failed = [r.probe_name for r in report.failed_probes() if r.critical]
                    cause = ErrorInfo(
                        kind=ErrorKind.VERIFICATION_FAILED,
                        phase=LifecyclePhase.VERIFYING.value,
                        message=f"Critical probe(s) failed: {', '.join(failed)}",
                        detail={"failed_probes": failed},
                    )
        except asyncio.CancelledError:
            logger.warning("Deployment %s cancelled in %s, rolling back", tracker.id, tracker.phase.value)
            cancelled = ErrorInfo(
                kind=ErrorKind.MUTATION_FAILED,
                phase=tracker.phase.value,
                message="Deployment cancelled",
            )
            outcome, error = await self._recover(tracker, snapshot, cancelled, config)
            await self._end(tracker, outcome, error)
            raise

        if cause is not None:
            outcome, error = await self._recover(tracker, snapshot, cause, config)
            return await self._end(tracker, outcome, error)

        tracker.enter(LifecyclePhase.COMMITTED)
        try:
            tracker.snapshots_deleted = self.store.keep_most_recent(self.settings.backup_retention_count)
        except OSError as e:
            logger.warning("Snapshot retention cleanup failed: %s", e)
        logger.info("Deployment completed successfully")
        return await self._end(tracker, DeploymentOutcome.SUCCEEDED)

    # ── rollback / restore ──────────────────────────────

    async def _restore_to(self, tracker: _AttemptTracker, snapshot: Snapshot) -> DeploymentAttempt:
        tracker.preceding_snapshot = snapshot.id
        tracker.enter(LifecyclePhase.ROLLING_BACK)
        try:
            fallback = self.config_source.resolve()
        except ConfigError:
            fallback = None
        result = await self._rollback_manager(fallback).rollback(snapshot)
        tracker.rollback_verification = result.verification
        if result.succeeded:
            return await self._end(tracker, DeploymentOutcome.ROLLED_BACK)
        return await self._end(
            tracker,
            DeploymentOutcome.FAILED_NO_ROLLBACK,
            result.error.to_info(LifecyclePhase.ROLLING_BACK.value),
        )

    async def rollback(self, snapshot_ref: str | None = None) -> DeploymentAttempt:
        """Roll the unit back to a snapshot, or to the most recent one."""
        return await self._run_restore(OperationType.ROLLBACK, snapshot_ref)

    async def restore(
        self,
        snapshot_ref: str | None = "latest",
        interactive: bool = False,
        confirm: Callable[[Snapshot], bool] | None = None,
    ) -> DeploymentAttempt | None:
        """User-requested restore. Returns None if the user declines."""
        return await self._run_restore(OperationType.RESTORE, snapshot_ref, interactive, confirm)

    async def _run_restore(
        self,
        operation: OperationType,
        snapshot_ref: str | None,
        interactive: bool = False,
        confirm: Callable[[Snapshot], bool] | None = None,
    ) -> DeploymentAttempt | None:
        try:
            snapshot = self.store.resolve(snapshot_ref)
        except LifecycleError as e:
            tracker = self._begin(operation)
            tracker.enter(LifecyclePhase.PREFLIGHT)
            return await self._end(
                tracker,
                DeploymentOutcome.FAILED_NO_ROLLBACK,
                _error_info(e, e.kind, LifecyclePhase.PREFLIGHT),
            )

        if interactive and not confirm_restore(snapshot, confirm):
            return None

        tracker = self._begin(operation)
        tracker.enter(LifecyclePhase.PREFLIGHT)
        lock_error = self._acquire()
        if lock_error is not None:
            return await self._end(tracker, DeploymentOutcome.FAILED_NO_ROLLBACK, lock_error)
        try:
            return await self._restore_to(tracker, snapshot)
        finally:
            self.lock.release()

    # ── snapshots ──────────────────────────────

    async def backup(self) -> Snapshot:
        """On-demand snapshot followed by age-based cleanup."""
        async with self.lock:
            snapshot = await self.store.create(self.snapshot_sources())
            self.store.delete_older_than(timedelta(days=self.settings.backup_retention_days))
        return snapshot

    def list_snapshots(self) -> list[Snapshot]:
        return self.store.list_snapshots()

    def cleanup(self, days: int | None = None) -> int:
        """Delete snapshots older than days; fails fast while another operation runs."""
        days = days if days is not None else self.settings.backup_retention_days
        with self.lock:
            return self.store.delete_older_than(timedelta(days=days))

    def delete_snapshot(self, snapshot_id: str) -> bool:
        with self.lock:
            return self.store.delete(snapshot_id)

    # ── probes ──────────────────────────────

    async def run_probes(self, config: AppConfig | None = None) -> VerificationReport:
        """Run the full probe set once against the running unit."""
        if config is None:
            config = self.config_source.resolve()
        return await self.verifier(config).run(single_attempt=True)


def create_orchestrator(
    settings: LifecycleSettings | None = None,
    attempt_sink: AttemptSink | None = None,
) -> LifecycleOrchestrator:
    """Wire the Docker driver, filesystem store and .env source together."""
    from config_source import EnvFileConfigSource
    from safety.snapshot import SnapshotStore
    from settings import get_settings

    from .docker_engine import DockerEngine

    settings = settings or get_settings()
    driver = DockerEngine(
        compose_spec_for(settings),
        container_name=settings.container_name,
        command_timeout=settings.converge_timeout,
    )
    store = SnapshotStore(
        settings.backup_path,
        targets={
            "env": settings.env_path,
            "compose": settings.compose_path,
            "dockerfile": settings.root / "Dockerfile",
        },
        volume_name=settings.volume_name,
        volume_io=driver,
        pointer_path=settings.root / ".last_backup",
        volume_timeout=settings.volume_timeout,
    )
    return LifecycleOrchestrator(
        settings,
        driver,
        store,
        EnvFileConfigSource(settings.env_path),
        attempt_sink=attempt_sink,
    )
