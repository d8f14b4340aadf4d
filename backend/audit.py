import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import DeploymentAttemptRecord, ProbeResultRecord
from models.deployment import DeploymentAttempt, ErrorInfo, LifecyclePhase
from models.probe import VerificationReport

logger = logging.getLogger(__name__)


def attempt_to_record(attempt: DeploymentAttempt) -> DeploymentAttemptRecord:
    return DeploymentAttemptRecord(
        id=attempt.id,
        operation=attempt.operation.value,
        outcome=attempt.outcome.value,
        status=attempt.status.value,
        phase=attempt.phase.value,
        transitions=[p.value for p in attempt.transitions],
        started_at=attempt.started_at,
        ended_at=attempt.ended_at,
        preceding_snapshot=attempt.preceding_snapshot,
        error_kind=attempt.error.kind.value if attempt.error else None,
        error=attempt.error.model_dump(mode="json") if attempt.error else None,
        verification=attempt.verification.model_dump(mode="json") if attempt.verification else None,
        rollback_verification=(
            attempt.rollback_verification.model_dump(mode="json")
            if attempt.rollback_verification
            else None
        ),
        snapshots_deleted=attempt.snapshots_deleted,
        summary=attempt.summary(),
    )


def record_to_attempt(rec: DeploymentAttemptRecord) -> DeploymentAttempt:
    """Convert a DB record back to a DeploymentAttempt."""

    def report(data):
        if not data:
            return None
        # computed fields are dumped but not accepted back
        data = {k: v for k, v in data.items() if k not in ("passed", "all_passed")}
        return VerificationReport.model_validate(data)

    return DeploymentAttempt(
        id=rec.id,
        operation=rec.operation,
        started_at=rec.started_at,
        ended_at=rec.ended_at,
        outcome=rec.outcome,
        phase=LifecyclePhase(rec.phase),
        transitions=[LifecyclePhase(p) for p in rec.transitions or []],
        preceding_snapshot=rec.preceding_snapshot,
        error=ErrorInfo.model_validate(rec.error) if rec.error else None,
        verification=report(rec.verification),
        rollback_verification=report(rec.rollback_verification),
        snapshots_deleted=rec.snapshots_deleted or 0,
    )


async def save_attempt(session: AsyncSession, attempt: DeploymentAttempt) -> None:
    session.add(attempt_to_record(attempt))
    for report in (attempt.verification, attempt.rollback_verification):
        if report is None:
            continue
        for result in report.results:
            session.add(
                ProbeResultRecord(
                    attempt_id=attempt.id,
                    probe_name=result.probe_name,
                    probe_type=result.probe_type,
                    passed=result.passed,
                    critical=result.critical,
                    duration_ms=result.duration_ms,
                    result=result.model_dump(mode="json"),
                    executed_at=result.executed_at,
                )
            )
    await session.commit()
    logger.debug("Persisted attempt %s", attempt.id)


async def list_attempts(session: AsyncSession, limit: int = 50) -> list[DeploymentAttempt]:
    result = await session.execute(
        select(DeploymentAttemptRecord)
        .order_by(DeploymentAttemptRecord.started_at.desc())
        .limit(limit)
    )
    return [record_to_attempt(r) for r in result.scalars().all()]


def session_sink(session_factory):
    """Attempt sink that writes each attempt in its own session."""

    async def sink(attempt: DeploymentAttempt) -> None:
        async with session_factory() as session:
            await save_attempt(session, attempt)

    return sink
