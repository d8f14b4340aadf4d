import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from audit import list_attempts, session_sink
from database import async_session, get_session
from engines.lifecycle import LifecycleOrchestrator, create_orchestrator
from errors import ErrorKind, LifecycleError
from models.deployment import DeploymentAttempt, RollbackRequest

logger = logging.getLogger(__name__)

router = APIRouter()

_orchestrator: LifecycleOrchestrator | None = None


def get_orchestrator() -> LifecycleOrchestrator:
    """Dependency that returns the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = create_orchestrator(attempt_sink=session_sink(async_session))
    return _orchestrator


def _attempt_response(attempt: DeploymentAttempt) -> dict:
    return {
        **attempt.model_dump(mode="json"),
        "status": attempt.status.value,
        "needs_intervention": attempt.needs_intervention,
    }


def _http_error(e: LifecycleError) -> HTTPException:
    status = {
        ErrorKind.CONCURRENT_OPERATION: 409,
        ErrorKind.NO_SNAPSHOT_AVAILABLE: 404,
        ErrorKind.INVALID_CONFIG: 422,
    }.get(e.kind, 500)
    return HTTPException(
        status_code=status,
        detail={"kind": e.kind.value, "message": e.message, "detail": e.detail},
    )


# ── deployments ──────────────────────────────


@router.post("/deployments")
async def create_deployment(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """Run a full deploy: preflight, snapshot, converge, verify."""
    attempt = await orchestrator.deploy()
    return _attempt_response(attempt)


@router.post("/deployments/rollback")
async def rollback_deployment(
    request: RollbackRequest | None = None,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
):
    """Roll back to a snapshot (most recent if none given)."""
    snapshot_id = request.snapshot_id if request else None
    attempt = await orchestrator.rollback(snapshot_id)
    return _attempt_response(attempt)


@router.get("/deployments")
async def list_deployments(limit: int = 50, session: AsyncSession = Depends(get_session)):
    """Audit log of lifecycle operations, newest first."""
    attempts = await list_attempts(session, limit=limit)
    return [_attempt_response(a) for a in attempts]


# ── snapshots ──────────────────────────────


@router.get("/snapshots")
async def list_snapshots(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    return [s.model_dump(mode="json") for s in orchestrator.list_snapshots()]


@router.post("/snapshots", status_code=201)
async def create_snapshot(orchestrator: LifecycleOrchestrator = Depends(get_orchestrator)):
    """Take an on-demand snapshot."""
    try:
        snapshot = await orchestrator.backup()
    except LifecycleError as e:
        logger.error("Backup failed: %s", e.message)
        raise _http_error(e) from e
    return snapshot.model_dump(mode="json")


@router.post("/snapshots/{snapshot_id}/restore")
async def restore_snapshot(
    snapshot_id: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
):
    """Restore a snapshot. The API call itself is the confirmation."""
    if orchestrator.store.get(snapshot_id) is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    attempt = await orchestrator.restore(snapshot_id)
    return _attempt_response(attempt)


@router.delete("/snapshots/{snapshot_id}")
async def delete_snapshot(
    snapshot_id: str,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
):
    try:
        deleted = orchestrator.delete_snapshot(snapshot_id)
    except LifecycleError as e:
        raise _http_error(e) from e
    if not deleted:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return {"snapshot_id": snapshot_id, "deleted": True}
