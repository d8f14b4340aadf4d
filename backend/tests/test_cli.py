import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from cli import cli
from errors import ConcurrentOperationError
from models.deployment import DeploymentAttempt, DeploymentOutcome, OperationType
from models.probe import ProbeResult, VerificationReport
from models.snapshot import Snapshot


def _attempt(outcome, operation=OperationType.DEPLOY):
    started = datetime(2024, 1, 1, 12, tzinfo=UTC)
    return DeploymentAttempt(
        id=f"{operation.value}_20240101_120000_a1b2",
        operation=operation,
        started_at=started,
        ended_at=started + timedelta(seconds=5),
        outcome=outcome,
    )


def _snapshot(tmp_path, snapshot_id):
    return Snapshot(
        id=snapshot_id,
        created_at=datetime(2024, 1, 1, 12, tzinfo=UTC),
        path=tmp_path / snapshot_id,
        size_bytes=2 * 1024 * 1024,
    )


@pytest.fixture()
def mock_orchestrator():
    orch = MagicMock()
    orch.deploy = AsyncMock(return_value=_attempt(DeploymentOutcome.SUCCEEDED))
    orch.rollback = AsyncMock(
        return_value=_attempt(DeploymentOutcome.ROLLED_BACK, OperationType.ROLLBACK)
    )
    orch.restore = AsyncMock(
        return_value=_attempt(DeploymentOutcome.ROLLED_BACK, OperationType.RESTORE)
    )
    orch.list_snapshots.return_value = []
    orch.cleanup.return_value = 0
    return orch


@pytest.fixture()
def invoke(tmp_path, mock_orchestrator):
    """Invoke the CLI against a mocked orchestrator without the audit database."""
    runner = CliRunner()

    def _invoke(*args, input=None):
        with (
            patch("cli.create_orchestrator", return_value=mock_orchestrator),
            patch("cli._configure_logging"),
        ):
            return runner.invoke(
                cli,
                ["--project-root", str(tmp_path), "--no-record", *args],
                input=input,
            )

    return _invoke


class TestDeployCommand:
    def test_success_exits_zero(self, invoke, mock_orchestrator):
        result = invoke("deploy")
        assert result.exit_code == 0
        assert "succeeded (success)" in result.output
        mock_orchestrator.deploy.assert_awaited_once()

    def test_rolled_back_exits_two(self, invoke, mock_orchestrator):
        mock_orchestrator.deploy.return_value = _attempt(DeploymentOutcome.ROLLED_BACK)
        result = invoke("deploy")
        assert result.exit_code == 2
        assert "rolled_back (recovered)" in result.output
        assert "Manual intervention" not in result.output

    def test_unrecoverable_exits_one(self, invoke, mock_orchestrator):
        mock_orchestrator.deploy.return_value = _attempt(DeploymentOutcome.FAILED_NO_ROLLBACK)
        result = invoke("deploy")
        assert result.exit_code == 1
        assert "Manual intervention required" in result.output

    def test_json_output(self, invoke):
        result = invoke("--json", "deploy")
        data = json.loads(result.output)
        assert data["outcome"] == "succeeded"
        assert data["status"] == "success"

    def test_prints_verification_report(self, invoke, mock_orchestrator):
        attempt = _attempt(DeploymentOutcome.SUCCEEDED).model_copy(
            update={
                "verification": VerificationReport(
                    results=[ProbeResult(probe_name="healthz", probe_type="http", passed=True)]
                )
            }
        )
        mock_orchestrator.deploy.return_value = attempt
        result = invoke("deploy")
        assert "[PASS] healthz" in result.output


class TestRollbackCommand:
    def test_defaults_to_most_recent(self, invoke, mock_orchestrator):
        result = invoke("rollback")
        assert result.exit_code == 0
        mock_orchestrator.rollback.assert_awaited_once_with(None)

    def test_named_snapshot(self, invoke, mock_orchestrator):
        invoke("rollback", "backup_20240101_120000")
        mock_orchestrator.rollback.assert_awaited_once_with("backup_20240101_120000")


class TestRestoreCommand:
    def test_latest_without_prompt(self, invoke, mock_orchestrator):
        result = invoke("restore", "--latest", "--yes")
        assert result.exit_code == 0
        args, kwargs = mock_orchestrator.restore.await_args
        assert args[0] == "latest"
        assert kwargs["interactive"] is False

    def test_declined(self, invoke, mock_orchestrator):
        mock_orchestrator.restore.return_value = None
        result = invoke("restore", "backup_20240101_120000")
        assert result.exit_code == 0
        assert "Restore cancelled" in result.output
        assert mock_orchestrator.restore.await_args.kwargs["interactive"] is True

    def test_selects_from_list(self, invoke, mock_orchestrator, tmp_path):
        mock_orchestrator.list_snapshots.return_value = [
            _snapshot(tmp_path, "backup_20240102_120000"),
            _snapshot(tmp_path, "backup_20240101_120000"),
        ]
        result = invoke("restore", "--yes", input="2\n")
        assert result.exit_code == 0
        assert "1. backup_20240102_120000" in result.output
        assert mock_orchestrator.restore.await_args.args[0] == "backup_20240101_120000"

    def test_quit_from_list(self, invoke, mock_orchestrator, tmp_path):
        mock_orchestrator.list_snapshots.return_value = [_snapshot(tmp_path, "backup_20240101_120000")]
        result = invoke("restore", input="q\n")
        assert result.exit_code == 0
        mock_orchestrator.restore.assert_not_awaited()

    def test_invalid_selection(self, invoke, mock_orchestrator, tmp_path):
        mock_orchestrator.list_snapshots.return_value = [_snapshot(tmp_path, "backup_20240101_120000")]
        result = invoke("restore", input="7\n")
        assert result.exit_code == 1
        assert "Invalid selection" in result.output

    def test_no_backups(self, invoke):
        result = invoke("restore")
        assert result.exit_code == 1
        assert "No backups found" in result.output


class TestBackupCommands:
    def test_default_creates(self, invoke, mock_orchestrator, tmp_path):
        mock_orchestrator.backup = AsyncMock(return_value=_snapshot(tmp_path, "backup_20240101_120000"))
        result = invoke("backup")
        assert result.exit_code == 0
        assert "Backup created: backup_20240101_120000" in result.output
        assert "2.0 MB" in result.output

    def test_create_while_locked(self, invoke, mock_orchestrator):
        mock_orchestrator.backup = AsyncMock(side_effect=ConcurrentOperationError("busy"))
        result = invoke("backup", "create")
        assert result.exit_code == 1
        assert "ConcurrentOperationInProgress" in result.output

    def test_list(self, invoke, mock_orchestrator, tmp_path):
        mock_orchestrator.list_snapshots.return_value = [_snapshot(tmp_path, "backup_20240101_120000")]
        result = invoke("backup", "list")
        assert "Available backups:" in result.output
        assert "backup_20240101_120000" in result.output

    def test_cleanup_days(self, invoke, mock_orchestrator):
        mock_orchestrator.cleanup.return_value = 3
        result = invoke("backup", "cleanup", "--days", "7")
        assert "Deleted 3 backup(s)" in result.output
        mock_orchestrator.cleanup.assert_called_once_with(7)

    def test_cleanup_while_locked(self, invoke, mock_orchestrator):
        mock_orchestrator.cleanup.side_effect = ConcurrentOperationError("busy")
        result = invoke("backup", "cleanup")
        assert result.exit_code == 1
        assert "Cleanup failed" in result.output
        assert "ConcurrentOperationInProgress" in result.output

    def test_snapshots_list_json(self, invoke, mock_orchestrator, tmp_path):
        mock_orchestrator.list_snapshots.return_value = [_snapshot(tmp_path, "backup_20240101_120000")]
        result = invoke("--json", "snapshots", "list")
        assert json.loads(result.output)[0]["id"] == "backup_20240101_120000"


class TestProbeCommand:
    def test_all_passed(self, invoke, mock_orchestrator):
        mock_orchestrator.run_probes = AsyncMock(
            return_value=VerificationReport(
                results=[ProbeResult(probe_name="liveness", probe_type="liveness", passed=True)]
            )
        )
        result = invoke("probe")
        assert result.exit_code == 0
        assert "1/1 probes passed" in result.output

    def test_failure_exits_one(self, invoke, mock_orchestrator):
        mock_orchestrator.run_probes = AsyncMock(
            return_value=VerificationReport(
                results=[ProbeResult(probe_name="log-errors", probe_type="logs", passed=False)]
            )
        )
        result = invoke("probe")
        assert result.exit_code == 1
