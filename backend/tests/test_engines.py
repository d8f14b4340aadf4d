from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from docker.errors import APIError, DockerException, NotFound

from engines.docker_engine import (
    ComposeSpec,
    DockerEngine,
    HealthState,
    ResourceUsage,
    _parse_stats,
)
from errors import DriverError, ErrorKind


@pytest.fixture()
def spec(tmp_path):
    (tmp_path / "docker-compose.yml").write_text("services: {}\n")
    (tmp_path / ".env").write_text("HOST_IP=10.0.0.5\n")
    return ComposeSpec(
        project_dir=tmp_path,
        compose_file=tmp_path / "docker-compose.yml",
        env_file=tmp_path / ".env",
    )


@pytest.fixture()
def mock_docker_client():
    """Mock Docker SDK client with one running, healthy n8n container."""
    client = MagicMock()
    container = MagicMock()
    container.status = "running"
    container.attrs = {
        "Image": "sha256:abc123",
        "State": {"Health": {"Status": "healthy"}},
    }
    container.logs.return_value = b"line one\nline two\n"
    client.containers.get.return_value = container
    return client


def _make_engine(spec, client=None):
    engine = DockerEngine(spec, container_name="n8n")
    engine._client = client
    engine._compose_cmd = ["docker", "compose"]
    return engine


# ──────────────────────────────────────────────
# ComposeSpec
# ──────────────────────────────────────────────
class TestComposeSpec:
    def test_includes_env_file_when_present(self, spec):
        assert spec.base_args() == [
            "-f", str(spec.compose_file), "--env-file", str(spec.env_file),
        ]

    def test_skips_missing_env_file(self, spec):
        spec.env_file.unlink()
        assert spec.base_args() == ["-f", str(spec.compose_file)]


# ──────────────────────────────────────────────
# Compose commands
# ──────────────────────────────────────────────
class TestCompose:
    async def test_converge_pulls_then_ups(self, spec):
        engine = _make_engine(spec)
        engine._compose = AsyncMock(return_value="")

        await engine.converge(grace_period=20)

        assert [c.args for c in engine._compose.await_args_list] == [
            ("pull",),
            ("up", "-d", "--remove-orphans", "--timeout", "20"),
        ]

    async def test_converge_adopts_new_spec(self, spec, tmp_path):
        engine = _make_engine(spec)
        engine._compose = AsyncMock(return_value="")
        other = ComposeSpec(project_dir=tmp_path, compose_file=tmp_path / "other.yml")

        await engine.converge(other)

        assert engine.spec is other

    async def test_stop_passes_grace_period(self, spec):
        engine = _make_engine(spec)
        engine._compose = AsyncMock(return_value="")

        await engine.stop(grace_period=45)

        engine._compose.assert_awaited_once_with("down", "--timeout", "45")

    async def test_compose_builds_full_argv(self, spec):
        engine = _make_engine(spec)
        engine._run = AsyncMock(return_value=(0, "ok", ""))

        out = await engine._compose("up", "-d")

        assert out == "ok"
        argv = engine._run.await_args.args[0]
        assert argv[:2] == ["docker", "compose"]
        assert argv[-2:] == ["up", "-d"]
        assert "--env-file" in argv

    async def test_compose_failure_raises_driver_error(self, spec):
        engine = _make_engine(spec)
        engine._run = AsyncMock(return_value=(1, "", "pull access denied"))

        with pytest.raises(DriverError) as exc_info:
            await engine._compose("pull")

        assert exc_info.value.kind == ErrorKind.MUTATION_FAILED
        assert exc_info.value.detail["stderr"] == "pull access denied"

    async def test_falls_back_to_standalone_compose(self, spec):
        engine = DockerEngine(spec)
        engine._run = AsyncMock(return_value=(1, "", "unknown command"))

        with patch("engines.docker_engine.shutil.which", return_value="/usr/bin/x"):
            cmd = await engine._detect_compose_command()

        assert cmd == ["docker-compose"]

    async def test_no_compose_installed(self, spec):
        engine = DockerEngine(spec)

        with patch("engines.docker_engine.shutil.which", return_value=None):
            with pytest.raises(DriverError, match="not installed") as exc_info:
                await engine._detect_compose_command()

        assert exc_info.value.kind == ErrorKind.RUNTIME_UNREACHABLE


# ──────────────────────────────────────────────
# Container inspection
# ──────────────────────────────────────────────
class TestInspection:
    async def test_running(self, spec, mock_docker_client):
        engine = _make_engine(spec, mock_docker_client)
        assert await engine.is_managed_unit_running() is True
        mock_docker_client.containers.get.assert_called_with("n8n")

    async def test_missing_container_is_not_running(self, spec, mock_docker_client):
        mock_docker_client.containers.get.side_effect = NotFound("no such container")
        engine = _make_engine(spec, mock_docker_client)

        assert await engine.is_managed_unit_running() is False
        assert await engine.get_health_state() == HealthState.UNHEALTHY
        assert await engine.inspect_unit() == {}
        assert await engine.image_id() is None
        assert await engine.read_recent_logs() == []

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("healthy", HealthState.HEALTHY),
            ("unhealthy", HealthState.UNHEALTHY),
            ("starting", HealthState.UNKNOWN),
        ],
    )
    async def test_health_state(self, spec, mock_docker_client, status, expected):
        container = mock_docker_client.containers.get.return_value
        container.attrs = {"State": {"Health": {"Status": status}}}
        engine = _make_engine(spec, mock_docker_client)

        assert await engine.get_health_state() == expected

    async def test_stopped_container_is_unhealthy(self, spec, mock_docker_client):
        mock_docker_client.containers.get.return_value.status = "exited"
        engine = _make_engine(spec, mock_docker_client)

        assert await engine.get_health_state() == HealthState.UNHEALTHY

    async def test_read_recent_logs(self, spec, mock_docker_client):
        engine = _make_engine(spec, mock_docker_client)

        lines = await engine.read_recent_logs(line_count=20)

        assert lines == ["line one", "line two"]
        container = mock_docker_client.containers.get.return_value
        container.logs.assert_called_once_with(tail=20, stdout=True, stderr=True)

    async def test_image_id(self, spec, mock_docker_client):
        engine = _make_engine(spec, mock_docker_client)
        assert await engine.image_id() == "sha256:abc123"

    async def test_api_error_becomes_driver_error(self, spec, mock_docker_client):
        mock_docker_client.containers.get.side_effect = APIError("server error")
        engine = _make_engine(spec, mock_docker_client)

        with pytest.raises(DriverError, match="Docker API error"):
            await engine.inspect_unit()

    async def test_unreachable_daemon_is_transient(self, spec, mock_docker_client):
        mock_docker_client.ping.side_effect = DockerException("connection refused")
        engine = _make_engine(spec, mock_docker_client)

        with pytest.raises(DriverError) as exc_info:
            await engine.ping()

        assert exc_info.value.transient is True
        assert exc_info.value.kind == ErrorKind.RUNTIME_UNREACHABLE

    async def test_client_unavailable(self, spec):
        engine = DockerEngine(spec)

        with patch("docker.from_env", side_effect=DockerException("no socket")):
            with pytest.raises(DriverError, match="not available"):
                engine._get_client()


# ──────────────────────────────────────────────
# Resource usage
# ──────────────────────────────────────────────
class TestResourceUsage:
    def test_parse_stats(self):
        stats = {
            "cpu_stats": {
                "cpu_usage": {"total_usage": 400},
                "system_cpu_usage": 2000,
                "online_cpus": 2,
            },
            "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000},
            "memory_stats": {"usage": 600, "limit": 1000, "stats": {"inactive_file": 100}},
        }
        assert _parse_stats(stats) == ResourceUsage(cpu_percent=40.0, mem_percent=50.0)

    def test_parse_empty_stats(self):
        assert _parse_stats({}) == ResourceUsage(cpu_percent=0.0, mem_percent=0.0)

    async def test_missing_container_raises(self, spec, mock_docker_client):
        mock_docker_client.containers.get.side_effect = NotFound("gone")
        engine = _make_engine(spec, mock_docker_client)

        with pytest.raises(DriverError, match="not found"):
            await engine.read_resource_usage()


# ──────────────────────────────────────────────
# Volume archiving
# ──────────────────────────────────────────────
class TestVolumes:
    async def test_export_mounts_volume_read_only(self, spec, mock_docker_client, tmp_path):
        engine = _make_engine(spec, mock_docker_client)
        archive = tmp_path / "snap" / "n8n_data.tar.gz"
        archive.parent.mkdir()

        await engine.export_volume("n8n_data", archive)

        args, kwargs = mock_docker_client.containers.run.call_args
        assert args[0] == "alpine"
        assert args[1] == ["tar", "czf", "/backup/n8n_data.tar.gz", "-C", "/data", "."]
        assert kwargs["volumes"]["n8n_data"] == {"bind": "/data", "mode": "ro"}
        assert kwargs["volumes"][str(archive.parent.resolve())]["bind"] == "/backup"
        assert kwargs["remove"] is True

    async def test_import_replaces_volume_contents(self, spec, mock_docker_client, tmp_path):
        engine = _make_engine(spec, mock_docker_client)
        archive = Path(tmp_path) / "n8n_data.tar.gz"

        await engine.import_volume("n8n_data", archive)

        args, kwargs = mock_docker_client.containers.run.call_args
        script = args[1][2]
        assert script.startswith("rm -rf /data/*")
        assert "tar xzf /backup/n8n_data.tar.gz -C /data" in script
        assert kwargs["volumes"]["n8n_data"]["mode"] == "rw"

    async def test_export_failure(self, spec, mock_docker_client, tmp_path):
        mock_docker_client.containers.run.side_effect = APIError("volume not found")
        engine = _make_engine(spec, mock_docker_client)

        with pytest.raises(DriverError):
            await engine.export_volume("n8n_data", tmp_path / "x.tar.gz")
