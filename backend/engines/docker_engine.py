import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from errors import DriverError, ErrorKind
from safety.guardrails import with_timeout

logger = logging.getLogger(__name__)

HELPER_IMAGE = "alpine"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ResourceUsage:
    cpu_percent: float
    mem_percent: float


@dataclass
class ComposeSpec:
    """Declared state of the managed unit: a compose project on disk."""

    project_dir: Path
    compose_file: Path
    env_file: Path | None = None
    services: list[str] = field(default_factory=list)

    def base_args(self) -> list[str]:
        args = ["-f", str(self.compose_file)]
        if self.env_file is not None and Path(self.env_file).exists():
            args += ["--env-file", str(self.env_file)]
        return args


class DockerEngine:
    """Runtime driver for the managed unit.

    Container inspection, logs, stats and volume archiving go through the
    Docker SDK; convergence shells out to `docker compose` since the SDK has
    no compose support. Blocking SDK calls run in a worker thread so every
    call can be bounded with asyncio.wait_for.
    """

    def __init__(
        self,
        spec: ComposeSpec,
        container_name: str = "n8n",
        command_timeout: float = 600.0,
    ):
        self.spec = spec
        self.container_name = container_name
        self.command_timeout = command_timeout
        self._client = None
        self._compose_cmd: list[str] | None = None

    def _get_client(self):
        """Lazy-load the Docker SDK client."""
        if self._client is None:
            import docker
            from docker.errors import DockerException

            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise DriverError(
                    f"Docker daemon is not available: {e}",
                    kind=ErrorKind.RUNTIME_UNREACHABLE,
                    transient=True,
                ) from e
        return self._client

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking SDK call in a thread, converting Docker errors."""
        from docker.errors import APIError, DockerException, NotFound
        from requests.exceptions import ConnectionError as RequestsConnectionError

        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except NotFound:
            raise
        except APIError as e:
            raise DriverError(f"Docker API error: {e.explanation or e}") from e
        except (RequestsConnectionError, DockerException) as e:
            raise DriverError(
                f"Docker daemon is not reachable: {e}",
                kind=ErrorKind.RUNTIME_UNREACHABLE,
                transient=True,
            ) from e

    async def _detect_compose_command(self) -> list[str]:
        """Prefer the compose plugin, fall back to the standalone binary."""
        if self._compose_cmd is not None:
            return self._compose_cmd
        if shutil.which("docker"):
            code, _, _ = await self._run(["docker", "compose", "version"], timeout=15)
            if code == 0:
                self._compose_cmd = ["docker", "compose"]
                return self._compose_cmd
        if shutil.which("docker-compose"):
            self._compose_cmd = ["docker-compose"]
            return self._compose_cmd
        raise DriverError(
            "Docker Compose is not installed",
            kind=ErrorKind.RUNTIME_UNREACHABLE,
        )

    async def _run(self, argv: list[str], timeout: float | None = None) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.spec.project_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        limit = timeout or self.command_timeout
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise DriverError(
                f"Command timed out after {limit}s: {' '.join(argv)}",
                detail={"command": argv},
            )
        return (
            proc.returncode,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )

    async def _compose(self, *args: str, timeout: float | None = None) -> str:
        cmd = await self._detect_compose_command()
        argv = [*cmd, *self.spec.base_args(), *args]
        logger.info("Running: %s", " ".join(argv))
        code, stdout, stderr = await self._run(argv, timeout=timeout)
        if code != 0:
            raise DriverError(
                f"'{' '.join(args)}' exited with {code}",
                detail={"command": argv, "stderr": stderr[-2000:], "stdout": stdout[-2000:]},
            )
        return stdout

    @with_timeout(seconds=30)
    async def ping(self) -> None:
        """Verify the Docker daemon and compose are usable."""
        client = self._get_client()
        await self._call(client.ping)
        await self._detect_compose_command()

    async def _get_container(self, unit_id: str | None = None):
        from docker.errors import NotFound

        client = self._get_client()
        try:
            return await self._call(client.containers.get, unit_id or self.container_name)
        except NotFound:
            return None

    async def is_managed_unit_running(self) -> bool:
        container = await self._get_container()
        return container is not None and container.status == "running"

    async def converge(self, spec: ComposeSpec | None = None, grace_period: int = 30) -> None:
        """Pull images and bring the unit in line with the declared spec.

        Compose only recreates containers whose image or configuration
        changed, so converging an already converged unit restarts nothing.
        """
        if spec is not None:
            self.spec = spec
        logger.info("Pulling latest images...")
        await self._compose("pull")
        logger.info("Starting %s containers...", self.container_name)
        await self._compose("up", "-d", "--remove-orphans", "--timeout", str(grace_period))

    async def start(self) -> None:
        await self._compose("up", "-d")

    async def stop(self, unit_id: str | None = None, grace_period: int = 30) -> None:
        logger.info("Stopping %s (grace %ds)", unit_id or self.container_name, grace_period)
        await self._compose("down", "--timeout", str(grace_period))

    async def get_health_state(self, unit_id: str | None = None) -> HealthState:
        container = await self._get_container(unit_id)
        if container is None or container.status != "running":
            return HealthState.UNHEALTHY
        health = container.attrs.get("State", {}).get("Health", {}).get("Status")
        if health == "healthy":
            return HealthState.HEALTHY
        if health == "unhealthy":
            return HealthState.UNHEALTHY
        return HealthState.UNKNOWN

    async def read_recent_logs(self, unit_id: str | None = None, line_count: int = 50) -> list[str]:
        container = await self._get_container(unit_id)
        if container is None:
            return []
        raw = await self._call(container.logs, tail=line_count, stdout=True, stderr=True)
        return raw.decode(errors="replace").splitlines()

    async def read_resource_usage(self, unit_id: str | None = None) -> ResourceUsage:
        container = await self._get_container(unit_id)
        if container is None:
            raise DriverError(f"Container {unit_id or self.container_name} not found")
        stats = await self._call(container.stats, stream=False)
        return _parse_stats(stats)

    async def inspect_unit(self, unit_id: str | None = None) -> dict[str, Any]:
        container = await self._get_container(unit_id)
        if container is None:
            return {}
        return container.attrs

    async def image_id(self, unit_id: str | None = None) -> str | None:
        container = await self._get_container(unit_id)
        if container is None:
            return None
        return container.attrs.get("Image")

    async def export_volume(self, volume_name: str, archive: Path) -> None:
        """Archive a named volume into archive (tar.gz) via a helper container."""
        client = self._get_client()
        archive = Path(archive)
        await self._call(
            client.containers.run,
            HELPER_IMAGE,
            ["tar", "czf", f"/backup/{archive.name}", "-C", "/data", "."],
            volumes={
                volume_name: {"bind": "/data", "mode": "ro"},
                str(archive.parent.resolve()): {"bind": "/backup", "mode": "rw"},
            },
            remove=True,
        )
        logger.info("Exported volume %s to %s", volume_name, archive)

    async def import_volume(self, volume_name: str, archive: Path) -> None:
        """Replace the contents of a named volume with archive."""
        client = self._get_client()
        archive = Path(archive)
        await self._call(
            client.containers.run,
            HELPER_IMAGE,
            [
                "sh",
                "-c",
                f"rm -rf /data/* /data/..?* /data/.[!.]* ; tar xzf /backup/{archive.name} -C /data",
            ],
            volumes={
                volume_name: {"bind": "/data", "mode": "rw"},
                str(archive.parent.resolve()): {"bind": "/backup", "mode": "ro"},
            },
            remove=True,
        )
        logger.info("Restored volume %s from %s", volume_name, archive)


def _parse_stats(stats: dict[str, Any]) -> ResourceUsage:
    """Compute CPU/memory percentages the way `docker stats` does."""
    cpu = stats.get("cpu_stats", {})
    precpu = stats.get("precpu_stats", {})
    cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - precpu.get(
        "cpu_usage", {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online = cpu.get("online_cpus") or len(cpu.get("cpu_usage", {}).get("percpu_usage") or []) or 1
    cpu_percent = 0.0
    if system_delta > 0 and cpu_delta > 0:
        cpu_percent = cpu_delta / system_delta * online * 100.0

    mem = stats.get("memory_stats", {})
    usage = mem.get("usage", 0) - mem.get("stats", {}).get("inactive_file", 0)
    limit = mem.get("limit", 0)
    mem_percent = usage / limit * 100.0 if limit else 0.0
    return ResourceUsage(cpu_percent=round(cpu_percent, 2), mem_percent=round(mem_percent, 2))
