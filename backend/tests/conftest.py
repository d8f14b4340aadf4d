import asyncio
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from config_source import EnvFileConfigSource
from engines.docker_engine import HealthState, ResourceUsage
from engines.lifecycle import LifecycleOrchestrator
from probes.base import BaseProbe, ProbeResult
from probes.container_probe import ContainerHealthProbe, ContainerProbe
from probes.probe_set import ProbeSet
from safety.snapshot import SnapshotStore
from settings import LifecycleSettings

SECURE_ENV = (
    "HOST_IP=192.168.1.50\n"
    "N8N_PORT=5678\n"
    "N8N_BASIC_AUTH_USER=operator\n"
    "N8N_BASIC_AUTH_PASSWORD=s3cure-Passw0rd\n"
    "WEBHOOK_URL=http://192.168.1.50:5678/\n"
)

COMPOSE_V1 = "services:\n  n8n:\n    image: n8nio/n8n:1.0\n"


class FakeClock:
    """Monotonic clock that only advances when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDriver:
    """In-memory runtime driver.

    A converge only restarts the unit when the compose or env file content
    differs from what was last applied, like `docker compose up -d`.
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.running = True
        self.health = HealthState.HEALTHY
        self.health_after_converge = HealthState.HEALTHY
        self.health_after_start = HealthState.HEALTHY
        self.applied: bytes | None = None
        self.restarts = 0
        self.volumes: dict[str, bytes] = {"n8n_data": b"workflows-v1"}
        self.logs = ["n8n ready on 0.0.0.0, port 5678"]
        self.attrs = {
            "Image": "sha256:abc123",
            "HostConfig": {"RestartPolicy": {"Name": "unless-stopped"}},
            "NetworkSettings": {"Ports": {"5678/tcp": [{"HostIp": "0.0.0.0", "HostPort": "5678"}]}},
            "Config": {"Env": ["N8N_HOST=0.0.0.0", "N8N_PORT=5678", "WEBHOOK_URL=http://x/"]},
            "Mounts": [{"Type": "volume", "Name": "n8n_data"}],
        }
        self.ping_error: Exception | None = None
        self.converge_error: Exception | None = None
        self.start_error: Exception | None = None
        self.export_error: Exception | None = None
        self.on_converge = None
        self.converge_started = asyncio.Event()
        self.block_converge = False

    def _record(self, name, *args):
        self.calls.append((name, args))

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    @staticmethod
    def _fingerprint(spec) -> bytes:
        data = Path(spec.compose_file).read_bytes()
        if spec.env_file is not None and Path(spec.env_file).exists():
            data += Path(spec.env_file).read_bytes()
        return data

    async def ping(self):
        self._record("ping")
        if self.ping_error is not None:
            raise self.ping_error

    async def is_managed_unit_running(self) -> bool:
        self._record("is_managed_unit_running")
        return self.running

    async def converge(self, spec, grace_period=30):
        self._record("converge", spec, grace_period)
        self.converge_started.set()
        if self.on_converge is not None:
            self.on_converge(self)
        if self.block_converge:
            await asyncio.Event().wait()
        if self.converge_error is not None:
            raise self.converge_error
        fingerprint = self._fingerprint(spec)
        if fingerprint != self.applied or not self.running:
            self.restarts += 1
            self.applied = fingerprint
            self.running = True
            self.health = self.health_after_converge

    async def start(self):
        self._record("start")
        if self.start_error is not None:
            raise self.start_error
        self.restarts += 1
        self.running = True
        self.health = self.health_after_start

    async def stop(self, unit_id=None, grace_period=30):
        self._record("stop", unit_id, grace_period)
        self.running = False

    async def get_health_state(self, unit_id=None) -> HealthState:
        if not self.running:
            return HealthState.UNHEALTHY
        return self.health

    async def read_recent_logs(self, unit_id=None, line_count=50) -> list[str]:
        return self.logs[-line_count:]

    async def read_resource_usage(self, unit_id=None) -> ResourceUsage:
        return ResourceUsage(cpu_percent=3.5, mem_percent=22.0)

    async def inspect_unit(self, unit_id=None) -> dict:
        return self.attrs if self.running else {}

    async def image_id(self, unit_id=None) -> str | None:
        self._record("image_id", unit_id)
        return self.attrs["Image"] if self.running else None

    async def export_volume(self, volume_name, archive):
        self._record("export_volume", volume_name, archive)
        if self.export_error is not None:
            raise self.export_error
        Path(archive).write_bytes(self.volumes[volume_name])

    async def import_volume(self, volume_name, archive):
        self._record("import_volume", volume_name, archive)
        self.volumes[volume_name] = Path(archive).read_bytes()


class StaticProbe(BaseProbe):
    """Probe with a fixed result."""

    def __init__(self, name: str, passed: bool = True, critical: bool = False):
        super().__init__(name, critical=critical)
        self.passed = passed
        self.executions = 0

    @property
    def probe_type(self) -> str:
        return "static"

    async def execute(self) -> ProbeResult:
        self.executions += 1
        return self._result(self.passed, {"static": True})


@pytest.fixture()
def project(tmp_path):
    """Project root with a compose file, Dockerfile and a valid .env."""
    (tmp_path / "docker-compose.yml").write_text(COMPOSE_V1)
    (tmp_path / "Dockerfile").write_text("FROM n8nio/n8n:1.0\n")
    (tmp_path / ".env").write_text(SECURE_ENV)
    return tmp_path


@pytest.fixture()
def settings(project):
    return LifecycleSettings(
        project_root=project,
        healthcheck_timeout=60,
        healthcheck_interval=5,
        probe_timeout=5,
        backup_retention_count=10,
    )


@pytest.fixture()
def driver():
    return FakeDriver()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(settings, driver):
    return SnapshotStore(
        settings.backup_path,
        targets={
            "env": settings.env_path,
            "compose": settings.compose_path,
            "dockerfile": settings.root / "Dockerfile",
        },
        volume_name=settings.volume_name,
        volume_io=driver,
        pointer_path=settings.root / ".last_backup",
    )


@pytest.fixture()
def informational_probe():
    return StaticProbe("informational", passed=True)


@pytest.fixture()
def probe_set_factory(informational_probe):
    """Liveness plus one critical and one informational probe."""

    def factory(config, driver, settings):
        unit = settings.container_name
        return ProbeSet(
            primary=ContainerHealthProbe("liveness", driver, unit),
            probes=[
                ContainerProbe("container-running", driver, unit, condition="running", critical=True),
                informational_probe,
            ],
        )

    return factory


@pytest.fixture()
def orchestrator(settings, driver, store, clock, probe_set_factory):
    return LifecycleOrchestrator(
        settings,
        driver,
        store,
        EnvFileConfigSource(settings.env_path),
        probe_set_factory=probe_set_factory,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture()
async def session_factory(tmp_path):
    """Session factory for a throwaway audit database."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from db_models import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
async def client(session_factory, orchestrator):
    """Async HTTP test client for FastAPI app, wired to the fake orchestrator."""
    from audit import session_sink
    from database import get_session
    from main import app
    from routers.deployments import get_orchestrator

    async def _session():
        async with session_factory() as session:
            yield session

    orchestrator.attempt_sink = session_sink(session_factory)
    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
