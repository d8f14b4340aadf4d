import logging

from engines.docker_engine import HealthState

from .base import BaseProbe, ProbeResult

logger = logging.getLogger(__name__)


class ContainerHealthProbe(BaseProbe):
    """Liveness probe: the container's own healthcheck reports healthy."""

    def __init__(self, name: str, driver, unit_id: str):
        super().__init__(name, critical=True)
        self.driver = driver
        self.unit_id = unit_id

    @property
    def probe_type(self) -> str:
        return "liveness"

    async def execute(self) -> ProbeResult:
        state = await self.driver.get_health_state(self.unit_id)
        return self._result(
            state == HealthState.HEALTHY,
            {"container": self.unit_id, "health": HealthState(state).value},
        )


class ContainerProbe(BaseProbe):
    """Container state probe.

    Checks one condition on the inspected container: running, restart
    policy, a bound port, a set environment variable, or a mounted volume.
    """

    def __init__(
        self,
        name: str,
        driver,
        unit_id: str,
        condition: str = "running",
        expected_value: str | int | list[str] | None = None,
        critical: bool = False,
    ):
        super().__init__(name, critical=critical)
        self.driver = driver
        self.unit_id = unit_id
        self.condition = condition
        self.expected_value = expected_value

    @property
    def probe_type(self) -> str:
        return "container"

    async def execute(self) -> ProbeResult:
        if self.condition == "running":
            running = await self.driver.is_managed_unit_running()
            return self._result(running, {"container": self.unit_id, "running": running})

        attrs = await self.driver.inspect_unit(self.unit_id)
        if not attrs:
            return self._result(False, error=f"Container {self.unit_id} not found")

        if self.condition == "restart_policy":
            return self._check_restart_policy(attrs)
        elif self.condition == "port_bound":
            return self._check_port(attrs)
        elif self.condition == "env_present":
            return self._check_env(attrs)
        elif self.condition == "volume_mounted":
            return self._check_volume(attrs)
        else:
            return self._result(False, error=f"Unsupported condition: {self.condition}")

    def _check_restart_policy(self, attrs: dict) -> ProbeResult:
        policy = attrs.get("HostConfig", {}).get("RestartPolicy", {}).get("Name") or "no"
        allowed = self.expected_value or ["unless-stopped", "always"]
        return self._result(policy in allowed, {"restart_policy": policy, "allowed": allowed})

    def _check_port(self, attrs: dict) -> ProbeResult:
        port = f"{self.expected_value}/tcp"
        bindings = attrs.get("NetworkSettings", {}).get("Ports", {}) or {}
        bound = bindings.get(port) or []
        host_ports = [f"{b.get('HostIp', '')}:{b.get('HostPort', '')}" for b in bound]
        return self._result(bool(host_ports), {"port": port, "bindings": host_ports})

    def _check_env(self, attrs: dict) -> ProbeResult:
        env = attrs.get("Config", {}).get("Env") or []
        present = {}
        for entry in env:
            key, _, value = entry.partition("=")
            present[key] = value
        expected = self.expected_value
        names = [expected] if isinstance(expected, str) else list(expected or [])
        missing = [n for n in names if not present.get(n)]
        return self._result(not missing, {"required": names, "missing": missing})

    def _check_volume(self, attrs: dict) -> ProbeResult:
        mounts = [m.get("Name") for m in attrs.get("Mounts", []) if m.get("Type") == "volume"]
        return self._result(
            self.expected_value in mounts, {"volume": self.expected_value, "mounts": mounts}
        )
