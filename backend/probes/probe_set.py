from dataclasses import dataclass, field

from models.deployment import AppConfig
from settings import LifecycleSettings

from .base import BaseProbe
from .container_probe import ContainerHealthProbe, ContainerProbe
from .http_probe import HttpProbe
from .log_probe import LogScanProbe
from .resource_probe import ResourceProbe


@dataclass
class ProbeSet:
    """Ordered probes with a distinguished liveness probe.

    The primary probe is polled until it passes; the rest run once afterwards.
    """

    primary: BaseProbe
    probes: list[BaseProbe] = field(default_factory=list)

    def __iter__(self):
        yield self.primary
        yield from self.probes

    def __len__(self) -> int:
        return 1 + len(self.probes)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self]


def build_default_probe_set(config: AppConfig, driver, settings: LifecycleSettings) -> ProbeSet:
    """Post-deployment checks for an n8n instance behind basic auth."""
    unit = settings.container_name
    base_url = config.base_url
    timeout = settings.probe_timeout

    probes: list[BaseProbe] = [
        ContainerProbe("container-running", driver, unit, condition="running", critical=True),
        HttpProbe(
            "http-reachable",
            base_url,
            expected_status={200, 401},
            timeout_seconds=timeout,
        ),
        HttpProbe(
            "healthz",
            f"{base_url}/healthz",
            expected_status=200,
            timeout_seconds=timeout,
            critical=True,
        ),
        HttpProbe("auth-required", base_url, expected_status=401, timeout_seconds=timeout),
        HttpProbe(
            "auth-accepted",
            base_url,
            expected_status=200,
            timeout_seconds=timeout,
            auth=config.credentials,
        ),
        HttpProbe(
            "workflows-api",
            f"{base_url}/api/v1/workflows",
            expected_status=200,
            timeout_seconds=timeout,
            auth=config.credentials,
            body_pattern=r"data|\[\]",
        ),
        ContainerProbe(
            "volume-mounted", driver, unit, condition="volume_mounted",
            expected_value=settings.volume_name,
        ),
        ResourceProbe("memory-usage", driver, unit, metric="mem_percent", threshold=90.0),
        LogScanProbe("log-errors", driver, unit, line_count=100),
        ContainerProbe(
            "webhook-url", driver, unit, condition="env_present", expected_value="WEBHOOK_URL"
        ),
        ContainerProbe(
            "port-binding", driver, unit, condition="port_bound", expected_value=config.port
        ),
        ContainerProbe(
            "environment",
            driver,
            unit,
            condition="env_present",
            expected_value=["N8N_HOST", "N8N_PORT"],
        ),
        ContainerProbe("restart-policy", driver, unit, condition="restart_policy"),
        HttpProbe(
            "response-time",
            base_url,
            expected_status=200,
            timeout_seconds=timeout,
            auth=config.credentials,
            max_response_ms=5000,
        ),
    ]
    return ProbeSet(primary=ContainerHealthProbe("liveness", driver, unit), probes=probes)
