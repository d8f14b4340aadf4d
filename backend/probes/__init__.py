from .base import BaseProbe, ProbeResult, VerificationReport
from .container_probe import ContainerHealthProbe, ContainerProbe
from .http_probe import HttpProbe
from .log_probe import LogScanProbe
from .probe_set import ProbeSet, build_default_probe_set
from .resource_probe import ResourceProbe

__all__ = [
    "BaseProbe",
    "ProbeResult",
    "VerificationReport",
    "HttpProbe",
    "ContainerHealthProbe",
    "ContainerProbe",
    "LogScanProbe",
    "ResourceProbe",
    "ProbeSet",
    "build_default_probe_set",
]
