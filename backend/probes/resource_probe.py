import logging

from .base import BaseProbe, ProbeResult

logger = logging.getLogger(__name__)


class ResourceProbe(BaseProbe):
    """Container resource usage probe.

    Reads CPU or memory usage from the runtime and compares it against a
    threshold using a comparison operator.
    """

    def __init__(
        self,
        name: str,
        driver,
        unit_id: str,
        metric: str = "mem_percent",
        comparator: str = "<",
        threshold: float = 90.0,
        critical: bool = False,
    ):
        super().__init__(name, critical=critical)
        self.driver = driver
        self.unit_id = unit_id
        self.metric = metric
        self.comparator = comparator
        self.threshold = threshold

    @property
    def probe_type(self) -> str:
        return "resource"

    async def execute(self) -> ProbeResult:
        usage = await self.driver.read_resource_usage(self.unit_id)
        value = float(getattr(usage, self.metric))
        passed = self._compare(value)

        logger.info(
            "%s: cpu=%.1f%% mem=%.1f%%", self.unit_id, usage.cpu_percent, usage.mem_percent
        )
        detail = {
            "metric": self.metric,
            "value": value,
            "comparator": self.comparator,
            "threshold": self.threshold,
            "cpu_percent": usage.cpu_percent,
            "mem_percent": usage.mem_percent,
        }
        return self._result(passed, detail)

    def _compare(self, value: float) -> bool:
        ops = {
            ">": value > self.threshold,
            ">=": value >= self.threshold,
            "<": value < self.threshold,
            "<=": value <= self.threshold,
            "==": value == self.threshold,
            "!=": value != self.threshold,
        }
        return ops.get(self.comparator, False)
