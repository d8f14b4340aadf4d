import logging
import re

from .base import BaseProbe, ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_ERROR_PATTERN = r"(?i)error|fatal|exception"
DEFAULT_IGNORE_PATTERN = r"(?i)\b0 errors\b"


class LogScanProbe(BaseProbe):
    """Scans the container's recent log lines for error entries."""

    def __init__(
        self,
        name: str,
        driver,
        unit_id: str,
        line_count: int = 100,
        pattern: str = DEFAULT_ERROR_PATTERN,
        ignore_pattern: str | None = DEFAULT_IGNORE_PATTERN,
        max_matches: int = 0,
        critical: bool = False,
    ):
        super().__init__(name, critical=critical)
        self.driver = driver
        self.unit_id = unit_id
        self.line_count = line_count
        self.pattern = re.compile(pattern)
        self.ignore_pattern = re.compile(ignore_pattern) if ignore_pattern else None
        self.max_matches = max_matches

    @property
    def probe_type(self) -> str:
        return "logs"

    async def execute(self) -> ProbeResult:
        lines = await self.driver.read_recent_logs(self.unit_id, self.line_count)
        matches = [
            line
            for line in lines
            if self.pattern.search(line)
            and not (self.ignore_pattern and self.ignore_pattern.search(line))
        ]
        detail = {
            "lines_scanned": len(lines),
            "error_count": len(matches),
            "samples": matches[:5],
        }
        return self._result(len(matches) <= self.max_matches, detail)
