from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, computed_field


class ProbeResult(BaseModel):
    """Result of a single probe execution."""

    probe_name: str
    probe_type: str
    passed: bool
    critical: bool = False
    detail: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    duration_ms: float = 0.0
    # a non-retryable runtime error; polling stops instead of waiting out the deadline
    fatal: bool = False
    executed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def describe(self) -> str:
        mark = "PASS" if self.passed else "FAIL"
        text = f"[{mark}] {self.probe_name}"
        if self.error:
            text += f": {self.error}"
        elif not self.passed and self.detail:
            text += f": {self.detail}"
        return text


class VerificationReport(BaseModel):
    """Ordered probe results for one verification run."""

    results: list[ProbeResult] = Field(default_factory=list)
    liveness_attempts: int = 0
    timed_out: bool = False
    diagnostics: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def all_passed(self) -> bool:
        return all(r.passed for r in self.results)

    @computed_field
    @property
    def passed(self) -> bool:
        """Liveness passed and every critical probe passed."""
        if self.timed_out or not self.results:
            return False
        return all(r.passed for r in self.results if r.critical)

    def failed_probes(self) -> list[ProbeResult]:
        return [r for r in self.results if not r.passed]

    def render(self) -> str:
        lines = [r.describe() for r in self.results]
        total = len(self.results)
        passed = total - len(self.failed_probes())
        lines.append(f"{passed}/{total} probes passed")
        if self.timed_out:
            lines.append(f"liveness did not pass after {self.liveness_attempts} attempt(s)")
        if self.diagnostics:
            lines.append("recent container logs:")
            lines.extend(f"  {line}" for line in self.diagnostics)
        return "\n".join(lines)
