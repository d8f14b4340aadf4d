import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from models.probe import ProbeResult, VerificationReport
from observability.metrics import METRICS

logger = logging.getLogger(__name__)

# Probes that run after the deadline still get this long to answer
MIN_PROBE_TIMEOUT = 0.5


class BackoffPolicy:
    """Delay between liveness polls: interval * multiplier**n, capped."""

    def __init__(self, interval: float = 5.0, multiplier: float = 1.0, max_interval: float = 30.0):
        self.interval = interval
        self.multiplier = multiplier
        self.max_interval = max(max_interval, interval)

    def delay(self, attempt: int) -> float:
        return min(self.interval * (self.multiplier**attempt), self.max_interval)


class HealthCheckLoop:
    """Bounded verification of a freshly started unit.

    Polls the probe set's liveness probe until it passes or the deadline
    elapses, then runs every other probe once. Never sleeps past the
    deadline. `clock` and `sleep` are injectable so tests can drive time.
    """

    def __init__(
        self,
        probe_set,
        timeout: float = 60.0,
        backoff: BackoffPolicy | None = None,
        probe_timeout: float = 10.0,
        driver=None,
        unit_id: str | None = None,
        log_lines: int = 50,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.probe_set = probe_set
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy()
        self.probe_timeout = probe_timeout
        self.driver = driver
        self.unit_id = unit_id
        self.log_lines = log_lines
        self.clock = clock
        self.sleep = sleep

    async def run(self, single_attempt: bool = False) -> VerificationReport:
        deadline = self.clock() + self.timeout
        attempts = 0
        liveness: ProbeResult | None = None

        while True:
            remaining = deadline - self.clock()
            probe_timeout = max(min(self.probe_timeout, remaining), 0.001)
            liveness = await self.probe_set.primary.safe_execute(timeout=probe_timeout)
            attempts += 1
            METRICS.record_probe_result(liveness.probe_type, liveness.passed)
            if liveness.passed or single_attempt:
                break
            if liveness.fatal:
                logger.error("Liveness hit a non-retryable error: %s", liveness.error)
                break

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            logger.info(
                "Waiting for unit to become healthy... (%.0f/%.0fs, %s)",
                self.timeout - remaining,
                self.timeout,
                liveness.detail.get("health") or liveness.error or "no detail",
            )
            await self.sleep(min(self.backoff.delay(attempts - 1), remaining))

        results = [liveness]
        timed_out = not liveness.passed and not liveness.fatal
        if timed_out:
            logger.error(
                "Liveness did not pass after %d attempt(s) within %.0fs", attempts, self.timeout
            )
        elif liveness.passed:
            for probe in self.probe_set.probes:
                remaining = deadline - self.clock()
                timeout = max(min(self.probe_timeout, remaining), MIN_PROBE_TIMEOUT)
                result = await probe.safe_execute(timeout=timeout)
                METRICS.record_probe_result(result.probe_type, result.passed)
                if result.passed:
                    logger.info("Probe passed: %s", probe.name)
                else:
                    logger.warning("Probe failed: %s", result.describe())
                results.append(result)

        report = VerificationReport(
            results=results,
            liveness_attempts=attempts,
            timed_out=timed_out,
        )
        if not report.passed:
            report = report.model_copy(update={"diagnostics": await self._recent_logs()})
        return report

    async def _recent_logs(self) -> list[str]:
        if self.driver is None:
            return []
        try:
            return await asyncio.wait_for(
                self.driver.read_recent_logs(self.unit_id, self.log_lines),
                timeout=self.probe_timeout,
            )
        except Exception as e:
            logger.warning("Could not read container logs: %s", e)
            return [f"<logs unavailable: {e}>"]
