import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from errors import DriverError
from models.probe import ProbeResult, VerificationReport

logger = logging.getLogger(__name__)

__all__ = ["BaseProbe", "ProbeResult", "VerificationReport"]


class BaseProbe(ABC):
    """Abstract base class for post-deployment probes.

    A critical probe gates the deployment: if it fails, verification fails
    and the orchestrator rolls back. Non-critical probes are informational.
    """

    def __init__(self, name: str, critical: bool = False, **kwargs):
        self.name = name
        self.critical = critical

    @property
    @abstractmethod
    def probe_type(self) -> str:
        """Return the probe type identifier."""

    @abstractmethod
    async def execute(self) -> ProbeResult:
        """Execute the probe and return the result."""

    def _result(
        self,
        passed: bool,
        detail: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ProbeResult:
        return ProbeResult(
            probe_name=self.name,
            probe_type=self.probe_type,
            passed=passed,
            critical=self.critical,
            detail=detail or {},
            error=error,
        )

    async def safe_execute(self, timeout: float | None = None) -> ProbeResult:
        """Execute with a timeout and error handling, never raises."""
        start = time.perf_counter()
        try:
            if timeout is not None:
                result = await asyncio.wait_for(self.execute(), timeout=timeout)
            else:
                result = await self.execute()
        except TimeoutError:
            logger.error("Probe %s timed out after %.1fs", self.name, timeout)
            result = self._result(False, error=f"Probe timed out after {timeout}s")
        except DriverError as e:
            logger.error("Probe %s failed: %s", self.name, e.message)
            result = self._result(False, error=e.message).model_copy(
                update={"fatal": not e.transient}
            )
        except Exception as e:
            logger.error("Probe %s failed: %s", self.name, e)
            result = self._result(False, error=str(e))
        elapsed_ms = (time.perf_counter() - start) * 1000
        return result.model_copy(update={"duration_ms": round(elapsed_ms, 2)})
