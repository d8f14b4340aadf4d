import logging
import re
from collections.abc import Iterable

import httpx

from .base import BaseProbe, ProbeResult

logger = logging.getLogger(__name__)


class HttpProbe(BaseProbe):
    """HTTP endpoint probe.

    Validates that a URL returns one of the expected status codes, optionally
    matches a pattern in the response body and answers within a time limit.
    """

    def __init__(
        self,
        name: str,
        url: str,
        expected_status: int | Iterable[int] = 200,
        timeout_seconds: float = 10.0,
        body_pattern: str | None = None,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        max_response_ms: float | None = None,
        critical: bool = False,
    ):
        super().__init__(name, critical=critical)
        self.url = url
        if isinstance(expected_status, int):
            self.expected_status = {expected_status}
        else:
            self.expected_status = set(expected_status)
        self.timeout_seconds = timeout_seconds
        self.body_pattern = body_pattern
        self.method = method.upper()
        self.headers = headers or {}
        self.auth = auth
        self.max_response_ms = max_response_ms

    @property
    def probe_type(self) -> str:
        return "http"

    async def execute(self) -> ProbeResult:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            resp = await client.request(
                self.method, self.url, headers=self.headers, auth=self.auth
            )

        status_ok = resp.status_code in self.expected_status
        body_ok = True
        if self.body_pattern and status_ok:
            body_ok = bool(re.search(self.body_pattern, resp.text))

        response_time_ms = resp.elapsed.total_seconds() * 1000
        time_ok = True
        if self.max_response_ms is not None:
            time_ok = response_time_ms < self.max_response_ms

        passed = status_ok and body_ok and time_ok
        detail = {
            "url": self.url,
            "status_code": resp.status_code,
            "expected_status": sorted(self.expected_status),
            "body_match": body_ok,
            "response_time_ms": response_time_ms,
        }
        if self.max_response_ms is not None:
            detail["max_response_ms"] = self.max_response_ms

        return self._result(passed, detail)
