import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .metrics import METRICS

# Attempt and snapshot ids, e.g. deploy_20240101_120000_a1b2, backup_20240101_120000_01
_ID_PATTERN = re.compile(r"^(deploy|rollback|restore|backup)_\d{8}_\d{6}(_[0-9a-f]+)?$")

# Scrapes would otherwise dominate the request counters
UNTRACKED_PATHS = frozenset({"/metrics"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Records request count and latency per route template."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in UNTRACKED_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        route = request.scope.get("route")
        path = getattr(route, "path", None) or self._normalize_path(request.url.path)
        method = request.method
        METRICS.http_requests_total.labels(
            method=method, path=path, status_code=response.status_code
        ).inc()
        METRICS.http_request_duration_seconds.labels(method=method, path=path).observe(duration)
        return response

    @staticmethod
    def _normalize_path(path: str) -> str:
        """Replace attempt and snapshot ids with a placeholder."""
        parts = path.strip("/").split("/")
        normalized = ["{id}" if _ID_PATTERN.match(part) else part for part in parts]
        return "/" + "/".join(normalized)
