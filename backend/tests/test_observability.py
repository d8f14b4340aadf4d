from prometheus_client import REGISTRY

from observability.metrics import METRICS
from observability.middleware import PrometheusMiddleware


def _sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetrics:
    def test_operation_start_and_end(self):
        before = _sample("n8nctl_operations_total", {"operation": "deploy", "outcome": "succeeded"})
        active = _sample("n8nctl_active_operations")

        METRICS.record_operation_start()
        assert _sample("n8nctl_active_operations") == active + 1

        METRICS.record_operation_end("deploy", "succeeded", 12.0)
        assert _sample("n8nctl_active_operations") == active
        after = _sample("n8nctl_operations_total", {"operation": "deploy", "outcome": "succeeded"})
        assert after == before + 1

    def test_record_probe_result(self):
        METRICS.record_probe_result("http", True)
        METRICS.record_probe_result("http", False)

    def test_record_rollback(self):
        METRICS.record_rollback("success")
        METRICS.record_rollback("failed")

    def test_record_snapshot_skips_zero(self):
        before = _sample("n8nctl_snapshots_total", {"action": "pruned"})
        METRICS.record_snapshot("pruned", 0)
        assert _sample("n8nctl_snapshots_total", {"action": "pruned"}) == before
        METRICS.record_snapshot("pruned", 3)
        assert _sample("n8nctl_snapshots_total", {"action": "pruned"}) == before + 3


class TestPrometheusMiddleware:
    def test_normalize_path_static(self):
        assert PrometheusMiddleware._normalize_path("/health") == "/health"
        assert PrometheusMiddleware._normalize_path("/api/snapshots") == "/api/snapshots"

    def test_normalize_snapshot_id(self):
        path = "/api/snapshots/backup_20240101_120000/restore"
        assert PrometheusMiddleware._normalize_path(path) == "/api/snapshots/{id}/restore"

    def test_normalize_snapshot_id_with_suffix(self):
        path = "/api/snapshots/backup_20240101_120000_01"
        assert PrometheusMiddleware._normalize_path(path) == "/api/snapshots/{id}"

    def test_normalize_attempt_id(self):
        path = "/api/deployments/deploy_20240101_120000_a1b2"
        assert PrometheusMiddleware._normalize_path(path) == "/api/deployments/{id}"

    def test_keeps_unrelated_segments(self):
        assert PrometheusMiddleware._normalize_path("/api/deployments/rollback") == "/api/deployments/rollback"


class TestMetricsEndpoint:
    async def test_metrics_endpoint(self, client):
        await client.get("/health")
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "n8nctl_http_requests_total" in resp.text

    async def test_metrics_after_deploy(self, client):
        await client.post("/api/deployments")

        resp = await client.get("/metrics")
        body = resp.text
        assert "n8nctl_operations_total" in body
        assert "n8nctl_operation_duration_seconds" in body

    async def test_scrapes_not_counted(self, client):
        labels = {"method": "GET", "path": "/metrics", "status_code": "200"}
        await client.get("/metrics")
        await client.get("/metrics")
        assert _sample("n8nctl_http_requests_total", labels) == 0.0
