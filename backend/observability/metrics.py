from prometheus_client import Counter, Gauge, Histogram

# Lifecycle operation metrics
operations_total = Counter(
    "n8nctl_operations_total",
    "Total number of lifecycle operations by terminal outcome",
    ["operation", "outcome"],
)

operation_duration_seconds = Histogram(
    "n8nctl_operation_duration_seconds",
    "Duration of lifecycle operations in seconds",
    ["operation"],
    buckets=[5, 15, 30, 60, 120, 300, 600],
)

active_operations = Gauge(
    "n8nctl_active_operations",
    "Number of currently running lifecycle operations",
)

# Probe metrics
probe_results_total = Counter(
    "n8nctl_probe_results",
    "Total probe execution results",
    ["probe_type", "passed"],
)

# Rollback metrics
rollback_total = Counter(
    "n8nctl_rollback_total",
    "Total number of rollbacks",
    ["status"],
)

# Snapshot metrics
snapshots_total = Counter(
    "n8nctl_snapshots_total",
    "Snapshot store operations",
    ["action"],
)

# HTTP request metrics (populated by middleware)
http_requests_total = Counter(
    "n8nctl_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "n8nctl_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
)


class _Metrics:
    """Convenience wrapper for all metrics."""

    operations_total = operations_total
    operation_duration_seconds = operation_duration_seconds
    active_operations = active_operations
    probe_results_total = probe_results_total
    rollback_total = rollback_total
    snapshots_total = snapshots_total
    http_requests_total = http_requests_total
    http_request_duration_seconds = http_request_duration_seconds

    def record_operation_start(self):
        self.active_operations.inc()

    def record_operation_end(self, operation: str, outcome: str, duration: float):
        self.active_operations.dec()
        self.operations_total.labels(operation=operation, outcome=outcome).inc()
        self.operation_duration_seconds.labels(operation=operation).observe(duration)

    def record_probe_result(self, probe_type: str, passed: bool):
        self.probe_results_total.labels(probe_type=probe_type, passed=str(passed)).inc()

    def record_rollback(self, status: str):
        self.rollback_total.labels(status=status).inc()

    def record_snapshot(self, action: str, count: int = 1):
        if count > 0:
            self.snapshots_total.labels(action=action).inc(count)


METRICS = _Metrics()
