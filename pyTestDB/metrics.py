from prometheus_client import Counter, Histogram, start_http_server


class _Metrics:
    def __init__(self):
        self._builds_total = Counter(
            "pytestdb_builds_total",
            "Database builds by outcome",
            ["connection", "outcome"],
        )
        self._snapshot_operations_total = Counter(
            "pytestdb_snapshot_operations_total",
            "Snapshot imports/exports",
            ["connection", "operation"],
        )
        self._purged_total = Counter(
            "pytestdb_purged_total",
            "Stale artifacts removed",
            ["kind"],
        )
        self._errors_total = Counter(
            "pytestdb_errors_total",
            "Errors by scope",
            ["scope"],
        )
        self._build_duration = Histogram(
            "pytestdb_build_duration_seconds",
            "Time taken to provide a database",
            ["connection", "outcome"],
        )
        self._remote_requests_total = Counter(
            "pytestdb_remote_build_requests_total",
            "Build requests handled by the remote build server",
            ["status"],
        )

    def start_http_server(self, port: int, host: str = "0.0.0.0"):
        start_http_server(port, addr=host)

    def inc_build(self, connection: str, outcome: str, n: int = 1):
        self._builds_total.labels(connection=connection, outcome=outcome).inc(n)

    def observe_build(self, connection: str, outcome: str, seconds: float):
        self._build_duration.labels(connection=connection, outcome=outcome).observe(seconds)

    def inc_snapshot(self, connection: str, operation: str, n: int = 1):
        self._snapshot_operations_total.labels(
            connection=connection, operation=operation
        ).inc(n)

    def inc_purged(self, kind: str, n: int = 1):
        self._purged_total.labels(kind=kind).inc(n)

    def inc_errors(self, scope: str, n: int = 1):
        self._errors_total.labels(scope=scope).inc(n)

    def inc_remote_request(self, status: str, n: int = 1):
        self._remote_requests_total.labels(status=status).inc(n)


metrics = _Metrics()
