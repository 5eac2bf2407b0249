"""
Prometheus metrics collection.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
    start_http_server,
    REGISTRY,
)

from jobwire.constants import (
    METRIC_COMMANDS,
    METRIC_JOBS_FETCHED,
    METRIC_JOBS_PROCESSED,
    METRIC_JOB_DURATION,
    METRIC_HEARTBEAT_SIGNALS,
    METRIC_POOL_CONNECTIONS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the client runtime.

    Collects metrics for:
    - Broker commands by verb and outcome
    - Jobs fetched and processed
    - Job execution duration
    - Heartbeat signals
    - Pool connections
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.commands = Counter(
            METRIC_COMMANDS,
            "Total number of broker commands",
            ["command", "outcome"],
            registry=self._registry,
        )

        self.jobs_fetched = Counter(
            METRIC_JOBS_FETCHED,
            "Total number of jobs reserved from the broker",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_processed = Counter(
            METRIC_JOBS_PROCESSED,
            "Total number of jobs executed",
            ["jobtype", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["jobtype", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.heartbeat_signals = Counter(
            METRIC_HEARTBEAT_SIGNALS,
            "Total number of heartbeat replies by signal",
            ["signal"],
            registry=self._registry,
        )

        self.pool_connections = Gauge(
            METRIC_POOL_CONNECTIONS,
            "Number of pooled broker connections",
            ["state"],
            registry=self._registry,
        )

    def record_command(self, command: str, outcome: str) -> None:
        """Record a broker round trip."""
        self.commands.labels(command=command, outcome=outcome).inc()

    def record_job_fetched(self, queue: str) -> None:
        """Record a job reservation."""
        self.jobs_fetched.labels(queue=queue).inc()

    def record_job_processed(
        self,
        jobtype: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job execution."""
        self.jobs_processed.labels(jobtype=jobtype, status=status).inc()
        self.job_duration.labels(jobtype=jobtype, status=status).observe(
            duration_seconds
        )

    def record_heartbeat(self, signal: str) -> None:
        """Record a heartbeat reply."""
        self.heartbeat_signals.labels(signal=signal).inc()

    def update_pool(self, idle: int, in_use: int) -> None:
        """Update pool connection gauges."""
        self.pool_connections.labels(state="idle").set(idle)
        self.pool_connections.labels(state="in_use").set(in_use)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def serve(self, port: int) -> None:
        """Expose metrics over HTTP on `port`."""
        start_http_server(port, registry=self._registry)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
