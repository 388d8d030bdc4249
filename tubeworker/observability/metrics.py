"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

from tubeworker.constants import (
    METRIC_HOOK_ERRORS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_RESERVED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for producers and workers.

    Collects metrics for:
    - Job enqueues and reservations
    - Job outcomes (succeeded, retried, buried)
    - Job execution duration
    - Errors raised by lifecycle hooks
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs put on the broker",
            ["job"],
            registry=self._registry,
        )

        self.jobs_reserved = Counter(
            METRIC_JOBS_RESERVED,
            "Total number of jobs reserved by workers",
            ["job"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of reserved jobs resolved, by outcome",
            ["job", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.hook_errors = Counter(
            METRIC_HOOK_ERRORS,
            "Total number of errors raised by lifecycle hooks",
            ["event"],
            registry=self._registry,
        )

    def record_job_enqueued(self, job: str) -> None:
        """Record a job put on the broker."""
        self.jobs_enqueued.labels(job=job).inc()

    def record_job_reserved(self, job: str) -> None:
        """Record a job reservation."""
        self.jobs_reserved.labels(job=job).inc()

    def record_job_completed(
        self,
        job: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record how a reserved job was resolved."""
        self.jobs_completed.labels(job=job, outcome=outcome).inc()
        self.job_duration.labels(job=job, outcome=outcome).observe(duration_seconds)

    def record_hook_error(self, event: str) -> None:
        """Record a swallowed hook error."""
        self.hook_errors.labels(event=event).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, also serve the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
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
