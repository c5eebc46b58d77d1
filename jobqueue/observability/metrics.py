"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_PRUNED,
    METRIC_LEASE_RECLAIMED,
    METRIC_QUEUE_DEPTH,
    JobStatus,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth by status
    - Enqueues (new and deduplicated)
    - Claims and reclaimed leases
    - Completions by outcome and execution duration
    - Pruned jobs
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Queue depth gauge (by status)
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per status",
            ["status"],
            registry=self._registry,
        )

        # Jobs enqueued counter
        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of enqueue calls",
            ["kind", "deduped"],
            registry=self._registry,
        )

        # Jobs claimed counter
        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of successful claims",
            ["worker_id"],
            registry=self._registry,
        )

        # Abandoned leases taken over by another claim
        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of running jobs reclaimed after lease expiry",
            ["kind"],
            registry=self._registry,
        )

        # Jobs completed counter
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job outcomes",
            ["kind", "status"],
            registry=self._registry,
        )

        # Job duration histogram
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["kind", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 600.0),
            registry=self._registry,
        )

        # Jobs pruned counter
        self.jobs_pruned = Counter(
            METRIC_JOBS_PRUNED,
            "Total number of terminal jobs deleted by prune",
            registry=self._registry,
        )

    def record_job_enqueued(self, kind: str, deduped: bool) -> None:
        """Record an enqueue call."""
        self.jobs_enqueued.labels(kind=kind, deduped=str(deduped).lower()).inc()

    def record_job_claimed(self, worker_id: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_lease_reclaimed(self, kind: str) -> None:
        """Record a claim that took over an expired lease."""
        self.lease_reclaimed.labels(kind=kind).inc()

    def record_job_outcome(self, kind: str, status: str) -> None:
        """Record a state change out of running (done, retry, failed, canceled)."""
        self.jobs_completed.labels(kind=kind, status=status).inc()

    def record_job_duration(self, kind: str, status: str, duration_seconds: float) -> None:
        """Record how long a handler ran."""
        self.job_duration.labels(kind=kind, status=status).observe(duration_seconds)

    def record_jobs_pruned(self, count: int) -> None:
        """Record deleted jobs."""
        if count > 0:
            self.jobs_pruned.inc(count)

    def update_queue_depth(self, stats: dict[str, int]) -> None:
        """Update the per-status gauge; statuses missing from stats are zeroed."""
        for status in JobStatus:
            self.queue_depth.labels(status=status.value).set(stats.get(status.value, 0))

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
