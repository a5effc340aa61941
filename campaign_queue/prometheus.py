"""Prometheus metrics exposed by the campaign queue."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("cq_sent_total", "Total delivered emails", ["server_id"], registry=self.registry)
        self.failed = Counter("cq_failed_total", "Total permanently failed emails", ["server_id"], registry=self.registry)
        self.retried = Counter("cq_retried_total", "Total attempts rescheduled with backoff", ["server_id"], registry=self.registry)
        self.deferred = Counter("cq_deferred_total", "Total rate-limit deferrals", ["server_id"], registry=self.registry)
        self.reclaimed = Counter("cq_reclaimed_total", "Total stuck items returned to pending", registry=self.registry)
        self.enqueued = Counter("cq_enqueued_total", "Total items created by the producer", registry=self.registry)
        self.duplicates = Counter("cq_duplicates_total", "Total recipients skipped as duplicates", registry=self.registry)
        self.pending = Gauge("cq_pending_items", "Current pending queue items", registry=self.registry)

    def inc_sent(self, server_id: str | None):
        self.sent.labels(server_id=server_id or "unknown").inc()

    def inc_failed(self, server_id: str | None):
        self.failed.labels(server_id=server_id or "unknown").inc()

    def inc_retried(self, server_id: str | None):
        self.retried.labels(server_id=server_id or "unknown").inc()

    def inc_deferred(self, server_id: str | None):
        self.deferred.labels(server_id=server_id or "unknown").inc()

    def inc_reclaimed(self, count: int = 1):
        self.reclaimed.inc(count)

    def inc_enqueued(self, queued: int, duplicates: int):
        """Record one producer run."""
        self.enqueued.inc(queued)
        self.duplicates.inc(duplicates)

    def set_pending(self, value: int):
        """Update the gauge tracking pending items."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
