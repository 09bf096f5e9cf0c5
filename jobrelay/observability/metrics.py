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

from jobrelay.constants import (
    METRIC_ENGINE_EVENTS,
    METRIC_JOBS_SUBMITTED,
    METRIC_QUEUE_DEPTH,
    METRIC_SCHEDULE_EXECUTIONS,
    METRIC_SCHEDULE_LATENCY,
    METRIC_SUBSCRIPTION_TRIGGERS,
    METRIC_WEBHOOK_DELIVERIES,
    METRIC_WEBHOOK_LATENCY,
    METRIC_WEBHOOKS_DISABLED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for jobrelay.

    Collects metrics for:
    - Queue depth and job submissions
    - Engine events seen by the tracker
    - Webhook delivery attempts, latency and auto-disables
    - Subscription triggers
    - Scheduled HTTP executions
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue and state",
            ["queue", "state"],
            registry=self._registry,
        )

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["tenant_id", "queue"],
            registry=self._registry,
        )

        self.engine_events = Counter(
            METRIC_ENGINE_EVENTS,
            "Engine events handled by the tracker",
            ["queue", "event"],
            registry=self._registry,
        )

        # kind is "webhook" for tenant webhooks and "job" for per-job webhooks
        self.webhook_deliveries = Counter(
            METRIC_WEBHOOK_DELIVERIES,
            "Webhook delivery attempts by outcome",
            ["kind", "outcome"],
            registry=self._registry,
        )

        self.webhook_latency = Histogram(
            METRIC_WEBHOOK_LATENCY,
            "Webhook delivery round-trip time in seconds",
            ["kind"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.webhooks_disabled = Counter(
            METRIC_WEBHOOKS_DISABLED,
            "Webhooks deactivated after repeated failures",
            ["kind"],
            registry=self._registry,
        )

        self.subscription_triggers = Counter(
            METRIC_SUBSCRIPTION_TRIGGERS,
            "Subscription deliveries by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.schedule_executions = Counter(
            METRIC_SCHEDULE_EXECUTIONS,
            "Scheduled HTTP executions by status",
            ["status", "trigger"],
            registry=self._registry,
        )

        self.schedule_latency = Histogram(
            METRIC_SCHEDULE_LATENCY,
            "Scheduled HTTP execution time in seconds, retries included",
            ["status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

    def record_job_submitted(self, tenant_id: str, queue: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(tenant_id=tenant_id, queue=queue).inc()

    def record_engine_event(self, queue: str, event: str) -> None:
        self.engine_events.labels(queue=queue, event=event).inc()

    def record_delivery(self, kind: str, outcome: str, duration_seconds: float) -> None:
        """Record one delivery attempt."""
        self.webhook_deliveries.labels(kind=kind, outcome=outcome).inc()
        self.webhook_latency.labels(kind=kind).observe(duration_seconds)

    def record_webhook_disabled(self, kind: str) -> None:
        self.webhooks_disabled.labels(kind=kind).inc()

    def record_subscription_trigger(self, outcome: str) -> None:
        self.subscription_triggers.labels(outcome=outcome).inc()

    def record_schedule_execution(
        self,
        status: str,
        trigger: str,
        duration_seconds: float,
    ) -> None:
        """Record a scheduled execution (trigger is "scheduled" or "manual")."""
        self.schedule_executions.labels(status=status, trigger=trigger).inc()
        self.schedule_latency.labels(status=status).observe(duration_seconds)

    def update_queue_depth(self, queue: str, state: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue, state=state).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, also expose the registry over HTTP on this port.

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
