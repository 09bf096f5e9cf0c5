"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job states as reported by the queue engine.

    State transitions:
    - WAITING -> ACTIVE (picked up by a worker)
    - DELAYED -> WAITING (delay or retry backoff elapsed)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> DELAYED (failed, attempts remaining)
    - ACTIVE -> FAILED (attempts exhausted)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


class EngineEventType(StrEnum):
    """Events published by the queue engine for every queue."""

    ADDED = "added"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PROGRESS = "progress"
    STALLED = "stalled"


class LifecycleStatus(StrEnum):
    """Tracker-level job lifecycle statuses, used by subscriptions and per-job webhooks."""

    CREATED = "created"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class WebhookEvent(StrEnum):
    """Events a tenant webhook can subscribe to."""

    JOB_CREATED = "job.created"
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_STALLED = "job.stalled"
    QUEUE_PAUSED = "queue.paused"
    QUEUE_RESUMED = "queue.resumed"

    @classmethod
    def parse(cls, value: str) -> "WebhookEvent":
        """Accept both the full name (``job.completed``) and the job shorthand (``completed``)."""
        try:
            return cls(value)
        except ValueError:
            return cls(f"job.{value}")


class BackoffType(StrEnum):
    """Retry backoff strategies for scheduled HTTP calls."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ExecutionStatus(StrEnum):
    """Outcome of a scheduled HTTP call."""

    SUCCESS = "success"
    FAILED = "failed"


# Engine events mapped onto tracker lifecycle statuses
EVENT_LIFECYCLE: dict[EngineEventType, LifecycleStatus] = {
    EngineEventType.ADDED: LifecycleStatus.CREATED,
    EngineEventType.ACTIVE: LifecycleStatus.STARTED,
    EngineEventType.PROGRESS: LifecycleStatus.PROGRESS,
    EngineEventType.COMPLETED: LifecycleStatus.COMPLETED,
    EngineEventType.FAILED: LifecycleStatus.FAILED,
    EngineEventType.STALLED: LifecycleStatus.STALLED,
}

# Statuses a subscription may listen to
SUBSCRIPTION_EVENTS: tuple[LifecycleStatus, ...] = (
    LifecycleStatus.CREATED,
    LifecycleStatus.STARTED,
    LifecycleStatus.PROGRESS,
    LifecycleStatus.COMPLETED,
    LifecycleStatus.FAILED,
)

# Outbound HTTP methods
SUBSCRIPTION_METHODS: tuple[str, ...] = ("POST", "PUT")
SCHEDULE_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH")

# Per-job webhook keys
WILDCARD = "*"
CUSTOM_WEBHOOK_PREFIX = "x-"

# Reserved keys stored alongside the job payload in engine job data
JOB_DATA_ID = "_job_id"
JOB_DATA_TENANT = "_tenant_id"
JOB_DATA_SUBMITTED_AT = "_submitted_at"
JOB_DATA_METADATA = "_metadata"
JOB_DATA_WEBHOOKS = "_webhooks"
RESERVED_JOB_DATA_KEYS = frozenset(
    {JOB_DATA_ID, JOB_DATA_TENANT, JOB_DATA_SUBMITTED_AT, JOB_DATA_METADATA, JOB_DATA_WEBHOOKS}
)

# Default values
DEFAULT_TENANT_ID = "default"
DEFAULT_WEBHOOK_MAX_ATTEMPTS = 3
DEFAULT_WEBHOOK_INITIAL_DELAY_MS = 1000
DEFAULT_WEBHOOK_BACKOFF_MULTIPLIER = 2.0
WEBHOOK_JITTER_RATIO = 0.1
WEBHOOK_SECRET_PREFIX = "whsec_"
WEBHOOK_TEST_EVENT = "webhook.test"
DEFAULT_SCHEDULE_TIMEZONE = "UTC"

# Outbound headers
HEADER_SIGNATURE = "X-Webhook-Signature"
HEADER_EVENT = "X-Webhook-Event"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"
HEADER_ATTEMPT = "X-Webhook-Attempt"
HEADER_SUBSCRIPTION_ID = "X-Subscription-Id"
HEADER_JOB_ID = "X-Job-Id"
HEADER_JOB_STATUS = "X-Job-Status"
HEADER_APPLICATION_ID = "X-Application-Id"
HEADER_SCHEDULE_ID = "X-Schedule-Id"
HEADER_EXECUTION_ID = "X-Execution-Id"

# Metrics names
METRIC_QUEUE_DEPTH = "jobrelay_queue_depth"
METRIC_JOBS_SUBMITTED = "jobrelay_jobs_submitted_total"
METRIC_ENGINE_EVENTS = "jobrelay_engine_events_total"
METRIC_WEBHOOK_DELIVERIES = "jobrelay_webhook_deliveries_total"
METRIC_WEBHOOK_LATENCY = "jobrelay_webhook_delivery_seconds"
METRIC_WEBHOOKS_DISABLED = "jobrelay_webhooks_disabled_total"
METRIC_SUBSCRIPTION_TRIGGERS = "jobrelay_subscription_triggers_total"
METRIC_SCHEDULE_EXECUTIONS = "jobrelay_schedule_executions_total"
METRIC_SCHEDULE_LATENCY = "jobrelay_schedule_http_seconds"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_DELIVER_WEBHOOK = "deliver_webhook"
SPAN_TRIGGER_SUBSCRIPTION = "trigger_subscription"
SPAN_EXECUTE_SCHEDULE = "execute_schedule"
