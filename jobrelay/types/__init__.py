"""
Type definitions for jobrelay.
Contains input/output type definitions for all components, grouped by module.
"""

from jobrelay.types.events import JobLifecycleEvent, WebhookPayload
from jobrelay.types.job import (
    JobFilter,
    JobStatusView,
    JobSummary,
    JobTimestamps,
    JobUpdate,
    JobUpdateRecord,
    MetadataGroup,
    QueueStats,
)
from jobrelay.types.schedule import (
    BackoffPolicy,
    EndpointConfig,
    EndpointUpdate,
    ExecutionResult,
    RetryPolicy,
    Schedule,
    ScheduleCreate,
    ScheduleList,
    ScheduleSpec,
    ScheduleUpdate,
)
from jobrelay.types.subscription import (
    Subscription,
    SubscriptionCreate,
    SubscriptionFilters,
    SubscriptionRetryConfig,
    SubscriptionUpdate,
)
from jobrelay.types.tenant import Tenant
from jobrelay.types.webhook import (
    Webhook,
    WebhookCreate,
    WebhookRetryConfig,
    WebhookTestResult,
    WebhookUpdate,
)

__all__ = [
    # Job types
    "JobUpdate",
    "JobUpdateRecord",
    "JobTimestamps",
    "JobStatusView",
    "JobSummary",
    "JobFilter",
    "MetadataGroup",
    "QueueStats",
    # Event types
    "JobLifecycleEvent",
    "WebhookPayload",
    # Tenant types
    "Tenant",
    # Webhook types
    "Webhook",
    "WebhookCreate",
    "WebhookUpdate",
    "WebhookRetryConfig",
    "WebhookTestResult",
    # Subscription types
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "SubscriptionFilters",
    "SubscriptionRetryConfig",
    # Schedule types
    "Schedule",
    "ScheduleCreate",
    "ScheduleUpdate",
    "ScheduleSpec",
    "ScheduleList",
    "EndpointConfig",
    "EndpointUpdate",
    "RetryPolicy",
    "BackoffPolicy",
    "ExecutionResult",
]
