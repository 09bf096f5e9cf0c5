"""
Job tracker module.
Contains job submission, status tracking, listing and per-job webhooks.
"""

from jobrelay.tracker.job_webhooks import (
    JobWebhookDispatcher,
    JobWebhookLedger,
    normalize_webhook_key,
    parse_job_webhooks,
)
from jobrelay.tracker.service import JobTracker, TrackedJob

__all__ = [
    "JobTracker",
    "TrackedJob",
    "JobWebhookDispatcher",
    "JobWebhookLedger",
    "normalize_webhook_key",
    "parse_job_webhooks",
]
