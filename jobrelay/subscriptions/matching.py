"""
Pure matching and validation rules for subscriptions.
"""

from collections.abc import Iterable
from typing import Any

from jobrelay.constants import SUBSCRIPTION_EVENTS, SUBSCRIPTION_METHODS
from jobrelay.types.common import is_http_url
from jobrelay.types.events import JobLifecycleEvent
from jobrelay.types.subscription import Subscription

_MISSING = object()


def metadata_matches(expected: dict[str, Any], actual: dict[str, Any]) -> bool:
    """Every expected key must be present with an equal value."""
    return all(actual.get(key, _MISSING) == value for key, value in expected.items())


def subscription_matches(subscription: Subscription, event: JobLifecycleEvent) -> bool:
    """
    Check a subscription against a lifecycle event.

    Same tenant, active, listening to the event's status, then the queue,
    status and metadata filters. An empty filter dimension matches everything.
    """
    if not subscription.active or subscription.tenant_id != event.tenant_id:
        return False
    if event.status not in subscription.events:
        return False

    filters = subscription.filters
    if filters.queues and event.queue not in filters.queues:
        return False
    if filters.statuses and event.status not in filters.statuses:
        return False
    return metadata_matches(filters.metadata, event.metadata)


def filter_matching(
    subscriptions: Iterable[Subscription],
    event: JobLifecycleEvent,
) -> list[Subscription]:
    return [subscription for subscription in subscriptions if subscription_matches(subscription, event)]


def validate_subscription(
    name: str | None,
    endpoint: str | None,
    events: list[str] | None,
    method: str | None,
) -> list[str]:
    """
    Collect validation errors for a subscription definition.

    Returns:
        A list of human readable errors; empty when valid.
    """
    errors: list[str] = []
    if not name or not name.strip():
        errors.append("Name is required")
    if not endpoint:
        errors.append("Endpoint is required")
    elif not is_http_url(endpoint):
        errors.append("Endpoint must be a valid URL")
    if not events:
        errors.append("At least one event must be specified")
    else:
        unknown = [event for event in events if event not in SUBSCRIPTION_EVENTS]
        if unknown:
            errors.append(f"Unknown events: {', '.join(unknown)}")
    if method is not None and method.upper() not in SUBSCRIPTION_METHODS:
        errors.append(f"Method must be one of {', '.join(SUBSCRIPTION_METHODS)}")
    return errors
