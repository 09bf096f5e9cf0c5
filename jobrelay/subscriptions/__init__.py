"""
Subscription module.
Contains tenant subscription rules, their matching and triggering.
"""

from jobrelay.subscriptions.matching import (
    filter_matching,
    metadata_matches,
    subscription_matches,
    validate_subscription,
)
from jobrelay.subscriptions.service import SubscriptionService

__all__ = [
    "SubscriptionService",
    "filter_matching",
    "metadata_matches",
    "subscription_matches",
    "validate_subscription",
]
