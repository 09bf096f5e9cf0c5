"""
Database module.
Contains the database handle, models, and repository implementations.
"""

from jobrelay.db.connection import Database
from jobrelay.db.models import Base, ScheduleRecord, SubscriptionRecord, WebhookRecord
from jobrelay.db.repository import (
    ScheduleRepository,
    SubscriptionRepository,
    WebhookRepository,
)

__all__ = [
    "Database",
    "Base",
    "WebhookRecord",
    "SubscriptionRecord",
    "ScheduleRecord",
    "WebhookRepository",
    "SubscriptionRepository",
    "ScheduleRepository",
]
