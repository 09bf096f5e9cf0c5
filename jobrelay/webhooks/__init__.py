"""
Webhook module.
Contains payload signing, delivery with retries and tenant webhook management.
"""

from jobrelay.webhooks.delivery import (
    DeliveryLedger,
    DeliveryTarget,
    WebhookDeliveryService,
    calculate_backoff_delay,
)
from jobrelay.webhooks.manager import WebhookManager
from jobrelay.webhooks.signing import generate_secret, sign_payload, verify_signature

__all__ = [
    "WebhookDeliveryService",
    "WebhookManager",
    "DeliveryTarget",
    "DeliveryLedger",
    "calculate_backoff_delay",
    "sign_payload",
    "verify_signature",
    "generate_secret",
]
