"""
Per-job webhooks.

A job may carry a map of status -> URL registered at submission time. Keys are
lifecycle statuses, the ``*`` wildcard, or custom keys with the ``x-`` prefix.
Deliveries go through the shared delivery service; failures are counted per
job and stop further deliveries for that job once the threshold is reached.
"""

import logging
import re
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from typing import Any

from jobrelay.config import Settings, get_settings
from jobrelay.constants import (
    CUSTOM_WEBHOOK_PREFIX,
    HEADER_JOB_ID,
    HEADER_JOB_STATUS,
    WILDCARD,
    LifecycleStatus,
)
from jobrelay.errors import ValidationError
from jobrelay.types.common import is_http_url
from jobrelay.types.events import WebhookPayload
from jobrelay.types.webhook import WebhookRetryConfig
from jobrelay.webhooks.delivery import DeliveryLedger, DeliveryTarget, WebhookDeliveryService

logger = logging.getLogger(__name__)

# ``onCompleted`` style aliases
_ALIAS = re.compile(r"^on([A-Z][A-Za-z]*)$")
_STATUSES = frozenset(status.value for status in LifecycleStatus)

WebhookLookup = Callable[[str, str], Awaitable[str | None]]


def is_custom_status(status: str) -> bool:
    return status.lower().startswith(CUSTOM_WEBHOOK_PREFIX) and len(status) > len(CUSTOM_WEBHOOK_PREFIX)


def normalize_webhook_key(key: str) -> str:
    """
    Canonical form of a per-job webhook key.

    Raises:
        ValidationError: The key is neither a lifecycle status, ``*``, an
            ``onStatus`` alias nor an ``x-`` custom key.
    """
    if key == WILDCARD:
        return key
    if is_custom_status(key):
        return key
    if key in _STATUSES:
        return key
    match = _ALIAS.match(key)
    if match and match.group(1).lower() in _STATUSES:
        return match.group(1).lower()
    raise ValidationError(
        f"Unknown webhook key: {key}",
        [f"Unknown webhook key '{key}': use a job status, '*' or an 'x-' custom key"],
    )


def parse_job_webhooks(webhooks: Mapping[str, str | None] | None) -> dict[str, str]:
    """
    Validate and normalise a per-job webhook map. Empty values are dropped.

    Raises:
        ValidationError: With one entry per invalid key or URL.
    """
    if not webhooks:
        return {}

    parsed: dict[str, str] = {}
    errors: list[str] = []
    for key, url in webhooks.items():
        if not url:
            continue
        try:
            normalized = normalize_webhook_key(key)
        except ValidationError as e:
            errors.extend(e.errors)
            continue
        if not is_http_url(url):
            errors.append(f"Webhook '{key}' must be an absolute http(s) URL")
            continue
        parsed[normalized] = url

    if errors:
        raise ValidationError("Invalid job webhooks", errors)
    return parsed


def resolve_webhook_url(webhooks: Mapping[str, str], status: str) -> str | None:
    """The URL for ``status``: the exact entry first, then the wildcard."""
    return webhooks.get(status) or webhooks.get(WILDCARD)


class JobWebhookLedger(DeliveryLedger):
    """
    Failure bookkeeping scoped to one job.

    Counters live in a bounded LRU and are discarded with the job; they are
    never shared with tenant webhooks.
    """

    def __init__(self, lookup: WebhookLookup, disable_threshold: int, max_jobs: int = 10000):
        self._lookup = lookup
        self._disable_threshold = disable_threshold
        self._max_jobs = max_jobs
        self._failures: OrderedDict[str, int] = OrderedDict()

    def failures(self, job_id: str) -> int:
        return self._failures.get(job_id, 0)

    def discard(self, job_id: str) -> None:
        self._failures.pop(job_id, None)

    async def refresh(self, target: DeliveryTarget) -> DeliveryTarget | None:
        if target.owner_id is None or target.route is None:
            return target
        if self.failures(target.owner_id) >= self._disable_threshold:
            return None
        url = await self._lookup(target.owner_id, target.route)
        if url is None:
            return None
        return replace(target, url=url)

    async def record_success(self, target: DeliveryTarget) -> None:
        if target.owner_id is not None:
            self.discard(target.owner_id)

    async def record_failure(self, target: DeliveryTarget) -> bool:
        if target.owner_id is None:
            return False
        count = self._failures.pop(target.owner_id, 0) + 1
        self._failures[target.owner_id] = count
        while len(self._failures) > self._max_jobs:
            self._failures.popitem(last=False)
        if count == self._disable_threshold:
            logger.warning(
                "Per-job webhooks disabled after repeated failures",
                extra={"job_id": target.owner_id, "failure_count": count},
            )
            return True
        return False


class JobWebhookDispatcher:
    """Sends lifecycle notifications to a job's own webhooks."""

    def __init__(
        self,
        delivery: WebhookDeliveryService,
        lookup: WebhookLookup,
        settings: Settings | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            delivery: Shared delivery service.
            lookup: Resolves the current URL of a job's webhook for a status;
                re-evaluated before every attempt.
            settings: Application settings. Defaults to the cached settings.
        """
        self._delivery = delivery
        self._settings = settings or get_settings()
        self._ledger = JobWebhookLedger(
            lookup,
            self._settings.webhook_disable_threshold,
            max_jobs=self._settings.tracker_cache_size,
        )

    @property
    def ledger(self) -> JobWebhookLedger:
        return self._ledger

    def _retry_config(self) -> WebhookRetryConfig:
        return WebhookRetryConfig(
            max_attempts=self._settings.job_webhook_max_attempts,
            initial_delay_ms=self._settings.job_webhook_initial_delay_ms,
        )

    async def dispatch(
        self,
        job_id: str,
        queue: str,
        status: str,
        webhooks: Mapping[str, str],
        application: dict[str, str] | None = None,
        **extra: Any,
    ) -> bool:
        """
        Deliver a status notification to the job's webhook for ``status``.

        Returns:
            True when a webhook was configured for the status and its first
            attempt succeeded.
        """
        url = resolve_webhook_url(webhooks, status)
        if url is None:
            return False

        payload = WebhookPayload.for_job(
            event=f"job.{status}",
            job_id=job_id,
            queue=queue,
            status=status,
            application=application,
            **extra,
        )
        target = DeliveryTarget(
            id=f"job:{job_id}",
            url=url,
            secret=self._settings.job_webhook_secret,
            retry=self._retry_config(),
            system_headers={HEADER_JOB_ID: job_id, HEADER_JOB_STATUS: status},
            kind="job",
            owner_id=job_id,
            route=status,
        )
        logger.debug(
            "Dispatching job webhook",
            extra={"job_id": job_id, "status": status, "url": url},
        )
        return await self._delivery.deliver(target, payload, self._ledger)

    def discard(self, job_id: str) -> None:
        self._ledger.discard(job_id)
