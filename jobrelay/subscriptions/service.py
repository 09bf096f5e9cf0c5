"""
Subscription engine.

Tenant-defined rules evaluated against every job lifecycle event. Matching
subscriptions are triggered concurrently; each one retries on its own with a
linear backoff and never affects its siblings.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import httpx

from jobrelay.config import Settings, get_settings
from jobrelay.constants import (
    HEADER_APPLICATION_ID,
    HEADER_JOB_ID,
    HEADER_JOB_STATUS,
    HEADER_SUBSCRIPTION_ID,
    SPAN_TRIGGER_SUBSCRIPTION,
)
from jobrelay.db.connection import Database
from jobrelay.db.repository import SubscriptionRepository
from jobrelay.errors import (
    DeliveryError,
    NotFoundError,
    TerminalDeliveryError,
    TransientDeliveryError,
    ValidationError,
)
from jobrelay.observability.metrics import MetricsCollector, get_metrics
from jobrelay.observability.tracing import get_tracer
from jobrelay.subscriptions.matching import filter_matching, validate_subscription
from jobrelay.tenants import TenantDirectory
from jobrelay.types.events import JobLifecycleEvent, WebhookPayload
from jobrelay.types.subscription import (
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
)
from jobrelay.webhooks.delivery import classify_status
from jobrelay.webhooks.signing import build_headers, encode_body, generate_secret

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Subscription CRUD, matching and triggering.

    All mutations are scoped by tenant: acting on another tenant's
    subscription is reported as not found.
    """

    def __init__(
        self,
        db: Database,
        client: httpx.AsyncClient,
        tenants: TenantDirectory,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the service.

        Args:
            db: Database handle.
            client: Shared HTTP client.
            tenants: Tenant directory.
            settings: Application settings. Defaults to the cached settings.
            metrics: Metrics collector. Defaults to the process collector.
            sleep: Awaitable used for backoff waits.
        """
        self._db = db
        self._client = client
        self._tenants = tenants
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_subscription(self, tenant_id: str, data: SubscriptionCreate) -> Subscription:
        """
        Create a subscription.

        Raises:
            ValidationError: Missing name, invalid endpoint, no or unknown events.
        """
        errors = validate_subscription(data.name, data.endpoint, data.events, data.method)
        if errors:
            raise ValidationError("Invalid subscription", errors)

        async with self._db.session() as session:
            record = await SubscriptionRepository(session).create(
                tenant_id,
                name=data.name,
                description=data.description,
                endpoint=data.endpoint,
                method=data.method.upper(),
                headers=dict(data.headers),
                secret=data.secret or generate_secret(),
                filters=data.filters.model_dump(),
                events=list(dict.fromkeys(data.events)),
                active=data.active,
                retry_config=data.retry_config.model_dump(),
                trigger_count=0,
            )
            return Subscription.from_record(record)

    async def update_subscription(
        self,
        subscription_id: str,
        tenant_id: str,
        updates: SubscriptionUpdate,
    ) -> Subscription:
        """
        Update a tenant's subscription. The merged definition is re-validated.

        Raises:
            NotFoundError: Unknown id or owned by another tenant.
            ValidationError: The merged definition is invalid.
        """
        values = {
            key: value
            for key, value in updates.model_dump(exclude_unset=True).items()
            if value is not None
        }
        async with self._db.session() as session:
            repo = SubscriptionRepository(session)
            record = await repo.get(subscription_id, tenant_id)
            if record is None:
                raise NotFoundError("Subscription", subscription_id)

            errors = validate_subscription(
                values.get("name", record.name),
                values.get("endpoint", record.endpoint),
                values.get("events", record.events),
                values.get("method", record.method),
            )
            if errors:
                raise ValidationError("Invalid subscription", errors)

            if "method" in values:
                values["method"] = values["method"].upper()
            await repo.update(record, values)
            logger.info(
                "Updated subscription",
                extra={"subscription_id": subscription_id, "tenant_id": tenant_id},
            )
            return Subscription.from_record(record)

    async def delete_subscription(self, subscription_id: str, tenant_id: str) -> None:
        """
        Delete a tenant's subscription. Triggers in flight stop at their next attempt.

        Raises:
            NotFoundError: Unknown id or owned by another tenant.
        """
        async with self._db.session() as session:
            deleted = await SubscriptionRepository(session).delete(subscription_id, tenant_id)
        if not deleted:
            raise NotFoundError("Subscription", subscription_id)
        logger.info(
            "Deleted subscription",
            extra={"subscription_id": subscription_id, "tenant_id": tenant_id},
        )

    async def get_subscription(self, subscription_id: str, tenant_id: str) -> Subscription:
        async with self._db.session() as session:
            record = await SubscriptionRepository(session).get(subscription_id, tenant_id)
            if record is None:
                raise NotFoundError("Subscription", subscription_id)
            return Subscription.from_record(record)

    async def list_subscriptions(
        self,
        tenant_id: str,
        active: bool | None = None,
        queue: str | None = None,
    ) -> list[Subscription]:
        """List a tenant's subscriptions, optionally only those filtering on ``queue``."""
        async with self._db.session() as session:
            records = await SubscriptionRepository(session).list_for_tenant(tenant_id, active)
            subscriptions = [Subscription.from_record(record) for record in records]
        if queue is not None:
            subscriptions = [sub for sub in subscriptions if queue in sub.filters.queues]
        return subscriptions

    # ------------------------------------------------------------------
    # Matching and triggering
    # ------------------------------------------------------------------

    async def find_matching_subscriptions(self, event: JobLifecycleEvent) -> list[Subscription]:
        if event.tenant_id is None:
            return []
        candidates = await self.list_subscriptions(event.tenant_id, active=True)
        return filter_matching(candidates, event)

    async def trigger_subscriptions(self, event: JobLifecycleEvent) -> int:
        """
        Trigger every matching subscription concurrently.

        Returns:
            Number of subscriptions that received the event.
        """
        subscriptions = await self.find_matching_subscriptions(event)
        if not subscriptions:
            return 0

        logger.debug(
            f"Triggering {len(subscriptions)} subscriptions",
            extra={"job_id": event.job_id, "status": event.status},
        )
        results = await asyncio.gather(
            *(self.trigger_subscription(sub, event) for sub in subscriptions),
            return_exceptions=True,
        )
        delivered = 0
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Subscription trigger raised: {result!r}",
                    extra={"subscription_id": subscription.id, "job_id": event.job_id},
                )
            elif result:
                delivered += 1
        return delivered

    async def trigger_subscription(
        self,
        subscription: Subscription,
        event: JobLifecycleEvent,
    ) -> bool:
        """
        Deliver an event to one subscription with its retry policy.

        The subscription is re-read before every attempt; a deleted or
        deactivated one stops the retries. Exhaustion is logged only.

        Returns:
            True when an attempt succeeded.
        """
        payload = WebhookPayload.for_job(
            event=f"job.{event.status}",
            job_id=event.job_id,
            queue=event.queue,
            status=event.status,
            application=await self._tenants.summary(event.tenant_id),
            result=event.result,
            error=event.error,
            progress=event.progress,
            metadata=event.metadata or None,
            subscription={"id": subscription.id, "name": subscription.name},
        )
        payload.timestamp = event.timestamp
        wire = payload.to_wire()
        body = encode_body(wire)

        retry = subscription.retry_config
        for attempt in range(1, retry.max_attempts + 1):
            current = await self._reload(subscription.id)
            if current is None or not current.active:
                logger.info(
                    "Subscription removed or inactive, stopping delivery",
                    extra={"subscription_id": subscription.id, "attempt": attempt},
                )
                return False

            headers = build_headers(
                body=body,
                secret=current.secret,
                event=payload.event,
                timestamp=wire["timestamp"],
                attempt=attempt,
                user_agent=self._settings.webhook_user_agent,
                custom=current.headers,
                extra={
                    HEADER_SUBSCRIPTION_ID: current.id,
                    HEADER_JOB_ID: event.job_id,
                    HEADER_JOB_STATUS: event.status,
                    HEADER_APPLICATION_ID: event.tenant_id or "",
                },
            )
            error = await self._send(current, body, headers, attempt)
            if error is None:
                async with self._db.session() as session:
                    await SubscriptionRepository(session).record_trigger(current.id)
                self._metrics.record_subscription_trigger("success")
                logger.info(
                    "Subscription triggered",
                    extra={"subscription_id": current.id, "job_id": event.job_id, "attempt": attempt},
                )
                return True

            self._metrics.record_subscription_trigger("failure")
            if isinstance(error, TerminalDeliveryError):
                logger.warning(
                    f"Subscription endpoint rejected delivery: {error.reason}",
                    extra={"subscription_id": current.id, "job_id": event.job_id},
                )
                return False
            if attempt < retry.max_attempts:
                await self._sleep(retry.backoff_ms * attempt / 1000)

        logger.error(
            f"Subscription delivery failed after {retry.max_attempts} attempts",
            extra={"subscription_id": subscription.id, "job_id": event.job_id},
        )
        return False

    async def _reload(self, subscription_id: str) -> Subscription | None:
        async with self._db.session() as session:
            record = await SubscriptionRepository(session).get(subscription_id)
            return None if record is None else Subscription.from_record(record)

    async def _send(
        self,
        subscription: Subscription,
        body: bytes,
        headers: dict[str, str],
        attempt: int,
    ) -> DeliveryError | None:
        with get_tracer().start_as_current_span(SPAN_TRIGGER_SUBSCRIPTION) as span:
            span.set_attribute("subscription.id", subscription.id)
            span.set_attribute("subscription.attempt", attempt)
            start = time.perf_counter()
            try:
                response = await self._client.request(
                    subscription.method,
                    subscription.endpoint,
                    content=body,
                    headers=headers,
                    timeout=self._settings.subscription_timeout_seconds,
                    follow_redirects=False,
                )
            except httpx.HTTPError as e:
                return TransientDeliveryError(subscription.endpoint, repr(e), attempt=attempt)
            finally:
                span.set_attribute("duration_ms", (time.perf_counter() - start) * 1000)
            span.set_attribute("http.status_code", response.status_code)
            return classify_status(subscription.endpoint, response.status_code, attempt)
