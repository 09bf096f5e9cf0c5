"""
Tenant webhook management and event routing.
"""

import asyncio
import logging
from typing import Any
from uuid import uuid4

from jobrelay.background import BackgroundTasks
from jobrelay.config import Settings, get_settings
from jobrelay.constants import (
    EVENT_LIFECYCLE,
    JOB_DATA_TENANT,
    WEBHOOK_TEST_EVENT,
    EngineEventType,
    WebhookEvent,
)
from jobrelay.db.connection import Database
from jobrelay.db.repository import WebhookRepository
from jobrelay.engine.adapter import QueueEngineAdapter
from jobrelay.engine.base import EngineEvent
from jobrelay.errors import NotFoundError
from jobrelay.tenants import TenantDirectory
from jobrelay.types.common import isoformat_z, utcnow
from jobrelay.types.events import WebhookPayload
from jobrelay.types.webhook import (
    Webhook,
    WebhookCreate,
    WebhookTestResult,
    WebhookUpdate,
)
from jobrelay.webhooks.delivery import DeliveryLedger, DeliveryTarget, WebhookDeliveryService
from jobrelay.webhooks.signing import generate_secret

logger = logging.getLogger(__name__)

# Engine event -> webhook event
_ENGINE_EVENTS: dict[EngineEventType, WebhookEvent] = {
    EngineEventType.ADDED: WebhookEvent.JOB_CREATED,
    EngineEventType.ACTIVE: WebhookEvent.JOB_STARTED,
    EngineEventType.PROGRESS: WebhookEvent.JOB_PROGRESS,
    EngineEventType.COMPLETED: WebhookEvent.JOB_COMPLETED,
    EngineEventType.FAILED: WebhookEvent.JOB_FAILED,
    EngineEventType.STALLED: WebhookEvent.JOB_STALLED,
}


def webhook_target(webhook: Webhook) -> DeliveryTarget:
    """Delivery target of a stored webhook."""
    return DeliveryTarget(
        id=webhook.id,
        url=webhook.url,
        secret=webhook.secret,
        retry=webhook.retry_config,
        headers=dict(webhook.headers),
        kind="webhook",
    )


class StoredWebhookLedger(DeliveryLedger):
    """Failure bookkeeping persisted on the webhook row."""

    def __init__(self, db: Database, disable_threshold: int):
        self._db = db
        self._disable_threshold = disable_threshold

    async def refresh(self, target: DeliveryTarget) -> DeliveryTarget | None:
        async with self._db.session() as session:
            record = await WebhookRepository(session).get(target.id)
            if record is None or not record.active:
                return None
            return webhook_target(Webhook.from_record(record))

    async def record_success(self, target: DeliveryTarget) -> None:
        async with self._db.session() as session:
            await WebhookRepository(session).record_success(target.id)

    async def record_failure(self, target: DeliveryTarget) -> bool:
        async with self._db.session() as session:
            _, disabled = await WebhookRepository(session).record_failure(
                target.id, self._disable_threshold
            )
        return disabled


class WebhookManager:
    """
    Tenant webhooks: registration, ownership-checked mutation and routing of
    engine events and queue-state changes to matching webhooks.
    """

    def __init__(
        self,
        db: Database,
        delivery: WebhookDeliveryService,
        adapter: QueueEngineAdapter,
        tenants: TenantDirectory,
        settings: Settings | None = None,
    ):
        """
        Initialize the manager.

        Args:
            db: Database handle.
            delivery: Shared delivery service.
            adapter: Queue engine adapter, for job snapshots.
            tenants: Tenant directory.
            settings: Application settings. Defaults to the cached settings.
        """
        self._db = db
        self._delivery = delivery
        self._adapter = adapter
        self._tenants = tenants
        self._settings = settings or get_settings()
        self._ledger = StoredWebhookLedger(db, self._settings.webhook_disable_threshold)
        self._tasks = BackgroundTasks("webhooks")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def start(self) -> None:
        """Start listening to engine events and queue-state changes."""
        self._adapter.on_event(self.handle_engine_event)
        self._adapter.on_queue_state(self.handle_queue_state)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def register_webhook(self, tenant_id: str, data: WebhookCreate) -> Webhook:
        """Register a webhook. A signing secret is generated when none is given."""
        async with self._db.session() as session:
            record = await WebhookRepository(session).create(
                tenant_id,
                url=data.url,
                secret=data.secret or generate_secret(),
                events=[str(event) for event in data.events],
                queues=list(data.queues),
                headers=dict(data.headers),
                active=data.active,
                failure_count=0,
                retry_config=data.retry_config.model_dump(),
                extra=dict(data.metadata),
            )
            return Webhook.from_record(record)

    async def update_webhook(
        self,
        webhook_id: str,
        tenant_id: str,
        updates: WebhookUpdate,
    ) -> Webhook:
        """
        Update a tenant's webhook.

        Re-activating an inactive webhook resets its failure counter.

        Raises:
            NotFoundError: The webhook does not exist or belongs to another tenant.
        """
        values = updates.model_dump(exclude_unset=True)
        if "events" in values and values["events"] is not None:
            values["events"] = [str(event) for event in values["events"]]
        if "metadata" in values:
            values["extra"] = values.pop("metadata") or {}
        values = {key: value for key, value in values.items() if value is not None}

        async with self._db.session() as session:
            repo = WebhookRepository(session)
            record = await repo.get(webhook_id, tenant_id)
            if record is None:
                raise NotFoundError("Webhook", webhook_id)
            if values.get("active") and not record.active:
                values["failure_count"] = 0
            await repo.update(record, values)
            logger.info(
                "Updated webhook",
                extra={"webhook_id": webhook_id, "tenant_id": tenant_id, "fields": sorted(values)},
            )
            return Webhook.from_record(record)

    async def delete_webhook(self, webhook_id: str, tenant_id: str) -> None:
        """
        Delete a tenant's webhook. Pending retries become no-ops.

        Raises:
            NotFoundError: The webhook does not exist or belongs to another tenant.
        """
        async with self._db.session() as session:
            deleted = await WebhookRepository(session).delete(webhook_id, tenant_id)
        if not deleted:
            raise NotFoundError("Webhook", webhook_id)
        logger.info("Deleted webhook", extra={"webhook_id": webhook_id, "tenant_id": tenant_id})

    async def get_webhook(self, webhook_id: str, tenant_id: str) -> Webhook:
        async with self._db.session() as session:
            record = await WebhookRepository(session).get(webhook_id, tenant_id)
            if record is None:
                raise NotFoundError("Webhook", webhook_id)
            return Webhook.from_record(record)

    async def list_webhooks(self, tenant_id: str, active: bool | None = None) -> list[Webhook]:
        async with self._db.session() as session:
            records = await WebhookRepository(session).list_for_tenant(tenant_id, active)
            return [Webhook.from_record(record) for record in records]

    async def test_webhook(self, webhook_id: str, tenant_id: str) -> WebhookTestResult:
        """Send a ``webhook.test`` event once and report the outcome."""
        webhook = await self.get_webhook(webhook_id, tenant_id)
        payload = WebhookPayload(
            event=WEBHOOK_TEST_EVENT,
            data={
                "application": await self._tenants.summary(tenant_id),
                "message": "This is a test webhook delivery",
                "testId": str(uuid4()),
            },
        )
        result = await self._delivery.test(webhook_target(webhook), payload)
        logger.info(
            "Webhook test delivered",
            extra={"webhook_id": webhook_id, "success": result.success, "status_code": result.status_code},
        )
        return result

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def find_matching_webhooks(
        self,
        tenant_id: str,
        event: WebhookEvent,
        queue: str | None,
    ) -> list[Webhook]:
        """Active webhooks of the tenant subscribed to ``event`` whose queue filter admits ``queue``."""
        webhooks = await self.list_webhooks(tenant_id, active=True)
        return [webhook for webhook in webhooks if webhook.matches(event, queue)]

    async def deliver(self, webhook: Webhook, payload: WebhookPayload) -> bool:
        """Deliver a payload to one stored webhook, with its retry policy."""
        return await self._delivery.deliver(webhook_target(webhook), payload, self._ledger)

    async def trigger_webhooks(
        self,
        tenant_id: str,
        event: WebhookEvent,
        queue: str | None,
        data: dict[str, Any],
    ) -> int:
        """
        Deliver an event to every matching webhook of a tenant concurrently.

        Returns:
            Number of webhooks the event was sent to.
        """
        webhooks = await self.find_matching_webhooks(tenant_id, event, queue)
        if not webhooks:
            return 0

        payload = WebhookPayload(event=str(event), data=data)
        results = await asyncio.gather(
            *(self.deliver(webhook, payload) for webhook in webhooks),
            return_exceptions=True,
        )
        for webhook, result in zip(webhooks, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Webhook delivery raised: {result!r}",
                    extra={"webhook_id": webhook.id, "webhook_event": str(event)},
                )
        return len(webhooks)

    async def handle_engine_event(self, event: EngineEvent) -> None:
        """
        Engine event consumer.

        The job lookup runs inline so a lost engine connection reaches the
        adapter and the event is handled again on redelivery. Deliveries run
        on a background task.
        """
        webhook_event = _ENGINE_EVENTS.get(event.type)
        if webhook_event is None:
            return
        job = await self._adapter.get_job(event.queue, event.job_id)
        tenant_id = job.data.get(JOB_DATA_TENANT) if job is not None else None
        if tenant_id is None:
            return

        data: dict[str, Any] = {
            "jobId": event.job_id,
            "queue": event.queue,
            "status": str(EVENT_LIFECYCLE[event.type]),
            "application": await self._tenants.summary(tenant_id),
            "createdAt": isoformat_z(job.created_at),
        }
        if event.type == EngineEventType.COMPLETED:
            data["result"] = event.result
        elif event.type == EngineEventType.FAILED:
            data["error"] = event.error
        elif event.type == EngineEventType.PROGRESS:
            data["progress"] = event.progress

        self._tasks.spawn(
            self.trigger_webhooks(tenant_id, webhook_event, event.queue, data),
            "route job event",
        )

    async def handle_queue_state(self, queue: str, paused: bool) -> None:
        """Queue pause/resume consumer. Notifies every tenant allowed on the queue."""
        event = WebhookEvent.QUEUE_PAUSED if paused else WebhookEvent.QUEUE_RESUMED
        self._tasks.spawn(self._route_queue_event(queue, event), "route queue event")

    async def _route_queue_event(self, queue: str, event: WebhookEvent) -> None:
        async with self._db.session() as session:
            tenant_ids = await WebhookRepository(session).tenants_with_active_webhooks()
        for tenant_id in tenant_ids:
            tenant = await self._tenants.get(tenant_id)
            if tenant is not None and not tenant.can_access(queue):
                continue
            await self.trigger_webhooks(
                tenant_id,
                event,
                queue,
                {
                    "queue": queue,
                    "application": await self._tenants.summary(tenant_id),
                    "timestamp": isoformat_z(utcnow()),
                },
            )

    async def drain(self) -> None:
        """Wait for in-flight routing tasks and the retries they scheduled."""
        await self._tasks.drain()
        await self._delivery.drain()

    async def stop(self) -> None:
        await self._tasks.cancel()
