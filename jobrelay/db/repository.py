"""
Repositories for database operations.
Implements the data access patterns for webhooks, subscriptions and schedules.
"""

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.db.models import ScheduleRecord, SubscriptionRecord, WebhookRecord
from jobrelay.types.common import utcnow

logger = logging.getLogger(__name__)


def _apply(record: Any, values: dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(record, key, value)
    record.updated_at = utcnow()


class WebhookRepository:
    """
    Repository for tenant webhooks.

    Failure accounting is done with atomic ``UPDATE ... SET failure_count =
    failure_count + 1`` statements so concurrent deliveries never lose a count.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create(self, tenant_id: str, **values: Any) -> WebhookRecord:
        """Insert a webhook and flush so the id is available."""
        record = WebhookRecord(tenant_id=tenant_id, **values)
        self._session.add(record)
        await self._session.flush()
        logger.info(
            "Created webhook",
            extra={"webhook_id": record.id, "tenant_id": tenant_id},
        )
        return record

    async def get(self, webhook_id: str, tenant_id: str | None = None) -> WebhookRecord | None:
        """
        Get a webhook by id, optionally scoped to its owning tenant.

        Args:
            webhook_id: The webhook id.
            tenant_id: When given, a webhook of another tenant is not returned.

        Returns:
            The record or None.
        """
        stmt = select(WebhookRecord).where(WebhookRecord.id == webhook_id)
        if tenant_id is not None:
            stmt = stmt.where(WebhookRecord.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: str,
        active: bool | None = None,
    ) -> Sequence[WebhookRecord]:
        """List a tenant's webhooks, oldest first."""
        stmt = select(WebhookRecord).where(WebhookRecord.tenant_id == tenant_id)
        if active is not None:
            stmt = stmt.where(WebhookRecord.active == active)
        stmt = stmt.order_by(WebhookRecord.created_at)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def tenants_with_active_webhooks(self) -> list[str]:
        stmt = select(WebhookRecord.tenant_id).where(WebhookRecord.active.is_(True)).distinct()
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, record: WebhookRecord, values: dict[str, Any]) -> WebhookRecord:
        _apply(record, values)
        await self._session.flush()
        return record

    async def delete(self, webhook_id: str, tenant_id: str) -> bool:
        """Delete a tenant's webhook. Returns False when nothing matched."""
        stmt = (
            delete(WebhookRecord)
            .where(WebhookRecord.id == webhook_id, WebhookRecord.tenant_id == tenant_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def record_success(self, webhook_id: str) -> bool:
        """Reset the failure counter and stamp the trigger time."""
        now = utcnow()
        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == webhook_id)
            .values(failure_count=0, last_triggered_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def record_failure(self, webhook_id: str, disable_threshold: int) -> tuple[int, bool]:
        """
        Increment the failure counter and deactivate at the threshold.

        Args:
            webhook_id: The webhook id.
            disable_threshold: Failure count at which the webhook is deactivated.

        Returns:
            Tuple of (failure_count, disabled) where disabled is True only for
            the call that flipped the webhook to inactive.
        """
        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == webhook_id)
            .values(failure_count=WebhookRecord.failure_count + 1, updated_at=utcnow())
            .returning(WebhookRecord.failure_count)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        failure_count = result.scalar_one_or_none()
        if failure_count is None:
            return 0, False
        if failure_count < disable_threshold:
            return failure_count, False

        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == webhook_id, WebhookRecord.active.is_(True))
            .values(active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        disabled = result.rowcount > 0
        if disabled:
            logger.warning(
                "Webhook disabled after repeated failures",
                extra={"webhook_id": webhook_id, "failure_count": failure_count},
            )
        return failure_count, disabled


class SubscriptionRepository:
    """Repository for subscriptions."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, tenant_id: str, **values: Any) -> SubscriptionRecord:
        record = SubscriptionRecord(tenant_id=tenant_id, **values)
        self._session.add(record)
        await self._session.flush()
        logger.info(
            "Created subscription",
            extra={"subscription_id": record.id, "tenant_id": tenant_id},
        )
        return record

    async def get(
        self,
        subscription_id: str,
        tenant_id: str | None = None,
    ) -> SubscriptionRecord | None:
        stmt = select(SubscriptionRecord).where(SubscriptionRecord.id == subscription_id)
        if tenant_id is not None:
            stmt = stmt.where(SubscriptionRecord.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: str,
        active: bool | None = None,
    ) -> Sequence[SubscriptionRecord]:
        """List a tenant's subscriptions, newest first."""
        stmt = select(SubscriptionRecord).where(SubscriptionRecord.tenant_id == tenant_id)
        if active is not None:
            stmt = stmt.where(SubscriptionRecord.active == active)
        stmt = stmt.order_by(SubscriptionRecord.created_at.desc())
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def update(self, record: SubscriptionRecord, values: dict[str, Any]) -> SubscriptionRecord:
        _apply(record, values)
        await self._session.flush()
        return record

    async def delete(self, subscription_id: str, tenant_id: str) -> bool:
        stmt = (
            delete(SubscriptionRecord)
            .where(
                SubscriptionRecord.id == subscription_id,
                SubscriptionRecord.tenant_id == tenant_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def record_trigger(self, subscription_id: str) -> bool:
        """Atomically increment ``trigger_count`` and stamp ``last_triggered_at``."""
        now = utcnow()
        stmt = (
            update(SubscriptionRecord)
            .where(SubscriptionRecord.id == subscription_id)
            .values(
                trigger_count=SubscriptionRecord.trigger_count + 1,
                last_triggered_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0


class ScheduleRepository:
    """Repository for schedules."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, **values: Any) -> ScheduleRecord:
        record = ScheduleRecord(**values)
        self._session.add(record)
        await self._session.flush()
        logger.info(
            "Created schedule",
            extra={"schedule_id": record.id, "schedule_name": record.name},
        )
        return record

    async def get(self, schedule_id: str) -> ScheduleRecord | None:
        result = await self._session.execute(
            select(ScheduleRecord).where(ScheduleRecord.id == schedule_id)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> ScheduleRecord | None:
        result = await self._session.execute(
            select(ScheduleRecord).where(ScheduleRecord.name == name)
        )
        return result.scalar_one_or_none()

    async def list_page(
        self,
        enabled: bool | None = None,
        created_by: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[ScheduleRecord], int]:
        """
        List schedules, newest first.

        Returns:
            Tuple of (records, total) where total ignores pagination.
        """
        conditions = []
        if enabled is not None:
            conditions.append(ScheduleRecord.enabled == enabled)
        if created_by is not None:
            conditions.append(ScheduleRecord.created_by == created_by)

        count_stmt = select(func.count()).select_from(ScheduleRecord).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(ScheduleRecord)
            .where(*conditions)
            .order_by(ScheduleRecord.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def list_enabled(self) -> Sequence[ScheduleRecord]:
        result = await self._session.execute(
            select(ScheduleRecord).where(ScheduleRecord.enabled.is_(True))
        )
        return result.scalars().all()

    async def update(self, record: ScheduleRecord, values: dict[str, Any]) -> ScheduleRecord:
        _apply(record, values)
        await self._session.flush()
        return record

    async def delete(self, record: ScheduleRecord) -> None:
        await self._session.delete(record)
        await self._session.flush()
