"""
SQLAlchemy database models.
Defines the webhook, subscription and schedule tables.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from jobrelay.types.common import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WebhookRecord(Base):
    """
    Tenant webhook.

    ``failure_count`` is cumulative across deliveries and only reset by a
    successful delivery or an explicit re-activation.
    """

    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    queues: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    headers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    extra: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_webhooks_tenant_active", "tenant_id", "active"),)

    def __repr__(self) -> str:
        return (
            f"WebhookRecord(id={self.id}, tenant={self.tenant_id}, "
            f"active={self.active}, failures={self.failure_count})"
        )


class SubscriptionRecord(Base):
    """Persistent tenant rule matched against job lifecycle events."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(String(8), nullable=False, default="POST")
    headers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    filters: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    events: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    retry_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_subscriptions_tenant_active", "tenant_id", "active"),)

    def __repr__(self) -> str:
        return f"SubscriptionRecord(id={self.id}, tenant={self.tenant_id}, name={self.name})"


class ScheduleRecord(Base):
    """
    Recurring or one-shot HTTP call definition.

    ``engine_handle`` is the opaque registration handle returned by the queue
    engine; it is the only way to remove the registration again.
    """

    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    schedule: Mapped[dict] = mapped_column(JSONType, nullable=False)
    endpoint: Mapped[dict] = mapped_column(JSONType, nullable=False)
    retry_policy: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    extra: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    engine_handle: Mapped[str | None] = mapped_column(String(512), nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_execution_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_execution_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_execution_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"ScheduleRecord(id={self.id}, name={self.name}, enabled={self.enabled}, "
            f"executions={self.execution_count})"
        )
