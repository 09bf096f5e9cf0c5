"""
Subscription type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobrelay.constants import DEFAULT_WEBHOOK_MAX_ATTEMPTS, DEFAULT_WEBHOOK_INITIAL_DELAY_MS


class SubscriptionFilters(BaseModel):
    """
    Match constraints. An empty dimension matches everything; metadata
    entries must all be present and equal on the job.
    """

    queues: list[str] = Field(default_factory=list)
    statuses: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionRetryConfig(BaseModel):
    """Linear retry policy: attempt ``n`` waits ``backoff_ms * n`` before the next."""

    max_attempts: int = Field(default=DEFAULT_WEBHOOK_MAX_ATTEMPTS, ge=1, le=10)
    backoff_ms: int = Field(default=DEFAULT_WEBHOOK_INITIAL_DELAY_MS, ge=0)


class SubscriptionCreate(BaseModel):
    """Creation request. Validated by the subscription service."""

    name: str
    description: str | None = None
    endpoint: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    filters: SubscriptionFilters = Field(default_factory=SubscriptionFilters)
    events: list[str] = Field(default_factory=list)
    active: bool = True
    retry_config: SubscriptionRetryConfig = Field(default_factory=SubscriptionRetryConfig)
    secret: str | None = None


class SubscriptionUpdate(BaseModel):
    """Partial update. Unset fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    endpoint: str | None = None
    method: str | None = None
    headers: dict[str, str] | None = None
    filters: SubscriptionFilters | None = None
    events: list[str] | None = None
    active: bool | None = None
    retry_config: SubscriptionRetryConfig | None = None


class Subscription(BaseModel):
    """A persisted subscription."""

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    endpoint: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    secret: str
    filters: SubscriptionFilters = Field(default_factory=SubscriptionFilters)
    events: list[str]
    active: bool = True
    retry_config: SubscriptionRetryConfig = Field(default_factory=SubscriptionRetryConfig)
    trigger_count: int = 0
    last_triggered_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "Subscription":
        """Build the view from a ``SubscriptionRecord`` row."""
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            name=record.name,
            description=record.description,
            endpoint=record.endpoint,
            method=record.method,
            headers=record.headers or {},
            secret=record.secret,
            filters=record.filters or {},
            events=record.events,
            active=record.active,
            retry_config=record.retry_config or {},
            trigger_count=record.trigger_count,
            last_triggered_at=record.last_triggered_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
