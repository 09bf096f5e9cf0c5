"""
Tenant webhook type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from jobrelay.constants import (
    DEFAULT_WEBHOOK_BACKOFF_MULTIPLIER,
    DEFAULT_WEBHOOK_INITIAL_DELAY_MS,
    DEFAULT_WEBHOOK_MAX_ATTEMPTS,
    WILDCARD,
    WebhookEvent,
)
from jobrelay.types.common import validate_http_url


class WebhookRetryConfig(BaseModel):
    """Retry policy of a webhook."""

    max_attempts: int = Field(default=DEFAULT_WEBHOOK_MAX_ATTEMPTS, ge=1, le=10)
    initial_delay_ms: int = Field(default=DEFAULT_WEBHOOK_INITIAL_DELAY_MS, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_WEBHOOK_BACKOFF_MULTIPLIER, ge=1.0)


def _parse_events(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return [WebhookEvent.parse(item) if isinstance(item, str) else item for item in value]
    return value


class WebhookCreate(BaseModel):
    """Registration request for a tenant webhook."""

    url: str
    events: list[WebhookEvent] = Field(min_length=1)
    queues: list[str] = Field(default_factory=lambda: [WILDCARD], min_length=1)
    secret: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    retry_config: WebhookRetryConfig = Field(default_factory=WebhookRetryConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)
    active: bool = True

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return validate_http_url(value)

    @field_validator("events", mode="before")
    @classmethod
    def normalise_events(cls, value: Any) -> Any:
        return _parse_events(value)


class WebhookUpdate(BaseModel):
    """Partial update of a tenant webhook. Unset fields are left unchanged."""

    url: str | None = None
    events: list[WebhookEvent] | None = Field(default=None, min_length=1)
    queues: list[str] | None = Field(default=None, min_length=1)
    headers: dict[str, str] | None = None
    retry_config: WebhookRetryConfig | None = None
    metadata: dict[str, Any] | None = None
    active: bool | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str | None) -> str | None:
        return None if value is None else validate_http_url(value)

    @field_validator("events", mode="before")
    @classmethod
    def normalise_events(cls, value: Any) -> Any:
        return _parse_events(value)


class Webhook(BaseModel):
    """A registered tenant webhook."""

    id: str
    tenant_id: str
    url: str
    secret: str
    events: list[WebhookEvent]
    queues: list[str]
    headers: dict[str, str] = Field(default_factory=dict)
    active: bool = True
    failure_count: int = 0
    retry_config: WebhookRetryConfig = Field(default_factory=WebhookRetryConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_triggered_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "Webhook":
        """Build the view from a ``WebhookRecord`` row."""
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            url=record.url,
            secret=record.secret,
            events=record.events,
            queues=record.queues,
            headers=record.headers or {},
            active=record.active,
            failure_count=record.failure_count,
            retry_config=record.retry_config or {},
            metadata=record.extra or {},
            last_triggered_at=record.last_triggered_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def matches(self, event: str, queue: str | None) -> bool:
        """Check the event set and the queue filter."""
        if event not in self.events:
            return False
        if queue is None:
            return True
        return WILDCARD in self.queues or queue in self.queues


class WebhookTestResult(BaseModel):
    """Outcome of a single synchronous test delivery."""

    success: bool
    status_code: int | None = None
    error: str | None = None
    response_time_ms: float
