"""
Schedule type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from jobrelay.constants import DEFAULT_SCHEDULE_TIMEZONE, BackoffType, ExecutionStatus


class ScheduleSpec(BaseModel):
    """When a schedule fires: exactly one of ``cron`` or ``at``."""

    cron: str | None = None
    at: datetime | None = None
    timezone: str = DEFAULT_SCHEDULE_TIMEZONE
    end_date: datetime | None = None
    limit: int | None = Field(default=None, ge=1)

    @property
    def is_one_shot(self) -> bool:
        return self.at is not None and self.cron is None


class EndpointConfig(BaseModel):
    """The HTTP call performed on every fire."""

    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int = Field(default=30000, gt=0)

    @field_validator("method")
    @classmethod
    def upper_method(cls, value: str) -> str:
        return value.upper()


class EndpointUpdate(BaseModel):
    """Partial endpoint change, merged over the stored endpoint."""

    url: str | None = None
    method: str | None = None
    headers: dict[str, str] | None = None
    body: Any = None
    timeout_ms: int | None = Field(default=None, gt=0)


class BackoffPolicy(BaseModel):
    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = Field(default=5000, ge=0)


class RetryPolicy(BaseModel):
    """Attempts per fire, including the first one."""

    attempts: int = Field(default=3, ge=1, le=20)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)


class ScheduleCreate(BaseModel):
    """Creation request. Validated by the schedule service."""

    name: str = Field(min_length=1)
    description: str | None = None
    schedule: ScheduleSpec
    endpoint: EndpointConfig
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    enabled: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScheduleUpdate(BaseModel):
    """
    Partial update. ``schedule`` and ``endpoint`` are merged field by field
    using only the fields explicitly set on the nested models.
    """

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    schedule: ScheduleSpec | None = None
    endpoint: EndpointUpdate | None = None
    retry_policy: RetryPolicy | None = None
    enabled: bool | None = None
    metadata: dict[str, Any] | None = None


class Schedule(BaseModel):
    """A persisted schedule."""

    id: str
    name: str
    description: str | None = None
    schedule: ScheduleSpec
    endpoint: EndpointConfig
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    enabled: bool = True
    created_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    engine_handle: str | None = None
    execution_count: int = 0
    last_executed_at: datetime | None = None
    last_execution_status: ExecutionStatus | None = None
    last_execution_error: str | None = None
    next_execution_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "Schedule":
        """Build the view from a ``ScheduleRecord`` row."""
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            schedule=record.schedule,
            endpoint=record.endpoint,
            retry_policy=record.retry_policy or {},
            enabled=record.enabled,
            created_by=record.created_by,
            metadata=record.extra or {},
            engine_handle=record.engine_handle,
            execution_count=record.execution_count,
            last_executed_at=record.last_executed_at,
            last_execution_status=record.last_execution_status,
            last_execution_error=record.last_execution_error,
            next_execution_at=record.next_execution_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ScheduleList(BaseModel):
    """One page of schedules."""

    schedules: list[Schedule]
    total: int
    page: int
    pages: int


class ExecutionResult(BaseModel):
    """Outcome of one scheduled HTTP call, retries included."""

    execution_id: str
    schedule_id: str
    status: ExecutionStatus
    attempts: int
    status_code: int | None = None
    error: str | None = None
    duration_ms: float = 0.0
