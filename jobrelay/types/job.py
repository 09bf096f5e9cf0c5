"""
Job-related type definitions for the tracker.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from jobrelay.constants import JobStatus


class JobUpdate(BaseModel):
    """
    Status report sent by an external worker for a tracked job.

    ``progress`` updates need a numeric progress value, ``completed`` needs a
    result and ``failed`` needs an error. Other statuses are recorded and
    routed to the matching per-job webhook only.
    """

    job_id: str
    status: str
    progress: float | None = None
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None


class JobUpdateRecord(BaseModel):
    """One entry of a job's update history."""

    status: str
    progress: float | None = None
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None
    timestamp: datetime


class JobTimestamps(BaseModel):
    """Lifecycle timestamps of a job."""

    submitted: datetime | None = None
    started: datetime | None = None
    completed: datetime | None = None
    failed: datetime | None = None


class JobStatusView(BaseModel):
    """Full status of a job: engine state merged with tracker records."""

    id: str
    queue: str
    tenant_id: str | None = None
    status: JobStatus
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    progress: Any = None
    result: Any = None
    error: str | None = None
    attempts_made: int = 0
    updates: list[JobUpdateRecord] = Field(default_factory=list)
    webhooks: dict[str, str] = Field(default_factory=dict)
    timestamps: JobTimestamps = Field(default_factory=JobTimestamps)


class JobSummary(BaseModel):
    """Compact listing entry."""

    id: str
    queue: str
    status: JobStatus
    submitted_at: datetime | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    progress: Any = None
    result: Any = None
    error: str | None = None


class JobFilter(BaseModel):
    """Filters for tenant-scoped job listing."""

    queue: str | None = None
    status: JobStatus | Literal["all"] | None = None
    metadata: dict[str, Any] | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class MetadataGroup(BaseModel):
    """Jobs sharing one value of the grouping metadata key."""

    count: int = 0
    statuses: dict[str, int] = Field(default_factory=dict)


class QueueStats(BaseModel):
    """Job counts of a single queue."""

    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False
    by_metadata: dict[str, MetadataGroup] | None = None

    @property
    def total(self) -> int:
        """Jobs currently held by the engine for this queue."""
        return self.waiting + self.active + self.completed + self.failed + self.delayed
