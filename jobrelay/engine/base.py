"""
Queue engine abstraction.

The durable queue engine is an external collaborator. Everything the rest of
the package needs from it is expressed by ``QueueEngine``; bindings implement
it and the adapter is the only caller.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from jobrelay.constants import EngineEventType, JobStatus
from jobrelay.types.common import utcnow


@dataclass
class RetentionPolicy:
    """How long finished jobs are kept: whichever limit is hit first."""

    age_seconds: int
    count: int


@dataclass
class QueueDefinition:
    """Queue configuration, replayed on reconnect."""

    name: str
    attempts: int = 3
    backoff_delay_ms: int = 1000
    remove_on_complete: RetentionPolicy = field(
        default_factory=lambda: RetentionPolicy(age_seconds=3600, count=100)
    )
    remove_on_fail: RetentionPolicy = field(
        default_factory=lambda: RetentionPolicy(age_seconds=86400, count=500)
    )


@dataclass
class JobOptions:
    """Per-job overrides of the queue defaults."""

    attempts: int | None = None
    backoff_delay_ms: int | None = None
    delay_ms: int = 0


@dataclass
class RepeatOptions:
    """Cron repetition of a job."""

    cron: str
    timezone: str = "UTC"
    end_date: datetime | None = None
    limit: int | None = None


@dataclass
class EngineJob:
    """Snapshot of a job held by the engine."""

    id: str
    queue: str
    name: str
    data: dict[str, Any]
    state: JobStatus = JobStatus.WAITING
    progress: Any = 0
    result: Any = None
    failed_reason: str | None = None
    attempts_made: int = 0
    max_attempts: int = 1
    created_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class EngineEvent:
    """
    One entry of a queue's event stream.

    Delivery is at-least-once and ordered per job; consumers must treat each
    event as a complete snapshot and be idempotent.
    """

    queue: str
    type: EngineEventType
    job_id: str
    event_id: str = ""
    result: Any = None
    error: str | None = None
    progress: Any = None
    attempt: int = 0
    timestamp: datetime = field(default_factory=utcnow)


EventListener = Callable[[EngineEvent], Awaitable[None]]
Processor = Callable[[EngineJob], Awaitable[Any]]


class QueueEngine(ABC):
    """Operations a queue engine binding must provide."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Raises ``EngineConnectionError`` when unreachable."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""

    @abstractmethod
    async def create_queue(self, definition: QueueDefinition) -> None: ...

    @abstractmethod
    async def close_queue(self, name: str) -> None: ...

    @abstractmethod
    async def add(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        job_id: str,
        options: JobOptions | None = None,
    ) -> EngineJob:
        """Add a job. Adding an id that already exists returns the existing job."""

    @abstractmethod
    async def get(self, queue: str, job_id: str) -> EngineJob | None: ...

    @abstractmethod
    async def get_jobs(
        self,
        queue: str,
        states: Sequence[JobStatus],
        limit: int | None = None,
    ) -> list[EngineJob]:
        """Jobs in the given states, newest first."""

    @abstractmethod
    async def counts(self, queue: str) -> dict[JobStatus, int]: ...

    @abstractmethod
    async def is_paused(self, queue: str) -> bool: ...

    @abstractmethod
    async def pause(self, queue: str) -> None: ...

    @abstractmethod
    async def resume(self, queue: str) -> None: ...

    @abstractmethod
    async def update_progress(self, queue: str, job_id: str, progress: Any) -> None: ...

    @abstractmethod
    async def update_data(self, queue: str, job_id: str, data: dict[str, Any]) -> None:
        """Replace the data of a job."""

    @abstractmethod
    async def complete(self, queue: str, job_id: str, result: Any) -> bool:
        """Move a job to completed. Returns False if it already was finished."""

    @abstractmethod
    async def fail(self, queue: str, job_id: str, error: str) -> bool:
        """Move a job to failed. Returns False if it already was finished."""

    @abstractmethod
    async def clean(self, queue: str, grace_seconds: int, state: JobStatus) -> int:
        """Remove finished jobs older than the grace period. Returns the count removed."""

    @abstractmethod
    async def add_repeatable(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        repeat: RepeatOptions,
    ) -> str:
        """Register a cron repetition. Returns the opaque handle needed to remove it."""

    @abstractmethod
    async def add_delayed(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        job_id: str,
        delay_ms: int,
    ) -> str:
        """Add a one-shot delayed job. Returns the opaque handle needed to remove it."""

    @abstractmethod
    async def remove_scheduled(self, queue: str, handle: str) -> bool: ...

    @abstractmethod
    async def list_scheduled(self, queue: str) -> list[str]: ...

    @abstractmethod
    async def get_repeatable(self, queue: str, handle: str) -> RepeatOptions | None: ...

    @abstractmethod
    async def subscribe(self, queue: str, listener: EventListener) -> None:
        """Start delivering the queue's events to ``listener``."""

    @abstractmethod
    async def unsubscribe(self, queue: str) -> None: ...

    @abstractmethod
    async def start_worker(self, queue: str, processor: Processor, concurrency: int) -> None: ...

    @abstractmethod
    async def stop_workers(self, queue: str) -> None:
        """Stop taking jobs and wait for the ones in flight."""
