"""
Queue engine adapter.

Owns queue registration, worker registration and the event fan-out. It is the
only component that talks to the engine binding.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from jobrelay.config import Settings, get_settings
from jobrelay.constants import JobStatus
from jobrelay.engine.base import (
    EngineEvent,
    EngineJob,
    EventListener,
    JobOptions,
    Processor,
    QueueDefinition,
    QueueEngine,
    RepeatOptions,
    RetentionPolicy,
)
from jobrelay.errors import EngineConnectionError, EngineError, NotFoundError
from jobrelay.types.job import QueueStats

logger = logging.getLogger(__name__)

QueueStateListener = Callable[[str, bool], Awaitable[None]]


def event_fingerprint(event: EngineEvent) -> tuple:
    """Identity of an event snapshot, independent of its delivery id."""
    detail = json.dumps(
        {"result": event.result, "error": event.error, "progress": event.progress},
        sort_keys=True,
        default=str,
    )
    return (event.queue, event.job_id, str(event.type), event.attempt, detail)


class QueueEngineAdapter:
    """
    Adapter over a ``QueueEngine`` binding.

    Features:
    - Idempotent queue registration with default retention and retry options
    - Fan-out of every engine event to all registered consumers, with
      redelivered events skipped per consumer once it has handled them
    - Worker registration
    - Repeatable and delayed job registration behind opaque handles
    - Connection loss tolerance with replay of queue definitions on reconnect
    - Ordered shutdown: workers, listeners, queues, connection
    """

    def __init__(self, engine: QueueEngine, settings: Settings | None = None):
        """
        Initialize the adapter.

        Args:
            engine: The queue engine binding.
            settings: Application settings. Defaults to the cached settings.
        """
        self._engine = engine
        self._settings = settings or get_settings()
        self._definitions: dict[str, QueueDefinition] = {}
        self._workers: dict[str, tuple[Processor, int]] = {}
        self._listeners: list[EventListener] = []
        self._handled: list[OrderedDict[tuple, None]] = []
        self._queue_state_listeners: list[QueueStateListener] = []
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def engine(self) -> QueueEngine:
        return self._engine

    async def connect(self) -> None:
        """
        Connect to the engine.

        Raises:
            EngineConnectionError: The engine is unreachable. Fatal at startup.
        """
        try:
            await self._engine.connect()
        except EngineConnectionError:
            logger.error("Queue engine unreachable at startup")
            raise
        except Exception as e:
            logger.error(f"Queue engine unreachable at startup: {e}")
            raise EngineConnectionError(str(e)) from e
        self._connected = True

    async def reconnect(self) -> None:
        """Reconnect and replay every queue definition, listener and worker."""
        await self._engine.connect()
        self._connected = True
        for definition in self._definitions.values():
            await self._engine.create_queue(definition)
            await self._engine.subscribe(definition.name, self.dispatch)
        for queue, (processor, concurrency) in self._workers.items():
            await self._engine.stop_workers(queue)
            await self._engine.start_worker(queue, processor, concurrency)
        logger.info(
            "Queue engine reconnected",
            extra={"queues": sorted(self._definitions)},
        )

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def default_definition(self, name: str) -> QueueDefinition:
        """Queue definition with the configured retention and retry defaults."""
        s = self._settings
        return QueueDefinition(
            name=name,
            attempts=s.engine_default_attempts,
            backoff_delay_ms=s.engine_backoff_delay_ms,
            remove_on_complete=RetentionPolicy(
                age_seconds=s.engine_remove_completed_age_seconds,
                count=s.engine_remove_completed_count,
            ),
            remove_on_fail=RetentionPolicy(
                age_seconds=s.engine_remove_failed_age_seconds,
                count=s.engine_remove_failed_count,
            ),
        )

    async def register_queue(self, queue: str | QueueDefinition) -> QueueDefinition:
        """
        Register a queue. Registering an existing name returns the existing handle.

        Args:
            queue: Queue name, or a full definition to override the defaults.

        Returns:
            The queue definition in effect.
        """
        name = queue if isinstance(queue, str) else queue.name
        async with self._lock:
            existing = self._definitions.get(name)
            if existing is not None:
                return existing

            definition = queue if isinstance(queue, QueueDefinition) else self.default_definition(name)
            await self._engine.create_queue(definition)
            await self._engine.subscribe(name, self.dispatch)
            self._definitions[name] = definition
            logger.info("Registered queue", extra={"queue": name})
            return definition

    def has_queue(self, queue: str) -> bool:
        return queue in self._definitions

    def queue_names(self) -> list[str]:
        return list(self._definitions)

    def _require_queue(self, queue: str) -> None:
        if queue not in self._definitions:
            raise NotFoundError("Queue", queue)

    async def get_queue_stats(self, queue: str) -> QueueStats | None:
        """Counts per state for a registered queue, None for an unknown one."""
        if queue not in self._definitions:
            return None
        counts = await self._engine.counts(queue)
        return QueueStats(
            queue=queue,
            waiting=counts.get(JobStatus.WAITING, 0),
            active=counts.get(JobStatus.ACTIVE, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            delayed=counts.get(JobStatus.DELAYED, 0),
            paused=await self._engine.is_paused(queue),
        )

    async def get_all_queue_stats(self) -> list[QueueStats]:
        stats = []
        for queue in self._definitions:
            queue_stats = await self.get_queue_stats(queue)
            if queue_stats is not None:
                stats.append(queue_stats)
        return stats

    async def pause_queue(self, queue: str) -> bool:
        """Pause a queue and notify queue-state listeners. False for unknown queues."""
        if queue not in self._definitions:
            return False
        await self._engine.pause(queue)
        logger.info("Queue paused", extra={"queue": queue})
        await self._notify_queue_state(queue, True)
        return True

    async def resume_queue(self, queue: str) -> bool:
        """Resume a queue and notify queue-state listeners. False for unknown queues."""
        if queue not in self._definitions:
            return False
        await self._engine.resume(queue)
        logger.info("Queue resumed", extra={"queue": queue})
        await self._notify_queue_state(queue, False)
        return True

    async def clean_queue(self, queue: str, grace_seconds: int, state: JobStatus) -> int:
        self._require_queue(queue)
        removed = await self._engine.clean(queue, grace_seconds, state)
        logger.info(
            "Cleaned queue",
            extra={"queue": queue, "state": state, "removed": removed},
        )
        return removed

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def add_job(
        self,
        queue: str,
        job_id: str,
        data: dict[str, Any],
        options: JobOptions | None = None,
        name: str | None = None,
    ) -> EngineJob:
        """Add a job under a caller-assigned id."""
        self._require_queue(queue)
        return await self._engine.add(queue, name or queue, data, job_id, options)

    async def get_job(self, queue: str, job_id: str) -> EngineJob | None:
        if queue not in self._definitions:
            return None
        return await self._engine.get(queue, job_id)

    async def find_job(self, job_id: str) -> EngineJob | None:
        """Look a job up across every registered queue."""
        for queue in self._definitions:
            job = await self._engine.get(queue, job_id)
            if job is not None:
                return job
        return None

    async def list_jobs(
        self,
        queue: str,
        states: Sequence[JobStatus],
        limit: int | None = None,
    ) -> list[EngineJob]:
        if queue not in self._definitions:
            return []
        return await self._engine.get_jobs(queue, states, limit)

    async def update_progress(self, queue: str, job_id: str, progress: Any) -> None:
        self._require_queue(queue)
        await self._engine.update_progress(queue, job_id, progress)

    async def update_data(self, queue: str, job_id: str, data: dict[str, Any]) -> None:
        self._require_queue(queue)
        await self._engine.update_data(queue, job_id, data)

    async def complete_job(self, queue: str, job_id: str, result: Any) -> bool:
        self._require_queue(queue)
        return await self._engine.complete(queue, job_id, result)

    async def fail_job(self, queue: str, job_id: str, error: str) -> bool:
        self._require_queue(queue)
        return await self._engine.fail(queue, job_id, error)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def add_repeatable(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        repeat: RepeatOptions,
    ) -> str:
        self._require_queue(queue)
        handle = await self._engine.add_repeatable(queue, name, data, repeat)
        logger.info(
            "Registered repeatable job",
            extra={"queue": queue, "handle": handle, "cron": repeat.cron},
        )
        return handle

    async def add_delayed(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        job_id: str,
        delay_ms: int,
    ) -> str:
        self._require_queue(queue)
        handle = await self._engine.add_delayed(queue, name, data, job_id, delay_ms)
        logger.info(
            "Registered delayed job",
            extra={"queue": queue, "handle": handle, "delay_ms": delay_ms},
        )
        return handle

    async def remove_scheduled(self, queue: str, handle: str) -> bool:
        """Remove a repeatable or delayed registration by the handle it was created with."""
        if queue not in self._definitions:
            return False
        removed = await self._engine.remove_scheduled(queue, handle)
        logger.info(
            "Removed scheduled job",
            extra={"queue": queue, "handle": handle, "removed": removed},
        )
        return removed

    async def list_scheduled(self, queue: str) -> list[str]:
        if queue not in self._definitions:
            return []
        return await self._engine.list_scheduled(queue)

    async def get_repeatable(self, queue: str, handle: str) -> RepeatOptions | None:
        """Repeat options of a live cron registration, None for unknown handles."""
        if queue not in self._definitions:
            return None
        return await self._engine.get_repeatable(queue, handle)

    # ------------------------------------------------------------------
    # Workers and events
    # ------------------------------------------------------------------

    async def register_worker(
        self,
        queue: str,
        processor: Processor,
        concurrency: int = 1,
    ) -> None:
        """Attach a processor to a queue. The queue is registered if needed."""
        await self.register_queue(queue)
        if queue in self._workers:
            await self._engine.stop_workers(queue)
        await self._engine.start_worker(queue, processor, concurrency)
        self._workers[queue] = (processor, concurrency)
        logger.info(
            "Registered worker",
            extra={"queue": queue, "concurrency": concurrency},
        )

    def on_event(self, listener: EventListener) -> None:
        """Add a consumer of every engine event of every registered queue."""
        self._listeners.append(listener)
        self._handled.append(OrderedDict())

    def on_queue_state(self, listener: QueueStateListener) -> None:
        """Add a consumer of pause/resume notifications."""
        self._queue_state_listeners.append(listener)

    async def dispatch(self, event: EngineEvent) -> None:
        """
        Hand an engine event to every consumer.

        Each consumer sees a given snapshot once. A snapshot is marked handled
        for a consumer only when that consumer returns, so a redelivery after
        a failure (a lost connection, for instance) is processed again.
        """
        key = event_fingerprint(event)
        for listener, handled in zip(self._listeners, self._handled):
            if key in handled:
                continue
            try:
                await listener(event)
            except EngineConnectionError as e:
                logger.warning(
                    f"Queue engine connection lost while handling event: {e}",
                    extra={"queue": event.queue, "job_id": event.job_id},
                )
                continue
            except Exception:
                logger.exception(
                    "Event consumer failed",
                    extra={"queue": event.queue, "job_id": event.job_id, "engine_event": event.type},
                )
                continue
            handled[key] = None
            while len(handled) > self._settings.engine_dedupe_window:
                handled.popitem(last=False)

    async def _notify_queue_state(self, queue: str, paused: bool) -> None:
        for listener in self._queue_state_listeners:
            try:
                await listener(queue, paused)
            except Exception:
                logger.exception("Queue state consumer failed", extra={"queue": queue})

    async def shutdown(self) -> None:
        """Stop workers, then event listeners, then queues, then the connection."""
        logger.info("Shutting down queue engine adapter")
        for queue in list(self._workers):
            await self._safe(self._engine.stop_workers(queue), "stop workers", queue)
        self._workers.clear()

        for queue in self._definitions:
            await self._safe(self._engine.unsubscribe(queue), "close event stream", queue)

        for queue in self._definitions:
            await self._safe(self._engine.close_queue(queue), "close queue", queue)
        self._definitions.clear()

        await self._safe(self._engine.close(), "close connection", None)
        self._connected = False
        logger.info("Queue engine adapter shut down")

    async def _safe(self, operation: Awaitable[None], action: str, queue: str | None) -> None:
        try:
            await operation
        except EngineError as e:
            logger.warning(f"Failed to {action}: {e}", extra={"queue": queue})
