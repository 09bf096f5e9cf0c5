"""
In-process queue engine.

An asyncio implementation of ``QueueEngine`` for single-process development
and tests. Nothing is persisted: jobs, repeatables and delayed jobs live only
as long as the process.
"""

import asyncio
import dataclasses
import logging
from collections import deque
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from croniter import croniter

from jobrelay.constants import EngineEventType, JobStatus
from jobrelay.engine.base import (
    EngineEvent,
    EngineJob,
    EventListener,
    JobOptions,
    Processor,
    QueueDefinition,
    QueueEngine,
    RepeatOptions,
)
from jobrelay.errors import EngineConnectionError, EngineError
from jobrelay.types.common import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED)


class _QueueState:
    """Everything the engine holds for one queue."""

    def __init__(self, definition: QueueDefinition):
        self.definition = definition
        self.jobs: dict[str, EngineJob] = {}
        self.backoff_ms: dict[str, int] = {}
        self.waiting: deque[str] = deque()
        self.paused = False
        self.closing = False
        self.wakeup = asyncio.Event()
        self.timers: dict[str, asyncio.Task] = {}
        self.delayed_handles: set[str] = set()
        self.repeatables: dict[str, asyncio.Task] = {}
        self.repeat_options: dict[str, RepeatOptions] = {}
        self.events: asyncio.Queue[EngineEvent | None] = asyncio.Queue()
        self.listener: EventListener | None = None
        self.pump: asyncio.Task | None = None
        self.workers: list[asyncio.Task] = []
        self.sequence = 0


class MemoryQueueEngine(QueueEngine):
    """
    Queue engine held entirely in memory.

    Features:
    - Caller-assigned job ids (re-adding an id returns the existing job)
    - Concurrent workers with retry and exponential backoff
    - Delayed jobs and cron repeatables with timezone, end date and limit
    - Retention trimming of completed and failed jobs
    - A per-queue event pump preserving per-job event order
    """

    def __init__(self) -> None:
        self._queues: dict[str, _QueueState] = {}
        self._connected = False

    async def connect(self) -> None:
        self._connected = True
        logger.info("In-memory queue engine connected")

    def drop_connection(self) -> None:
        """Mark the engine unreachable without losing any state."""
        self._connected = False

    async def close(self) -> None:
        for name in list(self._queues):
            await self.stop_workers(name)
            await self.unsubscribe(name)
            state = self._queues[name]
            for task in [*state.timers.values(), *state.repeatables.values()]:
                task.cancel()
            await asyncio.gather(
                *state.timers.values(), *state.repeatables.values(), return_exceptions=True
            )
            state.timers.clear()
            state.repeatables.clear()
            state.repeat_options.clear()
        self._queues.clear()
        self._connected = False
        logger.info("In-memory queue engine closed")

    def _require(self) -> None:
        if not self._connected:
            raise EngineConnectionError("Queue engine is not connected")

    def _state(self, queue: str) -> _QueueState:
        self._require()
        state = self._queues.get(queue)
        if state is None:
            raise EngineError(f"Unknown queue: {queue}")
        return state

    def _job(self, state: _QueueState, job_id: str) -> EngineJob:
        job = state.jobs.get(job_id)
        if job is None:
            raise EngineError(f"Unknown job {job_id} in queue {state.definition.name}")
        return job

    def _snapshot(self, state: _QueueState, job: EngineJob) -> EngineJob:
        snapshot = dataclasses.replace(job, data=dict(job.data))
        if state.paused and job.state == JobStatus.WAITING:
            snapshot.state = JobStatus.PAUSED
        return snapshot

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    async def create_queue(self, definition: QueueDefinition) -> None:
        self._require()
        state = self._queues.get(definition.name)
        if state is None:
            self._queues[definition.name] = _QueueState(definition)
        else:
            state.definition = definition
            state.closing = False

    async def close_queue(self, name: str) -> None:
        self._require()
        state = self._queues.get(name)
        if state is not None:
            state.closing = True
            state.wakeup.set()

    async def pause(self, queue: str) -> None:
        self._state(queue).paused = True

    async def resume(self, queue: str) -> None:
        state = self._state(queue)
        state.paused = False
        state.wakeup.set()

    async def is_paused(self, queue: str) -> bool:
        return self._state(queue).paused

    async def counts(self, queue: str) -> dict[JobStatus, int]:
        state = self._state(queue)
        counts = {status: 0 for status in JobStatus}
        for job in state.jobs.values():
            counts[job.state] += 1
        return counts

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def add(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        job_id: str,
        options: JobOptions | None = None,
    ) -> EngineJob:
        state = self._state(queue)
        existing = state.jobs.get(job_id)
        if existing is not None:
            return self._snapshot(state, existing)

        options = options or JobOptions()
        definition = state.definition
        job = EngineJob(
            id=job_id,
            queue=queue,
            name=name,
            data=dict(data),
            max_attempts=options.attempts or definition.attempts,
        )
        state.jobs[job_id] = job
        state.backoff_ms[job_id] = (
            options.backoff_delay_ms
            if options.backoff_delay_ms is not None
            else definition.backoff_delay_ms
        )

        if options.delay_ms > 0:
            job.state = JobStatus.DELAYED
            self._schedule_promotion(state, job_id, options.delay_ms)
        else:
            state.waiting.append(job_id)
            state.wakeup.set()

        self._emit(state, EngineEventType.ADDED, job)
        return self._snapshot(state, job)

    async def get(self, queue: str, job_id: str) -> EngineJob | None:
        state = self._state(queue)
        job = state.jobs.get(job_id)
        return None if job is None else self._snapshot(state, job)

    async def get_jobs(
        self,
        queue: str,
        states: Sequence[JobStatus],
        limit: int | None = None,
    ) -> list[EngineJob]:
        state = self._state(queue)
        wanted = set(states)
        if JobStatus.PAUSED in wanted and state.paused:
            wanted.add(JobStatus.WAITING)
        jobs = [
            self._snapshot(state, job)
            for job in state.jobs.values()
            if job.state in wanted
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs if limit is None else jobs[:limit]

    async def update_progress(self, queue: str, job_id: str, progress: Any) -> None:
        state = self._state(queue)
        job = self._job(state, job_id)
        job.progress = progress
        self._emit(state, EngineEventType.PROGRESS, job, progress=progress)

    async def update_data(self, queue: str, job_id: str, data: dict[str, Any]) -> None:
        state = self._state(queue)
        self._job(state, job_id).data = dict(data)

    async def complete(self, queue: str, job_id: str, result: Any) -> bool:
        state = self._state(queue)
        job = self._job(state, job_id)
        if job.state in _FINISHED:
            return False
        self._finish(state, job, JobStatus.COMPLETED, result=result)
        return True

    async def fail(self, queue: str, job_id: str, error: str) -> bool:
        state = self._state(queue)
        job = self._job(state, job_id)
        if job.state in _FINISHED:
            return False
        self._finish(state, job, JobStatus.FAILED, error=error)
        return True

    async def clean(self, queue: str, grace_seconds: int, state: JobStatus) -> int:
        queue_state = self._state(queue)
        cutoff = utcnow() - timedelta(seconds=grace_seconds)
        stale = [
            job.id
            for job in queue_state.jobs.values()
            if job.state == state and job.finished_at is not None and job.finished_at < cutoff
        ]
        for job_id in stale:
            self._remove(queue_state, job_id)
        return len(stale)

    def _remove(self, state: _QueueState, job_id: str) -> None:
        state.jobs.pop(job_id, None)
        state.backoff_ms.pop(job_id, None)
        timer = state.timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

    def _finish(
        self,
        state: _QueueState,
        job: EngineJob,
        status: JobStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        job.state = status
        job.finished_at = utcnow()
        if status == JobStatus.COMPLETED:
            job.result = result
            self._emit(state, EngineEventType.COMPLETED, job, result=result)
            self._trim(state, status, state.definition.remove_on_complete)
        else:
            job.failed_reason = error
            self._emit(state, EngineEventType.FAILED, job, error=error)
            self._trim(state, status, state.definition.remove_on_fail)

    def _trim(self, state: _QueueState, status: JobStatus, policy: Any) -> None:
        cutoff = utcnow() - timedelta(seconds=policy.age_seconds)
        finished = sorted(
            (job for job in state.jobs.values() if job.state == status),
            key=lambda job: job.finished_at,
            reverse=True,
        )
        for index, job in enumerate(finished):
            if index >= policy.count or job.finished_at < cutoff:
                self._remove(state, job.id)

    def _schedule_promotion(self, state: _QueueState, job_id: str, delay_ms: float) -> None:
        async def promote() -> None:
            await asyncio.sleep(delay_ms / 1000)
            state.timers.pop(job_id, None)
            job = state.jobs.get(job_id)
            if job is None or job.state != JobStatus.DELAYED:
                return
            job.state = JobStatus.WAITING
            state.waiting.append(job_id)
            state.wakeup.set()

        state.timers[job_id] = asyncio.create_task(promote())

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
        state = self._state(queue)
        if not croniter.is_valid(repeat.cron):
            raise EngineError(f"Invalid cron expression: {repeat.cron}")
        handle = f"repeat:{name}:{uuid4().hex}"
        state.repeat_options[handle] = repeat
        state.repeatables[handle] = asyncio.create_task(
            self._repeat(state, handle, name, data, repeat)
        )
        return handle

    async def _repeat(
        self,
        state: _QueueState,
        handle: str,
        name: str,
        data: dict[str, Any],
        repeat: RepeatOptions,
    ) -> None:
        tz = ZoneInfo(repeat.timezone or "UTC")
        end_date = ensure_utc(repeat.end_date)
        fired = 0
        last_at: datetime | None = None
        try:
            while repeat.limit is None or fired < repeat.limit:
                base = datetime.now(tz)
                if last_at is not None and last_at > base:
                    base = last_at
                next_at = croniter(repeat.cron, base).get_next(datetime)
                last_at = next_at
                if end_date is not None and next_at > end_date:
                    break
                await asyncio.sleep(max(0.0, (next_at - datetime.now(tz)).total_seconds()))
                fired += 1
                job_id = f"{handle}:{int(next_at.timestamp() * 1000)}"
                try:
                    await self.add(state.definition.name, name, dict(data), job_id)
                except EngineError as e:
                    logger.warning(
                        f"Repeatable fire skipped: {e}",
                        extra={"queue": state.definition.name, "handle": handle},
                    )
        finally:
            state.repeatables.pop(handle, None)
            state.repeat_options.pop(handle, None)

    async def add_delayed(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        job_id: str,
        delay_ms: int,
    ) -> str:
        state = self._state(queue)
        await self.add(queue, name, data, job_id, JobOptions(delay_ms=max(1, delay_ms)))
        state.delayed_handles.add(job_id)
        return job_id

    async def remove_scheduled(self, queue: str, handle: str) -> bool:
        state = self._state(queue)
        task = state.repeatables.pop(handle, None)
        state.repeat_options.pop(handle, None)
        if task is not None:
            task.cancel()
            return True
        if handle in state.delayed_handles:
            state.delayed_handles.discard(handle)
            job = state.jobs.get(handle)
            if job is not None and job.state == JobStatus.DELAYED:
                self._remove(state, handle)
                return True
        return False

    async def get_repeatable(self, queue: str, handle: str) -> RepeatOptions | None:
        """Options of a live repeatable registration."""
        return self._state(queue).repeat_options.get(handle)

    async def list_scheduled(self, queue: str) -> list[str]:
        state = self._state(queue)
        delayed = [
            handle
            for handle in state.delayed_handles
            if handle in state.jobs and state.jobs[handle].state == JobStatus.DELAYED
        ]
        return [*state.repeatables, *sorted(delayed)]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(
        self,
        state: _QueueState,
        event_type: EngineEventType,
        job: EngineJob,
        **fields: Any,
    ) -> None:
        if state.listener is None:
            return
        state.sequence += 1
        state.events.put_nowait(
            EngineEvent(
                queue=state.definition.name,
                type=event_type,
                job_id=job.id,
                event_id=str(state.sequence),
                attempt=job.attempts_made,
                **fields,
            )
        )

    async def subscribe(self, queue: str, listener: EventListener) -> None:
        state = self._state(queue)
        state.listener = listener
        if state.pump is None or state.pump.done():
            state.pump = asyncio.create_task(self._pump(state))

    async def _pump(self, state: _QueueState) -> None:
        while True:
            event = await state.events.get()
            if event is None:
                return
            listener = state.listener
            if listener is None:
                continue
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"queue": event.queue, "job_id": event.job_id, "engine_event": event.type},
                )

    async def unsubscribe(self, queue: str) -> None:
        state = self._queues.get(queue)
        if state is None or state.pump is None:
            return
        state.events.put_nowait(None)
        await asyncio.gather(state.pump, return_exceptions=True)
        state.pump = None
        state.listener = None

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def start_worker(self, queue: str, processor: Processor, concurrency: int) -> None:
        state = self._state(queue)
        state.closing = False
        for _ in range(max(1, concurrency)):
            state.workers.append(asyncio.create_task(self._work(state, processor)))

    async def stop_workers(self, queue: str) -> None:
        state = self._queues.get(queue)
        if state is None or not state.workers:
            return
        state.closing = True
        state.wakeup.set()
        await asyncio.gather(*state.workers, return_exceptions=True)
        state.workers.clear()

    async def _next_job(self, state: _QueueState) -> EngineJob | None:
        while not state.closing:
            if self._connected and not state.paused:
                while state.waiting:
                    job = state.jobs.get(state.waiting.popleft())
                    if job is not None and job.state == JobStatus.WAITING:
                        return job
            state.wakeup.clear()
            await state.wakeup.wait()
        return None

    async def _work(self, state: _QueueState, processor: Processor) -> None:
        while True:
            job = await self._next_job(state)
            if job is None:
                return
            await self._process(state, job, processor)

    async def _process(self, state: _QueueState, job: EngineJob, processor: Processor) -> None:
        job.state = JobStatus.ACTIVE
        job.attempts_made += 1
        job.processed_at = utcnow()
        self._emit(state, EngineEventType.ACTIVE, job)

        try:
            result = await processor(self._snapshot(state, job))
        except asyncio.CancelledError:
            if job.state == JobStatus.ACTIVE:
                job.state = JobStatus.WAITING
                state.waiting.appendleft(job.id)
                self._emit(state, EngineEventType.STALLED, job)
            raise
        except Exception as e:
            if job.state != JobStatus.ACTIVE:
                return
            if job.attempts_made < job.max_attempts:
                delay = state.backoff_ms.get(job.id, 0) * 2 ** (job.attempts_made - 1)
                job.state = JobStatus.DELAYED
                job.failed_reason = str(e)
                logger.info(
                    "Job failed, retrying",
                    extra={
                        "queue": state.definition.name,
                        "job_id": job.id,
                        "attempt": job.attempts_made,
                        "delay_ms": delay,
                    },
                )
                self._schedule_promotion(state, job.id, delay)
            else:
                self._finish(state, job, JobStatus.FAILED, error=str(e))
            return

        if job.state == JobStatus.ACTIVE:
            self._finish(state, job, JobStatus.COMPLETED, result=result)
