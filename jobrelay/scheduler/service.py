"""
Schedule service.

Turns cron and one-shot definitions into engine registrations and performs the
outbound HTTP call when one fires.

State machine::

    disabled --enable--> armed --fire--> executing --> armed     (cron, under limit / end date)
                                                   \\-> disabled (one-shot, limit or end date reached)
"""

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

import httpx

from jobrelay.config import Settings, get_settings
from jobrelay.constants import (
    HEADER_EXECUTION_ID,
    HEADER_SCHEDULE_ID,
    SPAN_EXECUTE_SCHEDULE,
    ExecutionStatus,
)
from jobrelay.db.connection import Database
from jobrelay.db.repository import ScheduleRepository
from jobrelay.engine.adapter import QueueEngineAdapter
from jobrelay.engine.base import RepeatOptions
from jobrelay.errors import ConflictError, NotFoundError, ValidationError
from jobrelay.observability.metrics import MetricsCollector, get_metrics
from jobrelay.observability.tracing import get_tracer
from jobrelay.scheduler.timing import (
    backoff_delay_ms,
    calculate_next_execution,
    validate_endpoint,
    validate_schedule_spec,
)
from jobrelay.scheduler.worker import schedule_processor
from jobrelay.types.common import ensure_utc, utcnow
from jobrelay.types.schedule import (
    EndpointConfig,
    ExecutionResult,
    Schedule,
    ScheduleCreate,
    ScheduleList,
    ScheduleSpec,
    ScheduleUpdate,
)

logger = logging.getLogger(__name__)

SCHEDULE_JOB_KEY = "schedule_id"
MAX_PAGE_SIZE = 100


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class ScheduleService:
    """
    Schedule CRUD, engine registration and execution.

    Every registration is made through the adapter and identified by the
    opaque handle it returns; the handle is persisted on the schedule and is
    the only way to remove the registration again.
    """

    def __init__(
        self,
        db: Database,
        adapter: QueueEngineAdapter,
        client: httpx.AsyncClient,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the service.

        Args:
            db: Database handle.
            adapter: Queue engine adapter.
            client: Shared HTTP client.
            settings: Application settings. Defaults to the cached settings.
            metrics: Metrics collector. Defaults to the process collector.
            sleep: Awaitable used for retry backoff waits.
            clock: Source of the current UTC time.
        """
        self._db = db
        self._adapter = adapter
        self._client = client
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._sleep = sleep
        self._clock = clock

    @property
    def queue_name(self) -> str:
        return self._settings.scheduler_queue_name

    async def start(self) -> None:
        """Register the scheduler queue and its worker, then re-arm stored schedules."""
        # Retries are handled per schedule by execute_http_call
        definition = replace(self._adapter.default_definition(self.queue_name), attempts=1)
        await self._adapter.register_queue(definition)
        await self._adapter.register_worker(
            self.queue_name,
            schedule_processor(self),
            self._settings.scheduler_concurrency,
        )
        await self.resync()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_schedule(self, data: ScheduleCreate, created_by: str | None = None) -> Schedule:
        """
        Create a schedule and arm it when enabled.

        Raises:
            ValidationError: Invalid timing or endpoint.
            ConflictError: A schedule with this name already exists.
        """
        errors = validate_schedule_spec(data.schedule, self._clock()) + validate_endpoint(data.endpoint)
        if errors:
            raise ValidationError("Invalid schedule", errors)

        async with self._db.session() as session:
            repo = ScheduleRepository(session)
            if await repo.get_by_name(data.name) is not None:
                raise ConflictError(f"Schedule with name '{data.name}' already exists")
            record = await repo.create(
                name=data.name,
                description=data.description,
                created_by=created_by,
                schedule=data.schedule.model_dump(mode="json"),
                endpoint=data.endpoint.model_dump(mode="json"),
                retry_policy=data.retry_policy.model_dump(mode="json"),
                enabled=data.enabled,
                extra=dict(data.metadata),
                execution_count=0,
            )
            schedule_id = record.id

        try:
            schedule = await self._sync_registration(schedule_id)
        except Exception:
            async with self._db.session() as session:
                repo = ScheduleRepository(session)
                record = await repo.get(schedule_id)
                if record is not None:
                    await repo.delete(record)
            raise

        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.id, "schedule_name": schedule.name, "enabled": schedule.enabled},
        )
        return schedule

    async def update_schedule(self, schedule_id: str, updates: ScheduleUpdate) -> Schedule:
        """
        Update a schedule. Nested ``schedule`` and ``endpoint`` are merged
        with the stored values; the registration is replaced.

        Raises:
            NotFoundError: Unknown schedule.
            ValidationError: The merged definition is invalid.
            ConflictError: The new name is taken.
        """
        now = self._clock()
        async with self._db.session() as session:
            repo = ScheduleRepository(session)
            record = await repo.get(schedule_id)
            if record is None:
                raise NotFoundError("Schedule", schedule_id)
            current = Schedule.from_record(record)

            values: dict[str, Any] = {}
            errors: list[str] = []
            spec = current.schedule
            if updates.schedule is not None:
                spec = ScheduleSpec(
                    **{**spec.model_dump(), **updates.schedule.model_dump(exclude_unset=True)}
                )
                errors.extend(validate_schedule_spec(spec, now))
                values["schedule"] = spec.model_dump(mode="json")
            if updates.endpoint is not None:
                endpoint = EndpointConfig(
                    **{
                        **current.endpoint.model_dump(),
                        **updates.endpoint.model_dump(exclude_unset=True),
                    }
                )
                errors.extend(validate_endpoint(endpoint))
                values["endpoint"] = endpoint.model_dump(mode="json")
            if updates.retry_policy is not None:
                values["retry_policy"] = updates.retry_policy.model_dump(mode="json")
            if updates.name is not None and updates.name != record.name:
                if await repo.get_by_name(updates.name) is not None:
                    raise ConflictError(f"Schedule with name '{updates.name}' already exists")
                values["name"] = updates.name
            if "description" in updates.model_fields_set:
                values["description"] = updates.description
            if updates.metadata is not None:
                values["extra"] = dict(updates.metadata)
            if updates.enabled is not None:
                values["enabled"] = updates.enabled

            enabled = values.get("enabled", record.enabled)
            if enabled and spec.is_one_shot and updates.schedule is None and ensure_utc(spec.at) <= now:
                errors.append("Scheduled time must be in the future")
            if errors:
                raise ValidationError("Invalid schedule", errors)

            await repo.update(record, values)

        schedule = await self._sync_registration(schedule_id)
        logger.info(
            "Schedule updated",
            extra={"schedule_id": schedule_id, "fields": sorted(values), "enabled": schedule.enabled},
        )
        return schedule

    async def delete_schedule(self, schedule_id: str) -> None:
        """
        Delete a schedule and remove its engine registration.

        Raises:
            NotFoundError: Unknown schedule.
        """
        async with self._db.session() as session:
            repo = ScheduleRepository(session)
            record = await repo.get(schedule_id)
            if record is None:
                raise NotFoundError("Schedule", schedule_id)
            if record.engine_handle:
                await self._adapter.remove_scheduled(self.queue_name, record.engine_handle)
            await repo.delete(record)
        logger.info("Schedule deleted", extra={"schedule_id": schedule_id})

    async def get_schedule(self, schedule_id: str) -> Schedule:
        async with self._db.session() as session:
            record = await ScheduleRepository(session).get(schedule_id)
            if record is None:
                raise NotFoundError("Schedule", schedule_id)
            return Schedule.from_record(record)

    async def list_schedules(
        self,
        page: int = 1,
        limit: int = 20,
        enabled: bool | None = None,
        created_by: str | None = None,
    ) -> ScheduleList:
        """One page of schedules, newest first. ``limit`` is clamped to 1..100."""
        limit = min(MAX_PAGE_SIZE, max(1, limit))
        page = max(1, page)
        async with self._db.session() as session:
            records, total = await ScheduleRepository(session).list_page(
                enabled=enabled,
                created_by=created_by,
                offset=(page - 1) * limit,
                limit=limit,
            )
            schedules = [Schedule.from_record(record) for record in records]
        return ScheduleList(
            schedules=schedules,
            total=total,
            page=page,
            pages=math.ceil(total / limit),
        )

    async def enable_schedule(self, schedule_id: str) -> Schedule:
        return await self.update_schedule(schedule_id, ScheduleUpdate(enabled=True))

    async def disable_schedule(self, schedule_id: str) -> Schedule:
        return await self.update_schedule(schedule_id, ScheduleUpdate(enabled=False))

    # ------------------------------------------------------------------
    # Engine registration
    # ------------------------------------------------------------------

    async def _arm(self, schedule: Schedule, now: datetime) -> str | None:
        """Register the schedule with the engine. None when it can no longer fire."""
        spec = schedule.schedule
        name = f"schedule_{schedule.id}"
        data = {SCHEDULE_JOB_KEY: schedule.id}

        if spec.cron:
            remaining = None
            if spec.limit is not None:
                remaining = spec.limit - schedule.execution_count
                if remaining <= 0:
                    return None
            end_date = ensure_utc(spec.end_date)
            if end_date is not None and now > end_date:
                return None
            return await self._adapter.add_repeatable(
                self.queue_name,
                name,
                data,
                RepeatOptions(
                    cron=spec.cron,
                    timezone=spec.timezone,
                    end_date=end_date,
                    limit=remaining,
                ),
            )

        if spec.at is None:
            return None
        delay_ms = _millis(ensure_utc(spec.at)) - _millis(now)
        if delay_ms <= 0:
            return None
        return await self._adapter.add_delayed(
            self.queue_name,
            name,
            data,
            f"once_{schedule.id}_{_millis(now)}",
            delay_ms,
        )

    async def _sync_registration(self, schedule_id: str) -> Schedule:
        """
        Replace the engine registration of a schedule with one matching its
        stored state. An enabled schedule that can no longer fire is disabled.
        """
        now = self._clock()
        async with self._db.session() as session:
            repo = ScheduleRepository(session)
            record = await repo.get(schedule_id)
            if record is None:
                raise NotFoundError("Schedule", schedule_id)

            if record.engine_handle:
                await self._adapter.remove_scheduled(self.queue_name, record.engine_handle)

            values: dict[str, Any] = {"engine_handle": None, "next_execution_at": None}
            if record.enabled:
                schedule = Schedule.from_record(record)
                handle = await self._arm(schedule, now)
                if handle is None:
                    values["enabled"] = False
                    logger.info(
                        "Schedule can no longer fire, disabling",
                        extra={"schedule_id": schedule_id},
                    )
                else:
                    values["engine_handle"] = handle
                    values["next_execution_at"] = calculate_next_execution(schedule.schedule, now)
            await repo.update(record, values)
            return Schedule.from_record(record)

    async def resync(self) -> int:
        """
        Re-arm every enabled schedule. Used at startup, when the engine may
        have lost registrations; one-shots whose time passed are disabled.

        Returns:
            Number of schedules armed.
        """
        async with self._db.session() as session:
            ids = [record.id for record in await ScheduleRepository(session).list_enabled()]

        armed = 0
        for schedule_id in ids:
            schedule = await self._sync_registration(schedule_id)
            if schedule.engine_handle:
                armed += 1
        logger.info("Schedules resynchronised", extra={"armed": armed, "enabled": len(ids)})
        return armed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_schedule_now(self, schedule_id: str) -> ExecutionResult:
        """
        Run the HTTP call once, outside of any engine registration.

        Nothing is recorded on the schedule: the execution count, last
        execution fields and next execution time are left untouched.

        Raises:
            NotFoundError: Unknown schedule.
        """
        schedule = await self.get_schedule(schedule_id)
        execution_id = f"manual_{schedule.id}_{_millis(self._clock())}"
        return await self.execute_http_call(schedule, execution_id, trigger="manual")

    async def execute_scheduled_job(self, schedule_id: str) -> ExecutionResult | None:
        """
        Handle an engine fire: run the call, then update the bookkeeping.

        Returns:
            The execution result, or None when the schedule was deleted or
            disabled in the meantime.
        """
        schedule = await self.get_schedule_or_none(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.info(
                "Skipping fire of missing or disabled schedule",
                extra={"schedule_id": schedule_id},
            )
            return None

        execution_id = f"scheduled_{schedule.id}_{_millis(self._clock())}"
        result = await self.execute_http_call(schedule, execution_id, trigger="scheduled")
        await self._record_execution(schedule_id, result)
        return result

    async def get_schedule_or_none(self, schedule_id: str) -> Schedule | None:
        async with self._db.session() as session:
            record = await ScheduleRepository(session).get(schedule_id)
            return None if record is None else Schedule.from_record(record)

    async def _record_execution(self, schedule_id: str, result: ExecutionResult) -> None:
        now = self._clock()
        async with self._db.session() as session:
            repo = ScheduleRepository(session)
            record = await repo.get(schedule_id)
            if record is None:
                return

            spec = ScheduleSpec(**record.schedule)
            count = record.execution_count + 1
            values: dict[str, Any] = {
                "execution_count": count,
                "last_executed_at": now,
                "last_execution_status": str(result.status),
                "last_execution_error": result.error,
            }

            end_date = ensure_utc(spec.end_date)
            next_at = None if spec.is_one_shot else calculate_next_execution(spec, now)
            reason = None
            if spec.is_one_shot:
                reason = "one-shot"
            elif spec.limit is not None and count >= spec.limit:
                reason = "limit reached"
            elif end_date is not None and now > end_date:
                reason = "end date passed"
            elif next_at is None:
                reason = "no further occurrence"

            if reason is not None:
                if record.engine_handle and not spec.is_one_shot:
                    await self._adapter.remove_scheduled(self.queue_name, record.engine_handle)
                values.update(enabled=False, engine_handle=None, next_execution_at=None)
                logger.info(
                    f"Schedule disabled: {reason}",
                    extra={"schedule_id": schedule_id, "execution_count": count},
                )
            else:
                values["next_execution_at"] = next_at
            await repo.update(record, values)

    def _headers(self, schedule: Schedule, execution_id: str) -> dict[str, str]:
        reserved = {HEADER_SCHEDULE_ID.lower(), HEADER_EXECUTION_ID.lower()}
        headers = {
            name: value
            for name, value in schedule.endpoint.headers.items()
            if name.lower() not in reserved
        }
        headers[HEADER_SCHEDULE_ID] = schedule.id
        headers[HEADER_EXECUTION_ID] = execution_id
        return headers

    async def execute_http_call(
        self,
        schedule: Schedule,
        execution_id: str,
        trigger: str = "scheduled",
    ) -> ExecutionResult:
        """
        Perform the schedule's HTTP call with its retry policy.

        Any status below 400 is success. 4xx is terminal. 5xx, network errors
        and timeouts are retried up to ``retry_policy.attempts`` times with
        fixed or exponential backoff. Failures are returned, never raised.
        """
        endpoint = schedule.endpoint
        policy = schedule.retry_policy
        headers = self._headers(schedule, execution_id)
        timeout = (endpoint.timeout_ms or self._settings.scheduler_default_timeout_ms) / 1000

        status_code: int | None = None
        error: str | None = None
        attempt = 0
        start = time.perf_counter()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_SCHEDULE) as span:
            span.set_attribute("schedule.id", schedule.id)
            span.set_attribute("schedule.execution_id", execution_id)
            span.set_attribute("schedule.trigger", trigger)

            for attempt in range(1, policy.attempts + 1):
                logger.info(
                    f"Executing schedule {schedule.name} (attempt {attempt}/{policy.attempts})",
                    extra={"schedule_id": schedule.id, "execution_id": execution_id},
                )
                try:
                    response = await self._client.request(
                        endpoint.method,
                        endpoint.url,
                        headers=headers,
                        json=endpoint.body,
                        timeout=timeout,
                        follow_redirects=False,
                    )
                except httpx.HTTPError as e:
                    status_code = None
                    error = f"{type(e).__name__}: {e}"
                else:
                    status_code = response.status_code
                    if status_code < 400:
                        error = None
                        break
                    error = f"HTTP {status_code}"
                    if status_code < 500:
                        logger.warning(
                            f"Schedule endpoint rejected call: {error}",
                            extra={"schedule_id": schedule.id, "execution_id": execution_id},
                        )
                        break

                if attempt < policy.attempts:
                    delay_ms = backoff_delay_ms(policy.backoff, attempt)
                    logger.warning(
                        f"Schedule call failed, retrying in {delay_ms}ms: {error}",
                        extra={"schedule_id": schedule.id, "attempt": attempt},
                    )
                    await self._sleep(delay_ms / 1000)

            if status_code is not None:
                span.set_attribute("http.status_code", status_code)

        duration = time.perf_counter() - start
        status = ExecutionStatus.SUCCESS if error is None else ExecutionStatus.FAILED
        self._metrics.record_schedule_execution(status, trigger, duration)
        if status == ExecutionStatus.FAILED:
            logger.error(
                f"Schedule execution failed after {attempt} attempts: {error}",
                extra={"schedule_id": schedule.id, "execution_id": execution_id},
            )
        else:
            logger.info(
                "Schedule execution succeeded",
                extra={
                    "schedule_id": schedule.id,
                    "execution_id": execution_id,
                    "status_code": status_code,
                },
            )

        return ExecutionResult(
            execution_id=execution_id,
            schedule_id=schedule.id,
            status=status,
            attempts=attempt,
            status_code=status_code,
            error=error,
            duration_ms=duration * 1000,
        )
