"""
Job tracker.

Submission, status reporting and tenant-scoped listing of jobs, on top of the
queue engine adapter. The engine job data is the durable record of a job's
tenant, metadata and webhooks; the tracker only keeps an LRU cache of them
plus the update history reported by workers.
"""

import logging
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from jobrelay.background import BackgroundTasks
from jobrelay.config import Settings, get_settings
from jobrelay.constants import (
    EVENT_LIFECYCLE,
    JOB_DATA_ID,
    JOB_DATA_METADATA,
    JOB_DATA_SUBMITTED_AT,
    JOB_DATA_TENANT,
    JOB_DATA_WEBHOOKS,
    RESERVED_JOB_DATA_KEYS,
    SPAN_SUBMIT_JOB,
    SUBSCRIPTION_EVENTS,
    EngineEventType,
    JobStatus,
    LifecycleStatus,
)
from jobrelay.engine.adapter import QueueEngineAdapter
from jobrelay.engine.base import EngineEvent, EngineJob, JobOptions
from jobrelay.errors import AccessDeniedError, EnqueueError, NotFoundError, ValidationError
from jobrelay.observability.metrics import MetricsCollector, get_metrics
from jobrelay.observability.tracing import get_tracer
from jobrelay.subscriptions.matching import metadata_matches
from jobrelay.subscriptions.service import SubscriptionService
from jobrelay.tenants import TenantDirectory
from jobrelay.tracker.job_webhooks import (
    JobWebhookDispatcher,
    is_custom_status,
    parse_job_webhooks,
    resolve_webhook_url,
)
from jobrelay.types.common import isoformat_z, utcnow
from jobrelay.types.events import JobLifecycleEvent
from jobrelay.types.job import (
    JobFilter,
    JobStatusView,
    JobSummary,
    JobTimestamps,
    JobUpdate,
    JobUpdateRecord,
    MetadataGroup,
    QueueStats,
)
from jobrelay.types.tenant import Tenant
from jobrelay.webhooks.delivery import WebhookDeliveryService

logger = logging.getLogger(__name__)

_LIFECYCLE_VALUES = frozenset(status.value for status in LifecycleStatus)


@dataclass
class TrackedJob:
    """Cached view of a job's tracker-owned fields."""

    job_id: str
    queue: str
    tenant_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    webhooks: dict[str, str] = field(default_factory=dict)
    updates: list[JobUpdateRecord] = field(default_factory=list)

    @classmethod
    def from_engine(cls, job: EngineJob) -> "TrackedJob":
        return cls(
            job_id=job.id,
            queue=job.queue,
            tenant_id=job.data.get(JOB_DATA_TENANT),
            metadata=dict(job.data.get(JOB_DATA_METADATA) or {}),
            webhooks=dict(job.data.get(JOB_DATA_WEBHOOKS) or {}),
        )


def _parse_submitted(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def _payload(data: Mapping[str, Any]) -> dict[str, Any]:
    """Job data without the reserved tracker keys."""
    return {key: value for key, value in data.items() if key not in RESERVED_JOB_DATA_KEYS}


class JobTracker:
    """
    Tracks jobs submitted by tenants.

    Features:
    - Job id generated before the engine call so callers always hold a handle
    - Status updates from external workers, with update history
    - Metadata and per-job webhooks persisted in the engine job data
    - Tenant-isolated listing with metadata filters and pagination
    - Two independent fan-outs per engine event: per-job webhook and subscriptions
    """

    def __init__(
        self,
        adapter: QueueEngineAdapter,
        subscriptions: SubscriptionService,
        delivery: WebhookDeliveryService,
        tenants: TenantDirectory,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the tracker.

        Args:
            adapter: Queue engine adapter.
            subscriptions: Subscription service, handed every lifecycle event.
            delivery: Shared webhook delivery service, for per-job webhooks.
            tenants: Tenant directory.
            settings: Application settings. Defaults to the cached settings.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self._adapter = adapter
        self._subscriptions = subscriptions
        self._tenants = tenants
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._dispatcher = JobWebhookDispatcher(delivery, self._webhook_url, self._settings)
        self._cache: OrderedDict[str, TrackedJob] = OrderedDict()
        self._tasks = BackgroundTasks("tracker")

    @property
    def dispatcher(self) -> JobWebhookDispatcher:
        return self._dispatcher

    @property
    def pending(self) -> int:
        """Spawned dispatches and subscription triggers still running."""
        return len(self._tasks)

    def start(self) -> None:
        """Start consuming engine events."""
        self._adapter.on_event(self.handle_engine_event)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _remember(self, tracked: TrackedJob) -> TrackedJob:
        self._cache[tracked.job_id] = tracked
        self._cache.move_to_end(tracked.job_id)
        while len(self._cache) > self._settings.tracker_cache_size:
            evicted, _ = self._cache.popitem(last=False)
            self._dispatcher.discard(evicted)
        return tracked

    def _tracked(self, job: EngineJob) -> TrackedJob:
        tracked = self._cache.get(job.id)
        if tracked is None:
            return self._remember(TrackedJob.from_engine(job))
        self._cache.move_to_end(job.id)
        return tracked

    async def _webhook_url(self, job_id: str, status: str) -> str | None:
        tracked = self._cache.get(job_id)
        if tracked is None:
            job = await self._adapter.find_job(job_id)
            if job is None:
                return None
            tracked = self._tracked(job)
        return resolve_webhook_url(tracked.webhooks, status)

    async def _persist(self, job: EngineJob, tracked: TrackedJob) -> None:
        data = dict(job.data)
        data[JOB_DATA_METADATA] = dict(tracked.metadata)
        data[JOB_DATA_WEBHOOKS] = dict(tracked.webhooks)
        await self._adapter.update_data(job.queue, job.id, data)

    async def _find(self, job_id: str, tenant_id: str | None) -> EngineJob:
        job = await self._adapter.find_job(job_id)
        if job is None or job.queue == self._settings.scheduler_queue_name:
            raise NotFoundError("Job", job_id)
        if (
            tenant_id is not None
            and not self._tenants.is_master(tenant_id)
            and job.data.get(JOB_DATA_TENANT) != tenant_id
        ):
            raise NotFoundError("Job", job_id)
        return job

    # ------------------------------------------------------------------
    # Submission and updates
    # ------------------------------------------------------------------

    async def submit_job(
        self,
        tenant: Tenant | str,
        queue: str,
        data: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        webhooks: dict[str, str] | None = None,
        options: JobOptions | None = None,
    ) -> str:
        """
        Submit a job for a tenant.

        Args:
            tenant: The tenant, or its id.
            queue: Target queue; registered on first use.
            data: Job payload.
            metadata: Free-form key/value map used for filtering.
            webhooks: Per-job webhooks, status -> URL.
            options: Engine job options.

        Returns:
            The job id.

        Raises:
            NotFoundError: Unknown tenant id.
            AccessDeniedError: The tenant may not use the queue.
            ValidationError: Reserved queue, reserved data keys or bad webhooks.
            EnqueueError: The engine call failed; carries the job id.
        """
        if isinstance(tenant, str):
            resolved = await self._tenants.get(tenant)
            if resolved is None:
                raise NotFoundError("Tenant", tenant)
            tenant = resolved
        if not tenant.can_access(queue):
            raise AccessDeniedError(tenant.id, queue)
        if queue == self._settings.scheduler_queue_name:
            raise ValidationError(f"Queue {queue} is reserved")
        reserved = sorted(RESERVED_JOB_DATA_KEYS.intersection(data))
        if reserved:
            raise ValidationError("Job data uses reserved keys", [f"Reserved key: {key}" for key in reserved])
        parsed_webhooks = parse_job_webhooks(webhooks)

        job_id = str(uuid4())
        tracked = self._remember(
            TrackedJob(
                job_id=job_id,
                queue=queue,
                tenant_id=tenant.id,
                metadata=dict(metadata or {}),
                webhooks=parsed_webhooks,
            )
        )
        job_data = {
            **data,
            JOB_DATA_ID: job_id,
            JOB_DATA_TENANT: tenant.id,
            JOB_DATA_SUBMITTED_AT: isoformat_z(utcnow()),
            JOB_DATA_METADATA: tracked.metadata,
            JOB_DATA_WEBHOOKS: tracked.webhooks,
        }

        with get_tracer().start_as_current_span(SPAN_SUBMIT_JOB) as span:
            span.set_attribute("job.id", job_id)
            span.set_attribute("job.queue", queue)
            span.set_attribute("tenant.id", tenant.id)
            try:
                await self._adapter.register_queue(queue)
                await self._adapter.add_job(queue, job_id, job_data, options)
            except Exception as e:
                self._cache.pop(job_id, None)
                logger.error(
                    f"Failed to enqueue job: {e}",
                    extra={"job_id": job_id, "queue": queue, "tenant_id": tenant.id},
                )
                raise EnqueueError(job_id, queue, str(e)) from e

        self._metrics.record_job_submitted(tenant.id, queue)
        logger.info(
            "Job submitted",
            extra={"job_id": job_id, "queue": queue, "tenant_id": tenant.id},
        )
        return job_id

    def _validate_update(self, update: JobUpdate) -> None:
        status = update.status
        if status == LifecycleStatus.PROGRESS:
            if update.progress is None:
                raise ValidationError("Progress value is required for progress updates")
        elif status == LifecycleStatus.COMPLETED:
            if update.result is None:
                raise ValidationError("Result is required for completed status")
        elif status == LifecycleStatus.FAILED:
            if not update.error:
                raise ValidationError("Error is required for failed status")
        elif status not in _LIFECYCLE_VALUES and not is_custom_status(status):
            raise ValidationError(
                f"Unknown status: {status}",
                [f"Unknown status '{status}': use a job status or an 'x-' custom status"],
            )

    async def update_job(self, update: JobUpdate, tenant_id: str | None = None) -> JobStatusView:
        """
        Apply a status report from a worker.

        Progress, completion and failure are applied to the engine, whose
        events then notify webhooks and subscriptions. Other statuses have no
        engine transition and go to the job's webhook directly.

        Raises:
            ValidationError: Missing progress/result/error or unknown status.
            NotFoundError: Unknown job, or owned by another tenant.
        """
        self._validate_update(update)
        job = await self._find(update.job_id, tenant_id)
        tracked = self._tracked(job)

        tracked.updates.append(
            JobUpdateRecord(
                status=update.status,
                progress=update.progress,
                result=update.result,
                error=update.error,
                metadata=update.metadata,
                timestamp=utcnow(),
            )
        )
        if update.metadata:
            tracked.metadata.update(update.metadata)
            await self._persist(job, tracked)

        status = update.status
        if status == LifecycleStatus.PROGRESS:
            await self._adapter.update_progress(job.queue, job.id, update.progress)
        elif status == LifecycleStatus.COMPLETED:
            if not await self._adapter.complete_job(job.queue, job.id, update.result):
                logger.info("Job already finished, completion ignored", extra={"job_id": job.id})
        elif status == LifecycleStatus.FAILED:
            if not await self._adapter.fail_job(job.queue, job.id, update.error):
                logger.info("Job already finished, failure ignored", extra={"job_id": job.id})
        else:
            self._tasks.spawn(
                self._dispatch_webhook(tracked, status, metadata=tracked.metadata or None),
                f"job webhook {job.id}",
            )

        logger.info("Job updated", extra={"job_id": job.id, "status": status})
        return await self.get_job_status(job.id)

    async def set_job_webhooks(
        self,
        job_id: str,
        webhooks: dict[str, str],
        tenant_id: str | None = None,
    ) -> dict[str, str]:
        """Merge webhooks into a job's existing ones. Returns the merged map."""
        parsed = parse_job_webhooks(webhooks)
        job = await self._find(job_id, tenant_id)
        tracked = self._tracked(job)
        tracked.webhooks.update(parsed)
        await self._persist(job, tracked)
        logger.info("Updated job webhooks", extra={"job_id": job_id, "keys": sorted(parsed)})
        return dict(tracked.webhooks)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str, tenant_id: str | None = None) -> JobStatusView:
        """
        Engine state merged with the tracker's records.

        Raises:
            NotFoundError: Unknown job, or owned by another tenant.
        """
        job = await self._find(job_id, tenant_id)
        tracked = self._tracked(job)
        return JobStatusView(
            id=job.id,
            queue=job.queue,
            tenant_id=tracked.tenant_id,
            status=job.state,
            data=_payload(job.data),
            metadata=dict(tracked.metadata),
            progress=job.progress,
            result=job.result,
            error=job.failed_reason,
            attempts_made=job.attempts_made,
            updates=list(tracked.updates),
            webhooks=dict(tracked.webhooks),
            timestamps=JobTimestamps(
                submitted=_parse_submitted(job.data.get(JOB_DATA_SUBMITTED_AT)) or job.created_at,
                started=job.processed_at,
                completed=job.finished_at if job.state == JobStatus.COMPLETED else None,
                failed=job.finished_at if job.state == JobStatus.FAILED else None,
            ),
        )

    def _metadata_of(self, job: EngineJob) -> dict[str, Any]:
        tracked = self._cache.get(job.id)
        if tracked is not None:
            return tracked.metadata
        return dict(job.data.get(JOB_DATA_METADATA) or {})

    def _visible(self, job: EngineJob, tenant_id: str) -> bool:
        return self._tenants.is_master(tenant_id) or job.data.get(JOB_DATA_TENANT) == tenant_id

    async def list_jobs(self, tenant_id: str, filters: JobFilter | None = None) -> list[JobSummary]:
        """
        List a tenant's jobs, newest first.

        The master tenant sees every tenant's jobs. Metadata filters are
        exact-match on every given key. A status of ``all`` or none at all
        covers every state.
        """
        filters = filters or JobFilter()
        if filters.queue is not None:
            queues = [filters.queue]
        else:
            queues = [
                name
                for name in self._adapter.queue_names()
                if name != self._settings.scheduler_queue_name
            ]
        if filters.status is None or filters.status == "all":
            states = list(JobStatus)
        else:
            states = [JobStatus(filters.status)]

        summaries: list[JobSummary] = []
        for queue in queues:
            for job in await self._adapter.list_jobs(queue, states):
                if not self._visible(job, tenant_id):
                    continue
                metadata = self._metadata_of(job)
                if filters.metadata and not metadata_matches(filters.metadata, metadata):
                    continue
                summaries.append(
                    JobSummary(
                        id=job.id,
                        queue=job.queue,
                        status=job.state,
                        submitted_at=_parse_submitted(job.data.get(JOB_DATA_SUBMITTED_AT))
                        or job.created_at,
                        data=_payload(job.data),
                        metadata=dict(metadata),
                        progress=job.progress,
                        result=job.result,
                        error=job.failed_reason,
                    )
                )

        summaries.sort(key=lambda summary: summary.submitted_at, reverse=True)
        return summaries[filters.offset : filters.offset + filters.limit]

    async def search_jobs_by_metadata(
        self,
        tenant_id: str,
        metadata: dict[str, Any],
        queue: str | None = None,
        limit: int = 100,
    ) -> list[JobSummary]:
        return await self.list_jobs(
            tenant_id, JobFilter(queue=queue, metadata=metadata, limit=limit)
        )

    async def get_queue_stats(self, queue: str, group_by_metadata: str | None = None) -> QueueStats:
        """
        Counts per state, optionally broken down by one metadata key.

        Jobs without the key are grouped under ``undefined``.

        Raises:
            NotFoundError: The queue is not registered.
        """
        stats = await self._adapter.get_queue_stats(queue)
        if stats is None:
            raise NotFoundError("Queue", queue)
        for state in (JobStatus.WAITING, JobStatus.ACTIVE, JobStatus.DELAYED, JobStatus.FAILED):
            self._metrics.update_queue_depth(queue, state, getattr(stats, state))
        if group_by_metadata is None:
            return stats

        groups: dict[str, MetadataGroup] = {}
        for job in await self._adapter.list_jobs(queue, list(JobStatus), limit=1000):
            value = self._metadata_of(job).get(group_by_metadata)
            key = "undefined" if value is None else str(value)
            group = groups.setdefault(key, MetadataGroup())
            group.count += 1
            group.statuses[job.state] = group.statuses.get(job.state, 0) + 1
        stats.by_metadata = groups
        return stats

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    async def handle_engine_event(self, event: EngineEvent) -> None:
        """
        Engine event consumer.

        The per-job webhook and the subscription evaluation are spawned as
        two independent tasks. Redelivered events are filtered by the adapter.
        """
        self._metrics.record_engine_event(event.queue, event.type)
        if event.queue == self._settings.scheduler_queue_name:
            return

        job = await self._adapter.get_job(event.queue, event.job_id)
        if job is None:
            return
        tracked = self._tracked(job)
        if tracked.tenant_id is None:
            return

        status = EVENT_LIFECYCLE[event.type]
        extra: dict[str, Any] = {"metadata": tracked.metadata or None}
        if event.type == EngineEventType.COMPLETED:
            extra["result"] = event.result
        elif event.type == EngineEventType.FAILED:
            extra["error"] = event.error
        elif event.type == EngineEventType.PROGRESS:
            extra["progress"] = event.progress

        self._tasks.spawn(
            self._dispatch_webhook(tracked, status, **extra),
            f"job webhook {event.job_id}",
        )
        if status in SUBSCRIPTION_EVENTS:
            lifecycle = JobLifecycleEvent(
                job_id=job.id,
                queue=job.queue,
                status=status,
                tenant_id=tracked.tenant_id,
                data=_payload(job.data),
                metadata=dict(tracked.metadata),
                result=extra.get("result"),
                error=extra.get("error"),
                progress=extra.get("progress"),
                timestamp=event.timestamp,
            )
            self._tasks.spawn(
                self._subscriptions.trigger_subscriptions(lifecycle),
                f"subscriptions {event.job_id}",
            )

    async def _dispatch_webhook(self, tracked: TrackedJob, status: str, **extra: Any) -> None:
        if resolve_webhook_url(tracked.webhooks, status) is None:
            return
        await self._dispatcher.dispatch(
            tracked.job_id,
            tracked.queue,
            status,
            tracked.webhooks,
            application=await self._tenants.summary(tracked.tenant_id),
            **extra,
        )

    async def drain(self) -> None:
        """Wait for spawned dispatches and subscription triggers."""
        await self._tasks.drain()

    async def stop(self) -> None:
        await self._tasks.cancel()
