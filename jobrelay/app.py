"""
Composition root.

Builds exactly one instance of every component and wires them together. The
embedding HTTP layer (not part of this package) holds a ``JobRelay`` and calls
the public methods of its components.
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from types import TracebackType

import httpx

from jobrelay.config import Settings, get_settings
from jobrelay.db.connection import Database
from jobrelay.engine.adapter import QueueEngineAdapter
from jobrelay.engine.base import QueueEngine
from jobrelay.engine.memory import MemoryQueueEngine
from jobrelay.observability.logging import setup_logging
from jobrelay.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobrelay.observability.tracing import instrument_sqlalchemy, setup_tracing
from jobrelay.scheduler.service import ScheduleService
from jobrelay.subscriptions.service import SubscriptionService
from jobrelay.tenants import TenantDirectory
from jobrelay.tracker.service import JobTracker
from jobrelay.webhooks.delivery import WebhookDeliveryService
from jobrelay.webhooks.manager import WebhookManager

logger = logging.getLogger(__name__)


class JobRelay:
    """
    Owns the process-wide resources: database, queue engine connection and
    HTTP client, plus the services built on them.

    Usage::

        async with JobRelay(settings) as relay:
            job_id = await relay.tracker.submit_job("default", "emails", {...})
    """

    def __init__(
        self,
        settings: Settings | None = None,
        engine: QueueEngine | None = None,
        database: Database | None = None,
        tenants: TenantDirectory | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Build every component. Nothing is connected until ``start``.

        Args:
            settings: Application settings. Defaults to the cached settings.
            engine: Queue engine binding. Defaults to the in-process engine.
            database: Database handle. Defaults to one built from settings.
            tenants: Tenant directory. Defaults to the configured tenants.
            http_client: Shared outbound client. Owned by the caller when given.
            metrics: Metrics collector. Defaults to the process collector.
            sleep: Awaitable used for every retry backoff wait.
        """
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics()
        self.database = database or Database.from_settings(self.settings)
        self.tenants = tenants or TenantDirectory.with_defaults(self.settings)
        self.adapter = QueueEngineAdapter(engine or MemoryQueueEngine(), self.settings)

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(follow_redirects=False)

        self.delivery = WebhookDeliveryService(
            self.http_client, self.settings, self.metrics, sleep=sleep
        )
        self.webhooks = WebhookManager(
            self.database, self.delivery, self.adapter, self.tenants, self.settings
        )
        self.subscriptions = SubscriptionService(
            self.database, self.http_client, self.tenants, self.settings, self.metrics, sleep=sleep
        )
        self.tracker = JobTracker(
            self.adapter,
            self.subscriptions,
            self.delivery,
            self.tenants,
            self.settings,
            self.metrics,
        )
        self.scheduler = ScheduleService(
            self.database,
            self.adapter,
            self.http_client,
            self.settings,
            self.metrics,
            sleep=sleep,
        )
        self._started = False

    async def start(self) -> None:
        """
        Connect to the database and the queue engine, register consumers and
        the configured queues, then start the scheduler.

        Raises:
            EngineConnectionError: The queue engine is unreachable.
        """
        if self._started:
            return
        await self.database.init()
        if self.settings.database_create_schema:
            await self.database.create_all()
        if self.settings.otel_enabled:
            instrument_sqlalchemy(self.database.engine.sync_engine)

        await self.adapter.connect()
        self.tracker.start()
        self.webhooks.start()
        for queue in self.settings.engine_queues:
            await self.adapter.register_queue(queue)
        await self.scheduler.start()

        self._started = True
        logger.info(
            "JobRelay started",
            extra={"queues": self.adapter.queue_names()},
        )

    async def drain(self) -> None:
        """Wait for every in-flight fan-out and pending webhook retry."""
        while True:
            await self.tracker.drain()
            await self.webhooks.drain()
            await self.delivery.drain()
            if not (self.tracker.pending or self.webhooks.pending or self.delivery.pending_retries):
                return

    async def shutdown(self) -> None:
        """Stop the engine first so no event arrives while the rest closes."""
        if not self._started:
            return
        logger.info("JobRelay shutting down")
        await self.adapter.shutdown()
        await self.tracker.stop()
        await self.webhooks.stop()
        await self.delivery.close()
        if self._owns_client:
            await self.http_client.aclose()
        await self.database.close()
        self._started = False
        logger.info("JobRelay stopped")

    async def __aenter__(self) -> "JobRelay":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()


async def run_async() -> None:
    """Run a standalone JobRelay until SIGTERM or SIGINT."""
    settings = get_settings()
    setup_logging(settings)
    provider = setup_tracing(settings) if settings.otel_enabled else None
    metrics = setup_metrics(settings.prometheus_port)

    relay = JobRelay(settings, metrics=metrics)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    await relay.start()
    try:
        await stop.wait()
    finally:
        await relay.shutdown()
        if provider is not None:
            provider.shutdown()


def run() -> None:
    """Run JobRelay."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
