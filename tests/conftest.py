"""
Pytest configuration and shared fixtures.
"""

import asyncio
import inspect
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobrelay.app import JobRelay
from jobrelay.config import Settings
from jobrelay.db.connection import Database
from jobrelay.engine.adapter import QueueEngineAdapter
from jobrelay.engine.memory import MemoryQueueEngine
from jobrelay.observability.metrics import MetricsCollector
from jobrelay.tenants import TenantDirectory
from jobrelay.types.tenant import Tenant


class HttpRecorder:
    """
    ``httpx.MockTransport`` handler that records every request.

    Responses are configured per URL as a sequence of outcomes: a status code
    or an exception to raise. The last outcome repeats; unknown URLs get 200.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._outcomes: dict[str, list[int | Exception]] = {}

    def respond(self, url: str, *outcomes: int | Exception) -> None:
        self._outcomes[url] = list(outcomes)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcomes = self._outcomes.get(str(request.url))
        outcome: int | Exception = 200
        if outcomes:
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"ok": outcome < 400})

    def to(self, url: str) -> list[httpx.Request]:
        return [request for request in self.requests if str(request.url) == url]

    def bodies(self, url: str) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.to(url)]


class RecordingSleep:
    """Backoff sleep that records delays and returns immediately unless held."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._gate = asyncio.Event()
        self._gate.set()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await self._gate.wait()

    def hold(self) -> None:
        self._gate.clear()

    def release(self) -> None:
        self._gate.set()


async def wait_for(
    predicate: Callable[[], Any | Awaitable[Any]],
    timeout: float = 3.0,
    interval: float = 0.01,
) -> Any:
    """Poll until ``predicate`` returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[Any]]:
    return wait_for


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        database_create_schema=True,
        engine_backoff_delay_ms=10,
        job_webhook_initial_delay_ms=10,
        job_webhook_secret="job-secret",
        master_tenant_id="master",
        log_level="WARNING",
        log_format="console",
    )


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=registry)


@pytest.fixture
def tenants(test_settings: Settings) -> TenantDirectory:
    """Directory with two tenants and the master tenant."""
    return TenantDirectory(
        [
            Tenant(id="acme", name="Acme", api_key="acme-key", allowed_queues=["emails", "reports"]),
            Tenant(id="other", name="Other", api_key="other-key", allowed_queues=["*"]),
            Tenant(id="master", name="Master", api_key="master-key", allowed_queues=["*"]),
        ],
        settings=test_settings,
    )


@pytest.fixture
def http() -> HttpRecorder:
    return HttpRecorder()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def http_client(http: HttpRecorder) -> AsyncGenerator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(http)) as client:
        yield client


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database]:
    """Initialized database with the schema created."""
    db = Database.from_settings(test_settings)
    await db.init()
    await db.create_all()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[MemoryQueueEngine]:
    engine = MemoryQueueEngine()
    await engine.connect()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def adapter(engine: MemoryQueueEngine, test_settings: Settings) -> QueueEngineAdapter:
    adapter = QueueEngineAdapter(engine, test_settings)
    await adapter.connect()
    return adapter


@pytest_asyncio.fixture
async def relay(
    test_settings: Settings,
    tenants: TenantDirectory,
    http_client: httpx.AsyncClient,
    metrics: MetricsCollector,
    sleep: RecordingSleep,
) -> AsyncGenerator[JobRelay]:
    """A started JobRelay over the in-process engine and a mocked HTTP transport."""
    relay = JobRelay(
        test_settings,
        tenants=tenants,
        http_client=http_client,
        metrics=metrics,
        sleep=sleep,
    )
    await relay.start()
    yield relay
    sleep.release()
    await relay.shutdown()
