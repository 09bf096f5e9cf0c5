"""
Integration tests for subscriptions.
"""

import asyncio

import pytest

from jobrelay.app import JobRelay
from jobrelay.errors import NotFoundError, ValidationError
from jobrelay.types.events import JobLifecycleEvent
from jobrelay.types.job import JobUpdate
from jobrelay.types.subscription import (
    SubscriptionCreate,
    SubscriptionFilters,
    SubscriptionRetryConfig,
    SubscriptionUpdate,
)
from jobrelay.webhooks.signing import verify_signature

PROD = "https://hooks.example.com/prod"
DEV = "https://hooks.example.com/dev"
ALL = "https://hooks.example.com/all"


def create(endpoint: str, /, **values) -> SubscriptionCreate:
    defaults = {"name": endpoint.rsplit("/", 1)[-1], "endpoint": endpoint, "events": ["completed"]}
    defaults.update(values)
    return SubscriptionCreate(**defaults)


def completed_event(tenant_id: str = "acme", **values) -> JobLifecycleEvent:
    defaults = {
        "job_id": "job-1",
        "queue": "emails",
        "status": "completed",
        "tenant_id": tenant_id,
        "metadata": {"env": "prod"},
        "result": {"sent": True},
    }
    defaults.update(values)
    return JobLifecycleEvent(**defaults)


class TestSubscriptionCrud:
    """Tests for subscription CRUD and validation."""

    async def test_create(self, relay: JobRelay):
        subscription = await relay.subscriptions.create_subscription(
            "acme", create(PROD, method="put", events=["completed", "failed", "completed"])
        )

        assert subscription.secret.startswith("whsec_")
        assert subscription.method == "PUT"
        assert subscription.events == ["completed", "failed"]
        assert subscription.trigger_count == 0

    @pytest.mark.parametrize(
        "values",
        [
            {"name": " "},
            {"endpoint": "not-a-url"},
            {"events": []},
            {"events": ["finished"]},
            {"method": "GET"},
        ],
    )
    async def test_create_rejected(self, relay: JobRelay, values: dict):
        with pytest.raises(ValidationError):
            await relay.subscriptions.create_subscription("acme", create(PROD, **values))
        assert await relay.subscriptions.list_subscriptions("acme") == []

    async def test_update_revalidates(self, relay: JobRelay):
        subscription = await relay.subscriptions.create_subscription("acme", create(PROD))

        with pytest.raises(ValidationError):
            await relay.subscriptions.update_subscription(
                subscription.id, "acme", SubscriptionUpdate(events=[])
            )
        updated = await relay.subscriptions.update_subscription(
            subscription.id, "acme", SubscriptionUpdate(events=["failed"], description="errors only")
        )

        assert updated.events == ["failed"]
        assert updated.description == "errors only"
        assert updated.endpoint == PROD

    async def test_tenant_scoping(self, relay: JobRelay):
        subscription = await relay.subscriptions.create_subscription("acme", create(PROD))

        with pytest.raises(NotFoundError):
            await relay.subscriptions.get_subscription(subscription.id, "other")
        with pytest.raises(NotFoundError):
            await relay.subscriptions.update_subscription(
                subscription.id, "other", SubscriptionUpdate(active=False)
            )
        with pytest.raises(NotFoundError):
            await relay.subscriptions.delete_subscription(subscription.id, "other")

        await relay.subscriptions.delete_subscription(subscription.id, "acme")
        with pytest.raises(NotFoundError):
            await relay.subscriptions.get_subscription(subscription.id, "acme")

    async def test_list_filters(self, relay: JobRelay):
        await relay.subscriptions.create_subscription(
            "acme", create(PROD, filters=SubscriptionFilters(queues=["emails"]))
        )
        await relay.subscriptions.create_subscription("acme", create(DEV, active=False))

        assert len(await relay.subscriptions.list_subscriptions("acme")) == 2
        assert len(await relay.subscriptions.list_subscriptions("acme", active=True)) == 1
        assert len(await relay.subscriptions.list_subscriptions("acme", queue="emails")) == 1
        assert await relay.subscriptions.list_subscriptions("acme", queue="reports") == []


class TestSubscriptionTriggers:
    """Tests for matching and delivery."""

    async def test_filters_on_job_completion(self, relay: JobRelay, http, eventually):
        """Test that only subscriptions whose filters match the job are called."""
        prod = await relay.subscriptions.create_subscription(
            "acme",
            create(PROD, filters=SubscriptionFilters(queues=["emails"], metadata={"env": "prod"})),
        )
        await relay.subscriptions.create_subscription(
            "acme",
            create(DEV, filters=SubscriptionFilters(queues=["emails"], metadata={"env": "dev"})),
        )
        await relay.subscriptions.create_subscription("acme", create(ALL))

        job_id = await relay.tracker.submit_job("acme", "emails", {}, metadata={"env": "prod"})
        await relay.tracker.update_job(JobUpdate(job_id=job_id, status="completed", result={"n": 1}))

        await eventually(lambda: http.to(PROD) and http.to(ALL))
        await relay.drain()

        assert http.to(DEV) == []
        assert len(http.to(ALL)) == 1
        request = http.to(PROD)[0]
        body = http.bodies(PROD)[0]
        assert body["event"] == "job.completed"
        assert body["data"]["jobId"] == job_id
        assert body["data"]["result"] == {"n": 1}
        assert body["data"]["metadata"] == {"env": "prod"}
        assert body["data"]["subscription"] == {"id": prod.id, "name": "prod"}
        assert request.headers["X-Subscription-Id"] == prod.id
        assert request.headers["X-Application-Id"] == "acme"
        assert verify_signature(request.content, request.headers["X-Webhook-Signature"], prod.secret)

    async def test_find_matching_skips_inactive_and_missing_metadata(self, relay: JobRelay):
        await relay.subscriptions.create_subscription("acme", create(ALL))
        await relay.subscriptions.create_subscription("acme", create(DEV, active=False))
        await relay.subscriptions.create_subscription(
            "acme", create(PROD, filters=SubscriptionFilters(metadata={"region": "eu"}))
        )

        matches = await relay.subscriptions.find_matching_subscriptions(completed_event())

        assert [subscription.endpoint for subscription in matches] == [ALL]
        assert await relay.subscriptions.find_matching_subscriptions(completed_event(tenant_id=None)) == []

    async def test_status_filter(self, relay: JobRelay, http):
        await relay.subscriptions.create_subscription(
            "acme",
            create(PROD, events=["completed", "failed"], filters=SubscriptionFilters(statuses=["failed"])),
        )

        assert await relay.subscriptions.trigger_subscriptions(completed_event()) == 0
        assert await relay.subscriptions.trigger_subscriptions(
            completed_event(status="failed", result=None, error="boom")
        ) == 1

    async def test_other_tenant_not_matched(self, relay: JobRelay, http):
        await relay.subscriptions.create_subscription("other", create(PROD))

        assert await relay.subscriptions.trigger_subscriptions(completed_event()) == 0
        assert http.requests == []

    async def test_failure_does_not_block_siblings(self, relay: JobRelay, http, sleep):
        """Test linear backoff on a failing subscription while a sibling succeeds once."""
        http.respond(DEV, 500)
        failing = await relay.subscriptions.create_subscription(
            "acme",
            create(DEV, retry_config=SubscriptionRetryConfig(max_attempts=3, backoff_ms=100)),
        )
        healthy = await relay.subscriptions.create_subscription("acme", create(PROD))

        delivered = await relay.subscriptions.trigger_subscriptions(completed_event())

        assert delivered == 1
        assert len(http.to(DEV)) == 3
        assert len(http.to(PROD)) == 1
        assert sleep.delays == [0.1, 0.2]

        failing = await relay.subscriptions.get_subscription(failing.id, "acme")
        healthy = await relay.subscriptions.get_subscription(healthy.id, "acme")
        assert (failing.trigger_count, failing.active) == (0, True)
        assert healthy.trigger_count == 1
        assert healthy.last_triggered_at is not None

    async def test_client_error_not_retried(self, relay: JobRelay, http, sleep):
        http.respond(PROD, 422)
        await relay.subscriptions.create_subscription("acme", create(PROD))

        assert await relay.subscriptions.trigger_subscriptions(completed_event()) == 0
        assert len(http.to(PROD)) == 1
        assert sleep.delays == []

    async def test_deleted_during_retry_stops(self, relay: JobRelay, http, sleep, eventually):
        http.respond(PROD, 503)
        subscription = await relay.subscriptions.create_subscription("acme", create(PROD))
        sleep.hold()

        running = asyncio.create_task(
            relay.subscriptions.trigger_subscription(subscription, completed_event())
        )
        await eventually(lambda: sleep.delays)
        await relay.subscriptions.delete_subscription(subscription.id, "acme")
        sleep.release()

        assert await running is False
        assert len(http.to(PROD)) == 1
