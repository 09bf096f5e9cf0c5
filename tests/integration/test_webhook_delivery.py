"""
Integration tests for tenant webhooks: routing, retries and auto-disable.
"""

import httpx
import pydantic
import pytest
from prometheus_client import CollectorRegistry

from jobrelay.app import JobRelay
from jobrelay.constants import EngineEventType, WebhookEvent
from jobrelay.engine.base import EngineEvent
from jobrelay.errors import NotFoundError
from jobrelay.types.job import JobUpdate
from jobrelay.types.webhook import WebhookCreate, WebhookRetryConfig, WebhookUpdate
from jobrelay.webhooks.signing import verify_signature

URL = "https://hooks.example.com/tenant"


def create(**values) -> WebhookCreate:
    defaults = {"url": URL, "events": ["completed"], "queues": ["emails"]}
    defaults.update(values)
    return WebhookCreate(**defaults)


async def trigger(relay: JobRelay, tenant_id: str = "acme") -> int:
    return await relay.webhooks.trigger_webhooks(
        tenant_id, WebhookEvent.JOB_COMPLETED, "emails", {"jobId": "job-1", "status": "completed"}
    )


class TestRegistration:
    """Tests for webhook CRUD."""

    async def test_register_generates_secret(self, relay: JobRelay):
        webhook = await relay.webhooks.register_webhook("acme", create())

        assert webhook.secret.startswith("whsec_")
        assert webhook.events == [WebhookEvent.JOB_COMPLETED]
        assert webhook.active is True
        assert webhook.failure_count == 0

    async def test_invalid_url_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            create(url="ftp://hooks.example.com")

    async def test_ownership(self, relay: JobRelay):
        webhook = await relay.webhooks.register_webhook("acme", create())

        with pytest.raises(NotFoundError):
            await relay.webhooks.get_webhook(webhook.id, "other")
        with pytest.raises(NotFoundError):
            await relay.webhooks.update_webhook(webhook.id, "other", WebhookUpdate(active=False))
        with pytest.raises(NotFoundError):
            await relay.webhooks.delete_webhook(webhook.id, "other")
        with pytest.raises(NotFoundError):
            await relay.webhooks.test_webhook(webhook.id, "other")

        assert [item.id for item in await relay.webhooks.list_webhooks("acme")] == [webhook.id]
        assert await relay.webhooks.list_webhooks("other") == []

    async def test_delete(self, relay: JobRelay):
        webhook = await relay.webhooks.register_webhook("acme", create())

        await relay.webhooks.delete_webhook(webhook.id, "acme")

        with pytest.raises(NotFoundError):
            await relay.webhooks.get_webhook(webhook.id, "acme")

    async def test_update_fields(self, relay: JobRelay):
        webhook = await relay.webhooks.register_webhook("acme", create())

        updated = await relay.webhooks.update_webhook(
            webhook.id,
            "acme",
            WebhookUpdate(events=["failed", "job.completed"], headers={"X-Team": "billing"}),
        )

        assert updated.events == [WebhookEvent.JOB_FAILED, WebhookEvent.JOB_COMPLETED]
        assert updated.headers == {"X-Team": "billing"}
        assert updated.url == URL


class TestRouting:
    """Tests for routing engine events to webhooks."""

    async def test_queue_filter(self, relay: JobRelay, http, eventually):
        """Test that only jobs on a filtered queue reach the webhook."""
        webhook = await relay.webhooks.register_webhook("other", create())
        sms_job = await relay.tracker.submit_job("other", "sms", {})
        email_job = await relay.tracker.submit_job("other", "emails", {})

        await relay.tracker.update_job(JobUpdate(job_id=sms_job, status="completed", result=1))
        await relay.tracker.update_job(JobUpdate(job_id=email_job, status="completed", result=2))

        await eventually(lambda: http.to(URL))
        await relay.drain()

        assert len(http.to(URL)) == 1
        request = http.to(URL)[0]
        body = http.bodies(URL)[0]
        assert body["event"] == "job.completed"
        assert body["data"]["jobId"] == email_job
        assert body["data"]["status"] == "completed"
        assert body["data"]["result"] == 2
        assert body["data"]["application"] == {"id": "other", "name": "Other"}
        assert request.headers["X-Webhook-Event"] == "job.completed"
        assert request.headers["X-Webhook-Attempt"] == "1"
        assert verify_signature(request.content, request.headers["X-Webhook-Signature"], webhook.secret)

    async def test_other_tenant_not_notified(self, relay: JobRelay, http, eventually):
        await relay.webhooks.register_webhook("other", create(queues=["*"]))
        sentinel = "https://hooks.example.com/acme"
        await relay.webhooks.register_webhook("acme", create(url=sentinel))

        job_id = await relay.tracker.submit_job("acme", "emails", {})
        await relay.tracker.update_job(JobUpdate(job_id=job_id, status="completed", result=1))

        await eventually(lambda: http.to(sentinel))
        await relay.drain()
        assert http.to(URL) == []

    async def test_redelivered_event_notifies_once(self, relay: JobRelay, http, eventually):
        """Test that an engine event delivered twice reaches the webhook once."""
        await relay.webhooks.register_webhook("acme", create())
        job_id = await relay.tracker.submit_job("acme", "emails", {})
        await relay.tracker.update_job(JobUpdate(job_id=job_id, status="completed", result={"sent": True}))
        await eventually(lambda: http.to(URL))

        await relay.adapter.dispatch(
            EngineEvent(
                queue="emails",
                type=EngineEventType.COMPLETED,
                job_id=job_id,
                event_id="redelivered",
                result={"sent": True},
            )
        )
        await relay.drain()

        assert len(http.to(URL)) == 1

    async def test_queue_paused(self, relay: JobRelay, http, eventually):
        await relay.webhooks.register_webhook("acme", create(events=["queue.paused", "queue.resumed"]))
        await relay.adapter.register_queue("emails")

        await relay.adapter.pause_queue("emails")
        await eventually(lambda: http.to(URL))
        await relay.adapter.resume_queue("emails")
        await eventually(lambda: len(http.to(URL)) == 2)

        events = [body["event"] for body in http.bodies(URL)]
        assert events == ["queue.paused", "queue.resumed"]
        assert http.bodies(URL)[0]["data"]["queue"] == "emails"

    async def test_custom_headers(self, relay: JobRelay, http):
        await relay.webhooks.register_webhook(
            "acme", create(headers={"X-Team": "payments", "X-Webhook-Event": "spoofed"})
        )

        assert await trigger(relay) == 1

        request = http.to(URL)[0]
        assert request.headers["X-Team"] == "payments"
        assert request.headers["X-Webhook-Event"] == "job.completed"


class TestRetries:
    """Tests for retry classification and backoff."""

    async def test_client_error_is_not_retried(self, relay: JobRelay, http, sleep):
        http.respond(URL, 404)
        webhook = await relay.webhooks.register_webhook("acme", create())

        await trigger(relay)
        await relay.delivery.drain()

        assert len(http.to(URL)) == 1
        assert sleep.delays == []
        assert (await relay.webhooks.get_webhook(webhook.id, "acme")).failure_count == 1

    async def test_redirect_is_not_followed(self, relay: JobRelay, http):
        http.respond(URL, 302)
        await relay.webhooks.register_webhook("acme", create())

        await trigger(relay)
        await relay.delivery.drain()

        assert len(http.to(URL)) == 1

    async def test_server_error_retried_with_backoff(self, relay: JobRelay, http, sleep):
        """Test that a 5xx is attempted max_attempts times with growing delays."""
        http.respond(URL, 503)
        retry = WebhookRetryConfig(max_attempts=3, initial_delay_ms=100, backoff_multiplier=2)
        webhook = await relay.webhooks.register_webhook("acme", create(retry_config=retry))

        await trigger(relay)
        await relay.delivery.drain()

        requests = http.to(URL)
        assert [request.headers["X-Webhook-Attempt"] for request in requests] == ["1", "2", "3"]
        assert len(sleep.delays) == 2
        assert 0.1 <= sleep.delays[0] <= 0.11
        assert 0.2 <= sleep.delays[1] <= 0.22
        stored = await relay.webhooks.get_webhook(webhook.id, "acme")
        assert stored.failure_count == 3
        assert stored.active is True

    async def test_network_error_then_success(self, relay: JobRelay, http):
        http.respond(URL, httpx.ConnectError("connection refused"), 200)
        webhook = await relay.webhooks.register_webhook("acme", create())

        await trigger(relay)
        await relay.delivery.drain()

        assert len(http.to(URL)) == 2
        stored = await relay.webhooks.get_webhook(webhook.id, "acme")
        assert stored.failure_count == 0
        assert stored.last_triggered_at is not None

    async def test_deleted_webhook_retry_is_dropped(self, relay: JobRelay, http, sleep):
        """Test that a retry pending when the webhook is deleted sends nothing."""
        http.respond(URL, 500)
        webhook = await relay.webhooks.register_webhook("acme", create())
        sleep.hold()

        await trigger(relay)
        assert relay.delivery.pending_retries == 1
        await relay.webhooks.delete_webhook(webhook.id, "acme")
        sleep.release()
        await relay.delivery.drain()

        assert len(http.to(URL)) == 1


class TestAutoDisable:
    """Tests for failure counting and deactivation."""

    async def test_disabled_after_ten_failures(
        self,
        relay: JobRelay,
        http,
        registry: CollectorRegistry,
    ):
        """Test that the webhook is still active at 9 failures and disabled by the 10th."""
        http.respond(URL, 500)
        webhook = await relay.webhooks.register_webhook(
            "acme", create(retry_config=WebhookRetryConfig(max_attempts=1))
        )

        for _ in range(9):
            await trigger(relay)
        stored = await relay.webhooks.get_webhook(webhook.id, "acme")
        assert (stored.failure_count, stored.active) == (9, True)

        await trigger(relay)
        stored = await relay.webhooks.get_webhook(webhook.id, "acme")
        assert (stored.failure_count, stored.active) == (10, False)

        assert await trigger(relay) == 0
        assert len(http.to(URL)) == 10
        assert registry.get_sample_value("jobrelay_webhooks_disabled_total", {"kind": "webhook"}) == 1

    async def test_reactivation_resets_counter(self, relay: JobRelay, http):
        http.respond(URL, 500)
        webhook = await relay.webhooks.register_webhook(
            "acme", create(retry_config=WebhookRetryConfig(max_attempts=1))
        )
        for _ in range(3):
            await trigger(relay)

        await relay.webhooks.update_webhook(webhook.id, "acme", WebhookUpdate(active=False))
        reactivated = await relay.webhooks.update_webhook(webhook.id, "acme", WebhookUpdate(active=True))

        assert reactivated.active is True
        assert reactivated.failure_count == 0

    async def test_test_delivery_is_not_counted(self, relay: JobRelay, http):
        http.respond(URL, 500)
        webhook = await relay.webhooks.register_webhook("acme", create())

        result = await relay.webhooks.test_webhook(webhook.id, "acme")

        assert result.success is False
        assert result.status_code == 500
        assert result.error == "HTTP 500"
        assert len(http.to(URL)) == 1
        assert http.bodies(URL)[0]["event"] == "webhook.test"
        assert (await relay.webhooks.get_webhook(webhook.id, "acme")).failure_count == 0
