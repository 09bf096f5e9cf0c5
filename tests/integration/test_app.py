"""
Integration tests for the JobRelay composition root.
"""

from typing import Any

from jobrelay.app import JobRelay
from jobrelay.config import Settings
from jobrelay.constants import DEFAULT_TENANT_ID, JobStatus
from jobrelay.engine.base import EngineJob
from jobrelay.observability.metrics import MetricsCollector
from jobrelay.types.webhook import WebhookCreate


class TestJobRelay:
    """Tests for startup, draining and shutdown."""

    async def test_start_registers_queues(self, test_settings: Settings, metrics: MetricsCollector):
        settings = test_settings.model_copy(update={"engine_queues": ["emails", "reports"]})

        async with JobRelay(settings, metrics=metrics) as relay:
            names = relay.adapter.queue_names()
            stats = await relay.adapter.get_queue_stats(settings.scheduler_queue_name)

        assert set(names) == {"emails", "reports", settings.scheduler_queue_name}
        assert stats is not None
        assert relay.adapter.queue_names() == []

    async def test_default_tenant(self, test_settings: Settings, metrics: MetricsCollector):
        async with JobRelay(test_settings, metrics=metrics) as relay:
            job_id = await relay.tracker.submit_job(DEFAULT_TENANT_ID, "anything", {"n": 1})
            status = await relay.tracker.get_job_status(job_id, DEFAULT_TENANT_ID)

        assert status.tenant_id == DEFAULT_TENANT_ID
        assert status.status == JobStatus.WAITING
        assert b'jobrelay_jobs_submitted_total{tenant_id="default",queue="anything"} 1.0' in metrics.get_metrics()

    async def test_start_and_shutdown_are_idempotent(
        self,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        relay = JobRelay(test_settings, metrics=metrics)

        await relay.start()
        await relay.start()
        await relay.shutdown()
        await relay.shutdown()

    async def test_drain_waits_for_all_fan_outs(self, relay: JobRelay, http, eventually):
        """Test that drain covers tenant webhooks, per-job webhooks and retries."""
        tenant_hook = "https://hooks.example.com/tenant"
        job_hook = "https://hooks.example.com/job"
        http.respond(tenant_hook, 503, 200)
        await relay.webhooks.register_webhook(
            "acme", WebhookCreate(url=tenant_hook, events=["completed"], queues=["emails"])
        )

        async def process(job: EngineJob) -> Any:
            return {"ok": True}

        await relay.adapter.register_worker("emails", process)
        job_id = await relay.tracker.submit_job("acme", "emails", {}, webhooks={"completed": job_hook})

        async def completed() -> bool:
            return (await relay.tracker.get_job_status(job_id)).status == JobStatus.COMPLETED

        await eventually(completed)
        await eventually(lambda: http.to(tenant_hook))
        await relay.drain()

        assert len(http.to(tenant_hook)) == 2
        assert len(http.to(job_hook)) == 1
        assert relay.delivery.pending_retries == 0
        assert relay.tracker.pending == 0
        assert relay.webhooks.pending == 0
