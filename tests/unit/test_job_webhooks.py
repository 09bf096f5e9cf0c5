"""
Unit tests for per-job webhook keys and the job-scoped failure ledger.
"""

import pytest

from jobrelay.errors import ValidationError
from jobrelay.tracker.job_webhooks import (
    JobWebhookLedger,
    is_custom_status,
    normalize_webhook_key,
    parse_job_webhooks,
    resolve_webhook_url,
)
from jobrelay.webhooks.delivery import DeliveryTarget


class TestWebhookKeys:
    """Tests for key normalisation and parsing."""

    @pytest.mark.parametrize(
        "key,expected",
        [
            ("completed", "completed"),
            ("failed", "failed"),
            ("*", "*"),
            ("onCompleted", "completed"),
            ("onStarted", "started"),
            ("x-review", "x-review"),
            ("X-Approval", "X-Approval"),
        ],
    )
    def test_normalize(self, key: str, expected: str):
        assert normalize_webhook_key(key) == expected

    @pytest.mark.parametrize("key", ["complete", "Completed", "onFinished", "review", "x-"])
    def test_unknown_key_rejected(self, key: str):
        with pytest.raises(ValidationError):
            normalize_webhook_key(key)

    def test_is_custom_status(self):
        assert is_custom_status("x-approved") is True
        assert is_custom_status("x-") is False
        assert is_custom_status("approved") is False

    def test_parse_drops_empty_values(self):
        parsed = parse_job_webhooks(
            {"onCompleted": "https://hooks.example.com/done", "failed": "", "x-review": None}
        )
        assert parsed == {"completed": "https://hooks.example.com/done"}

    def test_parse_collects_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_job_webhooks(
                {
                    "completd": "https://hooks.example.com/done",
                    "failed": "not a url",
                    "*": "https://hooks.example.com/all",
                }
            )

        assert len(exc_info.value.errors) == 2

    def test_parse_nothing(self):
        assert parse_job_webhooks(None) == {}
        assert parse_job_webhooks({}) == {}

    def test_resolve_exact_before_wildcard(self):
        webhooks = {"completed": "https://a.example.com", "*": "https://b.example.com"}

        assert resolve_webhook_url(webhooks, "completed") == "https://a.example.com"
        assert resolve_webhook_url(webhooks, "failed") == "https://b.example.com"
        assert resolve_webhook_url({"completed": "https://a.example.com"}, "failed") is None


class TestJobWebhookLedger:
    """Tests for JobWebhookLedger."""

    @pytest.fixture
    def urls(self) -> dict[tuple[str, str], str]:
        return {("job-1", "completed"): "https://hooks.example.com/current"}

    @pytest.fixture
    def ledger(self, urls: dict[tuple[str, str], str]) -> JobWebhookLedger:
        async def lookup(job_id: str, status: str) -> str | None:
            return urls.get((job_id, status))

        return JobWebhookLedger(lookup, disable_threshold=3, max_jobs=2)

    @staticmethod
    def target(job_id: str = "job-1") -> DeliveryTarget:
        return DeliveryTarget(
            id=f"job:{job_id}",
            url="https://hooks.example.com/old",
            secret=None,
            kind="job",
            owner_id=job_id,
            route="completed",
        )

    async def test_refresh_uses_current_url(self, ledger: JobWebhookLedger):
        refreshed = await ledger.refresh(self.target())
        assert refreshed.url == "https://hooks.example.com/current"

    async def test_refresh_removed_webhook(self, ledger: JobWebhookLedger, urls: dict):
        urls.clear()
        assert await ledger.refresh(self.target()) is None

    async def test_disables_at_threshold(self, ledger: JobWebhookLedger):
        """Test that the job's webhooks stop exactly at the threshold."""
        target = self.target()

        assert await ledger.record_failure(target) is False
        assert await ledger.record_failure(target) is False
        assert await ledger.refresh(target) is not None
        assert await ledger.record_failure(target) is True

        assert ledger.failures("job-1") == 3
        assert await ledger.refresh(target) is None

    async def test_success_resets(self, ledger: JobWebhookLedger):
        target = self.target()
        await ledger.record_failure(target)
        await ledger.record_failure(target)

        await ledger.record_success(target)

        assert ledger.failures("job-1") == 0

    async def test_counters_are_per_job(self, ledger: JobWebhookLedger):
        await ledger.record_failure(self.target("job-1"))
        await ledger.record_failure(self.target("job-2"))

        assert ledger.failures("job-1") == 1
        assert ledger.failures("job-2") == 1

    async def test_bounded(self, ledger: JobWebhookLedger):
        for job_id in ("job-1", "job-2", "job-3"):
            await ledger.record_failure(self.target(job_id))

        assert ledger.failures("job-1") == 0
        assert ledger.failures("job-3") == 1
