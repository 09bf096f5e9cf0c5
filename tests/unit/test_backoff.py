"""
Unit tests for retry backoff and response classification.
"""

import pytest

from jobrelay.constants import BackoffType
from jobrelay.errors import TerminalDeliveryError, TransientDeliveryError
from jobrelay.scheduler.timing import backoff_delay_ms
from jobrelay.types.schedule import BackoffPolicy
from jobrelay.types.webhook import WebhookRetryConfig
from jobrelay.webhooks.delivery import calculate_backoff_delay, classify_status


class TestWebhookBackoff:
    """Tests for webhook retry delays."""

    @pytest.fixture
    def retry(self) -> WebhookRetryConfig:
        return WebhookRetryConfig(max_attempts=5, initial_delay_ms=1000, backoff_multiplier=2.0)

    def test_exponential_without_jitter(self, retry: WebhookRetryConfig):
        delays = [calculate_backoff_delay(n, retry, 60000, rand=lambda: 0.0) for n in (1, 2, 3, 4)]
        assert delays == [1000, 2000, 4000, 8000]

    def test_jitter_is_at_most_ten_percent(self, retry: WebhookRetryConfig):
        assert calculate_backoff_delay(1, retry, 60000, rand=lambda: 0.999) == pytest.approx(1099.9)
        assert calculate_backoff_delay(2, retry, 60000, rand=lambda: 0.5) == pytest.approx(2100)

    def test_capped_at_max_delay(self, retry: WebhookRetryConfig):
        assert calculate_backoff_delay(10, retry, 60000, rand=lambda: 0.0) == 60000
        assert calculate_backoff_delay(7, retry, 60000, rand=lambda: 0.999) == 60000

    def test_custom_multiplier(self):
        retry = WebhookRetryConfig(initial_delay_ms=100, backoff_multiplier=3.0)
        assert calculate_backoff_delay(3, retry, 60000, rand=lambda: 0.0) == 900


class TestClassifyStatus:
    """Tests for HTTP response classification."""

    @pytest.mark.parametrize("status", [200, 201, 204, 299])
    def test_success(self, status: int):
        assert classify_status("https://example.com", status, 1) is None

    @pytest.mark.parametrize("status", [301, 302, 400, 401, 404, 410, 422, 499])
    def test_terminal(self, status: int):
        error = classify_status("https://example.com", status, 2)

        assert isinstance(error, TerminalDeliveryError)
        assert error.status_code == status
        assert error.attempt == 2

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_transient(self, status: int):
        assert isinstance(classify_status("https://example.com", status, 1), TransientDeliveryError)


class TestScheduleBackoff:
    """Tests for scheduled call retry delays."""

    def test_fixed(self):
        policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=500)
        assert [backoff_delay_ms(policy, n) for n in (1, 2, 3)] == [500, 500, 500]

    def test_exponential(self):
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=500)
        assert [backoff_delay_ms(policy, n) for n in (1, 2, 3)] == [500, 1000, 2000]
