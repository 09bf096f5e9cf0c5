"""
Webhook delivery.

Signed POST delivery with exponential backoff and jitter. Retries run on
background tasks so a slow or failing target never delays anything else.
Failure bookkeeping is delegated to a ``DeliveryLedger``: tenant webhooks
keep it in the database, per-job webhooks keep it alongside the job.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

import httpx

from jobrelay.background import BackgroundTasks
from jobrelay.config import Settings, get_settings
from jobrelay.constants import SPAN_DELIVER_WEBHOOK, WEBHOOK_JITTER_RATIO
from jobrelay.errors import DeliveryError, TerminalDeliveryError, TransientDeliveryError
from jobrelay.observability.logging import log_context
from jobrelay.observability.metrics import MetricsCollector, get_metrics
from jobrelay.observability.tracing import get_tracer
from jobrelay.types.events import WebhookPayload
from jobrelay.types.webhook import WebhookRetryConfig, WebhookTestResult
from jobrelay.webhooks.signing import build_headers, encode_body

logger = logging.getLogger(__name__)


@dataclass
class DeliveryTarget:
    """Where and how to deliver one payload."""

    id: str
    url: str
    secret: str | None
    retry: WebhookRetryConfig = field(default_factory=WebhookRetryConfig)
    headers: dict[str, str] = field(default_factory=dict)
    system_headers: dict[str, str] = field(default_factory=dict)
    kind: str = "webhook"
    owner_id: str | None = None
    route: str | None = None


@dataclass
class AttemptOutcome:
    """Result of a single HTTP attempt."""

    success: bool
    status_code: int | None
    error: DeliveryError | None
    duration_ms: float


class DeliveryLedger(ABC):
    """Failure bookkeeping of a family of delivery targets."""

    @abstractmethod
    async def refresh(self, target: DeliveryTarget) -> DeliveryTarget | None:
        """Re-read the target before an attempt. None when deleted or inactive."""

    @abstractmethod
    async def record_success(self, target: DeliveryTarget) -> None: ...

    @abstractmethod
    async def record_failure(self, target: DeliveryTarget) -> bool:
        """Count a failed delivery. Returns True when the target got deactivated."""


def calculate_backoff_delay(
    attempt: int,
    retry: WebhookRetryConfig,
    max_delay_ms: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay in milliseconds after a failed ``attempt``.

    ``initial_delay_ms * backoff_multiplier^(attempt-1)`` plus up to 10 %
    jitter, capped at ``max_delay_ms``.
    """
    base = retry.initial_delay_ms * retry.backoff_multiplier ** (attempt - 1)
    jitter = rand() * WEBHOOK_JITTER_RATIO * base
    return min(base + jitter, max_delay_ms)


def classify_status(url: str, status_code: int, attempt: int) -> DeliveryError | None:
    """None for 2xx; terminal for 3xx/4xx (redirects are not followed); transient otherwise."""
    if 200 <= status_code < 300:
        return None
    reason = f"HTTP {status_code}"
    if 300 <= status_code < 500:
        return TerminalDeliveryError(url, reason, status_code=status_code, attempt=attempt)
    return TransientDeliveryError(url, reason, status_code=status_code, attempt=attempt)


class WebhookDeliveryService:
    """
    Delivers signed payloads to webhook targets.

    Features:
    - HMAC-SHA256 signature over the exact body bytes
    - Only 2xx is success; redirects are never followed
    - 4xx is terminal, 5xx / network / timeout errors are retried
    - Target re-checked before every attempt
    - Retries scheduled as tracked background tasks
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """
        Initialize the delivery service.

        Args:
            client: Shared HTTP client.
            settings: Application settings. Defaults to the cached settings.
            metrics: Metrics collector. Defaults to the process collector.
            sleep: Awaitable used for backoff waits.
            rand: Jitter source in [0, 1).
        """
        self._client = client
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._sleep = sleep
        self._rand = rand
        self._retries = BackgroundTasks("webhook-retries")

    @property
    def pending_retries(self) -> int:
        return len(self._retries)

    async def deliver(
        self,
        target: DeliveryTarget,
        payload: WebhookPayload,
        ledger: DeliveryLedger,
        attempt: int = 1,
    ) -> bool:
        """
        Deliver one attempt and schedule the next one if it failed transiently.

        Args:
            target: Delivery target as known when the event was matched.
            payload: Payload to send.
            ledger: Failure bookkeeping for the target.
            attempt: 1-based attempt number.

        Returns:
            True if this attempt succeeded.
        """
        current = await ledger.refresh(target)
        if current is None:
            logger.info(
                "Skipping delivery to removed or inactive target",
                extra={"target_id": target.id, "kind": target.kind, "attempt": attempt},
            )
            return False

        outcome = await self.send(current, payload, attempt)
        if outcome.success:
            await ledger.record_success(current)
            return True

        error = outcome.error
        disabled = await ledger.record_failure(current)
        if disabled:
            self._metrics.record_webhook_disabled(current.kind)

        log_extra = {
            "target_id": current.id,
            "kind": current.kind,
            "url": current.url,
            "attempt": attempt,
            "status_code": outcome.status_code,
        }
        if isinstance(error, TerminalDeliveryError):
            logger.warning(f"Webhook delivery rejected: {error.reason}", extra=log_extra)
            return False
        if disabled:
            logger.warning("Webhook deactivated, retries dropped", extra=log_extra)
            return False
        if attempt >= current.retry.max_attempts:
            logger.error(
                f"Webhook delivery failed after {attempt} attempts: {error.reason}",
                extra=log_extra,
            )
            return False

        delay_ms = calculate_backoff_delay(
            attempt, current.retry, self._settings.webhook_max_delay_ms, self._rand
        )
        logger.info(
            f"Webhook delivery failed, retrying in {delay_ms:.0f}ms: {error.reason}",
            extra=log_extra,
        )
        self._schedule_retry(current, payload, ledger, attempt + 1, delay_ms)
        return False

    async def send(
        self,
        target: DeliveryTarget,
        payload: WebhookPayload,
        attempt: int = 1,
    ) -> AttemptOutcome:
        """Perform a single signed POST and classify the response."""
        wire = payload.to_wire()
        body = encode_body(wire)
        headers = build_headers(
            body=body,
            secret=target.secret,
            event=payload.event,
            timestamp=wire["timestamp"],
            attempt=attempt,
            user_agent=self._settings.webhook_user_agent,
            custom=target.headers,
            extra=target.system_headers,
        )

        status_code: int | None = None
        error: DeliveryError | None
        start = time.perf_counter()
        with get_tracer().start_as_current_span(SPAN_DELIVER_WEBHOOK) as span:
            span.set_attribute("webhook.target_id", target.id)
            span.set_attribute("webhook.event", payload.event)
            span.set_attribute("webhook.attempt", attempt)
            try:
                response = await self._client.post(
                    target.url,
                    content=body,
                    headers=headers,
                    timeout=self._settings.webhook_timeout_seconds,
                    follow_redirects=False,
                )
            except httpx.TimeoutException as e:
                error = TransientDeliveryError(target.url, f"timeout: {e!r}", attempt=attempt)
            except httpx.HTTPError as e:
                error = TransientDeliveryError(target.url, f"network error: {e!r}", attempt=attempt)
            else:
                status_code = response.status_code
                span.set_attribute("http.status_code", status_code)
                error = classify_status(target.url, status_code, attempt)

        duration = time.perf_counter() - start
        self._metrics.record_delivery(target.kind, "success" if error is None else "failure", duration)
        return AttemptOutcome(
            success=error is None,
            status_code=status_code,
            error=error,
            duration_ms=duration * 1000,
        )

    async def test(self, target: DeliveryTarget, payload: WebhookPayload) -> WebhookTestResult:
        """Single synchronous attempt; no retry and no failure accounting."""
        outcome = await self.send(replace(target, retry=WebhookRetryConfig(max_attempts=1)), payload)
        return WebhookTestResult(
            success=outcome.success,
            status_code=outcome.status_code,
            error=None if outcome.error is None else outcome.error.reason,
            response_time_ms=outcome.duration_ms,
        )

    def _schedule_retry(
        self,
        target: DeliveryTarget,
        payload: WebhookPayload,
        ledger: DeliveryLedger,
        attempt: int,
        delay_ms: float,
    ) -> None:
        self._retries.spawn(
            self._retry_later(target, payload, ledger, attempt, delay_ms),
            f"retry {target.kind} {target.id}",
        )

    async def _retry_later(
        self,
        target: DeliveryTarget,
        payload: WebhookPayload,
        ledger: DeliveryLedger,
        attempt: int,
        delay_ms: float,
    ) -> None:
        await self._sleep(delay_ms / 1000)
        with log_context(target_id=target.id, kind=target.kind, webhook_event=payload.event):
            await self.deliver(target, payload, ledger, attempt)

    async def drain(self) -> None:
        """Wait until no retry is pending, including retries scheduled meanwhile."""
        await self._retries.drain()

    async def close(self) -> None:
        """Cancel pending retries."""
        cancelled = await self._retries.cancel()
        logger.info("Webhook delivery stopped", extra={"cancelled_retries": cancelled})
