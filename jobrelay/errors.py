"""
Exception hierarchy shared by every component.
"""

from typing import Any


class JobRelayError(Exception):
    """Base class for all errors raised by jobrelay."""

    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(JobRelayError):
    """Input rejected before any state was changed."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message, details=self.errors)


class NotFoundError(JobRelayError):
    """Entity does not exist or is not owned by the caller."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ConflictError(JobRelayError):
    """Entity collides with an existing one (for example a duplicate name)."""


class AccessDeniedError(JobRelayError):
    """Tenant is not allowed to use the requested queue."""

    def __init__(self, tenant_id: str, queue: str):
        self.tenant_id = tenant_id
        self.queue = queue
        super().__init__(f"Tenant {tenant_id} may not access queue {queue}")


class DeliveryError(JobRelayError):
    """An outbound HTTP delivery failed."""

    def __init__(
        self,
        url: str,
        reason: str,
        status_code: int | None = None,
        attempt: int = 1,
    ):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        self.attempt = attempt
        super().__init__(f"Delivery to {url} failed on attempt {attempt}: {reason}")


class TransientDeliveryError(DeliveryError):
    """5xx, network or timeout failure. Retried."""


class TerminalDeliveryError(DeliveryError):
    """4xx or unfollowed redirect. Never retried."""


class EngineError(JobRelayError):
    """The queue engine rejected or could not perform an operation."""


class EngineConnectionError(EngineError):
    """The queue engine is unreachable."""


class EnqueueError(EngineError):
    """Adding a job to the engine failed. Carries the id handed back to the caller."""

    def __init__(self, job_id: str, queue: str, reason: str):
        self.job_id = job_id
        self.queue = queue
        super().__init__(f"Failed to enqueue job {job_id} on {queue}: {reason}")
