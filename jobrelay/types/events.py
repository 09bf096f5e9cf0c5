"""
Event type definitions: lifecycle events handed to subscriptions and the
outbound webhook payload envelope.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobrelay.types.common import isoformat_z, utcnow


class JobLifecycleEvent(BaseModel):
    """
    Snapshot of a job at a lifecycle transition.

    Emitted by the tracker for every engine event and evaluated against
    tenant subscriptions.
    """

    job_id: str
    queue: str
    status: str
    tenant_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    progress: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class WebhookPayload(BaseModel):
    """
    Outbound payload envelope.

    Serialized as ``{"event", "timestamp", "data"}``; the signature is
    computed over exactly those bytes.
    """

    event: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_job(
        cls,
        event: str,
        job_id: str,
        queue: str,
        status: str,
        application: dict[str, str] | None = None,
        **extra: Any,
    ) -> "WebhookPayload":
        """Build a job payload. ``None`` valued extras are omitted."""
        data: dict[str, Any] = {"jobId": job_id, "queue": queue, "status": status}
        if application is not None:
            data["application"] = application
        data.update({key: value for key, value in extra.items() if value is not None})
        return cls(event=event, data=data)

    def to_wire(self) -> dict[str, Any]:
        """The JSON-ready wire representation."""
        return {
            "event": self.event,
            "timestamp": isoformat_z(self.timestamp),
            "data": self.data,
        }
