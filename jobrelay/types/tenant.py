"""
Tenant (application) type definitions.
"""

from pydantic import BaseModel, Field

from jobrelay.constants import WILDCARD


class Tenant(BaseModel):
    """An API-key holding application. Every job, webhook and subscription belongs to one."""

    id: str
    name: str
    api_key: str
    allowed_queues: list[str] = Field(default_factory=lambda: [WILDCARD])

    def can_access(self, queue: str) -> bool:
        """Check whether this tenant may submit to or read from a queue."""
        return WILDCARD in self.allowed_queues or queue in self.allowed_queues

    def summary(self) -> dict[str, str]:
        """The ``application`` block embedded in outbound payloads."""
        return {"id": self.id, "name": self.name}
