"""
Tenant directory.

Resolves API keys and tenant ids. API-key issuance lives outside this package;
the directory is seeded from configuration and by the embedding application.
"""

import logging
from collections.abc import Iterable

from jobrelay.config import Settings, get_settings
from jobrelay.constants import DEFAULT_TENANT_ID, WILDCARD
from jobrelay.types.tenant import Tenant

logger = logging.getLogger(__name__)


class TenantDirectory:
    """In-memory tenant lookup by id and by API key."""

    def __init__(self, tenants: Iterable[Tenant] = (), settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._by_id: dict[str, Tenant] = {}
        self._by_key: dict[str, Tenant] = {}
        for tenant in tenants:
            self.register(tenant)

    @classmethod
    def with_defaults(cls, settings: Settings | None = None) -> "TenantDirectory":
        """Directory seeded with the default tenant and, if configured, the master tenant."""
        settings = settings or get_settings()
        tenants = [
            Tenant(
                id=DEFAULT_TENANT_ID,
                name="Default Application",
                api_key="default-api-key",
                allowed_queues=[WILDCARD],
            )
        ]
        if settings.master_api_key:
            tenants.append(
                Tenant(
                    id=settings.master_tenant_id,
                    name="Master",
                    api_key=settings.master_api_key,
                    allowed_queues=[WILDCARD],
                )
            )
        return cls(tenants, settings=settings)

    @property
    def master_tenant_id(self) -> str:
        return self._settings.master_tenant_id

    def is_master(self, tenant_id: str) -> bool:
        return tenant_id == self._settings.master_tenant_id

    def register(self, tenant: Tenant) -> None:
        """Add or replace a tenant."""
        previous = self._by_id.get(tenant.id)
        if previous is not None:
            self._by_key.pop(previous.api_key, None)
        self._by_id[tenant.id] = tenant
        self._by_key[tenant.api_key] = tenant
        logger.debug("Registered tenant", extra={"tenant_id": tenant.id})

    async def resolve_api_key(self, api_key: str) -> Tenant | None:
        return self._by_key.get(api_key)

    async def get(self, tenant_id: str) -> Tenant | None:
        return self._by_id.get(tenant_id)

    async def summary(self, tenant_id: str | None) -> dict[str, str] | None:
        """The ``{"id", "name"}`` block for outbound payloads."""
        if tenant_id is None:
            return None
        tenant = self._by_id.get(tenant_id)
        if tenant is None:
            return {"id": tenant_id, "name": tenant_id}
        return tenant.summary()
