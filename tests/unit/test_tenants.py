"""
Unit tests for the tenant directory.
"""

from jobrelay.config import Settings
from jobrelay.constants import DEFAULT_TENANT_ID
from jobrelay.tenants import TenantDirectory
from jobrelay.types.tenant import Tenant


class TestTenantDirectory:
    """Tests for TenantDirectory."""

    async def test_resolve_api_key(self, tenants: TenantDirectory):
        tenant = await tenants.resolve_api_key("acme-key")

        assert tenant.id == "acme"
        assert await tenants.resolve_api_key("nope") is None
        assert tenants.is_master("master") is True

    async def test_register_replaces_key(self, tenants: TenantDirectory):
        tenants.register(Tenant(id="acme", name="Acme", api_key="rotated"))

        assert await tenants.resolve_api_key("acme-key") is None
        assert (await tenants.resolve_api_key("rotated")).id == "acme"

    async def test_queue_access(self, tenants: TenantDirectory):
        acme = await tenants.get("acme")

        assert acme.can_access("emails") is True
        assert acme.can_access("sms") is False
        assert (await tenants.get("other")).can_access("sms") is True

    async def test_summary(self, tenants: TenantDirectory):
        assert await tenants.summary("acme") == {"id": "acme", "name": "Acme"}
        assert await tenants.summary("ghost") == {"id": "ghost", "name": "ghost"}
        assert await tenants.summary(None) is None

    async def test_defaults(self, test_settings: Settings):
        settings = test_settings.model_copy(update={"master_api_key": "secret-master"})

        directory = TenantDirectory.with_defaults(settings)

        assert (await directory.get(DEFAULT_TENANT_ID)).can_access("anything") is True
        assert (await directory.resolve_api_key("secret-master")).id == settings.master_tenant_id
