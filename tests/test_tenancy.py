"""
Tests for tenant isolation, the tenant registry and tenant resolution
"""

import pytest
from types import SimpleNamespace

import jwt

from finance_core.errors import ConflictError, ForbiddenError, NotFoundError
from finance_core.storage import InMemoryStorage
from finance_core.tenancy import (
    TenantAwareStorage, TenantManager, TenantMiddleware, get_current_tenant,
    set_current_tenant, tenant_context,
)

from conftest import make_system


SECRET = "test-secret"


@pytest.fixture
def inner():
    return InMemoryStorage()


@pytest.fixture
def storage(inner):
    return TenantAwareStorage(inner)


@pytest.fixture
def manager():
    return TenantManager(InMemoryStorage())


@pytest.fixture
def middleware(manager):
    manager.create_tenant("ACME", "Acme Group", tenant_id="tenant-a")
    manager.create_tenant("GLOBEX", "Globex", tenant_id="tenant-b")
    return TenantMiddleware(manager, SECRET)


def make_request(headers):
    return SimpleNamespace(headers={k.lower(): v for k, v in headers.items()})


def bearer(claims):
    return {"Authorization": "Bearer " + jwt.encode(claims, SECRET, algorithm="HS256")}


class TestTenantContext:
    """Test the context variable helpers"""

    def test_default_is_none(self):
        assert get_current_tenant() is None

    def test_context_manager_restores_previous(self):
        with tenant_context("tenant-a"):
            assert get_current_tenant() == "tenant-a"
            with tenant_context("tenant-b"):
                assert get_current_tenant() == "tenant-b"
            assert get_current_tenant() == "tenant-a"
        assert get_current_tenant() is None

    def test_set_current_tenant(self):
        set_current_tenant("tenant-a")
        try:
            assert get_current_tenant() == "tenant-a"
        finally:
            set_current_tenant(None)


class TestTenantAwareStorage:
    """Test data isolation between tenants"""

    def test_writes_are_stamped(self, inner, storage):
        with tenant_context("tenant-a"):
            storage.save("things", "t1", {"id": "t1"})
        assert inner.load("things", "t1")["_tenant_id"] == "tenant-a"

    def test_tenants_cannot_see_each_other(self, storage):
        with tenant_context("tenant-a"):
            storage.save("things", "t1", {"id": "t1", "kind": "X"})
        with tenant_context("tenant-b"):
            storage.save("things", "t2", {"id": "t2", "kind": "X"})
            assert storage.load("things", "t1") is None
            assert not storage.exists("things", "t1")
            assert [r["id"] for r in storage.find("things", {"kind": "X"})] == ["t2"]
            assert storage.count("things") == 1
            assert not storage.delete("things", "t1")

    def test_super_admin_sees_everything(self, storage):
        with tenant_context("tenant-a"):
            storage.save("things", "t1", {"id": "t1"})
        with tenant_context("tenant-b"):
            storage.save("things", "t2", {"id": "t2"})
        assert storage.count("things") == 2

    def test_cross_tenant_overwrite_is_forbidden(self, storage):
        with tenant_context("tenant-a"):
            storage.save("things", "t1", {"id": "t1"})
        with tenant_context("tenant-b"):
            with pytest.raises(ForbiddenError, match="Record belongs to another tenant"):
                storage.save("things", "t1", {"id": "t1", "hijacked": True})

    def test_clear_table_requires_super_admin(self, storage):
        storage.save("things", "t1", {"id": "t1"})
        with tenant_context("tenant-a"):
            with pytest.raises(PermissionError):
                storage.clear_table("things")
        storage.clear_table("things")
        assert storage.count("things") == 0

    def test_atomic_delegates_to_inner(self, storage):
        with storage.atomic():
            assert storage.in_atomic_block
        assert storage.ping()


class TestTenantManager:
    """Test the tenant registry"""

    def test_create_and_lookup(self, manager):
        tenant = manager.create_tenant(" acme ", "Acme Group")
        assert tenant.code == "ACME"
        assert manager.get_tenant(tenant.id).name == "Acme Group"
        assert manager.get_tenant_by_code("acme").id == tenant.id

    def test_duplicate_code(self, manager):
        manager.create_tenant("ACME", "Acme Group")
        with pytest.raises(ConflictError, match="Tenant code 'ACME' already exists"):
            manager.create_tenant("acme", "Another")

    def test_deactivate_and_list(self, manager):
        first = manager.create_tenant("ACME", "Acme Group")
        manager.create_tenant("GLOBEX", "Globex")

        assert manager.deactivate_tenant(first.id)
        assert not manager.deactivate_tenant("missing")
        assert [t.code for t in manager.list_tenants(is_active=True)] == ["GLOBEX"]
        assert len(manager.list_tenants()) == 2


class TestTenantMiddleware:
    """Test tenant resolution from headers and tokens"""

    def test_no_tenant_is_super_admin(self, middleware):
        assert middleware.extract_tenant(make_request({})) is None

    def test_header_tenant(self, middleware):
        request = make_request({"X-Tenant-ID": "tenant-a"})
        assert middleware.extract_tenant(request) == "tenant-a"

    def test_token_tenant(self, middleware):
        request = make_request(bearer({"sub": "alice", "tenant_id": "tenant-b"}))
        assert middleware.extract_tenant(request) == "tenant-b"

    def test_header_and_token_must_agree(self, middleware):
        headers = dict(bearer({"sub": "alice", "tenant_id": "tenant-b"}), **{"X-Tenant-ID": "tenant-a"})
        with pytest.raises(ForbiddenError, match="does not match the authenticated tenant"):
            middleware.extract_tenant(make_request(headers))

    def test_unknown_tenant(self, middleware):
        with pytest.raises(ForbiddenError) as exc_info:
            middleware.extract_tenant(make_request({"X-Tenant-ID": "nobody"}))
        assert exc_info.value.code == "TENANT_NOT_ACTIVE"

    def test_inactive_tenant(self, manager, middleware):
        manager.deactivate_tenant("tenant-b")
        with pytest.raises(ForbiddenError):
            middleware.extract_tenant(make_request({"X-Tenant-ID": "tenant-b"}))

    def test_badly_signed_token_is_ignored(self, middleware):
        token = jwt.encode({"sub": "x", "tenant_id": "tenant-a"}, "other-secret", algorithm="HS256")
        request = make_request({"Authorization": f"Bearer {token}"})
        assert middleware.extract_tenant(request) is None


class TestFinanceSystemIsolation:
    """Two tenants share one finance system without seeing each other's books"""

    def test_legal_entities_are_tenant_scoped(self):
        system = make_system()
        system.tenant_manager.create_tenant("ACME", "Acme Group", tenant_id="tenant-a")
        system.tenant_manager.create_tenant("GLOBEX", "Globex", tenant_id="tenant-b")

        with tenant_context("tenant-a"):
            entity = system.organization.create_legal_entity("LE1", "Acme Holding", "USD")
        with tenant_context("tenant-b"):
            # Same code is free in another tenant
            system.organization.create_legal_entity("LE1", "Globex Holding", "EUR")
            with pytest.raises(NotFoundError, match="legalEntityId not found for tenant"):
                system.organization.require_legal_entity(entity.id)
            assert [e.name for e in system.organization.list_legal_entities()] == ["Globex Holding"]

    def test_audit_chains_are_per_tenant(self):
        system = make_system()
        with tenant_context("tenant-a"):
            system.organization.create_legal_entity("LE1", "Acme Holding", "USD")
        with tenant_context("tenant-b"):
            system.organization.create_legal_entity("LE1", "Globex Holding", "EUR")
            assert system.audit_trail.verify_integrity()["valid"]
        with tenant_context("tenant-a"):
            assert system.audit_trail.verify_integrity()["valid"]
