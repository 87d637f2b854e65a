"""
Tests for roles, users, principals and legal-entity scope
"""

import pytest

from finance_core.audit import AuditEventType, AuditTrail
from finance_core.errors import ConflictError, ForbiddenError, NotFoundError
from finance_core.rbac import (
    ALL_PERMISSIONS, SYSTEM_ROLES, Permission, Principal, RBACManager,
    assert_scope_access, parse_permissions,
)
from finance_core.storage import InMemoryStorage


@pytest.fixture
def audit():
    return AuditTrail(InMemoryStorage())


@pytest.fixture
def rbac(audit):
    manager = RBACManager(InMemoryStorage(), audit)
    manager.ensure_system_roles()
    return manager


class TestPrincipal:
    """Test permission and scope checks on the caller"""

    def test_default_principal_is_tenant_wide_admin(self):
        principal = Principal("alice")
        assert principal.permissions == ALL_PERMISSIONS
        assert principal.can_access_legal_entity("any-le")

    def test_missing_permission(self):
        principal = Principal("bob", permissions=frozenset({Permission.JOURNAL_READ}))
        principal.require_permission(Permission.JOURNAL_READ)
        with pytest.raises(ForbiddenError, match="Missing permission: gl.journal.post"):
            principal.require_permission(Permission.JOURNAL_POST)

    def test_scope(self):
        principal = Principal("carol", legal_entity_ids=frozenset({"le-1"}))
        principal.assert_scope("le-1")
        with pytest.raises(ForbiddenError, match="Scope access denied for legal entity"):
            principal.assert_scope("le-2")

    def test_assert_scope_access(self):
        principal = Principal("carol", legal_entity_ids=frozenset({"le-1"}))
        assert_scope_access(None, ["le-1", "le-2"])
        assert_scope_access(principal, ["le-1"])
        with pytest.raises(ForbiddenError):
            assert_scope_access(principal, ["le-1", "le-2"])

    def test_parse_permissions_ignores_unknown(self):
        parsed = parse_permissions(["gl.journal.read", "banking.loan.approve"])
        assert parsed == frozenset({Permission.JOURNAL_READ})


class TestRoles:
    """Test role management"""

    def test_system_roles_created_once(self, rbac):
        again = rbac.ensure_system_roles()
        assert sorted(r.name for r in again) == sorted(SYSTEM_ROLES)
        assert rbac.get_role_by_name("cashier").is_system_role

    def test_duplicate_role(self, rbac):
        with pytest.raises(ConflictError):
            rbac.create_role("admin", [Permission.ORG_READ])

    def test_role_creation_is_audited(self, rbac, audit):
        rbac.create_role("reviewer", [Permission.JOURNAL_READ])
        names = [e.metadata["name"] for e in audit.get_events_by_type(AuditEventType.ROLE_CREATED)]
        assert "reviewer" in names


class TestUsers:
    """Test users and permission resolution"""

    def test_user_permissions_come_from_roles(self, rbac):
        user = rbac.create_user("cash1", "Cashier One", ["cashier"])
        assert rbac.check_permission(user.id, Permission.CASH_TXN_POST)
        assert not rbac.check_permission(user.id, Permission.PERIOD_CLOSE)

    def test_multiple_roles_are_merged(self, rbac):
        user = rbac.create_user("multi", "Multi", ["cashier", "auditor"])
        permissions = rbac.get_user_permissions(user.id)
        assert Permission.CASH_TXN_CREATE in permissions
        assert Permission.APPROVAL_READ in permissions

    def test_duplicate_username(self, rbac):
        rbac.create_user("alice", "Alice")
        with pytest.raises(ConflictError):
            rbac.create_user("alice", "Alice Again")

    def test_unknown_role(self, rbac):
        with pytest.raises(NotFoundError):
            rbac.create_user("bob", "Bob", ["treasurer"])

    def test_unknown_user_has_no_permissions(self, rbac):
        assert rbac.get_user_permissions("nobody") == set()


class TestBuildPrincipal:
    """Test principal resolution from stored users and token claims"""

    def test_stored_user_wins_over_claims(self, rbac):
        rbac.create_user("ctrl", "Controller", ["controller"], legal_entity_ids=["le-1"],
                         user_id="user-ctrl")
        principal = rbac.build_principal("user-ctrl", tenant_id="t1",
                                         claim_permissions=["rbac.manage"])

        assert principal.tenant_id == "t1"
        assert principal.has_permission(Permission.PERIOD_CLOSE)
        assert not principal.has_permission(Permission.RBAC_MANAGE)
        assert principal.legal_entity_ids == frozenset({"le-1"})

    def test_user_without_scope_is_tenant_wide(self, rbac):
        rbac.create_user("acct", "Accountant", ["accountant"], user_id="user-acct")
        assert rbac.build_principal("user-acct").legal_entity_ids is None

    def test_inactive_user(self, rbac):
        user = rbac.create_user("gone", "Gone", ["admin"])
        user.is_active = False
        rbac.records.save_record(user, rbac.users_table)
        with pytest.raises(ForbiddenError, match="User is inactive"):
            rbac.build_principal(user.id)

    def test_token_without_permissions_claim_is_admin(self, rbac):
        principal = rbac.build_principal("ext-user")
        assert principal.permissions == ALL_PERMISSIONS

    def test_token_claims_for_unknown_user(self, rbac):
        principal = rbac.build_principal(
            "ext-user", claim_permissions=["gl.journal.read", "unknown.perm"],
            claim_legal_entity_ids=["le-9"],
        )
        assert principal.permissions == frozenset({Permission.JOURNAL_READ})
        assert principal.legal_entity_ids == frozenset({"le-9"})

    def test_empty_permissions_claim_grants_nothing(self, rbac):
        assert rbac.build_principal("ext-user", claim_permissions=[]).permissions == frozenset()
