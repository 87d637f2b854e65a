"""
Role-Based Access Control Module

Permission strings per operation plus legal-entity scope grants. A request is
served on behalf of a Principal; handlers check the permission, domain code
checks scope before mutating anything in a legal entity.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, ForbiddenError, NotFoundError
from .storage import StorageInterface, StorageRecord, StorageManager


class Permission(Enum):
    """System permissions"""
    # Organisation and chart setup
    ORG_READ = "org.read"
    ORG_MANAGE = "org.manage"
    COA_MANAGE = "gl.coa.manage"
    PURPOSE_MAPPING_MANAGE = "gl.purpose_mapping.manage"

    # Journals
    JOURNAL_READ = "gl.journal.read"
    JOURNAL_CREATE = "gl.journal.create"
    JOURNAL_POST = "gl.journal.post"
    JOURNAL_REVERSE = "gl.journal.reverse"
    CASH_CONTROL_OVERRIDE = "gl.journal.cash_control_override"
    TRIAL_BALANCE_READ = "gl.trial_balance.read"

    # Period control
    PERIOD_READ = "gl.period.read"
    PERIOD_CLOSE = "gl.period.close"
    PERIOD_REOPEN = "gl.period.reopen"

    # Cash
    CASH_READ = "cash.read"
    CASH_REGISTER_MANAGE = "cash.register.manage"
    CASH_SESSION_MANAGE = "cash.session.manage"
    CASH_TXN_CREATE = "cash.transaction.create"
    CASH_TXN_POST = "cash.transaction.post"
    CASH_TXN_REVERSE = "cash.transaction.reverse"

    # Cari
    CARI_READ = "cari.read"
    CARI_COUNTERPARTY_MANAGE = "cari.counterparty.manage"
    CARI_DOCUMENT_MANAGE = "cari.document.manage"
    CARI_DOCUMENT_POST = "cari.document.post"
    CARI_SETTLEMENT_APPLY = "cari.settlement.apply"
    CARI_SETTLEMENT_REVERSE = "cari.settlement.reverse"

    # Approvals and admin
    APPROVAL_READ = "approval.read"
    APPROVAL_DECIDE = "approval.decide"
    RBAC_MANAGE = "rbac.manage"


ALL_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)


@dataclass(frozen=True)
class Principal:
    """
    The caller of an operation.

    legal_entity_ids of None means tenant-wide access; otherwise the caller may
    only touch the listed legal entities.
    """
    user_id: str
    tenant_id: Optional[str] = None
    permissions: FrozenSet[Permission] = ALL_PERMISSIONS
    legal_entity_ids: Optional[FrozenSet[str]] = None

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions

    def require_permission(self, permission: Permission) -> None:
        if not self.has_permission(permission):
            raise ForbiddenError(
                f"Missing permission: {permission.value}",
                details={'permission': permission.value}
            )

    def can_access_legal_entity(self, legal_entity_id: str) -> bool:
        return self.legal_entity_ids is None or legal_entity_id in self.legal_entity_ids

    def assert_scope(self, legal_entity_id: str) -> None:
        if not self.can_access_legal_entity(legal_entity_id):
            raise ForbiddenError(
                "Scope access denied for legal entity",
                details={'legalEntityId': legal_entity_id}
            )


SYSTEM_PRINCIPAL = Principal(user_id="system")


def assert_scope_access(principal: Optional[Principal], legal_entity_ids: Iterable[str]) -> None:
    """Scope check for every legal entity a mutation touches; None means system"""
    if principal is None:
        return
    for legal_entity_id in legal_entity_ids:
        principal.assert_scope(legal_entity_id)


@dataclass
class Role(StorageRecord):
    """Named permission set"""
    name: str
    description: str
    permissions: List[Permission] = field(default_factory=list)
    is_system_role: bool = False


@dataclass
class User(StorageRecord):
    """Back-office user with roles and legal-entity scope grants"""
    username: str
    full_name: str
    roles: List[str] = field(default_factory=list)  # role IDs
    legal_entity_ids: List[str] = field(default_factory=list)  # empty = tenant-wide
    is_active: bool = True


SYSTEM_ROLES: Dict[str, Set[Permission]] = {
    "admin": set(Permission),
    "accountant": {
        Permission.ORG_READ, Permission.JOURNAL_READ, Permission.JOURNAL_CREATE,
        Permission.JOURNAL_POST, Permission.JOURNAL_REVERSE, Permission.TRIAL_BALANCE_READ,
        Permission.PERIOD_READ, Permission.CARI_READ, Permission.CARI_DOCUMENT_MANAGE,
        Permission.CARI_DOCUMENT_POST, Permission.CARI_SETTLEMENT_APPLY, Permission.CASH_READ,
    },
    "controller": {
        Permission.ORG_READ, Permission.JOURNAL_READ, Permission.TRIAL_BALANCE_READ,
        Permission.PERIOD_READ, Permission.PERIOD_CLOSE, Permission.PERIOD_REOPEN,
        Permission.APPROVAL_READ, Permission.APPROVAL_DECIDE, Permission.CASH_CONTROL_OVERRIDE,
    },
    "cashier": {
        Permission.CASH_READ, Permission.CASH_SESSION_MANAGE, Permission.CASH_TXN_CREATE,
        Permission.CASH_TXN_POST,
    },
    "auditor": {
        Permission.ORG_READ, Permission.JOURNAL_READ, Permission.TRIAL_BALANCE_READ,
        Permission.PERIOD_READ, Permission.CASH_READ, Permission.CARI_READ, Permission.APPROVAL_READ,
    },
}


def parse_permissions(values: Iterable[str]) -> FrozenSet[Permission]:
    """Token claim strings to permissions; unknown strings are ignored"""
    known = {p.value: p for p in Permission}
    return frozenset(known[v] for v in values if v in known)


class RBACManager:
    """Stores roles and users, and resolves principals"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.roles_table = "rbac_roles"
        self.users_table = "rbac_users"

    def create_role(self, name: str, permissions: Iterable[Permission],
                    description: str = "", is_system_role: bool = False) -> Role:
        if self.records.find_one(Role, self.roles_table, {'name': name}):
            raise ConflictError(f"Role '{name}' already exists")
        now = datetime.now(timezone.utc)
        role = Role(
            id=str(uuid.uuid4()), created_at=now, updated_at=now,
            name=name, description=description,
            permissions=sorted(set(permissions), key=lambda p: p.value),
            is_system_role=is_system_role,
        )
        self.records.save_record(role, self.roles_table)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.ROLE_CREATED, "role", role.id,
                {"name": name, "permissions": [p.value for p in role.permissions]}
            )
        return role

    def ensure_system_roles(self) -> List[Role]:
        """Create the built-in roles that don't exist yet"""
        roles = []
        for name, permissions in SYSTEM_ROLES.items():
            role = self.records.find_one(Role, self.roles_table, {'name': name})
            if role is None:
                role = self.create_role(name, permissions, f"Built-in {name} role", True)
            roles.append(role)
        return roles

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return self.records.find_one(Role, self.roles_table, {'name': name})

    def create_user(self, username: str, full_name: str, role_names: Iterable[str] = (),
                    legal_entity_ids: Iterable[str] = (), user_id: Optional[str] = None) -> User:
        if self.records.find_one(User, self.users_table, {'username': username}):
            raise ConflictError(f"User '{username}' already exists")

        role_ids = []
        for role_name in role_names:
            role = self.get_role_by_name(role_name)
            if role is None:
                raise NotFoundError(f"Role '{role_name}' not found")
            role_ids.append(role.id)

        now = datetime.now(timezone.utc)
        user = User(
            id=user_id or str(uuid.uuid4()), created_at=now, updated_at=now,
            username=username, full_name=full_name,
            roles=role_ids, legal_entity_ids=list(legal_entity_ids),
        )
        self.records.save_record(user, self.users_table)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.USER_CREATED, "user", user.id,
                {"username": username, "roles": list(role_names),
                 "legalEntityIds": user.legal_entity_ids}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.records.load_record(User, self.users_table, user_id)

    def get_user_permissions(self, user_id: str) -> Set[Permission]:
        user = self.get_user(user_id)
        if not user or not user.is_active:
            return set()
        permissions: Set[Permission] = set()
        for role_id in user.roles:
            role = self.records.load_record(Role, self.roles_table, role_id)
            if role:
                permissions.update(role.permissions)
        return permissions

    def check_permission(self, user_id: str, permission: Permission) -> bool:
        return permission in self.get_user_permissions(user_id)

    def build_principal(self, user_id: str, tenant_id: Optional[str] = None,
                        claim_permissions: Optional[Iterable[str]] = None,
                        claim_legal_entity_ids: Optional[Iterable[str]] = None) -> Principal:
        """
        Resolve a principal. Stored users win over token claims; unknown users
        get exactly what their token grants; a token without a permissions
        claim is tenant-wide admin.
        """
        user = self.get_user(user_id)
        if user is not None:
            if not user.is_active:
                raise ForbiddenError("User is inactive")
            return Principal(
                user_id=user_id,
                tenant_id=tenant_id,
                permissions=frozenset(self.get_user_permissions(user_id)),
                legal_entity_ids=frozenset(user.legal_entity_ids) if user.legal_entity_ids else None,
            )
        return Principal(
            user_id=user_id,
            tenant_id=tenant_id,
            permissions=(ALL_PERMISSIONS if claim_permissions is None
                         else parse_permissions(claim_permissions)),
            legal_entity_ids=frozenset(claim_legal_entity_ids) if claim_legal_entity_ids else None,
        )
