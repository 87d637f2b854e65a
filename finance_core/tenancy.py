"""
Multi-Tenancy Support Module

Every back-office record belongs to exactly one tenant. The active tenant is
carried in a context variable; TenantAwareStorage stamps it on writes and
filters on it for reads so managers never deal with tenant ids directly.
"""

import contextvars
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

import jwt

from .errors import ConflictError, ForbiddenError
from .storage import StorageInterface, StorageRecord


TENANT_FIELD = '_tenant_id'


@dataclass
class Tenant(StorageRecord):
    """A customer organisation with fully isolated books"""
    code: str
    name: str
    is_active: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)


_current_tenant = contextvars.ContextVar('current_tenant', default=None)


def get_current_tenant() -> Optional[str]:
    """Get the current tenant ID for this context"""
    return _current_tenant.get()


def set_current_tenant(tenant_id: Optional[str]) -> None:
    _current_tenant.set(tenant_id)


@contextmanager
def tenant_context(tenant_id: Optional[str]):
    """Context manager for temporary tenant switching"""
    token = _current_tenant.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant.reset(token)


class TenantAwareStorage(StorageInterface):
    """Storage wrapper that adds tenant isolation to any StorageInterface"""

    def __init__(self, inner_storage: StorageInterface):
        super().__init__()
        self.inner = inner_storage

    def _stamp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = get_current_tenant()
        if tenant_id:
            data = data.copy()
            data[TENANT_FIELD] = tenant_id
        return data

    def _visible(self, data: Dict[str, Any]) -> bool:
        tenant_id = get_current_tenant()
        if not tenant_id:
            # No tenant set: super-admin mode sees everything
            return True
        return data.get(TENANT_FIELD) == tenant_id

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        existing = self.inner.load(table, record_id)
        if existing is not None and not self._visible(existing):
            # Same id owned by another tenant; never overwrite across tenants
            raise ForbiddenError("Record belongs to another tenant")
        self.inner.save(table, record_id, self._stamp(data))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        result = self.inner.load(table, record_id)
        if result and not self._visible(result):
            return None
        return result

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        tenant_id = get_current_tenant()
        if tenant_id:
            return self.inner.find(table, {TENANT_FIELD: tenant_id})
        return self.inner.load_all(table)

    def delete(self, table: str, record_id: str) -> bool:
        record = self.inner.load(table, record_id)
        if not record or not self._visible(record):
            return False
        return self.inner.delete(table, record_id)

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.inner.find(table, self._stamp(filters))

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def clear_table(self, table: str) -> None:
        """Clear table - only for super-admin (no tenant set)"""
        if get_current_tenant():
            raise PermissionError("Cannot clear table with tenant context active")
        self.inner.clear_table(table)

    def close(self) -> None:
        self.inner.close()

    def ping(self) -> bool:
        return self.inner.ping()

    @property
    def in_atomic_block(self) -> bool:
        return self.inner.in_atomic_block

    def atomic(self):
        return self.inner.atomic()


class TenantManager:
    """Registry of tenants; uses raw storage, tenants are not tenant-scoped"""

    TENANT_TABLE = "tenants"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_tenant(self, code: str, name: str, tenant_id: Optional[str] = None,
                      settings: Optional[Dict[str, Any]] = None) -> Tenant:
        code = code.strip().upper()
        if self.get_tenant_by_code(code):
            raise ConflictError(f"Tenant code '{code}' already exists")

        now = datetime.now(timezone.utc)
        tenant = Tenant(
            id=tenant_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            settings=settings or {},
        )
        self.storage.save(self.TENANT_TABLE, tenant.id, tenant.to_dict())
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        data = self.storage.load(self.TENANT_TABLE, tenant_id)
        return Tenant.from_dict(data) if data else None

    def get_tenant_by_code(self, code: str) -> Optional[Tenant]:
        found = self.storage.find(self.TENANT_TABLE, {'code': code.strip().upper()})
        return Tenant.from_dict(found[0]) if found else None

    def list_tenants(self, is_active: Optional[bool] = None) -> List[Tenant]:
        filters = {} if is_active is None else {'is_active': is_active}
        return [Tenant.from_dict(d) for d in self.storage.find(self.TENANT_TABLE, filters)]

    def deactivate_tenant(self, tenant_id: str) -> bool:
        tenant = self.get_tenant(tenant_id)
        if not tenant:
            return False
        tenant.is_active = False
        tenant.touch()
        self.storage.save(self.TENANT_TABLE, tenant.id, tenant.to_dict())
        return True


class TenantMiddleware:
    """Resolves the request tenant: X-Tenant-ID header first, then the JWT claim"""

    def __init__(self, tenant_manager: TenantManager, jwt_secret: str,
                 jwt_algorithm: str = "HS256"):
        self.tenant_manager = tenant_manager
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm

    def extract_tenant_from_header(self, headers) -> Optional[str]:
        return headers.get('x-tenant-id')

    def extract_tenant_from_jwt(self, token: str) -> Optional[str]:
        """Tenant claim of a validly signed token; bad tokens are left to auth"""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.InvalidTokenError:
            return None
        return payload.get('tenant_id')

    def _require_active(self, tenant_id: str) -> str:
        tenant = self.tenant_manager.get_tenant(tenant_id)
        if not tenant or not tenant.is_active:
            raise ForbiddenError("Unknown or inactive tenant", code="TENANT_NOT_ACTIVE",
                                 details={'tenantId': tenant_id})
        return tenant_id

    def extract_tenant(self, request) -> Optional[str]:
        """
        Returns the tenant id for the request or None for super-admin mode.

        Raises:
            ForbiddenError: If a tenant is named but unknown or inactive, or the
                header disagrees with the token claim
        """
        header_tenant = self.extract_tenant_from_header(request.headers)

        token_tenant = None
        auth_header = request.headers.get('authorization', '')
        if auth_header.startswith('Bearer '):
            token_tenant = self.extract_tenant_from_jwt(auth_header[7:])

        if header_tenant and token_tenant and header_tenant != token_tenant:
            raise ForbiddenError("X-Tenant-ID does not match the authenticated tenant")

        tenant_id = header_tenant or token_tenant
        if tenant_id:
            return self._require_active(tenant_id)
        return None
