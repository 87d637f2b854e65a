"""
System container and authentication/authorization dependencies
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..storage import StorageInterface, create_storage
from ..tenancy import TenantAwareStorage, TenantManager, TenantMiddleware, get_current_tenant
from ..audit import AuditTrail
from ..organization import OrganizationManager
from ..fiscal import FiscalManager
from ..accounts import AccountManager
from ..intercompany import IntercompanyManager
from ..journal_validation import JournalValidator
from ..ledger import GeneralLedger
from ..period_close import PeriodCloseManager
from ..reporting import TrialBalanceReporter
from ..approvals import ApprovalManager
from ..purpose_accounts import PurposeAccountResolver
from ..cash import CashManager
from ..counterparties import CounterpartyManager
from ..cari_documents import CariDocumentManager
from ..settlements import SettlementManager
from ..commitments import ShareholderCommitmentManager
from ..rbac import Permission, Principal, RBACManager
from ..config import FinanceCoreConfig, get_config


class FinanceSystem:
    """Finance back-office with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[FinanceCoreConfig] = None):
        self.config = config or get_config()

        # Tenants live in the raw backend, everything else is tenant-scoped
        self.raw_storage = storage or create_storage(self.config.database_url)
        self.storage = TenantAwareStorage(self.raw_storage)
        self.tenant_manager = TenantManager(self.raw_storage)
        self.tenant_middleware = TenantMiddleware(
            self.tenant_manager, self.config.jwt_secret, self.config.jwt_algorithm
        )

        # Setup
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.rbac = RBACManager(self.storage, self.audit_trail)
        self.organization = OrganizationManager(self.storage, self.audit_trail)
        self.fiscal = FiscalManager(self.storage, self.audit_trail, self.organization)
        self.accounts = AccountManager(self.storage, self.audit_trail, self.organization)
        self.intercompany = IntercompanyManager(
            self.storage, self.audit_trail, self.organization, self.fiscal, self.accounts
        )
        self.purpose_accounts = PurposeAccountResolver(
            self.storage, self.audit_trail, self.organization, self.accounts
        )

        # General ledger
        self.validator = JournalValidator(
            self.organization, self.fiscal, self.accounts, self.intercompany
        )
        self.ledger = GeneralLedger(
            self.storage, self.audit_trail, self.fiscal, self.accounts, self.validator,
            intercompany=self.intercompany,
            cash_control_mode=self.config.cash_control_mode,
            balance_epsilon=Decimal(self.config.balance_epsilon),
        )
        self.period_close = PeriodCloseManager(
            self.storage, self.audit_trail, self.fiscal, self.accounts, self.ledger
        )
        self.reporting = TrialBalanceReporter(self.fiscal, self.accounts, self.ledger)
        self.commitments = ShareholderCommitmentManager(
            self.storage, self.audit_trail, self.organization, self.fiscal,
            self.accounts, self.ledger
        )

        # Cash and Cari
        self.approvals = ApprovalManager(self.storage, self.audit_trail)
        self.cash = CashManager(
            self.storage, self.audit_trail, self.organization, self.fiscal,
            self.accounts, self.ledger, self.approvals
        )
        self.counterparties = CounterpartyManager(
            self.storage, self.audit_trail, self.organization, self.accounts
        )
        self.documents = CariDocumentManager(
            self.storage, self.audit_trail, self.organization, self.fiscal,
            self.ledger, self.counterparties, self.purpose_accounts
        )
        self.settlements = SettlementManager(
            self.storage, self.audit_trail, self.fiscal, self.ledger,
            self.counterparties, self.documents, self.purpose_accounts
        )


# Global finance system instance, built on first use
_finance_system: Optional[FinanceSystem] = None


def get_finance_system() -> FinanceSystem:
    global _finance_system
    if _finance_system is None:
        _finance_system = FinanceSystem()
    return _finance_system


def set_finance_system(system: Optional[FinanceSystem]) -> None:
    """Swap the global instance; tests install an in-memory system"""
    global _finance_system
    _finance_system = system


security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, config: FinanceCoreConfig,
                        tenant_id: Optional[str] = None,
                        permissions: Optional[List[str]] = None,
                        legal_entity_ids: Optional[List[str]] = None) -> str:
    """Signed bearer token; omitting permissions issues a tenant-wide admin token"""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(hours=config.jwt_expiry_hours),
    }
    if tenant_id:
        claims["tenant_id"] = tenant_id
    if permissions is not None:
        claims["permissions"] = list(permissions)
    if legal_entity_ids:
        claims["legal_entity_ids"] = list(legal_entity_ids)
    return jwt.encode(claims, config.jwt_secret, algorithm=config.jwt_algorithm)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: FinanceSystem = Depends(get_finance_system),
) -> Principal:
    """Dependency that validates the JWT and returns the caller"""
    if not system.config.auth_enabled:
        # Tenant-wide admin for tests
        return Principal(user_id="test_user", tenant_id=get_current_tenant())

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, system.config.jwt_secret,
                             algorithms=[system.config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return system.rbac.build_principal(
        user_id,
        tenant_id=payload.get("tenant_id") or get_current_tenant(),
        claim_permissions=payload.get("permissions"),
        claim_legal_entity_ids=payload.get("legal_entity_ids") or None,
    )


def require_permission(permission: Permission):
    """Dependency factory for permission checking"""
    def check(principal: Principal = Depends(get_current_principal)) -> Principal:
        principal.require_permission(permission)
        return principal
    return check
