"""
Chart of Accounts Module

Charts are GLOBAL (shared by every legal entity of the tenant) or scoped to one
legal entity. Accounts form a parent/child tree inside a chart; only active,
postable leaf accounts accept journal lines.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


class ChartScope(Enum):
    GLOBAL = "GLOBAL"
    LEGAL_ENTITY = "LEGAL_ENTITY"


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


class NormalSide(Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


DEFAULT_NORMAL_SIDE = {
    AccountType.ASSET: NormalSide.DEBIT,
    AccountType.EXPENSE: NormalSide.DEBIT,
    AccountType.LIABILITY: NormalSide.CREDIT,
    AccountType.EQUITY: NormalSide.CREDIT,
    AccountType.REVENUE: NormalSide.CREDIT,
}

PROFIT_AND_LOSS_TYPES = (AccountType.REVENUE, AccountType.EXPENSE)


@dataclass
class ChartOfAccounts(StorageRecord):
    code: str
    name: str
    scope: ChartScope
    legal_entity_id: Optional[str] = None


@dataclass
class Account(StorageRecord):
    coa_id: str
    code: str
    name: str
    account_type: AccountType
    normal_side: NormalSide
    allow_posting: bool = True
    is_active: bool = True
    parent_account_id: Optional[str] = None
    is_cash_controlled: bool = False


class AccountManager:
    """Charts of accounts and their accounts"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.charts_table = "charts_of_accounts"
        self.table_name = "accounts"

    def create_chart(self, code: str, name: str, scope: ChartScope = ChartScope.LEGAL_ENTITY,
                     legal_entity_id: Optional[str] = None,
                     principal: Optional[Principal] = None) -> ChartOfAccounts:
        code = (code or "").strip().upper()
        scope = ChartScope(scope)
        if not code:
            raise ValidationError("code is required")
        if scope == ChartScope.LEGAL_ENTITY:
            if not legal_entity_id:
                raise ValidationError("legalEntityId is required for LEGAL_ENTITY charts")
            assert_scope_access(principal, [legal_entity_id])
        else:
            legal_entity_id = None

        with self.storage.atomic():
            if legal_entity_id:
                self.organization.require_legal_entity(legal_entity_id)
            if self.records.find_one(ChartOfAccounts, self.charts_table, {'code': code}):
                raise ConflictError(f"Chart code already exists: {code}")
            now = datetime.now(timezone.utc)
            chart = ChartOfAccounts(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                code=code, name=name, scope=scope, legal_entity_id=legal_entity_id,
            )
            self.records.save_record(chart, self.charts_table)
            self.audit_trail.log_event(
                AuditEventType.CHART_CREATED, "chart_of_accounts", chart.id,
                {"code": code, "scope": scope.value, "legalEntityId": legal_entity_id},
                user_id=principal.user_id if principal else None,
            )
        return chart

    def get_chart(self, coa_id: str) -> Optional[ChartOfAccounts]:
        return self.records.load_record(ChartOfAccounts, self.charts_table, coa_id)

    def require_chart(self, coa_id: str) -> ChartOfAccounts:
        chart = self.get_chart(coa_id) if coa_id else None
        if chart is None:
            raise NotFoundError("coaId not found for tenant")
        return chart

    def list_charts(self, legal_entity_id: Optional[str] = None) -> List[ChartOfAccounts]:
        charts = self.records.find_records(ChartOfAccounts, self.charts_table, {})
        if legal_entity_id:
            charts = [c for c in charts if c.scope == ChartScope.GLOBAL
                      or c.legal_entity_id == legal_entity_id]
        return sorted(charts, key=lambda c: c.code)

    def create_account(
        self,
        coa_id: str,
        code: str,
        name: str,
        account_type: AccountType,
        normal_side: Optional[NormalSide] = None,
        allow_posting: bool = True,
        parent_account_id: Optional[str] = None,
        is_cash_controlled: bool = False,
        principal: Optional[Principal] = None,
    ) -> Account:
        code = (code or "").strip()
        if not code:
            raise ValidationError("code is required")
        account_type = AccountType(account_type)

        with self.storage.atomic():
            chart = self.require_chart(coa_id)
            if chart.legal_entity_id:
                assert_scope_access(principal, [chart.legal_entity_id])
            if self.records.find_one(Account, self.table_name, {'coa_id': coa_id, 'code': code}):
                raise ConflictError(f"Account code already exists in chart: {code}")
            if parent_account_id:
                parent = self.get_account(parent_account_id)
                if parent is None or parent.coa_id != coa_id:
                    raise ValidationError("parentAccountId must belong to the same chart")

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                coa_id=coa_id,
                code=code,
                name=name,
                account_type=account_type,
                normal_side=NormalSide(normal_side) if normal_side else DEFAULT_NORMAL_SIDE[account_type],
                allow_posting=allow_posting,
                parent_account_id=parent_account_id,
                is_cash_controlled=is_cash_controlled,
            )
            self.records.save_record(account, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CREATED, "account", account.id,
                {"coaId": coa_id, "code": code, "accountType": account_type.value},
                user_id=principal.user_id if principal else None,
            )
        return account

    def set_account_active(self, account_id: str, is_active: bool) -> Account:
        with self.storage.atomic():
            account = self.require_account(account_id)
            account.is_active = is_active
            account.touch()
            self.records.save_record(account, self.table_name)
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.records.load_record(Account, self.table_name, account_id)

    def require_account(self, account_id: str, field_name: str = "accountId") -> Account:
        account = self.get_account(account_id) if account_id else None
        if account is None:
            raise NotFoundError(f"{field_name} not found for tenant")
        return account

    def list_accounts(self, coa_id: Optional[str] = None,
                      legal_entity_id: Optional[str] = None) -> List[Account]:
        if coa_id:
            accounts = self.records.find_records(Account, self.table_name, {'coa_id': coa_id})
        else:
            accounts = self.records.find_records(Account, self.table_name, {})
            if legal_entity_id:
                chart_ids = {c.id for c in self.list_charts(legal_entity_id)}
                accounts = [a for a in accounts if a.coa_id in chart_ids]
        return sorted(accounts, key=lambda a: a.code)

    def accounts_by_id(self) -> Dict[str, Account]:
        return {a.id: a for a in self.records.find_records(Account, self.table_name, {})}

    def has_active_children(self, account_id: str) -> bool:
        return any(
            child.is_active
            for child in self.records.find_records(Account, self.table_name,
                                                   {'parent_account_id': account_id})
        )

    def is_in_legal_entity_scope(self, account: Account, legal_entity_id: str) -> bool:
        """GLOBAL chart accounts are usable by every legal entity"""
        chart = self.get_chart(account.coa_id)
        if chart is None:
            return False
        return chart.scope == ChartScope.GLOBAL or chart.legal_entity_id == legal_entity_id

    def find_account_by_code(self, legal_entity_id: str, code: str) -> Optional[Account]:
        """Same-code account visible to a legal entity; its own chart wins over GLOBAL"""
        candidates = [
            a for a in self.records.find_records(Account, self.table_name, {'code': code})
            if self.is_in_legal_entity_scope(a, legal_entity_id)
        ]
        if not candidates:
            return None
        charts = {a.coa_id: self.get_chart(a.coa_id) for a in candidates}
        candidates.sort(key=lambda a: charts[a.coa_id].scope != ChartScope.LEGAL_ENTITY)
        return candidates[0]

    def assert_postable_leaf(self, account: Account, label: str) -> None:
        """Active, postable and without active children"""
        if not account.is_active:
            raise ValidationError(f"{label} account {account.code} is inactive")
        if not account.allow_posting:
            raise ValidationError(
                f"{label} account {account.code} is not postable. Select a postable sub-account."
            )
        if self.has_active_children(account.id):
            raise ValidationError(
                f"{label} account {account.code} is a parent account. Select a leaf sub-account."
            )
