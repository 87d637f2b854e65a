"""
Purpose Account Mappings

Maps a fixed set of posting purposes (Cari control and offset accounts) to
accounts in a legal entity's own chart. Subledger postings resolve their
accounts here instead of reading loose configuration, and every resolved
account is re-checked at the time of use.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .accounts import Account, AccountManager, ChartScope
from .audit import AuditEventType, AuditTrail
from .errors import ValidationError
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


SHAREHOLDER_PURPOSE_PREFIX = "SHAREHOLDER_"


class PurposeCode(Enum):
    CARI_AR_CONTROL = "CARI_AR_CONTROL"
    CARI_AR_OFFSET = "CARI_AR_OFFSET"
    CARI_AP_CONTROL = "CARI_AP_CONTROL"
    CARI_AP_OFFSET = "CARI_AP_OFFSET"

    # Settlement source contexts, tried before the plain code
    CARI_AR_CONTROL_CASH = "CARI_AR_CONTROL_CASH"
    CARI_AR_OFFSET_CASH = "CARI_AR_OFFSET_CASH"
    CARI_AP_CONTROL_CASH = "CARI_AP_CONTROL_CASH"
    CARI_AP_OFFSET_CASH = "CARI_AP_OFFSET_CASH"
    CARI_AR_CONTROL_MANUAL = "CARI_AR_CONTROL_MANUAL"
    CARI_AR_OFFSET_MANUAL = "CARI_AR_OFFSET_MANUAL"
    CARI_AP_CONTROL_MANUAL = "CARI_AP_CONTROL_MANUAL"
    CARI_AP_OFFSET_MANUAL = "CARI_AP_OFFSET_MANUAL"


def parse_purpose_code(value: str) -> PurposeCode:
    code = (value or "").strip().upper()
    if not code:
        raise ValidationError("purposeCode is required")
    if code.startswith(SHAREHOLDER_PURPOSE_PREFIX):
        raise ValidationError(
            "Shareholder accounts are set per commitment via /api/v1/org/shareholder-commitments"
        )
    try:
        return PurposeCode(code)
    except ValueError:
        raise ValidationError(
            f"purposeCode must be one of: {', '.join(p.value for p in PurposeCode)}"
        )


@dataclass
class PurposeAccountMapping(StorageRecord):
    legal_entity_id: str
    purpose_code: PurposeCode
    account_id: str


class PurposeAccountMap:
    """Resolved purpose -> Account lookup for one legal entity"""

    def __init__(self, legal_entity_id: str, accounts: Dict[PurposeCode, Account]):
        self.legal_entity_id = legal_entity_id
        self._accounts = accounts

    def __getitem__(self, purpose: PurposeCode) -> Account:
        return self._accounts[purpose]

    def __contains__(self, purpose: PurposeCode) -> bool:
        return purpose in self._accounts

    def first_of(self, candidates: Sequence[PurposeCode]) -> Optional[Account]:
        for purpose in candidates:
            if purpose in self._accounts:
                return self._accounts[purpose]
        return None


class PurposeAccountResolver:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager, accounts: AccountManager):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.accounts = accounts
        self.table_name = "purpose_account_mappings"

    def _account_problem(self, account: Optional[Account], legal_entity_id: str,
                         label: str = "accountId") -> Optional[str]:
        if account is None:
            return f"{label} not found for tenant"
        chart = self.accounts.get_chart(account.coa_id)
        if chart is None or chart.scope != ChartScope.LEGAL_ENTITY:
            return f"{label} must belong to a LEGAL_ENTITY chart"
        if chart.legal_entity_id != legal_entity_id:
            return f"{label} must belong to selected legalEntityId"
        if not account.is_active:
            return f"{label} must reference an active account"
        if not account.allow_posting:
            return f"{label} must reference a postable account"
        return None

    def set_mapping(self, legal_entity_id: str, purpose_code: str, account_id: str,
                    principal: Optional[Principal] = None) -> PurposeAccountMapping:
        purpose = parse_purpose_code(purpose_code)
        assert_scope_access(principal, [legal_entity_id])

        with self.storage.atomic():
            self.organization.require_legal_entity(legal_entity_id)
            problem = self._account_problem(self.accounts.get_account(account_id), legal_entity_id)
            if problem:
                raise ValidationError(problem)

            now = datetime.now(timezone.utc)
            mapping = self.records.find_one(PurposeAccountMapping, self.table_name, {
                'legal_entity_id': legal_entity_id, 'purpose_code': purpose.value,
            })
            if mapping is None:
                mapping = PurposeAccountMapping(
                    id=str(uuid.uuid4()), created_at=now, updated_at=now,
                    legal_entity_id=legal_entity_id, purpose_code=purpose, account_id=account_id,
                )
            else:
                mapping.account_id = account_id
                mapping.updated_at = now
            self.records.save_record(mapping, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.PURPOSE_MAPPING_SET, "purpose_account_mapping", mapping.id,
                {"legalEntityId": legal_entity_id, "purposeCode": purpose.value,
                 "accountId": account_id},
                user_id=principal.user_id if principal else None,
            )
        return mapping

    def list_mappings(self, legal_entity_id: str) -> List[PurposeAccountMapping]:
        mappings = self.records.find_records(PurposeAccountMapping, self.table_name,
                                             {'legal_entity_id': legal_entity_id})
        return sorted(mappings, key=lambda m: m.purpose_code.value)

    def _load(self, legal_entity_id: str, purposes: Sequence[PurposeCode]) -> Dict[PurposeCode, Account]:
        """Mapped accounts still valid for posting; stale mappings are skipped"""
        wanted = set(purposes)
        found: Dict[PurposeCode, Account] = {}
        for mapping in self.list_mappings(legal_entity_id):
            if mapping.purpose_code not in wanted:
                continue
            account = self.accounts.get_account(mapping.account_id)
            if self._account_problem(account, legal_entity_id) is None:
                found[mapping.purpose_code] = account
        return found

    def resolve(self, legal_entity_id: str, purposes: Sequence[PurposeCode]) -> PurposeAccountMap:
        """
        Raises:
            ValidationError: "Setup required: ..." when a purpose has no valid account
        """
        found = self._load(legal_entity_id, purposes)
        missing = [p.value for p in purposes if p not in found]
        if missing:
            raise ValidationError(
                f"Setup required: configure purpose accounts for {' and '.join(missing)}",
                code="SETUP_REQUIRED",
                details={"legalEntityId": legal_entity_id, "missingPurposeCodes": missing},
            )
        return PurposeAccountMap(legal_entity_id, found)

    def resolve_first(self, legal_entity_id: str,
                      candidates: Sequence[PurposeCode]) -> Optional[Account]:
        """First valid account along a fallback chain of purposes"""
        return PurposeAccountMap(legal_entity_id, self._load(legal_entity_id, candidates)).first_of(candidates)
