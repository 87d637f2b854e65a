"""
Counterparty and Payment Term Master Data

Customers and vendors of a legal entity, and the payment terms that derive
document due dates. Codes are unique per legal entity.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .accounts import AccountManager, AccountType, ChartScope
from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


logger = get_logger("finance_core.counterparties")


class MasterDataStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class PaymentTerm(StorageRecord):
    legal_entity_id: str
    code: str
    name: str
    due_days: int = 0
    grace_days: int = 0
    is_end_of_month: bool = False
    status: MasterDataStatus = MasterDataStatus.ACTIVE


@dataclass
class Counterparty(StorageRecord):
    legal_entity_id: str
    code: str
    name: str
    is_customer: bool = False
    is_vendor: bool = False
    tax_id: Optional[str] = None
    default_payment_term_id: Optional[str] = None
    ar_account_id: Optional[str] = None
    ap_account_id: Optional[str] = None
    status: MasterDataStatus = MasterDataStatus.ACTIVE


DEFAULT_PAYMENT_TERM_TEMPLATES: List[Dict[str, Any]] = [
    {"code": "DUE_ON_RECEIPT", "name": "Due on Receipt", "due_days": 0},
    {"code": "NET_15", "name": "Net 15", "due_days": 15},
    {"code": "NET_30", "name": "Net 30", "due_days": 30},
    {"code": "NET_45", "name": "Net 45", "due_days": 45},
    {"code": "NET_60", "name": "Net 60", "due_days": 60},
]


def _normalize_code(code: Optional[str], field_name: str = "code") -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError(f"{field_name} is required")
    return normalized[:50]


def _term_template(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    label = f"paymentTerms[{index}]"
    code = _normalize_code(raw.get("code"), f"{label}.code")
    due_days = int(raw.get("due_days") or 0)
    grace_days = int(raw.get("grace_days") or 0)
    if due_days < 0 or grace_days < 0:
        raise ValidationError(f"{label} due/grace days cannot be negative")
    return {
        "code": code,
        "name": (raw.get("name") or code).strip(),
        "due_days": due_days,
        "grace_days": grace_days,
        "is_end_of_month": bool(raw.get("is_end_of_month", False)),
        "status": MasterDataStatus(raw.get("status") or MasterDataStatus.ACTIVE),
    }


def resolve_term_templates(raw_terms: Optional[Sequence[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    Normalize bootstrap templates; defaults when none are given.

    Raises:
        ValidationError: Empty list or duplicate codes
    """
    if raw_terms is not None and len(raw_terms) == 0:
        raise ValidationError("paymentTerms must be a non-empty array when provided")
    source = DEFAULT_PAYMENT_TERM_TEMPLATES if raw_terms is None else raw_terms
    templates = [_term_template(raw, index) for index, raw in enumerate(source)]

    seen = set()
    for template in templates:
        if template["code"] in seen:
            raise ValidationError(f"Duplicate payment term code: {template['code']}")
        seen.add(template["code"])
    return templates


class CounterpartyManager:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager, accounts: AccountManager):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.accounts = accounts
        self.counterparties_table = "counterparties"
        self.payment_terms_table = "payment_terms"

    # Payment terms

    def _insert_term(self, legal_entity_id: str, template: Dict[str, Any]) -> PaymentTerm:
        now = datetime.now(timezone.utc)
        term = PaymentTerm(
            id=str(uuid.uuid4()), created_at=now, updated_at=now,
            legal_entity_id=legal_entity_id,
            **template,
        )
        self.records.save_record(term, self.payment_terms_table)
        return term

    def create_payment_term(self, legal_entity_id: str, code: str, name: Optional[str] = None,
                            due_days: int = 0, grace_days: int = 0,
                            is_end_of_month: bool = False,
                            principal: Optional[Principal] = None) -> PaymentTerm:
        template = _term_template({
            "code": code, "name": name, "due_days": due_days,
            "grace_days": grace_days, "is_end_of_month": is_end_of_month,
        }, 0)
        assert_scope_access(principal, [legal_entity_id])

        with self.storage.atomic():
            self.organization.require_legal_entity(legal_entity_id)
            if self.find_payment_term(legal_entity_id, template["code"]) is not None:
                raise ConflictError(f"Payment term code already exists: {template['code']}")
            term = self._insert_term(legal_entity_id, template)
            self.audit_trail.log_event(
                AuditEventType.PAYMENT_TERM_CREATED, "payment_term", term.id,
                {"legalEntityId": legal_entity_id, "code": term.code, "dueDays": term.due_days},
                user_id=principal.user_id if principal else None,
            )
        return term

    def bootstrap_payment_terms(self, legal_entity_ids: Sequence[str],
                                payment_terms: Optional[Sequence[Dict[str, Any]]] = None,
                                principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Seed payment terms into each legal entity. Existing codes are skipped,
        so repeating a call creates nothing.
        """
        legal_entity_ids = list(dict.fromkeys(legal_entity_ids or []))
        if not legal_entity_ids:
            raise ValidationError("legalEntityIds must be a non-empty array")
        templates = resolve_term_templates(payment_terms)
        assert_scope_access(principal, legal_entity_ids)
        user_id = principal.user_id if principal else None

        per_entity = []
        with self.storage.atomic():
            for legal_entity_id in legal_entity_ids:
                self.organization.require_legal_entity(legal_entity_id)
                created = skipped = 0
                for template in templates:
                    if self.find_payment_term(legal_entity_id, template["code"]) is not None:
                        skipped += 1
                        continue
                    self._insert_term(legal_entity_id, template)
                    created += 1
                per_entity.append({
                    "legal_entity_id": legal_entity_id,
                    "created_count": created,
                    "skipped_count": skipped,
                })
                self.audit_trail.log_event(
                    AuditEventType.PAYMENT_TERMS_BOOTSTRAPPED, "legal_entity", legal_entity_id,
                    {"createdCount": created, "skippedCount": skipped,
                     "defaultsUsed": payment_terms is None},
                    user_id=user_id,
                )

        created_total = sum(row["created_count"] for row in per_entity)
        skipped_total = sum(row["skipped_count"] for row in per_entity)
        log_action(logger, "info", "Payment terms bootstrapped", user_id=user_id,
                   action="cari.payment_term.bootstrap",
                   extra={"created_count": created_total, "skipped_count": skipped_total})
        return {
            "defaults_used": payment_terms is None,
            "template_count": len(templates),
            "created_count": created_total,
            "skipped_count": skipped_total,
            "legal_entities": per_entity,
        }

    def find_payment_term(self, legal_entity_id: str, code: str) -> Optional[PaymentTerm]:
        return self.records.find_one(PaymentTerm, self.payment_terms_table, {
            'legal_entity_id': legal_entity_id, 'code': code,
        })

    def get_payment_term(self, term_id: str) -> Optional[PaymentTerm]:
        return self.records.load_record(PaymentTerm, self.payment_terms_table, term_id)

    def require_payment_term(self, term_id: str,
                             legal_entity_id: Optional[str] = None) -> PaymentTerm:
        term = self.get_payment_term(term_id) if term_id else None
        if term is None:
            raise NotFoundError("paymentTermId not found for tenant")
        if legal_entity_id and term.legal_entity_id != legal_entity_id:
            raise ValidationError("paymentTermId must belong to legalEntityId")
        return term

    def list_payment_terms(self, legal_entity_id: Optional[str] = None) -> List[PaymentTerm]:
        filters = {'legal_entity_id': legal_entity_id} if legal_entity_id else {}
        terms = self.records.find_records(PaymentTerm, self.payment_terms_table, filters)
        return sorted(terms, key=lambda t: (t.legal_entity_id, t.due_days, t.code))

    # Counterparties

    def _check_control_account(self, account_id: str, legal_entity_id: str, label: str,
                               expected_type: AccountType) -> None:
        account = self.accounts.get_account(account_id)
        if account is None:
            raise ValidationError(f"{label} not found for tenant")
        chart = self.accounts.get_chart(account.coa_id)
        if chart is None or chart.scope != ChartScope.LEGAL_ENTITY:
            raise ValidationError(f"{label} must belong to a LEGAL_ENTITY chart")
        if chart.legal_entity_id != legal_entity_id:
            raise ValidationError(f"{label} must belong to legalEntityId")
        if account.account_type != expected_type:
            raise ValidationError(f"{label} must have accountType={expected_type.value}")
        if not account.is_active:
            raise ValidationError(f"{label} must reference an ACTIVE account")
        if not account.allow_posting:
            raise ValidationError(f"{label} must reference a postable account")

    def create_counterparty(
        self,
        legal_entity_id: str,
        code: str,
        name: str,
        is_customer: bool = False,
        is_vendor: bool = False,
        tax_id: Optional[str] = None,
        default_payment_term_id: Optional[str] = None,
        ar_account_id: Optional[str] = None,
        ap_account_id: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> Counterparty:
        """
        Raises:
            ValidationError: No role, foreign payment term, bad control account
            ConflictError: Code already used in the legal entity
        """
        code = _normalize_code(code)
        if not (name or "").strip():
            raise ValidationError("name is required")
        if not is_customer and not is_vendor:
            raise ValidationError("Counterparty must be a customer, a vendor, or both")
        if ar_account_id and not is_customer:
            raise ValidationError("arAccountId requires compatible counterparty role")
        if ap_account_id and not is_vendor:
            raise ValidationError("apAccountId requires compatible counterparty role")
        assert_scope_access(principal, [legal_entity_id])

        with self.storage.atomic():
            self.organization.require_legal_entity(legal_entity_id)
            if self.records.find_one(Counterparty, self.counterparties_table,
                                     {'legal_entity_id': legal_entity_id, 'code': code}):
                raise ConflictError(f"Counterparty code already exists: {code}")
            if default_payment_term_id:
                self.require_payment_term(default_payment_term_id, legal_entity_id)
            if ar_account_id:
                self._check_control_account(ar_account_id, legal_entity_id, "arAccountId",
                                            AccountType.ASSET)
            if ap_account_id:
                self._check_control_account(ap_account_id, legal_entity_id, "apAccountId",
                                            AccountType.LIABILITY)

            now = datetime.now(timezone.utc)
            counterparty = Counterparty(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                legal_entity_id=legal_entity_id,
                code=code,
                name=name.strip(),
                is_customer=bool(is_customer),
                is_vendor=bool(is_vendor),
                tax_id=tax_id,
                default_payment_term_id=default_payment_term_id,
                ar_account_id=ar_account_id,
                ap_account_id=ap_account_id,
            )
            self.records.save_record(counterparty, self.counterparties_table)
            self.audit_trail.log_event(
                AuditEventType.COUNTERPARTY_CREATED, "counterparty", counterparty.id,
                {"legalEntityId": legal_entity_id, "code": code,
                 "isCustomer": counterparty.is_customer, "isVendor": counterparty.is_vendor},
                user_id=principal.user_id if principal else None,
            )
        return counterparty

    def get_counterparty(self, counterparty_id: str) -> Optional[Counterparty]:
        return self.records.load_record(Counterparty, self.counterparties_table, counterparty_id)

    def require_counterparty(self, counterparty_id: str,
                             legal_entity_id: Optional[str] = None) -> Counterparty:
        counterparty = self.get_counterparty(counterparty_id) if counterparty_id else None
        if counterparty is None:
            raise NotFoundError("counterpartyId not found for tenant")
        if legal_entity_id and counterparty.legal_entity_id != legal_entity_id:
            raise ValidationError("counterpartyId must belong to legalEntityId")
        return counterparty

    def list_counterparties(self, legal_entity_id: Optional[str] = None,
                            role: Optional[str] = None) -> List[Counterparty]:
        filters: Dict[str, Any] = {}
        if legal_entity_id:
            filters['legal_entity_id'] = legal_entity_id
        role = (role or "").strip().upper()
        if role == "CUSTOMER":
            filters['is_customer'] = True
        elif role == "VENDOR":
            filters['is_vendor'] = True
        elif role:
            raise ValidationError("role must be CUSTOMER or VENDOR")
        counterparties = self.records.find_records(Counterparty, self.counterparties_table, filters)
        return sorted(counterparties, key=lambda c: c.code)
