"""
Cari (AR/AP) Documents and Open Items

Documents are drafted against a counterparty, then posted as a balanced
SYSTEM journal between the legal entity's Cari control and offset accounts.
Posting opens an open item whose residual is settled later.
"""

import calendar
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .counterparties import Counterparty, CounterpartyManager, PaymentTerm
from .errors import ConflictError, NotFoundError, ValidationError
from .filters import DocumentFilter, OpenItemFilter
from .fiscal import FiscalManager
from .ledger import GeneralLedger, JournalLine, SourceType
from .logging_config import get_logger, log_action
from .money import ZERO, normalize_currency_code, to_amount
from .organization import OrganizationManager
from .purpose_accounts import PurposeAccountResolver, PurposeCode
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


logger = get_logger("finance_core.cari")

CARI_DOCUMENT_REFERENCE_PREFIX = "CARI_DOC:"


class CariDirection(Enum):
    AR = "AR"
    AP = "AP"


class DocumentType(Enum):
    INVOICE = "INVOICE"
    DEBIT_NOTE = "DEBIT_NOTE"
    CREDIT_NOTE = "CREDIT_NOTE"
    PAYMENT = "PAYMENT"
    ADJUSTMENT = "ADJUSTMENT"


class DocumentStatus(Enum):
    DRAFT = "DRAFT"
    POSTED = "POSTED"
    PARTIALLY_SETTLED = "PARTIALLY_SETTLED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"
    REVERSED = "REVERSED"


class OpenItemStatus(Enum):
    OPEN = "OPEN"
    PARTIALLY_SETTLED = "PARTIALLY_SETTLED"
    SETTLED = "SETTLED"


POSITIVE_SIGN_TYPES = frozenset({DocumentType.INVOICE, DocumentType.DEBIT_NOTE})
DUE_DATE_REQUIRED_TYPES = POSITIVE_SIGN_TYPES

POSTING_PURPOSES = {
    CariDirection.AR: (PurposeCode.CARI_AR_CONTROL, PurposeCode.CARI_AR_OFFSET),
    CariDirection.AP: (PurposeCode.CARI_AP_CONTROL, PurposeCode.CARI_AP_OFFSET),
}

# Open item status -> status shown on its document
DOCUMENT_STATUS_FOR_ITEM = {
    OpenItemStatus.OPEN: DocumentStatus.POSTED,
    OpenItemStatus.PARTIALLY_SETTLED: DocumentStatus.PARTIALLY_SETTLED,
    OpenItemStatus.SETTLED: DocumentStatus.SETTLED,
}


@dataclass
class CariDocument(StorageRecord):
    legal_entity_id: str
    counterparty_id: str
    direction: CariDirection
    document_type: DocumentType
    status: DocumentStatus
    document_date: date
    amount_txn: Decimal
    amount_base: Decimal
    currency_code: str
    fx_rate: Decimal
    payment_term_id: Optional[str] = None
    due_date: Optional[date] = None
    document_no: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    posted_journal_entry_id: Optional[str] = None
    posted_by: Optional[str] = None
    posted_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


@dataclass
class OpenItem(StorageRecord):
    document_id: str
    legal_entity_id: str
    counterparty_id: str
    direction: CariDirection
    currency_code: str
    document_date: date
    due_date: date
    original_amount_txn: Decimal
    original_amount_base: Decimal
    residual_amount_txn: Decimal
    residual_amount_base: Decimal
    status: OpenItemStatus = OpenItemStatus.OPEN

    def refresh_status(self) -> None:
        if self.residual_amount_txn <= ZERO:
            self.status = OpenItemStatus.SETTLED
        elif self.residual_amount_txn < self.original_amount_txn:
            self.status = OpenItemStatus.PARTIALLY_SETTLED
        else:
            self.status = OpenItemStatus.OPEN


def compute_due_date(document_date: date, term: PaymentTerm) -> date:
    """document_date + due_days + grace_days, moved to month end when the term says so"""
    due = document_date + timedelta(days=term.due_days + term.grace_days)
    if term.is_end_of_month:
        due = due.replace(day=calendar.monthrange(due.year, due.month)[1])
    return due


def posting_sides(direction: CariDirection, document_type: DocumentType,
                  control_account_id: str, offset_account_id: str):
    """(debit account, credit account) for a document"""
    positive = document_type in POSITIVE_SIGN_TYPES
    if direction == CariDirection.AR:
        if positive:
            return control_account_id, offset_account_id
        return offset_account_id, control_account_id
    if positive:
        return offset_account_id, control_account_id
    return control_account_id, offset_account_id


class CariDocumentManager:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager, fiscal: FiscalManager,
                 ledger: GeneralLedger, counterparties: CounterpartyManager,
                 purpose_accounts: PurposeAccountResolver):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.fiscal = fiscal
        self.ledger = ledger
        self.counterparties = counterparties
        self.purpose_accounts = purpose_accounts
        self.documents_table = "cari_documents"
        self.open_items_table = "cari_open_items"

    def create_document(
        self,
        legal_entity_id: str,
        counterparty_id: str,
        direction: CariDirection,
        document_type: DocumentType,
        amount_txn: Any,
        document_date: Optional[date] = None,
        currency_code: Optional[str] = None,
        fx_rate: Any = None,
        payment_term_id: Optional[str] = None,
        due_date: Optional[date] = None,
        description: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> CariDocument:
        """
        Draft a document. Without an explicit due date, INVOICE and DEBIT_NOTE
        take theirs from the payment term (the counterparty default when none
        is given).

        Raises:
            ValidationError: Bad amount, foreign counterparty or term, due date before document date
        """
        direction = CariDirection(direction)
        document_type = DocumentType(document_type)
        amount_txn = to_amount(amount_txn, "amountTxn")
        if amount_txn <= ZERO:
            raise ValidationError("amountTxn must be > 0")
        document_date = document_date or datetime.now(timezone.utc).date()
        assert_scope_access(principal, [legal_entity_id])

        with self.storage.atomic():
            entity = self.organization.require_legal_entity(legal_entity_id)
            counterparty = self.counterparties.require_counterparty(counterparty_id, legal_entity_id)
            self._check_role(counterparty, direction)

            term = None
            term_id = payment_term_id or counterparty.default_payment_term_id
            if term_id:
                term = self.counterparties.require_payment_term(term_id, legal_entity_id)
            if due_date is None and document_type in DUE_DATE_REQUIRED_TYPES:
                if term is None:
                    raise ValidationError(f"dueDate is required for documentType={document_type.value}")
                due_date = compute_due_date(document_date, term)
            if due_date is not None and due_date < document_date:
                raise ValidationError("dueDate cannot be before documentDate")

            currency = normalize_currency_code(currency_code or entity.functional_currency_code)
            if currency == entity.functional_currency_code:
                rate = Decimal("1")
            elif fx_rate is None:
                raise ValidationError("fxRate is required when currencyCode differs from the functional currency")
            else:
                rate = to_amount(fx_rate, "fxRate")
                if rate <= ZERO:
                    raise ValidationError("fxRate must be > 0")

            now = datetime.now(timezone.utc)
            document = CariDocument(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                legal_entity_id=legal_entity_id,
                counterparty_id=counterparty.id,
                direction=direction,
                document_type=document_type,
                status=DocumentStatus.DRAFT,
                document_date=document_date,
                amount_txn=amount_txn,
                amount_base=to_amount(amount_txn * rate),
                currency_code=currency,
                fx_rate=rate,
                payment_term_id=term.id if term else None,
                due_date=due_date,
                description=description,
                created_by=principal.user_id if principal else None,
            )
            self.records.save_record(document, self.documents_table)
            self.audit_trail.log_event(
                AuditEventType.CARI_DOCUMENT_CREATED, "cari_document", document.id,
                {"direction": direction.value, "documentType": document_type.value,
                 "amountTxn": amount_txn, "counterpartyId": counterparty.id},
                user_id=document.created_by,
            )
        return document

    @staticmethod
    def _check_role(counterparty: Counterparty, direction: CariDirection) -> None:
        if direction == CariDirection.AR and not counterparty.is_customer:
            raise ValidationError("AR documents require a customer counterparty")
        if direction == CariDirection.AP and not counterparty.is_vendor:
            raise ValidationError("AP documents require a vendor counterparty")

    def get_document(self, document_id: str) -> Optional[CariDocument]:
        return self.records.load_record(CariDocument, self.documents_table, document_id)

    def require_document(self, document_id: str) -> CariDocument:
        document = self.get_document(document_id) if document_id else None
        if document is None:
            raise NotFoundError("Document not found", details={"documentId": document_id})
        return document

    def list_documents(self, document_filter: DocumentFilter) -> List[CariDocument]:
        documents = self.records.find_records(
            CariDocument, self.documents_table, document_filter.storage_filters()
        )
        return document_filter.apply(
            documents, sort_key=lambda d: (d.document_date, d.created_at), reverse=True
        )

    def cancel_document(self, document_id: str, reason: Optional[str] = None,
                        principal: Optional[Principal] = None) -> CariDocument:
        with self.storage.atomic():
            document = self.require_document(document_id)
            assert_scope_access(principal, [document.legal_entity_id])
            if document.status != DocumentStatus.DRAFT:
                raise ConflictError("Only DRAFT documents can be cancelled",
                                    details={"status": document.status.value})
            document.status = DocumentStatus.CANCELLED
            document.cancel_reason = reason
            document.touch()
            self.records.save_record(document, self.documents_table)
            self.audit_trail.log_event(
                AuditEventType.CARI_DOCUMENT_CANCELLED, "cari_document", document.id,
                {"reason": reason},
                user_id=principal.user_id if principal else None,
            )
        return document

    def _posting_accounts(self, document: CariDocument, counterparty: Counterparty):
        control_purpose, offset_purpose = POSTING_PURPOSES[document.direction]
        mapped = self.purpose_accounts.resolve(document.legal_entity_id,
                                               [control_purpose, offset_purpose])
        control_id = mapped[control_purpose].id
        override = counterparty.ar_account_id if document.direction == CariDirection.AR \
            else counterparty.ap_account_id
        if override:
            control_id = override
        offset_id = mapped[offset_purpose].id
        if control_id == offset_id:
            raise ValidationError("Cari control and offset accounts must be different")
        return control_id, offset_id

    def _next_document_no(self, document: CariDocument) -> str:
        prefix = f"{document.direction.value}-{document.document_type.value}-{document.document_date.year}-"
        highest = 0
        for other in self.records.find_records(CariDocument, self.documents_table,
                                               {'legal_entity_id': document.legal_entity_id}):
            if other.document_no and other.document_no.startswith(prefix):
                suffix = other.document_no[len(prefix):]
                if suffix.isdigit():
                    highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:06d}"

    def post_document(self, document_id: str,
                      principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Post a DRAFT document into the ledger and open its open item.

        Raises:
            ConflictError: Not DRAFT, or the period is not open
            ValidationError: Missing purpose mappings, control equals offset
        """
        user_id = principal.user_id if principal else None
        with self.storage.atomic():
            document = self.require_document(document_id)
            assert_scope_access(principal, [document.legal_entity_id])
            if document.status != DocumentStatus.DRAFT:
                raise ConflictError("Only DRAFT documents can be posted",
                                    details={"status": document.status.value})

            counterparty = self.counterparties.require_counterparty(document.counterparty_id)
            control_id, offset_id = self._posting_accounts(document, counterparty)
            debit_id, credit_id = posting_sides(document.direction, document.document_type,
                                                control_id, offset_id)

            book, period = self.fiscal.resolve_posting_period(
                document.legal_entity_id, document.document_date, "document"
            )
            document.document_no = self._next_document_no(document)
            description = document.description or f"Cari {document.document_no}"
            lines = [
                JournalLine(line_no=1, account_id=debit_id, debit_base=document.amount_base,
                            credit_base=ZERO, description=description,
                            currency_code=document.currency_code, amount_txn=document.amount_txn),
                JournalLine(line_no=2, account_id=credit_id, debit_base=ZERO,
                            credit_base=document.amount_base, description=description,
                            currency_code=document.currency_code, amount_txn=-document.amount_txn),
            ]
            journal = self.ledger.record_system_journal(
                legal_entity_id=document.legal_entity_id,
                book_id=book.id,
                fiscal_period_id=period.id,
                lines=lines,
                source_type=SourceType.SYSTEM,
                journal_no=f"CARI-{document.document_no}",
                entry_date=document.document_date,
                description=description,
                reference_no=f"{CARI_DOCUMENT_REFERENCE_PREFIX}{document.id}",
                action_label="post document",
                unbalanced_message="Cari posting journal is not balanced",
                user_id=user_id,
            )

            now = datetime.now(timezone.utc)
            document.status = DocumentStatus.POSTED
            document.posted_journal_entry_id = journal.id
            document.posted_by = user_id
            document.posted_at = now
            document.updated_at = now
            self.records.save_record(document, self.documents_table)

            open_item = OpenItem(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                document_id=document.id,
                legal_entity_id=document.legal_entity_id,
                counterparty_id=document.counterparty_id,
                direction=document.direction,
                currency_code=document.currency_code,
                document_date=document.document_date,
                due_date=document.due_date or document.document_date,
                original_amount_txn=document.amount_txn,
                original_amount_base=document.amount_base,
                residual_amount_txn=document.amount_txn,
                residual_amount_base=document.amount_base,
            )
            self.records.save_record(open_item, self.open_items_table)
            self.audit_trail.log_event(
                AuditEventType.CARI_DOCUMENT_POSTED, "cari_document", document.id,
                {"documentNo": document.document_no, "journalEntryId": journal.id,
                 "openItemId": open_item.id},
                user_id=user_id,
            )

        log_action(logger, "info", "Cari document posted", user_id=user_id,
                   action="cari.document.post", resource=document.id,
                   extra={"document_no": document.document_no, "journal_entry_id": journal.id})
        return {"document": document, "journal_entry_id": journal.id, "open_item": open_item}

    # Open items

    def get_open_item(self, item_id: str) -> Optional[OpenItem]:
        return self.records.load_record(OpenItem, self.open_items_table, item_id)

    def list_open_items(self, item_filter: OpenItemFilter) -> List[OpenItem]:
        items = self.records.find_records(OpenItem, self.open_items_table,
                                          item_filter.storage_filters())
        return item_filter.apply(items, sort_key=lambda i: (i.due_date, i.document_date, i.id))

    def save_open_item(self, item: OpenItem) -> None:
        """Persist a residual change and mirror the status onto the document"""
        item.refresh_status()
        item.touch()
        self.records.save_record(item, self.open_items_table)
        document = self.require_document(item.document_id)
        document.status = DOCUMENT_STATUS_FOR_ITEM[item.status]
        document.touch()
        self.records.save_record(document, self.documents_table)
