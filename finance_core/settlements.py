"""
Cari Settlements

A settlement batch allocates incoming (AR) or outgoing (AP) funds against a
counterparty's open items and posts the matching journal between the control
and offset accounts. Batches are keyed by an idempotency key per legal entity;
reversing a batch restores every residual it consumed.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .audit import AuditEventType, AuditTrail
from .cari_documents import CariDirection, CariDocumentManager, OpenItem, OpenItemStatus
from .counterparties import CounterpartyManager
from .errors import ConflictError, NotFoundError, ValidationError
from .fiscal import FiscalManager
from .ledger import GeneralLedger, JournalLine, SourceType
from .logging_config import get_logger, log_action
from .money import BALANCE_EPSILON, ZERO, normalize_currency_code, to_amount
from .purpose_accounts import PurposeAccountResolver, PurposeCode
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager, serialize_value


logger = get_logger("finance_core.settlements")

SETTLEMENT_REFERENCE_PREFIX = "CARI_SETTLEMENT:"


class SettlementStatus(Enum):
    POSTED = "POSTED"
    REVERSED = "REVERSED"


class PaymentChannel(Enum):
    MANUAL = "MANUAL"
    CASH = "CASH"


# Context-specific purpose first, plain purpose as fallback
SETTLEMENT_PURPOSES = {
    (CariDirection.AR, PaymentChannel.CASH): (
        (PurposeCode.CARI_AR_CONTROL_CASH, PurposeCode.CARI_AR_CONTROL),
        (PurposeCode.CARI_AR_OFFSET_CASH, PurposeCode.CARI_AR_OFFSET),
    ),
    (CariDirection.AR, PaymentChannel.MANUAL): (
        (PurposeCode.CARI_AR_CONTROL_MANUAL, PurposeCode.CARI_AR_CONTROL),
        (PurposeCode.CARI_AR_OFFSET_MANUAL, PurposeCode.CARI_AR_OFFSET),
    ),
    (CariDirection.AP, PaymentChannel.CASH): (
        (PurposeCode.CARI_AP_CONTROL_CASH, PurposeCode.CARI_AP_CONTROL),
        (PurposeCode.CARI_AP_OFFSET_CASH, PurposeCode.CARI_AP_OFFSET),
    ),
    (CariDirection.AP, PaymentChannel.MANUAL): (
        (PurposeCode.CARI_AP_CONTROL_MANUAL, PurposeCode.CARI_AP_CONTROL),
        (PurposeCode.CARI_AP_OFFSET_MANUAL, PurposeCode.CARI_AP_OFFSET),
    ),
}


@dataclass
class SettlementAllocation:
    open_item_id: str
    document_id: str
    amount_txn: Decimal
    amount_base: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {name: serialize_value(value) for name, value in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SettlementAllocation':
        return cls(
            open_item_id=data['open_item_id'],
            document_id=data['document_id'],
            amount_txn=Decimal(str(data['amount_txn'])),
            amount_base=Decimal(str(data['amount_base'])),
        )


@dataclass
class SettlementBatch(StorageRecord):
    legal_entity_id: str
    counterparty_id: str
    settlement_no: str
    direction: CariDirection
    settlement_date: date
    currency_code: str
    incoming_amount_txn: Decimal
    total_allocated_txn: Decimal
    total_allocated_base: Decimal
    idempotency_key: str
    status: SettlementStatus = SettlementStatus.POSTED
    payment_channel: PaymentChannel = PaymentChannel.MANUAL
    cash_transaction_id: Optional[str] = None
    unapplied_amount_txn: Decimal = ZERO
    posted_journal_entry_id: Optional[str] = None
    reversal_journal_entry_id: Optional[str] = None
    reverse_reason: Optional[str] = None
    reversed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    allocations: List[SettlementAllocation] = field(default_factory=list)


def _allocation_base(item: OpenItem, amount_txn: Decimal) -> Decimal:
    """Base share of an allocation; a full settlement takes the whole base residual"""
    if amount_txn >= item.residual_amount_txn:
        return item.residual_amount_base
    return to_amount(amount_txn * item.original_amount_base / item.original_amount_txn)


class SettlementManager:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 fiscal: FiscalManager, ledger: GeneralLedger,
                 counterparties: CounterpartyManager, documents: CariDocumentManager,
                 purpose_accounts: PurposeAccountResolver):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.fiscal = fiscal
        self.ledger = ledger
        self.counterparties = counterparties
        self.documents = documents
        self.purpose_accounts = purpose_accounts
        self.table_name = "settlement_batches"

    def _available_items(self, legal_entity_id: str, counterparty_id: str,
                         currency_code: str) -> List[OpenItem]:
        items = self.records.find_records(OpenItem, self.documents.open_items_table, {
            'legal_entity_id': legal_entity_id,
            'counterparty_id': counterparty_id,
            'currency_code': currency_code,
        })
        return [i for i in items
                if i.status in (OpenItemStatus.OPEN, OpenItemStatus.PARTIALLY_SETTLED)]

    def _plan_manual(self, available: Dict[str, OpenItem],
                     allocations: Sequence[Dict[str, Any]]) -> Dict[str, Decimal]:
        requested: Dict[str, Decimal] = {}
        for index, raw in enumerate(allocations):
            item_id = raw.get("open_item_id")
            if not item_id:
                raise ValidationError(f"allocations[{index}].openItemId is required")
            amount = to_amount(raw.get("amount_txn"), f"allocations[{index}].amountTxn")
            if amount <= ZERO:
                raise ValidationError(f"allocations[{index}].amountTxn must be > 0")
            requested[item_id] = requested.get(item_id, ZERO) + amount

        missing = [item_id for item_id in requested if item_id not in available]
        if missing:
            raise ValidationError("Some allocations target open items that are unavailable",
                                  details={"openItemIds": missing})
        for item_id, amount in requested.items():
            if amount - available[item_id].residual_amount_txn > BALANCE_EPSILON:
                raise ValidationError(f"allocation exceeds residual for openItemId={item_id}")
        return requested

    @staticmethod
    def _plan_auto(items: List[OpenItem], funds: Decimal) -> Dict[str, Decimal]:
        """Oldest due date first, then document date, then id"""
        plan: Dict[str, Decimal] = {}
        remaining = funds
        for item in sorted(items, key=lambda i: (i.due_date, i.document_date, i.id)):
            if remaining <= ZERO:
                break
            amount = min(item.residual_amount_txn, remaining)
            plan[item.id] = amount
            remaining -= amount
        return plan

    def _posting_accounts(self, legal_entity_id: str, direction: CariDirection,
                          channel: PaymentChannel, control_override: Optional[str]):
        control_candidates, offset_candidates = SETTLEMENT_PURPOSES[(direction, channel)]
        control = self.purpose_accounts.resolve_first(legal_entity_id, control_candidates)
        offset = self.purpose_accounts.resolve_first(legal_entity_id, offset_candidates)
        if control is None or offset is None:
            plain = (control_candidates[-1].value, offset_candidates[-1].value)
            raise ValidationError(
                f"Setup required: configure purpose accounts for {plain[0]} and {plain[1]}",
                code="SETUP_REQUIRED",
                details={"legalEntityId": legal_entity_id, "missingPurposeCodes": list(plain)},
            )
        control_id = control_override or control.id
        if control_id == offset.id:
            raise ValidationError("Cari settlement control and offset accounts must be different")
        return control_id, offset.id

    def _next_settlement_no(self, legal_entity_id: str, settlement_date: date) -> str:
        prefix = f"SETTLEMENT-{settlement_date.year}-"
        highest = 0
        for batch in self.records.find_records(SettlementBatch, self.table_name,
                                               {'legal_entity_id': legal_entity_id}):
            suffix = batch.settlement_no[len(prefix):] if batch.settlement_no.startswith(prefix) else ""
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:06d}"

    def apply_settlement(
        self,
        legal_entity_id: str,
        counterparty_id: str,
        idempotency_key: str,
        incoming_amount_txn: Any,
        settlement_date: Optional[date] = None,
        currency_code: Optional[str] = None,
        allocations: Optional[Sequence[Dict[str, Any]]] = None,
        auto_allocate: bool = False,
        payment_channel: PaymentChannel = PaymentChannel.MANUAL,
        cash_transaction_id: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Allocate funds to open items and post the settlement journal. A
        repeated idempotency key returns the stored batch.

        Raises:
            ValidationError: Unavailable items, over-allocation, mixed directions, setup
            ConflictError: Period not open
        """
        idempotency_key = (idempotency_key or "").strip()
        if not idempotency_key:
            raise ValidationError("idempotencyKey is required")
        funds = to_amount(incoming_amount_txn, "incomingAmountTxn")
        if funds < ZERO:
            raise ValidationError("incomingAmountTxn cannot be negative")
        if not allocations and not auto_allocate:
            raise ValidationError("allocations are required unless autoAllocate is true")
        channel = PaymentChannel(payment_channel)
        if cash_transaction_id:
            channel = PaymentChannel.CASH
        settlement_date = settlement_date or datetime.now(timezone.utc).date()
        assert_scope_access(principal, [legal_entity_id])
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            existing = self.records.find_one(SettlementBatch, self.table_name, {
                'legal_entity_id': legal_entity_id, 'idempotency_key': idempotency_key,
            })
            if existing is not None:
                return {"settlement": existing, "idempotent_replay": True}

            counterparty = self.counterparties.require_counterparty(counterparty_id, legal_entity_id)
            book, period = self.fiscal.resolve_posting_period(
                legal_entity_id, settlement_date, "settlement"
            )
            currency = normalize_currency_code(currency_code or book.base_currency_code)

            available = {i.id: i for i in self._available_items(legal_entity_id, counterparty.id, currency)}
            if allocations:
                plan = self._plan_manual(available, allocations)
            else:
                plan = self._plan_auto(list(available.values()), funds)
            if not plan:
                raise ValidationError("No open items available to settle")

            directions = {available[item_id].direction for item_id in plan}
            if len(directions) > 1:
                raise ValidationError("A settlement batch cannot mix AR and AP open items")
            direction = directions.pop()

            total_txn = sum(plan.values(), ZERO)
            if total_txn - funds > BALANCE_EPSILON:
                raise ValidationError("Total allocations exceed incoming available funds")

            batch_allocations = []
            for item_id, amount in plan.items():
                item = available[item_id]
                amount_base = _allocation_base(item, amount)
                item.residual_amount_txn = max(item.residual_amount_txn - amount, ZERO)
                item.residual_amount_base = max(item.residual_amount_base - amount_base, ZERO)
                self.documents.save_open_item(item)
                batch_allocations.append(SettlementAllocation(
                    open_item_id=item.id, document_id=item.document_id,
                    amount_txn=amount, amount_base=amount_base,
                ))
            total_base = sum((a.amount_base for a in batch_allocations), ZERO)

            override = counterparty.ar_account_id if direction == CariDirection.AR \
                else counterparty.ap_account_id
            control_id, offset_id = self._posting_accounts(legal_entity_id, direction,
                                                           channel, override)
            if direction == CariDirection.AR:
                debit_id, credit_id = offset_id, control_id
            else:
                debit_id, credit_id = control_id, offset_id

            now = datetime.now(timezone.utc)
            batch = SettlementBatch(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                legal_entity_id=legal_entity_id,
                counterparty_id=counterparty.id,
                settlement_no=self._next_settlement_no(legal_entity_id, settlement_date),
                direction=direction,
                settlement_date=settlement_date,
                currency_code=currency,
                incoming_amount_txn=funds,
                total_allocated_txn=total_txn,
                total_allocated_base=total_base,
                idempotency_key=idempotency_key,
                payment_channel=channel,
                cash_transaction_id=cash_transaction_id,
                unapplied_amount_txn=max(funds - total_txn, ZERO),
                created_by=user_id,
                allocations=batch_allocations,
            )
            description = f"Cari settlement {batch.settlement_no}"
            lines = [
                JournalLine(line_no=1, account_id=debit_id, debit_base=total_base,
                            credit_base=ZERO, description=description,
                            currency_code=currency, amount_txn=total_txn),
                JournalLine(line_no=2, account_id=credit_id, debit_base=ZERO,
                            credit_base=total_base, description=description,
                            currency_code=currency, amount_txn=-total_txn),
            ]
            journal = self.ledger.record_system_journal(
                legal_entity_id=legal_entity_id,
                book_id=book.id,
                fiscal_period_id=period.id,
                lines=lines,
                source_type=SourceType.SYSTEM,
                journal_no=f"CARI-{batch.settlement_no}",
                entry_date=settlement_date,
                description=description,
                reference_no=f"{SETTLEMENT_REFERENCE_PREFIX}{batch.id}",
                action_label="apply settlement",
                unbalanced_message="Cari settlement journal is not balanced",
                user_id=user_id,
            )
            batch.posted_journal_entry_id = journal.id
            self.records.save_record(batch, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.SETTLEMENT_APPLIED, "settlement_batch", batch.id,
                {"settlementNo": batch.settlement_no, "journalEntryId": journal.id,
                 "totalAllocatedTxn": total_txn, "allocationCount": len(batch_allocations),
                 "idempotencyKey": idempotency_key},
                user_id=user_id,
            )

        log_action(logger, "info", "Settlement applied", user_id=user_id,
                   action="cari.settlement.apply", resource=batch.id,
                   extra={"settlement_no": batch.settlement_no,
                          "total_allocated_txn": str(total_txn)})
        return {"settlement": batch, "idempotent_replay": False}

    def reverse_settlement(self, settlement_id: str, reason: Optional[str] = None,
                           principal: Optional[Principal] = None) -> SettlementBatch:
        """
        Raises:
            ConflictError: Batch not POSTED, or its period is not open
        """
        reason = (reason or "").strip() or "Settlement reversal"
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            batch = self.require_settlement(settlement_id)
            assert_scope_access(principal, [batch.legal_entity_id])
            if batch.status != SettlementStatus.POSTED:
                raise ConflictError("Only POSTED settlements can be reversed",
                                    details={"status": batch.status.value})

            journal = self.ledger.require_journal(batch.posted_journal_entry_id)
            self.fiscal.ensure_period_open(journal.book_id, journal.fiscal_period_id,
                                           "reverse settlement")
            reversal_id = self.ledger.reverse_posted_journal_within_transaction(
                journal.id, reason, user_id=user_id
            )

            for allocation in batch.allocations:
                item = self.documents.get_open_item(allocation.open_item_id)
                if item is None:
                    raise NotFoundError("Open item not found",
                                        details={"openItemId": allocation.open_item_id})
                item.residual_amount_txn = min(item.residual_amount_txn + allocation.amount_txn,
                                               item.original_amount_txn)
                item.residual_amount_base = min(item.residual_amount_base + allocation.amount_base,
                                                item.original_amount_base)
                self.documents.save_open_item(item)

            now = datetime.now(timezone.utc)
            batch.status = SettlementStatus.REVERSED
            batch.reversal_journal_entry_id = reversal_id
            batch.reverse_reason = reason
            batch.reversed_at = now
            batch.updated_at = now
            self.records.save_record(batch, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.SETTLEMENT_REVERSED, "settlement_batch", batch.id,
                {"reversalJournalEntryId": reversal_id, "reason": reason},
                user_id=user_id,
            )

        log_action(logger, "info", "Settlement reversed", user_id=user_id,
                   action="cari.settlement.reverse", resource=batch.id,
                   extra={"reversal_journal_entry_id": reversal_id})
        return batch

    def get_settlement(self, settlement_id: str) -> Optional[SettlementBatch]:
        return self.records.load_record(SettlementBatch, self.table_name, settlement_id)

    def require_settlement(self, settlement_id: str) -> SettlementBatch:
        batch = self.get_settlement(settlement_id) if settlement_id else None
        if batch is None:
            raise NotFoundError("Settlement batch not found",
                                details={"settlementBatchId": settlement_id})
        return batch

    def list_settlements(self, legal_entity_id: Optional[str] = None,
                         counterparty_id: Optional[str] = None) -> List[SettlementBatch]:
        filters: Dict[str, Any] = {}
        if legal_entity_id:
            filters['legal_entity_id'] = legal_entity_id
        if counterparty_id:
            filters['counterparty_id'] = counterparty_id
        batches = self.records.find_records(SettlementBatch, self.table_name, filters)
        return sorted(batches, key=lambda b: b.created_at, reverse=True)
