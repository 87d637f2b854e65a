"""
Double-Entry Ledger Engine

Journals move DRAFT -> POSTED -> REVERSED. Every journal balances within
BALANCE_EPSILON and every line carries exactly one positive side. Posting
checks the period status of every journal it touches; reversals never edit a
posted journal, they add a swapped copy.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .filters import JournalFilter
from .logging_config import get_logger, log_action
from .money import BALANCE_EPSILON, ZERO, amounts_balance, to_amount
from .rbac import Permission, Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager, coerce_value, serialize_value


logger = get_logger("finance_core.ledger")


class JournalStatus(Enum):
    DRAFT = "DRAFT"
    POSTED = "POSTED"
    REVERSED = "REVERSED"


class SourceType(Enum):
    MANUAL = "MANUAL"
    SYSTEM = "SYSTEM"
    INTERCOMPANY = "INTERCOMPANY"
    ELIMINATION = "ELIMINATION"
    ADJUSTMENT = "ADJUSTMENT"
    CASH = "CASH"


class CashControlMode(Enum):
    OFF = "OFF"
    WARN = "WARN"
    ENFORCE = "ENFORCE"


@dataclass
class JournalLine:
    """
    One debit or credit row. Exactly one of debit_base/credit_base is
    positive, the other is exactly zero.
    """
    line_no: int
    account_id: str
    debit_base: Decimal
    credit_base: Decimal
    description: Optional[str] = None
    operating_unit_id: Optional[str] = None
    counterparty_legal_entity_id: Optional[str] = None
    subledger_reference_no: Optional[str] = None
    currency_code: Optional[str] = None
    amount_txn: Optional[Decimal] = None

    def __post_init__(self):
        self.debit_base = to_amount(self.debit_base, "debitBase")
        self.credit_base = to_amount(self.credit_base, "creditBase")
        if self.debit_base < ZERO or self.credit_base < ZERO:
            raise ValueError("Journal line amounts cannot be negative")
        if (self.debit_base > ZERO) == (self.credit_base > ZERO):
            raise ValueError("Journal line must have exactly one side > 0")
        if self.amount_txn is None:
            self.amount_txn = self.debit_base - self.credit_base
        else:
            self.amount_txn = to_amount(self.amount_txn, "amountTxn")

    @property
    def net(self) -> Decimal:
        return self.debit_base - self.credit_base

    def swapped(self, description: Optional[str] = None) -> 'JournalLine':
        """Same line on the opposite side, used by reversals and mirrors"""
        return JournalLine(
            line_no=self.line_no,
            account_id=self.account_id,
            debit_base=self.credit_base,
            credit_base=self.debit_base,
            description=description if description is not None else self.description,
            operating_unit_id=self.operating_unit_id,
            counterparty_legal_entity_id=self.counterparty_legal_entity_id,
            subledger_reference_no=self.subledger_reference_no,
            currency_code=self.currency_code,
            amount_txn=-self.amount_txn,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {name: serialize_value(value) for name, value in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalLine':
        data = dict(data)
        for key in ('debit_base', 'credit_base', 'amount_txn'):
            data[key] = coerce_value(data.get(key), Decimal)
        return cls(**data)


def line_totals(lines: List[JournalLine]) -> Tuple[Decimal, Decimal]:
    total_debit = sum((line.debit_base for line in lines), ZERO)
    total_credit = sum((line.credit_base for line in lines), ZERO)
    return total_debit, total_credit


def ensure_balanced(lines: List[JournalLine], message: str = "Journal is not balanced",
                    epsilon: Decimal = BALANCE_EPSILON) -> Tuple[Decimal, Decimal]:
    total_debit, total_credit = line_totals(lines)
    if not amounts_balance(total_debit, total_credit, epsilon):
        raise ValidationError(message, details={
            "totalDebit": str(total_debit),
            "totalCredit": str(total_credit),
        })
    return total_debit, total_credit


@dataclass
class JournalEntry(StorageRecord):
    legal_entity_id: str
    book_id: str
    fiscal_period_id: str
    journal_no: str
    source_type: SourceType
    status: JournalStatus
    entry_date: date
    document_date: date
    currency_code: str
    description: Optional[str]
    reference_no: Optional[str]
    lines: List[JournalLine]
    total_debit_base: Decimal
    total_credit_base: Decimal
    created_by: Optional[str] = None
    posted_by: Optional[str] = None
    posted_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    reverse_reason: Optional[str] = None
    reversal_journal_entry_id: Optional[str] = None
    reversal_of_journal_entry_id: Optional[str] = None
    intercompany_source_journal_entry_id: Optional[str] = None

    def post(self, user_id: Optional[str]) -> None:
        if self.status != JournalStatus.DRAFT:
            raise ConflictError("Only DRAFT journals can be posted",
                                details={"journalId": self.id, "status": self.status.value})
        self.status = JournalStatus.POSTED
        self.posted_by = user_id
        self.posted_at = datetime.now(timezone.utc)
        self.updated_at = self.posted_at

    def mark_reversed(self, reversal_id: str, reason: Optional[str]) -> None:
        if self.status != JournalStatus.POSTED:
            raise ConflictError("Only POSTED journals can be reversed")
        self.status = JournalStatus.REVERSED
        self.reversal_journal_entry_id = reversal_id
        self.reverse_reason = reason
        self.reversed_at = datetime.now(timezone.utc)
        self.updated_at = self.reversed_at


def generate_journal_no(prefix: str = "JRN") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:6].upper()}"


PostHook = Callable[[JournalEntry, Optional[Principal]], Dict[str, Any]]


class GeneralLedger:
    """
    Journal lifecycle: create, post (optionally with linked intercompany
    mirrors), reverse, and the system-journal entry point used by the cash,
    subledger and period-close flows.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 fiscal, accounts, validator, intercompany=None,
                 cash_control_mode: str = "OFF",
                 balance_epsilon: Decimal = BALANCE_EPSILON):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.fiscal = fiscal
        self.accounts = accounts
        self.validator = validator
        self.intercompany = intercompany
        self.cash_control_mode = CashControlMode((cash_control_mode or "OFF").upper())
        self.balance_epsilon = Decimal(str(balance_epsilon))
        self.table_name = "journal_entries"
        self._post_hooks: List[Tuple[str, PostHook]] = []

    def register_post_hook(self, name: str, hook: PostHook) -> None:
        """Hooks run after a posting commits; failures are reported, never raised"""
        self._post_hooks.append((name, hook))

    # Create

    def create_journal(
        self,
        legal_entity_id: str,
        book_id: str,
        fiscal_period_id: str,
        lines: List[Dict[str, Any]],
        entry_date: Optional[date] = None,
        document_date: Optional[date] = None,
        currency_code: Optional[str] = None,
        source_type: SourceType = SourceType.MANUAL,
        description: Optional[str] = None,
        reference_no: Optional[str] = None,
        journal_no: Optional[str] = None,
        auto_mirror: bool = False,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Validate and store a DRAFT journal, plus its intercompany mirrors when
        auto_mirror is set.

        Raises:
            ValidationError: Reserved source type, bad lines, policy or balance
            NotFoundError: Unknown legal entity, book, period or account
            ConflictError: Period not open
        """
        source_type = SourceType((source_type or SourceType.MANUAL))
        self.validator.reject_reserved_source_type(source_type)
        if len(lines or []) < 2:
            raise ValidationError("At least 2 journal lines are required")
        if auto_mirror and source_type != SourceType.INTERCOMPANY:
            raise ValidationError("autoMirror is only supported for sourceType=INTERCOMPANY")
        assert_scope_access(principal, [legal_entity_id])

        user_id = principal.user_id if principal else None
        with self.storage.atomic():
            legal_entity, book, period = self.validator.resolve_header(
                legal_entity_id, book_id, fiscal_period_id
            )
            self.fiscal.ensure_period_open(book.id, period.id, "create journal")

            currency = (currency_code or book.base_currency_code).upper()
            journal_lines = self.validator.build_lines(lines, currency)
            self.validator.validate_line_scope(legal_entity, journal_lines)
            self.validator.validate_intercompany_policy(legal_entity, source_type, journal_lines)
            total_debit, total_credit = ensure_balanced(
                journal_lines, epsilon=self.balance_epsilon
            )

            entry_date = entry_date or period.start_date
            journal = self._new_journal(
                legal_entity_id=legal_entity.id,
                book_id=book.id,
                fiscal_period_id=period.id,
                journal_no=journal_no or generate_journal_no(),
                source_type=source_type,
                status=JournalStatus.DRAFT,
                entry_date=entry_date,
                document_date=document_date or entry_date,
                currency_code=currency,
                description=description,
                reference_no=reference_no,
                lines=journal_lines,
                created_by=user_id,
            )
            self._save_entry(journal)

            mirrors: List[JournalEntry] = []
            if auto_mirror:
                mirrors = self.intercompany.build_mirror_journals(journal, principal)
                for mirror in mirrors:
                    self._save_entry(mirror)

            self.audit_trail.log_event(
                AuditEventType.JOURNAL_CREATED, "journal_entry", journal.id,
                {
                    "journalNo": journal.journal_no,
                    "sourceType": source_type.value,
                    "totalDebit": total_debit,
                    "totalCredit": total_credit,
                    "mirrorJournalEntryIds": [m.id for m in mirrors],
                },
                user_id=user_id,
            )

        log_action(logger, "info", "Journal created", user_id=user_id,
                   action="gl.journal.create", resource=journal.id,
                   extra={"journal_no": journal.journal_no, "mirrors": len(mirrors)})

        return {
            "journal": journal,
            "auto_mirror_applied": bool(mirrors),
            "mirror_journal_entry_ids": [m.id for m in mirrors],
        }

    def _new_journal(self, lines: List[JournalLine], **kwargs) -> JournalEntry:
        now = datetime.now(timezone.utc)
        total_debit, total_credit = line_totals(lines)
        return JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lines=lines,
            total_debit_base=total_debit,
            total_credit_base=total_credit,
            **kwargs,
        )

    # Post

    def _cluster_for(self, journal: JournalEntry) -> List[JournalEntry]:
        source_id = journal.intercompany_source_journal_entry_id or journal.id
        source = self.require_journal(source_id)
        mirrors = self.records.find_records(
            JournalEntry, self.table_name, {'intercompany_source_journal_entry_id': source_id}
        )
        return [source] + sorted(mirrors, key=lambda j: j.journal_no)

    def _check_cash_control(self, journal: JournalEntry, override: bool,
                            override_reason: Optional[str],
                            principal: Optional[Principal]) -> None:
        if journal.source_type == SourceType.CASH or self.cash_control_mode == CashControlMode.OFF:
            return

        controlled = []
        for line in journal.lines:
            account = self.accounts.get_account(line.account_id)
            if account and account.is_cash_controlled:
                controlled.append(account.code)
        if not controlled:
            return

        summary = ", ".join(sorted(set(controlled)))
        user_id = principal.user_id if principal else None

        if override:
            if not (override_reason or "").strip():
                raise ValidationError(
                    "overrideReason is required when overriding cash-controlled account posting"
                )
            if principal is not None:
                principal.require_permission(Permission.CASH_CONTROL_OVERRIDE)
            self.audit_trail.log_event(
                AuditEventType.CASH_CONTROL_OVERRIDE, "journal_entry", journal.id,
                {"accounts": summary, "overrideReason": override_reason,
                 "mode": self.cash_control_mode.value},
                user_id=user_id,
            )
            return

        if self.cash_control_mode == CashControlMode.WARN:
            self.audit_trail.log_event(
                AuditEventType.CASH_CONTROL_WARNING, "journal_entry", journal.id,
                {"accounts": summary},
                user_id=user_id,
            )
            log_action(logger, "warning", "Direct GL posting to cash-controlled accounts",
                       user_id=user_id, action="gl.journal.cash_control_warn",
                       resource=journal.id, extra={"accounts": summary})
            return

        raise ValidationError(
            f"Direct GL posting to cash-controlled account(s) [{summary}] is blocked. "
            "Use sourceType=CASH via cash transactions, or provide "
            "overrideCashControl=true with overrideReason.",
            code="CASH_CONTROL_BLOCKED",
            details={"accounts": sorted(set(controlled))},
        )

    def post_journal(
        self,
        journal_id: str,
        post_linked_mirrors: bool = False,
        override_cash_control: bool = False,
        override_reason: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Post a DRAFT journal, or its whole intercompany cluster atomically.

        Raises:
            ConflictError: Not DRAFT, or any member's period is not OPEN
            ValidationError: Unbalanced, or blocked by cash control
        """
        user_id = principal.user_id if principal else None
        with self.storage.atomic():
            journal = self.require_journal(journal_id)
            if journal.status != JournalStatus.DRAFT:
                raise ConflictError("Only DRAFT journals can be posted",
                                    details={"journalId": journal.id, "status": journal.status.value})

            if post_linked_mirrors:
                cluster = [j for j in self._cluster_for(journal) if j.status == JournalStatus.DRAFT]
            else:
                cluster = [journal]
            assert_scope_access(principal, {j.legal_entity_id for j in cluster})

            for member in cluster:
                self.fiscal.ensure_period_open(member.book_id, member.fiscal_period_id, "post journal")
                ensure_balanced(member.lines, epsilon=self.balance_epsilon)
                self._check_cash_control(member, override_cash_control, override_reason, principal)

            for member in cluster:
                member.post(user_id)
                self._save_entry(member)
                if member.reversal_of_journal_entry_id:
                    original = self.require_journal(member.reversal_of_journal_entry_id)
                    if original.status == JournalStatus.POSTED:
                        original.mark_reversed(member.id, member.reverse_reason)
                        self._save_entry(original)
                self.audit_trail.log_event(
                    AuditEventType.JOURNAL_POSTED, "journal_entry", member.id,
                    {"journalNo": member.journal_no, "linkedMirrorPosting": post_linked_mirrors},
                    user_id=user_id,
                )

        posted_ids = [member.id for member in cluster]
        log_action(logger, "info", "Journal posted", user_id=user_id,
                   action="gl.journal.post", resource=journal.id,
                   extra={"posted_journal_ids": posted_ids})

        sync_rows = []
        for member in cluster:
            sync_rows.extend(self._run_post_hooks(member, principal))

        source_id = journal.intercompany_source_journal_entry_id or journal.id
        return {
            "journal_id": journal.id,
            "posted": True,
            "posted_journal_ids": posted_ids,
            "linked_mirror_posting": post_linked_mirrors,
            "source_journal_id": source_id,
            "shareholder_commitment_sync": sync_rows,
        }

    def _run_post_hooks(self, journal: JournalEntry,
                        principal: Optional[Principal]) -> List[Dict[str, Any]]:
        results = []
        for name, hook in self._post_hooks:
            try:
                result = hook(journal, principal)
            except Exception as exc:
                logger.exception("Post hook %s failed for journal %s", name, journal.id)
                result = {"hook": name, "journal_id": journal.id, "ok": False, "error": str(exc)}
            if result:
                results.append(result)
        return results

    # Reverse

    def _build_reversal(self, original: JournalEntry, period, reason: str,
                        status: JournalStatus, user_id: Optional[str]) -> JournalEntry:
        entry_date = original.entry_date if period.id == original.fiscal_period_id else period.start_date
        lines = [line.swapped() for line in original.lines]
        reversal = self._new_journal(
            legal_entity_id=original.legal_entity_id,
            book_id=original.book_id,
            fiscal_period_id=period.id,
            journal_no=f"{original.journal_no}-REV",
            source_type=original.source_type,
            status=status,
            entry_date=entry_date,
            document_date=entry_date,
            currency_code=original.currency_code,
            description=f"Reversal of {original.journal_no}",
            reference_no=original.reference_no,
            lines=lines,
            created_by=user_id,
            reverse_reason=reason,
            reversal_of_journal_entry_id=original.id,
        )
        if status == JournalStatus.POSTED:
            reversal.posted_by = user_id
            reversal.posted_at = reversal.created_at
        return reversal

    def reverse_journal(
        self,
        journal_id: str,
        reversal_period_id: Optional[str] = None,
        reason: Optional[str] = None,
        auto_post: bool = True,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Reverse a POSTED journal with a swapped copy.

        With auto_post the copy is POSTED and the original becomes REVERSED;
        otherwise the copy stays DRAFT and the original flips when it posts.
        """
        reason = (reason or "").strip() or "Manual reversal"
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            original = self.require_journal(journal_id)
            assert_scope_access(principal, [original.legal_entity_id])
            if original.status == JournalStatus.REVERSED or original.reversal_journal_entry_id:
                raise ConflictError("Journal is already reversed",
                                    details={"journalId": original.id})
            if original.status != JournalStatus.POSTED:
                raise ConflictError("Only POSTED journals can be reversed",
                                    details={"journalId": original.id, "status": original.status.value})
            if original.source_type == SourceType.CASH:
                raise ValidationError(
                    "Cash journals are reversed via /api/v1/cash/transactions/{transactionId}/reverse"
                )

            book = self.fiscal.require_book(original.book_id)
            period = self.fiscal.require_period_in_book(
                book, reversal_period_id or original.fiscal_period_id, "reversalPeriodId"
            )
            self.fiscal.ensure_period_open(book.id, period.id, "reverse journal")

            status = JournalStatus.POSTED if auto_post else JournalStatus.DRAFT
            reversal = self._build_reversal(original, period, reason, status, user_id)
            self._save_entry(reversal)

            if auto_post:
                original.mark_reversed(reversal.id, reason)
            else:
                original.reversal_journal_entry_id = reversal.id
                original.touch()
            self._save_entry(original)

            self.audit_trail.log_event(
                AuditEventType.JOURNAL_REVERSED, "journal_entry", original.id,
                {"reversalJournalId": reversal.id, "reason": reason, "autoPost": auto_post},
                user_id=user_id,
            )

        log_action(logger, "info", "Journal reversed", user_id=user_id,
                   action="gl.journal.reverse", resource=original.id,
                   extra={"reversal_journal_id": reversal.id})

        return {
            "original_journal_id": original.id,
            "reversal_journal_id": reversal.id,
            "reversal_status": reversal.status.value,
            "original_marked_reversed": auto_post,
        }

    def reverse_posted_journal_within_transaction(self, journal_id: str, reason: str,
                                                  user_id: Optional[str] = None) -> str:
        """
        Reverse a system journal inside the caller's transaction, in its own
        period, without period gating. Returns the reversal id; a journal that
        is already REVERSED returns its existing reversal.
        """
        if not self.storage.in_atomic_block:
            raise RuntimeError("reverse_posted_journal_within_transaction needs an open transaction")

        original = self.require_journal(journal_id)
        if original.status == JournalStatus.REVERSED and original.reversal_journal_entry_id:
            return original.reversal_journal_entry_id
        if original.status != JournalStatus.POSTED:
            raise ConflictError("Only POSTED journals can be reversed",
                                details={"journalId": original.id, "status": original.status.value})

        period = self.fiscal.require_period(original.fiscal_period_id)
        reversal = self._build_reversal(original, period, reason, JournalStatus.POSTED, user_id)
        self._save_entry(reversal)
        original.mark_reversed(reversal.id, reason)
        self._save_entry(original)
        self.audit_trail.log_event(
            AuditEventType.JOURNAL_REVERSED, "journal_entry", original.id,
            {"reversalJournalId": reversal.id, "reason": reason, "system": True},
            user_id=user_id,
        )
        return reversal.id

    # System journals

    def record_system_journal(
        self,
        legal_entity_id: str,
        book_id: str,
        fiscal_period_id: str,
        lines: List[JournalLine],
        source_type: SourceType,
        journal_no: str,
        entry_date: date,
        description: Optional[str],
        reference_no: Optional[str],
        currency_code: Optional[str] = None,
        action_label: str = "post journal",
        validate_lines: bool = True,
        require_open: bool = True,
        unbalanced_message: str = "Journal is not balanced",
        user_id: Optional[str] = None,
    ) -> JournalEntry:
        """
        Write an already-built journal directly as POSTED. Used by cash
        postings, subledger documents, settlements and period close, each of
        which brings its own idempotency. Must run inside the caller's
        transaction.
        """
        if not self.storage.in_atomic_block:
            raise RuntimeError("record_system_journal needs an open transaction")

        book = self.fiscal.require_book(book_id)
        if require_open:
            self.fiscal.ensure_period_open(book.id, fiscal_period_id, action_label)
        currency = (currency_code or book.base_currency_code).upper()
        if currency != book.base_currency_code:
            raise ValidationError("Journal currency must match the book base currency",
                                  details={"currencyCode": currency,
                                           "baseCurrencyCode": book.base_currency_code})
        if validate_lines:
            legal_entity = self.validator.organization.require_legal_entity(legal_entity_id)
            self.validator.validate_line_scope(legal_entity, lines)
        ensure_balanced(lines, unbalanced_message, epsilon=self.balance_epsilon)

        now = datetime.now(timezone.utc)
        journal = self._new_journal(
            legal_entity_id=legal_entity_id,
            book_id=book.id,
            fiscal_period_id=fiscal_period_id,
            journal_no=journal_no[:40],
            source_type=source_type,
            status=JournalStatus.POSTED,
            entry_date=entry_date,
            document_date=entry_date,
            currency_code=currency,
            description=description,
            reference_no=reference_no,
            lines=lines,
            created_by=user_id,
            posted_by=user_id,
            posted_at=now,
        )
        self._save_entry(journal)
        self.audit_trail.log_event(
            AuditEventType.JOURNAL_POSTED, "journal_entry", journal.id,
            {"journalNo": journal.journal_no, "sourceType": source_type.value,
             "referenceNo": reference_no, "system": True},
            user_id=user_id,
        )
        return journal

    # Reads

    def get_journal(self, journal_id: str) -> Optional[JournalEntry]:
        return self._load_entry(journal_id)

    def require_journal(self, journal_id: str) -> JournalEntry:
        journal = self._load_entry(journal_id) if journal_id else None
        if journal is None:
            raise NotFoundError("Journal not found", details={"journalId": journal_id})
        return journal

    def list_journals(self, journal_filter: JournalFilter) -> List[JournalEntry]:
        journals = self.records.find_records(
            JournalEntry, self.table_name, journal_filter.storage_filters()
        )
        return journal_filter.apply(
            journals, sort_key=lambda j: (j.entry_date, j.created_at), reverse=True
        )

    def find_posted_journals(self, book_id: str, fiscal_period_id: str) -> List[JournalEntry]:
        """Journals that reached the ledger: POSTED plus REVERSED originals"""
        journals = []
        for status in (JournalStatus.POSTED, JournalStatus.REVERSED):
            journals.extend(self.records.find_records(JournalEntry, self.table_name, {
                'book_id': book_id,
                'fiscal_period_id': fiscal_period_id,
                'status': status.value,
            }))
        return journals

    def find_by_reference(self, reference_no: str) -> List[JournalEntry]:
        return self.records.find_records(JournalEntry, self.table_name, {'reference_no': reference_no})

    def _save_entry(self, entry: JournalEntry) -> None:
        self.records.save_record(entry, self.table_name)

    def _load_entry(self, entry_id: str) -> Optional[JournalEntry]:
        return self.records.load_record(JournalEntry, self.table_name, entry_id)
