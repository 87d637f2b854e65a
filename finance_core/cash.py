"""
Cash Management Module

Registers, count sessions and cash transactions. A transaction is drafted
against a register, optionally submitted for approval, and posted into the
general ledger as a CASH journal. Posted transactions are undone by a posted
reversal transaction, never by editing the original.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountManager, ChartScope
from .approvals import ApprovalManager, ApprovalRequest
from .audit import AuditEventType, AuditTrail
from .cash_posting import (
    COUNTER_ACCOUNT_TYPES, INFLOW_TYPES, OUTFLOW_TYPES, TRANSFER_TYPES,
    CashJournalPoster, CashTxnType, validate_transfer,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .filters import CashTransactionFilter
from .fiscal import FiscalManager
from .ledger import GeneralLedger
from .logging_config import get_logger, log_action
from .money import BALANCE_EPSILON, ZERO, is_nearly_zero, normalize_currency_code, to_amount
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


logger = get_logger("finance_core.cash")

CASH_APPROVAL_ACTION = "cash_transaction.approve"


class RegisterStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SessionMode(Enum):
    NONE = "NONE"
    OPTIONAL = "OPTIONAL"
    REQUIRED = "REQUIRED"


class SessionStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(Enum):
    END_SHIFT = "END_SHIFT"
    FORCED_CLOSE = "FORCED_CLOSE"
    COUNT_CORRECTION = "COUNT_CORRECTION"


class CashTxnStatus(Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    POSTED = "POSTED"
    REVERSED = "REVERSED"
    CANCELLED = "CANCELLED"


UNPOSTED_STATUSES = (CashTxnStatus.DRAFT, CashTxnStatus.SUBMITTED, CashTxnStatus.APPROVED)


@dataclass
class CashRegister(StorageRecord):
    legal_entity_id: str
    code: str
    name: str
    account_id: str
    currency_code: str
    operating_unit_id: Optional[str] = None
    session_mode: SessionMode = SessionMode.OPTIONAL
    status: RegisterStatus = RegisterStatus.ACTIVE
    max_txn_amount: Decimal = ZERO
    requires_approval_over_amount: Decimal = ZERO
    variance_gain_account_id: Optional[str] = None
    variance_loss_account_id: Optional[str] = None


@dataclass
class CashSession(StorageRecord):
    cash_register_id: str
    status: SessionStatus
    opening_amount: Decimal
    opened_by: Optional[str] = None
    expected_closing_amount: Optional[Decimal] = None
    counted_closing_amount: Optional[Decimal] = None
    variance_amount: Optional[Decimal] = None
    closed_reason: Optional[CloseReason] = None
    close_note: Optional[str] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    variance_approved_by: Optional[str] = None
    variance_transaction_id: Optional[str] = None


@dataclass
class CashTransaction(StorageRecord):
    cash_register_id: str
    legal_entity_id: str
    txn_no: str
    txn_type: CashTxnType
    status: CashTxnStatus
    book_date: date
    amount: Decimal
    currency_code: str
    cash_session_id: Optional[str] = None
    description: Optional[str] = None
    reference_no: Optional[str] = None
    counter_account_id: Optional[str] = None
    counter_cash_register_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_by: Optional[str] = None
    posted_journal_entry_id: Optional[str] = None
    posted_by: Optional[str] = None
    posted_at: Optional[datetime] = None
    reversal_of_transaction_id: Optional[str] = None
    reversed_by_transaction_id: Optional[str] = None
    approval_request_id: Optional[str] = None
    cancel_reason: Optional[str] = None


class CashManager:
    """
    Register setup, session open/close with variance posting, and the
    transaction lifecycle DRAFT -> (SUBMITTED -> APPROVED) -> POSTED -> REVERSED.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager, fiscal: FiscalManager,
                 accounts: AccountManager, ledger: GeneralLedger,
                 approvals: ApprovalManager):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.fiscal = fiscal
        self.accounts = accounts
        self.poster = CashJournalPoster(fiscal, ledger)
        self.approvals = approvals
        self.registers_table = "cash_registers"
        self.sessions_table = "cash_sessions"
        self.transactions_table = "cash_transactions"

        approvals.register_action(CASH_APPROVAL_ACTION, self._apply_approval)

    # Registers

    def _register_account_problem(self, account: Account, legal_entity_id: str,
                                  label: str) -> Optional[str]:
        chart = self.accounts.get_chart(account.coa_id)
        if chart is None or chart.scope != ChartScope.LEGAL_ENTITY:
            return f"{label} must belong to a LEGAL_ENTITY chart of accounts"
        if chart.legal_entity_id != legal_entity_id:
            return f"{label} must belong to the selected legalEntityId"
        if not account.allow_posting:
            return f"{label} must allow posting"
        if not account.is_active:
            return f"{label} must be active"
        if self.accounts.has_active_children(account.id):
            return f"{label} must be a leaf account"
        return None

    def _require_eligible_account(self, account_id: str, legal_entity_id: str,
                                  label: str) -> Account:
        account = self.accounts.require_account(account_id, label)
        problem = self._register_account_problem(account, legal_entity_id, label)
        if problem:
            raise ValidationError(problem)
        return account

    def create_register(
        self,
        legal_entity_id: str,
        code: str,
        name: str,
        account_id: str,
        currency_code: Optional[str] = None,
        operating_unit_id: Optional[str] = None,
        session_mode: SessionMode = SessionMode.OPTIONAL,
        max_txn_amount: Any = None,
        requires_approval_over_amount: Any = None,
        variance_gain_account_id: Optional[str] = None,
        variance_loss_account_id: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> CashRegister:
        """
        Raises:
            ValidationError: Ineligible account, unit outside the legal entity
            ConflictError: Register code already used in the legal entity
        """
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("code is required")
        assert_scope_access(principal, [legal_entity_id])
        max_amount = to_amount(max_txn_amount, "maxTxnAmount")
        threshold = to_amount(requires_approval_over_amount, "requiresApprovalOverAmount")
        if max_amount < ZERO or threshold < ZERO:
            raise ValidationError("Register amount limits cannot be negative")

        with self.storage.atomic():
            entity = self.organization.require_legal_entity(legal_entity_id)
            account = self._require_eligible_account(account_id, legal_entity_id, "accountId")
            if not account.is_cash_controlled:
                raise ValidationError("Cash register account must be cash-controlled")
            for label, variance_account_id in (("varianceGainAccountId", variance_gain_account_id),
                                               ("varianceLossAccountId", variance_loss_account_id)):
                if variance_account_id:
                    self._require_eligible_account(variance_account_id, legal_entity_id, label)
            if operating_unit_id:
                unit = self.organization.get_operating_unit(operating_unit_id)
                if unit is None or unit.legal_entity_id != legal_entity_id:
                    raise ValidationError("operatingUnitId must belong to legalEntityId")
            if self.records.find_one(CashRegister, self.registers_table,
                                     {'legal_entity_id': legal_entity_id, 'code': code}):
                raise ConflictError(f"Cash register code already exists: {code}")

            now = datetime.now(timezone.utc)
            register = CashRegister(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                legal_entity_id=legal_entity_id,
                code=code,
                name=name,
                account_id=account.id,
                currency_code=normalize_currency_code(
                    currency_code or entity.functional_currency_code
                ),
                operating_unit_id=operating_unit_id,
                session_mode=SessionMode(session_mode),
                max_txn_amount=max_amount,
                requires_approval_over_amount=threshold,
                variance_gain_account_id=variance_gain_account_id,
                variance_loss_account_id=variance_loss_account_id,
            )
            self.records.save_record(register, self.registers_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_REGISTER_CREATED, "cash_register", register.id,
                {"legalEntityId": legal_entity_id, "code": code, "accountId": account.id,
                 "sessionMode": register.session_mode.value},
                user_id=principal.user_id if principal else None,
            )
        return register

    def set_register_status(self, register_id: str, status: RegisterStatus,
                            principal: Optional[Principal] = None) -> CashRegister:
        status = RegisterStatus(status)
        with self.storage.atomic():
            register = self.require_register(register_id)
            assert_scope_access(principal, [register.legal_entity_id])
            previous = register.status
            register.status = status
            register.touch()
            self.records.save_record(register, self.registers_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_REGISTER_STATUS_CHANGED, "cash_register", register.id,
                {"previousStatus": previous.value, "status": status.value},
                user_id=principal.user_id if principal else None,
            )
        return register

    def get_register(self, register_id: str) -> Optional[CashRegister]:
        return self.records.load_record(CashRegister, self.registers_table, register_id)

    def require_register(self, register_id: str, field_name: str = "registerId") -> CashRegister:
        register = self.get_register(register_id) if register_id else None
        if register is None:
            raise NotFoundError(f"{field_name} not found for tenant")
        return register

    def list_registers(self, legal_entity_id: Optional[str] = None,
                       status: Optional[RegisterStatus] = None) -> List[CashRegister]:
        filters: Dict[str, Any] = {}
        if legal_entity_id:
            filters['legal_entity_id'] = legal_entity_id
        if status is not None:
            filters['status'] = RegisterStatus(status).value
        registers = self.records.find_records(CashRegister, self.registers_table, filters)
        return sorted(registers, key=lambda r: r.code)

    def _assert_register_operational(self, register: CashRegister) -> None:
        if register.status != RegisterStatus.ACTIVE:
            raise ValidationError("Cash register is not ACTIVE")
        account = self.accounts.get_account(register.account_id)
        if account is None:
            raise ValidationError("Cash register account not found")
        problem = self._register_account_problem(account, register.legal_entity_id,
                                                 "Cash register account")
        if problem:
            raise ValidationError(problem)
        if not account.is_cash_controlled:
            raise ValidationError("Cash register account must be cash-controlled")

    # Sessions

    def get_session(self, session_id: str) -> Optional[CashSession]:
        return self.records.load_record(CashSession, self.sessions_table, session_id)

    def find_open_session(self, register_id: str) -> Optional[CashSession]:
        return self.records.find_one(CashSession, self.sessions_table, {
            'cash_register_id': register_id, 'status': SessionStatus.OPEN.value,
        })

    def list_sessions(self, register_id: str) -> List[CashSession]:
        sessions = self.records.find_records(CashSession, self.sessions_table,
                                             {'cash_register_id': register_id})
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def open_session(self, register_id: str, opening_amount: Any = None,
                     principal: Optional[Principal] = None) -> CashSession:
        """
        Raises:
            ValidationError: Register inactive or running without sessions
            ConflictError: An OPEN session already exists
        """
        opening = to_amount(opening_amount, "openingAmount")
        if opening < ZERO:
            raise ValidationError("openingAmount cannot be negative")
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            register = self.require_register(register_id)
            assert_scope_access(principal, [register.legal_entity_id])
            self._assert_register_operational(register)
            if register.session_mode == SessionMode.NONE:
                raise ValidationError("Cash register session_mode is NONE")
            if self.find_open_session(register.id) is not None:
                raise ConflictError("An OPEN session already exists for this register")

            now = datetime.now(timezone.utc)
            session = CashSession(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                cash_register_id=register.id,
                status=SessionStatus.OPEN,
                opening_amount=opening,
                opened_by=user_id,
            )
            self.records.save_record(session, self.sessions_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_SESSION_OPENED, "cash_session", session.id,
                {"registerId": register.id, "openingAmount": opening},
                user_id=user_id,
            )
        return session

    def session_movement(self, register_id: str, session_id: str) -> Decimal:
        """
        Net booked cash movement of a session: inflows minus outflows. Reversal
        transactions count with the opposite sign, so a reversed pair nets out.
        """
        movement = ZERO
        for txn in self.records.find_records(CashTransaction, self.transactions_table, {
            'cash_register_id': register_id,
            'cash_session_id': session_id,
        }):
            if txn.status not in (CashTxnStatus.POSTED, CashTxnStatus.REVERSED):
                continue
            sign = -1 if txn.reversal_of_transaction_id else 1
            if txn.txn_type in INFLOW_TYPES:
                movement += sign * txn.amount
            elif txn.txn_type in OUTFLOW_TYPES:
                movement -= sign * txn.amount
        return movement

    def close_session(
        self,
        session_id: str,
        counted_closing_amount: Any,
        closed_reason: CloseReason = CloseReason.END_SHIFT,
        close_note: Optional[str] = None,
        approve_variance: bool = False,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Count the drawer and close the session. A non-zero variance is booked
        immediately as a system VARIANCE transaction against the register's
        gain or loss account.

        Raises:
            ConflictError: Session not OPEN, or unposted transactions remain
            ValidationError: Missing note, unapproved variance, missing variance account
        """
        counted = to_amount(counted_closing_amount, "countedClosingAmount")
        if counted < ZERO:
            raise ValidationError("countedClosingAmount cannot be negative")
        closed_reason = CloseReason(closed_reason)
        close_note = (close_note or "").strip() or None
        if closed_reason == CloseReason.FORCED_CLOSE and not close_note:
            raise ValidationError("closeNote is required when closedReason is FORCED_CLOSE")
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            session = self.get_session(session_id) if session_id else None
            if session is None:
                raise NotFoundError("Cash session not found")
            register = self.require_register(session.cash_register_id)
            assert_scope_access(principal, [register.legal_entity_id])
            if session.status != SessionStatus.OPEN:
                raise ConflictError("Only OPEN sessions can be closed")

            unposted = [
                t for t in self.records.find_records(CashTransaction, self.transactions_table,
                                                     {'cash_session_id': session.id})
                if t.status in UNPOSTED_STATUSES
            ]
            if unposted:
                raise ConflictError(
                    "Cannot close session while DRAFT/SUBMITTED/APPROVED transactions exist",
                    details={"transactionIds": [t.id for t in unposted]},
                )

            expected = session.opening_amount + self.session_movement(register.id, session.id)
            variance = counted - expected
            threshold = register.requires_approval_over_amount or ZERO
            approval_required = threshold > ZERO and abs(variance) - threshold > BALANCE_EPSILON
            if approval_required:
                if not close_note:
                    raise ValidationError("closeNote is required when variance exceeds approval threshold")
                if not approve_variance:
                    raise ValidationError(
                        "Variance exceeds configured threshold; supervisor/finance approval is required"
                    )

            variance_txn = None
            if not is_nearly_zero(variance):
                variance_txn = self._post_session_variance(register, session, variance, user_id)

            now = datetime.now(timezone.utc)
            session.status = SessionStatus.CLOSED
            session.expected_closing_amount = expected
            session.counted_closing_amount = counted
            session.variance_amount = variance
            session.closed_reason = closed_reason
            session.close_note = close_note
            session.closed_by = user_id
            session.closed_at = now
            session.updated_at = now
            if approval_required:
                session.variance_approved_by = user_id
            if variance_txn is not None:
                session.variance_transaction_id = variance_txn.id
            self.records.save_record(session, self.sessions_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_SESSION_CLOSED, "cash_session", session.id,
                {"registerId": register.id, "expected": expected, "counted": counted,
                 "variance": variance, "closedReason": closed_reason.value,
                 "varianceTransactionId": session.variance_transaction_id},
                user_id=user_id,
            )

        log_action(logger, "info", "Cash session closed", user_id=user_id,
                   action="cash.session.close", resource=session.id,
                   extra={"variance": str(variance)})

        return {
            "session": session,
            "variance_auto_posted": variance_txn is not None,
            "variance_transaction_id": session.variance_transaction_id,
            "variance_approval_required": approval_required,
            "variance_approval_threshold": threshold,
        }

    def _post_session_variance(self, register: CashRegister, session: CashSession,
                               variance: Decimal, user_id: Optional[str]) -> CashTransaction:
        if variance > ZERO:
            counter_account_id = register.variance_gain_account_id
            if not counter_account_id:
                raise ValidationError(
                    "varianceGainAccountId must be configured on register for over variance"
                )
        else:
            counter_account_id = register.variance_loss_account_id
            if not counter_account_id:
                raise ValidationError(
                    "varianceLossAccountId must be configured on register for short variance"
                )

        txn = self._insert_transaction(
            register,
            txn_type=CashTxnType.VARIANCE,
            amount=abs(variance),
            book_date=datetime.now(timezone.utc).date(),
            cash_session_id=session.id,
            description=f"Session close over/short variance (session {session.id})",
            reference_no=f"SESSION:{session.id}:VARIANCE",
            counter_account_id=counter_account_id,
            idempotency_key=f"SYS-VARIANCE-SESSION-{session.id}",
            user_id=user_id,
        )
        self._post_within(txn, register, user_id)
        return txn

    # Transactions

    def get_transaction(self, transaction_id: str) -> Optional[CashTransaction]:
        return self.records.load_record(CashTransaction, self.transactions_table, transaction_id)

    def require_transaction(self, transaction_id: str) -> CashTransaction:
        txn = self.get_transaction(transaction_id) if transaction_id else None
        if txn is None:
            raise NotFoundError("Cash transaction not found",
                                details={"transactionId": transaction_id})
        return txn

    def list_transactions(self, txn_filter: CashTransactionFilter) -> List[CashTransaction]:
        txns = self.records.find_records(
            CashTransaction, self.transactions_table, txn_filter.storage_filters()
        )
        return txn_filter.apply(txns, sort_key=lambda t: (t.book_date, t.created_at), reverse=True)

    def _next_txn_no(self, register: CashRegister, book_date: date) -> str:
        entity = self.organization.require_legal_entity(register.legal_entity_id)
        prefix = f"CT-{entity.code}-{book_date.year}-"
        highest = 0
        for txn in self.records.find_records(CashTransaction, self.transactions_table,
                                             {'legal_entity_id': register.legal_entity_id}):
            if txn.txn_no.startswith(prefix):
                suffix = txn.txn_no[len(prefix):]
                if suffix.isdigit():
                    highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:06d}"

    def _resolve_session(self, register: CashRegister,
                         cash_session_id: Optional[str]) -> Optional[CashSession]:
        if cash_session_id:
            session = self.get_session(cash_session_id)
            if session is None:
                raise NotFoundError("cashSessionId not found for tenant")
            if session.cash_register_id != register.id:
                raise ValidationError("cashSessionId must belong to registerId")
            if session.status != SessionStatus.OPEN:
                raise ValidationError("cashSessionId must be OPEN")
            return session

        if register.session_mode == SessionMode.NONE:
            return None
        session = self.find_open_session(register.id)
        if session is None and register.session_mode == SessionMode.REQUIRED:
            raise ValidationError("An OPEN cash session is required for this register")
        return session

    def _insert_transaction(self, register: CashRegister, txn_type: CashTxnType,
                            amount: Decimal, book_date: date,
                            user_id: Optional[str] = None, **extra) -> CashTransaction:
        now = datetime.now(timezone.utc)
        txn = CashTransaction(
            id=str(uuid.uuid4()), created_at=now, updated_at=now,
            cash_register_id=register.id,
            legal_entity_id=register.legal_entity_id,
            txn_no=self._next_txn_no(register, book_date),
            txn_type=txn_type,
            status=CashTxnStatus.DRAFT,
            book_date=book_date,
            amount=amount,
            currency_code=register.currency_code,
            created_by=user_id,
            **extra,
        )
        self.records.save_record(txn, self.transactions_table)
        self.audit_trail.log_event(
            AuditEventType.CASH_TXN_CREATED, "cash_transaction", txn.id,
            {"txnNo": txn.txn_no, "txnType": txn_type.value, "amount": amount,
             "registerId": register.id, "idempotencyKey": txn.idempotency_key},
            user_id=user_id,
        )
        return txn

    def create_transaction(
        self,
        register_id: str,
        txn_type: CashTxnType,
        amount: Any,
        book_date: Optional[date] = None,
        counter_account_id: Optional[str] = None,
        counter_cash_register_id: Optional[str] = None,
        counterparty_id: Optional[str] = None,
        cash_session_id: Optional[str] = None,
        currency_code: Optional[str] = None,
        description: Optional[str] = None,
        reference_no: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Draft a cash transaction. A repeated idempotency key on the same
        register returns the stored row with idempotent_replay set.

        Raises:
            ValidationError: System-only type, missing counter side, limits, session rules
        """
        txn_type = CashTxnType(txn_type)
        if txn_type == CashTxnType.VARIANCE:
            raise ValidationError(f"{txn_type.value} can only be system-generated")
        if txn_type in TRANSFER_TYPES and not counter_cash_register_id:
            raise ValidationError(f"{txn_type.value} requires counterCashRegisterId")
        if txn_type in COUNTER_ACCOUNT_TYPES and not counter_account_id:
            raise ValidationError(f"{txn_type.value} requires counterAccountId")
        amount = to_amount(amount, "amount")
        if amount <= ZERO:
            raise ValidationError("amount must be > 0")
        idempotency_key = (idempotency_key or "").strip() or None
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            register = self.require_register(register_id)
            assert_scope_access(principal, [register.legal_entity_id])

            if idempotency_key:
                existing = self.records.find_one(CashTransaction, self.transactions_table, {
                    'cash_register_id': register.id, 'idempotency_key': idempotency_key,
                })
                if existing is not None:
                    return {"transaction": existing, "idempotent_replay": True}

            self._assert_register_operational(register)
            if register.max_txn_amount > ZERO and amount > register.max_txn_amount:
                raise ValidationError("amount exceeds register max_txn_amount")
            if currency_code and normalize_currency_code(currency_code) != register.currency_code:
                raise ValidationError("Transaction currency must match register currency")

            if txn_type in TRANSFER_TYPES:
                counter_register = self.get_register(counter_cash_register_id)
                if counter_register is None:
                    raise NotFoundError("counterCashRegisterId not found for tenant")
                validate_transfer(register, counter_register)
                counter_account_id = None
            else:
                counter_account = self.accounts.require_account(counter_account_id, "counterAccountId")
                if not self.accounts.is_in_legal_entity_scope(counter_account, register.legal_entity_id):
                    raise ValidationError("counterAccountId must belong to the register legal entity")
                counter_cash_register_id = None

            session = self._resolve_session(register, cash_session_id)
            txn = self._insert_transaction(
                register,
                txn_type=txn_type,
                amount=amount,
                book_date=book_date or datetime.now(timezone.utc).date(),
                cash_session_id=session.id if session else None,
                description=description,
                reference_no=reference_no,
                counter_account_id=counter_account_id,
                counter_cash_register_id=counter_cash_register_id,
                counterparty_id=counterparty_id,
                idempotency_key=idempotency_key,
                user_id=user_id,
            )

        log_action(logger, "info", "Cash transaction created", user_id=user_id,
                   action="cash.transaction.create", resource=txn.id,
                   extra={"txn_no": txn.txn_no, "txn_type": txn_type.value})
        return {"transaction": txn, "idempotent_replay": False}

    def submit_transaction(self, transaction_id: str,
                           principal: Optional[Principal] = None) -> CashTransaction:
        """DRAFT -> SUBMITTED with a PENDING approval request"""
        user_id = principal.user_id if principal else None
        with self.storage.atomic():
            txn = self.require_transaction(transaction_id)
            assert_scope_access(principal, [txn.legal_entity_id])
            if txn.status != CashTxnStatus.DRAFT:
                raise ConflictError("Only DRAFT transactions can be submitted",
                                    details={"status": txn.status.value})
            request = self.approvals.request(
                "cash_transaction", txn.id, CASH_APPROVAL_ACTION,
                payload={"txnNo": txn.txn_no, "txnType": txn.txn_type.value,
                         "amount": str(txn.amount)},
                legal_entity_id=txn.legal_entity_id,
                principal=principal,
            )
            txn.status = CashTxnStatus.SUBMITTED
            txn.approval_request_id = request.id
            txn.touch()
            self.records.save_record(txn, self.transactions_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_TXN_SUBMITTED, "cash_transaction", txn.id,
                {"approvalRequestId": request.id},
                user_id=user_id,
            )
        return txn

    def _apply_approval(self, request: ApprovalRequest, approved: bool,
                        principal: Optional[Principal]) -> None:
        txn = self.require_transaction(request.target_id)
        if txn.status != CashTxnStatus.SUBMITTED:
            raise ConflictError("Cash transaction is no longer SUBMITTED",
                                details={"status": txn.status.value})
        txn.status = CashTxnStatus.APPROVED if approved else CashTxnStatus.DRAFT
        txn.touch()
        self.records.save_record(txn, self.transactions_table)
        self.audit_trail.log_event(
            AuditEventType.CASH_TXN_APPROVED, "cash_transaction", txn.id,
            {"approvalRequestId": request.id, "approved": approved},
            user_id=principal.user_id if principal else None,
        )

    def cancel_transaction(self, transaction_id: str, reason: Optional[str] = None,
                           principal: Optional[Principal] = None) -> CashTransaction:
        with self.storage.atomic():
            txn = self.require_transaction(transaction_id)
            assert_scope_access(principal, [txn.legal_entity_id])
            if txn.status not in (CashTxnStatus.DRAFT, CashTxnStatus.SUBMITTED):
                raise ConflictError("Only DRAFT or SUBMITTED transactions can be cancelled",
                                    details={"status": txn.status.value})
            txn.status = CashTxnStatus.CANCELLED
            txn.cancel_reason = reason
            txn.touch()
            self.records.save_record(txn, self.transactions_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_TXN_CANCELLED, "cash_transaction", txn.id,
                {"reason": reason},
                user_id=principal.user_id if principal else None,
            )
        return txn

    def _post_within(self, txn: CashTransaction, register: CashRegister,
                     user_id: Optional[str]) -> None:
        counter_register = None
        if txn.counter_cash_register_id:
            counter_register = self.require_register(txn.counter_cash_register_id,
                                                     "counterCashRegisterId")
        journal = self.poster.post(txn, register, counter_register, user_id=user_id)

        txn.status = CashTxnStatus.POSTED
        txn.posted_journal_entry_id = journal.id
        txn.posted_by = user_id
        txn.posted_at = journal.posted_at
        txn.updated_at = journal.posted_at
        self.records.save_record(txn, self.transactions_table)
        self.audit_trail.log_event(
            AuditEventType.CASH_TXN_POSTED, "cash_transaction", txn.id,
            {"txnNo": txn.txn_no, "journalEntryId": journal.id},
            user_id=user_id,
        )

    def post_transaction(self, transaction_id: str,
                         principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Post into the ledger. Posting a POSTED transaction is a replay.

        Raises:
            ConflictError: Wrong status, period not open
            ValidationError: Register inactive, session rules, template or line checks
        """
        user_id = principal.user_id if principal else None
        with self.storage.atomic():
            txn = self.require_transaction(transaction_id)
            assert_scope_access(principal, [txn.legal_entity_id])
            if txn.status == CashTxnStatus.POSTED:
                return {"transaction": txn, "journal_entry_id": txn.posted_journal_entry_id,
                        "idempotent_replay": True}
            if txn.status not in UNPOSTED_STATUSES:
                raise ConflictError("Only DRAFT, SUBMITTED, or APPROVED transactions can be posted",
                                    details={"status": txn.status.value})

            register = self.require_register(txn.cash_register_id)
            self._assert_register_operational(register)
            if register.session_mode == SessionMode.REQUIRED:
                if not txn.cash_session_id:
                    raise ValidationError("Posting requires an OPEN cash session")
                session = self.get_session(txn.cash_session_id)
                if session is None or session.status != SessionStatus.OPEN:
                    raise ValidationError("Posting requires cash_session_id to be OPEN")

            self._post_within(txn, register, user_id)

        log_action(logger, "info", "Cash transaction posted", user_id=user_id,
                   action="cash.transaction.post", resource=txn.id,
                   extra={"txn_no": txn.txn_no, "journal_entry_id": txn.posted_journal_entry_id})
        return {"transaction": txn, "journal_entry_id": txn.posted_journal_entry_id,
                "idempotent_replay": False}

    def reverse_transaction(self, transaction_id: str, reason: Optional[str] = None,
                            principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Post a reversal transaction with inverted lines and mark the original
        REVERSED. Reversing an already reversed transaction is a replay.
        """
        reason = (reason or "").strip() or "Reversal"
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            original = self.require_transaction(transaction_id)
            assert_scope_access(principal, [original.legal_entity_id])
            if original.status == CashTxnStatus.REVERSED and original.reversed_by_transaction_id:
                reversal = self.require_transaction(original.reversed_by_transaction_id)
                return {"original": original, "reversal": reversal, "idempotent_replay": True}
            if original.reversal_of_transaction_id:
                raise ValidationError("Reversal transactions cannot be reversed")
            if original.status != CashTxnStatus.POSTED:
                raise ConflictError("Only POSTED transactions can be reversed",
                                    details={"status": original.status.value})

            register = self.require_register(original.cash_register_id)
            reversal = self._insert_transaction(
                register,
                txn_type=original.txn_type,
                amount=original.amount,
                book_date=datetime.now(timezone.utc).date(),
                cash_session_id=original.cash_session_id,
                description=f"Reversal of {original.txn_no}: {reason}",
                reference_no=original.reference_no,
                counter_account_id=original.counter_account_id,
                counter_cash_register_id=original.counter_cash_register_id,
                counterparty_id=original.counterparty_id,
                idempotency_key=f"REV-{original.id}",
                reversal_of_transaction_id=original.id,
                user_id=user_id,
            )
            self._post_within(reversal, register, user_id)

            original.status = CashTxnStatus.REVERSED
            original.reversed_by_transaction_id = reversal.id
            original.touch()
            self.records.save_record(original, self.transactions_table)
            self.audit_trail.log_event(
                AuditEventType.CASH_TXN_REVERSED, "cash_transaction", original.id,
                {"reversalTransactionId": reversal.id, "reason": reason},
                user_id=user_id,
            )

        log_action(logger, "info", "Cash transaction reversed", user_id=user_id,
                   action="cash.transaction.reverse", resource=original.id,
                   extra={"reversal_transaction_id": reversal.id})
        return {"original": original, "reversal": reversal, "idempotent_replay": False}
