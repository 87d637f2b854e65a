"""
Period Close Orchestrator

A close run carries balance-sheet balances into the next period and, at year
end, closes revenue and expense accounts into retained earnings. Runs are
keyed by a hash of their inputs so re-running an unchanged close is a replay.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .accounts import AccountManager, AccountType, PROFIT_AND_LOSS_TYPES
from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .filters import CloseRunFilter
from .fiscal import CLOSED_STATUSES, FiscalManager, PeriodStatus
from .ledger import GeneralLedger, JournalLine, SourceType, generate_journal_no
from .logging_config import get_logger, log_action
from .money import ZERO, is_nearly_zero
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager, serialize_value
from .tenancy import get_current_tenant


logger = get_logger("finance_core.period_close")

PERIOD_CLOSE_REFERENCE_PREFIX = "PERIOD_CLOSE_RUN:"


class CloseRunStatus(Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REOPENED = "REOPENED"


class CloseLineType(Enum):
    CARRY_FORWARD = "CARRY_FORWARD"
    YEAR_END = "YEAR_END"


@dataclass
class PeriodCloseLine:
    line_type: CloseLineType
    account_id: str
    closing_balance: Decimal
    debit_base: Decimal
    credit_base: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {name: serialize_value(value) for name, value in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PeriodCloseLine':
        return cls(
            line_type=CloseLineType(data['line_type']),
            account_id=data['account_id'],
            closing_balance=Decimal(str(data['closing_balance'])),
            debit_base=Decimal(str(data['debit_base'])),
            credit_base=Decimal(str(data['credit_base'])),
        )


@dataclass
class PeriodCloseRun(StorageRecord):
    book_id: str
    fiscal_period_id: str
    next_fiscal_period_id: str
    run_hash: str
    close_status: PeriodStatus
    status: CloseRunStatus
    is_year_end: bool = False
    retained_earnings_account_id: Optional[str] = None
    carry_forward_journal_entry_id: Optional[str] = None
    year_end_journal_entry_id: Optional[str] = None
    note: Optional[str] = None
    started_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    lines: List[PeriodCloseLine] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def compute_run_hash(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(serialize_value(payload), sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def _is_close_run_journal(journal) -> bool:
    return bool(journal.reference_no) and journal.reference_no.startswith(PERIOD_CLOSE_REFERENCE_PREFIX)


class PeriodCloseManager:
    """Close runs, reopen and run history for (book, period) pairs"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 fiscal: FiscalManager, accounts: AccountManager, ledger: GeneralLedger):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.fiscal = fiscal
        self.accounts = accounts
        self.ledger = ledger
        self.table_name = "period_close_runs"

    # Inputs

    def source_journals(self, book_id: str, period_id: str):
        return [
            j for j in self.ledger.find_posted_journals(book_id, period_id)
            if not _is_close_run_journal(j)
        ]

    def source_fingerprint(self, book_id: str, period_id: str) -> Dict[str, Any]:
        journals = self.source_journals(book_id, period_id)
        last_updated = max((j.updated_at for j in journals), default=None)
        return {
            "source_journal_count": len(journals),
            "source_debit_total": str(sum((j.total_debit_base for j in journals), ZERO)),
            "source_credit_total": str(sum((j.total_credit_base for j in journals), ZERO)),
            "source_last_updated_at": last_updated.isoformat() if last_updated else None,
        }

    def account_balances(self, book_id: str, period_id: str) -> Dict[str, Decimal]:
        """sum(debit - credit) per account over the period's source journals"""
        balances: Dict[str, Decimal] = {}
        for journal in self.source_journals(book_id, period_id):
            for line in journal.lines:
                balances[line.account_id] = balances.get(line.account_id, ZERO) + line.net
        return balances

    def _require_retained_earnings(self, account_id: str, legal_entity_id: str):
        account = self.accounts.get_account(account_id)
        if account is None:
            raise ValidationError("retainedEarningsAccountId not found for tenant")
        if account.account_type != AccountType.EQUITY:
            raise ValidationError("retainedEarningsAccountId must reference an EQUITY account")
        if not self.accounts.is_in_legal_entity_scope(account, legal_entity_id):
            raise ValidationError("retainedEarningsAccountId must belong to the book legal entity")
        self.accounts.assert_postable_leaf(account, "retainedEarningsAccountId")
        return account

    # Execute

    def execute_close_run(
        self,
        book_id: str,
        period_id: str,
        close_status: PeriodStatus = PeriodStatus.SOFT_CLOSED,
        retained_earnings_account_id: Optional[str] = None,
        note: Optional[str] = None,
        principal: Optional[Principal] = None,
    ) -> Dict[str, Any]:
        """
        Close a period with carry-forward and optional year-end P&L close.

        Returns a dict with idempotent, previous_status, run and line counts.
        A replay of a completed run with an unchanged hash returns that run
        with idempotent=True.

        Raises:
            ValidationError: Bad close status, missing next period or retained earnings
            ConflictError: Period HARD_CLOSED, run in progress, next period HARD_CLOSED
        """
        close_status = PeriodStatus(close_status)
        if close_status not in CLOSED_STATUSES:
            raise ValidationError("closeStatus must be SOFT_CLOSED or HARD_CLOSED")
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            book = self.fiscal.require_book(book_id)
            assert_scope_access(principal, [book.legal_entity_id])
            period = self.fiscal.require_period_in_book(book, period_id, "periodId")

            next_period = self.fiscal.get_next_period(period)
            if next_period is None:
                raise ValidationError(
                    "No next fiscal period found for carry-forward. Generate next periods first."
                )
            is_year_end = next_period.fiscal_year != period.fiscal_year

            retained = None
            if retained_earnings_account_id:
                retained = self._require_retained_earnings(
                    retained_earnings_account_id, book.legal_entity_id
                )
            elif is_year_end:
                raise ValidationError("retainedEarningsAccountId is required for year-end P&L closing")

            fingerprint = self.source_fingerprint(book.id, period.id)
            run_hash = compute_run_hash({
                "tenant_id": get_current_tenant(),
                "book_id": book.id,
                "fiscal_period_id": period.id,
                "next_fiscal_period_id": next_period.id,
                "close_status": close_status.value,
                "is_year_end": is_year_end,
                "retained_earnings_account_id": retained.id if retained else None,
                "source_fingerprint": fingerprint,
            })

            existing = self.records.find_one(PeriodCloseRun, self.table_name, {
                'book_id': book.id, 'fiscal_period_id': period.id, 'run_hash': run_hash,
            })
            current_status = self.fiscal.get_period_status(book.id, period.id)

            active = self.active_close_run(book.id, period.id)
            if active is not None:
                return self._apply_to_active_run(active, book, period, close_status,
                                                 current_status, note, user_id)

            if current_status == PeriodStatus.HARD_CLOSED:
                raise ConflictError("Period is HARD_CLOSED. Reopen the period before running close again.")
            if existing and existing.status == CloseRunStatus.IN_PROGRESS:
                raise ConflictError("A close run is already in progress for this period hash")

            now = datetime.now(timezone.utc)
            if existing is None:
                run = PeriodCloseRun(
                    id=str(uuid.uuid4()), created_at=now, updated_at=now,
                    book_id=book.id, fiscal_period_id=period.id,
                    next_fiscal_period_id=next_period.id, run_hash=run_hash,
                    close_status=close_status, status=CloseRunStatus.IN_PROGRESS,
                )
            else:
                run = existing
                run.status = CloseRunStatus.IN_PROGRESS
                run.carry_forward_journal_entry_id = None
                run.year_end_journal_entry_id = None
                run.reopened_at = None
                run.completed_at = None
                run.lines = []
                run.metadata = {}
                run.updated_at = now
            run.is_year_end = is_year_end
            run.retained_earnings_account_id = retained.id if retained else None
            run.note = note
            run.started_by = user_id
            self.records.save_record(run, self.table_name)

            carry_lines, year_end_lines = self._build_close_lines(
                book.id, period.id, is_year_end, retained
            )
            reference = f"{PERIOD_CLOSE_REFERENCE_PREFIX}{run.id}"
            run_tag = f"{run.id[:8].upper()}"

            if carry_lines:
                if self.fiscal.get_period_status(book.id, next_period.id) == PeriodStatus.HARD_CLOSED:
                    raise ConflictError("Next period is HARD_CLOSED; cannot post opening carry-forward entry")
                journal = self.ledger.record_system_journal(
                    legal_entity_id=book.legal_entity_id,
                    book_id=book.id,
                    fiscal_period_id=next_period.id,
                    lines=[line for line, _ in carry_lines],
                    source_type=SourceType.SYSTEM,
                    journal_no=generate_journal_no(f"CARRY-{run_tag}"),
                    entry_date=next_period.start_date,
                    description=(f"Auto carry-forward opening balances from "
                                 f"FY{period.fiscal_year} P{period.period_no}"),
                    reference_no=reference,
                    validate_lines=False,
                    require_open=False,
                    unbalanced_message="Carry-forward journal is not balanced",
                    user_id=user_id,
                )
                run.carry_forward_journal_entry_id = journal.id

            if year_end_lines:
                journal = self.ledger.record_system_journal(
                    legal_entity_id=book.legal_entity_id,
                    book_id=book.id,
                    fiscal_period_id=period.id,
                    lines=[line for line, _ in year_end_lines],
                    source_type=SourceType.SYSTEM,
                    journal_no=generate_journal_no(f"YECLOSE-{run_tag}"),
                    entry_date=period.end_date,
                    description=f"Auto year-end P&L close FY{period.fiscal_year} P{period.period_no}",
                    reference_no=reference,
                    validate_lines=False,
                    require_open=False,
                    unbalanced_message="Year-end close journal is not balanced",
                    user_id=user_id,
                )
                run.year_end_journal_entry_id = journal.id

            run.lines = (
                [self._close_line(CloseLineType.CARRY_FORWARD, line, balance)
                 for line, balance in carry_lines]
                + [self._close_line(CloseLineType.YEAR_END, line, balance)
                   for line, balance in year_end_lines]
            )
            self.fiscal.upsert_period_status(
                book.id, period.id, close_status,
                f"Period close run {run.id}" + (f": {note}" if note else ""), user_id,
            )

            run.status = CloseRunStatus.COMPLETED
            run.close_status = close_status
            run.completed_at = datetime.now(timezone.utc)
            run.updated_at = run.completed_at
            run.metadata = {
                "nextFiscalPeriodId": next_period.id,
                "isYearEnd": is_year_end,
                "carryForwardLineCount": len(carry_lines),
                "yearEndLineCount": len(year_end_lines),
                "sourceFingerprint": fingerprint,
            }
            self.records.save_record(run, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.PERIOD_CLOSE_EXECUTED, "period_close_run", run.id,
                {
                    "bookId": book.id,
                    "fiscalPeriodId": period.id,
                    "closeStatus": close_status.value,
                    "runHash": run_hash,
                    "isYearEnd": is_year_end,
                    "carryForwardJournalEntryId": run.carry_forward_journal_entry_id,
                    "yearEndJournalEntryId": run.year_end_journal_entry_id,
                    "sourceFingerprint": fingerprint,
                },
                user_id=user_id,
            )

        log_action(logger, "info", "Period close executed", user_id=user_id,
                   action="gl.period_close.execute", resource=run.id,
                   extra={"book_id": book.id, "fiscal_period_id": period.id,
                          "close_status": close_status.value, "is_year_end": is_year_end})

        return {
            "idempotent": False,
            "previous_status": current_status.value,
            "run": run,
            "carry_forward_line_count": len(carry_lines),
            "year_end_line_count": len(year_end_lines),
        }

    def active_close_run(self, book_id: str, period_id: str) -> Optional[PeriodCloseRun]:
        """The COMPLETED run of a period that has not been reopened, if any"""
        completed = self.records.find_records(PeriodCloseRun, self.table_name, {
            'book_id': book_id,
            'fiscal_period_id': period_id,
            'status': CloseRunStatus.COMPLETED.value,
        })
        live = [run for run in completed if not run.reopened_at]
        return max(live, key=lambda r: r.completed_at or r.created_at) if live else None

    def _apply_to_active_run(self, run: PeriodCloseRun, book, period, close_status: PeriodStatus,
                             current_status: PeriodStatus, note: Optional[str],
                             user_id: Optional[str]) -> Dict[str, Any]:
        """
        A period with a live run keeps that run's journals. The same status is
        a replay, a stricter one only raises the status, a looser one is refused.
        """
        requested_rank = CLOSED_STATUSES.index(close_status)
        run_rank = CLOSED_STATUSES.index(run.close_status)
        if requested_rank < run_rank:
            raise ConflictError("Period is HARD_CLOSED. Reopen the period before running close again.")

        result = {
            "idempotent": requested_rank == run_rank,
            "previous_status": current_status.value,
            "run": run,
            "carry_forward_line_count": run.metadata.get("carryForwardLineCount", 0),
            "year_end_line_count": run.metadata.get("yearEndLineCount", 0),
        }
        if result["idempotent"]:
            if run.close_status != current_status:
                self.fiscal.upsert_period_status(
                    book.id, period.id, run.close_status,
                    f"Idempotent close run {run.id} reapplied", user_id,
                )
            return result

        now = datetime.now(timezone.utc)
        escalations = list(run.metadata.get("statusEscalations", []))
        escalations.append({
            "from": run.close_status.value,
            "to": close_status.value,
            "by": user_id,
            "at": now.isoformat(),
            "note": note,
        })
        self.fiscal.upsert_period_status(
            book.id, period.id, close_status,
            f"Period close run {run.id} raised to {close_status.value}"
            + (f": {note}" if note else ""), user_id,
        )
        run.close_status = close_status
        run.metadata = dict(run.metadata, statusEscalations=escalations)
        run.updated_at = now
        self.records.save_record(run, self.table_name)
        self.audit_trail.log_event(
            AuditEventType.PERIOD_CLOSE_EXECUTED, "period_close_run", run.id,
            {
                "bookId": book.id,
                "fiscalPeriodId": period.id,
                "closeStatus": close_status.value,
                "statusOnly": True,
            },
            user_id=user_id,
        )
        log_action(logger, "info", "Period close status raised", user_id=user_id,
                   action="gl.period_close.execute", resource=run.id,
                   extra={"book_id": book.id, "fiscal_period_id": period.id,
                          "close_status": close_status.value})
        return result

    def _close_line(self, line_type: CloseLineType, line: JournalLine,
                    balance: Decimal) -> PeriodCloseLine:
        return PeriodCloseLine(
            line_type=line_type,
            account_id=line.account_id,
            closing_balance=balance,
            debit_base=line.debit_base,
            credit_base=line.credit_base,
        )

    def _build_close_lines(self, book_id: str, period_id: str, is_year_end: bool, retained):
        """Carry-forward and year-end lines, each paired with its closing balance"""
        balances = self.account_balances(book_id, period_id)
        accounts = self.accounts.accounts_by_id()
        codes = {account_id: (accounts[account_id].code if account_id in accounts else account_id)
                 for account_id in balances}

        carry_balances: Dict[str, Decimal] = {}
        pnl_balances: Dict[str, Decimal] = {}
        for account_id in sorted(balances, key=lambda a: codes[a]):
            account = accounts.get(account_id)
            if account is not None and account.account_type in PROFIT_AND_LOSS_TYPES:
                pnl_balances[account_id] = balances[account_id]
            else:
                carry_balances[account_id] = balances[account_id]

        year_end_lines = []
        if is_year_end:
            for account_id, balance in pnl_balances.items():
                if is_nearly_zero(balance):
                    continue
                year_end_lines.append((self._line(
                    len(year_end_lines) + 1, account_id,
                    ZERO if balance > 0 else -balance, balance if balance > 0 else ZERO,
                    f"Year-end close ({codes[account_id]})",
                ), balance))

            debit_total = sum((line.debit_base for line, _ in year_end_lines), ZERO)
            credit_total = sum((line.credit_base for line, _ in year_end_lines), ZERO)
            difference = debit_total - credit_total
            if not is_nearly_zero(difference):
                if difference > 0:
                    retained_line = self._line(len(year_end_lines) + 1, retained.id, ZERO, difference,
                                               "Year-end transfer to retained earnings")
                else:
                    retained_line = self._line(len(year_end_lines) + 1, retained.id, -difference, ZERO,
                                               "Year-end transfer to retained earnings")
                year_end_lines.append((retained_line, -difference))
                codes.setdefault(retained.id, retained.code)
                carry_balances[retained.id] = carry_balances.get(retained.id, ZERO) + retained_line.net

        carry_lines = []
        for account_id, balance in carry_balances.items():
            if is_nearly_zero(balance):
                continue
            description = f"Opening from previous period ({codes[account_id]})"
            if balance > 0:
                line = self._line(len(carry_lines) + 1, account_id, balance, ZERO, description)
            else:
                line = self._line(len(carry_lines) + 1, account_id, ZERO, -balance, description)
            carry_lines.append((line, balance))
        return carry_lines, year_end_lines

    @staticmethod
    def _line(line_no: int, account_id: str, debit: Decimal, credit: Decimal,
              description: str) -> JournalLine:
        return JournalLine(line_no=line_no, account_id=account_id, debit_base=debit,
                           credit_base=credit, description=description)

    # Reopen

    def reopen_period(self, book_id: str, period_id: str, reason: Optional[str],
                      principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Reverse the latest completed run's journals and set the period OPEN.
        Without a completed run only the status changes.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required to reopen a closed period")
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            book = self.fiscal.require_book(book_id)
            assert_scope_access(principal, [book.legal_entity_id])
            period = self.fiscal.require_period_in_book(book, period_id, "periodId")
            previous_status = self.fiscal.get_period_status(book.id, period.id)

            run = self.active_close_run(book.id, period.id)

            reversal_ids = []
            if run is not None:
                reversal_reason = f"Reopen period close run {run.id}: {reason}"
                for journal_id in (run.carry_forward_journal_entry_id, run.year_end_journal_entry_id):
                    if journal_id:
                        reversal_ids.append(self.ledger.reverse_posted_journal_within_transaction(
                            journal_id, reversal_reason, user_id
                        ))
                run.status = CloseRunStatus.REOPENED
                run.reopened_at = datetime.now(timezone.utc)
                run.updated_at = run.reopened_at
                run.note = reason
                run.metadata = dict(run.metadata, reopen={
                    "reopenedBy": user_id,
                    "reopenedAt": run.reopened_at.isoformat(),
                    "reason": reason,
                    "reversalJournalEntryIds": reversal_ids,
                })
                self.records.save_record(run, self.table_name)

            self.fiscal.upsert_period_status(book.id, period.id, PeriodStatus.OPEN,
                                             f"Reopened: {reason}", user_id)
            self.audit_trail.log_event(
                AuditEventType.PERIOD_CLOSE_REOPENED, "period_close_run",
                run.id if run else f"{book.id}:{period.id}",
                {
                    "bookId": book.id,
                    "fiscalPeriodId": period.id,
                    "previousStatus": previous_status.value,
                    "reason": reason,
                    "reversalJournalEntryIds": reversal_ids,
                    "runId": run.id if run else None,
                },
                user_id=user_id,
            )

        log_action(logger, "info", "Period reopened", user_id=user_id,
                   action="gl.period_close.reopen", resource=run.id if run else period.id,
                   extra={"book_id": book.id, "fiscal_period_id": period.id,
                          "reversal_journal_ids": reversal_ids})

        return {
            "book_id": book.id,
            "fiscal_period_id": period.id,
            "previous_status": previous_status.value,
            "status": PeriodStatus.OPEN.value,
            "run": run,
            "reversal_journal_entry_ids": reversal_ids,
        }

    # Reads

    def get_close_run(self, run_id: str) -> PeriodCloseRun:
        run = self.records.load_record(PeriodCloseRun, self.table_name, run_id) if run_id else None
        if run is None:
            raise NotFoundError("Period close run not found", details={"runId": run_id})
        return run

    def list_close_runs(self, run_filter: CloseRunFilter) -> List[PeriodCloseRun]:
        runs = self.records.find_records(PeriodCloseRun, self.table_name, run_filter.storage_filters())
        return run_filter.apply(runs, sort_key=lambda r: r.created_at, reverse=True)
