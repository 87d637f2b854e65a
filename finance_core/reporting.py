"""
Trial Balance Projector

Per-account debit, credit and balance totals of POSTED journals for one book
and period, optionally rolled up the account tree.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List

from .accounts import AccountManager
from .fiscal import FiscalManager
from .ledger import GeneralLedger
from .money import ZERO, is_nearly_zero


@dataclass
class TrialBalanceRow:
    account_id: str
    account_code: str
    account_name: str
    debit_total: Decimal
    credit_total: Decimal
    balance: Decimal
    direct_debit_total: Decimal
    direct_credit_total: Decimal
    direct_balance: Decimal
    is_rollup: bool = False


class _Totals:
    __slots__ = ("debit", "credit", "direct_debit", "direct_credit")

    def __init__(self):
        self.debit = ZERO
        self.credit = ZERO
        self.direct_debit = ZERO
        self.direct_credit = ZERO


class TrialBalanceReporter:

    def __init__(self, fiscal: FiscalManager, accounts: AccountManager, ledger: GeneralLedger):
        self.fiscal = fiscal
        self.accounts = accounts
        self.ledger = ledger

    def trial_balance(self, book_id: str, fiscal_period_id: str,
                      include_rollup: bool = False) -> Dict[str, Any]:
        """
        A REVERSED original still counts; its posted reversal nets it to zero
        in whichever period the reversal lands. Summary totals always use direct
        amounts, so rollup rows never double count.
        """
        book = self.fiscal.require_book(book_id)
        self.fiscal.require_period_in_book(book, fiscal_period_id)

        direct: Dict[str, _Totals] = {}
        for journal in self.ledger.find_posted_journals(book.id, fiscal_period_id):
            for line in journal.lines:
                totals = direct.setdefault(line.account_id, _Totals())
                totals.direct_debit += line.debit_base
                totals.direct_credit += line.credit_base

        summary_debit = sum((t.direct_debit for t in direct.values()), ZERO)
        summary_credit = sum((t.direct_credit for t in direct.values()), ZERO)
        summary = {
            "debit_total": summary_debit,
            "credit_total": summary_credit,
            "balance_total": summary_debit - summary_credit,
        }

        accounts = self.accounts.accounts_by_id()
        aggregates: Dict[str, _Totals] = {}
        for account_id, totals in direct.items():
            own = aggregates.setdefault(account_id, _Totals())
            own.direct_debit = totals.direct_debit
            own.direct_credit = totals.direct_credit
            own.debit += totals.direct_debit
            own.credit += totals.direct_credit
            if not include_rollup:
                continue

            visited = {account_id}
            account = accounts.get(account_id)
            parent_id = account.parent_account_id if account else None
            while parent_id and parent_id not in visited:
                visited.add(parent_id)
                parent = aggregates.setdefault(parent_id, _Totals())
                parent.debit += totals.direct_debit
                parent.credit += totals.direct_credit
                parent_account = accounts.get(parent_id)
                parent_id = parent_account.parent_account_id if parent_account else None

        rows: List[TrialBalanceRow] = []
        for account_id, totals in aggregates.items():
            balance = totals.debit - totals.credit
            if include_rollup and is_nearly_zero(totals.debit) and is_nearly_zero(totals.credit) \
                    and is_nearly_zero(balance):
                continue
            account = accounts.get(account_id)
            rows.append(TrialBalanceRow(
                account_id=account_id,
                account_code=account.code if account else account_id,
                account_name=account.name if account else account_id,
                debit_total=totals.debit,
                credit_total=totals.credit,
                balance=balance,
                direct_debit_total=totals.direct_debit,
                direct_credit_total=totals.direct_credit,
                direct_balance=totals.direct_debit - totals.direct_credit,
                is_rollup=include_rollup and is_nearly_zero(totals.direct_debit)
                and is_nearly_zero(totals.direct_credit),
            ))
        rows.sort(key=lambda r: (r.account_code, r.account_id))

        return {
            "book_id": book.id,
            "fiscal_period_id": fiscal_period_id,
            "include_rollup": include_rollup,
            "summary": summary,
            "rows": rows,
        }

