"""
Cash Journal Templates

Turns a cash transaction into its two journal lines and books them as a
POSTED CASH journal in the register's primary book. Register account R,
counter account C, counter register account CR:

    RECEIPT, WITHDRAWAL_FROM_BANK, OPENING_FLOAT    Dr R  / Cr C
    PAYOUT, DEPOSIT_TO_BANK, CLOSING_ADJUSTMENT     Dr C  / Cr R
    VARIANCE                                        gain: Dr R / Cr C, loss: Dr C / Cr R
    TRANSFER_OUT                                    Dr CR / Cr R
    TRANSFER_IN                                     Dr R  / Cr CR

A reversal transaction uses the same template with the sides swapped.
"""

from enum import Enum
from typing import List, Optional

from .errors import ValidationError
from .fiscal import FiscalManager
from .ledger import GeneralLedger, JournalEntry, JournalLine, SourceType
from .money import ZERO


CASH_TXN_REFERENCE_PREFIX = "CASH_TXN:"


class CashTxnType(Enum):
    RECEIPT = "RECEIPT"
    PAYOUT = "PAYOUT"
    DEPOSIT_TO_BANK = "DEPOSIT_TO_BANK"
    WITHDRAWAL_FROM_BANK = "WITHDRAWAL_FROM_BANK"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    VARIANCE = "VARIANCE"
    OPENING_FLOAT = "OPENING_FLOAT"
    CLOSING_ADJUSTMENT = "CLOSING_ADJUSTMENT"


DEBIT_REGISTER_TYPES = frozenset({
    CashTxnType.RECEIPT, CashTxnType.WITHDRAWAL_FROM_BANK, CashTxnType.OPENING_FLOAT,
})
CREDIT_REGISTER_TYPES = frozenset({
    CashTxnType.PAYOUT, CashTxnType.DEPOSIT_TO_BANK, CashTxnType.CLOSING_ADJUSTMENT,
})
TRANSFER_TYPES = frozenset({CashTxnType.TRANSFER_OUT, CashTxnType.TRANSFER_IN})
COUNTER_ACCOUNT_TYPES = DEBIT_REGISTER_TYPES | CREDIT_REGISTER_TYPES | {CashTxnType.VARIANCE}

# Session movement; VARIANCE and CLOSING_ADJUSTMENT do not count toward expected cash
INFLOW_TYPES = frozenset({
    CashTxnType.RECEIPT, CashTxnType.WITHDRAWAL_FROM_BANK,
    CashTxnType.TRANSFER_IN, CashTxnType.OPENING_FLOAT,
})
OUTFLOW_TYPES = frozenset({
    CashTxnType.PAYOUT, CashTxnType.DEPOSIT_TO_BANK, CashTxnType.TRANSFER_OUT,
})


def cash_reference(transaction_id: str) -> str:
    return f"{CASH_TXN_REFERENCE_PREFIX}{transaction_id}"


def validate_transfer(register, counter_register) -> None:
    """Direct transfers stay inside one legal entity, currency and operating unit"""
    if counter_register is None:
        raise ValidationError("Transfer requires counterCashRegisterId")
    if counter_register.id == register.id:
        raise ValidationError("counterCashRegisterId must differ from registerId")
    if counter_register.legal_entity_id != register.legal_entity_id:
        raise ValidationError("Direct transfer is only supported within the same legal entity in v1")
    if counter_register.currency_code != register.currency_code:
        raise ValidationError("Transfer register currencies must match")
    if (counter_register.operating_unit_id or None) != (register.operating_unit_id or None):
        raise ValidationError("Cross-OU transfer requires CASH_IN_TRANSIT workflow (planned for v2)")


def build_posting_lines(transaction, register, counter_register=None) -> List[JournalLine]:
    """
    Raises:
        ValidationError: Non-positive amount, missing counter side, bad variance account
    """
    amount = transaction.amount
    if amount is None or amount <= ZERO:
        raise ValidationError("Cash transaction amount must be > 0 for posting")

    txn_type = CashTxnType(transaction.txn_type)
    register_account = register.account_id
    counter_account = transaction.counter_account_id
    debit_unit = credit_unit = register.operating_unit_id

    if txn_type in DEBIT_REGISTER_TYPES:
        debit_account, credit_account = register_account, counter_account
    elif txn_type in CREDIT_REGISTER_TYPES:
        debit_account, credit_account = counter_account, register_account
    elif txn_type == CashTxnType.VARIANCE:
        if counter_account and counter_account == register.variance_gain_account_id:
            debit_account, credit_account = register_account, counter_account
        elif counter_account and counter_account == register.variance_loss_account_id:
            debit_account, credit_account = counter_account, register_account
        else:
            raise ValidationError(
                "Variance counterAccountId must match register variance gain/loss account configuration"
            )
    else:
        validate_transfer(register, counter_register)
        if txn_type == CashTxnType.TRANSFER_OUT:
            debit_account, credit_account = counter_register.account_id, register_account
            debit_unit = counter_register.operating_unit_id
        else:
            debit_account, credit_account = register_account, counter_register.account_id
            credit_unit = counter_register.operating_unit_id

    if not debit_account or not credit_account:
        raise ValidationError(f"{txn_type.value} requires counterAccountId")

    if transaction.reversal_of_transaction_id:
        debit_account, credit_account = credit_account, debit_account
        debit_unit, credit_unit = credit_unit, debit_unit

    description = transaction.description or f"Cash {txn_type.value}"
    reference = cash_reference(transaction.id)
    return [
        JournalLine(
            line_no=1,
            account_id=debit_account,
            debit_base=amount,
            credit_base=ZERO,
            description=description,
            operating_unit_id=debit_unit,
            subledger_reference_no=reference if debit_unit else None,
            currency_code=transaction.currency_code,
            amount_txn=amount,
        ),
        JournalLine(
            line_no=2,
            account_id=credit_account,
            debit_base=ZERO,
            credit_base=amount,
            description=description,
            operating_unit_id=credit_unit,
            subledger_reference_no=reference if credit_unit else None,
            currency_code=transaction.currency_code,
            amount_txn=-amount,
        ),
    ]


class CashJournalPoster:
    """Books cash transactions into the general ledger"""

    def __init__(self, fiscal: FiscalManager, ledger: GeneralLedger):
        self.fiscal = fiscal
        self.ledger = ledger

    def post(self, transaction, register, counter_register=None,
             user_id: Optional[str] = None) -> JournalEntry:
        """
        Must run inside the caller's transaction.

        Raises:
            ValidationError: No book or period for book_date, currency mismatch, bad lines
            ConflictError: Period not open
        """
        book = self.fiscal.get_primary_book(register.legal_entity_id)
        if book is None:
            raise ValidationError("No book found for cash transaction legal entity")
        period = self.fiscal.find_period_for_date(book.calendar_id, transaction.book_date)
        if period is None:
            raise ValidationError("No fiscal period found for cash transaction book_date")
        self.fiscal.ensure_period_open(book.id, period.id, "post cash transaction")
        if transaction.currency_code != book.base_currency_code:
            raise ValidationError(
                f"cashTransaction.currency_code ({transaction.currency_code}) must match "
                f"book base currency ({book.base_currency_code})"
            )

        lines = build_posting_lines(transaction, register, counter_register)
        txn_type = CashTxnType(transaction.txn_type)
        return self.ledger.record_system_journal(
            legal_entity_id=register.legal_entity_id,
            book_id=book.id,
            fiscal_period_id=period.id,
            lines=lines,
            source_type=SourceType.CASH,
            journal_no=f"CASH-{transaction.txn_no}",
            entry_date=transaction.book_date,
            description=transaction.description or f"Cash {txn_type.value} {transaction.txn_no}",
            reference_no=cash_reference(transaction.id),
            currency_code=transaction.currency_code,
            action_label="post cash transaction",
            user_id=user_id,
        )
