"""
Tests for cash registers, sessions and the cash transaction lifecycle
"""

import pytest
from datetime import date
from decimal import Decimal

from finance_core.approvals import ApprovalStatus
from finance_core.cash import (
    CashTxnStatus, CloseReason, RegisterStatus, SessionMode, SessionStatus,
)
from finance_core.cash_posting import CashTxnType, cash_reference
from finance_core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from finance_core.filters import CashTransactionFilter
from finance_core.fiscal import PeriodStatus
from finance_core.ledger import JournalStatus, SourceType
from finance_core.rbac import Principal


@pytest.fixture
def cash(seed):
    return seed.system.cash


@pytest.fixture
def register(seed, cash):
    """Main drawer on account 1000 with over/short accounts"""
    return cash.create_register(
        seed.le.id, "main", "Main drawer", seed.account("1000"),
        variance_gain_account_id=seed.account("4900"),
        variance_loss_account_id=seed.account("5900"),
    )


@pytest.fixture
def petty(seed, cash):
    """Petty cash box on account 1010 without sessions"""
    return cash.create_register(seed.le.id, "petty", "Petty cash", seed.account("1010"),
                                session_mode=SessionMode.NONE)


def receipt(seed, register, amount="50", **kwargs):
    kwargs.setdefault("counter_account_id", seed.account("4000"))
    return seed.system.cash.create_transaction(register.id, CashTxnType.RECEIPT, amount,
                                               **kwargs)["transaction"]


def journal_sides(seed, journal_id):
    journal = seed.system.ledger.get_journal(journal_id)
    return {line.account_id: line.net for line in journal.lines}


class TestRegisters:
    """Test register setup"""

    def test_create_register(self, seed, register):
        assert register.code == "MAIN"
        assert register.currency_code == "USD"
        assert register.session_mode == SessionMode.OPTIONAL
        assert register.status == RegisterStatus.ACTIVE

    def test_account_must_be_cash_controlled(self, seed, cash):
        with pytest.raises(ValidationError, match="must be cash-controlled"):
            cash.create_register(seed.le.id, "BANK", "Bank", seed.account("1020"))

    def test_account_must_be_in_entity_chart(self, seed, cash):
        with pytest.raises(ValidationError, match="accountId must belong to the selected legalEntityId"):
            cash.create_register(seed.other_le.id, "X", "Wrong chart", seed.account("1000"))

    def test_variance_account_must_be_postable(self, seed, cash):
        with pytest.raises(ValidationError, match="varianceLossAccountId must allow posting"):
            cash.create_register(seed.le.id, "X", "Drawer", seed.account("1000"),
                                 variance_loss_account_id=seed.account("6000"))

    def test_duplicate_code(self, seed, cash, register):
        with pytest.raises(ConflictError, match="Cash register code already exists: MAIN"):
            cash.create_register(seed.le.id, "Main", "Again", seed.account("1010"))

    def test_negative_limits(self, seed, cash):
        with pytest.raises(ValidationError, match="cannot be negative"):
            cash.create_register(seed.le.id, "X", "Drawer", seed.account("1000"),
                                 max_txn_amount="-1")

    def test_inactive_register_rejects_transactions(self, seed, cash, register):
        cash.set_register_status(register.id, RegisterStatus.INACTIVE)
        assert cash.list_registers(seed.le.id, status=RegisterStatus.ACTIVE) == []
        with pytest.raises(ValidationError, match="Cash register is not ACTIVE"):
            receipt(seed, register)


class TestSessions:
    """Test drawer sessions and the over/short variance"""

    def test_one_open_session(self, cash, register):
        session = cash.open_session(register.id, "100")
        assert session.status == SessionStatus.OPEN
        assert cash.find_open_session(register.id).id == session.id
        with pytest.raises(ConflictError, match="An OPEN session already exists"):
            cash.open_session(register.id)

    def test_no_sessions_on_none_mode(self, cash, petty):
        with pytest.raises(ValidationError, match="session_mode is NONE"):
            cash.open_session(petty.id)

    def test_transactions_join_open_session(self, seed, cash, register):
        session = cash.open_session(register.id, "100")
        txn = receipt(seed, register)
        assert txn.cash_session_id == session.id

    def test_required_session(self, seed, cash):
        strict = cash.create_register(seed.le.id, "STRICT", "Strict drawer", seed.account("1010"),
                                      session_mode=SessionMode.REQUIRED)
        with pytest.raises(ValidationError, match="An OPEN cash session is required"):
            receipt(seed, strict)

    def test_close_without_variance(self, seed, cash, register):
        session = cash.open_session(register.id, "100")
        cash.post_transaction(receipt(seed, register, "50").id)
        payout = cash.create_transaction(register.id, CashTxnType.PAYOUT, "20",
                                         counter_account_id=seed.account("5000"))["transaction"]
        cash.post_transaction(payout.id)

        result = cash.close_session(session.id, "130")
        closed = result["session"]
        assert closed.status == SessionStatus.CLOSED
        assert closed.expected_closing_amount == Decimal("130")
        assert closed.variance_amount == 0
        assert not result["variance_auto_posted"]

    def test_short_variance_is_posted(self, seed, cash, register):
        session = cash.open_session(register.id, "100")
        cash.post_transaction(receipt(seed, register, "50").id)

        result = cash.close_session(session.id, "145")
        assert result["variance_auto_posted"]
        assert result["session"].variance_amount == Decimal("-5")

        variance = cash.get_transaction(result["variance_transaction_id"])
        assert variance.txn_type == CashTxnType.VARIANCE
        assert variance.status == CashTxnStatus.POSTED
        assert variance.amount == Decimal("5")
        assert journal_sides(seed, variance.posted_journal_entry_id) == {
            seed.account("5900"): Decimal("5"), seed.account("1000"): Decimal("-5"),
        }

    def test_over_variance_uses_gain_account(self, seed, cash, register):
        session = cash.open_session(register.id, "100")
        result = cash.close_session(session.id, "102")
        variance = cash.get_transaction(result["variance_transaction_id"])
        assert journal_sides(seed, variance.posted_journal_entry_id) == {
            seed.account("1000"): Decimal("2"), seed.account("4900"): Decimal("-2"),
        }

    def test_variance_needs_configured_account(self, seed, cash):
        drawer = cash.create_register(seed.le.id, "BARE", "No variance accounts", seed.account("1010"))
        session = cash.open_session(drawer.id, "10")
        with pytest.raises(ValidationError, match="varianceLossAccountId must be configured"):
            cash.close_session(session.id, "9")
        assert cash.get_session(session.id).status == SessionStatus.OPEN

    def test_large_variance_needs_approval(self, seed, cash):
        drawer = cash.create_register(
            seed.le.id, "GUARDED", "Guarded drawer", seed.account("1010"),
            requires_approval_over_amount="10",
            variance_gain_account_id=seed.account("4900"),
            variance_loss_account_id=seed.account("5900"),
        )
        session = cash.open_session(drawer.id, "100")

        with pytest.raises(ValidationError, match="closeNote is required when variance exceeds"):
            cash.close_session(session.id, "80")
        with pytest.raises(ValidationError, match="supervisor/finance approval is required"):
            cash.close_session(session.id, "80", close_note="Counted twice")

        result = cash.close_session(session.id, "80", close_note="Counted twice",
                                    approve_variance=True, principal=Principal("supervisor"))
        assert result["variance_approval_required"]
        assert result["session"].variance_approved_by == "supervisor"

    def test_forced_close_needs_note(self, cash, register):
        session = cash.open_session(register.id)
        with pytest.raises(ValidationError, match="closeNote is required when closedReason is FORCED_CLOSE"):
            cash.close_session(session.id, "0", closed_reason=CloseReason.FORCED_CLOSE)

    def test_unposted_transactions_block_close(self, seed, cash, register):
        session = cash.open_session(register.id)
        draft = receipt(seed, register)
        with pytest.raises(ConflictError, match="Cannot close session") as exc_info:
            cash.close_session(session.id, "0")
        assert exc_info.value.details["transactionIds"] == [draft.id]

    def test_reversal_nets_out_of_movement(self, seed, cash, register):
        session = cash.open_session(register.id, "0")
        txn = receipt(seed, register, "40")
        cash.post_transaction(txn.id)
        cash.reverse_transaction(txn.id, reason="Wrong drawer")
        assert cash.session_movement(register.id, session.id) == 0


class TestTransactions:
    """Test drafting, posting and idempotency"""

    def test_draft_receipt(self, seed, register):
        txn = receipt(seed, register)
        assert txn.status == CashTxnStatus.DRAFT
        assert txn.txn_no == f"CT-LE1-{date.today().year}-000001"
        assert txn.book_date == date.today()
        assert receipt(seed, register).txn_no.endswith("000002")

    def test_variance_is_system_only(self, seed, cash, register):
        with pytest.raises(ValidationError, match="VARIANCE can only be system-generated"):
            cash.create_transaction(register.id, CashTxnType.VARIANCE, "5",
                                    counter_account_id=seed.account("5900"))

    def test_counter_account_required(self, cash, register):
        with pytest.raises(ValidationError, match="RECEIPT requires counterAccountId"):
            cash.create_transaction(register.id, CashTxnType.RECEIPT, "5")

    def test_amount_must_be_positive(self, seed, register):
        with pytest.raises(ValidationError, match="amount must be > 0"):
            receipt(seed, register, "0")

    def test_max_amount(self, seed, cash):
        drawer = cash.create_register(seed.le.id, "SMALL", "Small drawer", seed.account("1010"),
                                      max_txn_amount="25")
        with pytest.raises(ValidationError, match="exceeds register max_txn_amount"):
            receipt(seed, drawer, "30")

    def test_currency_must_match_register(self, seed, register):
        with pytest.raises(ValidationError, match="must match register currency"):
            receipt(seed, register, currency_code="EUR")

    def test_counter_account_scope(self, seed, register):
        with pytest.raises(ValidationError, match="counterAccountId must belong to the register legal entity"):
            receipt(seed, register, counter_account_id=seed.other_accounts["5000"].id)

    def test_idempotency_key(self, seed, cash, register):
        first = cash.create_transaction(register.id, CashTxnType.RECEIPT, "50",
                                        counter_account_id=seed.account("4000"),
                                        idempotency_key="pos-1")
        replay = cash.create_transaction(register.id, CashTxnType.RECEIPT, "75",
                                         counter_account_id=seed.account("4000"),
                                         idempotency_key="pos-1")

        assert not first["idempotent_replay"]
        assert replay["idempotent_replay"]
        assert replay["transaction"].id == first["transaction"].id
        assert replay["transaction"].amount == Decimal("50")

    def test_post_receipt(self, seed, cash, register):
        txn = receipt(seed, register)
        result = cash.post_transaction(txn.id)

        posted = result["transaction"]
        assert posted.status == CashTxnStatus.POSTED
        journal = seed.system.ledger.get_journal(result["journal_entry_id"])
        assert journal.source_type == SourceType.CASH
        assert journal.status == JournalStatus.POSTED
        assert journal.journal_no == f"CASH-{txn.txn_no}"
        assert journal.reference_no == cash_reference(txn.id)
        assert journal_sides(seed, journal.id) == {
            seed.account("1000"): Decimal("50"), seed.account("4000"): Decimal("-50"),
        }

    def test_post_replay(self, seed, cash, register):
        txn = receipt(seed, register)
        first = cash.post_transaction(txn.id)
        again = cash.post_transaction(txn.id)
        assert again["idempotent_replay"]
        assert again["journal_entry_id"] == first["journal_entry_id"]

    def test_post_into_closed_period(self, seed, cash, register):
        txn = receipt(seed, register)
        seed.system.fiscal.close_period_status(seed.book.id, seed.current_period.id,
                                               PeriodStatus.SOFT_CLOSED)
        with pytest.raises(ConflictError, match="cannot post cash transaction"):
            cash.post_transaction(txn.id)
        assert cash.get_transaction(txn.id).status == CashTxnStatus.DRAFT

    def test_cancel(self, seed, cash, register):
        txn = receipt(seed, register)
        cancelled = cash.cancel_transaction(txn.id, reason="Typo")
        assert cancelled.status == CashTxnStatus.CANCELLED
        with pytest.raises(ConflictError, match="Only DRAFT, SUBMITTED, or APPROVED"):
            cash.post_transaction(txn.id)

    def test_list_transactions(self, seed, cash, register):
        posted = receipt(seed, register)
        cash.post_transaction(posted.id)
        receipt(seed, register)

        found = cash.list_transactions(CashTransactionFilter(cash_register_id=register.id,
                                                             status=CashTxnStatus.POSTED))
        assert [t.id for t in found] == [posted.id]

    def test_unknown_transaction(self, cash):
        with pytest.raises(NotFoundError, match="Cash transaction not found"):
            cash.post_transaction("missing")


class TestApprovalFlow:
    """Test maker-checker on cash transactions"""

    def test_submit_and_approve(self, seed, cash, register):
        txn = receipt(seed, register, principal=Principal("cashier"))
        submitted = cash.submit_transaction(txn.id, principal=Principal("cashier"))
        assert submitted.status == CashTxnStatus.SUBMITTED

        approvals = seed.system.approvals
        request = approvals.decide(submitted.approval_request_id, True,
                                   principal=Principal("supervisor"))
        assert request.status == ApprovalStatus.APPROVED
        assert cash.get_transaction(txn.id).status == CashTxnStatus.APPROVED

        cash.post_transaction(txn.id)
        assert cash.get_transaction(txn.id).status == CashTxnStatus.POSTED

    def test_maker_cannot_approve(self, seed, cash, register):
        txn = receipt(seed, register)
        submitted = cash.submit_transaction(txn.id, principal=Principal("cashier"))
        with pytest.raises(ForbiddenError, match="Requester cannot decide"):
            seed.system.approvals.decide(submitted.approval_request_id, True,
                                         principal=Principal("cashier"))

    def test_rejection_returns_to_draft(self, seed, cash, register):
        txn = receipt(seed, register)
        submitted = cash.submit_transaction(txn.id, principal=Principal("cashier"))
        seed.system.approvals.decide(submitted.approval_request_id, False, note="Missing slip",
                                     principal=Principal("supervisor"))
        assert cash.get_transaction(txn.id).status == CashTxnStatus.DRAFT

    def test_only_drafts_are_submitted(self, seed, cash, register):
        txn = receipt(seed, register)
        cash.post_transaction(txn.id)
        with pytest.raises(ConflictError, match="Only DRAFT transactions can be submitted"):
            cash.submit_transaction(txn.id)


class TestTransfers:
    """Test register to register transfers"""

    def test_transfer_out(self, seed, cash, register, petty):
        txn = cash.create_transaction(register.id, CashTxnType.TRANSFER_OUT, "30",
                                      counter_cash_register_id=petty.id)["transaction"]
        assert txn.counter_account_id is None
        result = cash.post_transaction(txn.id)
        assert journal_sides(seed, result["journal_entry_id"]) == {
            seed.account("1010"): Decimal("30"), seed.account("1000"): Decimal("-30"),
        }

    def test_transfer_needs_counter_register(self, cash, register):
        with pytest.raises(ValidationError, match="TRANSFER_IN requires counterCashRegisterId"):
            cash.create_transaction(register.id, CashTxnType.TRANSFER_IN, "30")

    def test_transfer_to_self(self, cash, register):
        with pytest.raises(ValidationError, match="must differ from registerId"):
            cash.create_transaction(register.id, CashTxnType.TRANSFER_OUT, "30",
                                    counter_cash_register_id=register.id)

    def test_cross_unit_transfer_is_rejected(self, seed, cash, register):
        unit = seed.system.organization.create_operating_unit(seed.le.id, "BR1", "Branch")
        branch = cash.create_register(seed.le.id, "BRANCH", "Branch drawer", seed.account("1010"),
                                      operating_unit_id=unit.id)
        with pytest.raises(ValidationError, match="Cross-OU transfer requires CASH_IN_TRANSIT"):
            cash.create_transaction(register.id, CashTxnType.TRANSFER_OUT, "30",
                                    counter_cash_register_id=branch.id)


class TestReversal:
    """Test cash reversals"""

    def test_reverse_posted(self, seed, cash, register):
        txn = receipt(seed, register)
        cash.post_transaction(txn.id)
        result = cash.reverse_transaction(txn.id, reason="Duplicate")

        original = result["original"]
        reversal = result["reversal"]
        assert original.status == CashTxnStatus.REVERSED
        assert original.reversed_by_transaction_id == reversal.id
        assert reversal.status == CashTxnStatus.POSTED
        assert reversal.reversal_of_transaction_id == txn.id
        assert reversal.description == f"Reversal of {txn.txn_no}: Duplicate"
        assert journal_sides(seed, reversal.posted_journal_entry_id) == {
            seed.account("4000"): Decimal("50"), seed.account("1000"): Decimal("-50"),
        }

    def test_reverse_replay(self, seed, cash, register):
        txn = receipt(seed, register)
        cash.post_transaction(txn.id)
        first = cash.reverse_transaction(txn.id)
        again = cash.reverse_transaction(txn.id)
        assert again["idempotent_replay"]
        assert again["reversal"].id == first["reversal"].id

    def test_reversal_cannot_be_reversed(self, seed, cash, register):
        txn = receipt(seed, register)
        cash.post_transaction(txn.id)
        reversal = cash.reverse_transaction(txn.id)["reversal"]
        with pytest.raises(ValidationError, match="Reversal transactions cannot be reversed"):
            cash.reverse_transaction(reversal.id)

    def test_draft_cannot_be_reversed(self, seed, cash, register):
        txn = receipt(seed, register)
        with pytest.raises(ConflictError, match="Only POSTED transactions can be reversed"):
            cash.reverse_transaction(txn.id)

    def test_cash_journal_is_not_reversed_in_ledger(self, seed, cash, register):
        txn = receipt(seed, register)
        journal_id = cash.post_transaction(txn.id)["journal_entry_id"]
        with pytest.raises(ValidationError, match="Cash journals are reversed via"):
            seed.system.ledger.reverse_journal(journal_id)
