"""
Tests for journal creation, posting, reversal and cash control
"""

import pytest
from decimal import Decimal

from finance_core.audit import AuditEventType
from finance_core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from finance_core.filters import JournalFilter
from finance_core.fiscal import PeriodStatus
from finance_core.ledger import JournalLine, JournalStatus, SourceType
from finance_core.rbac import Permission, Principal

from conftest import build_seed, make_system


def create(seed, lines=None, period=None, **kwargs):
    period = period or seed.period(2)
    result = seed.system.ledger.create_journal(
        seed.le.id, seed.book.id, period.id, lines or seed.lines("5000", "1020"), **kwargs
    )
    return result["journal"]


def create_posted(seed, lines=None, period=None, **kwargs):
    journal = create(seed, lines, period, **kwargs)
    seed.system.ledger.post_journal(journal.id)
    return seed.system.ledger.get_journal(journal.id)


class TestJournalLine:
    """Test line invariants"""

    def test_exactly_one_side(self):
        with pytest.raises(ValueError):
            JournalLine(1, "acc", Decimal("10"), Decimal("10"))
        with pytest.raises(ValueError):
            JournalLine(1, "acc", Decimal("0"), Decimal("0"))

    def test_swapped(self):
        line = JournalLine(1, "acc", Decimal("10"), Decimal("0"), description="Rent")
        swapped = line.swapped()
        assert swapped.credit_base == Decimal("10")
        assert swapped.debit_base == Decimal("0")
        assert swapped.amount_txn == Decimal("-10")
        assert swapped.description == "Rent"


class TestCreateJournal:
    """Test DRAFT journal creation and validation"""

    def test_create_draft(self, seed):
        journal = create(seed, description="Stock purchase", reference_no="PO-1")

        assert journal.status == JournalStatus.DRAFT
        assert journal.source_type == SourceType.MANUAL
        assert journal.total_debit_base == Decimal("100")
        assert journal.total_credit_base == Decimal("100")
        assert journal.currency_code == "USD"
        assert journal.entry_date == seed.period(2).start_date
        assert journal.journal_no.startswith("JRN-")
        assert [line.line_no for line in journal.lines] == [1, 2]

    def test_create_is_audited(self, seed):
        journal = create(seed)
        events = seed.system.audit_trail.get_events_for_entity("journal_entry", journal.id)
        assert events[0].event_type == AuditEventType.JOURNAL_CREATED
        assert events[0].metadata["totalDebit"] == "100.000000"

    def test_cash_source_is_reserved(self, seed):
        with pytest.raises(ValidationError) as exc_info:
            create(seed, source_type=SourceType.CASH)
        assert exc_info.value.code == "SOURCE_TYPE_RESERVED"

    def test_needs_two_lines(self, seed):
        with pytest.raises(ValidationError, match="At least 2 journal lines are required"):
            create(seed, lines=seed.lines("5000", "1020")[:1])

    def test_missing_account(self, seed):
        lines = seed.lines("5000", "1020")
        lines[0]["account_id"] = None
        with pytest.raises(ValidationError, match=r"lines\[0\]\.accountId is required"):
            create(seed, lines=lines)

    def test_negative_amount(self, seed):
        lines = seed.lines("5000", "1020")
        lines[1]["credit_base"] = "-100"
        with pytest.raises(ValidationError, match=r"lines\[1\] debitBase/creditBase cannot be negative"):
            create(seed, lines=lines)

    def test_both_sides(self, seed):
        lines = seed.lines("5000", "1020")
        lines[0]["credit_base"] = "100"
        with pytest.raises(ValidationError, match="must have exactly one side > 0"):
            create(seed, lines=lines)

    def test_unbalanced(self, seed):
        lines = seed.lines("5000", "1020")
        lines[1]["credit_base"] = "90"
        with pytest.raises(ValidationError, match="Journal is not balanced") as exc_info:
            create(seed, lines=lines)
        assert exc_info.value.details == {"totalDebit": "100.000000", "totalCredit": "90.000000"}

    def test_balance_tolerance(self, seed):
        lines = seed.lines("5000", "1020")
        lines[1]["credit_base"] = "100.00005"
        assert create(seed, lines=lines).status == JournalStatus.DRAFT

    def test_unknown_account(self, seed):
        lines = seed.lines("5000", "1020")
        lines[1]["account_id"] = "missing"
        with pytest.raises(ValidationError, match=r"lines\[1\]\.accountId not found for tenant"):
            create(seed, lines=lines)

    def test_account_of_other_legal_entity(self, seed):
        lines = seed.lines("5000", "1020")
        lines[0]["account_id"] = seed.other_accounts["5000"].id
        with pytest.raises(ValidationError, match="account 5000 is not available to legal entity LE1"):
            create(seed, lines=lines)

    def test_parent_account(self, seed):
        with pytest.raises(ValidationError, match=r"lines\[0\] account 6000 is not postable"):
            create(seed, lines=seed.lines("6000", "1020"))

    def test_operating_unit_with_subledger(self, seed):
        unit = seed.system.organization.create_operating_unit(seed.le.id, "STORE", "Store",
                                                              has_subledger=True)
        with pytest.raises(ValidationError, match="subledgerReferenceNo is required"):
            create(seed, lines=seed.lines("5000", "1020", operating_unit_id=unit.id))

        journal = create(seed, lines=seed.lines("5000", "1020", operating_unit_id=unit.id,
                                                subledger_reference_no="SUB-1"))
        assert journal.lines[0].subledger_reference_no == "SUB-1"

    def test_counterparty_must_differ(self, seed):
        with pytest.raises(ValidationError, match="counterpartyLegalEntityId must differ from legalEntityId"):
            create(seed, lines=seed.lines("5000", "1020", counterparty_legal_entity_id=seed.le.id))

    def test_book_must_belong_to_entity(self, seed):
        with pytest.raises(ValidationError, match="bookId does not belong to legalEntityId"):
            seed.system.ledger.create_journal(seed.le.id, seed.other_book.id, seed.period(2).id,
                                              seed.lines("5000", "1020"))

    def test_unknown_book(self, seed):
        with pytest.raises(NotFoundError, match="bookId not found for tenant"):
            seed.system.ledger.create_journal(seed.le.id, "missing", seed.period(2).id,
                                              seed.lines("5000", "1020"))

    def test_closed_period(self, seed):
        seed.system.fiscal.close_period_status(seed.book.id, seed.period(2).id, PeriodStatus.SOFT_CLOSED)
        with pytest.raises(ConflictError, match="Period is SOFT_CLOSED; cannot create journal"):
            create(seed)

    def test_scope(self, seed):
        principal = Principal("scoped", legal_entity_ids=frozenset({seed.other_le.id}))
        with pytest.raises(ForbiddenError):
            create(seed, principal=principal)


class TestPostJournal:
    """Test posting"""

    def test_post(self, seed):
        journal = create(seed)
        result = seed.system.ledger.post_journal(journal.id, principal=Principal("poster"))

        assert result["posted"]
        assert result["posted_journal_ids"] == [journal.id]
        assert result["source_journal_id"] == journal.id
        assert result["shareholder_commitment_sync"] == []
        posted = seed.system.ledger.get_journal(journal.id)
        assert posted.status == JournalStatus.POSTED
        assert posted.posted_by == "poster"
        assert posted.posted_at is not None

    def test_post_twice(self, seed):
        journal = create_posted(seed)
        with pytest.raises(ConflictError, match="Only DRAFT journals can be posted"):
            seed.system.ledger.post_journal(journal.id)

    def test_post_into_closed_period(self, seed):
        journal = create(seed)
        seed.system.fiscal.close_period_status(seed.book.id, seed.period(2).id, PeriodStatus.HARD_CLOSED)
        with pytest.raises(ConflictError, match="Period is HARD_CLOSED; cannot post journal"):
            seed.system.ledger.post_journal(journal.id)
        assert seed.system.ledger.get_journal(journal.id).status == JournalStatus.DRAFT

    def test_unknown_journal(self, seed):
        with pytest.raises(NotFoundError, match="Journal not found"):
            seed.system.ledger.post_journal("missing")

    def test_failing_post_hook_is_reported(self, seed):
        def broken_hook(journal, principal):
            raise RuntimeError("downstream unavailable")

        seed.system.ledger.register_post_hook("broken", broken_hook)
        journal = create(seed)
        result = seed.system.ledger.post_journal(journal.id)

        assert result["posted"]
        assert result["shareholder_commitment_sync"] == [{
            "hook": "broken", "journal_id": journal.id, "ok": False,
            "error": "downstream unavailable",
        }]
        assert seed.system.ledger.get_journal(journal.id).status == JournalStatus.POSTED


class TestCashControl:
    """Test direct GL postings to cash-controlled accounts"""

    def test_off_mode_allows_posting(self, seed):
        journal = create_posted(seed, lines=seed.lines("1000", "4000"))
        assert journal.status == JournalStatus.POSTED

    def test_warn_mode_posts_with_audit_warning(self):
        seed = build_seed(make_system(cash_control_mode="WARN"))
        journal = create_posted(seed, lines=seed.lines("1000", "4000"))

        assert journal.status == JournalStatus.POSTED
        warnings = seed.system.audit_trail.get_events_by_type(AuditEventType.CASH_CONTROL_WARNING)
        assert [w.entity_id for w in warnings] == [journal.id]
        assert warnings[0].metadata["accounts"] == "1000"

    def test_enforce_mode_blocks(self):
        seed = build_seed(make_system(cash_control_mode="ENFORCE"))
        journal = create(seed, lines=seed.lines("1000", "4000"))

        with pytest.raises(ValidationError) as exc_info:
            seed.system.ledger.post_journal(journal.id)
        assert exc_info.value.code == "CASH_CONTROL_BLOCKED"
        assert str(exc_info.value).startswith(
            "Direct GL posting to cash-controlled account(s) [1000] is blocked."
        )
        assert seed.system.ledger.get_journal(journal.id).status == JournalStatus.DRAFT

    def test_enforce_mode_ignores_other_accounts(self):
        seed = build_seed(make_system(cash_control_mode="ENFORCE"))
        assert create_posted(seed).status == JournalStatus.POSTED

    def test_override_requires_reason(self):
        seed = build_seed(make_system(cash_control_mode="ENFORCE"))
        journal = create(seed, lines=seed.lines("1000", "4000"))
        with pytest.raises(ValidationError, match="overrideReason is required"):
            seed.system.ledger.post_journal(journal.id, override_cash_control=True,
                                            override_reason="  ")

    def test_override_requires_permission(self):
        seed = build_seed(make_system(cash_control_mode="ENFORCE"))
        journal = create(seed, lines=seed.lines("1000", "4000"))
        principal = Principal("clerk", permissions=frozenset({Permission.JOURNAL_POST}))
        with pytest.raises(ForbiddenError, match="gl.journal.cash_control_override"):
            seed.system.ledger.post_journal(journal.id, override_cash_control=True,
                                            override_reason="Bank fee correction",
                                            principal=principal)

    def test_override_posts_and_is_audited(self):
        seed = build_seed(make_system(cash_control_mode="ENFORCE"))
        journal = create(seed, lines=seed.lines("1000", "4000"))
        seed.system.ledger.post_journal(journal.id, override_cash_control=True,
                                        override_reason="Opening balance migration",
                                        principal=Principal("controller"))

        assert seed.system.ledger.get_journal(journal.id).status == JournalStatus.POSTED
        overrides = seed.system.audit_trail.get_events_by_type(AuditEventType.CASH_CONTROL_OVERRIDE)
        assert overrides[0].metadata["overrideReason"] == "Opening balance migration"
        assert overrides[0].user_id == "controller"


class TestReverseJournal:
    """Test reversals"""

    def test_reverse_auto_posts(self, seed):
        original = create_posted(seed, reference_no="INV-7")
        result = seed.system.ledger.reverse_journal(original.id, reason="Wrong account")

        assert result["reversal_status"] == "POSTED"
        assert result["original_marked_reversed"]
        reversal = seed.system.ledger.get_journal(result["reversal_journal_id"])
        assert reversal.journal_no == f"{original.journal_no}-REV"
        assert reversal.description == f"Reversal of {original.journal_no}"
        assert reversal.reference_no == "INV-7"
        assert reversal.entry_date == original.entry_date
        assert reversal.lines[0].credit_base == original.lines[0].debit_base

        original = seed.system.ledger.get_journal(original.id)
        assert original.status == JournalStatus.REVERSED
        assert original.reversal_journal_entry_id == reversal.id
        assert original.reverse_reason == "Wrong account"

    def test_reverse_into_later_period(self, seed):
        original = create_posted(seed)
        result = seed.system.ledger.reverse_journal(original.id, reversal_period_id=seed.period(3).id)
        reversal = seed.system.ledger.get_journal(result["reversal_journal_id"])
        assert reversal.fiscal_period_id == seed.period(3).id
        assert reversal.entry_date == seed.period(3).start_date

    def test_reverse_into_closed_period(self, seed):
        original = create_posted(seed)
        seed.system.fiscal.close_period_status(seed.book.id, seed.period(3).id, PeriodStatus.SOFT_CLOSED)
        with pytest.raises(ConflictError, match="Period is SOFT_CLOSED; cannot reverse journal"):
            seed.system.ledger.reverse_journal(original.id, reversal_period_id=seed.period(3).id)

    def test_reverse_twice(self, seed):
        original = create_posted(seed)
        seed.system.ledger.reverse_journal(original.id)
        with pytest.raises(ConflictError, match="Journal is already reversed"):
            seed.system.ledger.reverse_journal(original.id)

    def test_reverse_draft(self, seed):
        journal = create(seed)
        with pytest.raises(ConflictError, match="Only POSTED journals can be reversed"):
            seed.system.ledger.reverse_journal(journal.id)

    def test_draft_reversal_flips_original_on_post(self, seed):
        original = create_posted(seed)
        result = seed.system.ledger.reverse_journal(original.id, auto_post=False)

        assert result["reversal_status"] == "DRAFT"
        assert not result["original_marked_reversed"]
        assert seed.system.ledger.get_journal(original.id).status == JournalStatus.POSTED

        seed.system.ledger.post_journal(result["reversal_journal_id"])
        assert seed.system.ledger.get_journal(original.id).status == JournalStatus.REVERSED

        with pytest.raises(ConflictError, match="Journal is already reversed"):
            seed.system.ledger.reverse_journal(original.id)


class TestSystemJournals:
    """Test the entry points used by cash, subledger and period close"""

    def test_record_system_journal_needs_transaction(self, seed):
        lines = [JournalLine(1, seed.account("5000"), Decimal("5"), Decimal("0")),
                 JournalLine(2, seed.account("1020"), Decimal("0"), Decimal("5"))]
        with pytest.raises(RuntimeError):
            seed.system.ledger.record_system_journal(
                seed.le.id, seed.book.id, seed.period(2).id, lines, SourceType.SYSTEM,
                "SYS-1", seed.period(2).start_date, None, None,
            )

    def test_record_system_journal(self, seed):
        lines = [JournalLine(1, seed.account("5000"), Decimal("5"), Decimal("0")),
                 JournalLine(2, seed.account("1020"), Decimal("0"), Decimal("5"))]
        with seed.system.storage.atomic():
            journal = seed.system.ledger.record_system_journal(
                seed.le.id, seed.book.id, seed.period(2).id, lines, SourceType.SYSTEM,
                "SYS-1", seed.period(2).start_date, "System entry", "REF:1",
            )
        assert journal.status == JournalStatus.POSTED
        assert [j.id for j in seed.system.ledger.find_by_reference("REF:1")] == [journal.id]

    def test_reverse_within_transaction_is_idempotent(self, seed):
        original = create_posted(seed)
        with pytest.raises(RuntimeError):
            seed.system.ledger.reverse_posted_journal_within_transaction(original.id, "undo")

        with seed.system.storage.atomic():
            first = seed.system.ledger.reverse_posted_journal_within_transaction(original.id, "undo")
            second = seed.system.ledger.reverse_posted_journal_within_transaction(original.id, "undo")
        assert first == second


class TestListJournals:
    """Test journal listing"""

    def test_filters(self, seed):
        posted = create_posted(seed)
        draft = create(seed, period=seed.period(3))
        ledger = seed.system.ledger

        assert [j.id for j in ledger.list_journals(JournalFilter(status=JournalStatus.POSTED))] == [posted.id]
        assert [j.id for j in ledger.list_journals(JournalFilter(fiscal_period_id=seed.period(3).id))] == [draft.id]
        # Newest entry date first
        assert [j.id for j in ledger.list_journals(JournalFilter(book_id=seed.book.id))] == [draft.id, posted.id]
        assert [j.id for j in ledger.list_journals(JournalFilter(date_to=seed.period(2).end_date))] == [
            posted.id
        ]

    def test_find_posted_journals_includes_reversed(self, seed):
        original = create_posted(seed)
        seed.system.ledger.reverse_journal(original.id)
        found = seed.system.ledger.find_posted_journals(seed.book.id, seed.period(2).id)
        assert {j.status for j in found} == {JournalStatus.POSTED, JournalStatus.REVERSED}
        assert len(found) == 2
