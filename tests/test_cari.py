"""
Tests for payment terms, counterparties, cari documents and open items
"""

import pytest
from datetime import date
from decimal import Decimal

from finance_core.cari_documents import (
    CariDirection, DocumentStatus, DocumentType, OpenItemStatus, compute_due_date,
)
from finance_core.counterparties import PaymentTerm
from finance_core.errors import ConflictError, NotFoundError, ValidationError
from finance_core.filters import DocumentFilter, OpenItemFilter
from finance_core.fiscal import PeriodStatus
from finance_core.ledger import SourceType


@pytest.fixture
def terms(seed):
    seed.system.counterparties.bootstrap_payment_terms([seed.le.id])
    return {t.code: t for t in seed.system.counterparties.list_payment_terms(seed.le.id)}


@pytest.fixture
def customer(seed, terms):
    return seed.system.counterparties.create_counterparty(
        seed.le.id, "c-001", "Globex", is_customer=True,
        default_payment_term_id=terms["NET_30"].id,
    )


@pytest.fixture
def vendor(seed):
    return seed.system.counterparties.create_counterparty(seed.le.id, "V-001", "Initech",
                                                          is_vendor=True)


def march(seed, day=10):
    return date(seed.year, 3, day)


class TestPaymentTerms:
    """Test payment term setup"""

    def test_bootstrap_defaults(self, seed):
        counterparties = seed.system.counterparties
        result = counterparties.bootstrap_payment_terms([seed.le.id, seed.other_le.id])

        assert result["defaults_used"]
        assert result["template_count"] == 5
        assert result["created_count"] == 10
        codes = [t.code for t in counterparties.list_payment_terms(seed.le.id)]
        assert codes == ["DUE_ON_RECEIPT", "NET_15", "NET_30", "NET_45", "NET_60"]

    def test_bootstrap_is_idempotent(self, seed):
        counterparties = seed.system.counterparties
        counterparties.bootstrap_payment_terms([seed.le.id])
        again = counterparties.bootstrap_payment_terms([seed.le.id])
        assert again["created_count"] == 0
        assert again["skipped_count"] == 5

    def test_bootstrap_custom_templates(self, seed):
        result = seed.system.counterparties.bootstrap_payment_terms(
            [seed.le.id], [{"code": "net_10", "due_days": 10}, {"code": "EOM", "is_end_of_month": True}]
        )
        assert not result["defaults_used"]
        assert result["created_count"] == 2

    def test_bootstrap_rejects_bad_input(self, seed):
        counterparties = seed.system.counterparties
        with pytest.raises(ValidationError, match="legalEntityIds must be a non-empty array"):
            counterparties.bootstrap_payment_terms([])
        with pytest.raises(ValidationError, match="paymentTerms must be a non-empty array"):
            counterparties.bootstrap_payment_terms([seed.le.id], [])
        with pytest.raises(ValidationError, match="Duplicate payment term code: NET_10"):
            counterparties.bootstrap_payment_terms([seed.le.id], [{"code": "NET_10"},
                                                                  {"code": "net_10"}])
        with pytest.raises(ValidationError, match="due/grace days cannot be negative"):
            counterparties.bootstrap_payment_terms([seed.le.id], [{"code": "X", "due_days": -1}])

    def test_duplicate_term(self, seed, terms):
        with pytest.raises(ConflictError, match="Payment term code already exists: NET_30"):
            seed.system.counterparties.create_payment_term(seed.le.id, "net_30", due_days=30)

    def test_due_date(self):
        term = PaymentTerm(id="t", created_at=None, updated_at=None, legal_entity_id="le",
                           code="NET_30", name="Net 30",
                           due_days=30, grace_days=2)
        assert compute_due_date(date(2024, 1, 10), term) == date(2024, 2, 11)

        term.is_end_of_month = True
        assert compute_due_date(date(2024, 1, 10), term) == date(2024, 2, 29)


class TestCounterparties:
    """Test customer and vendor master data"""

    def test_create(self, customer, terms):
        assert customer.code == "C-001"
        assert customer.is_customer
        assert not customer.is_vendor

    def test_needs_a_role(self, seed):
        with pytest.raises(ValidationError, match="must be a customer, a vendor, or both"):
            seed.system.counterparties.create_counterparty(seed.le.id, "X", "Nobody")

    def test_control_account_needs_role(self, seed):
        with pytest.raises(ValidationError, match="arAccountId requires compatible counterparty role"):
            seed.system.counterparties.create_counterparty(seed.le.id, "X", "Vendor",
                                                           is_vendor=True,
                                                           ar_account_id=seed.account("1100"))

    def test_control_account_type(self, seed):
        with pytest.raises(ValidationError, match="apAccountId must have accountType=LIABILITY"):
            seed.system.counterparties.create_counterparty(seed.le.id, "X", "Vendor",
                                                           is_vendor=True,
                                                           ap_account_id=seed.account("1100"))

    def test_foreign_payment_term(self, seed):
        counterparties = seed.system.counterparties
        term = counterparties.create_payment_term(seed.other_le.id, "NET_7", due_days=7)
        with pytest.raises(ValidationError, match="paymentTermId must belong to legalEntityId"):
            counterparties.create_counterparty(seed.le.id, "X", "Customer", is_customer=True,
                                               default_payment_term_id=term.id)

    def test_duplicate_code(self, seed, customer):
        with pytest.raises(ConflictError, match="Counterparty code already exists: C-001"):
            seed.system.counterparties.create_counterparty(seed.le.id, "C-001", "Again",
                                                           is_customer=True)

    def test_list_by_role(self, seed, customer, vendor):
        counterparties = seed.system.counterparties
        assert [c.code for c in counterparties.list_counterparties(seed.le.id)] == ["C-001", "V-001"]
        assert [c.code for c in counterparties.list_counterparties(seed.le.id, "vendor")] == ["V-001"]
        with pytest.raises(ValidationError, match="role must be CUSTOMER or VENDOR"):
            counterparties.list_counterparties(seed.le.id, "PARTNER")


class TestDocuments:
    """Test drafting and posting cari documents"""

    def test_due_date_from_default_term(self, seed, customer):
        document = seed.system.documents.create_document(
            seed.le.id, customer.id, CariDirection.AR, DocumentType.INVOICE, "500",
            document_date=march(seed),
        )
        assert document.status == DocumentStatus.DRAFT
        assert document.due_date == date(seed.year, 4, 9)
        assert document.amount_base == Decimal("500")
        assert document.fx_rate == Decimal("1")

    def test_invoice_needs_due_date_or_term(self, seed, vendor):
        with pytest.raises(ValidationError, match="dueDate is required for documentType=INVOICE"):
            seed.system.documents.create_document(seed.le.id, vendor.id, CariDirection.AP,
                                                  DocumentType.INVOICE, "100")

    def test_payment_needs_no_due_date(self, seed, vendor):
        document = seed.system.documents.create_document(seed.le.id, vendor.id, CariDirection.AP,
                                                         DocumentType.PAYMENT, "100")
        assert document.due_date is None

    def test_due_date_before_document_date(self, seed, customer):
        with pytest.raises(ValidationError, match="dueDate cannot be before documentDate"):
            seed.system.documents.create_document(
                seed.le.id, customer.id, CariDirection.AR, DocumentType.INVOICE, "100",
                document_date=march(seed), due_date=date(seed.year, 3, 1),
            )

    def test_direction_needs_matching_role(self, seed, customer):
        with pytest.raises(ValidationError, match="AP documents require a vendor counterparty"):
            seed.system.documents.create_document(seed.le.id, customer.id, CariDirection.AP,
                                                  DocumentType.PAYMENT, "100")

    def test_foreign_currency_needs_rate(self, seed, customer):
        documents = seed.system.documents
        with pytest.raises(ValidationError, match="fxRate is required"):
            documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                      DocumentType.INVOICE, "100", currency_code="EUR")
        document = documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                             DocumentType.INVOICE, "100", currency_code="eur",
                                             fx_rate="1.1")
        assert document.currency_code == "EUR"
        assert document.amount_base == Decimal("110")

    def test_counterparty_must_belong_to_entity(self, seed, customer):
        with pytest.raises(ValidationError, match="counterpartyId must belong to legalEntityId"):
            seed.system.documents.create_document(seed.other_le.id, customer.id, CariDirection.AR,
                                                  DocumentType.PAYMENT, "100")

    def test_post_ar_invoice(self, seed, customer):
        documents = seed.system.documents
        document = documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                             DocumentType.INVOICE, "500",
                                             document_date=march(seed))
        result = documents.post_document(document.id)

        posted = result["document"]
        assert posted.status == DocumentStatus.POSTED
        assert posted.document_no == f"AR-INVOICE-{seed.year}-000001"

        journal = seed.system.ledger.get_journal(result["journal_entry_id"])
        assert journal.source_type == SourceType.SYSTEM
        assert journal.fiscal_period_id == seed.period(3).id
        assert journal.reference_no == f"CARI_DOC:{document.id}"
        assert {line.account_id: line.net for line in journal.lines} == {
            seed.account("1100"): Decimal("500"), seed.account("1190"): Decimal("-500"),
        }

        item = result["open_item"]
        assert item.status == OpenItemStatus.OPEN
        assert item.residual_amount_txn == Decimal("500")
        assert item.due_date == posted.due_date

    def test_ap_credit_note_sides(self, seed, vendor):
        documents = seed.system.documents
        document = documents.create_document(seed.le.id, vendor.id, CariDirection.AP,
                                             DocumentType.CREDIT_NOTE, "80",
                                             document_date=march(seed))
        result = documents.post_document(document.id)
        journal = seed.system.ledger.get_journal(result["journal_entry_id"])
        # Vendor credit note reduces the payable
        assert journal.lines[0].account_id == seed.account("2000")
        assert journal.lines[1].account_id == seed.account("2190")

    def test_counterparty_control_override(self, seed):
        counterparties = seed.system.counterparties
        special = counterparties.create_counterparty(seed.le.id, "C-002", "Hooli",
                                                     is_customer=True,
                                                     ar_account_id=seed.account("1020"))
        documents = seed.system.documents
        document = documents.create_document(seed.le.id, special.id, CariDirection.AR,
                                             DocumentType.PAYMENT, "40",
                                             document_date=march(seed))
        journal_id = documents.post_document(document.id)["journal_entry_id"]
        journal = seed.system.ledger.get_journal(journal_id)
        # Payments credit the control account
        assert journal.lines[1].account_id == seed.account("1020")

    def test_missing_mappings(self, seed):
        counterparties = seed.system.counterparties
        other_customer = counterparties.create_counterparty(seed.other_le.id, "C-9", "Umbrella",
                                                            is_customer=True)
        document = seed.system.documents.create_document(
            seed.other_le.id, other_customer.id, CariDirection.AR, DocumentType.PAYMENT, "10",
            document_date=march(seed),
        )
        with pytest.raises(ValidationError, match="Setup required") as exc_info:
            seed.system.documents.post_document(document.id)
        assert exc_info.value.code == "SETUP_REQUIRED"

    def test_post_into_closed_period(self, seed, customer):
        seed.system.fiscal.close_period_status(seed.book.id, seed.period(3).id,
                                               PeriodStatus.SOFT_CLOSED)
        documents = seed.system.documents
        document = documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                             DocumentType.INVOICE, "100",
                                             document_date=march(seed))
        with pytest.raises(ConflictError, match="cannot post document"):
            documents.post_document(document.id)

        still_draft = documents.get_document(document.id)
        assert still_draft.status == DocumentStatus.DRAFT
        assert still_draft.document_no is None
        assert documents.list_open_items(OpenItemFilter()) == []

    def test_only_drafts_post(self, seed, customer):
        documents = seed.system.documents
        document = documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                             DocumentType.INVOICE, "100",
                                             document_date=march(seed))
        documents.post_document(document.id)
        with pytest.raises(ConflictError, match="Only DRAFT documents can be posted"):
            documents.post_document(document.id)
        with pytest.raises(ConflictError, match="Only DRAFT documents can be cancelled"):
            documents.cancel_document(document.id)

    def test_cancel_draft(self, seed, customer):
        documents = seed.system.documents
        document = documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                             DocumentType.PAYMENT, "100")
        cancelled = documents.cancel_document(document.id, reason="Duplicate")
        assert cancelled.status == DocumentStatus.CANCELLED
        assert cancelled.cancel_reason == "Duplicate"

    def test_list_documents(self, seed, customer, vendor):
        documents = seed.system.documents
        documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                  DocumentType.PAYMENT, "10", document_date=march(seed, 5))
        later = documents.create_document(seed.le.id, customer.id, CariDirection.AR,
                                          DocumentType.PAYMENT, "20", document_date=march(seed, 20))
        documents.create_document(seed.le.id, vendor.id, CariDirection.AP,
                                  DocumentType.PAYMENT, "30", document_date=march(seed, 25))

        found = documents.list_documents(DocumentFilter(direction=CariDirection.AR, limit=1))
        assert [d.id for d in found] == [later.id]

    def test_unknown_document(self, seed):
        with pytest.raises(NotFoundError, match="Document not found"):
            seed.system.documents.post_document("missing")
