"""
Tests for shareholder capital commitments
"""

import pytest
from decimal import Decimal

from finance_core.commitments import CommitmentStatus
from finance_core.errors import ConflictError, ValidationError
from finance_core.ledger import JournalStatus


@pytest.fixture
def commitment(seed):
    return seed.system.commitments.create_commitment(
        seed.le.id, "  Jane Holder ", "1000", seed.account("3100"), seed.account("1200"),
    )


def draft(seed, commitment):
    return seed.system.commitments.draft_commitment_journal(commitment.id, seed.book.id,
                                                            seed.period(2).id)


class TestCreateCommitment:
    """Test commitment capture"""

    def test_create(self, commitment):
        assert commitment.shareholder_name == "Jane Holder"
        assert commitment.committed_amount == Decimal("1000")
        assert commitment.status == CommitmentStatus.PENDING
        assert commitment.journal_entry_id is None

    def test_name_required(self, seed):
        with pytest.raises(ValidationError, match="shareholderName is required"):
            seed.system.commitments.create_commitment(seed.le.id, " ", "10", seed.account("3100"),
                                                      seed.account("1200"))

    def test_amount_must_be_positive(self, seed):
        with pytest.raises(ValidationError, match="committedAmount must be > 0"):
            seed.system.commitments.create_commitment(seed.le.id, "Jane", "0", seed.account("3100"),
                                                      seed.account("1200"))

    def test_capital_must_be_equity(self, seed):
        with pytest.raises(ValidationError, match="capitalAccountId must be an EQUITY account"):
            seed.system.commitments.create_commitment(seed.le.id, "Jane", "10", seed.account("4000"),
                                                      seed.account("1200"))

    def test_accounts_must_be_in_entity_chart(self, seed):
        with pytest.raises(ValidationError, match="capitalAccountId must belong to the legal entity chart"):
            seed.system.commitments.create_commitment(seed.other_le.id, "Jane", "10",
                                                      seed.account("3100"), seed.account("1200"))


class TestCommitmentJournal:
    """Test drafting and syncing the capital journal"""

    def test_draft_links_journal(self, seed, commitment):
        result = draft(seed, commitment)
        journal = result["journal"]

        assert journal.status == JournalStatus.DRAFT
        assert journal.reference_no == f"SHAREHOLDER_COMMITMENT:{commitment.id}"
        assert {line.account_id: line.net for line in journal.lines} == {
            seed.account("1200"): Decimal("1000"), seed.account("3100"): Decimal("-1000"),
        }
        assert result["commitment"].journal_entry_id == journal.id
        assert result["commitment"].status == CommitmentStatus.PENDING

    def test_second_draft_is_rejected(self, seed, commitment):
        draft(seed, commitment)
        with pytest.raises(ConflictError, match="Commitment already has a journal"):
            draft(seed, commitment)

    def test_posting_journalizes(self, seed, commitment):
        journal = draft(seed, commitment)["journal"]
        posted = seed.system.ledger.post_journal(journal.id)

        sync = posted["shareholder_commitment_sync"]
        assert len(sync) == 1
        assert sync[0]["ok"]
        assert sync[0]["applied"]
        assert sync[0]["shareholder_count"] == 1

        stored = seed.system.commitments.get_commitment(commitment.id)
        assert stored.status == CommitmentStatus.JOURNALIZED
        assert stored.journalized_amount == Decimal("1000")
        assert stored.journalized_at is not None

    def test_journalized_cannot_be_redrafted(self, seed, commitment):
        journal = draft(seed, commitment)["journal"]
        seed.system.ledger.post_journal(journal.id)
        with pytest.raises(ConflictError, match="Commitment is already journalized"):
            draft(seed, commitment)

    def test_unlinked_journals_are_ignored(self, seed):
        ledger = seed.system.ledger
        journal = ledger.create_journal(seed.le.id, seed.book.id, seed.period(2).id,
                                        seed.lines("1020", "4000"))["journal"]
        assert ledger.post_journal(journal.id)["shareholder_commitment_sync"] == []

    def test_list_by_status(self, seed, commitment):
        commitments = seed.system.commitments
        other = commitments.create_commitment(seed.le.id, "John Holder", "500",
                                              seed.account("3100"), seed.account("1200"))
        seed.system.ledger.post_journal(draft(seed, commitment)["journal"].id)

        pending = commitments.list_commitments(seed.le.id, CommitmentStatus.PENDING)
        assert [c.id for c in pending] == [other.id]
        assert len(commitments.list_commitments(seed.le.id)) == 2
