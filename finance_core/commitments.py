"""
Shareholder Commitments

Capital a shareholder has committed to a legal entity. A commitment is drafted
as a MANUAL journal (Dr subscription receivable / Cr share capital); once that
journal is posted the ledger post hook marks the commitment JOURNALIZED.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .accounts import AccountManager, AccountType
from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .fiscal import FiscalManager
from .ledger import GeneralLedger, JournalEntry, JournalStatus
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


logger = get_logger("finance_core.commitments")

COMMITMENT_REFERENCE_PREFIX = "SHAREHOLDER_COMMITMENT:"
SYNC_HOOK_NAME = "shareholder_commitment_sync"


class CommitmentStatus(Enum):
    PENDING = "PENDING"
    JOURNALIZED = "JOURNALIZED"


@dataclass
class ShareholderCommitment(StorageRecord):
    legal_entity_id: str
    shareholder_name: str
    committed_amount: Decimal
    capital_account_id: str
    receivable_account_id: str
    status: CommitmentStatus = CommitmentStatus.PENDING
    journal_entry_id: Optional[str] = None
    journalized_amount: Decimal = ZERO
    journalized_at: Optional[datetime] = None
    created_by: Optional[str] = None


class ShareholderCommitmentManager:
    """Commitment capture plus the post-hook that syncs posted journals"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager, fiscal: FiscalManager,
                 accounts: AccountManager, ledger: GeneralLedger):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.fiscal = fiscal
        self.accounts = accounts
        self.ledger = ledger
        self.table_name = "shareholder_commitments"
        ledger.register_post_hook(SYNC_HOOK_NAME, self.sync_posted_journal)

    def _check_account(self, legal_entity_id: str, account_id: str,
                       expected: AccountType, field_name: str) -> None:
        account = self.accounts.require_account(account_id, field_name)
        if not self.accounts.is_in_legal_entity_scope(account, legal_entity_id):
            raise ValidationError(f"{field_name} must belong to the legal entity chart")
        if account.account_type != expected:
            raise ValidationError(f"{field_name} must be an {expected.value} account")
        self.accounts.assert_postable_leaf(account, field_name)

    def create_commitment(self, legal_entity_id: str, shareholder_name: str,
                          committed_amount: Any, capital_account_id: str,
                          receivable_account_id: str,
                          principal: Optional[Principal] = None) -> ShareholderCommitment:
        shareholder_name = (shareholder_name or "").strip()
        if not shareholder_name:
            raise ValidationError("shareholderName is required")
        amount = to_amount(committed_amount, "committedAmount")
        if amount <= ZERO:
            raise ValidationError("committedAmount must be > 0")
        assert_scope_access(principal, [legal_entity_id])
        user_id = principal.user_id if principal else None

        with self.storage.atomic():
            self.organization.require_legal_entity(legal_entity_id)
            self._check_account(legal_entity_id, capital_account_id,
                                AccountType.EQUITY, "capitalAccountId")
            self._check_account(legal_entity_id, receivable_account_id,
                                AccountType.ASSET, "receivableAccountId")

            now = datetime.now(timezone.utc)
            commitment = ShareholderCommitment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                legal_entity_id=legal_entity_id,
                shareholder_name=shareholder_name,
                committed_amount=amount,
                capital_account_id=capital_account_id,
                receivable_account_id=receivable_account_id,
                created_by=user_id,
            )
            self.records.save_record(commitment, self.table_name)
        return commitment

    def draft_commitment_journal(self, commitment_id: str, book_id: str,
                                 fiscal_period_id: str, entry_date: Optional[date] = None,
                                 principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Create the DRAFT capital journal for a pending commitment and link it.

        Raises:
            ConflictError: Commitment already journalized or already drafted
        """
        commitment = self.require_commitment(commitment_id)
        assert_scope_access(principal, [commitment.legal_entity_id])
        if commitment.status != CommitmentStatus.PENDING:
            raise ConflictError("Commitment is already journalized",
                                details={"commitmentId": commitment.id})

        with self.storage.atomic():
            if commitment.journal_entry_id:
                existing = self.ledger.get_journal(commitment.journal_entry_id)
                if existing is not None and existing.status != JournalStatus.REVERSED:
                    raise ConflictError("Commitment already has a journal",
                                        details={"journalId": existing.id})

            description = f"Capital commitment: {commitment.shareholder_name}"
            amount = str(commitment.committed_amount)
            result = self.ledger.create_journal(
                legal_entity_id=commitment.legal_entity_id,
                book_id=book_id,
                fiscal_period_id=fiscal_period_id,
                lines=[
                    {"account_id": commitment.receivable_account_id, "debit_base": amount,
                     "credit_base": "0", "description": description},
                    {"account_id": commitment.capital_account_id, "debit_base": "0",
                     "credit_base": amount, "description": description},
                ],
                entry_date=entry_date,
                description=description,
                reference_no=f"{COMMITMENT_REFERENCE_PREFIX}{commitment.id}",
                principal=principal,
            )
            commitment.journal_entry_id = result["journal"].id
            commitment.touch()
            self.records.save_record(commitment, self.table_name)
        return {"commitment": commitment, "journal": result["journal"]}

    def sync_posted_journal(self, journal: JournalEntry,
                            principal: Optional[Principal] = None) -> Optional[Dict[str, Any]]:
        """Post hook: mark the commitments drafted on this journal as JOURNALIZED"""
        linked = self.records.find_records(ShareholderCommitment, self.table_name,
                                           {'journal_entry_id': journal.id})
        if not linked:
            return None

        user_id = principal.user_id if principal else None
        applied = []
        skipped = 0
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            for commitment in linked:
                if commitment.status == CommitmentStatus.JOURNALIZED:
                    skipped += 1
                    continue
                commitment.status = CommitmentStatus.JOURNALIZED
                commitment.journalized_amount = commitment.committed_amount
                commitment.journalized_at = now
                commitment.updated_at = now
                self.records.save_record(commitment, self.table_name)
                applied.append(commitment)

            total = sum((c.committed_amount for c in applied), ZERO)
            if applied:
                self.audit_trail.log_event(
                    AuditEventType.SHAREHOLDER_COMMITMENT_SYNCED, "journal_entry", journal.id,
                    {"commitmentIds": [c.id for c in applied], "totalAmount": total},
                    user_id=user_id,
                )

        if applied:
            log_action(logger, "info", "Shareholder commitments journalized", user_id=user_id,
                       action="equity.shareholder_commitment.sync", resource=journal.id,
                       extra={"shareholder_count": len(applied), "total_amount": str(total)})
        return {
            "hook": SYNC_HOOK_NAME,
            "journal_entry_id": journal.id,
            "ok": True,
            "applied": bool(applied),
            "shareholder_count": len(applied),
            "total_amount": str(total),
            "skipped_already_synced_count": skipped,
        }

    def get_commitment(self, commitment_id: str) -> Optional[ShareholderCommitment]:
        return self.records.load_record(ShareholderCommitment, self.table_name, commitment_id)

    def require_commitment(self, commitment_id: str) -> ShareholderCommitment:
        commitment = self.get_commitment(commitment_id) if commitment_id else None
        if commitment is None:
            raise NotFoundError("Shareholder commitment not found",
                                details={"commitmentId": commitment_id})
        return commitment

    def list_commitments(self, legal_entity_id: Optional[str] = None,
                         status: Optional[CommitmentStatus] = None) -> List[ShareholderCommitment]:
        filters: Dict[str, Any] = {}
        if legal_entity_id:
            filters['legal_entity_id'] = legal_entity_id
        if status:
            filters['status'] = status.value
        commitments = self.records.find_records(ShareholderCommitment, self.table_name, filters)
        return sorted(commitments, key=lambda c: c.created_at)
