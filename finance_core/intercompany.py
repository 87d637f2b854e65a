"""
Intercompany Module

Pair mappings between legal entities and the auto-mirror builder. A mirror
is the counterparty's side of an INTERCOMPANY journal: same amounts, swapped
sides, booked in the counterparty's primary book for the matching period.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .accounts import AccountManager
from .audit import AuditEventType, AuditTrail
from .errors import ValidationError
from .fiscal import FiscalManager
from .ledger import JournalEntry, JournalLine, JournalStatus, SourceType, ensure_balanced, line_totals
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


class PairStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class IntercompanyPair(StorageRecord):
    """Directed mapping from one legal entity to its counterparty"""
    from_legal_entity_id: str
    to_legal_entity_id: str
    receivable_account_id: Optional[str] = None
    payable_account_id: Optional[str] = None
    status: PairStatus = PairStatus.ACTIVE


class IntercompanyManager:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager, fiscal: FiscalManager,
                 accounts: AccountManager):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.fiscal = fiscal
        self.accounts = accounts
        self.table_name = "intercompany_pairs"

    def upsert_pair(
        self,
        from_legal_entity_id: str,
        to_legal_entity_id: str,
        receivable_account_id: Optional[str] = None,
        payable_account_id: Optional[str] = None,
        status: PairStatus = PairStatus.ACTIVE,
        principal: Optional[Principal] = None,
    ) -> IntercompanyPair:
        if from_legal_entity_id == to_legal_entity_id:
            raise ValidationError("fromLegalEntityId and toLegalEntityId must differ")
        assert_scope_access(principal, [from_legal_entity_id])
        status = PairStatus(status)

        with self.storage.atomic():
            self.organization.require_legal_entity(from_legal_entity_id, "fromLegalEntityId")
            self.organization.require_legal_entity(to_legal_entity_id, "toLegalEntityId")
            for field_name, account_id in (("receivableAccountId", receivable_account_id),
                                           ("payableAccountId", payable_account_id)):
                if not account_id:
                    continue
                account = self.accounts.require_account(account_id, field_name)
                if not self.accounts.is_in_legal_entity_scope(account, from_legal_entity_id):
                    raise ValidationError(f"{field_name} must belong to fromLegalEntityId chart")

            now = datetime.now(timezone.utc)
            pair = self.get_pair(from_legal_entity_id, to_legal_entity_id)
            if pair is None:
                pair = IntercompanyPair(
                    id=str(uuid.uuid4()), created_at=now, updated_at=now,
                    from_legal_entity_id=from_legal_entity_id,
                    to_legal_entity_id=to_legal_entity_id,
                )
            pair.receivable_account_id = receivable_account_id
            pair.payable_account_id = payable_account_id
            pair.status = status
            pair.updated_at = now
            self.records.save_record(pair, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.INTERCOMPANY_PAIR_UPSERTED, "intercompany_pair", pair.id,
                {"fromLegalEntityId": from_legal_entity_id,
                 "toLegalEntityId": to_legal_entity_id,
                 "status": status.value},
                user_id=principal.user_id if principal else None,
            )
        return pair

    def get_pair(self, from_legal_entity_id: str, to_legal_entity_id: str) -> Optional[IntercompanyPair]:
        return self.records.find_one(IntercompanyPair, self.table_name, {
            'from_legal_entity_id': from_legal_entity_id,
            'to_legal_entity_id': to_legal_entity_id,
        })

    def find_active_pair(self, from_legal_entity_id: str,
                         to_legal_entity_id: str) -> Optional[IntercompanyPair]:
        pair = self.get_pair(from_legal_entity_id, to_legal_entity_id)
        if pair is None or pair.status != PairStatus.ACTIVE:
            return None
        return pair

    def list_pairs(self, legal_entity_id: Optional[str] = None) -> List[IntercompanyPair]:
        pairs = self.records.find_records(IntercompanyPair, self.table_name, {})
        if legal_entity_id:
            pairs = [p for p in pairs if legal_entity_id in
                     (p.from_legal_entity_id, p.to_legal_entity_id)]
        return sorted(pairs, key=lambda p: p.created_at)

    # Auto mirror

    def build_mirror_journals(self, source: JournalEntry,
                              principal: Optional[Principal] = None) -> List[JournalEntry]:
        """
        Build one DRAFT mirror per counterparty of an INTERCOMPANY journal.
        Nothing is saved here; the caller writes source and mirrors together.

        Raises:
            ValidationError: Missing counterparty, disabled target, no reverse pair
            ConflictError: Target period not open
        """
        grouped: Dict[str, List[JournalLine]] = {}
        for line in source.lines:
            if not line.counterparty_legal_entity_id:
                raise ValidationError(
                    f"autoMirror requires counterpartyLegalEntityId on every line "
                    f"(missing on line {line.line_no})"
                )
            grouped.setdefault(line.counterparty_legal_entity_id, []).append(line)

        assert_scope_access(principal, grouped.keys())
        source_period = self.fiscal.require_period(source.fiscal_period_id)

        mirrors = []
        for target_id, lines in grouped.items():
            if target_id == source.legal_entity_id:
                raise ValidationError("autoMirror target must differ from the source legal entity")
            target = self.organization.require_legal_entity(target_id, "counterpartyLegalEntityId")
            if not target.is_intercompany_enabled:
                raise ValidationError(
                    f"Target legal entity {target.code} has intercompany disabled; cannot auto-mirror"
                )
            reverse_pair = self.find_active_pair(target_id, source.legal_entity_id)
            if reverse_pair is None or not reverse_pair.receivable_account_id \
                    or not reverse_pair.payable_account_id:
                raise ValidationError(
                    f"Active reverse intercompany pair with receivable and payable accounts "
                    f"is required from {target.code} for auto-mirror"
                )

            book = self.fiscal.get_primary_book(target_id)
            if book is None:
                raise ValidationError(f"No book found for target legal entity {target.code}")
            period = self.fiscal.find_matching_period(
                book.calendar_id, source_period.fiscal_year, source_period.period_no
            )
            if period is None:
                raise ValidationError(
                    f"No fiscal period {source_period.fiscal_year}/{source_period.period_no} "
                    f"for target book {book.code}"
                )
            self.fiscal.ensure_period_open(book.id, period.id, "create mirror journal")

            mirror_lines = []
            for index, line in enumerate(lines, start=1):
                mirrored = line.swapped(
                    description=f"Auto mirror of {source.journal_no} L{line.line_no}: "
                                f"{line.description or ''}".rstrip()
                )
                mirrored.line_no = index
                mirrored.counterparty_legal_entity_id = source.legal_entity_id
                mirrored.operating_unit_id = None
                mirrored.subledger_reference_no = None
                mirrored.account_id = self._map_account(line, target_id, mirrored, reverse_pair)
                mirror_lines.append(mirrored)

            ensure_balanced(mirror_lines, f"Auto mirror journal for {target.code} is not balanced")
            total_debit, total_credit = line_totals(mirror_lines)
            now = datetime.now(timezone.utc)
            mirrors.append(JournalEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                legal_entity_id=target_id,
                book_id=book.id,
                fiscal_period_id=period.id,
                journal_no=f"ICM-{source.journal_no}-{target.code}"[:40],
                source_type=SourceType.INTERCOMPANY,
                status=JournalStatus.DRAFT,
                entry_date=source.entry_date,
                document_date=source.document_date,
                currency_code=source.currency_code,
                description=f"Auto mirror of {source.journal_no}",
                reference_no=f"{source.reference_no or source.journal_no}-MIRROR-LE{target_id}",
                lines=mirror_lines,
                total_debit_base=total_debit,
                total_credit_base=total_credit,
                created_by=source.created_by,
                intercompany_source_journal_entry_id=source.id,
            ))
        return mirrors

    def _map_account(self, line: JournalLine, target_id: str, mirrored: JournalLine,
                     pair: IntercompanyPair) -> str:
        """Same account code in the target's chart, else the pair's receivable/payable"""
        source_account = self.accounts.get_account(line.account_id)
        if source_account is not None:
            candidate = self.accounts.find_account_by_code(target_id, source_account.code)
            if candidate is not None and candidate.is_active and candidate.allow_posting \
                    and not self.accounts.has_active_children(candidate.id):
                return candidate.id
        return pair.receivable_account_id if mirrored.debit_base > 0 else pair.payable_account_id
