"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change in the ledger, cash and subledger flows is logged here.
Chains are per tenant because the trail is written through tenant-aware storage.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, serialize_value


class AuditEventType(Enum):
    """Audit actions, dotted by area"""
    # Organisation setup
    LEGAL_ENTITY_CREATED = "org.legal_entity.create"
    INTERCOMPANY_POLICY_UPDATED = "org.legal_entity.intercompany_policy"
    OPERATING_UNIT_CREATED = "org.operating_unit.create"
    INTERCOMPANY_PAIR_UPSERTED = "org.intercompany_pair.upsert"
    FISCAL_CALENDAR_CREATED = "org.fiscal_calendar.create"
    FISCAL_PERIODS_GENERATED = "org.fiscal_periods.generate"
    BOOK_CREATED = "org.book.create"

    # Chart of accounts
    CHART_CREATED = "gl.chart.create"
    ACCOUNT_CREATED = "gl.account.create"
    PURPOSE_MAPPING_SET = "gl.purpose_mapping.set"

    # Journals
    JOURNAL_CREATED = "gl.journal.create"
    JOURNAL_POSTED = "gl.journal.post"
    JOURNAL_REVERSED = "gl.journal.reverse"
    CASH_CONTROL_WARNING = "gl.journal.cash_control_warn"
    CASH_CONTROL_OVERRIDE = "gl.journal.cash_control_override"

    # Period control
    PERIOD_STATUS_CHANGED = "gl.period_status.change"
    PERIOD_CLOSE_EXECUTED = "gl.period_close.execute"
    PERIOD_CLOSE_REOPENED = "gl.period_close.reopen"

    # Cash
    CASH_REGISTER_CREATED = "cash.register.create"
    CASH_REGISTER_STATUS_CHANGED = "cash.register.status"
    CASH_SESSION_OPENED = "cash.session.open"
    CASH_SESSION_CLOSED = "cash.session.close"
    CASH_TXN_CREATED = "cash.transaction.create"
    CASH_TXN_SUBMITTED = "cash.transaction.submit"
    CASH_TXN_APPROVED = "cash.transaction.approve"
    CASH_TXN_CANCELLED = "cash.transaction.cancel"
    CASH_TXN_POSTED = "cash.transaction.post"
    CASH_TXN_REVERSED = "cash.transaction.reverse"

    # Cari subledger
    COUNTERPARTY_CREATED = "cari.counterparty.create"
    PAYMENT_TERM_CREATED = "cari.payment_term.create"
    PAYMENT_TERMS_BOOTSTRAPPED = "cari.payment_term.bootstrap"
    CARI_DOCUMENT_CREATED = "cari.document.create"
    CARI_DOCUMENT_POSTED = "cari.document.post"
    CARI_DOCUMENT_CANCELLED = "cari.document.cancel"
    SETTLEMENT_APPLIED = "cari.settlement.apply"
    SETTLEMENT_REVERSED = "cari.settlement.reverse"

    # Approvals and access
    APPROVAL_REQUESTED = "approval.request"
    APPROVAL_DECIDED = "approval.decide"
    ROLE_CREATED = "rbac.role.create"
    USER_CREATED = "rbac.user.create"
    TENANT_CREATED = "tenant.create"

    # Posting hooks
    SHAREHOLDER_COMMITMENT_SYNCED = "equity.shareholder_commitment.sync"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = serialize_value(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'request_id': self.request_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()

    def _chain_head(self) -> Dict[str, Any]:
        """Sequence and hash of the latest event visible to the caller"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'hash': ""}
        last = max(events, key=lambda e: e.get('sequence', 0))
        return {'sequence': last.get('sequence', 0), 'hash': last.get('current_hash', "")}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        from .logging_config import get_request_id

        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                request_id=get_request_id(),
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = sorted(
            (AuditEvent.from_dict(d) for d in self.storage.load_all(self.table_name)),
            key=lambda e: e.sequence
        )
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return len(self.storage.load_all(self.table_name))
