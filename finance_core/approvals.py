"""
Approval Requests

Maker-checker staging for actions that need a second person. A request is
decided exactly once; the apply callback registered for its action runs in
the same transaction as the decision.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .rbac import Principal
from .storage import StorageInterface, StorageRecord, StorageManager


logger = get_logger("finance_core.approvals")


class ApprovalStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class ApprovalRequest(StorageRecord):
    target_type: str
    target_id: str
    action: str
    status: ApprovalStatus
    requested_by: Optional[str] = None
    legal_entity_id: Optional[str] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_note: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


# (request, approved, principal) -> None
ApplyCallback = Callable[[ApprovalRequest, bool, Optional[Principal]], None]


class ApprovalManager:

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.table_name = "approval_requests"
        self._callbacks: Dict[str, ApplyCallback] = {}

    def register_action(self, action: str, callback: ApplyCallback) -> None:
        self._callbacks[action] = callback

    def request(self, target_type: str, target_id: str, action: str,
                payload: Optional[Dict[str, Any]] = None,
                legal_entity_id: Optional[str] = None,
                principal: Optional[Principal] = None) -> ApprovalRequest:
        if action not in self._callbacks:
            raise ValidationError(f"Unknown approval action: {action}")

        with self.storage.atomic():
            pending = self.records.find_one(ApprovalRequest, self.table_name, {
                'target_type': target_type,
                'target_id': target_id,
                'action': action,
                'status': ApprovalStatus.PENDING.value,
            })
            if pending is not None:
                raise ConflictError("A PENDING approval request already exists for this target",
                                    details={"approvalRequestId": pending.id})

            now = datetime.now(timezone.utc)
            request = ApprovalRequest(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                target_type=target_type,
                target_id=target_id,
                action=action,
                status=ApprovalStatus.PENDING,
                requested_by=principal.user_id if principal else None,
                legal_entity_id=legal_entity_id,
                payload=payload or {},
            )
            self.records.save_record(request, self.table_name)
            self.audit_trail.log_event(
                AuditEventType.APPROVAL_REQUESTED, target_type, target_id,
                {"approvalRequestId": request.id, "action": action},
                user_id=request.requested_by,
            )
        return request

    def decide(self, request_id: str, approve: bool, note: Optional[str] = None,
               principal: Optional[Principal] = None) -> ApprovalRequest:
        """
        Approve or reject a PENDING request and apply the outcome.

        Raises:
            ConflictError: Request already decided
            ForbiddenError: Decider is the requester, or out of scope
        """
        user_id = principal.user_id if principal else None
        with self.storage.atomic():
            request = self.require_request(request_id)
            if request.status != ApprovalStatus.PENDING:
                raise ConflictError(f"Approval request is already {request.status.value}")
            if principal is not None:
                if request.requested_by and request.requested_by == principal.user_id:
                    raise ForbiddenError("Requester cannot decide their own approval request")
                if request.legal_entity_id:
                    principal.assert_scope(request.legal_entity_id)

            request.status = ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED
            request.decided_by = user_id
            request.decided_at = datetime.now(timezone.utc)
            request.updated_at = request.decided_at
            request.decision_note = note
            self.records.save_record(request, self.table_name)

            self._callbacks[request.action](request, approve, principal)

            self.audit_trail.log_event(
                AuditEventType.APPROVAL_DECIDED, request.target_type, request.target_id,
                {"approvalRequestId": request.id, "action": request.action,
                 "status": request.status.value, "note": note},
                user_id=user_id,
            )

        log_action(logger, "info", "Approval decided", user_id=user_id,
                   action="approval.decide", resource=request.id,
                   extra={"status": request.status.value, "target_id": request.target_id})
        return request

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return self.records.load_record(ApprovalRequest, self.table_name, request_id)

    def require_request(self, request_id: str) -> ApprovalRequest:
        request = self.get_request(request_id) if request_id else None
        if request is None:
            raise NotFoundError("Approval request not found", details={"approvalRequestId": request_id})
        return request

    def list_requests(self, status: Optional[ApprovalStatus] = None,
                      target_type: Optional[str] = None) -> List[ApprovalRequest]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters['status'] = ApprovalStatus(status).value
        if target_type:
            filters['target_type'] = target_type
        requests = self.records.find_records(ApprovalRequest, self.table_name, filters)
        return sorted(requests, key=lambda r: r.created_at, reverse=True)
