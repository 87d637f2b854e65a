"""
Approval request endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import DecisionRequest, to_api
from ..approvals import ApprovalStatus
from ..rbac import Permission, Principal


router = APIRouter()


@router.get("")
async def list_approval_requests(
    request_status: Optional[str] = Query(None, alias="status"),
    target_type: Optional[str] = Query(None, alias="targetType"),
    principal: Principal = Depends(require_permission(Permission.APPROVAL_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    requests = system.approvals.list_requests(
        ApprovalStatus(request_status.upper()) if request_status else None, target_type
    )
    rows = [
        r for r in requests
        if not r.legal_entity_id or principal.can_access_legal_entity(r.legal_entity_id)
    ]
    return {"rows": to_api(rows)}


@router.post("/{request_id}/approve")
async def approve_request(
    request_id: str,
    request: Optional[DecisionRequest] = None,
    principal: Principal = Depends(require_permission(Permission.APPROVAL_DECIDE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Approve and apply; the requester cannot approve their own request"""
    note = request.note if request else None
    return to_api(system.approvals.decide(request_id, True, note, principal=principal))


@router.post("/{request_id}/reject")
async def reject_request(
    request_id: str,
    request: Optional[DecisionRequest] = None,
    principal: Principal = Depends(require_permission(Permission.APPROVAL_DECIDE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    note = request.note if request else None
    return to_api(system.approvals.decide(request_id, False, note, principal=principal))
