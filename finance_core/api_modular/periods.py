"""
Period status, period closing and purpose mapping endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import (
    CloseRunRequest, PeriodStatusCloseRequest, PurposeMappingRequest, ReopenPeriodRequest, to_api,
)
from ..filters import CloseRunFilter
from ..fiscal import PeriodStatus
from ..period_close import CloseRunStatus
from ..rbac import Permission, Principal


router = APIRouter()


@router.get("/period-statuses/{book_id}/{period_id}")
async def get_period_status(
    book_id: str,
    period_id: str,
    principal: Principal = Depends(require_permission(Permission.PERIOD_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Current status of a (book, period); a missing row reads as OPEN"""
    book = system.fiscal.require_book(book_id)
    principal.assert_scope(book.legal_entity_id)
    period = system.fiscal.require_period_in_book(book, period_id, "periodId")
    record = system.fiscal.get_period_status_record(book.id, period.id)
    return to_api({
        "book_id": book.id,
        "fiscal_period_id": period.id,
        "status": record.status if record else PeriodStatus.OPEN,
        "note": record.note if record else None,
        "updated_at": record.updated_at if record else None,
    })


@router.post("/period-statuses/{book_id}/{period_id}/close")
async def close_period_status(
    book_id: str,
    period_id: str,
    request: Optional[PeriodStatusCloseRequest] = None,
    principal: Principal = Depends(require_permission(Permission.PERIOD_CLOSE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Set SOFT_CLOSED or HARD_CLOSED without a close run"""
    request = request or PeriodStatusCloseRequest()
    record = system.fiscal.close_period_status(
        book_id, period_id, PeriodStatus(request.status.upper()), request.note,
        principal=principal,
    )
    return to_api(record)


@router.post("/period-closing/{book_id}/{period_id}/close-run",
             status_code=status.HTTP_201_CREATED)
async def execute_close_run(
    book_id: str,
    period_id: str,
    response: Response,
    request: Optional[CloseRunRequest] = None,
    principal: Principal = Depends(require_permission(Permission.PERIOD_CLOSE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Carry-forward (and year-end) close; a replay answers 200 with idempotent=true"""
    request = request or CloseRunRequest()
    result = system.period_close.execute_close_run(
        book_id,
        period_id,
        close_status=PeriodStatus(request.close_status.upper()),
        retained_earnings_account_id=request.retained_earnings_account_id,
        note=request.note,
        principal=principal,
    )
    if result["idempotent"]:
        response.status_code = status.HTTP_200_OK
    return to_api(result)


@router.post("/period-closing/{book_id}/{period_id}/reopen")
async def reopen_period(
    book_id: str,
    period_id: str,
    request: Optional[ReopenPeriodRequest] = None,
    principal: Principal = Depends(require_permission(Permission.PERIOD_REOPEN)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Reverse the latest close run's journals and reopen the period"""
    request = request or ReopenPeriodRequest()
    result = system.period_close.reopen_period(book_id, period_id, request.reason,
                                               principal=principal)
    return to_api(result)


@router.get("/period-closing/runs")
async def list_close_runs(
    book_id: Optional[str] = Query(None, alias="bookId"),
    fiscal_period_id: Optional[str] = Query(None, alias="fiscalPeriodId"),
    run_status: Optional[str] = Query(None, alias="status"),
    include_lines: bool = Query(False, alias="includeLines"),
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(require_permission(Permission.PERIOD_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Close run history, newest first"""
    book_ids = None
    if principal.legal_entity_ids is not None:
        book_ids = frozenset(
            b.id for b in system.fiscal.list_books()
            if principal.can_access_legal_entity(b.legal_entity_id)
        )
    run_filter = CloseRunFilter(
        book_id=book_id,
        fiscal_period_id=fiscal_period_id,
        status=CloseRunStatus(run_status.upper()) if run_status else None,
        include_lines=include_lines,
        limit=limit,
        offset=offset,
        book_ids=book_ids,
    )
    rows = []
    for run in system.period_close.list_close_runs(run_filter):
        row = to_api(run)
        if not include_lines:
            row.pop("lines", None)
        rows.append(row)
    return {"rows": rows, "limit": limit, "offset": offset}


@router.get("/period-closing/runs/{run_id}")
async def get_close_run(
    run_id: str,
    principal: Principal = Depends(require_permission(Permission.PERIOD_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    run = system.period_close.get_close_run(run_id)
    book = system.fiscal.require_book(run.book_id)
    principal.assert_scope(book.legal_entity_id)
    return to_api(run)


@router.put("/purpose-mappings")
async def set_purpose_mapping(
    request: PurposeMappingRequest,
    principal: Principal = Depends(require_permission(Permission.PURPOSE_MAPPING_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Point a purpose code of a legal entity at an account"""
    mapping = system.purpose_accounts.set_mapping(
        request.legal_entity_id, request.purpose_code, request.account_id,
        principal=principal,
    )
    return to_api({"ok": True, "legal_entity_id": request.legal_entity_id, "row": mapping})


@router.get("/purpose-mappings")
async def list_purpose_mappings(
    legal_entity_id: str = Query(..., alias="legalEntityId"),
    principal: Principal = Depends(require_permission(Permission.ORG_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    principal.assert_scope(legal_entity_id)
    system.organization.require_legal_entity(legal_entity_id)
    rows = system.purpose_accounts.list_mappings(legal_entity_id)
    return to_api({"legal_entity_id": legal_entity_id, "rows": rows})
