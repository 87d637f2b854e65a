"""
General ledger journal and trial balance endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import (
    CreateJournalRequest, PostJournalRequest, ReverseJournalRequest, dump_rows, to_api,
)
from ..filters import JournalFilter
from ..ledger import JournalStatus, SourceType
from ..rbac import Permission, Principal


router = APIRouter()


@router.post("/journals", status_code=status.HTTP_201_CREATED)
async def create_journal(
    request: CreateJournalRequest,
    principal: Principal = Depends(require_permission(Permission.JOURNAL_CREATE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Create a DRAFT journal, optionally with intercompany mirrors"""
    result = system.ledger.create_journal(
        legal_entity_id=request.legal_entity_id,
        book_id=request.book_id,
        fiscal_period_id=request.fiscal_period_id,
        lines=dump_rows(request.lines),
        entry_date=request.entry_date,
        document_date=request.document_date,
        currency_code=request.currency_code,
        source_type=SourceType(request.source_type.upper()),
        description=request.description,
        reference_no=request.reference_no,
        journal_no=request.journal_no,
        auto_mirror=request.auto_mirror,
        principal=principal,
    )
    return to_api({
        "journal_id": result["journal"].id,
        "journal_no": result["journal"].journal_no,
        "status": result["journal"].status,
        "auto_mirror_applied": result["auto_mirror_applied"],
        "mirror_journal_entry_ids": result["mirror_journal_entry_ids"],
    })


@router.get("/journals")
async def list_journals(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    book_id: Optional[str] = Query(None, alias="bookId"),
    fiscal_period_id: Optional[str] = Query(None, alias="fiscalPeriodId"),
    journal_status: Optional[str] = Query(None, alias="status"),
    source_type: Optional[str] = Query(None, alias="sourceType"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(require_permission(Permission.JOURNAL_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """List journals, newest entry date first"""
    journal_filter = JournalFilter(
        legal_entity_id=legal_entity_id,
        book_id=book_id,
        fiscal_period_id=fiscal_period_id,
        status=JournalStatus(journal_status.upper()) if journal_status else None,
        source_type=SourceType(source_type.upper()) if source_type else None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
        legal_entity_ids=principal.legal_entity_ids,
    )
    journals = system.ledger.list_journals(journal_filter)
    rows = []
    for journal in journals:
        row = to_api(journal)
        row.pop("lines", None)
        row["lineCount"] = len(journal.lines)
        rows.append(row)
    return {"rows": rows, "limit": limit, "offset": offset}


@router.get("/journals/{journal_id}")
async def get_journal(
    journal_id: str,
    principal: Principal = Depends(require_permission(Permission.JOURNAL_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Get a journal with its lines"""
    journal = system.ledger.require_journal(journal_id)
    principal.assert_scope(journal.legal_entity_id)
    return to_api(journal)


@router.post("/journals/{journal_id}/post")
async def post_journal(
    journal_id: str,
    request: Optional[PostJournalRequest] = None,
    principal: Principal = Depends(require_permission(Permission.JOURNAL_POST)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Post a DRAFT journal, or its whole intercompany cluster"""
    request = request or PostJournalRequest()
    result = system.ledger.post_journal(
        journal_id,
        post_linked_mirrors=request.post_linked_mirrors,
        override_cash_control=request.override_cash_control,
        override_reason=request.override_reason,
        principal=principal,
    )
    return to_api(result)


@router.post("/journals/{journal_id}/reverse", status_code=status.HTTP_201_CREATED)
async def reverse_journal(
    journal_id: str,
    request: Optional[ReverseJournalRequest] = None,
    principal: Principal = Depends(require_permission(Permission.JOURNAL_REVERSE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Reverse a POSTED journal"""
    request = request or ReverseJournalRequest()
    result = system.ledger.reverse_journal(
        journal_id,
        reversal_period_id=request.reversal_period_id,
        reason=request.reason,
        auto_post=request.auto_post,
        principal=principal,
    )
    return to_api(result)


@router.get("/trial-balance")
async def get_trial_balance(
    book_id: str = Query(..., alias="bookId"),
    fiscal_period_id: str = Query(..., alias="fiscalPeriodId"),
    include_rollup: bool = Query(False, alias="includeRollup"),
    principal: Principal = Depends(require_permission(Permission.TRIAL_BALANCE_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Trial balance of POSTED journals for one book and period"""
    book = system.fiscal.require_book(book_id)
    principal.assert_scope(book.legal_entity_id)
    return to_api(system.reporting.trial_balance(book.id, fiscal_period_id, include_rollup))
