"""
Organisation and fiscal setup endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import (
    CreateBookRequest, CreateCalendarRequest, CreateCommitmentRequest, CreateLegalEntityRequest,
    CreateOperatingUnitRequest, DraftCommitmentJournalRequest, GeneratePeriodsRequest,
    IntercompanyPairRequest, IntercompanyPolicyRequest, to_api,
)
from ..commitments import CommitmentStatus
from ..fiscal import BookType
from ..intercompany import PairStatus
from ..rbac import Permission, Principal


router = APIRouter()


# Legal entities and operating units

@router.post("/legal-entities", status_code=status.HTTP_201_CREATED)
async def create_legal_entity(
    request: CreateLegalEntityRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    entity = system.organization.create_legal_entity(
        code=request.code,
        name=request.name,
        functional_currency_code=request.functional_currency_code,
        country_code=request.country_code,
        is_intercompany_enabled=request.is_intercompany_enabled,
        intercompany_partner_required=request.intercompany_partner_required,
        principal=principal,
    )
    return to_api(entity)


@router.get("/legal-entities")
async def list_legal_entities(
    principal: Principal = Depends(require_permission(Permission.ORG_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Legal entities inside the caller's scope"""
    return {"rows": to_api(system.organization.list_legal_entities(principal))}


@router.patch("/legal-entities/{legal_entity_id}/intercompany-policy")
async def update_intercompany_policy(
    legal_entity_id: str,
    request: IntercompanyPolicyRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    entity = system.organization.update_intercompany_policy(
        legal_entity_id,
        is_intercompany_enabled=request.is_intercompany_enabled,
        intercompany_partner_required=request.intercompany_partner_required,
        principal=principal,
    )
    return to_api(entity)


@router.post("/operating-units", status_code=status.HTTP_201_CREATED)
async def create_operating_unit(
    request: CreateOperatingUnitRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    unit = system.organization.create_operating_unit(
        request.legal_entity_id, request.code, request.name,
        has_subledger=request.has_subledger, principal=principal,
    )
    return to_api(unit)


@router.post("/intercompany-pairs", status_code=status.HTTP_201_CREATED)
async def upsert_intercompany_pair(
    request: IntercompanyPairRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Create or update the pair for (from, to)"""
    pair = system.intercompany.upsert_pair(
        request.from_legal_entity_id,
        request.to_legal_entity_id,
        receivable_account_id=request.receivable_account_id,
        payable_account_id=request.payable_account_id,
        status=PairStatus(request.status.upper()),
        principal=principal,
    )
    return to_api(pair)


# Fiscal calendars, periods and books

@router.post("/fiscal-calendars", status_code=status.HTTP_201_CREATED)
async def create_fiscal_calendar(
    request: CreateCalendarRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    calendar = system.fiscal.create_calendar(
        request.code, request.name, request.year_start_month, principal=principal
    )
    return to_api(calendar)


@router.post("/fiscal-calendars/{calendar_id}/periods/generate")
async def generate_fiscal_periods(
    calendar_id: str,
    request: GeneratePeriodsRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Twelve monthly periods; existing ones are skipped"""
    return to_api(system.fiscal.generate_periods(calendar_id, request.fiscal_year,
                                                 principal=principal))


@router.get("/fiscal-periods")
async def list_fiscal_periods(
    calendar_id: str = Query(..., alias="calendarId"),
    fiscal_year: Optional[int] = Query(None, alias="fiscalYear"),
    principal: Principal = Depends(require_permission(Permission.ORG_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    system.fiscal.require_calendar(calendar_id)
    return {"rows": to_api(system.fiscal.list_periods(calendar_id, fiscal_year))}


@router.post("/books", status_code=status.HTTP_201_CREATED)
async def create_book(
    request: CreateBookRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    book = system.fiscal.create_book(
        request.legal_entity_id,
        request.calendar_id,
        request.code,
        request.name,
        book_type=BookType(request.book_type.upper()),
        base_currency_code=request.base_currency_code,
        principal=principal,
    )
    return to_api(book)


@router.get("/books")
async def list_books(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    principal: Principal = Depends(require_permission(Permission.ORG_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    books = [
        b for b in system.fiscal.list_books(legal_entity_id)
        if principal.can_access_legal_entity(b.legal_entity_id)
    ]
    return {"rows": to_api(books)}


# Shareholder commitments

@router.post("/shareholder-commitments", status_code=status.HTTP_201_CREATED)
async def create_shareholder_commitment(
    request: CreateCommitmentRequest,
    principal: Principal = Depends(require_permission(Permission.ORG_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    commitment = system.commitments.create_commitment(
        request.legal_entity_id,
        request.shareholder_name,
        request.committed_amount,
        request.capital_account_id,
        request.receivable_account_id,
        principal=principal,
    )
    return to_api(commitment)


@router.post("/shareholder-commitments/{commitment_id}/journal",
             status_code=status.HTTP_201_CREATED)
async def draft_shareholder_commitment_journal(
    commitment_id: str,
    request: DraftCommitmentJournalRequest,
    principal: Principal = Depends(require_permission(Permission.JOURNAL_CREATE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """DRAFT capital journal; posting it marks the commitment JOURNALIZED"""
    result = system.commitments.draft_commitment_journal(
        commitment_id, request.book_id, request.fiscal_period_id,
        entry_date=request.entry_date, principal=principal,
    )
    return to_api({
        "commitment": result["commitment"],
        "journal_id": result["journal"].id,
        "journal_no": result["journal"].journal_no,
    })


@router.get("/shareholder-commitments")
async def list_shareholder_commitments(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    commitment_status: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_permission(Permission.ORG_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    commitments = system.commitments.list_commitments(
        legal_entity_id,
        CommitmentStatus(commitment_status.upper()) if commitment_status else None,
    )
    rows = [c for c in commitments if principal.can_access_legal_entity(c.legal_entity_id)]
    return {"rows": to_api(rows)}
