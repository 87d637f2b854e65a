"""
Cari (AR/AP subledger) endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import (
    ApplySettlementRequest, BootstrapPaymentTermsRequest, CreateCounterpartyRequest,
    CreateDocumentRequest, CreatePaymentTermRequest, ReasonRequest, dump_rows, to_api,
)
from ..cari_documents import CariDirection, DocumentStatus, DocumentType, OpenItemStatus
from ..filters import DocumentFilter, OpenItemFilter
from ..rbac import Permission, Principal
from ..settlements import PaymentChannel


router = APIRouter()


# Counterparties and payment terms

@router.post("/counterparties", status_code=status.HTTP_201_CREATED)
async def create_counterparty(
    request: CreateCounterpartyRequest,
    principal: Principal = Depends(require_permission(Permission.CARI_COUNTERPARTY_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    counterparty = system.counterparties.create_counterparty(
        legal_entity_id=request.legal_entity_id,
        code=request.code,
        name=request.name,
        is_customer=request.is_customer,
        is_vendor=request.is_vendor,
        tax_id=request.tax_id,
        default_payment_term_id=request.default_payment_term_id,
        ar_account_id=request.ar_account_id,
        ap_account_id=request.ap_account_id,
        principal=principal,
    )
    return to_api(counterparty)


@router.get("/counterparties")
async def list_counterparties(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    role: Optional[str] = None,
    principal: Principal = Depends(require_permission(Permission.CARI_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """role filters to CUSTOMER or VENDOR"""
    rows = [
        c for c in system.counterparties.list_counterparties(legal_entity_id, role)
        if principal.can_access_legal_entity(c.legal_entity_id)
    ]
    return {"rows": to_api(rows)}


@router.post("/payment-terms", status_code=status.HTTP_201_CREATED)
async def create_payment_term(
    request: CreatePaymentTermRequest,
    principal: Principal = Depends(require_permission(Permission.CARI_COUNTERPARTY_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    term = system.counterparties.create_payment_term(
        request.legal_entity_id,
        request.code,
        name=request.name,
        due_days=request.due_days,
        grace_days=request.grace_days,
        is_end_of_month=request.is_end_of_month,
        principal=principal,
    )
    return to_api(term)


@router.get("/payment-terms")
async def list_payment_terms(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    principal: Principal = Depends(require_permission(Permission.CARI_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    rows = [
        t for t in system.counterparties.list_payment_terms(legal_entity_id)
        if principal.can_access_legal_entity(t.legal_entity_id)
    ]
    return {"rows": to_api(rows)}


@router.post("/payment-terms/bootstrap")
async def bootstrap_payment_terms(
    request: BootstrapPaymentTermsRequest,
    principal: Principal = Depends(require_permission(Permission.CARI_COUNTERPARTY_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Seed default (or given) payment terms; existing codes are skipped"""
    result = system.counterparties.bootstrap_payment_terms(
        request.legal_entity_ids, dump_rows(request.payment_terms), principal=principal
    )
    return to_api(result)


# Documents and open items

@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def create_document(
    request: CreateDocumentRequest,
    principal: Principal = Depends(require_permission(Permission.CARI_DOCUMENT_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    document = system.documents.create_document(
        legal_entity_id=request.legal_entity_id,
        counterparty_id=request.counterparty_id,
        direction=CariDirection(request.direction.upper()),
        document_type=DocumentType(request.document_type.upper()),
        amount_txn=request.amount_txn,
        document_date=request.document_date,
        currency_code=request.currency_code,
        fx_rate=request.fx_rate,
        payment_term_id=request.payment_term_id,
        due_date=request.due_date,
        description=request.description,
        principal=principal,
    )
    return to_api(document)


@router.get("/documents")
async def list_documents(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    counterparty_id: Optional[str] = Query(None, alias="counterpartyId"),
    direction: Optional[str] = None,
    document_status: Optional[str] = Query(None, alias="status"),
    document_type: Optional[str] = Query(None, alias="documentType"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(require_permission(Permission.CARI_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    document_filter = DocumentFilter(
        legal_entity_id=legal_entity_id,
        counterparty_id=counterparty_id,
        direction=CariDirection(direction.upper()) if direction else None,
        status=DocumentStatus(document_status.upper()) if document_status else None,
        document_type=DocumentType(document_type.upper()) if document_type else None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
        legal_entity_ids=principal.legal_entity_ids,
    )
    rows = system.documents.list_documents(document_filter)
    return {"rows": to_api(rows), "limit": limit, "offset": offset}


@router.post("/documents/{document_id}/post")
async def post_document(
    document_id: str,
    principal: Principal = Depends(require_permission(Permission.CARI_DOCUMENT_POST)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Post a DRAFT document and open its open item"""
    return to_api(system.documents.post_document(document_id, principal=principal))


@router.post("/documents/{document_id}/cancel")
async def cancel_document(
    document_id: str,
    request: Optional[ReasonRequest] = None,
    principal: Principal = Depends(require_permission(Permission.CARI_DOCUMENT_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    reason = request.reason if request else None
    return to_api(system.documents.cancel_document(document_id, reason, principal=principal))


@router.get("/open-items")
async def list_open_items(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    counterparty_id: Optional[str] = Query(None, alias="counterpartyId"),
    direction: Optional[str] = None,
    item_status: Optional[str] = Query(None, alias="status"),
    currency_code: Optional[str] = Query(None, alias="currencyCode"),
    date_from: Optional[date] = Query(None, alias="dueDateFrom"),
    date_to: Optional[date] = Query(None, alias="dueDateTo"),
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(require_permission(Permission.CARI_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Open items, oldest due date first"""
    item_filter = OpenItemFilter(
        legal_entity_id=legal_entity_id,
        counterparty_id=counterparty_id,
        direction=CariDirection(direction.upper()) if direction else None,
        status=OpenItemStatus(item_status.upper()) if item_status else None,
        currency_code=currency_code.upper() if currency_code else None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
        legal_entity_ids=principal.legal_entity_ids,
    )
    rows = system.documents.list_open_items(item_filter)
    return {"rows": to_api(rows), "limit": limit, "offset": offset}


# Settlements

@router.post("/settlements/apply", status_code=status.HTTP_201_CREATED)
async def apply_settlement(
    request: ApplySettlementRequest,
    response: Response,
    principal: Principal = Depends(require_permission(Permission.CARI_SETTLEMENT_APPLY)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Allocate funds to open items; a repeated idempotency key answers 200"""
    result = system.settlements.apply_settlement(
        legal_entity_id=request.legal_entity_id,
        counterparty_id=request.counterparty_id,
        idempotency_key=request.idempotency_key,
        incoming_amount_txn=request.incoming_amount_txn,
        settlement_date=request.settlement_date,
        currency_code=request.currency_code,
        allocations=dump_rows(request.allocations),
        auto_allocate=request.auto_allocate,
        payment_channel=PaymentChannel(request.payment_channel.upper()),
        cash_transaction_id=request.cash_transaction_id,
        principal=principal,
    )
    if result["idempotent_replay"]:
        response.status_code = status.HTTP_200_OK
    return to_api(result)


@router.post("/settlements/{settlement_id}/reverse")
async def reverse_settlement(
    settlement_id: str,
    request: Optional[ReasonRequest] = None,
    principal: Principal = Depends(require_permission(Permission.CARI_SETTLEMENT_REVERSE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    reason = request.reason if request else None
    return to_api(system.settlements.reverse_settlement(settlement_id, reason,
                                                        principal=principal))


@router.get("/settlements")
async def list_settlements(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    counterparty_id: Optional[str] = Query(None, alias="counterpartyId"),
    principal: Principal = Depends(require_permission(Permission.CARI_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    rows = [
        s for s in system.settlements.list_settlements(legal_entity_id, counterparty_id)
        if principal.can_access_legal_entity(s.legal_entity_id)
    ]
    return {"rows": to_api(rows)}


@router.get("/settlements/{settlement_id}")
async def get_settlement(
    settlement_id: str,
    principal: Principal = Depends(require_permission(Permission.CARI_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    batch = system.settlements.require_settlement(settlement_id)
    principal.assert_scope(batch.legal_entity_id)
    return to_api(batch)
