"""
Cash register, session and transaction endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import (
    CloseSessionRequest, CreateCashTransactionRequest, CreateRegisterRequest, OpenSessionRequest,
    ReasonRequest, to_api,
)
from ..cash import CashTxnStatus, CloseReason, RegisterStatus, SessionMode
from ..cash_posting import CashTxnType
from ..filters import CashTransactionFilter
from ..rbac import Permission, Principal


router = APIRouter()


# Registers

@router.post("/registers", status_code=status.HTTP_201_CREATED)
async def create_register(
    request: CreateRegisterRequest,
    principal: Principal = Depends(require_permission(Permission.CASH_REGISTER_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    register = system.cash.create_register(
        legal_entity_id=request.legal_entity_id,
        code=request.code,
        name=request.name,
        account_id=request.account_id,
        currency_code=request.currency_code,
        operating_unit_id=request.operating_unit_id,
        session_mode=SessionMode(request.session_mode.upper()),
        max_txn_amount=request.max_txn_amount,
        requires_approval_over_amount=request.requires_approval_over_amount,
        variance_gain_account_id=request.variance_gain_account_id,
        variance_loss_account_id=request.variance_loss_account_id,
        principal=principal,
    )
    return to_api(register)


@router.get("/registers")
async def list_registers(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    register_status: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_permission(Permission.CASH_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    registers = system.cash.list_registers(
        legal_entity_id,
        RegisterStatus(register_status.upper()) if register_status else None,
    )
    rows = [r for r in registers if principal.can_access_legal_entity(r.legal_entity_id)]
    return {"rows": to_api(rows)}


# Sessions

@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def open_session(
    request: OpenSessionRequest,
    principal: Principal = Depends(require_permission(Permission.CASH_SESSION_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    session = system.cash.open_session(request.register_id, request.opening_amount,
                                       principal=principal)
    return to_api(session)


@router.post("/sessions/{session_id}/close")
async def close_session(
    session_id: str,
    request: CloseSessionRequest,
    principal: Principal = Depends(require_permission(Permission.CASH_SESSION_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Count the drawer; a variance is booked before the session closes"""
    result = system.cash.close_session(
        session_id,
        request.counted_closing_amount,
        closed_reason=CloseReason(request.closed_reason.upper()),
        close_note=request.close_note,
        approve_variance=request.approve_variance,
        principal=principal,
    )
    return to_api(result)


# Transactions

@router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    request: CreateCashTransactionRequest,
    response: Response,
    principal: Principal = Depends(require_permission(Permission.CASH_TXN_CREATE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Draft a cash transaction; a repeated idempotency key answers 200"""
    result = system.cash.create_transaction(
        register_id=request.register_id,
        txn_type=CashTxnType(request.txn_type.upper()),
        amount=request.amount,
        book_date=request.book_date,
        counter_account_id=request.counter_account_id,
        counter_cash_register_id=request.counter_cash_register_id,
        counterparty_id=request.counterparty_id,
        cash_session_id=request.cash_session_id,
        currency_code=request.currency_code,
        description=request.description,
        reference_no=request.reference_no,
        idempotency_key=request.idempotency_key,
        principal=principal,
    )
    if result["idempotent_replay"]:
        response.status_code = status.HTTP_200_OK
    return to_api(result)


@router.get("/transactions")
async def list_transactions(
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    register_id: Optional[str] = Query(None, alias="registerId"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    txn_status: Optional[str] = Query(None, alias="status"),
    txn_type: Optional[str] = Query(None, alias="txnType"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    limit: int = 100,
    offset: int = 0,
    principal: Principal = Depends(require_permission(Permission.CASH_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    txn_filter = CashTransactionFilter(
        legal_entity_id=legal_entity_id,
        cash_register_id=register_id,
        cash_session_id=session_id,
        status=CashTxnStatus(txn_status.upper()) if txn_status else None,
        txn_type=CashTxnType(txn_type.upper()) if txn_type else None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
        legal_entity_ids=principal.legal_entity_ids,
    )
    rows = system.cash.list_transactions(txn_filter)
    return {"rows": to_api(rows), "limit": limit, "offset": offset}


@router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(require_permission(Permission.CASH_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    transaction = system.cash.require_transaction(transaction_id)
    principal.assert_scope(transaction.legal_entity_id)
    return to_api(transaction)


@router.post("/transactions/{transaction_id}/submit")
async def submit_transaction(
    transaction_id: str,
    principal: Principal = Depends(require_permission(Permission.CASH_TXN_CREATE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """DRAFT -> SUBMITTED with a pending approval request"""
    return to_api(system.cash.submit_transaction(transaction_id, principal=principal))


@router.post("/transactions/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: str,
    request: Optional[ReasonRequest] = None,
    principal: Principal = Depends(require_permission(Permission.CASH_TXN_CREATE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    reason = request.reason if request else None
    return to_api(system.cash.cancel_transaction(transaction_id, reason, principal=principal))


@router.post("/transactions/{transaction_id}/post")
async def post_transaction(
    transaction_id: str,
    principal: Principal = Depends(require_permission(Permission.CASH_TXN_POST)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Book the transaction as a CASH journal"""
    return to_api(system.cash.post_transaction(transaction_id, principal=principal))


@router.post("/transactions/{transaction_id}/reverse", status_code=status.HTTP_201_CREATED)
async def reverse_transaction(
    transaction_id: str,
    request: Optional[ReasonRequest] = None,
    principal: Principal = Depends(require_permission(Permission.CASH_TXN_REVERSE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    reason = request.reason if request else None
    return to_api(system.cash.reverse_transaction(transaction_id, reason, principal=principal))
