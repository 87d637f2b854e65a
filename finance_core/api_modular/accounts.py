"""
Chart of accounts endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import FinanceSystem, get_finance_system, require_permission
from .schemas import CreateAccountRequest, CreateChartRequest, to_api
from ..accounts import AccountType, ChartScope, NormalSide
from ..rbac import Permission, Principal


router = APIRouter()


@router.post("/charts", status_code=status.HTTP_201_CREATED)
async def create_chart(
    request: CreateChartRequest,
    principal: Principal = Depends(require_permission(Permission.COA_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Create a GLOBAL or LEGAL_ENTITY chart of accounts"""
    chart = system.accounts.create_chart(
        request.code,
        request.name,
        scope=ChartScope(request.scope.upper()),
        legal_entity_id=request.legal_entity_id,
        principal=principal,
    )
    return to_api(chart)


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    principal: Principal = Depends(require_permission(Permission.COA_MANAGE)),
    system: FinanceSystem = Depends(get_finance_system)
):
    account = system.accounts.create_account(
        coa_id=request.coa_id,
        code=request.code,
        name=request.name,
        account_type=AccountType(request.account_type.upper()),
        normal_side=NormalSide(request.normal_side.upper()) if request.normal_side else None,
        allow_posting=request.allow_posting,
        parent_account_id=request.parent_account_id,
        is_cash_controlled=request.is_cash_controlled,
        principal=principal,
    )
    return to_api(account)


@router.get("/accounts")
async def list_accounts(
    coa_id: Optional[str] = Query(None, alias="coaId"),
    legal_entity_id: Optional[str] = Query(None, alias="legalEntityId"),
    principal: Principal = Depends(require_permission(Permission.ORG_READ)),
    system: FinanceSystem = Depends(get_finance_system)
):
    """Accounts of one chart, or of every chart a legal entity can use"""
    if legal_entity_id:
        principal.assert_scope(legal_entity_id)
    return {"rows": to_api(system.accounts.list_accounts(coa_id, legal_entity_id))}
