"""
Pydantic schemas for API requests, plus response serialization

Request bodies arrive in camelCase and are read as snake_case attributes;
responses are domain records rendered with camelCase keys.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..storage import serialize_value


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def camel_key(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def to_api(value: Any) -> Any:
    """Domain value to JSON with camelCase keys; storage-only keys are dropped"""
    value = serialize_value(value)
    if isinstance(value, dict):
        return {camel_key(k): to_api(v) for k, v in value.items() if not k.startswith("_")}
    if isinstance(value, list):
        return [to_api(v) for v in value]
    return value


# Journal schemas
class JournalLineRequest(ApiModel):
    account_id: str
    debit_base: Decimal = Decimal("0")
    credit_base: Decimal = Decimal("0")
    description: Optional[str] = None
    operating_unit_id: Optional[str] = None
    counterparty_legal_entity_id: Optional[str] = None
    subledger_reference_no: Optional[str] = None
    currency_code: Optional[str] = None
    amount_txn: Optional[Decimal] = None


class CreateJournalRequest(ApiModel):
    legal_entity_id: str
    book_id: str
    fiscal_period_id: str
    lines: List[JournalLineRequest] = Field(default_factory=list)
    entry_date: Optional[date] = None
    document_date: Optional[date] = None
    currency_code: Optional[str] = None
    source_type: str = "MANUAL"
    description: Optional[str] = None
    reference_no: Optional[str] = None
    journal_no: Optional[str] = None
    auto_mirror: bool = False


class PostJournalRequest(ApiModel):
    post_linked_mirrors: bool = False
    override_cash_control: bool = False
    override_reason: Optional[str] = None


class ReverseJournalRequest(ApiModel):
    reversal_period_id: Optional[str] = None
    reason: Optional[str] = None
    auto_post: bool = True


# Period schemas
class PeriodStatusCloseRequest(ApiModel):
    status: str = "SOFT_CLOSED"
    note: Optional[str] = None


class CloseRunRequest(ApiModel):
    close_status: str = "SOFT_CLOSED"
    retained_earnings_account_id: Optional[str] = None
    note: Optional[str] = None


class ReopenPeriodRequest(ApiModel):
    reason: Optional[str] = None


class PurposeMappingRequest(ApiModel):
    legal_entity_id: str
    purpose_code: str
    account_id: str


# Organisation schemas
class CreateLegalEntityRequest(ApiModel):
    code: str
    name: str
    functional_currency_code: str
    country_code: Optional[str] = None
    is_intercompany_enabled: bool = True
    intercompany_partner_required: bool = False


class IntercompanyPolicyRequest(ApiModel):
    is_intercompany_enabled: Optional[bool] = None
    intercompany_partner_required: Optional[bool] = None


class CreateOperatingUnitRequest(ApiModel):
    legal_entity_id: str
    code: str
    name: str
    has_subledger: bool = False


class IntercompanyPairRequest(ApiModel):
    from_legal_entity_id: str
    to_legal_entity_id: str
    receivable_account_id: Optional[str] = None
    payable_account_id: Optional[str] = None
    status: str = "ACTIVE"


class CreateCalendarRequest(ApiModel):
    code: str
    name: str
    year_start_month: int = 1


class GeneratePeriodsRequest(ApiModel):
    fiscal_year: int


class CreateBookRequest(ApiModel):
    legal_entity_id: str
    calendar_id: str
    code: str
    name: str
    book_type: str = "LOCAL"
    base_currency_code: Optional[str] = None


class CreateCommitmentRequest(ApiModel):
    legal_entity_id: str
    shareholder_name: str
    committed_amount: Decimal
    capital_account_id: str
    receivable_account_id: str


class DraftCommitmentJournalRequest(ApiModel):
    book_id: str
    fiscal_period_id: str
    entry_date: Optional[date] = None


# Chart of accounts schemas
class CreateChartRequest(ApiModel):
    code: str
    name: str
    scope: str = "LEGAL_ENTITY"
    legal_entity_id: Optional[str] = None


class CreateAccountRequest(ApiModel):
    coa_id: str
    code: str
    name: str
    account_type: str
    normal_side: Optional[str] = None
    allow_posting: bool = True
    parent_account_id: Optional[str] = None
    is_cash_controlled: bool = False


# Cash schemas
class CreateRegisterRequest(ApiModel):
    legal_entity_id: str
    code: str
    name: str
    account_id: str
    currency_code: Optional[str] = None
    operating_unit_id: Optional[str] = None
    session_mode: str = "OPTIONAL"
    max_txn_amount: Optional[Decimal] = None
    requires_approval_over_amount: Optional[Decimal] = None
    variance_gain_account_id: Optional[str] = None
    variance_loss_account_id: Optional[str] = None


class OpenSessionRequest(ApiModel):
    register_id: str
    opening_amount: Decimal = Decimal("0")


class CloseSessionRequest(ApiModel):
    counted_closing_amount: Decimal
    closed_reason: str = "END_SHIFT"
    close_note: Optional[str] = None
    approve_variance: bool = False


class CreateCashTransactionRequest(ApiModel):
    register_id: str
    txn_type: str
    amount: Decimal
    book_date: Optional[date] = None
    counter_account_id: Optional[str] = None
    counter_cash_register_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    cash_session_id: Optional[str] = None
    currency_code: Optional[str] = None
    description: Optional[str] = None
    reference_no: Optional[str] = None
    idempotency_key: Optional[str] = None


class ReasonRequest(ApiModel):
    reason: Optional[str] = None


# Cari schemas
class CreateCounterpartyRequest(ApiModel):
    legal_entity_id: str
    code: str
    name: str
    is_customer: bool = False
    is_vendor: bool = False
    tax_id: Optional[str] = None
    default_payment_term_id: Optional[str] = None
    ar_account_id: Optional[str] = None
    ap_account_id: Optional[str] = None


class PaymentTermTemplate(ApiModel):
    code: str
    name: Optional[str] = None
    due_days: int = 0
    grace_days: int = 0
    is_end_of_month: bool = False


class CreatePaymentTermRequest(PaymentTermTemplate):
    legal_entity_id: str


class BootstrapPaymentTermsRequest(ApiModel):
    legal_entity_ids: List[str]
    payment_terms: Optional[List[PaymentTermTemplate]] = None


class CreateDocumentRequest(ApiModel):
    legal_entity_id: str
    counterparty_id: str
    direction: str
    document_type: str
    amount_txn: Decimal
    document_date: Optional[date] = None
    currency_code: Optional[str] = None
    fx_rate: Optional[Decimal] = None
    payment_term_id: Optional[str] = None
    due_date: Optional[date] = None
    description: Optional[str] = None


class AllocationRequest(ApiModel):
    open_item_id: str
    amount_txn: Decimal


class ApplySettlementRequest(ApiModel):
    legal_entity_id: str
    counterparty_id: str
    idempotency_key: str
    incoming_amount_txn: Decimal
    settlement_date: Optional[date] = None
    currency_code: Optional[str] = None
    allocations: Optional[List[AllocationRequest]] = None
    auto_allocate: bool = False
    payment_channel: str = "MANUAL"
    cash_transaction_id: Optional[str] = None


# Approval schemas
class DecisionRequest(ApiModel):
    note: Optional[str] = None


def dump_rows(items: Optional[List[BaseModel]]) -> Optional[List[Dict[str, Any]]]:
    """Nested request models to the snake_case dicts the managers take"""
    if items is None:
        return None
    return [item.model_dump() for item in items]
