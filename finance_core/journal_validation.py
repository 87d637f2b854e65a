"""
Journal posting validator

Header cross-checks, per-line scope rules and the intercompany policy shared
by manual journals, intercompany mirrors and cash postings. Line errors are
labelled lines[i] with i the zero-based input position.
"""

from typing import Any, Dict, List, Optional, Tuple

from .accounts import AccountManager
from .errors import ValidationError
from .fiscal import Book, FiscalManager, FiscalPeriod
from .ledger import JournalLine, SourceType
from .money import ZERO, to_amount
from .organization import LegalEntity, OrganizationManager


def _label(line: JournalLine) -> str:
    return f"lines[{line.line_no - 1}]"


class JournalValidator:

    def __init__(self, organization: OrganizationManager, fiscal: FiscalManager,
                 accounts: AccountManager, intercompany=None):
        self.organization = organization
        self.fiscal = fiscal
        self.accounts = accounts
        self.intercompany = intercompany

    def reject_reserved_source_type(self, source_type: SourceType) -> None:
        if source_type == SourceType.CASH:
            raise ValidationError(
                "sourceType=CASH is reserved; use /api/v1/cash/transactions/{transactionId}/post",
                code="SOURCE_TYPE_RESERVED",
            )

    def resolve_header(self, legal_entity_id: str, book_id: str,
                       fiscal_period_id: str) -> Tuple[LegalEntity, Book, FiscalPeriod]:
        legal_entity = self.organization.require_legal_entity(legal_entity_id)
        book = self.fiscal.require_book(book_id)
        if book.legal_entity_id != legal_entity.id:
            raise ValidationError("bookId does not belong to legalEntityId")
        period = self.fiscal.require_period_in_book(book, fiscal_period_id)
        return legal_entity, book, period

    def build_lines(self, raw_lines: List[Dict[str, Any]], currency_code: str) -> List[JournalLine]:
        """Turn request rows into JournalLines, rejecting bad amounts with a line label"""
        lines = []
        for index, raw in enumerate(raw_lines):
            label = f"lines[{index}]"
            account_id = raw.get('account_id')
            if not account_id:
                raise ValidationError(f"{label}.accountId is required")
            debit = to_amount(raw.get('debit_base'), f"{label}.debitBase")
            credit = to_amount(raw.get('credit_base'), f"{label}.creditBase")
            if debit < ZERO or credit < ZERO:
                raise ValidationError(f"{label} debitBase/creditBase cannot be negative")
            if (debit > ZERO) == (credit > ZERO):
                raise ValidationError(
                    f"{label} must have exactly one side > 0 (either debitBase or creditBase)"
                )
            lines.append(JournalLine(
                line_no=index + 1,
                account_id=account_id,
                debit_base=debit,
                credit_base=credit,
                description=raw.get('description'),
                operating_unit_id=raw.get('operating_unit_id'),
                counterparty_legal_entity_id=raw.get('counterparty_legal_entity_id'),
                subledger_reference_no=raw.get('subledger_reference_no'),
                currency_code=(raw.get('currency_code') or currency_code).upper(),
                amount_txn=raw.get('amount_txn'),
            ))
        return lines

    def validate_line_scope(self, legal_entity: LegalEntity, lines: List[JournalLine]) -> None:
        for line in lines:
            label = _label(line)

            account = self.accounts.get_account(line.account_id)
            if account is None:
                raise ValidationError(f"{label}.accountId not found for tenant")
            self.accounts.assert_postable_leaf(account, label)
            if not self.accounts.is_in_legal_entity_scope(account, legal_entity.id):
                raise ValidationError(
                    f"{label} account {account.code} is not available to legal entity {legal_entity.code}"
                )

            unit = None
            if line.operating_unit_id:
                unit = self.organization.get_operating_unit(line.operating_unit_id)
                if unit is None or unit.legal_entity_id != legal_entity.id:
                    raise ValidationError(f"{label}.operatingUnitId does not belong to the legal entity")
            if line.subledger_reference_no and unit is None:
                raise ValidationError(f"{label}.subledgerReferenceNo requires operatingUnitId")
            if unit is not None and unit.has_subledger and not line.subledger_reference_no:
                raise ValidationError(
                    f"{label}.subledgerReferenceNo is required for operating unit {unit.code}"
                )

            if line.counterparty_legal_entity_id:
                if line.counterparty_legal_entity_id == legal_entity.id:
                    raise ValidationError(
                        f"{label}.counterpartyLegalEntityId must differ from legalEntityId"
                    )
                if self.organization.get_legal_entity(line.counterparty_legal_entity_id) is None:
                    raise ValidationError(f"{label}.counterpartyLegalEntityId not found for tenant")

    def validate_intercompany_policy(self, legal_entity: LegalEntity, source_type: SourceType,
                                     lines: List[JournalLine]) -> None:
        counterparty_ids: List[str] = []
        missing_line_numbers: List[int] = []
        for line in lines:
            if line.counterparty_legal_entity_id:
                if line.counterparty_legal_entity_id not in counterparty_ids:
                    counterparty_ids.append(line.counterparty_legal_entity_id)
            else:
                missing_line_numbers.append(line.line_no)

        if not legal_entity.is_intercompany_enabled:
            if source_type == SourceType.INTERCOMPANY:
                raise ValidationError(
                    "Selected legal entity has intercompany disabled; "
                    "INTERCOMPANY source journals are not allowed"
                )
            if counterparty_ids:
                raise ValidationError(
                    "Selected legal entity has intercompany disabled; "
                    "counterpartyLegalEntityId is not allowed on journal lines"
                )
            return

        if source_type == SourceType.INTERCOMPANY and not counterparty_ids:
            raise ValidationError(
                "INTERCOMPANY source journals require at least one line with counterpartyLegalEntityId"
            )

        if (legal_entity.intercompany_partner_required and source_type == SourceType.INTERCOMPANY
                and missing_line_numbers):
            raise ValidationError(
                "Selected legal entity requires intercompany partner on INTERCOMPANY journals. "
                f"Missing counterparty on line(s): {', '.join(str(n) for n in missing_line_numbers)}"
            )

        if counterparty_ids:
            self.assert_active_pairs(legal_entity, counterparty_ids)

    def assert_active_pairs(self, legal_entity: LegalEntity, counterparty_ids: List[str]) -> None:
        missing = [
            cp for cp in counterparty_ids
            if self.intercompany.find_active_pair(legal_entity.id, cp) is None
        ]
        if not missing:
            return
        display = []
        for cp in missing:
            entity = self.organization.get_legal_entity(cp)
            display.append(entity.code if entity else cp)
        raise ValidationError(
            f"Active intercompany pair mapping is required from {legal_entity.code} to: "
            f"{', '.join(display)}",
            details={"missingCounterpartyLegalEntityIds": missing},
        )

    def validate_posting_lines(self, legal_entity_id: str, lines: List[JournalLine],
                               source_type: Optional[SourceType] = None) -> None:
        """Scope plus policy for system-built lines (cash templates)"""
        legal_entity = self.organization.require_legal_entity(legal_entity_id)
        self.validate_line_scope(legal_entity, lines)
        if source_type is not None:
            self.validate_intercompany_policy(legal_entity, source_type, lines)
