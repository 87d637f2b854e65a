"""
Shared fixtures: an in-memory finance system seeded with two legal entities,
a calendar covering this year and next, books, charts and purpose mappings.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict

import pytest

from finance_core.accounts import AccountType
from finance_core.api_modular.auth import FinanceSystem
from finance_core.config import FinanceCoreConfig
from finance_core.storage import InMemoryStorage


@dataclass
class Seed:
    """Ids of the seeded setup, accounts keyed by code"""
    system: Any
    le: Any
    other_le: Any
    calendar: Any
    book: Any
    other_book: Any
    year: int
    current_period: Any
    accounts: Dict[str, Any] = field(default_factory=dict)
    other_accounts: Dict[str, Any] = field(default_factory=dict)

    def account(self, code: str) -> str:
        return self.accounts[code].id

    def period(self, period_no: int, year: int = None):
        for period in self.system.fiscal.list_periods(self.calendar.id, year or self.year):
            if period.period_no == period_no:
                return period
        raise KeyError(period_no)

    def lines(self, debit_code: str, credit_code: str, amount: str = "100", **extra):
        """Two balanced journal lines"""
        return [
            dict({"account_id": self.account(debit_code), "debit_base": amount,
                  "credit_base": "0"}, **extra),
            dict({"account_id": self.account(credit_code), "debit_base": "0",
                  "credit_base": amount}, **extra),
        ]


LE_ACCOUNTS = [
    # code, name, type, extra
    ("1000", "Main cash", AccountType.ASSET, {"is_cash_controlled": True}),
    ("1010", "Petty cash", AccountType.ASSET, {"is_cash_controlled": True}),
    ("1020", "Bank", AccountType.ASSET, {}),
    ("1100", "Trade receivables", AccountType.ASSET, {}),
    ("1190", "Receivables clearing", AccountType.ASSET, {}),
    ("1200", "Shareholder receivable", AccountType.ASSET, {}),
    ("1300", "Intercompany receivable", AccountType.ASSET, {}),
    ("2000", "Trade payables", AccountType.LIABILITY, {}),
    ("2190", "Payables clearing", AccountType.LIABILITY, {}),
    ("2300", "Intercompany payable", AccountType.LIABILITY, {}),
    ("3000", "Retained earnings", AccountType.EQUITY, {}),
    ("3100", "Share capital", AccountType.EQUITY, {}),
    ("4000", "Sales revenue", AccountType.REVENUE, {}),
    ("4900", "Cash over", AccountType.REVENUE, {}),
    ("5000", "Cost of sales", AccountType.EXPENSE, {}),
    ("5900", "Cash short", AccountType.EXPENSE, {}),
]


def build_seed(system: FinanceSystem) -> Seed:
    year = date.today().year
    organization = system.organization
    fiscal = system.fiscal
    accounts = system.accounts

    le = organization.create_legal_entity("LE1", "Acme Holding", "USD", country_code="US")
    other_le = organization.create_legal_entity("LE2", "Acme Trading", "USD", country_code="US")

    calendar = fiscal.create_calendar("CAL", "Calendar year")
    fiscal.generate_periods(calendar.id, year)
    fiscal.generate_periods(calendar.id, year + 1)
    book = fiscal.create_book(le.id, calendar.id, "LE1-LOCAL", "LE1 local book")
    other_book = fiscal.create_book(other_le.id, calendar.id, "LE2-LOCAL", "LE2 local book")

    chart = accounts.create_chart("LE1-COA", "LE1 chart", legal_entity_id=le.id)
    seeded = {}
    for code, name, account_type, extra in LE_ACCOUNTS:
        seeded[code] = accounts.create_account(chart.id, code, name, account_type, **extra)
    seeded["6000"] = accounts.create_account(chart.id, "6000", "Operating expenses",
                                             AccountType.EXPENSE, allow_posting=False)
    seeded["6100"] = accounts.create_account(chart.id, "6100", "Rent", AccountType.EXPENSE,
                                             parent_account_id=seeded["6000"].id)
    seeded["6200"] = accounts.create_account(chart.id, "6200", "Utilities", AccountType.EXPENSE,
                                             parent_account_id=seeded["6000"].id)

    other_chart = accounts.create_chart("LE2-COA", "LE2 chart", legal_entity_id=other_le.id)
    other_seeded = {
        "1350": accounts.create_account(other_chart.id, "1350", "Due from LE1", AccountType.ASSET),
        "2350": accounts.create_account(other_chart.id, "2350", "Due to LE1", AccountType.LIABILITY),
        "5000": accounts.create_account(other_chart.id, "5000", "Cost of sales", AccountType.EXPENSE),
    }

    for purpose, code in (("CARI_AR_CONTROL", "1100"), ("CARI_AR_OFFSET", "1190"),
                          ("CARI_AP_CONTROL", "2000"), ("CARI_AP_OFFSET", "2190")):
        system.purpose_accounts.set_mapping(le.id, purpose, seeded[code].id)

    current_period = fiscal.find_period_for_date(calendar.id, date.today())
    return Seed(
        system=system, le=le, other_le=other_le, calendar=calendar, book=book,
        other_book=other_book, year=year, current_period=current_period,
        accounts=seeded, other_accounts=other_seeded,
    )


def make_system(**config_overrides) -> FinanceSystem:
    settings = dict(database_url="memory://", auth_enabled=False, log_level="WARNING")
    settings.update(config_overrides)
    return FinanceSystem(storage=InMemoryStorage(), config=FinanceCoreConfig(**settings))


@pytest.fixture
def system():
    """Empty in-memory finance system"""
    return make_system()


@pytest.fixture
def seed(system):
    """Finance system with legal entities, books, periods and accounts"""
    return build_seed(system)
