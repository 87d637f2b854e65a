"""
Tests for charts of accounts, accounts and purpose account mappings
"""

import pytest

from finance_core.accounts import AccountType, ChartScope, NormalSide
from finance_core.errors import ConflictError, ValidationError
from finance_core.purpose_accounts import PurposeCode


class TestCharts:
    """Test chart of accounts setup"""

    def test_legal_entity_chart_needs_entity(self, system):
        with pytest.raises(ValidationError, match="legalEntityId is required for LEGAL_ENTITY charts"):
            system.accounts.create_chart("COA", "Chart")

    def test_global_chart_drops_entity(self, seed):
        chart = seed.system.accounts.create_chart("GLOBAL-COA", "Group chart", ChartScope.GLOBAL,
                                                  legal_entity_id=seed.le.id)
        assert chart.scope == ChartScope.GLOBAL
        assert chart.legal_entity_id is None

    def test_duplicate_chart_code(self, seed):
        with pytest.raises(ConflictError):
            seed.system.accounts.create_chart("le1-coa", "Again", legal_entity_id=seed.le.id)

    def test_list_charts_for_entity(self, seed):
        accounts = seed.system.accounts
        accounts.create_chart("GLOBAL-COA", "Group chart", ChartScope.GLOBAL)
        assert [c.code for c in accounts.list_charts(seed.le.id)] == ["GLOBAL-COA", "LE1-COA"]


class TestAccounts:
    """Test account creation and posting rules"""

    def test_normal_side_defaults_from_type(self, seed):
        assert seed.accounts["1000"].normal_side == NormalSide.DEBIT
        assert seed.accounts["4000"].normal_side == NormalSide.CREDIT
        assert seed.accounts["1000"].is_cash_controlled

    def test_explicit_normal_side(self, seed):
        chart_id = seed.accounts["1000"].coa_id
        contra = seed.system.accounts.create_account(chart_id, "1590", "Accumulated depreciation",
                                                     AccountType.ASSET, normal_side="CREDIT")
        assert contra.normal_side == NormalSide.CREDIT

    def test_duplicate_account_code(self, seed):
        with pytest.raises(ConflictError, match="Account code already exists in chart"):
            seed.system.accounts.create_account(seed.accounts["1000"].coa_id, "1000", "Again",
                                                AccountType.ASSET)

    def test_same_code_in_other_chart(self, seed):
        assert seed.other_accounts["5000"].code == seed.accounts["5000"].code

    def test_parent_must_share_chart(self, seed):
        with pytest.raises(ValidationError, match="parentAccountId must belong to the same chart"):
            seed.system.accounts.create_account(
                seed.other_accounts["5000"].coa_id, "5100", "Child", AccountType.EXPENSE,
                parent_account_id=seed.account("6000"),
            )

    def test_postable_leaf_rules(self, seed):
        accounts = seed.system.accounts
        accounts.assert_postable_leaf(seed.accounts["6100"], "Line 1")

        with pytest.raises(ValidationError, match="Line 1 account 6000 is not postable"):
            accounts.assert_postable_leaf(seed.accounts["6000"], "Line 1")

        inactive = accounts.set_account_active(seed.account("5000"), False)
        with pytest.raises(ValidationError, match="account 5000 is inactive"):
            accounts.assert_postable_leaf(inactive, "Line 1")

    def test_parent_with_active_children(self, seed):
        accounts = seed.system.accounts
        chart_id = seed.accounts["1000"].coa_id
        parent = accounts.create_account(chart_id, "1500", "Fixed assets", AccountType.ASSET)
        accounts.create_account(chart_id, "1510", "Machinery", AccountType.ASSET,
                                parent_account_id=parent.id)

        with pytest.raises(ValidationError, match="is a parent account. Select a leaf sub-account."):
            accounts.assert_postable_leaf(parent, "Line 1")

    def test_legal_entity_scope(self, seed):
        accounts = seed.system.accounts
        assert accounts.is_in_legal_entity_scope(seed.accounts["1000"], seed.le.id)
        assert not accounts.is_in_legal_entity_scope(seed.accounts["1000"], seed.other_le.id)

        chart = accounts.create_chart("GLOBAL-COA", "Group chart", ChartScope.GLOBAL)
        shared = accounts.create_account(chart.id, "9000", "Suspense", AccountType.ASSET)
        assert accounts.is_in_legal_entity_scope(shared, seed.other_le.id)

    def test_find_account_by_code_prefers_own_chart(self, seed):
        accounts = seed.system.accounts
        chart = accounts.create_chart("GLOBAL-COA", "Group chart", ChartScope.GLOBAL)
        accounts.create_account(chart.id, "5000", "Group cost of sales", AccountType.EXPENSE)

        assert accounts.find_account_by_code(seed.le.id, "5000").id == seed.account("5000")
        assert accounts.find_account_by_code(seed.le.id, "7777") is None

    def test_list_accounts(self, seed):
        codes = [a.code for a in seed.system.accounts.list_accounts(legal_entity_id=seed.other_le.id)]
        assert codes == ["1350", "2350", "5000"]


class TestPurposeAccounts:
    """Test purpose mapping rules and resolution"""

    def test_seeded_mappings(self, seed):
        mappings = seed.system.purpose_accounts.list_mappings(seed.le.id)
        assert [m.purpose_code for m in mappings] == [
            PurposeCode.CARI_AP_CONTROL, PurposeCode.CARI_AP_OFFSET,
            PurposeCode.CARI_AR_CONTROL, PurposeCode.CARI_AR_OFFSET,
        ]

    def test_update_in_place(self, seed):
        resolver = seed.system.purpose_accounts
        first = resolver.list_mappings(seed.le.id)[2]
        updated = resolver.set_mapping(seed.le.id, "cari_ar_control", seed.account("1020"))

        assert updated.id == first.id
        assert len(resolver.list_mappings(seed.le.id)) == 4
        resolved = resolver.resolve(seed.le.id, [PurposeCode.CARI_AR_CONTROL])
        assert resolved[PurposeCode.CARI_AR_CONTROL].code == "1020"

    def test_shareholder_codes_are_rejected(self, seed):
        with pytest.raises(ValidationError, match="Shareholder accounts are set per commitment"):
            seed.system.purpose_accounts.set_mapping(seed.le.id, "SHAREHOLDER_CAPITAL",
                                                     seed.account("3100"))

    def test_unknown_purpose_code(self, seed):
        with pytest.raises(ValidationError, match="purposeCode must be one of"):
            seed.system.purpose_accounts.set_mapping(seed.le.id, "VAT_OUTPUT", seed.account("2000"))

    def test_account_must_be_in_own_chart(self, seed):
        with pytest.raises(ValidationError, match="must belong to selected legalEntityId"):
            seed.system.purpose_accounts.set_mapping(seed.other_le.id, "CARI_AR_CONTROL",
                                                     seed.account("1100"))

    def test_account_must_be_postable(self, seed):
        with pytest.raises(ValidationError, match="must reference a postable account"):
            seed.system.purpose_accounts.set_mapping(seed.le.id, "CARI_AP_OFFSET",
                                                     seed.account("6000"))

    def test_global_chart_account_rejected(self, seed):
        accounts = seed.system.accounts
        chart = accounts.create_chart("GLOBAL-COA", "Group chart", ChartScope.GLOBAL)
        shared = accounts.create_account(chart.id, "9000", "Suspense", AccountType.ASSET)
        with pytest.raises(ValidationError, match="must belong to a LEGAL_ENTITY chart"):
            seed.system.purpose_accounts.set_mapping(seed.le.id, "CARI_AR_OFFSET", shared.id)

    def test_unknown_account(self, seed):
        with pytest.raises(ValidationError, match="accountId not found for tenant"):
            seed.system.purpose_accounts.set_mapping(seed.le.id, "CARI_AR_OFFSET", "missing")

    def test_resolve_reports_missing_purposes(self, seed):
        with pytest.raises(ValidationError) as exc_info:
            seed.system.purpose_accounts.resolve(seed.other_le.id, [
                PurposeCode.CARI_AR_CONTROL, PurposeCode.CARI_AR_OFFSET,
            ])
        assert exc_info.value.code == "SETUP_REQUIRED"
        assert str(exc_info.value) == (
            "Setup required: configure purpose accounts for CARI_AR_CONTROL and CARI_AR_OFFSET"
        )

    def test_deactivated_account_is_not_resolved(self, seed):
        seed.system.accounts.set_account_active(seed.account("1190"), False)
        with pytest.raises(ValidationError, match="Setup required"):
            seed.system.purpose_accounts.resolve(seed.le.id, [PurposeCode.CARI_AR_OFFSET])

    def test_resolve_first_follows_fallback_chain(self, seed):
        resolver = seed.system.purpose_accounts
        assert resolver.resolve_first(seed.le.id, [
            PurposeCode.CARI_AR_CONTROL_CASH, PurposeCode.CARI_AR_CONTROL,
        ]).code == "1100"

        resolver.set_mapping(seed.le.id, "CARI_AR_CONTROL_CASH", seed.account("1020"))
        assert resolver.resolve_first(seed.le.id, [
            PurposeCode.CARI_AR_CONTROL_CASH, PurposeCode.CARI_AR_CONTROL,
        ]).code == "1020"
