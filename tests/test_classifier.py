"""
Tests for the transaction classifier.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

import dataclasses
from decimal import Decimal

import pytest

from cryptotax.parsers.transaction import (
    DataSource,
    FuturesOperation,
    FuturesSide,
    FuturesTrade,
    InterestType,
    Loan,
    LoanOperation,
    TransactionType,
    TransferDirection,
    UnknownTransaction,
)
from cryptotax.tax.classifier import (
    BUSINESS_CLASSIFICATION,
    PERSONAL_USE_CLASSIFICATION,
    ClassificationContext,
    InvestorProfile,
    InvestorType,
    classify,
    classify_batch,
    handled_transaction_types,
)
from cryptotax.tax.tax_events import TaxEventType


class TestBasicClassification:
    """One handler per transaction type under AU rules."""

    @pytest.fixture
    def context(self, au):
        """Plain personal-investor context."""
        return ClassificationContext(jurisdiction=au)

    def test_sell_is_disposal(self, context, tx):
        treatment = classify(tx.sell(tx.at(2024, 1, 1), "BTC", "1", "60000"), context)

        assert treatment.event_type == TaxEventType.DISPOSAL
        assert treatment.classification == "Sale of Cryptocurrency"
        assert treatment.is_cgt_eligible
        assert treatment.applicable_rules == ("AU_CGT_EVENT_A1",)
        assert treatment.treatment_reason.endswith("[AU_CGT_EVENT_A1]")

    def test_buy_is_acquisition(self, context, tx):
        treatment = classify(tx.buy(tx.at(2024, 1, 1), "BTC", "1", "60000"), context)

        assert treatment.event_type == TaxEventType.ACQUISITION
        assert not treatment.is_cgt_eligible

    @pytest.mark.parametrize("direction", list(TransferDirection))
    def test_transfers_are_not_taxable(self, context, tx, direction):
        treatment = classify(tx.transfer(tx.at(2024, 1, 1), "ETH", "2", direction=direction), context)

        assert treatment.event_type == TaxEventType.NON_TAXABLE
        assert treatment.classification == "Wallet Transfer"
        assert "AU_NON_TAXABLE_MOVEMENT" in treatment.applicable_rules

    @pytest.mark.parametrize("build,classification", [
        (lambda f: f.staking_reward(f.at(2024, 1, 1), "DOT", "5", "40"), "Staking Reward"),
        (lambda f: f.airdrop(f.at(2024, 1, 1), "ARB", "100", "120"), "Airdrop"),
        (lambda f: f.interest(f.at(2024, 1, 1), "USDC", "3", "4.5"), "Interest Income"),
    ])
    def test_rewards_are_income(self, context, tx, build, classification):
        treatment = classify(build(tx), context)

        assert treatment.event_type == TaxEventType.INCOME
        assert treatment.classification == classification
        assert not treatment.is_cgt_eligible
        assert not treatment.is_personal_use
        assert treatment.applicable_rules == ("AU_ORDINARY_INCOME",)

    def test_interest_paid_is_deductible(self, context, tx):
        paid = tx.interest(tx.at(2024, 1, 1), "USDT", "10", "15", interest_type=InterestType.PAID)

        treatment = classify(paid, context)

        assert treatment.event_type == TaxEventType.DEDUCTIBLE
        assert treatment.classification == "Interest Expense"

    def test_fee_is_deductible(self, context, tx):
        treatment = classify(tx.fee(tx.at(2024, 1, 1), "BNB", "0.01", "5"), context)

        assert treatment.event_type == TaxEventType.DEDUCTIBLE
        assert treatment.applicable_rules == ("AU_DEDUCTIONS",)

    @pytest.mark.parametrize("operation,event_type", [
        (FuturesOperation.OPEN, TaxEventType.NON_TAXABLE),
        (FuturesOperation.CLOSE, TaxEventType.DISPOSAL),
        (FuturesOperation.LIQUIDATION, TaxEventType.DISPOSAL),
    ])
    def test_futures(self, context, tx, operation, event_type):
        trade = FuturesTrade(
            id="fut-1",
            timestamp=tx.at(2024, 1, 1),
            source=DataSource(name="Bybit"),
            contract_symbol="ETHUSDT",
            side=FuturesSide.SHORT,
            operation=operation,
            size=Decimal("2"),
            realized_pnl=Decimal("100") if operation != FuturesOperation.OPEN else None,
        )

        assert classify(trade, context).event_type == event_type

    def test_unknown_degrades_gracefully(self, context, tx):
        unknown = UnknownTransaction(
            id="odd-1",
            timestamp=tx.at(2024, 1, 1),
            source=DataSource(name="Exotic"),
            raw_type="FLASH_LOAN_REBATE",
        )

        treatment = classify(unknown, context)

        assert treatment.event_type == TaxEventType.NON_TAXABLE
        assert treatment.classification == "Unrecognized Transaction"
        assert "FLASH_LOAN_REBATE" in treatment.treatment_reason

    def test_every_type_has_a_handler(self):
        assert set(handled_transaction_types()) == set(TransactionType)


class TestDeFiClassification:
    """Rule-table lookups for DeFi interactions."""

    @staticmethod
    def _loan(tx, operation):
        return Loan(
            id=f"loan-{operation.value}",
            timestamp=tx.at(2024, 1, 1),
            source=DataSource(name="Aave", type="defi"),
            asset=tx.amount("USDC", "1000", fiat="1500"),
            operation=operation,
        )

    def test_swap_is_disposal_in_australia(self, au, tx):
        swap = tx.swap(tx.at(2024, 1, 1), "ETH", "1", "USDC", "3000", "4500")

        treatment = classify(swap, ClassificationContext(jurisdiction=au))

        assert treatment.event_type == TaxEventType.DISPOSAL
        assert treatment.classification == "Token Swap"
        assert treatment.applicable_rules == ("AU_DEFI_CLASSIFICATION", "AU_CGT_EVENT_A1")

    def test_loans_in_australia(self, au, tx):
        context = ClassificationContext(jurisdiction=au)

        assert classify(self._loan(tx, LoanOperation.BORROW), context).event_type == TaxEventType.ACQUISITION
        assert classify(self._loan(tx, LoanOperation.REPAY), context).event_type == TaxEventType.DISPOSAL

    def test_loans_in_germany(self, de, tx):
        context = ClassificationContext(jurisdiction=de)

        for operation in LoanOperation:
            treatment = classify(self._loan(tx, operation), context)
            assert treatment.event_type == TaxEventType.NON_TAXABLE
            assert "DE_DEFI_CLASSIFICATION" in treatment.applicable_rules

    def test_missing_entry_requires_manual_review(self, au, tx):
        bare = dataclasses.replace(au, defi_classification={})
        swap = tx.swap(tx.at(2024, 1, 1), "ETH", "1", "USDC", "3000", "4500")

        treatment = classify(swap, ClassificationContext(jurisdiction=bare))

        assert treatment.event_type == TaxEventType.NON_TAXABLE
        assert treatment.classification == "Unclassified DeFi Transaction"
        assert "manual review" in treatment.treatment_reason


class TestInvestorContext:
    """Business trading and personal-use designation."""

    def test_business_investor(self, au, tx):
        context = ClassificationContext(
            jurisdiction=au, investor_profile=InvestorProfile(InvestorType.BUSINESS)
        )

        treatment = classify(tx.sell(tx.at(2024, 1, 1), "BTC", "1", "60000"), context)

        assert treatment.classification == BUSINESS_CLASSIFICATION
        assert not treatment.is_cgt_eligible
        assert "AU_BUSINESS_TRADING" in treatment.applicable_rules

    @pytest.mark.parametrize("trades,expected", [
        (10, "Sale of Cryptocurrency"),
        (1000, BUSINESS_CLASSIFICATION),
    ])
    def test_trade_frequency_threshold(self, au, tx, trades, expected):
        context = ClassificationContext(
            jurisdiction=au,
            investor_profile=InvestorProfile(InvestorType.PERSONAL, trades_per_year=trades)
        )

        treatment = classify(tx.sell(tx.at(2024, 1, 1), "BTC", "1", "60000"), context)

        assert treatment.classification == expected

    def test_explicit_personal_use(self, au, tx):
        context = ClassificationContext(jurisdiction=au, is_personal_use=True)

        treatment = classify(tx.sell(tx.at(2024, 1, 1), "BTC", "0.1", "5000"), context)

        assert treatment.classification == PERSONAL_USE_CLASSIFICATION
        assert treatment.is_personal_use
        assert not treatment.is_cgt_eligible
        assert "AU_PERSONAL_USE_EXEMPTION" in treatment.applicable_rules

    def test_personal_use_needs_value_below_threshold(self, au, tx):
        context = ClassificationContext(jurisdiction=au, is_personal_use=True)

        treatment = classify(tx.sell(tx.at(2024, 1, 1), "BTC", "1", "60000"), context)

        assert not treatment.is_personal_use
        assert treatment.is_cgt_eligible

    def test_personal_use_heuristic(self, au, tx):
        sale = tx.sell(tx.at(2024, 5, 1), "DOGE", "1000", "150")
        context = ClassificationContext(
            jurisdiction=au,
            previous_transactions=(tx.buy(tx.at(2024, 1, 1), "DOGE", "1000", "100"), sale),
            personal_use_assets=frozenset({"DOGE"})
        )

        assert classify(sale, context).is_personal_use

    def test_income_history_rules_out_personal_use(self, au, tx):
        sale = tx.sell(tx.at(2024, 5, 1), "DOGE", "1000", "150")
        context = ClassificationContext(
            jurisdiction=au,
            previous_transactions=(tx.staking_reward(tx.at(2024, 2, 1), "DOGE", "10", "1"),),
            personal_use_assets=frozenset({"DOGE"})
        )

        assert not classify(sale, context).is_personal_use

    def test_frequent_disposals_rule_out_personal_use(self, au, tx):
        earlier = tuple(
            tx.sell(tx.at(2024, 1, day), "DOGE", "10", "1") for day in (1, 2, 3)
        )
        sale = tx.sell(tx.at(2024, 5, 1), "DOGE", "1000", "150")
        context = ClassificationContext(
            jurisdiction=au,
            previous_transactions=earlier + (sale,),
            personal_use_assets=frozenset({"DOGE"})
        )

        assert not classify(sale, context).is_personal_use

    def test_germany_has_no_personal_use(self, de, tx):
        context = ClassificationContext(jurisdiction=de, is_personal_use=True)

        treatment = classify(tx.sell(tx.at(2024, 1, 1), "BTC", "0.01", "500"), context)

        assert not treatment.is_personal_use
        assert treatment.applicable_rules == ("DE_PRIVATE_SALE",)


class TestBatchClassification:
    """classify_batch and idempotence."""

    @pytest.fixture
    def transactions(self, tx):
        """A mixed batch."""
        return [
            tx.buy(tx.at(2024, 1, 1), "BTC", "1", "50000"),
            tx.staking_reward(tx.at(2024, 2, 1), "ETH", "0.1", "300"),
            tx.transfer(tx.at(2024, 3, 1), "BTC", "1"),
            tx.sell(tx.at(2024, 4, 1), "BTC", "1", "60000"),
            tx.fee(tx.at(2024, 4, 1), "AUD", "10", "10"),
        ]

    def test_parallel_matches_sequential(self, au, transactions):
        context = ClassificationContext(jurisdiction=au)

        sequential = classify_batch(transactions, context)
        parallel = classify_batch(transactions, context, max_workers=4)

        assert parallel == sequential
        assert [t.event_type for t in sequential] == [
            TaxEventType.ACQUISITION,
            TaxEventType.INCOME,
            TaxEventType.NON_TAXABLE,
            TaxEventType.DISPOSAL,
            TaxEventType.DEDUCTIBLE,
        ]

    def test_classification_is_idempotent(self, au, transactions):
        context = ClassificationContext(jurisdiction=au)

        assert [classify(t, context) for t in transactions] == [classify(t, context) for t in transactions]
