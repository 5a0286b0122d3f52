"""
Tests for error recovery and duplicate detection.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from cryptotax.exceptions import RecoveryExhaustedError
from cryptotax.parsers.transaction import DataSource, TransferDirection, UnknownTransaction
from cryptotax.tax.duplicates import DuplicateDetector, DuplicateGroupType
from cryptotax.tax.recovery import (
    ErrorRecovery,
    RecoveryMethod,
    RecoveryOptions,
)


def fixed_price(price):
    def provider(asset, timestamp):
        return Decimal(price)
    return provider


class TestCostBasisRecovery:
    """recover_missing_cost_basis strategy chain."""

    @pytest.fixture
    def acquisitions(self, tx):
        """Two earlier BTC buys and one after the disposal."""
        return [
            tx.buy(tx.at(2023, 1, 1), "BTC", "1", "40000"),
            tx.buy(tx.at(2023, 6, 1), "BTC", "1", "60000"),
            tx.buy(tx.at(2024, 6, 1), "BTC", "1", "90000"),
        ]

    def test_matched_acquisitions(self, acquisitions, tx):
        sale = tx.sell(tx.at(2024, 1, 1), "BTC", "1", "70000")

        result = ErrorRecovery().recover_missing_cost_basis(sale, acquisitions)

        assert result.success
        assert result.method == RecoveryMethod.MATCHED_ACQUISITIONS
        assert result.confidence == 0.7
        basis = result.unwrap()
        assert basis.total_cost == Decimal("50000")
        assert basis.acquisition_date == tx.at(2023, 6, 1)
        assert basis.holding_period == 214
        assert basis.recovery_method == "MATCHED_ACQUISITIONS"

    def test_partial_amount(self, acquisitions, tx):
        sale = tx.sell(tx.at(2024, 1, 1), "BTC", "1", "70000")

        result = ErrorRecovery().recover_missing_cost_basis(sale, acquisitions, amount=Decimal("0.5"))

        assert result.unwrap().total_cost == Decimal("25000")

    def test_no_recovery_by_default(self, tx):
        sale = tx.sell(tx.at(2024, 1, 1), "BTC", "1", "70000")

        result = ErrorRecovery(price_provider=fixed_price("30000")).recover_missing_cost_basis(sale, [])

        assert not result.success
        assert result.method == RecoveryMethod.NO_RECOVERY
        assert result.confidence == 0.0
        with pytest.raises(RecoveryExhaustedError):
            result.unwrap()

    def test_market_price_estimate(self, tx):
        sale = tx.sell(tx.at(2024, 1, 1), "BTC", "2", "140000")
        recovery = ErrorRecovery(RecoveryOptions(use_market_price=True), fixed_price("30000"))

        result = recovery.recover_missing_cost_basis(sale, [])

        assert result.method == RecoveryMethod.MARKET_PRICE_ESTIMATE
        assert result.confidence == 0.5
        assert result.unwrap().total_cost == Decimal("60000")

    def test_zero_cost_basis(self, tx):
        sale = tx.sell(tx.at(2024, 1, 1), "BTC", "1", "70000")
        recovery = ErrorRecovery(RecoveryOptions(use_market_price=True, allow_zero_cost_basis=True))

        result = recovery.recover_missing_cost_basis(sale, [])

        assert result.method == RecoveryMethod.ZERO_COST_BASIS
        assert result.confidence == 0.3
        assert result.unwrap().total_cost == Decimal("0")
        assert any("no market price" in warning for warning in result.warnings)


class TestPricingRecovery:
    """recover_missing_pricing strategy chain."""

    def test_inferred_from_trade(self, tx):
        sale = tx.sell(tx.at(2024, 1, 1), "BTC", "1", "70000")

        result = ErrorRecovery().recover_missing_pricing(sale)

        assert result.method == RecoveryMethod.INFERRED_FROM_TRANSACTION
        assert result.confidence == 0.9
        assert result.data == Decimal("70000")

    def test_inferred_from_counter_leg(self, tx):
        swap = tx.swap(tx.at(2024, 1, 1), "ETH", "1", "USDC", "3000", "4500")

        assert ErrorRecovery().recover_missing_pricing(swap).data == Decimal("4500")

    def test_market_price(self, tx):
        drop = tx.airdrop(tx.at(2024, 1, 1), "ARB", "100")
        recovery = ErrorRecovery(RecoveryOptions(use_market_price=True), fixed_price("1.2"))

        result = recovery.recover_missing_pricing(drop)

        assert result.method == RecoveryMethod.MARKET_PRICE_API
        assert result.confidence == 0.6
        assert result.data == Decimal("120.0")

    def test_float_market_price_is_not_binary_rounded(self, tx):
        drop = tx.airdrop(tx.at(2024, 1, 1), "ARB", "3")
        recovery = ErrorRecovery(RecoveryOptions(use_market_price=True), lambda asset, timestamp: 0.1)

        result = recovery.recover_missing_pricing(drop)

        assert result.data == Decimal("0.3")

    def test_fallback_zero(self, tx):
        drop = tx.airdrop(tx.at(2024, 1, 1), "ARB", "100")

        result = ErrorRecovery(RecoveryOptions(use_fallback_pricing=True)).recover_missing_pricing(drop)

        assert result.method == RecoveryMethod.FALLBACK_ZERO
        assert result.confidence == 0.2
        assert result.data == Decimal("0")

    def test_exhausted(self, tx):
        drop = tx.airdrop(tx.at(2024, 1, 1), "ARB", "100")

        result = ErrorRecovery().recover_missing_pricing(drop)

        assert not result.success
        assert result.data is None


class TestAssetInfoRecovery:
    """recover_missing_asset_info."""

    def _unknown(self, tx, original_data=None):
        return UnknownTransaction(
            id="raw-1",
            timestamp=tx.at(2024, 1, 1),
            source=DataSource(name="Exotic"),
            raw_type="BONUS",
            original_data=original_data,
        )

    def test_asset_known(self, tx):
        result = ErrorRecovery().recover_missing_asset_info(tx.buy(tx.at(2024, 1, 1), "sol", "1", "150"))

        assert result.data == "SOL"
        assert result.confidence == 0.9

    def test_inferred_from_original_record(self, tx):
        result = ErrorRecovery().recover_missing_asset_info(self._unknown(tx, {"coin": " pepe "}))

        assert result.method == RecoveryMethod.INFERRED_ASSET
        assert result.confidence == 0.6
        assert result.data == "PEPE"

    def test_unknown_asset(self, tx):
        result = ErrorRecovery().recover_missing_asset_info(self._unknown(tx))

        assert result.method == RecoveryMethod.UNKNOWN_ASSET
        assert result.confidence == 0.1
        assert result.data == "UNKNOWN"


class TestDuplicateResolution:
    """resolve_duplicate and deduplicate."""

    def test_identical_records_keep_original(self, tx):
        original = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="a")
        copy = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="b")

        result = ErrorRecovery().resolve_duplicate(original, copy)

        assert result.method == RecoveryMethod.KEEP_ORIGINAL
        assert result.confidence == 1.0
        assert result.data == [original]

    def test_same_event_from_two_sources_is_merged(self, tx):
        original = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="a", source="Binance")
        other = tx.buy(tx.at(2024, 1, 1, 10) + timedelta(seconds=30), "BTC", "1", "50000", id="b", source="Koinly")

        result = ErrorRecovery().resolve_duplicate(original, other)

        assert result.method == RecoveryMethod.MERGE_SOURCES
        assert result.confidence == 0.8
        merged = result.data[0]
        assert merged.id == "a"
        assert merged.original_data["merged_sources"] == ["Binance", "Koinly"]
        assert original.original_data is None

    def test_uncertain_pair_keeps_both(self, tx):
        original = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="a")
        other = tx.buy(tx.at(2024, 1, 1, 12), "BTC", "1.2", "60000", id="b")

        result = ErrorRecovery().resolve_duplicate(original, other)

        assert result.method == RecoveryMethod.KEEP_BOTH
        assert result.confidence == 0.5
        assert result.data == [original, other]
        assert result.warnings

    def test_merged_record_has_its_own_tax_events(self, tx):
        original = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="a", source="Binance")
        other = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="b", source="Koinly")
        original.tax_events.append("ACQUISITION:a")

        merged = ErrorRecovery().resolve_duplicate(original, other).data[0]
        merged.tax_events.append("CGT:a:BTC")

        assert merged.tax_events is not original.tax_events
        assert original.tax_events == ["ACQUISITION:a"]

    def test_opposite_trades_keep_both(self, tx):
        buy = tx.buy(tx.at(2024, 1, 1, 12), "BTC", "1", "50000", id="b0")
        sale = tx.sell(tx.at(2024, 1, 1, 12), "BTC", "1", "50000", id="b1")

        result = ErrorRecovery().resolve_duplicate(buy, sale)

        assert result.method == RecoveryMethod.KEEP_BOTH
        assert result.data == [buy, sale]

    def test_same_second_different_amount_keeps_both(self, tx):
        first = tx.buy(tx.at(2024, 1, 1, 12), "BTC", "1", "50000", id="a")
        second = tx.buy(tx.at(2024, 1, 1, 12), "BTC", "1.0005", "50025", id="b")

        result = ErrorRecovery().resolve_duplicate(first, second)

        assert result.method == RecoveryMethod.KEEP_BOTH

    def test_deduplicate_keeps_sale_matching_a_buy(self, tx):
        buy = tx.buy(tx.at(2024, 1, 1, 12), "BTC", "1", "50000", id="b0")
        sale = tx.sell(tx.at(2024, 1, 1, 12), "BTC", "1", "50000", id="b1")

        result = ErrorRecovery().deduplicate([buy, sale])

        assert [t.id for t in result.data] == ["b0", "b1"]

    def test_deduplicate_drops_double_import(self, tx):
        buy = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="a")
        again = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000", id="a-reimport")
        sale = tx.sell(tx.at(2024, 3, 1), "BTC", "1", "60000", id="s")

        result = ErrorRecovery().deduplicate([buy, sale, again])

        assert sorted(t.id for t in result.data) == ["a", "s"]
        assert result.data[-1].id == "s"
        assert result.confidence == 1.0

    def test_deduplicate_keeps_wallet_moves(self, tx):
        out = tx.transfer(tx.at(2024, 1, 1, 10), "ETH", "2", direction=TransferDirection.OUT, source="Binance")
        back_in = tx.transfer(tx.at(2024, 1, 1, 10, 1), "ETH", "2", direction=TransferDirection.IN, source="Ledger")

        result = ErrorRecovery().deduplicate([out, back_in])

        assert len(result.data) == 2


class TestDuplicateDetector:
    """Similarity scoring and grouping."""

    @pytest.fixture
    def detector(self):
        """Detector with the default one-minute window."""
        return DuplicateDetector()

    def test_identical_trades_score_high(self, detector, tx):
        a = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000")
        b = tx.buy(tx.at(2024, 1, 1, 10), "BTC", "1", "50000")

        score, group_type = detector.calculate_similarity(a, b)

        assert score == 90.0
        assert group_type == DuplicateGroupType.DUPLICATE

    def test_different_assets_do_not_match(self, detector, tx):
        a = tx.buy(tx.at(2024, 1, 1), "BTC", "1", "50000")
        b = tx.buy(tx.at(2024, 1, 1), "ETH", "1", "50000")

        assert detector.calculate_similarity(a, b)[0] == 0.0

    def test_buy_and_sale_do_not_match(self, detector, tx):
        buy = tx.buy(tx.at(2024, 1, 1, 12), "BTC", "1", "50000")
        sale = tx.sell(tx.at(2024, 1, 1, 12), "BTC", "1", "50000")

        assert detector.calculate_similarity(buy, sale)[0] == 0.0
        assert detector.find_duplicate_groups([buy, sale]) == []

    def test_transfer_pair_group(self, detector, tx):
        out = tx.transfer(tx.at(2024, 1, 1, 10), "ETH", "2", direction=TransferDirection.OUT)
        back_in = tx.transfer(tx.at(2024, 1, 1, 10, 30), "ETH", "2", direction=TransferDirection.IN)

        groups = detector.find_duplicate_groups([back_in, out])

        assert len(groups) == 1
        assert groups[0].group_type == DuplicateGroupType.TRANSFER
        assert groups[0].original is out
