"""
Tests for the normalized transaction model.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from cryptotax.exceptions import MalformedTransactionError
from cryptotax.parsers.transaction import (
    LiquidityAdd,
    SpotTrade,
    Swap,
    TransactionType,
    TransactionTypeError,
    dump_transaction,
    parse_transaction,
    parse_transactions,
    to_decimal,
    validate_transaction,
)


@pytest.fixture
def swap_record():
    """A raw swap record as a parser would hand it over."""
    return {
        "type": "SWAP",
        "id": "0xabc-1",
        "timestamp": "2024-03-01T12:00:00+10:00",
        "source": {"name": "Uniswap", "type": "defi"},
        "from": {"asset": "eth", "amount": "1.5"},
        "to": {"asset": "usdc", "amount": "4500", "fiat_value": {"amount": "6800", "currency": "aud"}},
    }


class TestParsing:
    """parse_transaction and the tagged union."""

    def test_swap_with_aliases(self, swap_record):
        swap = parse_transaction(swap_record)

        assert isinstance(swap, Swap)
        assert swap.transaction_type == TransactionType.SWAP
        assert swap.from_asset.asset == "ETH"
        assert swap.to_asset.amount == Decimal("4500")
        assert swap.to_asset.fiat_value.currency == "AUD"
        assert swap.disposal_value() == Decimal("6800")

    def test_timestamp_normalized_to_utc(self, swap_record):
        swap = parse_transaction(swap_record)

        assert swap.timestamp == datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)
        assert swap.timestamp.utcoffset() == timedelta(0)

    def test_naive_timestamp_is_utc(self, swap_record):
        swap_record["timestamp"] = "2024-03-01T12:00:00"

        assert parse_transaction(swap_record).timestamp.tzinfo == timezone.utc

    def test_models_are_frozen(self, swap_record):
        swap = parse_transaction(swap_record)

        with pytest.raises(ValidationError):
            swap.id = "other"

    def test_dump_round_trip(self, swap_record):
        swap = parse_transaction(swap_record)

        assert parse_transaction(dump_transaction(swap)) == swap

    @pytest.mark.parametrize("change", [
        {"type": "TELEPORT"},
        {"id": "  "},
        {"from": {"asset": "ETH", "amount": "-1"}},
        {"from": {"asset": "", "amount": "1"}},
    ])
    def test_malformed_records(self, swap_record, change):
        swap_record.update(change)

        with pytest.raises(MalformedTransactionError):
            parse_transaction(swap_record)

    def test_missing_field_reports_location(self, swap_record):
        del swap_record["to"]

        with pytest.raises(MalformedTransactionError) as exc_info:
            parse_transaction(swap_record)

        assert exc_info.value.transaction_id == "0xabc-1"
        assert exc_info.value.field.endswith("to")

    def test_parse_many(self, swap_record):
        trade = {
            "type": "SPOT_TRADE",
            "id": "t-1",
            "timestamp": "2024-03-02T00:00:00Z",
            "source": {"name": "Binance"},
            "base_asset": {"asset": "BTC", "amount": "0.1"},
            "quote_asset": {"asset": "AUD", "amount": "9000"},
            "side": "BUY",
        }

        parsed = parse_transactions([swap_record, trade])

        assert [type(t) for t in parsed] == [Swap, SpotTrade]
        assert parsed[1].acquisition_value() == Decimal("9000")


class TestValidation:
    """validate_transaction semantic checks."""

    def test_zero_amount_trade(self, tx):
        trade = tx.buy(tx.at(2024, 1, 1), "BTC", "0", "0", id="zero")

        with pytest.raises(MalformedTransactionError, match="base_asset amount must be positive"):
            validate_transaction(trade)

    def test_liquidity_add_needs_assets(self, tx):
        add = LiquidityAdd(
            id="lp-1",
            timestamp=tx.at(2024, 1, 1),
            source={"name": "Uniswap", "type": "defi"},
            assets=[],
            lp_tokens=tx.amount("UNI-V2", "1"),
            protocol="Uniswap V2",
        )

        with pytest.raises(MalformedTransactionError, match="assets cannot be empty"):
            validate_transaction(add)

    def test_valid_transaction_returned_unchanged(self, tx):
        trade = tx.sell(tx.at(2024, 1, 1), "BTC", "1", "60000")

        assert validate_transaction(trade) is trade

    def test_not_a_transaction(self):
        with pytest.raises(MalformedTransactionError):
            validate_transaction({"type": "SPOT_TRADE"})


class TestTransactionType:
    """TransactionType.normalize."""

    @pytest.mark.parametrize("raw,expected", [
        ("spot trade", TransactionType.SPOT_TRADE),
        ("Staking-Reward", TransactionType.STAKING_REWARD),
        ("withdrawal", TransactionType.TRANSFER),
        (" swap ", TransactionType.SWAP),
    ])
    def test_normalize(self, raw, expected):
        assert TransactionType.normalize(raw) == expected

    def test_unknown(self):
        with pytest.raises(TransactionTypeError, match="Unknown transaction type"):
            TransactionType.normalize("teleport")


class TestToDecimal:
    """to_decimal conversion."""

    def test_float_without_artefacts(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_invalid(self):
        with pytest.raises(ValueError):
            to_decimal("abc")
