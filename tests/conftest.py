"""
Shared fixtures: jurisdictions and a small transaction factory.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cryptotax.parsers.transaction import (
    Airdrop,
    AssetAmount,
    DataSource,
    Fee,
    FiatValue,
    FuturesOperation,
    FuturesSide,
    FuturesTrade,
    Interest,
    InterestType,
    SpotTrade,
    StakingReward,
    Swap,
    TradeSide,
    Transfer,
    TransferDirection,
)
from cryptotax.tax.jurisdictions import get_jurisdiction


def utc(year, month, day, hour=0, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


class TransactionFactory:
    """Builds valid transactions with AUD valuations."""

    def __init__(self):
        self._counter = 0

    at = staticmethod(utc)

    def _id(self, prefix):
        self._counter += 1
        return f"{prefix}-{self._counter}"

    @staticmethod
    def amount(asset, amount, fiat=None, currency="AUD"):
        fiat_value = FiatValue(amount=Decimal(str(fiat)), currency=currency) if fiat is not None else None
        return AssetAmount(asset=asset, amount=Decimal(str(amount)), fiat_value=fiat_value)

    def buy(self, when, asset, amount, cost, fee=None, id=None, source="Binance"):
        return SpotTrade(
            id=id or self._id("buy"),
            timestamp=when,
            source=DataSource(name=source),
            base_asset=self.amount(asset, amount),
            quote_asset=self.amount("AUD", cost, fiat=cost),
            side=TradeSide.BUY,
            fee=self.amount("AUD", fee, fiat=fee) if fee is not None else None,
        )

    def sell(self, when, asset, amount, proceeds, fee=None, id=None, source="Binance"):
        return SpotTrade(
            id=id or self._id("sell"),
            timestamp=when,
            source=DataSource(name=source),
            base_asset=self.amount(asset, amount),
            quote_asset=self.amount("AUD", proceeds, fiat=proceeds),
            side=TradeSide.SELL,
            fee=self.amount("AUD", fee, fiat=fee) if fee is not None else None,
        )

    def swap(self, when, from_asset, from_amount, to_asset, to_amount, value, id=None, source="Uniswap"):
        return Swap(
            id=id or self._id("swap"),
            timestamp=when,
            source=DataSource(name=source, type="defi"),
            from_asset=self.amount(from_asset, from_amount),
            to_asset=self.amount(to_asset, to_amount, fiat=value),
        )

    def staking_reward(self, when, asset, amount, value, id=None, source="Kraken"):
        return StakingReward(
            id=id or self._id("reward"),
            timestamp=when,
            source=DataSource(name=source),
            reward=self.amount(asset, amount, fiat=value),
        )

    def airdrop(self, when, asset, amount, value=None, id=None):
        return Airdrop(
            id=id or self._id("airdrop"),
            timestamp=when,
            source=DataSource(name="Wallet", type="wallet"),
            received=self.amount(asset, amount, fiat=value),
        )

    def interest(self, when, asset, amount, value, interest_type=InterestType.EARNED, id=None):
        return Interest(
            id=id or self._id("interest"),
            timestamp=when,
            source=DataSource(name="Nexo"),
            interest=self.amount(asset, amount, fiat=value),
            interest_type=interest_type,
        )

    def transfer(self, when, asset, amount, direction=TransferDirection.OUT, id=None, source="Binance"):
        return Transfer(
            id=id or self._id("transfer"),
            timestamp=when,
            source=DataSource(name=source),
            asset=self.amount(asset, amount),
            direction=direction,
        )

    def fee(self, when, asset, amount, value, id=None):
        return Fee(
            id=id or self._id("fee"),
            timestamp=when,
            source=DataSource(name="Binance"),
            fee=self.amount(asset, amount, fiat=value),
        )

    def futures_close(self, when, pnl, fee=None, id=None):
        return FuturesTrade(
            id=id or self._id("futures"),
            timestamp=when,
            source=DataSource(name="Bybit"),
            contract_symbol="BTCUSDT",
            side=FuturesSide.LONG,
            operation=FuturesOperation.CLOSE,
            size=Decimal("0.1"),
            realized_pnl=Decimal(str(pnl)),
            fee=self.amount("AUD", fee, fiat=fee) if fee is not None else None,
        )


@pytest.fixture
def tx():
    """Provide a fresh transaction factory."""
    return TransactionFactory()


@pytest.fixture
def au():
    """Provide the Australian jurisdiction."""
    return get_jurisdiction("AU")


@pytest.fixture
def de():
    """Provide the German jurisdiction."""
    return get_jurisdiction("DE")
