"""
Normalized Transaction Model

Closed set of transaction variants handed to the tax engine by the
record-parsing layer. Each variant is a frozen pydantic model tagged by
its ``type`` field; ``parse_transaction`` selects the variant from a plain
dict.

Amounts are always non-negative magnitudes. Direction lives in a separate
field (side, direction, operation) so that downstream stages never have to
guess from a sign.

The accessor methods (``disposed_legs``, ``acquired_legs``,
``disposal_value``, ...) let the lot ledger and the capital gains
calculator treat every variant the same way.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from enum import Enum
from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from cryptotax.exceptions import MalformedTransactionError


class TransactionTypeError(ValueError):
    """Raised when transaction type cannot be normalized."""
    pass


class TransactionType(str, Enum):
    """All transaction types the engine understands."""

    SPOT_TRADE = "SPOT_TRADE"
    MARGIN_TRADE = "MARGIN_TRADE"
    FUTURES_TRADE = "FUTURES_TRADE"
    TRANSFER = "TRANSFER"
    FEE = "FEE"

    # Staking and rewards
    STAKING_DEPOSIT = "STAKING_DEPOSIT"
    STAKING_WITHDRAWAL = "STAKING_WITHDRAWAL"
    STAKING_REWARD = "STAKING_REWARD"
    INTEREST = "INTEREST"
    AIRDROP = "AIRDROP"
    MINING = "MINING"
    LAUNCHPOOL = "LAUNCHPOOL"
    DISTRIBUTION = "DISTRIBUTION"

    # DeFi
    SWAP = "SWAP"
    LIQUIDITY_ADD = "LIQUIDITY_ADD"
    LIQUIDITY_REMOVE = "LIQUIDITY_REMOVE"
    LOAN = "LOAN"

    UNKNOWN = "UNKNOWN"

    @classmethod
    def normalize(cls, value: str) -> 'TransactionType':
        """Normalize transaction type from loose spellings ("spot trade", "Staking-Reward").

        Raises:
            TransactionTypeError: If the transaction type cannot be mapped.
        """
        clean_value = value.strip().upper().replace(" ", "_").replace("-", "_")

        aliases = {
            "TRADE": cls.SPOT_TRADE,
            "SPOT": cls.SPOT_TRADE,
            "MARGIN": cls.MARGIN_TRADE,
            "FUTURES": cls.FUTURES_TRADE,
            "DEPOSIT": cls.TRANSFER,
            "WITHDRAWAL": cls.TRANSFER,
            "STAKE": cls.STAKING_DEPOSIT,
            "UNSTAKE": cls.STAKING_WITHDRAWAL,
            "REWARD": cls.STAKING_REWARD,
        }

        if clean_value in cls.__members__:
            return cls[clean_value]
        if clean_value in aliases:
            return aliases[clean_value]

        raise TransactionTypeError(f"Unknown transaction type: '{value}'")


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TransferDirection(str, Enum):
    IN = "IN"
    OUT = "OUT"
    INTERNAL = "INTERNAL"


class FuturesSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class FuturesOperation(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    LIQUIDATION = "LIQUIDATION"


class InterestType(str, Enum):
    EARNED = "EARNED"
    PAID = "PAID"


class LoanOperation(str, Enum):
    BORROW = "BORROW"
    REPAY = "REPAY"


class SourceType(str, Enum):
    """Kind of system a transaction was exported from."""
    EXCHANGE = "exchange"
    WALLET = "wallet"
    DEFI = "defi"
    BLOCKCHAIN = "blockchain"
    MANUAL = "manual"


class FiatValue(BaseModel):
    """Value of an asset amount in the reporting currency at transaction time."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str = "AUD"

    @field_validator('amount')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Fiat value cannot be negative")
        return v

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v):
        return v.strip().upper()


class AssetAmount(BaseModel):
    """An asset symbol with a non-negative amount and optional fiat valuation."""

    model_config = ConfigDict(frozen=True)

    asset: str
    amount: Decimal
    fiat_value: Optional[FiatValue] = None

    @field_validator('asset')
    @classmethod
    def normalize_asset(cls, v):
        symbol = v.strip().upper()
        if not symbol:
            raise ValueError("Asset symbol cannot be empty")
        return symbol

    @field_validator('amount')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Amount must be a non-negative magnitude")
        return v

    def fiat_amount(self) -> Optional[Decimal]:
        return self.fiat_value.amount if self.fiat_value is not None else None


class DataSource(BaseModel):
    """Origin of a transaction (exchange, wallet, protocol) plus jurisdiction hint."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: SourceType = SourceType.EXCHANGE
    jurisdiction: Optional[str] = None


def _sum_fiat(legs: List[AssetAmount]) -> Optional[Decimal]:
    """Total fiat value of legs, or None when any leg is unvalued."""
    values = [leg.fiat_amount() for leg in legs]
    if not values or any(v is None for v in values):
        return None
    return sum(values, Decimal(0))


class BaseTransaction(BaseModel):
    """
    Fields and accessors shared by every transaction variant.

    ``tax_events`` is the only mutable part: downstream stages append the
    identifiers of tax events derived from this transaction.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    timestamp: datetime
    source: DataSource
    description: Optional[str] = None
    original_data: Optional[Dict[str, Any]] = None
    tax_events: List[str] = Field(default_factory=list)

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Transaction id cannot be empty")
        return v

    @field_validator('timestamp')
    @classmethod
    def normalize_timestamp(cls, v):
        # Naive timestamps are taken as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType(self.type)

    def primary_asset(self) -> Optional[str]:
        """The asset a reader would name for this transaction."""
        return None

    def disposed_legs(self) -> List[AssetAmount]:
        """Asset amounts leaving the portfolio when this is treated as a disposal."""
        return []

    def acquired_legs(self) -> List[AssetAmount]:
        """Asset amounts entering the portfolio and establishing lots."""
        return []

    def disposed_leg(self) -> Optional[AssetAmount]:
        legs = self.disposed_legs()
        return legs[0] if legs else None

    def acquired_leg(self) -> Optional[AssetAmount]:
        legs = self.acquired_legs()
        return legs[0] if legs else None

    def fee_leg(self) -> Optional[AssetAmount]:
        return None

    def fee_amount(self) -> Decimal:
        """Fee in reporting currency where valued, otherwise the raw fee amount."""
        fee = self.fee_leg()
        if fee is None:
            return Decimal(0)
        fiat = fee.fiat_amount()
        return fiat if fiat is not None else fee.amount

    def quote_amount(self) -> Optional[Decimal]:
        return None

    def signed_base_amount(self) -> Decimal:
        """Net change in the primary asset: positive inflow, negative outflow."""
        asset = self.primary_asset()
        acquired = sum((leg.amount for leg in self.acquired_legs() if leg.asset == asset), Decimal(0))
        disposed = sum((leg.amount for leg in self.disposed_legs() if leg.asset == asset), Decimal(0))
        return acquired - disposed

    def disposal_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        """Gross proceeds for a disposed leg, or None when unpriced."""
        leg = leg or self.disposed_leg()
        return leg.fiat_amount() if leg is not None else None

    def acquisition_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        """Total cost of an acquired leg, or None when unpriced."""
        leg = leg or self.acquired_leg()
        return leg.fiat_amount() if leg is not None else None

    def income_value(self) -> Optional[Decimal]:
        """Fiat value of a reward received, for income-bearing variants."""
        return None

    def fiat_value(self) -> Optional[Decimal]:
        """Best single fiat figure for the transaction (used for thresholds and reports)."""
        value = self.disposal_value()
        if value is None:
            value = self.acquisition_value()
        return value


class TradeTransaction(BaseTransaction):
    """Common shape of spot and margin trades."""

    base_asset: AssetAmount
    quote_asset: AssetAmount
    side: TradeSide
    price: Optional[Decimal] = None
    fee: Optional[AssetAmount] = None

    def primary_asset(self) -> Optional[str]:
        return self.base_asset.asset

    def disposed_legs(self) -> List[AssetAmount]:
        return [self.base_asset] if self.side == TradeSide.SELL else []

    def acquired_legs(self) -> List[AssetAmount]:
        return [self.base_asset] if self.side == TradeSide.BUY else []

    def fee_leg(self) -> Optional[AssetAmount]:
        return self.fee

    def quote_amount(self) -> Optional[Decimal]:
        return self.quote_asset.amount

    def _trade_value(self) -> Decimal:
        fiat = self.quote_asset.fiat_amount()
        return fiat if fiat is not None else self.quote_asset.amount

    def disposal_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        if self.side != TradeSide.SELL:
            return None
        return self._trade_value()

    def acquisition_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        if self.side != TradeSide.BUY:
            return None
        return self._trade_value()


class SpotTrade(TradeTransaction):
    type: Literal["SPOT_TRADE"] = "SPOT_TRADE"


class MarginTrade(TradeTransaction):
    type: Literal["MARGIN_TRADE"] = "MARGIN_TRADE"
    leverage: Optional[Decimal] = None


class FuturesTrade(BaseTransaction):
    """
    Derivative position change. No lots are involved: a closed or
    liquidated position realizes ``realized_pnl`` (signed, reporting currency).
    """

    type: Literal["FUTURES_TRADE"] = "FUTURES_TRADE"
    contract_symbol: str
    side: FuturesSide
    operation: FuturesOperation
    size: Decimal
    realized_pnl: Optional[Decimal] = None
    fee: Optional[AssetAmount] = None

    def primary_asset(self) -> Optional[str]:
        return self.contract_symbol.strip().upper()

    def fee_leg(self) -> Optional[AssetAmount]:
        return self.fee

    def fiat_value(self) -> Optional[Decimal]:
        return abs(self.realized_pnl) if self.realized_pnl is not None else None


class Transfer(BaseTransaction):
    type: Literal["TRANSFER"] = "TRANSFER"
    asset: AssetAmount
    direction: TransferDirection
    network_fee: Optional[AssetAmount] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.asset.asset

    def fee_leg(self) -> Optional[AssetAmount]:
        return self.network_fee

    def signed_base_amount(self) -> Decimal:
        if self.direction == TransferDirection.IN:
            return self.asset.amount
        if self.direction == TransferDirection.OUT:
            return -self.asset.amount
        return Decimal(0)

    def fiat_value(self) -> Optional[Decimal]:
        return self.asset.fiat_amount()


class Fee(BaseTransaction):
    type: Literal["FEE"] = "FEE"
    fee: AssetAmount
    fee_type: str = "TRADING"
    related_transaction_id: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.fee.asset

    def fee_leg(self) -> Optional[AssetAmount]:
        return self.fee

    def fiat_value(self) -> Optional[Decimal]:
        return self.fee_amount()


class StakingDeposit(BaseTransaction):
    type: Literal["STAKING_DEPOSIT"] = "STAKING_DEPOSIT"
    asset: AssetAmount
    protocol: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.asset.asset

    def fiat_value(self) -> Optional[Decimal]:
        return self.asset.fiat_amount()


class StakingWithdrawal(BaseTransaction):
    type: Literal["STAKING_WITHDRAWAL"] = "STAKING_WITHDRAWAL"
    asset: AssetAmount
    protocol: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.asset.asset

    def fiat_value(self) -> Optional[Decimal]:
        return self.asset.fiat_amount()


class _IncomeTransaction(BaseTransaction):
    """Variants where the portfolio receives an asset as a reward."""

    def _received(self) -> AssetAmount:
        raise NotImplementedError

    def primary_asset(self) -> Optional[str]:
        return self._received().asset

    def acquired_legs(self) -> List[AssetAmount]:
        return [self._received()]

    def income_value(self) -> Optional[Decimal]:
        return self._received().fiat_amount()


class StakingReward(_IncomeTransaction):
    type: Literal["STAKING_REWARD"] = "STAKING_REWARD"
    reward: AssetAmount
    protocol: Optional[str] = None

    def _received(self) -> AssetAmount:
        return self.reward


class Reward(_IncomeTransaction):
    """Mining, launchpool and distribution rewards share one shape."""

    type: Literal["MINING", "LAUNCHPOOL", "DISTRIBUTION"]
    reward: AssetAmount

    def _received(self) -> AssetAmount:
        return self.reward


class Airdrop(_IncomeTransaction):
    type: Literal["AIRDROP"] = "AIRDROP"
    received: AssetAmount
    project: Optional[str] = None

    def _received(self) -> AssetAmount:
        return self.received


class Interest(BaseTransaction):
    type: Literal["INTEREST"] = "INTEREST"
    interest: AssetAmount
    interest_type: InterestType = InterestType.EARNED
    protocol: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.interest.asset

    def acquired_legs(self) -> List[AssetAmount]:
        return [self.interest] if self.interest_type == InterestType.EARNED else []

    def fee_leg(self) -> Optional[AssetAmount]:
        # Interest paid is a deductible expense
        return self.interest if self.interest_type == InterestType.PAID else None

    def income_value(self) -> Optional[Decimal]:
        if self.interest_type != InterestType.EARNED:
            return None
        return self.interest.fiat_amount()

    def fiat_value(self) -> Optional[Decimal]:
        return self.interest.fiat_amount()


class Swap(BaseTransaction):
    type: Literal["SWAP"] = "SWAP"
    from_asset: AssetAmount = Field(alias="from")
    to_asset: AssetAmount = Field(alias="to")
    fee: Optional[AssetAmount] = None
    protocol: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.from_asset.asset

    def disposed_legs(self) -> List[AssetAmount]:
        return [self.from_asset]

    def acquired_legs(self) -> List[AssetAmount]:
        return [self.to_asset]

    def fee_leg(self) -> Optional[AssetAmount]:
        return self.fee

    def quote_amount(self) -> Optional[Decimal]:
        return self.to_asset.amount

    def _market_value(self) -> Optional[Decimal]:
        # Either side of an arm's-length swap values the exchange
        value = self.to_asset.fiat_amount()
        if value is None:
            value = self.from_asset.fiat_amount()
        return value

    def disposal_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        return self._market_value()

    def acquisition_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        return self._market_value()


class LiquidityAdd(BaseTransaction):
    type: Literal["LIQUIDITY_ADD"] = "LIQUIDITY_ADD"
    assets: List[AssetAmount]
    lp_tokens: AssetAmount
    protocol: str

    def primary_asset(self) -> Optional[str]:
        return self.lp_tokens.asset

    def disposed_legs(self) -> List[AssetAmount]:
        return list(self.assets)

    def acquired_legs(self) -> List[AssetAmount]:
        return [self.lp_tokens]

    def acquisition_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        value = self.lp_tokens.fiat_amount()
        return value if value is not None else _sum_fiat(self.assets)


class LiquidityRemove(BaseTransaction):
    type: Literal["LIQUIDITY_REMOVE"] = "LIQUIDITY_REMOVE"
    lp_tokens: AssetAmount
    assets: List[AssetAmount]
    protocol: str

    def primary_asset(self) -> Optional[str]:
        return self.lp_tokens.asset

    def disposed_legs(self) -> List[AssetAmount]:
        return [self.lp_tokens]

    def acquired_legs(self) -> List[AssetAmount]:
        return list(self.assets)

    def disposal_value(self, leg: Optional[AssetAmount] = None) -> Optional[Decimal]:
        value = self.lp_tokens.fiat_amount()
        return value if value is not None else _sum_fiat(self.assets)


class Loan(BaseTransaction):
    type: Literal["LOAN"] = "LOAN"
    asset: AssetAmount
    operation: LoanOperation
    protocol: Optional[str] = None

    def primary_asset(self) -> Optional[str]:
        return self.asset.asset

    def disposed_legs(self) -> List[AssetAmount]:
        return [self.asset] if self.operation == LoanOperation.REPAY else []

    def acquired_legs(self) -> List[AssetAmount]:
        return [self.asset] if self.operation == LoanOperation.BORROW else []


class UnknownTransaction(BaseTransaction):
    """A record the parser could not map; kept so nothing is silently dropped."""

    type: Literal["UNKNOWN"] = "UNKNOWN"
    raw_type: str
    asset: Optional[AssetAmount] = None

    def primary_asset(self) -> Optional[str]:
        return self.asset.asset if self.asset is not None else None

    def fiat_value(self) -> Optional[Decimal]:
        return self.asset.fiat_amount() if self.asset is not None else None


Transaction = Annotated[
    Union[
        SpotTrade,
        MarginTrade,
        FuturesTrade,
        Transfer,
        Fee,
        StakingDeposit,
        StakingWithdrawal,
        StakingReward,
        Reward,
        Airdrop,
        Interest,
        Swap,
        LiquidityAdd,
        LiquidityRemove,
        Loan,
        UnknownTransaction,
    ],
    Field(discriminator="type"),
]

_TRANSACTION_ADAPTER = TypeAdapter(Transaction)
_TRANSACTION_LIST_ADAPTER = TypeAdapter(List[Transaction])


def parse_transaction(data: Dict[str, Any]) -> BaseTransaction:
    """
    Build the matching transaction variant from a plain dict.

    Raises:
        MalformedTransactionError: If the dict does not describe a valid transaction.
    """
    try:
        return _TRANSACTION_ADAPTER.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise MalformedTransactionError(
            f"invalid transaction data ({e.error_count()} errors): {first.get('msg', e)}",
            transaction_id=data.get("id") if isinstance(data, dict) else None,
            field=field or None
        ) from e


def parse_transactions(data: List[Dict[str, Any]]) -> List[BaseTransaction]:
    """Parse a list of transaction dicts; fails on the first malformed entry."""
    return [parse_transaction(item) for item in data]


def dump_transaction(transaction: BaseTransaction) -> Dict[str, Any]:
    """JSON-compatible dict that ``parse_transaction`` accepts back."""
    return transaction.model_dump(mode='json', by_alias=True)


def _require_positive(transaction: BaseTransaction, field: str, leg: Optional[AssetAmount]):
    if leg is None:
        raise MalformedTransactionError(f"{field} is required", transaction.id, field)
    if leg.amount <= 0:
        raise MalformedTransactionError(
            f"{field} amount must be positive, got {leg.amount}", transaction.id, field
        )


def validate_transaction(transaction: BaseTransaction) -> BaseTransaction:
    """
    Semantic checks the schema cannot express.

    Traded legs must carry a positive amount (a zero-amount trade has no
    unit price and would corrupt the lot ledger).

    Raises:
        MalformedTransactionError: On the first failing field.
    """
    if not isinstance(transaction, BaseTransaction):
        raise MalformedTransactionError(
            f"expected a transaction model, got {type(transaction).__name__}"
        )
    if transaction.timestamp is None:
        raise MalformedTransactionError("timestamp is required", transaction.id, "timestamp")

    if isinstance(transaction, TradeTransaction):
        _require_positive(transaction, "base_asset", transaction.base_asset)
    elif isinstance(transaction, Swap):
        _require_positive(transaction, "from", transaction.from_asset)
        _require_positive(transaction, "to", transaction.to_asset)
    elif isinstance(transaction, (LiquidityAdd, LiquidityRemove)):
        if not transaction.assets:
            raise MalformedTransactionError("assets cannot be empty", transaction.id, "assets")
        _require_positive(transaction, "lp_tokens", transaction.lp_tokens)
    elif isinstance(transaction, FuturesTrade):
        if transaction.size <= 0:
            raise MalformedTransactionError(
                f"size must be positive, got {transaction.size}", transaction.id, "size"
            )
    elif isinstance(transaction, (Transfer, Loan, StakingDeposit, StakingWithdrawal)):
        _require_positive(transaction, "asset", transaction.asset)
    elif isinstance(transaction, _IncomeTransaction):
        _require_positive(transaction, "reward", transaction._received())

    return transaction


def to_decimal(value: Any) -> Decimal:
    """Decimal from str/int/Decimal without float rounding artefacts."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a decimal value: {value!r}") from e
