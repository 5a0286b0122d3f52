"""
Tax Event and Lot Data Models

Defines the core data structures for cost basis tracking:
- AcquisitionLot: a single acquisition tracked until fully consumed
- CostBasis: the resolved cost of one disposal
- TransactionTaxTreatment: classifier output per transaction
- CapitalGainsResult: realized gain/loss after discounts and exemptions
- TaxableTransaction: everything the report knows about one transaction

These are universal models used across all jurisdictions.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List
from enum import Enum

from cryptotax.parsers.transaction import BaseTransaction


class CostBasisMethod(str, Enum):
    """Supported lot matching methods."""
    FIFO = "FIFO"
    SPECIFIC_IDENTIFICATION = "SPECIFIC_IDENTIFICATION"


class LotSelectionPolicy(str, Enum):
    """Lot ordering used by specific identification."""
    MINIMIZE_GAIN = "MINIMIZE_GAIN"                  # highest unit price first
    MAXIMIZE_GAIN = "MAXIMIZE_GAIN"                  # lowest unit price first
    MAXIMIZE_CGT_DISCOUNT = "MAXIMIZE_CGT_DISCOUNT"  # discount-eligible lots first


class TaxEventType(str, Enum):
    """Classifier outcome for a transaction."""
    DISPOSAL = "DISPOSAL"
    ACQUISITION = "ACQUISITION"
    INCOME = "INCOME"
    DEDUCTIBLE = "DEDUCTIBLE"
    NON_TAXABLE = "NON_TAXABLE"


@dataclass
class AcquisitionLot:
    """
    One acquisition of one asset.

    Key Invariant: remaining_amount only ever decreases and never goes
    below zero. Exhausted lots stay in the ledger for audit.
    """

    date: datetime
    amount: Decimal
    unit_price: Decimal
    remaining_amount: Decimal
    transaction_id: str

    def is_exhausted(self) -> bool:
        return self.remaining_amount <= 0

    def used_amount(self) -> Decimal:
        return self.amount - self.remaining_amount

    def remaining_cost(self) -> Decimal:
        return self.remaining_amount * self.unit_price

    def holding_period_days(self, reference: datetime) -> int:
        return (reference - self.date).days


@dataclass
class ConsumedLot:
    """Slice of a lot used by a disposal; remaining_amount is after consumption."""

    transaction_id: str
    date: datetime
    amount: Decimal
    unit_price: Decimal
    remaining_amount: Decimal

    @property
    def cost(self) -> Decimal:
        return self.amount * self.unit_price


@dataclass
class LotIdentifier:
    """Names a lot (by acquiring transaction id) and how much of it to use."""

    transaction_id: str
    amount: Decimal


@dataclass
class CostBasis:
    """
    Resolved cost of a disposal.

    total_cost = acquisition_price + acquisition_fees, where
    acquisition_price is the sum of consumed slice costs and
    acquisition_fees is the disposal's own fee.
    """

    method: CostBasisMethod
    acquisition_date: datetime
    acquisition_price: Decimal
    acquisition_fees: Decimal
    total_cost: Decimal
    holding_period: int
    lots: List[ConsumedLot] = field(default_factory=list)

    asset: Optional[str] = None
    amount: Decimal = field(default_factory=lambda: Decimal(0))
    confidence: float = 1.0
    recovery_method: Optional[str] = None

    def consumed_amount(self) -> Decimal:
        return sum((lot.amount for lot in self.lots), Decimal(0))


@dataclass
class AssetSummary:
    """Lot statistics for one asset."""

    asset: str
    total_acquired: Decimal
    total_used: Decimal
    remaining_balance: Decimal
    average_cost_basis: Decimal
    lot_count: int
    open_lot_count: int
    earliest_acquisition: Optional[datetime] = None
    latest_acquisition: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionTaxTreatment:
    """
    Classifier output. Immutable once returned; later stages derive
    updated copies with dataclasses.replace.
    """

    event_type: TaxEventType
    classification: str
    is_personal_use: bool
    is_cgt_eligible: bool
    treatment_reason: str
    applicable_rules: tuple = ()
    cgt_discount_applied: bool = False


@dataclass
class CapitalGainsResult:
    """Realized gain or loss on one disposal."""

    transaction_id: str
    asset: str
    disposal_value: Decimal
    cost_basis_value: Decimal
    net_gain_loss: Decimal
    capital_gain: Decimal
    capital_loss: Decimal
    taxable_gain: Decimal
    holding_period: int
    cgt_discount_applied: bool = False
    discount_amount: Decimal = field(default_factory=lambda: Decimal(0))
    is_personal_use: bool = False
    exemption_applied: Optional[str] = None
    applied_rules: List[str] = field(default_factory=list)

    def is_gain(self) -> bool:
        return self.net_gain_loss > 0

    def is_loss(self) -> bool:
        return self.net_gain_loss < 0


@dataclass
class CapitalGainsAggregate:
    """Totals over a set of capital gains results."""

    total_capital_gains: Decimal
    total_capital_losses: Decimal
    net_capital_gain: Decimal
    total_taxable_gain: Decimal
    total_discount: Decimal
    exempt_gains: Decimal
    discounted_disposals: int
    personal_use_disposals: int
    disposal_count: int


@dataclass
class TaxPeriod:
    """Reporting window for one tax year (inclusive bounds, UTC)."""

    label: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()


@dataclass
class TaxableTransaction:
    """A transaction with its treatment and derived tax figures."""

    transaction: BaseTransaction
    treatment: TransactionTaxTreatment
    cost_bases: List[CostBasis] = field(default_factory=list)
    capital_gains: List[CapitalGainsResult] = field(default_factory=list)
    income_amount: Decimal = field(default_factory=lambda: Decimal(0))
    deductible_amount: Decimal = field(default_factory=lambda: Decimal(0))
    confidence: float = 1.0
    warnings: List[str] = field(default_factory=list)

    @property
    def net_gain_loss(self) -> Decimal:
        return sum((r.net_gain_loss for r in self.capital_gains), Decimal(0))

    @property
    def taxable_gain(self) -> Decimal:
        return sum((r.taxable_gain for r in self.capital_gains), Decimal(0))


@dataclass
class ProcessingIssue:
    """A transaction the report could not fully process."""

    transaction_id: str
    error_type: str
    message: str
    recoverable: bool = True
