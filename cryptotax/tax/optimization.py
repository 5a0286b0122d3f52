"""
Tax Optimization Strategies

Reviews a generated report (and optionally the open lots of its ledger)
and suggests legal ways to lower the tax on it:

- TAX_LOSS_HARVESTING: open lots trading below cost that could offset
  realized gains
- CGT_DISCOUNT_TIMING: gains realized (or lots held) just short of the
  discount threshold
- PERSONAL_USE_CLASSIFICATION: small disposals that could qualify for the
  personal use exemption
- DISPOSAL_TIMING: gains realized shortly before the tax year end
- LOT_SELECTION: disposals that consumed several lots under FIFO where the
  jurisdiction permits specific identification

Savings are estimates at a flat marginal rate; they rank strategies, they
are not tax advice.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from cryptotax.parsers.transaction import to_decimal
from cryptotax.tax.capital_gains import CapitalGainsCalculator
from cryptotax.tax.classifier import BUSINESS_CLASSIFICATION
from cryptotax.tax.engine import CostBasisCalculator, normalize_asset
from cryptotax.tax.jurisdictions import TaxJurisdiction
from cryptotax.tax.tax_events import CapitalGainsResult, CostBasisMethod, TaxableTransaction, TaxPeriod
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)

DEFAULT_MARGINAL_RATE = Decimal("0.3")

# Days before a deadline (discount threshold, tax year end) that count as "close"
NEAR_DEADLINE_DAYS = 30

# Value of deferring a gain by one tax year, as a share of the gain
DEFERRAL_VALUE_RATE = Decimal("0.1")


class StrategyType(str, Enum):
    TAX_LOSS_HARVESTING = "TAX_LOSS_HARVESTING"
    CGT_DISCOUNT_TIMING = "CGT_DISCOUNT_TIMING"
    PERSONAL_USE_CLASSIFICATION = "PERSONAL_USE_CLASSIFICATION"
    DISPOSAL_TIMING = "DISPOSAL_TIMING"
    LOT_SELECTION = "LOT_SELECTION"


class ComplianceLevel(str, Enum):
    SAFE = "SAFE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class RiskTolerance(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


_ALLOWED_COMPLIANCE = {
    RiskTolerance.CONSERVATIVE: (ComplianceLevel.SAFE,),
    RiskTolerance.MODERATE: (ComplianceLevel.SAFE, ComplianceLevel.MODERATE),
    RiskTolerance.AGGRESSIVE: (ComplianceLevel.SAFE, ComplianceLevel.MODERATE, ComplianceLevel.AGGRESSIVE),
}


@dataclass
class TaxStrategy:
    """One recommendation with its estimated saving."""

    type: StrategyType
    description: str
    potential_savings: Decimal
    implementation: Tuple[str, ...]
    risks: Tuple[str, ...]
    compliance: ComplianceLevel
    priority: int
    transaction_ids: List[str] = field(default_factory=list)
    assets: List[str] = field(default_factory=list)


@dataclass
class OptimizationContext:
    """
    Input of one optimization run.

    Args:
        transactions: Reported transactions of the tax year
        jurisdiction: Rules the report was generated under
        period: The report's tax period
        ledger: Lot ledger after the replay (enables open-lot analysis)
        current_prices: Unit prices per asset for unrealized gains and losses
        as_of: Reference time for holding periods of open lots (default: period end)
        risk_tolerance: Highest compliance level to recommend
        marginal_rate: Flat rate used to turn taxable amounts into savings
        cost_basis_method: Method the report used
    """

    transactions: List[TaxableTransaction]
    jurisdiction: TaxJurisdiction
    period: TaxPeriod
    ledger: Optional[CostBasisCalculator] = None
    current_prices: Mapping[str, Decimal] = field(default_factory=dict)
    as_of: Optional[datetime] = None
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE
    marginal_rate: Decimal = DEFAULT_MARGINAL_RATE
    cost_basis_method: CostBasisMethod = CostBasisMethod.FIFO

    @property
    def reference_time(self) -> datetime:
        return self.as_of or self.period.end

    def capital_results(self) -> List[Tuple[TaxableTransaction, CapitalGainsResult]]:
        """Capital gains results outside business income."""
        return [
            (item, result)
            for item in self.transactions
            if item.treatment.classification != BUSINESS_CLASSIFICATION
            for result in item.capital_gains
        ]

    def price(self, asset: str) -> Optional[Decimal]:
        key = normalize_asset(asset)
        for name, price in self.current_prices.items():
            if normalize_asset(name) == key:
                return to_decimal(price)
        return None


class TaxOptimizationEngine:
    """
    Generates optimization strategies for a tax year.

    Strategies are sorted by potential saving, then priority, and filtered
    by the caller's risk tolerance.
    """

    def generate_strategies(self, context: OptimizationContext) -> List[TaxStrategy]:
        analyses = (
            self.analyze_tax_loss_harvesting,
            self.analyze_cgt_discount_timing,
            self.analyze_personal_use_classification,
            self.analyze_disposal_timing,
            self.analyze_lot_selection,
        )

        strategies = []
        for analyze in analyses:
            strategy = analyze(context)
            if strategy is not None:
                strategies.append(strategy)

        strategies.sort(key=lambda s: (s.potential_savings, s.priority), reverse=True)

        allowed = _ALLOWED_COMPLIANCE[RiskTolerance(context.risk_tolerance)]
        selected = [s for s in strategies if s.compliance in allowed]

        logger.info(
            f"{len(selected)} of {len(strategies)} strategies for {context.jurisdiction.code} "
            f"{context.period.label} ({RiskTolerance(context.risk_tolerance).value})"
        )
        return selected

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def find_unrealized_losses(self, context: OptimizationContext) -> Dict[str, Decimal]:
        """Unrealized loss per asset over open lots, where a current price is known."""
        if context.ledger is None:
            return {}

        losses = {}
        for asset in context.ledger.assets():
            price = context.price(asset)
            if price is None:
                continue
            loss = sum(
                (
                    lot.remaining_amount * (lot.unit_price - price)
                    for lot in context.ledger.get_remaining_lots(asset)
                    if lot.unit_price > price
                ),
                Decimal(0)
            )
            if loss > 0:
                losses[asset] = loss
        return losses

    def analyze_tax_loss_harvesting(self, context: OptimizationContext) -> Optional[TaxStrategy]:
        losses = self.find_unrealized_losses(context)
        if not losses:
            return None

        realized = sum((result.taxable_gain for _, result in context.capital_results()), Decimal(0))
        offset = min(sum(losses.values(), Decimal(0)), realized)

        return TaxStrategy(
            type=StrategyType.TAX_LOSS_HARVESTING,
            description="Realize capital losses to offset capital gains of the year",
            potential_savings=offset * context.marginal_rate,
            implementation=(
                "Review open lots trading below their cost",
                "Sell loss-making lots before the tax year ends",
                "Offset the realized losses against this year's capital gains",
                "Carry unused losses forward",
            ),
            risks=(
                "The asset may recover after the sale",
                "Fees reduce the net benefit",
            ),
            compliance=ComplianceLevel.SAFE,
            priority=5,
            assets=sorted(losses),
        )

    def analyze_cgt_discount_timing(self, context: OptimizationContext) -> Optional[TaxStrategy]:
        jurisdiction = context.jurisdiction
        if jurisdiction.discount_rate <= 0:
            return None

        threshold = jurisdiction.holding_period_threshold_days
        window_start = threshold - NEAR_DEADLINE_DAYS

        near = [
            result for _, result in context.capital_results()
            if window_start <= result.holding_period < threshold
            and result.capital_gain > 0
            and not result.cgt_discount_applied
            and not result.is_personal_use
        ]
        savings = sum((r.capital_gain * jurisdiction.discount_rate for r in near), Decimal(0))

        assets = set()
        if context.ledger is not None:
            reference = context.reference_time
            for asset in context.ledger.assets():
                price = context.price(asset)
                for lot in context.ledger.get_lots_by_holding_period(asset, window_start, reference):
                    if lot.holding_period_days(reference) >= threshold:
                        continue
                    if price is None or price > lot.unit_price:
                        assets.add(asset)

        if not near and not assets:
            return None

        return TaxStrategy(
            type=StrategyType.CGT_DISCOUNT_TIMING,
            description=(
                f"Hold assets for {threshold} days before disposing to qualify for the "
                f"{jurisdiction.discount_rate * 100:.0f}% discount"
            ),
            potential_savings=savings * context.marginal_rate,
            implementation=(
                "Track lots approaching the holding period threshold",
                "Defer disposals of winning lots until they qualify",
                "Plan disposals around the tax year boundary",
            ),
            risks=(
                "Market risk while holding",
                "Liquidity needs may force an earlier sale",
            ),
            compliance=ComplianceLevel.SAFE,
            priority=5,
            transaction_ids=sorted({r.transaction_id for r in near}),
            assets=sorted(assets | {r.asset for r in near}),
        )

    def analyze_personal_use_classification(self, context: OptimizationContext) -> Optional[TaxStrategy]:
        if context.jurisdiction.personal_use_threshold is None:
            return None

        gains_calculator = CapitalGainsCalculator(context.jurisdiction)
        candidates = [
            result for item, result in context.capital_results()
            if not item.treatment.is_personal_use
            and not result.is_personal_use
            and result.capital_gain > 0
            and gains_calculator.is_below_personal_use_threshold(result.disposal_value)
        ]
        if not candidates:
            return None

        return TaxStrategy(
            type=StrategyType.PERSONAL_USE_CLASSIFICATION,
            description=(
                f"Disposals below {context.jurisdiction.personal_use_threshold} "
                f"{context.jurisdiction.currency} may qualify for the personal use exemption"
            ),
            potential_savings=sum((r.taxable_gain for r in candidates), Decimal(0)) * context.marginal_rate,
            implementation=(
                "Document personal use intent at acquisition",
                "Keep records of the personal use",
                "Hold personal and investment assets separately",
            ),
            risks=(
                "Requires genuine personal use",
                "Classification is likely to be reviewed",
            ),
            compliance=ComplianceLevel.MODERATE,
            priority=3,
            transaction_ids=sorted({r.transaction_id for r in candidates}),
            assets=sorted({r.asset for r in candidates}),
        )

    def analyze_disposal_timing(self, context: OptimizationContext) -> Optional[TaxStrategy]:
        period_end = context.period.end
        window_start = period_end - timedelta(days=NEAR_DEADLINE_DAYS)

        late = [
            (item, result) for item, result in context.capital_results()
            if window_start <= item.transaction.timestamp <= period_end and result.taxable_gain > 0
        ]
        if not late:
            return None

        return TaxStrategy(
            type=StrategyType.DISPOSAL_TIMING,
            description="Gains realized just before the tax year end could be deferred to the next year",
            potential_savings=sum((r.taxable_gain for _, r in late), Decimal(0)) * DEFERRAL_VALUE_RATE,
            implementation=(
                "Defer profitable disposals past the tax year end",
                "Bring loss-making disposals into the current year",
                "Consider expected income in both years",
            ),
            risks=(
                "Prices may move before the deferred sale",
                "Tax law may change",
            ),
            compliance=ComplianceLevel.SAFE,
            priority=3,
            transaction_ids=sorted({item.transaction.id for item, _ in late}),
            assets=sorted({r.asset for _, r in late}),
        )

    def analyze_lot_selection(self, context: OptimizationContext) -> Optional[TaxStrategy]:
        if context.cost_basis_method == CostBasisMethod.SPECIFIC_IDENTIFICATION:
            return None
        if not context.jurisdiction.supports_method(CostBasisMethod.SPECIFIC_IDENTIFICATION):
            return None

        candidates = [
            item for item in context.transactions
            if any(len(basis.lots) > 1 for basis in item.cost_bases)
        ]
        if not candidates:
            return None

        return TaxStrategy(
            type=StrategyType.LOT_SELECTION,
            description="Use specific identification to choose which lots each disposal consumes",
            potential_savings=Decimal(0),
            implementation=(
                "Track acquisition lots individually",
                "Record the lots chosen for each disposal",
                "Prefer high-cost lots, or lots past the discount threshold",
            ),
            risks=(
                "More record keeping",
                "Lot choices must be documented at the time of disposal",
            ),
            compliance=ComplianceLevel.MODERATE,
            priority=2,
            transaction_ids=sorted(item.transaction.id for item in candidates),
            assets=sorted({basis.asset for item in candidates for basis in item.cost_bases if basis.asset}),
        )


def generate_optimization_strategies(
    report,
    ledger: Optional[CostBasisCalculator] = None,
    current_prices: Optional[Mapping[str, Decimal]] = None,
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE,
    as_of: Optional[datetime] = None,
    marginal_rate: Decimal = DEFAULT_MARGINAL_RATE
) -> List[TaxStrategy]:
    """
    Strategies for a generated TaxReport. The report's own ledger is used
    for open-lot analysis unless another one is given.

    Usage:
        report = TaxReportGenerator().generate_report(history, "AU", "2023-2024")
        strategies = generate_optimization_strategies(report, risk_tolerance=RiskTolerance.CONSERVATIVE)
    """
    context = OptimizationContext(
        transactions=report.transactions,
        jurisdiction=report.jurisdiction,
        period=report.period,
        ledger=ledger if ledger is not None else report.ledger,
        current_prices=current_prices or {},
        as_of=as_of,
        risk_tolerance=RiskTolerance(risk_tolerance),
        marginal_rate=marginal_rate,
        cost_basis_method=CostBasisMethod(report.metadata.get("cost_basis_method", CostBasisMethod.FIFO.value)),
    )
    return TaxOptimizationEngine().generate_strategies(context)
