"""
Tax Report Generation

Replays a transaction history through the classifier, the lot ledger and
the capital gains calculator and collects the result for one tax year.

Pipeline:
1. Resolve jurisdiction and tax period
2. Validate (and optionally de-duplicate) transactions, sort chronologically
3. Classify every transaction up to the period end
4. Replay: acquisitions and income open lots, disposals consume them.
   History before the period only builds lots; only events inside the
   period are reported.
5. Aggregate into a TaxSummary and seal the report with a SHA256 hash

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from cryptotax import __version__
from cryptotax.core.hashing import calculate_sha256, verify_hash
from cryptotax.exceptions import InsufficientLotsError, RecoveryExhaustedError, TaxEngineError
from cryptotax.parsers.transaction import (
    AssetAmount,
    BaseTransaction,
    FuturesTrade,
    validate_transaction,
)
from cryptotax.tax.capital_gains import CapitalGainsCalculator, apply_gains_to_treatment
from cryptotax.tax.classifier import (
    BUSINESS_CLASSIFICATION,
    ClassificationContext,
    InvestorProfile,
    classify_batch,
)
from cryptotax.tax.engine import CostBasisCalculator, get_cost_basis_calculator
from cryptotax.tax.jurisdictions import TaxJurisdiction, resolve_jurisdiction
from cryptotax.tax.recovery import ErrorRecovery, PriceProvider, RecoveryOptions
from cryptotax.tax.tax_events import (
    CapitalGainsAggregate,
    CapitalGainsResult,
    CostBasis,
    CostBasisMethod,
    LotSelectionPolicy,
    ProcessingIssue,
    TaxableTransaction,
    TaxEventType,
    TaxPeriod,
)
from cryptotax.utils.logging_config import (
    get_perf_logger,
    log_dataframe_info,
    setup_logger,
    with_tax_context,
)

logger = setup_logger(__name__)

# Transactions below this confidence are counted as low confidence
LOW_CONFIDENCE_THRESHOLD = 0.8


@dataclass
class PeriodBreakdown:
    """Totals for one slice of a report (an exchange or a month)."""

    net_gain_loss: Decimal = field(default_factory=lambda: Decimal(0))
    taxable_gain: Decimal = field(default_factory=lambda: Decimal(0))
    income: Decimal = field(default_factory=lambda: Decimal(0))
    deductions: Decimal = field(default_factory=lambda: Decimal(0))
    transaction_count: int = 0


@dataclass
class TaxSummary:
    """Period totals of a tax report (all amounts in the jurisdiction currency)."""

    total_proceeds: Decimal
    total_cost_basis: Decimal
    total_capital_gains: Decimal
    total_capital_losses: Decimal
    net_capital_gain: Decimal
    discounted_gains: Decimal
    total_discount: Decimal
    total_taxable_gain: Decimal
    exempt_gains: Decimal
    total_income: Decimal
    business_income: Decimal
    total_deductions: Decimal
    disposal_count: int
    discounted_disposals: int
    personal_use_disposals: int
    income_by_category: Dict[str, Decimal] = field(default_factory=dict)
    by_asset: Dict[str, CapitalGainsAggregate] = field(default_factory=dict)
    by_exchange: Dict[str, PeriodBreakdown] = field(default_factory=dict)
    by_month: Dict[str, PeriodBreakdown] = field(default_factory=dict)

    def top_gainers(self, n: int = 5) -> List[Tuple[str, Decimal]]:
        ranked = sorted(self.by_asset.items(), key=lambda item: item[1].net_capital_gain, reverse=True)
        return [(asset, agg.net_capital_gain) for asset, agg in ranked if agg.net_capital_gain > 0][:n]

    def top_losers(self, n: int = 5) -> List[Tuple[str, Decimal]]:
        ranked = sorted(self.by_asset.items(), key=lambda item: item[1].net_capital_gain)
        return [(asset, agg.net_capital_gain) for asset, agg in ranked if agg.net_capital_gain < 0][:n]

    def by_asset_frame(self) -> pd.DataFrame:
        """Capital gains per asset as a DataFrame, largest net gain first."""
        data = []
        for asset, agg in self.by_asset.items():
            data.append({
                'Asset': asset,
                'Disposals': agg.disposal_count,
                'Capital Gains': float(agg.total_capital_gains),
                'Capital Losses': float(agg.total_capital_losses),
                'Net Gain/Loss': float(agg.net_capital_gain),
                'Discount': float(agg.total_discount),
                'Taxable Gain': float(agg.total_taxable_gain),
            })

        df = pd.DataFrame(data, columns=[
            'Asset', 'Disposals', 'Capital Gains', 'Capital Losses',
            'Net Gain/Loss', 'Discount', 'Taxable Gain'
        ])
        if not df.empty:
            df = df.sort_values('Net Gain/Loss', ascending=False).reset_index(drop=True)
        return df


@dataclass
class TaxReport:
    """Everything computed for one jurisdiction and tax year."""

    id: str
    jurisdiction: TaxJurisdiction
    period: TaxPeriod
    generated_at: datetime
    transactions: List[TaxableTransaction]
    summary: TaxSummary
    issues: List[ProcessingIssue] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    calculation_hash: Optional[str] = None
    # Lot ledger as of the period end (not covered by the hash)
    ledger: Optional[CostBasisCalculator] = field(default=None, repr=False, compare=False)

    def hash_payload(self) -> Dict[str, Any]:
        """Content covered by calculation_hash (generation time excluded)."""
        return {
            "id": self.id,
            "jurisdiction": self.jurisdiction.code,
            "period": {"label": self.period.label, "start": self.period.start, "end": self.period.end},
            "summary": self.summary,
            "transactions": [
                {
                    "id": item.transaction.id,
                    "event_type": item.treatment.event_type,
                    "classification": item.treatment.classification,
                    "rules": item.treatment.applicable_rules,
                    "capital_gains": item.capital_gains,
                    "income": item.income_amount,
                    "deductible": item.deductible_amount,
                    "confidence": item.confidence,
                }
                for item in self.transactions
            ],
            "issues": self.issues,
        }

    def verify_integrity(self) -> bool:
        return self.calculation_hash is not None and verify_hash(self.hash_payload(), self.calculation_hash)

    def to_dataframe(self) -> pd.DataFrame:
        """One row per reported transaction."""
        data = []
        for item in self.transactions:
            tx = item.transaction
            gains = item.capital_gains
            data.append({
                'Date': tx.timestamp,
                'Transaction ID': tx.id,
                'Type': tx.type,
                'Event Type': item.treatment.event_type.value,
                'Classification': item.treatment.classification,
                'Asset': tx.primary_asset() or '',
                'Exchange': tx.source.name,
                'Proceeds': float(sum((r.disposal_value for r in gains), Decimal(0))),
                'Cost Basis': float(sum((r.cost_basis_value for r in gains), Decimal(0))),
                'Gain/Loss': float(item.net_gain_loss),
                'Taxable Gain': float(item.taxable_gain),
                'Income': float(item.income_amount),
                'Deductible': float(item.deductible_amount),
                'Discount Applied': item.treatment.cgt_discount_applied,
                'Personal Use': item.treatment.is_personal_use,
                'Confidence': item.confidence,
            })

        columns = [
            'Date', 'Transaction ID', 'Type', 'Event Type', 'Classification', 'Asset',
            'Exchange', 'Proceeds', 'Cost Basis', 'Gain/Loss', 'Taxable Gain', 'Income',
            'Deductible', 'Discount Applied', 'Personal Use', 'Confidence'
        ]
        df = pd.DataFrame(data, columns=columns)
        log_dataframe_info(logger, df, f"report {self.id}")
        return df


class TaxSummaryAggregator:
    """Builds a TaxSummary from reported transactions."""

    def __init__(self, jurisdiction: TaxJurisdiction):
        self.gains_calculator = CapitalGainsCalculator(jurisdiction)

    def aggregate(self, items: Iterable[TaxableTransaction]) -> TaxSummary:
        items = list(items)

        capital_results: List[CapitalGainsResult] = []
        business_income = Decimal(0)
        income_by_category: Dict[str, Decimal] = defaultdict(Decimal)
        total_deductions = Decimal(0)
        by_exchange: Dict[str, PeriodBreakdown] = defaultdict(PeriodBreakdown)
        by_month: Dict[str, PeriodBreakdown] = defaultdict(PeriodBreakdown)

        for item in items:
            is_business = item.treatment.classification == BUSINESS_CLASSIFICATION
            if is_business:
                business_income += item.net_gain_loss
            else:
                capital_results.extend(item.capital_gains)

            if item.treatment.event_type == TaxEventType.INCOME:
                income_by_category[item.treatment.classification] += item.income_amount
            total_deductions += item.deductible_amount

            income = item.income_amount + (item.net_gain_loss if is_business else Decimal(0))
            taxable = Decimal(0) if is_business else item.taxable_gain
            net = Decimal(0) if is_business else item.net_gain_loss
            month = item.transaction.timestamp.strftime('%Y-%m')
            for breakdown in (by_exchange[item.transaction.source.name], by_month[month]):
                breakdown.net_gain_loss += net
                breakdown.taxable_gain += taxable
                breakdown.income += income
                breakdown.deductions += item.deductible_amount
                breakdown.transaction_count += 1

        totals = self.gains_calculator.calculate_aggregate(capital_results)
        total_income = sum(income_by_category.values(), Decimal(0))

        return TaxSummary(
            total_proceeds=sum((r.disposal_value for r in capital_results), Decimal(0)),
            total_cost_basis=sum((r.cost_basis_value for r in capital_results), Decimal(0)),
            total_capital_gains=totals.total_capital_gains,
            total_capital_losses=totals.total_capital_losses,
            net_capital_gain=totals.net_capital_gain,
            discounted_gains=sum(
                (r.net_gain_loss for r in capital_results if r.cgt_discount_applied), Decimal(0)
            ),
            total_discount=totals.total_discount,
            total_taxable_gain=totals.total_taxable_gain,
            exempt_gains=totals.exempt_gains,
            total_income=total_income,
            business_income=business_income,
            total_deductions=total_deductions,
            disposal_count=totals.disposal_count,
            discounted_disposals=totals.discounted_disposals,
            personal_use_disposals=totals.personal_use_disposals,
            income_by_category=dict(sorted(income_by_category.items())),
            by_asset=self.gains_calculator.calculate_by_asset(capital_results),
            by_exchange=dict(sorted(by_exchange.items())),
            by_month=dict(sorted(by_month.items())),
        )


class _Replay:
    """Mutable state of one generate_report run."""

    def __init__(
        self,
        calculator: CostBasisCalculator,
        gains_calculator: CapitalGainsCalculator,
        recovery: Optional[ErrorRecovery],
        fail_fast: bool,
        log: logging.LoggerAdapter
    ):
        self.calculator = calculator
        self.gains_calculator = gains_calculator
        self.recovery = recovery
        self.fail_fast = fail_fast
        self.log = log
        self.history: List[BaseTransaction] = []
        self.issues: List[ProcessingIssue] = []

    def issue(self, transaction: BaseTransaction, error: Exception, report: bool, recoverable: bool = True):
        if self.fail_fast:
            raise error
        self.log.warning(f"{transaction.id}: {type(error).__name__}: {error}")
        if report:
            self.issues.append(ProcessingIssue(
                transaction_id=transaction.id,
                error_type=type(error).__name__,
                message=str(error),
                recoverable=recoverable
            ))

    def open_lots(self, item: TaxableTransaction, unit_price: Optional[Decimal] = None):
        for leg in item.transaction.acquired_legs():
            if leg.amount > 0:
                self.calculator.add_acquisition(item.transaction, leg, unit_price=unit_price)

    def value(self, item: TaxableTransaction, value: Optional[Decimal], leg: Optional[AssetAmount]) -> Decimal:
        """A missing fiat value, recovered when enabled, otherwise 0 with a warning."""
        if value is not None:
            return value
        tx = item.transaction
        if self.recovery is not None:
            result = self.recovery.recover_missing_pricing(tx, leg)
            item.warnings.extend(result.warnings)
            if result.success:
                item.confidence = min(item.confidence, result.confidence)
                return result.data
        item.warnings.append(f"{tx.id}: no fiat value, using 0")
        item.confidence = min(item.confidence, 0.0)
        return Decimal(0)

    def resolve_leg(self, item: TaxableTransaction, leg: AssetAmount) -> CostBasis:
        tx = item.transaction
        try:
            return self.calculator.calculate_cost_basis(tx, leg=leg)
        except InsufficientLotsError:
            if self.recovery is None:
                raise

        # Nothing is consumed until the shortfall has been recovered
        preview = self.calculator.calculate_cost_basis(tx, leg=leg, allow_partial=True, commit=False)
        shortfall = leg.amount - preview.consumed_amount()
        recovered = self.recovery.recover_missing_cost_basis(
            tx, self.history, leg=leg, amount=shortfall, method=self.calculator.method
        )
        item.warnings.extend(recovered.warnings)
        estimate = recovered.unwrap()

        partial = self.calculator.calculate_cost_basis(tx, leg=leg, allow_partial=True)
        return _merge_recovered(partial, estimate)

    def dispose(self, item: TaxableTransaction, report: bool):
        tx = item.transaction
        treatment = item.treatment
        is_business = treatment.classification == BUSINESS_CLASSIFICATION

        if isinstance(tx, FuturesTrade):
            if tx.realized_pnl is None:
                item.warnings.append(f"{tx.id}: closed position without realized P&L, using 0")
            item.capital_gains.append(
                self.gains_calculator.calculate_from_pnl(tx, tx.realized_pnl or Decimal(0))
            )
            return

        legs = tx.disposed_legs()
        for leg in legs:
            try:
                basis = self.resolve_leg(item, leg)
            except (InsufficientLotsError, RecoveryExhaustedError, ValueError) as e:
                self.issue(tx, e, report, recoverable=isinstance(e, InsufficientLotsError))
                continue

            # Fees are charged once per transaction, against the first leg
            if item.cost_bases and basis.acquisition_fees:
                basis = replace(
                    basis,
                    total_cost=basis.total_cost - basis.acquisition_fees,
                    acquisition_fees=Decimal(0)
                )

            item.cost_bases.append(basis)
            item.confidence = min(item.confidence, basis.confidence)
            proceeds = tx.disposal_value(leg)
            if proceeds is None and len(legs) == 1:
                proceeds = tx.acquisition_value()
            proceeds = self.value(item, proceeds, leg)

            item.capital_gains.append(self.gains_calculator.calculate(
                tx,
                basis,
                is_personal_use_asset=treatment.is_personal_use,
                proceeds=proceeds,
                discount_eligible=not is_business
            ))

        item.treatment = apply_gains_to_treatment(treatment, item.capital_gains)


def _merge_recovered(partial: CostBasis, estimate: CostBasis) -> CostBasis:
    """Combine the lots a disposal could consume with an estimate for the rest."""
    if partial.lots:
        acquisition_date = min(partial.acquisition_date, estimate.acquisition_date)
        holding_period = min(partial.holding_period, estimate.holding_period)
    else:
        acquisition_date = estimate.acquisition_date
        holding_period = estimate.holding_period
    acquisition_price = partial.acquisition_price + estimate.acquisition_price
    return CostBasis(
        method=partial.method,
        acquisition_date=acquisition_date,
        acquisition_price=acquisition_price,
        acquisition_fees=partial.acquisition_fees,
        total_cost=acquisition_price + partial.acquisition_fees,
        holding_period=holding_period,
        lots=partial.lots,
        asset=partial.asset,
        amount=partial.amount,
        confidence=estimate.confidence,
        recovery_method=estimate.recovery_method
    )


class TaxReportGenerator:
    """
    Generates tax reports for one jurisdiction and tax year.

    Every call replays the full history on a fresh lot ledger, so one
    generator can be reused for several years or jurisdictions.

    Args:
        cost_basis_method: Lot matching method (default: the jurisdiction's)
        selection_policy: Policy for specific identification
        investor_profile: Personal investor or business trader
        personal_use_assets: Assets held for personal consumption
        enable_recovery: Estimate missing cost basis / prices instead of
            recording an issue
        recovery_options: Opt-in switches for low-confidence recovery
        fail_fast: Re-raise the first processing error
        deduplicate: Drop duplicate transactions before processing
        price_provider: Callable (asset, timestamp) -> unit price, used by recovery
    """

    def __init__(
        self,
        cost_basis_method: Optional[Union[str, CostBasisMethod]] = None,
        selection_policy: Optional[LotSelectionPolicy] = None,
        investor_profile: Optional[InvestorProfile] = None,
        personal_use_assets: Iterable[str] = (),
        enable_recovery: bool = False,
        recovery_options: Optional[RecoveryOptions] = None,
        fail_fast: bool = False,
        deduplicate: bool = False,
        price_provider: Optional[PriceProvider] = None
    ):
        self.cost_basis_method = cost_basis_method
        self.selection_policy = selection_policy
        self.investor_profile = investor_profile
        self.personal_use_assets = frozenset(asset.strip().upper() for asset in personal_use_assets)
        self.enable_recovery = enable_recovery
        self.fail_fast = fail_fast
        self.deduplicate = deduplicate
        self.recovery = ErrorRecovery(recovery_options, price_provider)

    def generate_report(
        self,
        transactions: Iterable[BaseTransaction],
        jurisdiction: Union[str, TaxJurisdiction],
        tax_year: str
    ) -> TaxReport:
        """
        Generate the report for one tax year.

        Args:
            transactions: Full history (earlier years build the lot ledger)
            jurisdiction: Jurisdiction code or instance
            tax_year: "YYYY-YYYY" (split year) or "YYYY" (calendar year)

        Returns:
            Sealed TaxReport

        Raises:
            InvalidJurisdictionError: Unknown jurisdiction
            ValueError: Malformed tax year
            MalformedTransactionError: Invalid transaction
            InvalidCostBasisMethodError: Method not permitted in the jurisdiction
        """
        jurisdiction = resolve_jurisdiction(jurisdiction)
        period = jurisdiction.get_tax_period(tax_year)
        transactions = [validate_transaction(tx) for tx in transactions]
        input_count = len(transactions)

        dedup_warnings: List[str] = []
        if self.deduplicate:
            result = self.recovery.deduplicate(transactions)
            transactions = result.data
            dedup_warnings = result.warnings

        ordered = sorted(transactions, key=lambda t: t.timestamp)
        relevant = [tx for tx in ordered if tx.timestamp <= period.end]

        calculator = get_cost_basis_calculator(
            self.cost_basis_method or jurisdiction.default_method,
            jurisdiction,
            self.selection_policy
        )
        context = ClassificationContext(
            jurisdiction=jurisdiction,
            investor_profile=self.investor_profile,
            previous_transactions=tuple(ordered),
            personal_use_assets=self.personal_use_assets
        )
        run_log = with_tax_context(logger, jurisdiction.code, period.label)
        replay = _Replay(
            calculator,
            CapitalGainsCalculator(jurisdiction),
            self.recovery if self.enable_recovery else None,
            self.fail_fast,
            run_log
        )

        reported: List[TaxableTransaction] = []
        with get_perf_logger(run_log, "generate_report", items=len(relevant)):
            treatments = classify_batch(relevant, context)
            for tx, treatment in zip(relevant, treatments):
                in_period = period.contains(tx.timestamp)
                item = TaxableTransaction(transaction=tx, treatment=treatment)
                self._replay_one(replay, item, in_period)
                replay.history.append(tx)
                if in_period:
                    _record_tax_events(item)
                    reported.append(item)

        summary = TaxSummaryAggregator(jurisdiction).aggregate(reported)
        report = TaxReport(
            id=f"{jurisdiction.code}-{period.label}-{uuid.uuid4().hex[:8]}",
            jurisdiction=jurisdiction,
            period=period,
            generated_at=datetime.now(timezone.utc),
            transactions=reported,
            summary=summary,
            issues=replay.issues,
            metadata={
                "engine_version": __version__,
                "cost_basis_method": calculator.method.value,
                "currency": jurisdiction.currency,
                "input_transactions": input_count,
                "duplicates_removed": input_count - len(transactions),
                "duplicate_warnings": dedup_warnings,
                "reported_transactions": len(reported),
                "exchanges": sorted({item.transaction.source.name for item in reported}),
                "low_confidence_transactions": sum(
                    1 for item in reported if item.confidence < LOW_CONFIDENCE_THRESHOLD
                ),
                "issue_count": len(replay.issues),
                "ledger_hash": calculate_sha256(calculator.export_state()),
            },
            ledger=calculator
        )
        report.calculation_hash = calculate_sha256(report.hash_payload())

        run_log.info(
            f"Report {report.id}: {len(reported)} transactions, "
            f"net capital gain {summary.net_capital_gain}, taxable {summary.total_taxable_gain}, "
            f"income {summary.total_income}, {len(replay.issues)} issues"
        )
        return report

    def _replay_one(self, replay: _Replay, item: TaxableTransaction, in_period: bool):
        tx = item.transaction
        event_type = item.treatment.event_type
        try:
            if event_type == TaxEventType.ACQUISITION:
                replay.open_lots(item)

            elif event_type == TaxEventType.DISPOSAL:
                replay.dispose(item, report=in_period)
                replay.open_lots(item)

            elif event_type == TaxEventType.INCOME:
                leg = tx.acquired_leg()
                item.income_amount = replay.value(item, tx.income_value(), leg)
                if leg is not None and leg.amount > 0:
                    # Received assets are acquired at their income value
                    replay.open_lots(item, unit_price=item.income_amount / leg.amount)

            elif event_type == TaxEventType.DEDUCTIBLE:
                item.deductible_amount = tx.fee_amount()

        except TaxEngineError as e:
            replay.issue(tx, e, report=in_period, recoverable=False)


def _record_tax_events(item: TaxableTransaction):
    tx = item.transaction
    event_ids = [f"{item.treatment.event_type.value}:{tx.id}"]
    event_ids.extend(f"CGT:{tx.id}:{result.asset}" for result in item.capital_gains)
    for event_id in event_ids:
        if event_id not in tx.tax_events:
            tx.tax_events.append(event_id)
