"""
Capital Gains Calculator

Turns a disposal and its resolved cost basis into a realized gain or loss
under a jurisdiction's rules:
- Gross gain = proceeds - total cost (cost includes the disposal fee)
- Discount on gains held at least the threshold period
- Personal use exemption below the jurisdiction threshold
- Losses are never discounted

Each calculation is independent, so batches may be evaluated in parallel.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from cryptotax.parsers.transaction import BaseTransaction
from cryptotax.tax.jurisdictions.base import RuleKind, TaxJurisdiction
from cryptotax.tax.tax_events import (
    CapitalGainsAggregate,
    CapitalGainsResult,
    CostBasis,
    TransactionTaxTreatment,
)
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)


@dataclass
class CapitalGainsInput:
    """One item of a batch calculation."""

    disposal: BaseTransaction
    cost_basis: CostBasis
    is_personal_use_asset: bool = False
    proceeds: Optional[Decimal] = None
    discount_eligible: bool = True


class CapitalGainsCalculator:
    """
    Capital gains under one jurisdiction.

    Example:
        calculator = CapitalGainsCalculator(get_jurisdiction("AU"))
        result = calculator.calculate(disposal, cost_basis)
    """

    def __init__(self, jurisdiction: TaxJurisdiction):
        self.jurisdiction = jurisdiction

    def is_discount_eligible(self, holding_period: int, gain: Decimal) -> bool:
        return (
            self.jurisdiction.discount_rate > 0
            and holding_period >= self.jurisdiction.holding_period_threshold_days
            and gain > 0
        )

    def is_below_personal_use_threshold(self, value: Decimal) -> bool:
        threshold = self.jurisdiction.personal_use_threshold
        return threshold is not None and value < threshold

    def calculate(
        self,
        disposal: BaseTransaction,
        cost_basis: CostBasis,
        is_personal_use_asset: bool = False,
        proceeds: Optional[Decimal] = None,
        discount_eligible: bool = True
    ) -> CapitalGainsResult:
        """
        Calculate the realized gain or loss of one disposal.

        Args:
            disposal: Disposing transaction
            cost_basis: Resolved cost basis of the disposal
            is_personal_use_asset: Asset was acquired for personal use
            proceeds: Gross proceeds; defaults to the disposal's own value
            discount_eligible: False for gains taxed as business income

        Returns:
            CapitalGainsResult with taxable gain after discounts/exemptions
        """
        if proceeds is None:
            proceeds = disposal.disposal_value()
        if proceeds is None:
            logger.warning(f"Disposal {disposal.id} has no proceeds value, using 0")
            proceeds = Decimal(0)

        gain = proceeds - cost_basis.total_cost
        asset = cost_basis.asset or disposal.primary_asset() or "UNKNOWN"

        applied_rules = []
        event_rule = self.jurisdiction.rule_id(RuleKind.CGT_EVENT)
        if event_rule:
            applied_rules.append(event_rule)

        if is_personal_use_asset and self.is_below_personal_use_threshold(proceeds):
            personal_rule = self.jurisdiction.rule_id(RuleKind.PERSONAL_USE)
            if personal_rule:
                applied_rules.append(personal_rule)
            logger.debug(f"Personal use exemption: {disposal.id} proceeds {proceeds}")
            return CapitalGainsResult(
                transaction_id=disposal.id,
                asset=asset,
                disposal_value=proceeds,
                cost_basis_value=cost_basis.total_cost,
                net_gain_loss=gain,
                capital_gain=Decimal(0),
                capital_loss=Decimal(0),
                taxable_gain=Decimal(0),
                holding_period=cost_basis.holding_period,
                is_personal_use=True,
                exemption_applied=personal_rule or "PERSONAL_USE",
                applied_rules=applied_rules
            )

        capital_gain = gain if gain > 0 else Decimal(0)
        capital_loss = -gain if gain < 0 else Decimal(0)
        taxable_gain = capital_gain
        discount_amount = Decimal(0)
        discounted = False

        if discount_eligible and self.is_discount_eligible(cost_basis.holding_period, gain):
            taxable_gain = gain * (Decimal(1) - self.jurisdiction.discount_rate)
            discount_amount = gain - taxable_gain
            discounted = True
            discount_rule = self.jurisdiction.rule_id(RuleKind.CGT_DISCOUNT)
            if discount_rule:
                applied_rules.append(discount_rule)

        return CapitalGainsResult(
            transaction_id=disposal.id,
            asset=asset,
            disposal_value=proceeds,
            cost_basis_value=cost_basis.total_cost,
            net_gain_loss=gain,
            capital_gain=capital_gain,
            capital_loss=capital_loss,
            taxable_gain=taxable_gain,
            holding_period=cost_basis.holding_period,
            cgt_discount_applied=discounted,
            discount_amount=discount_amount,
            applied_rules=applied_rules
        )

    def calculate_from_pnl(self, transaction: BaseTransaction, realized_pnl: Decimal) -> CapitalGainsResult:
        """Gain or loss of a closed derivative position (no lots, no discount)."""
        fees = transaction.fee_amount()
        gain = realized_pnl - fees
        event_rule = self.jurisdiction.rule_id(RuleKind.CGT_EVENT)
        return CapitalGainsResult(
            transaction_id=transaction.id,
            asset=transaction.primary_asset() or "UNKNOWN",
            disposal_value=realized_pnl,
            cost_basis_value=fees,
            net_gain_loss=gain,
            capital_gain=gain if gain > 0 else Decimal(0),
            capital_loss=-gain if gain < 0 else Decimal(0),
            taxable_gain=gain if gain > 0 else Decimal(0),
            holding_period=0,
            applied_rules=[event_rule] if event_rule else []
        )

    def calculate_batch(
        self,
        items: Iterable[CapitalGainsInput],
        max_workers: Optional[int] = None
    ) -> List[CapitalGainsResult]:
        """
        Calculate many disposals. Items share no state; with max_workers
        set they are evaluated in a thread pool. Result order matches input.
        """
        items = list(items)

        def run(item: CapitalGainsInput) -> CapitalGainsResult:
            return self.calculate(
                item.disposal,
                item.cost_basis,
                is_personal_use_asset=item.is_personal_use_asset,
                proceeds=item.proceeds,
                discount_eligible=item.discount_eligible
            )

        if max_workers and len(items) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                return list(executor.map(run, items))
        return [run(item) for item in items]

    @staticmethod
    def calculate_aggregate(results: Iterable[CapitalGainsResult]) -> CapitalGainsAggregate:
        results = list(results)
        total_gains = sum((r.capital_gain for r in results), Decimal(0))
        total_losses = sum((r.capital_loss for r in results), Decimal(0))
        return CapitalGainsAggregate(
            total_capital_gains=total_gains,
            total_capital_losses=total_losses,
            net_capital_gain=total_gains - total_losses,
            total_taxable_gain=sum((r.taxable_gain for r in results), Decimal(0)),
            total_discount=sum((r.discount_amount for r in results), Decimal(0)),
            exempt_gains=sum(
                (r.net_gain_loss for r in results if r.is_personal_use and r.net_gain_loss > 0),
                Decimal(0)
            ),
            discounted_disposals=sum(1 for r in results if r.cgt_discount_applied),
            personal_use_disposals=sum(1 for r in results if r.is_personal_use),
            disposal_count=len(results)
        )

    def calculate_by_asset(self, results: Iterable[CapitalGainsResult]) -> Dict[str, CapitalGainsAggregate]:
        grouped: Dict[str, List[CapitalGainsResult]] = defaultdict(list)
        for result in results:
            grouped[result.asset].append(result)
        return {asset: self.calculate_aggregate(group) for asset, group in sorted(grouped.items())}


def apply_gains_to_treatment(
    treatment: TransactionTaxTreatment,
    results: List[CapitalGainsResult]
) -> TransactionTaxTreatment:
    """Copy of the treatment reflecting what the gains calculation applied."""
    if not results:
        return treatment

    discounted = any(r.cgt_discount_applied for r in results)
    personal_use = all(r.is_personal_use for r in results)
    rules = list(treatment.applicable_rules)
    for result in results:
        for rule_id in result.applied_rules:
            if rule_id not in rules:
                rules.append(rule_id)

    reason = treatment.treatment_reason
    if discounted and not treatment.cgt_discount_applied:
        reason += "; CGT discount applied (held past threshold)"
    if personal_use and not treatment.is_personal_use:
        reason += "; personal use exemption applied"

    return replace(
        treatment,
        cgt_discount_applied=discounted,
        is_personal_use=treatment.is_personal_use or personal_use,
        is_cgt_eligible=treatment.is_cgt_eligible and not personal_use,
        treatment_reason=reason,
        applicable_rules=tuple(rules)
    )
