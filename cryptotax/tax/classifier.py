"""
Transaction Classifier

Maps a transaction (plus optional context) to its tax treatment:
DISPOSAL, ACQUISITION, INCOME, DEDUCTIBLE or NON_TAXABLE.

Dispatch goes through one handler per TransactionType. Adding a
transaction type without a handler fails at import time.

Classification never mutates the transaction or the context, so the same
input always yields the same treatment and batches can be classified in
parallel.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from cryptotax.parsers.transaction import (
    BaseTransaction,
    FuturesOperation,
    FuturesTrade,
    InterestType,
    Loan,
    TradeSide,
    TransactionType,
)
from cryptotax.tax.jurisdictions.base import RuleKind, TaxJurisdiction
from cryptotax.tax.tax_events import TaxEventType, TransactionTaxTreatment
from cryptotax.utils.logging_config import get_perf_logger, setup_logger

logger = setup_logger(__name__)


class InvestorType(str, Enum):
    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"


@dataclass(frozen=True)
class InvestorProfile:
    investor_type: InvestorType = InvestorType.PERSONAL
    trades_per_year: Optional[int] = None


@dataclass(frozen=True, eq=False)
class ClassificationContext:
    """
    Read-only input shared by all classifications of a batch.

    Attributes:
        jurisdiction: Rule table to classify under
        investor_profile: Personal vs business trader
        previous_transactions: Earlier transactions, for personal-use heuristics
        is_personal_use: Explicit personal-use designation (overrides the heuristic)
        personal_use_assets: Assets the taxpayer holds for personal consumption
    """

    jurisdiction: TaxJurisdiction
    investor_profile: Optional[InvestorProfile] = None
    previous_transactions: Tuple[BaseTransaction, ...] = ()
    is_personal_use: Optional[bool] = None
    personal_use_assets: FrozenSet[str] = frozenset()


INCOME_CLASSIFICATIONS = {
    TransactionType.STAKING_REWARD: "Staking Reward",
    TransactionType.INTEREST: "Interest Income",
    TransactionType.AIRDROP: "Airdrop",
    TransactionType.MINING: "Mining Reward",
    TransactionType.LAUNCHPOOL: "Launchpool Reward",
    TransactionType.DISTRIBUTION: "Token Distribution",
}

BUSINESS_CLASSIFICATION = "Business Trading Income"
PERSONAL_USE_CLASSIFICATION = "Personal Use Asset Disposal"


def _rules(jurisdiction: TaxJurisdiction, *kinds: RuleKind) -> Tuple[str, ...]:
    ids = (jurisdiction.rule_id(kind) for kind in kinds)
    return tuple(rule_id for rule_id in ids if rule_id)


def _cite(rule_ids: Iterable[str]) -> str:
    rule_ids = list(rule_ids)
    return f" [{', '.join(rule_ids)}]" if rule_ids else ""


def is_business_trader(context: ClassificationContext) -> bool:
    profile = context.investor_profile
    if profile is None:
        return False
    if profile.investor_type == InvestorType.BUSINESS:
        return True
    threshold = context.jurisdiction.business_trading_threshold
    return (
        threshold is not None
        and profile.trades_per_year is not None
        and profile.trades_per_year >= threshold
    )


def is_personal_use_disposal(transaction: BaseTransaction, context: ClassificationContext) -> bool:
    """
    Personal use requires a value below the jurisdiction threshold and
    either an explicit designation or the heuristic: the asset is held for
    personal use, never earned income and was rarely disposed of before.
    """
    threshold = context.jurisdiction.personal_use_threshold
    value = transaction.disposal_value()
    if threshold is None or value is None or value >= threshold:
        return False

    if context.is_personal_use is not None:
        return context.is_personal_use

    asset = transaction.primary_asset()
    if asset is None or asset not in context.personal_use_assets:
        return False

    prior_disposals = 0
    for previous in context.previous_transactions:
        if previous.id == transaction.id or previous.timestamp > transaction.timestamp:
            continue
        # Interest paid has no acquired leg and does not count as income
        earned_income = previous.transaction_type in INCOME_CLASSIFICATIONS and any(
            leg.asset == asset for leg in previous.acquired_legs()
        )
        if earned_income:
            return False
        if any(leg.asset == asset for leg in previous.disposed_legs()):
            prior_disposals += 1

    return prior_disposals < context.jurisdiction.personal_use_max_disposals


def _disposal_treatment(
    transaction: BaseTransaction,
    context: ClassificationContext,
    classification: str,
    reason: str,
    extra_rules: Tuple[str, ...] = ()
) -> TransactionTaxTreatment:
    jurisdiction = context.jurisdiction

    if is_business_trader(context):
        rules = extra_rules + _rules(jurisdiction, RuleKind.BUSINESS_TRADING)
        return TransactionTaxTreatment(
            event_type=TaxEventType.DISPOSAL,
            classification=BUSINESS_CLASSIFICATION,
            is_personal_use=False,
            is_cgt_eligible=False,
            treatment_reason=(
                f"{reason}; trading activity meets the business threshold, "
                f"profit is ordinary income{_cite(rules)}"
            ),
            applicable_rules=rules
        )

    if is_personal_use_disposal(transaction, context):
        rules = extra_rules + _rules(jurisdiction, RuleKind.CGT_EVENT, RuleKind.PERSONAL_USE)
        return TransactionTaxTreatment(
            event_type=TaxEventType.DISPOSAL,
            classification=PERSONAL_USE_CLASSIFICATION,
            is_personal_use=True,
            is_cgt_eligible=False,
            treatment_reason=(
                f"{reason}; personal use asset disposed of below "
                f"{jurisdiction.personal_use_threshold} {jurisdiction.currency}, gain disregarded{_cite(rules)}"
            ),
            applicable_rules=rules
        )

    rules = extra_rules + _rules(jurisdiction, RuleKind.CGT_EVENT)
    return TransactionTaxTreatment(
        event_type=TaxEventType.DISPOSAL,
        classification=classification,
        is_personal_use=False,
        is_cgt_eligible=True,
        treatment_reason=f"{reason}{_cite(rules)}",
        applicable_rules=rules
    )


def _acquisition_treatment(context, classification, reason, extra_rules=()) -> TransactionTaxTreatment:
    rules = extra_rules + _rules(context.jurisdiction, RuleKind.CGT_EVENT)
    return TransactionTaxTreatment(
        event_type=TaxEventType.ACQUISITION,
        classification=classification,
        is_personal_use=False,
        is_cgt_eligible=False,
        treatment_reason=f"{reason}{_cite(rules)}",
        applicable_rules=rules
    )


def _non_taxable(context, classification, reason, extra_rules=()) -> TransactionTaxTreatment:
    rules = extra_rules + _rules(context.jurisdiction, RuleKind.NON_TAXABLE)
    return TransactionTaxTreatment(
        event_type=TaxEventType.NON_TAXABLE,
        classification=classification,
        is_personal_use=False,
        is_cgt_eligible=False,
        treatment_reason=f"{reason}{_cite(rules)}",
        applicable_rules=rules
    )


def _income(context, classification, reason, extra_rules=()) -> TransactionTaxTreatment:
    rules = extra_rules + _rules(context.jurisdiction, RuleKind.ORDINARY_INCOME)
    return TransactionTaxTreatment(
        event_type=TaxEventType.INCOME,
        classification=classification,
        is_personal_use=False,
        is_cgt_eligible=False,
        treatment_reason=f"{reason}{_cite(rules)}",
        applicable_rules=rules
    )


def _deductible(context, classification, reason) -> TransactionTaxTreatment:
    rules = _rules(context.jurisdiction, RuleKind.DEDUCTION)
    return TransactionTaxTreatment(
        event_type=TaxEventType.DEDUCTIBLE,
        classification=classification,
        is_personal_use=False,
        is_cgt_eligible=False,
        treatment_reason=f"{reason}{_cite(rules)}",
        applicable_rules=rules
    )


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------

def _classify_trade(transaction, context):
    if transaction.side == TradeSide.SELL:
        return _disposal_treatment(
            transaction, context, "Sale of Cryptocurrency",
            f"Sale of {transaction.base_asset.asset} is a disposal"
        )
    return _acquisition_treatment(
        context, "Purchase of Cryptocurrency",
        f"Purchase of {transaction.base_asset.asset} establishes a cost base"
    )


def _classify_futures(transaction: FuturesTrade, context):
    if transaction.operation in (FuturesOperation.CLOSE, FuturesOperation.LIQUIDATION):
        return _disposal_treatment(
            transaction, context, "Derivatives Gain/Loss",
            f"{transaction.operation.value.lower().capitalize()} of {transaction.contract_symbol} "
            f"position realizes profit or loss"
        )
    return _non_taxable(
        context, "Futures Position Opened",
        f"Opening a {transaction.side.value.lower()} {transaction.contract_symbol} position realizes nothing"
    )


def _classify_transfer(transaction, context):
    return _non_taxable(
        context, "Wallet Transfer",
        f"Transfer {transaction.direction.value} of {transaction.asset.asset} between own wallets is not a disposal"
    )


def _classify_fee(transaction, context):
    return _deductible(
        context, "Transaction Fee",
        f"{transaction.fee_type} fee of {transaction.fee.amount} {transaction.fee.asset} is deductible"
    )


def _classify_reward(transaction, context):
    classification = INCOME_CLASSIFICATIONS[transaction.transaction_type]
    return _income(
        context, classification,
        f"{classification} of {transaction.primary_asset()} is ordinary income at market value when received"
    )


def _classify_interest(transaction, context):
    if transaction.interest_type == InterestType.PAID:
        return _deductible(
            context, "Interest Expense",
            f"Interest paid in {transaction.interest.asset} is a deductible expense"
        )
    return _classify_reward(transaction, context)


def defi_table_key(transaction: BaseTransaction) -> str:
    if isinstance(transaction, Loan):
        return f"{transaction.type}:{transaction.operation.value}"
    return transaction.type


def _classify_defi(transaction, context):
    jurisdiction = context.jurisdiction
    key = defi_table_key(transaction)
    defi_rules = _rules(jurisdiction, RuleKind.DEFI_CLASSIFICATION)
    entry = jurisdiction.defi_classification.get(key)

    if entry is None:
        logger.warning(f"No DeFi classification for {key} in {jurisdiction.code}: {transaction.id}")
        return _non_taxable(
            context, "Unclassified DeFi Transaction",
            f"No {jurisdiction.code} DeFi rule for {key}; requires manual review",
            defi_rules
        )

    if entry.event_type == TaxEventType.DISPOSAL:
        return _disposal_treatment(transaction, context, entry.classification, entry.reason, defi_rules)
    if entry.event_type == TaxEventType.ACQUISITION:
        return _acquisition_treatment(context, entry.classification, entry.reason, defi_rules)
    if entry.event_type == TaxEventType.INCOME:
        return _income(context, entry.classification, entry.reason, defi_rules)
    return _non_taxable(context, entry.classification, entry.reason, defi_rules)


def _classify_unknown(transaction, context):
    logger.warning(f"Unrecognized transaction type '{transaction.raw_type}' for {transaction.id}")
    return _non_taxable(
        context, "Unrecognized Transaction",
        f"Unrecognized transaction type '{transaction.raw_type}'; excluded from tax totals pending manual review"
    )


_HANDLERS: Dict[TransactionType, Callable[[BaseTransaction, ClassificationContext], TransactionTaxTreatment]] = {
    TransactionType.SPOT_TRADE: _classify_trade,
    TransactionType.MARGIN_TRADE: _classify_trade,
    TransactionType.FUTURES_TRADE: _classify_futures,
    TransactionType.TRANSFER: _classify_transfer,
    TransactionType.FEE: _classify_fee,
    TransactionType.STAKING_DEPOSIT: _classify_defi,
    TransactionType.STAKING_WITHDRAWAL: _classify_defi,
    TransactionType.STAKING_REWARD: _classify_reward,
    TransactionType.INTEREST: _classify_interest,
    TransactionType.AIRDROP: _classify_reward,
    TransactionType.MINING: _classify_reward,
    TransactionType.LAUNCHPOOL: _classify_reward,
    TransactionType.DISTRIBUTION: _classify_reward,
    TransactionType.SWAP: _classify_defi,
    TransactionType.LIQUIDITY_ADD: _classify_defi,
    TransactionType.LIQUIDITY_REMOVE: _classify_defi,
    TransactionType.LOAN: _classify_defi,
    TransactionType.UNKNOWN: _classify_unknown,
}

_unhandled = set(TransactionType) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Transaction types without a classification handler: {sorted(t.value for t in _unhandled)}")


def handled_transaction_types() -> List[TransactionType]:
    return sorted(_HANDLERS, key=lambda t: t.value)


def classify(transaction: BaseTransaction, context: ClassificationContext) -> TransactionTaxTreatment:
    """
    Classify one transaction.

    Returns:
        TransactionTaxTreatment with a non-empty treatment_reason and the
        ids of the rules consulted
    """
    handler = _HANDLERS[transaction.transaction_type]
    treatment = handler(transaction, context)
    logger.debug(f"{transaction.id} ({transaction.type}) -> {treatment.event_type.value}: {treatment.classification}")
    return treatment


def classify_batch(
    transactions: Iterable[BaseTransaction],
    context: ClassificationContext,
    max_workers: Optional[int] = None
) -> List[TransactionTaxTreatment]:
    """
    Classify transactions independently. With max_workers set they are
    classified in a thread pool; result order always matches input order.
    """
    transactions = list(transactions)

    with get_perf_logger(logger, "classify_batch", threshold_ms=2000, items=len(transactions)):
        if max_workers and len(transactions) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                return list(executor.map(lambda tx: classify(tx, context), transactions))
        return [classify(tx, context) for tx in transactions]
