"""
Error Recovery - Confidence-Scored Fallbacks

Best-effort substitutes for data the engine needs but the input lacks.
Every strategy returns a RecoveryResult instead of raising, because
missing history and missing prices are routine in exchange exports:

    Missing cost basis:  matched acquisitions (0.7) -> market price (0.5)
                         -> zero cost basis (0.3, opt-in) -> no recovery
    Missing pricing:     same-transaction ratio (0.9) -> market price (0.6)
                         -> zero (0.2, opt-in) -> no recovery
    Duplicates:          keep original (1.0) / merge sources (0.8)
                         / keep both (0.5, with warning)

Market prices come only from a caller-supplied price provider callable;
the engine performs no network access.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from cryptotax.exceptions import RecoveryExhaustedError
from cryptotax.parsers.transaction import AssetAmount, BaseTransaction, to_decimal
from cryptotax.tax.duplicates import DuplicateDetector, DuplicateGroupType, same_direction
from cryptotax.tax.tax_events import CostBasis, CostBasisMethod
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")

# (asset, timestamp) -> unit price in reporting currency, or None if unknown
PriceProvider = Callable[[str, datetime], Optional[Decimal]]


class RecoveryMethod(str, Enum):
    # Cost basis
    MATCHED_ACQUISITIONS = "MATCHED_ACQUISITIONS"
    MARKET_PRICE_ESTIMATE = "MARKET_PRICE_ESTIMATE"
    ZERO_COST_BASIS = "ZERO_COST_BASIS"
    # Pricing
    INFERRED_FROM_TRANSACTION = "INFERRED_FROM_TRANSACTION"
    MARKET_PRICE_API = "MARKET_PRICE_API"
    FALLBACK_ZERO = "FALLBACK_ZERO"
    # Duplicates
    KEEP_ORIGINAL = "KEEP_ORIGINAL"
    MERGE_SOURCES = "MERGE_SOURCES"
    KEEP_BOTH = "KEEP_BOTH"
    # Asset info
    INFERRED_ASSET = "INFERRED_ASSET"
    UNKNOWN_ASSET = "UNKNOWN_ASSET"

    NO_RECOVERY = "NO_RECOVERY"


CONFIDENCE = {
    RecoveryMethod.MATCHED_ACQUISITIONS: 0.7,
    RecoveryMethod.MARKET_PRICE_ESTIMATE: 0.5,
    RecoveryMethod.ZERO_COST_BASIS: 0.3,
    RecoveryMethod.INFERRED_FROM_TRANSACTION: 0.9,
    RecoveryMethod.MARKET_PRICE_API: 0.6,
    RecoveryMethod.FALLBACK_ZERO: 0.2,
    RecoveryMethod.KEEP_ORIGINAL: 1.0,
    RecoveryMethod.MERGE_SOURCES: 0.8,
    RecoveryMethod.KEEP_BOTH: 0.5,
    RecoveryMethod.INFERRED_ASSET: 0.6,
    RecoveryMethod.UNKNOWN_ASSET: 0.1,
    RecoveryMethod.NO_RECOVERY: 0.0,
}

# Keys exporters commonly use for the asset of an unmapped record
_ASSET_KEYS = ("asset", "coin", "currency", "symbol", "token")


@dataclass
class RecoveryResult(Generic[T]):
    """Outcome of a recovery strategy."""

    success: bool
    data: Optional[T]
    method: RecoveryMethod
    confidence: float
    warnings: List[str] = field(default_factory=list)

    def unwrap(self) -> T:
        """The recovered value, or RecoveryExhaustedError if recovery failed."""
        if not self.success:
            raise RecoveryExhaustedError(
                "; ".join(self.warnings) or "No recovery strategy succeeded",
                warnings=self.warnings
            )
        return self.data


@dataclass(frozen=True)
class RecoveryOptions:
    """Which lower-confidence strategies the caller accepts."""

    allow_zero_cost_basis: bool = False
    use_market_price: bool = False
    use_fallback_pricing: bool = False
    duplicate_time_window_seconds: int = 60


def _result(method: RecoveryMethod, data, warnings=None, success=True) -> RecoveryResult:
    return RecoveryResult(
        success=success,
        data=data,
        method=method,
        confidence=CONFIDENCE[method],
        warnings=list(warnings or [])
    )


def _failure(warnings: List[str]) -> RecoveryResult:
    return _result(RecoveryMethod.NO_RECOVERY, None, warnings, success=False)


class ErrorRecovery:
    """
    Recovery strategies for missing cost basis, pricing and asset data,
    and for duplicate transactions.

    Args:
        options: Opt-in switches for low-confidence strategies
        price_provider: Optional callable (asset, timestamp) -> unit price
    """

    def __init__(
        self,
        options: Optional[RecoveryOptions] = None,
        price_provider: Optional[PriceProvider] = None
    ):
        self.options = options or RecoveryOptions()
        self.price_provider = price_provider

    def _market_price(self, asset: str, moment: datetime) -> Optional[Decimal]:
        if not self.options.use_market_price or self.price_provider is None:
            return None
        price = self.price_provider(asset, moment)
        return to_decimal(price) if price is not None else None

    # ------------------------------------------------------------------
    # Cost basis
    # ------------------------------------------------------------------

    def recover_missing_cost_basis(
        self,
        disposal: BaseTransaction,
        acquisitions: Iterable[BaseTransaction],
        leg: Optional[AssetAmount] = None,
        amount: Optional[Decimal] = None,
        method: CostBasisMethod = CostBasisMethod.FIFO
    ) -> RecoveryResult[CostBasis]:
        """
        Estimate the cost of (part of) a disposal that the ledger cannot cover.

        Args:
            disposal: Disposing transaction
            acquisitions: Known acquisitions (any asset, any time)
            leg: Disposed leg (defaults to the first)
            amount: Unmatched amount to estimate (defaults to the full leg)
            method: Method recorded on the estimated cost basis

        Returns:
            RecoveryResult wrapping a CostBasis without the disposal fee
        """
        leg = leg or disposal.disposed_leg()
        if leg is None:
            return _failure([f"{disposal.id}: no disposed asset to recover cost basis for"])

        asset = leg.asset
        amount = leg.amount if amount is None else amount
        warnings = []

        # 1. Average price of earlier acquisitions of the same asset
        total_amount = Decimal(0)
        total_cost = Decimal(0)
        latest: Optional[datetime] = None
        for acquisition in acquisitions:
            if acquisition.timestamp > disposal.timestamp:
                continue
            for acquired in acquisition.acquired_legs():
                value = acquisition.acquisition_value(acquired)
                if acquired.asset != asset or value is None or acquired.amount <= 0:
                    continue
                total_amount += acquired.amount
                total_cost += value
                if latest is None or acquisition.timestamp > latest:
                    latest = acquisition.timestamp

        if total_amount > 0:
            unit_price = total_cost / total_amount
            # Latest acquisition date: never overstates the holding period
            return _result(
                RecoveryMethod.MATCHED_ACQUISITIONS,
                self._estimated_basis(disposal, asset, amount, unit_price, latest, method,
                                      RecoveryMethod.MATCHED_ACQUISITIONS),
                [f"{disposal.id}: cost basis for {amount} {asset} estimated from "
                 f"average acquisition price {unit_price}"]
            )
        warnings.append(f"{disposal.id}: no earlier priced acquisitions of {asset}")

        # 2. Market price at disposal time
        price = self._market_price(asset, disposal.timestamp)
        if price is not None:
            return _result(
                RecoveryMethod.MARKET_PRICE_ESTIMATE,
                self._estimated_basis(disposal, asset, amount, price, None, method,
                                      RecoveryMethod.MARKET_PRICE_ESTIMATE),
                warnings + [f"{disposal.id}: cost basis for {asset} estimated from market price {price}"]
            )
        if self.options.use_market_price:
            warnings.append(f"{disposal.id}: no market price available for {asset}")

        # 3. Zero cost basis (overstates the gain, never understates it)
        if self.options.allow_zero_cost_basis:
            return _result(
                RecoveryMethod.ZERO_COST_BASIS,
                self._estimated_basis(disposal, asset, amount, Decimal(0), None, method,
                                      RecoveryMethod.ZERO_COST_BASIS),
                warnings + [f"{disposal.id}: zero cost basis assumed for {amount} {asset}"]
            )

        logger.warning(f"Cost basis recovery failed for {disposal.id} ({asset})")
        return _failure(warnings + [f"{disposal.id}: cost basis for {asset} could not be recovered"])

    @staticmethod
    def _estimated_basis(disposal, asset, amount, unit_price, acquired_at, method, recovery_method) -> CostBasis:
        acquisition_date = acquired_at or disposal.timestamp
        cost = amount * unit_price
        return CostBasis(
            method=method,
            acquisition_date=acquisition_date,
            acquisition_price=cost,
            acquisition_fees=Decimal(0),
            total_cost=cost,
            holding_period=max(0, (disposal.timestamp - acquisition_date).days),
            lots=[],
            asset=asset,
            amount=amount,
            confidence=CONFIDENCE[recovery_method],
            recovery_method=recovery_method.value
        )

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def recover_missing_pricing(
        self,
        transaction: BaseTransaction,
        leg: Optional[AssetAmount] = None
    ) -> RecoveryResult[Decimal]:
        """
        Recover the total fiat value of a transaction leg.

        Returns:
            RecoveryResult wrapping the value of the whole leg
        """
        leg = leg or transaction.disposed_leg() or transaction.acquired_leg()
        if leg is None:
            return _failure([f"{transaction.id}: no asset leg to price"])

        warnings = []

        # 1. The transaction itself (quote leg, counter leg or stated price)
        disposed = transaction.disposed_legs()
        if leg in disposed:
            inferred = transaction.disposal_value(leg)
            if inferred is None and len(disposed) == 1:
                # Whatever was received in exchange values the single disposed leg
                inferred = transaction.acquisition_value()
        else:
            inferred = transaction.acquisition_value(leg)
        if inferred is None and getattr(transaction, "price", None):
            inferred = transaction.price * leg.amount
        if inferred is not None:
            return _result(RecoveryMethod.INFERRED_FROM_TRANSACTION, inferred)
        warnings.append(f"{transaction.id}: no price information on the transaction")

        # 2. Market price
        price = self._market_price(leg.asset, transaction.timestamp)
        if price is not None:
            return _result(
                RecoveryMethod.MARKET_PRICE_API,
                price * leg.amount,
                warnings + [f"{transaction.id}: {leg.asset} valued at market price {price}"]
            )
        if self.options.use_market_price:
            warnings.append(f"{transaction.id}: no market price available for {leg.asset}")

        # 3. Zero
        if self.options.use_fallback_pricing:
            return _result(
                RecoveryMethod.FALLBACK_ZERO,
                Decimal(0),
                warnings + [f"{transaction.id}: {leg.asset} valued at zero"]
            )

        logger.warning(f"Pricing recovery failed for {transaction.id} ({leg.asset})")
        return _failure(warnings + [f"{transaction.id}: value of {leg.asset} could not be recovered"])

    # ------------------------------------------------------------------
    # Asset info
    # ------------------------------------------------------------------

    def recover_missing_asset_info(self, transaction: BaseTransaction) -> RecoveryResult[str]:
        asset = transaction.primary_asset()
        if asset:
            return _result(RecoveryMethod.INFERRED_FROM_TRANSACTION, asset)

        raw = transaction.original_data or {}
        for key in _ASSET_KEYS:
            value = raw.get(key)
            if isinstance(value, str) and value.strip():
                return _result(
                    RecoveryMethod.INFERRED_ASSET,
                    value.strip().upper(),
                    [f"{transaction.id}: asset inferred from original '{key}' field"]
                )

        return _result(
            RecoveryMethod.UNKNOWN_ASSET,
            "UNKNOWN",
            [f"{transaction.id}: asset could not be determined"]
        )

    # ------------------------------------------------------------------
    # Duplicates
    # ------------------------------------------------------------------

    def resolve_duplicate(
        self,
        original: BaseTransaction,
        candidate: BaseTransaction
    ) -> RecoveryResult[List[BaseTransaction]]:
        """
        Decide what to keep of a suspected duplicate pair.

        Identical records (type, timestamp, asset, source) collapse to the
        original. The same event reported by two sources is merged. Anything
        less certain keeps both, since dropping real data is worse than
        flagging a possible double count.
        """
        # Amount and direction must agree before anything is dropped
        same_event = (
            original.type == candidate.type
            and original.primary_asset() == candidate.primary_asset()
            and same_direction(original, candidate)
            and original.signed_base_amount() == candidate.signed_base_amount()
        )

        if same_event and original.timestamp == candidate.timestamp and original.source.name == candidate.source.name:
            return _result(RecoveryMethod.KEEP_ORIGINAL, [original])

        window = self.options.duplicate_time_window_seconds
        close_in_time = abs((original.timestamp - candidate.timestamp).total_seconds()) <= window

        if same_event and close_in_time and original.source.name != candidate.source.name:
            merged_data = dict(original.original_data or {})
            merged_data["merged_sources"] = [original.source.name, candidate.source.name]
            merged_data["merged_transaction_ids"] = [original.id, candidate.id]
            merged = original.model_copy(update={"original_data": merged_data}, deep=True)
            return _result(
                RecoveryMethod.MERGE_SOURCES,
                [merged],
                [f"{candidate.id} from {candidate.source.name} merged into {original.id}"]
            )

        return _result(
            RecoveryMethod.KEEP_BOTH,
            [original, candidate],
            [f"Possible duplicate kept: {original.id} and {candidate.id}"]
        )

    def deduplicate(
        self,
        transactions: List[BaseTransaction],
        detector: Optional[DuplicateDetector] = None,
        min_score: float = 80.0
    ) -> RecoveryResult[List[BaseTransaction]]:
        """
        Remove duplicates from a transaction list.

        Returns:
            RecoveryResult with the surviving transactions (chronological);
            confidence is the lowest confidence of any resolution applied
        """
        detector = detector or DuplicateDetector(
            time_tolerance_seconds=self.options.duplicate_time_window_seconds
        )
        groups = detector.find_duplicate_groups(transactions, min_score=min_score)

        removed = set()
        replacements = {}
        warnings: List[str] = []
        confidence = 1.0

        for group in groups:
            if group.group_type != DuplicateGroupType.DUPLICATE:
                continue
            kept = group.original
            for candidate in group.candidates[1:]:
                resolution = self.resolve_duplicate(kept, candidate.transaction)
                confidence = min(confidence, resolution.confidence)
                warnings.extend(resolution.warnings)
                if resolution.method in (RecoveryMethod.KEEP_ORIGINAL, RecoveryMethod.MERGE_SOURCES):
                    removed.add(id(candidate.transaction))
                    kept = resolution.data[0]
            if kept is not group.original:
                replacements[id(group.original)] = kept

        survivors = [
            replacements.get(id(tx), tx)
            for tx in sorted(transactions, key=lambda t: t.timestamp)
            if id(tx) not in removed
        ]

        if removed:
            logger.info(f"Deduplication removed {len(removed)} of {len(transactions)} transactions")

        method = RecoveryMethod.KEEP_ORIGINAL if confidence >= 1.0 else (
            RecoveryMethod.MERGE_SOURCES if confidence >= CONFIDENCE[RecoveryMethod.MERGE_SOURCES]
            else RecoveryMethod.KEEP_BOTH
        )
        return RecoveryResult(
            success=True,
            data=survivors,
            method=method,
            confidence=confidence,
            warnings=warnings
        )
