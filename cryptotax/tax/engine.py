"""
Cost Basis Engine - Lot Ledger and Lot Matching

Tracks acquisition lots per asset and resolves disposals against them:
1. add_acquisition records a lot (kept in chronological order)
2. calculate_cost_basis consumes lots under the calculator's method
3. export_state / import_state persist the ledger between sessions

Two methods are provided:
- FIFOCalculator: oldest lots first
- SpecificIdentificationCalculator: lots chosen by a selection policy or
  named explicitly by the caller

A disposal that cannot be covered raises InsufficientLotsError and leaves
the ledger untouched: the consumption plan is computed first and only
committed once it covers the full amount.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

import bisect
import json
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from cryptotax.exceptions import (
    InsufficientLotsError,
    InvalidCostBasisMethodError,
    MalformedTransactionError,
    SerializationError,
)
from cryptotax.parsers.transaction import AssetAmount, BaseTransaction, to_decimal
from cryptotax.tax.jurisdictions.base import TaxJurisdiction
from cryptotax.tax.tax_events import (
    AcquisitionLot,
    AssetSummary,
    ConsumedLot,
    CostBasis,
    CostBasisMethod,
    LotIdentifier,
    LotSelectionPolicy,
)
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)

# Amounts below this are treated as fully matched
AMOUNT_TOLERANCE = Decimal("0.000001")

STATE_VERSION = 1


def normalize_asset(asset: str) -> str:
    """Ledger key for an asset symbol (case-insensitive)."""
    return asset.strip().upper()


def _insert_sorted(lots: List[AcquisitionLot], lot: AcquisitionLot):
    # After any lots with the same timestamp, so arrival order is kept
    index = bisect.bisect_right(lots, lot.date, key=lambda existing: existing.date)
    lots.insert(index, lot)


class CostBasisCalculator(ABC):
    """
    Lot ledger plus a lot selection method.

    One instance owns one ledger; create one per user/report context.
    Mutations of an asset's lots are serialized by a per-asset lock, so a
    ledger may be shared between threads as long as disposals of the same
    asset are submitted in chronological order.
    """

    method: CostBasisMethod

    def __init__(self):
        self._lots: Dict[str, List[AcquisitionLot]] = defaultdict(list)
        self._disposals: List[CostBasis] = []
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _asset_lock(self, asset: str) -> threading.Lock:
        with self._locks_guard:
            if asset not in self._locks:
                self._locks[asset] = threading.Lock()
            return self._locks[asset]

    @contextmanager
    def _ledger_locked(self):
        """Hold every asset lock (whole-ledger operations)."""
        with self._locks_guard:
            locks = [self._locks[asset] for asset in sorted(self._locks)]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    # ------------------------------------------------------------------
    # Acquisitions
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_unit_price(transaction: BaseTransaction, leg: AssetAmount) -> Decimal:
        """Cost per unit of an acquired leg; 0 when the acquisition is unpriced."""
        value = transaction.acquisition_value(leg)
        if value is None or leg.amount == 0:
            return Decimal(0)
        return value / leg.amount

    def add_acquisition(
        self,
        transaction: BaseTransaction,
        leg: Optional[AssetAmount] = None,
        unit_price: Optional[Decimal] = None
    ) -> AcquisitionLot:
        """
        Record a new lot for the transaction's acquired leg.

        Args:
            transaction: Acquiring transaction
            leg: Which acquired leg (defaults to the first)
            unit_price: Override for the derived unit price (e.g. income valued at receipt)

        Returns:
            The lot added to the ledger
        """
        leg = leg or transaction.acquired_leg()
        if leg is None:
            raise MalformedTransactionError(
                f"{transaction.type} has no acquired asset", transaction.id, "acquired_leg"
            )

        asset = normalize_asset(leg.asset)
        if unit_price is None:
            unit_price = self.calculate_unit_price(transaction, leg)

        lot = AcquisitionLot(
            date=transaction.timestamp,
            amount=leg.amount,
            unit_price=unit_price,
            remaining_amount=leg.amount,
            transaction_id=transaction.id
        )

        with self._asset_lock(asset):
            self._insert_lot(asset, lot)

        logger.debug(f"Lot added: {leg.amount} {asset} @ {unit_price} ({transaction.id})")
        return lot

    def _insert_lot(self, asset: str, lot: AcquisitionLot):
        _insert_sorted(self._lots[asset], lot)

    def _build_lots(self, asset: str, acquisitions: Iterable[BaseTransaction]) -> List[AcquisitionLot]:
        lots: List[AcquisitionLot] = []
        for transaction in sorted(acquisitions, key=lambda t: t.timestamp):
            for leg in transaction.acquired_legs():
                if normalize_asset(leg.asset) == asset:
                    _insert_sorted(lots, AcquisitionLot(
                        date=transaction.timestamp,
                        amount=leg.amount,
                        unit_price=self.calculate_unit_price(transaction, leg),
                        remaining_amount=leg.amount,
                        transaction_id=transaction.id
                    ))
        return lots

    # ------------------------------------------------------------------
    # Disposals
    # ------------------------------------------------------------------

    @abstractmethod
    def _plan_consumption(
        self,
        asset: str,
        lots: List[AcquisitionLot],
        amount: Decimal,
        disposal: BaseTransaction,
        **options
    ) -> List[Tuple[AcquisitionLot, Decimal]]:
        """Return (lot, amount to take) pairs in consumption order without mutating lots."""
        pass

    @staticmethod
    def _eligible_lots(lots: Iterable[AcquisitionLot], disposal: BaseTransaction) -> List[AcquisitionLot]:
        """Lots acquired no later than the disposal."""
        return [lot for lot in lots if lot.date <= disposal.timestamp]

    @staticmethod
    def _greedy_plan(ordered_lots: Iterable[AcquisitionLot], amount: Decimal) -> List[Tuple[AcquisitionLot, Decimal]]:
        plan = []
        remaining = amount
        for lot in ordered_lots:
            if remaining <= 0:
                break
            if lot.remaining_amount <= 0:
                continue
            take = min(remaining, lot.remaining_amount)
            plan.append((lot, take))
            remaining -= take
        return plan

    def calculate_cost_basis(
        self,
        disposal: BaseTransaction,
        acquisitions: Optional[Iterable[BaseTransaction]] = None,
        leg: Optional[AssetAmount] = None,
        allow_partial: bool = False,
        commit: bool = True,
        **options
    ) -> CostBasis:
        """
        Resolve a disposal against the ledger.

        Args:
            disposal: Disposing transaction
            acquisitions: If given, the asset's lots are rebuilt from these
                transactions first; otherwise the current ledger state is used
            leg: Which disposed leg (defaults to the first)
            allow_partial: Consume whatever is available instead of raising;
                the shortfall is amount - consumed_amount() on the result
            commit: If False, return the cost basis the disposal would have
                without consuming lots or recording it in the history
            **options: Method-specific options (e.g. lot_identifiers)

        Returns:
            CostBasis for the disposal

        Raises:
            InsufficientLotsError: If the lots cannot cover the disposal.
                No lot is consumed in that case.
        """
        leg = leg or disposal.disposed_leg()
        if leg is None:
            raise MalformedTransactionError(
                f"{disposal.type} has no disposed asset", disposal.id, "disposed_leg"
            )

        asset = normalize_asset(leg.asset)
        amount = leg.amount

        with self._asset_lock(asset):
            if acquisitions is not None:
                lots = self._build_lots(asset, acquisitions)
            else:
                lots = self._lots.get(asset, [])
            plan = self._plan_consumption(asset, lots, amount, disposal, **options)

            matched = sum((take for _, take in plan), Decimal(0))
            if amount - matched > AMOUNT_TOLERANCE and not allow_partial:
                available = sum(
                    (lot.remaining_amount for lot in self._eligible_lots(lots, disposal)), Decimal(0)
                )
                logger.warning(
                    f"Insufficient lots: {disposal.id} disposes {amount} {asset}, only {available} available"
                )
                raise InsufficientLotsError(asset, amount, available, disposal.id)

            if commit and acquisitions is not None:
                self._lots[asset] = lots

            consumed = []
            for lot, take in plan:
                remaining = lot.remaining_amount - take
                if commit:
                    lot.remaining_amount = remaining
                consumed.append(ConsumedLot(
                    transaction_id=lot.transaction_id,
                    date=lot.date,
                    amount=take,
                    unit_price=lot.unit_price,
                    remaining_amount=remaining
                ))

        acquisition_price = sum((slice_.cost for slice_ in consumed), Decimal(0))
        fees = disposal.fee_amount()

        if consumed:
            earliest = min(slice_.date for slice_ in consumed)
            holding_period = (disposal.timestamp - earliest).days
        else:
            earliest = disposal.timestamp
            holding_period = 0

        cost_basis = CostBasis(
            method=self.method,
            acquisition_date=earliest,
            acquisition_price=acquisition_price,
            acquisition_fees=fees,
            total_cost=acquisition_price + fees,
            holding_period=holding_period,
            lots=consumed,
            asset=asset,
            amount=amount
        )
        if not commit:
            return cost_basis
        self._disposals.append(cost_basis)

        logger.debug(
            f"{self.method.value} disposal {disposal.id}: {amount} {asset}, "
            f"{len(consumed)} lots, cost {cost_basis.total_cost}, held {holding_period}d"
        )
        return cost_basis

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def assets(self) -> List[str]:
        return sorted(asset for asset, lots in self._lots.items() if lots)

    def get_lots(self, asset: str) -> List[AcquisitionLot]:
        """All lots for an asset including exhausted ones (copies)."""
        return [replace(lot) for lot in self._lots.get(normalize_asset(asset), [])]

    def get_remaining_lots(self, asset: str) -> List[AcquisitionLot]:
        """Lots with remaining_amount > 0 (copies, chronological)."""
        return [lot for lot in self.get_lots(asset) if lot.remaining_amount > 0]

    def get_remaining_balance(self, asset: str) -> Decimal:
        return sum((lot.remaining_amount for lot in self.get_remaining_lots(asset)), Decimal(0))

    def get_average_cost_basis(self, asset: str) -> Decimal:
        """Weighted average unit price over remaining amounts."""
        lots = self.get_remaining_lots(asset)
        total_amount = sum((lot.remaining_amount for lot in lots), Decimal(0))
        if total_amount == 0:
            return Decimal(0)
        total_cost = sum((lot.remaining_cost() for lot in lots), Decimal(0))
        return total_cost / total_amount

    def get_lots_by_date_range(self, asset: str, start: datetime, end: datetime) -> List[AcquisitionLot]:
        return [lot for lot in self.get_lots(asset) if start <= lot.date <= end]

    def get_lots_by_holding_period(
        self,
        asset: str,
        min_days: int,
        reference_date: Optional[datetime] = None
    ) -> List[AcquisitionLot]:
        """Open lots held for at least min_days at reference_date (default: now)."""
        reference = reference_date or datetime.now(timezone.utc)
        return [
            lot for lot in self.get_remaining_lots(asset)
            if lot.holding_period_days(reference) >= min_days
        ]

    def get_asset_summary(self, asset: str) -> AssetSummary:
        lots = self.get_lots(asset)
        total_acquired = sum((lot.amount for lot in lots), Decimal(0))
        remaining = sum((lot.remaining_amount for lot in lots), Decimal(0))
        return AssetSummary(
            asset=normalize_asset(asset),
            total_acquired=total_acquired,
            total_used=total_acquired - remaining,
            remaining_balance=remaining,
            average_cost_basis=self.get_average_cost_basis(asset),
            lot_count=len(lots),
            open_lot_count=sum(1 for lot in lots if lot.remaining_amount > 0),
            earliest_acquisition=lots[0].date if lots else None,
            latest_acquisition=lots[-1].date if lots else None
        )

    def get_disposal_history(self, asset: Optional[str] = None) -> List[CostBasis]:
        """Cost bases resolved by this ledger, in resolution order."""
        if asset is None:
            return list(self._disposals)
        key = normalize_asset(asset)
        return [basis for basis in self._disposals if basis.asset == key]

    # ------------------------------------------------------------------
    # Maintenance and persistence
    # ------------------------------------------------------------------

    def clear(self):
        with self._ledger_locked():
            self._lots = defaultdict(list)
            self._disposals = []

    def clear_asset(self, asset: str):
        key = normalize_asset(asset)
        with self._asset_lock(key):
            self._lots.pop(key, None)
            self._disposals = [basis for basis in self._disposals if basis.asset != key]

    def export_state(self) -> str:
        """
        Serialize the lot ledger to JSON.

        Decimals are written as strings so that import_state reproduces the
        ledger exactly.
        """
        with self._ledger_locked():
            state = {
                "version": STATE_VERSION,
                "method": self.method.value,
                "lots": [
                    {
                        "asset": asset,
                        "lots": [
                            {
                                "date": lot.date.isoformat(),
                                "amount": str(lot.amount),
                                "unit_price": str(lot.unit_price),
                                "remaining_amount": str(lot.remaining_amount),
                                "transaction_id": lot.transaction_id,
                            }
                            for lot in self._lots[asset]
                        ],
                    }
                    for asset in sorted(self._lots)
                    if self._lots[asset]
                ],
            }
        return json.dumps(state)

    def import_state(self, serialized_state: Union[str, bytes, Dict[str, Any]]):
        """
        Replace the ledger with a previously exported state.

        The whole payload is parsed and validated before anything is
        replaced.

        Raises:
            SerializationError: If the payload is malformed.
        """
        try:
            state = json.loads(serialized_state) if isinstance(serialized_state, (str, bytes)) else serialized_state
        except json.JSONDecodeError as e:
            raise SerializationError(f"Failed to import ledger state: invalid JSON ({e})") from e

        new_lots = _parse_state(state)

        with self._ledger_locked():
            self._lots = defaultdict(list, new_lots)
            self._disposals = []

        logger.info(
            f"Imported ledger state: {len(new_lots)} assets, "
            f"{sum(len(lots) for lots in new_lots.values())} lots"
        )


def _parse_state(state: Any) -> Dict[str, List[AcquisitionLot]]:
    if not isinstance(state, dict) or not isinstance(state.get("lots"), list):
        raise SerializationError("Failed to import ledger state: missing 'lots' array")

    version = state.get("version", STATE_VERSION)
    if version != STATE_VERSION:
        raise SerializationError(f"Failed to import ledger state: unsupported version {version!r}")

    parsed: Dict[str, List[AcquisitionLot]] = {}
    for index, entry in enumerate(state["lots"]):
        if not isinstance(entry, dict) or not isinstance(entry.get("asset"), str) or not entry["asset"].strip():
            raise SerializationError(f"Failed to import ledger state: entry {index} has no asset")
        if not isinstance(entry.get("lots"), list):
            raise SerializationError(f"Failed to import ledger state: entry {index} has no lots array")

        asset = normalize_asset(entry["asset"])
        lots = [_parse_lot(asset, raw) for raw in entry["lots"]]
        parsed.setdefault(asset, []).extend(lots)

    for lots in parsed.values():
        lots.sort(key=lambda lot: lot.date)
    return parsed


def _parse_lot(asset: str, raw: Any) -> AcquisitionLot:
    if not isinstance(raw, dict):
        raise SerializationError(f"Failed to import ledger state: lot for {asset} is not an object")
    try:
        lot_date = datetime.fromisoformat(raw["date"])
        if lot_date.tzinfo is None:
            lot_date = lot_date.replace(tzinfo=timezone.utc)
        amount = to_decimal(raw["amount"])
        unit_price = to_decimal(raw["unit_price"])
        remaining = to_decimal(raw["remaining_amount"])
        transaction_id = raw["transaction_id"]
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise SerializationError(f"Failed to import ledger state: bad lot for {asset}: {e}") from e

    if not isinstance(transaction_id, str) or not transaction_id:
        raise SerializationError(f"Failed to import ledger state: lot for {asset} has no transaction_id")
    if not all(value.is_finite() for value in (amount, unit_price, remaining)):
        raise SerializationError(
            f"Failed to import ledger state: lot {transaction_id} ({asset}) has a non-finite amount"
        )
    if amount < 0 or unit_price < 0 or remaining < 0 or remaining > amount:
        raise SerializationError(
            f"Failed to import ledger state: lot {transaction_id} ({asset}) has inconsistent amounts"
        )

    return AcquisitionLot(
        date=lot_date,
        amount=amount,
        unit_price=unit_price,
        remaining_amount=remaining,
        transaction_id=transaction_id
    )


class FIFOCalculator(CostBasisCalculator):
    """First-In, First-Out: oldest lots are consumed first."""

    method = CostBasisMethod.FIFO

    def _plan_consumption(self, asset, lots, amount, disposal, **options):
        # Ledger lots are kept in chronological order
        return self._greedy_plan(self._eligible_lots(lots, disposal), amount)


class SpecificIdentificationCalculator(CostBasisCalculator):
    """
    Specific identification: the caller names the lots, or a selection
    policy orders them.

    Policies:
    - MINIMIZE_GAIN: highest unit price first
    - MAXIMIZE_GAIN: lowest unit price first
    - MAXIMIZE_CGT_DISCOUNT: lots past the discount threshold first,
      then highest unit price

    Whether a jurisdiction permits this method is checked by
    get_cost_basis_calculator, not here.
    """

    method = CostBasisMethod.SPECIFIC_IDENTIFICATION

    def __init__(
        self,
        policy: LotSelectionPolicy = LotSelectionPolicy.MINIMIZE_GAIN,
        discount_threshold_days: int = 365
    ):
        super().__init__()
        self.policy = LotSelectionPolicy(policy)
        self.discount_threshold_days = discount_threshold_days

    def _order_lots(self, lots: List[AcquisitionLot], disposal_time: datetime) -> List[AcquisitionLot]:
        if self.policy == LotSelectionPolicy.MAXIMIZE_GAIN:
            key = lambda lot: (lot.unit_price, lot.date)
        elif self.policy == LotSelectionPolicy.MAXIMIZE_CGT_DISCOUNT:
            key = lambda lot: (
                lot.holding_period_days(disposal_time) < self.discount_threshold_days,
                -lot.unit_price,
                lot.date,
            )
        else:
            key = lambda lot: (-lot.unit_price, lot.date)
        return sorted(lots, key=key)

    def _plan_consumption(self, asset, lots, amount, disposal, lot_identifiers=None, **options):
        if lot_identifiers:
            return self._plan_identified(asset, lots, amount, disposal, lot_identifiers)

        eligible = self._eligible_lots(lots, disposal)
        return self._greedy_plan(self._order_lots(eligible, disposal.timestamp), amount)

    def _plan_identified(
        self,
        asset: str,
        lots: List[AcquisitionLot],
        amount: Decimal,
        disposal: BaseTransaction,
        lot_identifiers: List[LotIdentifier]
    ) -> List[Tuple[AcquisitionLot, Decimal]]:
        requested = sum((Decimal(ident.amount) for ident in lot_identifiers), Decimal(0))
        if abs(requested - amount) > AMOUNT_TOLERANCE:
            raise ValueError(
                f"Identified lots total {requested} but disposal {disposal.id} is {amount}"
            )

        by_id: Dict[str, List[AcquisitionLot]] = defaultdict(list)
        for lot in lots:
            by_id[lot.transaction_id].append(lot)

        plan = []
        planned: Dict[int, Decimal] = defaultdict(Decimal)
        for ident in lot_identifiers:
            candidates = by_id.get(ident.transaction_id)
            if not candidates:
                raise ValueError(f"Lot '{ident.transaction_id}' not found for disposal {disposal.id}")
            if any(lot.date > disposal.timestamp for lot in candidates):
                raise ValueError(
                    f"Lot '{ident.transaction_id}' was acquired after disposal {disposal.id}"
                )

            wanted = Decimal(ident.amount)
            for lot in candidates:
                if wanted <= 0:
                    break
                available = lot.remaining_amount - planned[id(lot)]
                if available <= 0:
                    continue
                take = min(wanted, available)
                plan.append((lot, take))
                planned[id(lot)] += take
                wanted -= take

            if wanted > AMOUNT_TOLERANCE:
                available = sum((lot.remaining_amount for lot in candidates), Decimal(0))
                raise InsufficientLotsError(asset, Decimal(ident.amount), available, disposal.id)

        return plan

    def find_optimal_lots(self, disposal: BaseTransaction, leg: Optional[AssetAmount] = None) -> List[LotIdentifier]:
        """Lots the selection policy would consume for a disposal, without consuming them."""
        leg = leg or disposal.disposed_leg()
        if leg is None:
            return []
        asset = normalize_asset(leg.asset)
        with self._asset_lock(asset):
            lots = self._lots.get(asset, [])
            plan = self._plan_consumption(asset, lots, leg.amount, disposal)
        return [LotIdentifier(transaction_id=lot.transaction_id, amount=take) for lot, take in plan]


_CALCULATORS = {
    CostBasisMethod.FIFO: FIFOCalculator,
    CostBasisMethod.SPECIFIC_IDENTIFICATION: SpecificIdentificationCalculator,
}


def get_cost_basis_calculator(
    method: Union[str, CostBasisMethod] = CostBasisMethod.FIFO,
    jurisdiction: Optional[TaxJurisdiction] = None,
    policy: Optional[LotSelectionPolicy] = None
) -> CostBasisCalculator:
    """
    Create a calculator (with an empty ledger) for a cost basis method.

    Args:
        method: "FIFO" or "SPECIFIC_IDENTIFICATION"
        jurisdiction: If given, the method must be one it permits
        policy: Lot selection policy for specific identification

    Raises:
        InvalidCostBasisMethodError: If the method is unknown or not permitted
    """
    try:
        method = CostBasisMethod(method.upper() if isinstance(method, str) else method)
    except ValueError:
        available = ", ".join(m.value for m in _CALCULATORS)
        raise InvalidCostBasisMethodError(
            f"Cost basis method '{method}' not found. Available: {available}"
        ) from None

    if jurisdiction is not None and not jurisdiction.supports_method(method):
        permitted = ", ".join(m.value for m in jurisdiction.supported_methods)
        raise InvalidCostBasisMethodError(
            f"Cost basis method {method.value} is not permitted in {jurisdiction.code}. "
            f"Permitted: {permitted}"
        )

    if method == CostBasisMethod.SPECIFIC_IDENTIFICATION:
        threshold = jurisdiction.holding_period_threshold_days if jurisdiction is not None else 365
        return SpecificIdentificationCalculator(
            policy=policy or LotSelectionPolicy.MINIMIZE_GAIN,
            discount_threshold_days=threshold
        )

    return _CALCULATORS[method]()
