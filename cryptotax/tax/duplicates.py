"""
Near-Duplicate Detection

Finds transactions that describe the same economic event, typically the
same trade exported by two sources or imported twice.

Scoring (0-100):
- Asset match (40, required)
- Amount within tolerance (30)
- Timestamp proximity (20)
- Same transaction id (10)

Opposite directions on the same asset (transfer out of one wallet, into
another) form a TRANSFER group rather than a duplicate.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from cryptotax.parsers.transaction import BaseTransaction, TransactionType
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)


class DuplicateGroupType(str, Enum):
    """Type of duplicate group."""
    DUPLICATE = "duplicate"   # Same direction, likely duplicate
    TRANSFER = "transfer"     # Opposite direction, likely a wallet move


@dataclass
class DuplicateCandidate:
    transaction: BaseTransaction
    similarity_score: float
    source_name: str


@dataclass
class DuplicateGroup:
    """Group of potentially duplicate transactions; the first candidate is the earliest."""

    group_id: str
    group_type: DuplicateGroupType
    candidates: List[DuplicateCandidate] = field(default_factory=list)

    @property
    def original(self) -> BaseTransaction:
        return self.candidates[0].transaction

    def get_highest_score_candidate(self) -> DuplicateCandidate:
        return max(self.candidates[1:] or self.candidates, key=lambda c: c.similarity_score)


def _transfer_pair(a: BaseTransaction, b: BaseTransaction) -> bool:
    return a.transaction_type == TransactionType.TRANSFER and b.transaction_type == TransactionType.TRANSFER


def _amount(transaction: BaseTransaction) -> Decimal:
    amount = abs(transaction.signed_base_amount())
    if amount == 0:
        # Transfers marked INTERNAL and fee-only records carry no signed movement
        for candidate in ("asset", "fee", "reward", "received", "interest"):
            leg = getattr(transaction, candidate, None)
            if leg is not None and hasattr(leg, "amount"):
                return leg.amount
    return amount


def _direction(transaction: BaseTransaction) -> int:
    signed = transaction.signed_base_amount()
    return (signed > 0) - (signed < 0)


def same_direction(a: BaseTransaction, b: BaseTransaction) -> bool:
    """False for a buy against a sale, or an outgoing against an incoming transfer."""
    return _direction(a) * _direction(b) >= 0


class DuplicateDetector:
    """
    Detects near-duplicate transactions.

    Algorithm:
    1. Same primary asset (and same type, except transfer pairs)
    2. Amounts within 0.1% (partial credit up to 1%)
    3. Timestamps within the tolerance window
    4. Direction check (same = duplicate, opposite = transfer)
    """

    def __init__(
        self,
        time_tolerance_seconds: int = 60,
        amount_tolerance_pct: Decimal = Decimal("0.001")
    ):
        self.time_tolerance = timedelta(seconds=time_tolerance_seconds)
        self.amount_tolerance = amount_tolerance_pct

    def calculate_similarity(
        self,
        txn_a: BaseTransaction,
        txn_b: BaseTransaction
    ) -> Tuple[float, DuplicateGroupType]:
        """
        Similarity score between two transactions.

        Returns:
            Tuple of (similarity_score, group_type)
            - score >= 80: High confidence
            - score 60-79: Review needed
        """
        asset_a, asset_b = txn_a.primary_asset(), txn_b.primary_asset()
        if not asset_a or asset_a != asset_b:
            return 0.0, DuplicateGroupType.DUPLICATE
        if txn_a.type != txn_b.type:
            return 0.0, DuplicateGroupType.DUPLICATE

        transfer_pair = _transfer_pair(txn_a, txn_b)
        opposite = not same_direction(txn_a, txn_b)
        if opposite and not transfer_pair:
            # A buy and a sale of the same size are two trades
            return 0.0, DuplicateGroupType.DUPLICATE

        score = 40.0

        amount_a, amount_b = _amount(txn_a), _amount(txn_b)
        if amount_a > 0 and amount_b > 0:
            diff = abs(amount_a - amount_b) / max(amount_a, amount_b)
            if diff <= self.amount_tolerance:
                score += 30
            elif diff <= Decimal("0.01"):
                score += 20
            else:
                score += max(0.0, 15 - float(diff) * 100)
        elif amount_a == amount_b:
            score += 30

        time_diff = abs(txn_a.timestamp - txn_b.timestamp)
        if time_diff == timedelta(0):
            score += 20
        elif time_diff <= self.time_tolerance:
            score += 15
        elif time_diff <= timedelta(days=1):
            score += 5

        if txn_a.id == txn_b.id:
            score += 10

        if transfer_pair and opposite:
            group_type = DuplicateGroupType.TRANSFER
            if score >= 60:
                logger.info(f"Opposite direction transfers {txn_a.id} / {txn_b.id} - likely wallet move")
        else:
            group_type = DuplicateGroupType.DUPLICATE

        return score, group_type

    def find_duplicate_groups(
        self,
        transactions: List[BaseTransaction],
        min_score: float = 60.0
    ) -> List[DuplicateGroup]:
        """
        Find all potential duplicate groups.

        Args:
            transactions: Transactions to analyze (any order)
            min_score: Minimum similarity score to flag (default 60)

        Returns:
            Groups whose first candidate is the earliest transaction
        """
        ordered = sorted(transactions, key=lambda t: t.timestamp)
        groups = []
        processed_indices = set()

        for i, txn_a in enumerate(ordered):
            if i in processed_indices:
                continue

            group_candidates: List[DuplicateCandidate] = []
            group_type: Optional[DuplicateGroupType] = None

            for j in range(i + 1, len(ordered)):
                txn_b = ordered[j]
                if txn_b.timestamp - txn_a.timestamp > timedelta(days=1):
                    break
                if j in processed_indices:
                    continue

                score, pair_type = self.calculate_similarity(txn_a, txn_b)
                if score < min_score:
                    continue
                if group_type is not None and pair_type != group_type:
                    continue

                if not group_candidates:
                    group_type = pair_type
                    group_candidates.append(DuplicateCandidate(
                        transaction=txn_a,
                        similarity_score=100.0,
                        source_name=txn_a.source.name
                    ))

                group_candidates.append(DuplicateCandidate(
                    transaction=txn_b,
                    similarity_score=score,
                    source_name=txn_b.source.name
                ))
                processed_indices.add(j)

            if group_candidates:
                processed_indices.add(i)
                group = DuplicateGroup(
                    group_id=f"dup_{i}_{txn_a.id}",
                    group_type=group_type,
                    candidates=group_candidates
                )
                groups.append(group)

                logger.info(
                    f"Found {group.group_type.value} group with {len(group_candidates)} candidates "
                    f"(best score: {group.get_highest_score_candidate().similarity_score:.1f})"
                )

        return groups
