"""
Tax Engine Exceptions

Structural errors (malformed transaction, unknown jurisdiction, unsupported
cost basis method) are raised immediately. Data-sufficiency errors
(insufficient lots, exhausted recovery) may be handled by the report
generator when recovery is enabled.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from decimal import Decimal
from typing import Optional


class TaxEngineError(Exception):
    """Base class for all tax engine errors."""
    pass


class InsufficientLotsError(TaxEngineError):
    """Raised when a disposal exceeds all recorded acquisitions for an asset."""

    def __init__(
        self,
        asset: str,
        requested: Decimal,
        available: Decimal,
        transaction_id: Optional[str] = None
    ):
        self.asset = asset
        self.requested = requested
        self.available = available
        self.transaction_id = transaction_id
        shortfall = requested - available
        super().__init__(
            f"Insufficient lots for {asset}: requested {requested}, "
            f"available {available} (short by {shortfall})"
            + (f" [transaction {transaction_id}]" if transaction_id else "")
        )


class InvalidJurisdictionError(TaxEngineError, ValueError):
    """Raised for an unsupported or malformed jurisdiction code/config."""
    pass


class MalformedTransactionError(TaxEngineError, ValueError):
    """Raised when a transaction is missing required fields or has invalid values."""

    def __init__(self, message: str, transaction_id: Optional[str] = None, field: Optional[str] = None):
        self.transaction_id = transaction_id
        self.field = field
        prefix = f"Transaction {transaction_id}: " if transaction_id else ""
        super().__init__(f"{prefix}{message}")


class InvalidCostBasisMethodError(TaxEngineError, ValueError):
    """Raised when a cost basis method is unknown or not permitted by the jurisdiction."""
    pass


class RecoveryExhaustedError(TaxEngineError):
    """Raised when no recovery strategy could produce a usable substitute."""

    def __init__(self, message: str, warnings: Optional[list] = None):
        self.warnings = list(warnings or [])
        super().__init__(message)


class SerializationError(TaxEngineError):
    """Raised when ledger state cannot be parsed. Import never partially applies."""
    pass
