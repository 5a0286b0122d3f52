"""
Tax Module

Deterministic tax calculation for crypto portfolios.

Features:
- Chronological replay of a full transaction history
- Lot ledger with FIFO and specific identification
- Rule-table classification per jurisdiction (AU, DE)
- Confidence-scored recovery for incomplete data
- SHA256 sealed reports
- Report validation and tax optimization strategies

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

__all__ = [
    'engine',
    'capital_gains',
    'classifier',
    'duplicates',
    'jurisdictions',
    'optimization',
    'recovery',
    'report',
    'tax_events',
    'validation',
]
