"""
Crypto Tax Engine

Cost-basis tracking, transaction classification and capital gains
calculation for cryptocurrency portfolios.

Components:
- parsers: normalized transaction model (the input contract)
- tax: lot ledger, classifier, capital gains, recovery, reports
- core: SHA256 audit sealing
- utils: structured logging

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

__version__ = "1.0.0"

__all__ = ['parsers', 'tax', 'core', 'utils', 'exceptions']
