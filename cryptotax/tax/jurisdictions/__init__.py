"""
Tax Jurisdiction System

Rule tables for each supported jurisdiction. Importing this package
registers all jurisdictions.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from .base import (
    DeFiClassification,
    RuleKind,
    TaxJurisdiction,
    TaxRule,
    TaxRuleCategory,
    TaxYearBoundaries,
    get_jurisdiction,
    list_available_jurisdictions,
    register_jurisdiction,
    resolve_jurisdiction,
)
from . import australia, germany

__all__ = [
    "DeFiClassification",
    "RuleKind",
    "TaxJurisdiction",
    "TaxRule",
    "TaxRuleCategory",
    "TaxYearBoundaries",
    "get_jurisdiction",
    "list_available_jurisdictions",
    "register_jurisdiction",
    "resolve_jurisdiction",
]
