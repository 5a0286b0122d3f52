"""
Jurisdiction Rule Tables

A jurisdiction is plain immutable data: discount rate, holding period
threshold, personal-use threshold, tax-year boundaries, permitted cost
basis methods, the DeFi classification table and the list of rules the
classifier and gains calculator cite.

Jurisdictions are built by factory functions registered with
``@register_jurisdiction`` and created once on first lookup.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from cryptotax.exceptions import InvalidJurisdictionError
from cryptotax.tax.tax_events import CostBasisMethod, TaxEventType, TaxPeriod
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)


class TaxRuleCategory(str, Enum):
    CAPITAL_GAINS = "CAPITAL_GAINS"
    INCOME = "INCOME"
    DEDUCTIONS = "DEDUCTIONS"
    EXEMPTIONS = "EXEMPTIONS"
    REPORTING = "REPORTING"


class RuleKind(str, Enum):
    """What a rule is used for, so components can cite it without knowing its id."""
    CGT_EVENT = "CGT_EVENT"
    CGT_DISCOUNT = "CGT_DISCOUNT"
    PERSONAL_USE = "PERSONAL_USE"
    DEFI_CLASSIFICATION = "DEFI_CLASSIFICATION"
    ORDINARY_INCOME = "ORDINARY_INCOME"
    BUSINESS_TRADING = "BUSINESS_TRADING"
    DEDUCTION = "DEDUCTION"
    NON_TAXABLE = "NON_TAXABLE"


@dataclass(frozen=True)
class TaxRule:
    id: str
    jurisdiction: str
    name: str
    description: str
    category: TaxRuleCategory
    kind: RuleKind
    effective_from: date
    applicable_transaction_types: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TaxYearBoundaries:
    """First day of the tax year. (1, 1) means calendar years."""

    start_month: int = 1
    start_day: int = 1

    @property
    def is_calendar_year(self) -> bool:
        return self.start_month == 1 and self.start_day == 1


@dataclass(frozen=True)
class DeFiClassification:
    """One entry of a jurisdiction's DeFi classification table."""

    event_type: TaxEventType
    classification: str
    reason: str


_TAX_YEAR_PATTERN = re.compile(r"^(\d{4})(?:-(\d{4}))?$")


@dataclass(frozen=True)
class TaxJurisdiction:
    """
    Immutable jurisdiction configuration.

    Raises InvalidJurisdictionError on construction when any value is out
    of range, so a malformed rule table never reaches a calculation.
    """

    code: str
    name: str
    currency: str
    discount_rate: Decimal
    holding_period_threshold_days: int
    personal_use_threshold: Optional[Decimal]
    tax_year_boundaries: TaxYearBoundaries
    supported_methods: Tuple[CostBasisMethod, ...]
    rules: Tuple[TaxRule, ...] = ()
    defi_classification: Mapping[str, DeFiClassification] = field(default_factory=dict)
    business_trading_threshold: Optional[int] = None
    personal_use_max_disposals: int = 3
    default_method: CostBasisMethod = CostBasisMethod.FIFO

    def __post_init__(self):
        if not re.fullmatch(r"[A-Z]{2}", self.code or ""):
            raise InvalidJurisdictionError(f"Jurisdiction code must be two upper-case letters, got '{self.code}'")
        if not (Decimal(0) <= self.discount_rate <= Decimal(1)):
            raise InvalidJurisdictionError(f"{self.code}: discount_rate must be within [0, 1], got {self.discount_rate}")
        if self.holding_period_threshold_days < 0:
            raise InvalidJurisdictionError(f"{self.code}: holding period threshold cannot be negative")
        if self.personal_use_threshold is not None and self.personal_use_threshold < 0:
            raise InvalidJurisdictionError(f"{self.code}: personal use threshold cannot be negative")
        if not self.supported_methods:
            raise InvalidJurisdictionError(f"{self.code}: at least one cost basis method is required")
        if self.default_method not in self.supported_methods:
            raise InvalidJurisdictionError(f"{self.code}: default method {self.default_method.value} is not supported")
        if not (1 <= self.tax_year_boundaries.start_month <= 12 and 1 <= self.tax_year_boundaries.start_day <= 28):
            raise InvalidJurisdictionError(f"{self.code}: invalid tax year start {self.tax_year_boundaries}")
        if self.business_trading_threshold is not None and self.business_trading_threshold <= 0:
            raise InvalidJurisdictionError(f"{self.code}: business trading threshold must be positive")

        rule_ids = [rule.id for rule in self.rules]
        if len(rule_ids) != len(set(rule_ids)):
            raise InvalidJurisdictionError(f"{self.code}: duplicate rule ids {rule_ids}")

        for key, entry in self.defi_classification.items():
            if not isinstance(entry, DeFiClassification):
                raise InvalidJurisdictionError(f"{self.code}: DeFi entry '{key}' is not a DeFiClassification")

        # Freeze the table so shared instances stay read-only
        object.__setattr__(self, 'defi_classification', MappingProxyType(dict(self.defi_classification)))

    def rule_id(self, kind: RuleKind) -> Optional[str]:
        """Id of the first rule of the given kind, or None if the jurisdiction has none."""
        for rule in self.rules:
            if rule.kind == kind:
                return rule.id
        return None

    def get_rule(self, rule_id: str) -> TaxRule:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        raise KeyError(f"Rule '{rule_id}' not defined for {self.code}")

    def supports_method(self, method: CostBasisMethod) -> bool:
        return method in self.supported_methods

    def _year_start(self, year: int) -> datetime:
        b = self.tax_year_boundaries
        return datetime(year, b.start_month, b.start_day, tzinfo=timezone.utc)

    def get_tax_period(self, tax_year: str) -> TaxPeriod:
        """
        Resolve a tax year label to its UTC window.

        Split-year jurisdictions take "YYYY-YYYY" with consecutive years
        ("2023-2024" is 1 Jul 2023 to 30 Jun 2024 in Australia). Calendar
        years take "YYYY" or "YYYY-YYYY" with equal years.

        Raises:
            ValueError: If the label is malformed or does not fit the jurisdiction.
        """
        match = _TAX_YEAR_PATTERN.match(str(tax_year).strip())
        if not match:
            raise ValueError(f"Invalid tax year '{tax_year}': expected 'YYYY-YYYY'")

        first = int(match.group(1))
        second = int(match.group(2)) if match.group(2) else None

        if self.tax_year_boundaries.is_calendar_year:
            if second is not None and second != first:
                raise ValueError(
                    f"Invalid tax year '{tax_year}' for {self.code}: calendar tax years use equal years"
                )
            label = str(first)
            start_year = first
        else:
            if second is None or second != first + 1:
                raise ValueError(
                    f"Invalid tax year '{tax_year}' for {self.code}: expected consecutive years 'YYYY-YYYY'"
                )
            label = f"{first}-{second}"
            start_year = first

        start = self._year_start(start_year)
        end = self._year_start(start_year + 1) - timedelta(microseconds=1)
        return TaxPeriod(label=label, start=start, end=end)

    def tax_year_label(self, moment: datetime) -> str:
        """Tax year label containing the given moment."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        start_year = moment.year if moment >= self._year_start(moment.year) else moment.year - 1
        if self.tax_year_boundaries.is_calendar_year:
            return str(start_year)
        return f"{start_year}-{start_year + 1}"


# Registry of jurisdiction factories and their built instances
_JURISDICTION_FACTORIES: Dict[str, Callable[[], TaxJurisdiction]] = {}
_JURISDICTION_CACHE: Dict[str, TaxJurisdiction] = {}
_REGISTRY_LOCK = threading.Lock()


def register_jurisdiction(jurisdiction_code: str):
    """
    Decorator to register a jurisdiction factory.

    Usage:
        @register_jurisdiction("AU")
        def australia() -> TaxJurisdiction:
            ...
    """
    def decorator(factory: Callable[[], TaxJurisdiction]):
        _JURISDICTION_FACTORIES[jurisdiction_code.upper()] = factory
        return factory
    return decorator


def get_jurisdiction(jurisdiction_code: str) -> TaxJurisdiction:
    """
    Get the (shared, immutable) jurisdiction for a code.

    Raises:
        InvalidJurisdictionError: If the jurisdiction is not supported
    """
    if not isinstance(jurisdiction_code, str) or not jurisdiction_code.strip():
        raise InvalidJurisdictionError(f"Invalid jurisdiction code: {jurisdiction_code!r}")

    code = jurisdiction_code.strip().upper()

    if code not in _JURISDICTION_FACTORIES:
        available = ", ".join(list_available_jurisdictions())
        raise InvalidJurisdictionError(
            f"Tax jurisdiction '{jurisdiction_code}' not found. "
            f"Available: {available}"
        )

    with _REGISTRY_LOCK:
        if code not in _JURISDICTION_CACHE:
            jurisdiction = _JURISDICTION_FACTORIES[code]()
            if jurisdiction.code != code:
                raise InvalidJurisdictionError(
                    f"Factory registered for '{code}' built jurisdiction '{jurisdiction.code}'"
                )
            _JURISDICTION_CACHE[code] = jurisdiction
            logger.debug(f"Loaded jurisdiction {code} with {len(jurisdiction.rules)} rules")
        return _JURISDICTION_CACHE[code]


def resolve_jurisdiction(jurisdiction: Union[str, TaxJurisdiction]) -> TaxJurisdiction:
    """Accept either a code or a jurisdiction instance."""
    if isinstance(jurisdiction, TaxJurisdiction):
        return jurisdiction
    return get_jurisdiction(jurisdiction)


def list_available_jurisdictions() -> List[str]:
    """Sorted list of supported jurisdiction codes."""
    return sorted(_JURISDICTION_FACTORIES.keys())
