"""
Tax Report Validation

Consistency checks on a generated TaxReport before it is filed or
archived. Checks never raise; every finding is a ValidationIssue with a
severity, and a report is valid when it has no errors.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from cryptotax.tax.classifier import BUSINESS_CLASSIFICATION
from cryptotax.tax.jurisdictions import list_available_jurisdictions
from cryptotax.utils.logging_config import setup_logger

logger = setup_logger(__name__)

# Rounding allowed between summary totals and their recomputation
SUMMARY_TOLERANCE = Decimal("0.01")

MIN_PERIOD_DAYS = 300
MAX_PERIOD_DAYS = 400


@dataclass
class ValidationIssue:
    """One finding on a report."""

    SEVERITY_ERROR = "ERROR"
    SEVERITY_WARNING = "WARNING"
    SEVERITY_INFO = "INFO"

    severity: str
    code: str
    field: str
    message: str
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)

    def _with(self, severity: str) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == severity]

    @property
    def errors(self) -> List[ValidationIssue]:
        return self._with(ValidationIssue.SEVERITY_ERROR)

    @property
    def warnings(self) -> List[ValidationIssue]:
        return self._with(ValidationIssue.SEVERITY_WARNING)

    @property
    def info(self) -> List[ValidationIssue]:
        return self._with(ValidationIssue.SEVERITY_INFO)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> List[str]:
        return [issue.code for issue in self.issues]


class TaxReportValidator:
    """Validates tax reports for completeness and internal consistency."""

    def __init__(self):
        self.issues: List[ValidationIssue] = []

    def _add(self, severity: str, code: str, field_name: str, message: str, suggestion: Optional[str] = None):
        self.issues.append(ValidationIssue(severity, code, field_name, message, suggestion))

    def validate_report(self, report) -> ValidationResult:
        """Run all checks."""
        self.issues = []

        self.check_required_fields(report)
        self.check_jurisdiction(report)
        self.check_tax_period(report)
        self.check_transactions(report)
        self.check_summary(report)
        self.check_metadata(report)
        self.check_integrity(report)

        result = ValidationResult(list(self.issues))
        if not result.is_valid:
            logger.warning(f"Report {report.id}: {len(result.errors)} validation errors ({', '.join(result.codes())})")
        return result

    def validate_for_filing(self, report) -> ValidationResult:
        """validate_report plus the checks a report must pass before it is filed."""
        result = self.validate_report(report)
        self.issues = list(result.issues)

        if report.summary is not None and report.summary.disposal_count and not report.summary.by_asset:
            self._add(
                ValidationIssue.SEVERITY_WARNING, "MISSING_ASSET_BREAKDOWN", "summary.by_asset",
                "Disposals are reported without a per-asset breakdown"
            )

        if report.period is not None and not 2000 <= report.period.start.year <= 2100:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "INVALID_TAX_YEAR", "period",
                f"Tax year {report.period.label} is outside the supported range"
            )

        unresolved = [issue for issue in report.issues if not issue.recoverable]
        if unresolved:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "UNRESOLVED_ISSUES", "issues",
                f"{len(unresolved)} transaction(s) could not be processed",
                "Supply the missing history or prices, or enable recovery"
            )
        elif report.issues:
            self._add(
                ValidationIssue.SEVERITY_WARNING, "PROCESSING_ISSUES", "issues",
                f"{len(report.issues)} transaction(s) were skipped"
            )

        low_confidence = report.metadata.get("low_confidence_transactions", 0) if report.metadata else 0
        if low_confidence:
            self._add(
                ValidationIssue.SEVERITY_WARNING, "LOW_CONFIDENCE", "metadata.low_confidence_transactions",
                f"{low_confidence} transaction(s) rely on estimated values",
                "Review the recovered cost bases and prices"
            )

        return ValidationResult(list(self.issues))

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_required_fields(self, report):
        for field_name, code in (
            ("id", "MISSING_REPORT_ID"),
            ("jurisdiction", "MISSING_JURISDICTION"),
            ("period", "MISSING_TAX_PERIOD"),
            ("generated_at", "MISSING_GENERATED_AT"),
        ):
            if not getattr(report, field_name, None):
                self._add(ValidationIssue.SEVERITY_ERROR, code, field_name, f"Report {field_name} is required")

    def check_jurisdiction(self, report):
        if report.jurisdiction is None:
            return
        if report.jurisdiction.code not in list_available_jurisdictions():
            self._add(
                ValidationIssue.SEVERITY_WARNING, "UNSUPPORTED_JURISDICTION", "jurisdiction.code",
                f"Jurisdiction {report.jurisdiction.code} is not registered",
                f"Supported: {', '.join(list_available_jurisdictions())}"
            )

    def check_tax_period(self, report):
        period = report.period
        if period is None:
            return
        if period.start is None or period.end is None:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "INCOMPLETE_TAX_PERIOD", "period",
                "Tax period must have a start and an end"
            )
            return

        if period.start >= period.end:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "INVALID_TAX_PERIOD_RANGE", "period",
                "Tax period start must be before its end"
            )
            return

        days = (period.end - period.start).days
        if not MIN_PERIOD_DAYS <= days <= MAX_PERIOD_DAYS:
            self._add(
                ValidationIssue.SEVERITY_WARNING, "UNUSUAL_TAX_PERIOD", "period",
                f"Tax period lasts {days} days",
                "Verify the tax period dates"
            )

        if report.jurisdiction is not None:
            expected = report.jurisdiction.tax_year_label(period.start)
            if expected != period.label:
                self._add(
                    ValidationIssue.SEVERITY_ERROR, "TAX_PERIOD_MISMATCH", "period.label",
                    f"Period {period.label} does not match the {report.jurisdiction.code} tax year {expected}"
                )

    def check_transactions(self, report):
        if not report.transactions:
            self._add(
                ValidationIssue.SEVERITY_WARNING, "NO_TRANSACTIONS", "transactions",
                "Report has no transactions",
                "Verify this is expected for the tax period"
            )
            return

        if report.period is not None:
            outside = sum(1 for item in report.transactions if not report.period.contains(item.transaction.timestamp))
            if outside:
                self._add(
                    ValidationIssue.SEVERITY_ERROR, "TRANSACTIONS_OUTSIDE_PERIOD", "transactions",
                    f"{outside} transaction(s) fall outside the tax period"
                )

        ids = [item.transaction.id for item in report.transactions]
        if len(set(ids)) != len(ids):
            self._add(
                ValidationIssue.SEVERITY_WARNING, "DUPLICATE_TRANSACTION_IDS", "transactions",
                f"{len(ids) - len(set(ids))} transaction id(s) appear more than once",
                "Run the report with deduplication enabled"
            )

    def check_summary(self, report):
        summary = report.summary
        if summary is None:
            self._add(ValidationIssue.SEVERITY_ERROR, "MISSING_SUMMARY", "summary", "Tax summary is missing")
            return

        expected_net = summary.total_capital_gains - summary.total_capital_losses
        if abs(summary.net_capital_gain - expected_net) > SUMMARY_TOLERANCE:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "INVALID_NET_CAPITAL_GAIN", "summary.net_capital_gain",
                f"Net capital gain {summary.net_capital_gain} != gains - losses {expected_net}"
            )

        if summary.total_taxable_gain > summary.total_capital_gains + SUMMARY_TOLERANCE:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "INVALID_TAXABLE_GAIN", "summary.total_taxable_gain",
                "Taxable gain exceeds total capital gains"
            )

        if summary.total_discount > summary.total_capital_gains + SUMMARY_TOLERANCE:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "INVALID_CGT_DISCOUNT", "summary.total_discount",
                "Discount exceeds total capital gains"
            )

        if min(summary.total_capital_gains, summary.total_capital_losses, summary.total_taxable_gain) < 0:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "NEGATIVE_CAPITAL_AMOUNTS", "summary",
                "Capital gains, losses and taxable gain cannot be negative"
            )

        if min(summary.disposal_count, summary.discounted_disposals, summary.personal_use_disposals) < 0:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "NEGATIVE_TRANSACTION_COUNT", "summary",
                "Disposal counts cannot be negative"
            )

        capital_results = [
            result
            for item in report.transactions or []
            if item.treatment.classification != BUSINESS_CLASSIFICATION
            for result in item.capital_gains
        ]
        if len(capital_results) != summary.disposal_count:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "DISPOSAL_COUNT_MISMATCH", "summary.disposal_count",
                f"Summary counts {summary.disposal_count} disposals, transactions hold {len(capital_results)}"
            )

        recomputed = sum((result.taxable_gain for result in capital_results), Decimal(0))
        if abs(recomputed - summary.total_taxable_gain) > SUMMARY_TOLERANCE:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "TAXABLE_GAIN_MISMATCH", "summary.total_taxable_gain",
                f"Summary taxable gain {summary.total_taxable_gain} != transactions {recomputed}"
            )

    def check_metadata(self, report):
        metadata = report.metadata
        if not metadata:
            return

        reported = metadata.get("reported_transactions")
        if reported is not None and reported != len(report.transactions):
            self._add(
                ValidationIssue.SEVERITY_WARNING, "METADATA_MISMATCH", "metadata.reported_transactions",
                f"Metadata counts {reported} transactions, report holds {len(report.transactions)}"
            )

        issue_count = metadata.get("issue_count")
        if issue_count is not None and issue_count != len(report.issues):
            self._add(
                ValidationIssue.SEVERITY_WARNING, "METADATA_MISMATCH", "metadata.issue_count",
                f"Metadata counts {issue_count} issues, report holds {len(report.issues)}"
            )

        currency = metadata.get("currency")
        if currency and report.jurisdiction is not None and currency != report.jurisdiction.currency:
            self._add(
                ValidationIssue.SEVERITY_ERROR, "CURRENCY_MISMATCH", "metadata.currency",
                f"Report currency {currency} differs from {report.jurisdiction.currency}"
            )

    def check_integrity(self, report):
        if report.calculation_hash is None:
            self._add(
                ValidationIssue.SEVERITY_WARNING, "UNSEALED_REPORT", "calculation_hash",
                "Report has no calculation hash"
            )
        elif not report.verify_integrity():
            self._add(
                ValidationIssue.SEVERITY_ERROR, "HASH_MISMATCH", "calculation_hash",
                "Report content does not match its calculation hash",
                "Regenerate the report"
            )


def validate_tax_report(report) -> ValidationResult:
    return TaxReportValidator().validate_report(report)
