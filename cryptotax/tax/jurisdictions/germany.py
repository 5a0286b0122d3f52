"""
German Tax Rules (private Veräußerungsgeschäfte)

Crypto held privately is taxed under §23 EStG:
- Gains are fully tax-free after a holding period of more than one year
  (expressed as a 100% discount past 365 days)
- No personal use exemption per disposal
- Staking and lending rewards are other income (§22 Nr. 3 EStG)
- FIFO is the prescribed lot order; specific identification is not allowed
- Calendar tax year

References:
- §23 Abs. 1 Satz 1 Nr. 2 EStG
- BMF letter on virtual currencies, 10 May 2022

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from datetime import date
from decimal import Decimal

from cryptotax.tax.jurisdictions.base import (
    RuleKind,
    TaxJurisdiction,
    TaxRule,
    TaxRuleCategory,
    TaxYearBoundaries,
    register_jurisdiction,
)
from cryptotax.tax.jurisdictions.defi_config import load_defi_table
from cryptotax.tax.tax_events import CostBasisMethod


SPECULATION_PERIOD_DAYS = 365  # 1 year


GERMAN_RULES = (
    TaxRule(
        id="DE_PRIVATE_SALE", jurisdiction="DE",
        name="Privates Veräußerungsgeschäft",
        description="Selling or exchanging crypto within one year of acquisition is a taxable private sale",
        category=TaxRuleCategory.CAPITAL_GAINS, kind=RuleKind.CGT_EVENT,
        effective_from=date(1999, 1, 1), applicable_transaction_types=("DISPOSAL",),
    ),
    TaxRule(
        id="DE_HOLDING_PERIOD_EXEMPTION", jurisdiction="DE",
        name="Spekulationsfrist",
        description="Gains on crypto held for more than one year are tax-free",
        category=TaxRuleCategory.EXEMPTIONS, kind=RuleKind.CGT_DISCOUNT,
        effective_from=date(1999, 1, 1), applicable_transaction_types=("DISPOSAL",),
    ),
    TaxRule(
        id="DE_DEFI_CLASSIFICATION", jurisdiction="DE",
        name="DeFi Classification (BMF 2022)",
        description="Treatment of swaps, liquidity provision and lending per the BMF letter",
        category=TaxRuleCategory.REPORTING, kind=RuleKind.DEFI_CLASSIFICATION,
        effective_from=date(2022, 5, 10),
        applicable_transaction_types=("SWAP", "LIQUIDITY_ADD", "LIQUIDITY_REMOVE", "LOAN"),
    ),
    TaxRule(
        id="DE_OTHER_INCOME", jurisdiction="DE",
        name="Sonstige Einkünfte",
        description="Staking, lending and airdrop rewards are other income when received",
        category=TaxRuleCategory.INCOME, kind=RuleKind.ORDINARY_INCOME,
        effective_from=date(2022, 5, 10),
        applicable_transaction_types=("STAKING_REWARD", "INTEREST", "AIRDROP", "MINING"),
    ),
    TaxRule(
        id="DE_WERBUNGSKOSTEN", jurisdiction="DE",
        name="Werbungskosten",
        description="Transaction fees reduce the taxable gain or income",
        category=TaxRuleCategory.DEDUCTIONS, kind=RuleKind.DEDUCTION,
        effective_from=date(1999, 1, 1), applicable_transaction_types=("FEE",),
    ),
    TaxRule(
        id="DE_NON_TAXABLE_MOVEMENT", jurisdiction="DE",
        name="Nicht steuerbare Vorgänge",
        description="Transfers between own wallets are not sales",
        category=TaxRuleCategory.REPORTING, kind=RuleKind.NON_TAXABLE,
        effective_from=date(1999, 1, 1), applicable_transaction_types=("TRANSFER",),
    ),
)


@register_jurisdiction("DE")
def germany() -> TaxJurisdiction:
    """German jurisdiction (private investor)."""
    return TaxJurisdiction(
        code="DE",
        name="Germany",
        currency="EUR",
        discount_rate=Decimal("1"),
        holding_period_threshold_days=SPECULATION_PERIOD_DAYS,
        personal_use_threshold=None,
        tax_year_boundaries=TaxYearBoundaries(start_month=1, start_day=1),
        supported_methods=(CostBasisMethod.FIFO,),
        rules=GERMAN_RULES,
        defi_classification=load_defi_table("DE"),
        business_trading_threshold=None,
        default_method=CostBasisMethod.FIFO,
    )
