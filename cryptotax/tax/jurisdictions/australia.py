"""
Australian Tax Rules (ATO)

Implements the Australian treatment of crypto assets:
- CGT event A1 on every disposal (sale, swap, spend)
- 50% CGT discount for assets held at least 12 months (individuals)
- Personal use asset exemption for disposals under $10,000 AUD
- Staking, interest and airdrops taxed as ordinary income on receipt
- Tax year runs 1 July to 30 June ("2023-2024")

References:
- ITAA 1997 Div 115 (CGT discount)
- ITAA 1997 s118-10 (personal use assets)
- ATO guidance "Crypto asset investments" and DeFi (2021)

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


CGT_DISCOUNT_RATE = Decimal("0.5")  # 50%
CGT_HOLDING_PERIOD_DAYS = 365
PERSONAL_USE_THRESHOLD = Decimal("10000")  # AUD

# Trades per year at which activity is treated as carrying on a business
BUSINESS_TRADING_THRESHOLD = 1000


def _rule(rule_id, name, description, category, kind, effective_from, types=()):
    return TaxRule(
        id=rule_id,
        jurisdiction="AU",
        name=name,
        description=description,
        category=category,
        kind=kind,
        effective_from=effective_from,
        applicable_transaction_types=tuple(types),
    )


AUSTRALIAN_RULES = (
    _rule(
        "AU_CGT_EVENT_A1", "CGT Event A1 - Disposal",
        "Disposing of a crypto asset (sale, swap, spend) is a CGT event",
        TaxRuleCategory.CAPITAL_GAINS, RuleKind.CGT_EVENT, date(1985, 9, 20),
        ["DISPOSAL"],
    ),
    _rule(
        "AU_CGT_DISCOUNT", "CGT Discount",
        "50% discount on capital gains for assets held for at least 12 months",
        TaxRuleCategory.CAPITAL_GAINS, RuleKind.CGT_DISCOUNT, date(1999, 9, 21),
        ["DISPOSAL"],
    ),
    _rule(
        "AU_PERSONAL_USE_EXEMPTION", "Personal Use Asset Exemption",
        "CGT exemption for personal use assets acquired for less than $10,000 AUD",
        TaxRuleCategory.EXEMPTIONS, RuleKind.PERSONAL_USE, date(1985, 9, 20),
        ["DISPOSAL"],
    ),
    _rule(
        "AU_DEFI_CLASSIFICATION", "DeFi Transaction Classification",
        "Classification rules for DeFi transactions including swaps, lending and liquidity provision",
        TaxRuleCategory.REPORTING, RuleKind.DEFI_CLASSIFICATION, date(2021, 1, 1),
        ["SWAP", "LIQUIDITY_ADD", "LIQUIDITY_REMOVE", "LOAN", "STAKING_DEPOSIT", "STAKING_WITHDRAWAL"],
    ),
    _rule(
        "AU_ORDINARY_INCOME", "Crypto Rewards as Ordinary Income",
        "Staking rewards, interest, airdrops and mining are assessable income at market value when received",
        TaxRuleCategory.INCOME, RuleKind.ORDINARY_INCOME, date(2014, 12, 17),
        ["STAKING_REWARD", "INTEREST", "AIRDROP", "MINING", "LAUNCHPOOL", "DISTRIBUTION"],
    ),
    _rule(
        "AU_BUSINESS_TRADING", "Carrying On a Business of Trading",
        "Profits of a crypto trading business are ordinary income, not capital gains",
        TaxRuleCategory.INCOME, RuleKind.BUSINESS_TRADING, date(1997, 7, 1),
        ["DISPOSAL"],
    ),
    _rule(
        "AU_DEDUCTIONS", "Deductible Expenses",
        "Transaction fees and interest paid to earn assessable income are deductible",
        TaxRuleCategory.DEDUCTIONS, RuleKind.DEDUCTION, date(1997, 7, 1),
        ["FEE", "INTEREST"],
    ),
    _rule(
        "AU_NON_TAXABLE_MOVEMENT", "Non-Taxable Movements",
        "Moving assets between wallets you own is not a CGT event",
        TaxRuleCategory.REPORTING, RuleKind.NON_TAXABLE, date(1985, 9, 20),
        ["TRANSFER", "FUTURES_TRADE", "UNKNOWN"],
    ),
)


@register_jurisdiction("AU")
def australia() -> TaxJurisdiction:
    """Australian jurisdiction (individual taxpayer)."""
    return TaxJurisdiction(
        code="AU",
        name="Australia",
        currency="AUD",
        discount_rate=CGT_DISCOUNT_RATE,
        holding_period_threshold_days=CGT_HOLDING_PERIOD_DAYS,
        personal_use_threshold=PERSONAL_USE_THRESHOLD,
        tax_year_boundaries=TaxYearBoundaries(start_month=7, start_day=1),
        supported_methods=(CostBasisMethod.FIFO, CostBasisMethod.SPECIFIC_IDENTIFICATION),
        rules=AUSTRALIAN_RULES,
        defi_classification=load_defi_table("AU"),
        business_trading_threshold=BUSINESS_TRADING_THRESHOLD,
        personal_use_max_disposals=3,
        default_method=CostBasisMethod.FIFO,
    )
