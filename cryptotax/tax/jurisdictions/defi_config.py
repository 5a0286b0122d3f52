"""
DeFi Classification Configuration

How each DeFi interaction is treated, per jurisdiction. Keys are
transaction types; loans are keyed by operation.

Format:
{
    "JURISDICTION": {
        "SWAP" | "LIQUIDITY_ADD" | "LIQUIDITY_REMOVE" | "LOAN:BORROW" | "LOAN:REPAY"
        | "STAKING_DEPOSIT" | "STAKING_WITHDRAWAL": {
            "event_type": "DISPOSAL" | "ACQUISITION" | "INCOME" | "NON_TAXABLE",
            "classification": "...",   # shown on the report
            "reason": "...",           # included in treatment_reason
        }
    }
}

A DeFi transaction with no entry is reported as non-taxable and flagged
for manual review.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from typing import Dict

from cryptotax.tax.jurisdictions.base import DeFiClassification
from cryptotax.tax.tax_events import TaxEventType


DEFI_CLASSIFICATIONS = {
    # ATO guidance on DeFi and crypto-to-crypto exchanges (2021)
    "AU": {
        "SWAP": {
            "event_type": "DISPOSAL",
            "classification": "Token Swap",
            "reason": "Swapping tokens is a disposal of one asset and acquisition of another (CGT event)",
        },
        "LIQUIDITY_ADD": {
            "event_type": "DISPOSAL",
            "classification": "Liquidity Pool Operation",
            "reason": "Adding liquidity disposes of the deposited tokens in exchange for LP tokens",
        },
        "LIQUIDITY_REMOVE": {
            "event_type": "DISPOSAL",
            "classification": "Liquidity Pool Operation",
            "reason": "Removing liquidity disposes of LP tokens in exchange for the underlying tokens",
        },
        "LOAN:BORROW": {
            "event_type": "ACQUISITION",
            "classification": "DeFi Borrowing",
            "reason": "Borrowed tokens are received at market value and establish a cost base",
        },
        "LOAN:REPAY": {
            "event_type": "DISPOSAL",
            "classification": "DeFi Loan Repayment",
            "reason": "Repaying a loan in tokens disposes of the tokens used",
        },
        "STAKING_DEPOSIT": {
            "event_type": "NON_TAXABLE",
            "classification": "Staking Deposit",
            "reason": "Locking tokens for staking keeps beneficial ownership; no CGT event",
        },
        "STAKING_WITHDRAWAL": {
            "event_type": "NON_TAXABLE",
            "classification": "Staking Withdrawal",
            "reason": "Unlocking staked tokens returns the same tokens; no CGT event",
        },
    },

    # BMF letter on virtual currencies (10 May 2022)
    "DE": {
        "SWAP": {
            "event_type": "DISPOSAL",
            "classification": "Tausch (private Veräußerung)",
            "reason": "Exchanging tokens is a private sale under §23 EStG",
        },
        "LIQUIDITY_ADD": {
            "event_type": "DISPOSAL",
            "classification": "Liquidity Pool Operation",
            "reason": "Providing liquidity exchanges tokens for LP tokens (private sale)",
        },
        "LIQUIDITY_REMOVE": {
            "event_type": "DISPOSAL",
            "classification": "Liquidity Pool Operation",
            "reason": "Redeeming LP tokens exchanges them for the underlying tokens (private sale)",
        },
        "LOAN:BORROW": {
            "event_type": "NON_TAXABLE",
            "classification": "Darlehen",
            "reason": "Borrowing tokens creates a repayment obligation, not income",
        },
        "LOAN:REPAY": {
            "event_type": "NON_TAXABLE",
            "classification": "Darlehen",
            "reason": "Repaying borrowed tokens settles the obligation",
        },
        "STAKING_DEPOSIT": {
            "event_type": "NON_TAXABLE",
            "classification": "Staking Deposit",
            "reason": "Staking does not extend the holding period and is not a sale",
        },
        "STAKING_WITHDRAWAL": {
            "event_type": "NON_TAXABLE",
            "classification": "Staking Withdrawal",
            "reason": "Unstaking returns the same tokens",
        },
    },
}


def load_defi_table(jurisdiction_code: str) -> Dict[str, DeFiClassification]:
    """Typed DeFi table for a jurisdiction (empty if none is configured)."""
    raw = DEFI_CLASSIFICATIONS.get(jurisdiction_code.upper(), {})
    return {
        key: DeFiClassification(
            event_type=TaxEventType(entry["event_type"]),
            classification=entry["classification"],
            reason=entry["reason"],
        )
        for key, entry in raw.items()
    }
