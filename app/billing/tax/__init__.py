"""
Canadian sales tax engine.

Pure, deterministic tax computation for the 13 Canadian provinces and
territories. See billing.tax.engine for the computation rules and
billing.tax.rates for the rate table.

Usage:
    from billing.tax import compute_tax, Jurisdiction

    calc = compute_tax(10000, Jurisdiction.ON)
    calc.total_cents  # 11300
"""

from billing.tax.engine import (
    TaxableItem,
    TaxCalculation,
    TaxComponent,
    compute_line_items_tax,
    compute_tax,
    effective_rate,
    format_amount,
    jurisdiction_for_postal_code,
    provider_metadata,
    resolve_jurisdiction,
    tax_summary_lines,
    validate_tax_calculation,
)
from billing.tax.rates import TAX_RATES, Jurisdiction, TaxKind

__all__ = [
    "TAX_RATES",
    "Jurisdiction",
    "TaxCalculation",
    "TaxComponent",
    "TaxKind",
    "TaxableItem",
    "compute_line_items_tax",
    "compute_tax",
    "effective_rate",
    "format_amount",
    "jurisdiction_for_postal_code",
    "provider_metadata",
    "resolve_jurisdiction",
    "tax_summary_lines",
    "validate_tax_calculation",
]
