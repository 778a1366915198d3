"""
Tax computation for Canadian jurisdictions.

Every function here is pure: no database access, no settings, no clock.
Amounts are integer cents. Each tax component is rounded half-up to the
cent on its own and the components are then summed, so the rounding order
is observable (QC on 205 cents gives 10 + 21 = 31, not round(31.70) = 32).

Usage:
    from billing.tax import compute_tax

    calc = compute_tax(10000, "QC")
    calc.total_tax_cents  # 1547
    calc.total_cents  # 11547
    calc.breakdown[TaxKind.QST].amount_cents  # 1047
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from billing.exceptions import InvalidAmountError, UnknownJurisdictionError
from billing.tax.rates import (
    POSTAL_PREFIXES,
    RATES_EFFECTIVE_DATE,
    TAX_RATES,
    Jurisdiction,
    TaxKind,
)

_CENT = Decimal("1")


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class TaxComponent:
    """One line of a tax breakdown."""

    kind: TaxKind
    rate: Decimal
    amount_cents: int

    def as_dict(self) -> dict[str, Any]:
        return {"rate": str(self.rate), "amount_cents": self.amount_cents}


@dataclass(frozen=True)
class TaxCalculation:
    """
    Result of a tax computation.

    Attributes:
        jurisdiction: Jurisdiction the rates were taken from
        subtotal_cents: Taxable amount
        breakdown: Components keyed by TaxKind, in application order
        total_tax_cents: Sum of all component amounts
        total_cents: subtotal_cents + total_tax_cents
    """

    jurisdiction: Jurisdiction
    subtotal_cents: int
    breakdown: dict[TaxKind, TaxComponent] = field(default_factory=dict)
    total_tax_cents: int = 0
    total_cents: int = 0

    def amount_for(self, kind: TaxKind) -> int:
        """Amount of a single component, 0 when it does not apply."""
        component = self.breakdown.get(kind)
        return component.amount_cents if component else 0

    def as_dict(self) -> dict[str, Any]:
        """JSON-safe representation for storage on orders and invoices."""
        return {
            "jurisdiction": self.jurisdiction.value,
            "subtotal_cents": self.subtotal_cents,
            "total_tax_cents": self.total_tax_cents,
            "total_cents": self.total_cents,
            "breakdown": {kind.value: c.as_dict() for kind, c in self.breakdown.items()},
            "rates_effective": RATES_EFFECTIVE_DATE.isoformat(),
        }


@dataclass(frozen=True)
class TaxableItem:
    """A priced line item for compute_line_items_tax."""

    quantity: int
    unit_price_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.unit_price_cents


# =============================================================================
# Helpers
# =============================================================================


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def _validate_amount(amount: Any, name: str = "subtotal_cents") -> int:
    # bool is an int subclass; True must not be read as one cent
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(
            f"{name} must be an integer number of cents",
            details={name: repr(amount)},
        )
    return amount


def resolve_jurisdiction(value: Jurisdiction | str) -> Jurisdiction:
    """
    Normalise a jurisdiction code.

    Accepts Jurisdiction members or case-insensitive two-letter codes.

    Raises:
        UnknownJurisdictionError: If the code is not a Canadian jurisdiction
    """
    if isinstance(value, Jurisdiction):
        return value
    code = str(value or "").strip().upper()
    try:
        return Jurisdiction(code)
    except ValueError:
        raise UnknownJurisdictionError(
            f"Unknown tax jurisdiction '{value}'",
            details={"jurisdiction": str(value)},
        ) from None


def jurisdiction_for_postal_code(postal_code: str) -> Jurisdiction | None:
    """Best-effort jurisdiction from the first letter of a postal code."""
    cleaned = "".join((postal_code or "").split()).upper()
    if not cleaned:
        return None
    return POSTAL_PREFIXES.get(cleaned[0])


def effective_rate(jurisdiction: Jurisdiction | str) -> Decimal:
    """
    Combined rate applied to a subtotal, ignoring rounding.

    QST compounds on GST, so it contributes qst * (1 + gst).
    """
    rates = TAX_RATES[resolve_jurisdiction(jurisdiction)]
    if rates.is_harmonized:
        return rates.hst
    total = rates.gst
    if rates.pst is not None:
        total += rates.pst
    if rates.qst is not None:
        total += rates.qst * (1 + rates.gst)
    return total


# =============================================================================
# Computation
# =============================================================================


def compute_tax(subtotal_cents: int, jurisdiction: Jurisdiction | str) -> TaxCalculation:
    """
    Compute sales tax on a subtotal.

    Args:
        subtotal_cents: Taxable amount in cents
        jurisdiction: Jurisdiction code or member

    Returns:
        TaxCalculation with a per-component breakdown. A zero or negative
        subtotal yields an empty breakdown and total_cents == subtotal_cents.

    Raises:
        UnknownJurisdictionError: Jurisdiction not in the rate table
        InvalidAmountError: Subtotal is not an integer
    """
    subtotal_cents = _validate_amount(subtotal_cents)
    resolved = resolve_jurisdiction(jurisdiction)

    if subtotal_cents <= 0:
        return TaxCalculation(
            jurisdiction=resolved,
            subtotal_cents=subtotal_cents,
            total_cents=subtotal_cents,
        )

    rates = TAX_RATES[resolved]
    subtotal = Decimal(subtotal_cents)
    breakdown: dict[TaxKind, TaxComponent] = {}

    if rates.is_harmonized:
        breakdown[TaxKind.HST] = TaxComponent(
            TaxKind.HST, rates.hst, _round_half_up(subtotal * rates.hst)
        )
    else:
        gst_cents = _round_half_up(subtotal * rates.gst)
        breakdown[TaxKind.GST] = TaxComponent(TaxKind.GST, rates.gst, gst_cents)
        if rates.pst is not None:
            breakdown[TaxKind.PST] = TaxComponent(
                TaxKind.PST, rates.pst, _round_half_up(subtotal * rates.pst)
            )
        if rates.qst is not None:
            # QST base includes the already-rounded GST
            qst_base = subtotal + gst_cents
            breakdown[TaxKind.QST] = TaxComponent(
                TaxKind.QST, rates.qst, _round_half_up(qst_base * rates.qst)
            )

    total_tax = sum(component.amount_cents for component in breakdown.values())
    return TaxCalculation(
        jurisdiction=resolved,
        subtotal_cents=subtotal_cents,
        breakdown=breakdown,
        total_tax_cents=total_tax,
        total_cents=subtotal_cents + total_tax,
    )


def compute_line_items_tax(
    items: Iterable[TaxableItem | Mapping[str, int]],
    jurisdiction: Jurisdiction | str,
) -> TaxCalculation:
    """
    Tax a set of line items.

    Items are summed first and the subtotal is taxed once, so per-item
    rounding never accumulates.
    """
    subtotal = 0
    for item in items:
        if isinstance(item, Mapping):
            item = TaxableItem(item["quantity"], item["unit_price_cents"])
        _validate_amount(item.quantity, "quantity")
        _validate_amount(item.unit_price_cents, "unit_price_cents")
        if item.quantity <= 0 or item.unit_price_cents < 0:
            raise InvalidAmountError(
                "Line items need a positive quantity and a non-negative price",
                details={"quantity": item.quantity, "unit_price_cents": item.unit_price_cents},
            )
        subtotal += item.subtotal_cents
    return compute_tax(subtotal, jurisdiction)


def validate_tax_calculation(calculation: TaxCalculation) -> list[str]:
    """
    Audit a calculation against the current rate table.

    Returns:
        List of discrepancy descriptions; empty when the calculation is
        consistent and matches a fresh computation.
    """
    problems: list[str] = []
    if calculation.total_cents != calculation.subtotal_cents + calculation.total_tax_cents:
        problems.append("total_cents does not equal subtotal_cents + total_tax_cents")

    component_sum = sum(c.amount_cents for c in calculation.breakdown.values())
    if component_sum != calculation.total_tax_cents:
        problems.append(
            f"components sum to {component_sum}, total_tax_cents is "
            f"{calculation.total_tax_cents}"
        )

    expected = compute_tax(calculation.subtotal_cents, calculation.jurisdiction)
    for kind in set(expected.breakdown) | set(calculation.breakdown):
        if expected.amount_for(kind) != calculation.amount_for(kind):
            problems.append(
                f"{kind.name} is {calculation.amount_for(kind)}, "
                f"expected {expected.amount_for(kind)}"
            )
    return problems


# =============================================================================
# Presentation
# =============================================================================


def format_amount(cents: int, currency: str = "CAD") -> str:
    """Format cents for receipts, e.g. 11300 -> '$113.00 CAD'."""
    return f"${Decimal(cents) / 100:.2f} {currency.upper()}"


def _rate_percent(rate: Decimal, places: int) -> str:
    return f"{rate * 100:.{places}f}"


# QST is quoted to three decimals (9.975%), everything else to one.
_DISPLAY_PLACES = {TaxKind.HST: 1, TaxKind.GST: 1, TaxKind.PST: 1, TaxKind.QST: 3}


def tax_summary_lines(calculation: TaxCalculation) -> list[str]:
    """Human-readable breakdown for receipts and invoices."""
    lines = [
        f"{kind.name} ({_rate_percent(c.rate, _DISPLAY_PLACES[kind])}%): "
        f"{format_amount(c.amount_cents)}"
        for kind, c in calculation.breakdown.items()
    ]
    lines.append(f"Total Tax: {format_amount(calculation.total_tax_cents)}")
    return lines


def provider_metadata(calculation: TaxCalculation) -> dict[str, str]:
    """Flat string map attached to provider objects (payment intents, invoices)."""
    metadata = {
        "tax_jurisdiction": calculation.jurisdiction.value,
        "tax_subtotal": str(calculation.subtotal_cents),
        "tax_total": str(calculation.total_tax_cents),
        "tax_rates_effective": RATES_EFFECTIVE_DATE.isoformat(),
    }
    for kind, component in calculation.breakdown.items():
        places = 3 if kind is TaxKind.QST else 2
        metadata[f"{kind.value}_rate"] = _rate_percent(component.rate, places)
        metadata[f"{kind.value}_amount"] = str(component.amount_cents)
    return metadata


__all__ = [
    "TaxCalculation",
    "TaxComponent",
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
