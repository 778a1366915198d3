"""
Tests for the Canadian tax engine.

The engine is pure, so these tests need no database.
"""

import dataclasses
from decimal import Decimal

import pytest

from billing.exceptions import InvalidAmountError, UnknownJurisdictionError
from billing.tax import (
    TAX_RATES,
    Jurisdiction,
    TaxableItem,
    TaxKind,
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


# =============================================================================
# compute_tax
# =============================================================================


class TestComputeTax:
    """Tests for compute_tax across the three regimes."""

    def test_ontario_harmonized(self):
        """Should apply 13% HST in Ontario."""
        calc = compute_tax(10000, "ON")

        assert calc.breakdown[TaxKind.HST].amount_cents == 1300
        assert calc.total_tax_cents == 1300
        assert calc.total_cents == 11300
        assert set(calc.breakdown) == {TaxKind.HST}

    def test_british_columbia_gst_plus_pst(self):
        """Should apply GST and PST on the subtotal in BC."""
        calc = compute_tax(10000, Jurisdiction.BC)

        assert calc.amount_for(TaxKind.GST) == 500
        assert calc.amount_for(TaxKind.PST) == 700
        assert calc.total_tax_cents == 1200
        assert calc.total_cents == 11200

    def test_quebec_qst_compounds_on_gst(self):
        """Should compute QST on subtotal plus GST in Quebec."""
        calc = compute_tax(10000, "QC")

        assert calc.amount_for(TaxKind.GST) == 500
        # 10500 * 0.09975 = 1047.375
        assert calc.amount_for(TaxKind.QST) == 1047
        assert calc.total_tax_cents == 1547
        assert calc.total_cents == 11547

    @pytest.mark.parametrize(
        "jurisdiction,expected_tax",
        [
            ("NB", 1500),
            ("NL", 1500),
            ("NS", 1500),
            ("PE", 1500),
            ("MB", 1200),
            ("SK", 1100),
            ("AB", 500),
            ("NT", 500),
            ("NU", 500),
            ("YT", 500),
        ],
    )
    def test_rate_table(self, jurisdiction, expected_tax):
        """Should match the rate table for every jurisdiction."""
        assert compute_tax(10000, jurisdiction).total_tax_cents == expected_tax

    def test_gst_only_jurisdictions_have_single_component(self):
        """Should produce only GST where no provincial tax applies."""
        calc = compute_tax(10000, "AB")

        assert set(calc.breakdown) == {TaxKind.GST}

    def test_components_rounded_independently(self):
        """Should round each component before summing (observable in QC)."""
        calc = compute_tax(205, "QC")

        # GST 10.25 -> 10, QST on 215: 21.446 -> 21
        assert calc.amount_for(TaxKind.GST) == 10
        assert calc.amount_for(TaxKind.QST) == 21
        assert calc.total_tax_cents == 31  # rounding the sum would give 32

    def test_rounds_half_up(self):
        """Should round exact half cents up."""
        assert compute_tax(50, "ON").total_tax_cents == 7  # 6.5
        assert compute_tax(10, "AB").total_tax_cents == 1  # 0.5

    def test_zero_subtotal(self):
        """Should return a zero result for a zero subtotal."""
        calc = compute_tax(0, "QC")

        assert calc.breakdown == {}
        assert calc.total_tax_cents == 0
        assert calc.total_cents == 0

    def test_negative_subtotal(self):
        """Should return no tax and total equal to subtotal when negative."""
        calc = compute_tax(-500, "ON")

        assert calc.total_tax_cents == 0
        assert calc.total_cents == -500

    def test_unknown_jurisdiction(self):
        """Should raise a validation error for unknown jurisdictions."""
        with pytest.raises(UnknownJurisdictionError) as exc_info:
            compute_tax(10000, "ZZ")

        assert exc_info.value.details["jurisdiction"] == "ZZ"

    @pytest.mark.parametrize("amount", [100.0, "100", True, None])
    def test_rejects_non_integer_amounts(self, amount):
        """Should reject amounts that are not integer cents."""
        with pytest.raises(InvalidAmountError):
            compute_tax(amount, "ON")

    def test_is_deterministic(self):
        """Should return equal results for equal inputs."""
        assert compute_tax(12345, "QC") == compute_tax(12345, "QC")

    @pytest.mark.parametrize("jurisdiction", list(Jurisdiction))
    def test_components_sum_to_total(self, jurisdiction):
        """Should keep component amounts summing to the total tax."""
        for subtotal in (1, 7, 99, 205, 1999, 10001, 123457):
            calc = compute_tax(subtotal, jurisdiction)
            assert sum(c.amount_cents for c in calc.breakdown.values()) == calc.total_tax_cents
            assert calc.total_cents == subtotal + calc.total_tax_cents


# =============================================================================
# Jurisdiction helpers
# =============================================================================


class TestJurisdictionHelpers:
    """Tests for jurisdiction resolution and rate lookup."""

    def test_rate_table_covers_all_jurisdictions(self):
        """Should define rates for all 13 jurisdictions."""
        assert set(TAX_RATES) == set(Jurisdiction)
        assert len(TAX_RATES) == 13

    def test_resolve_is_case_insensitive(self):
        """Should accept lowercase codes with whitespace."""
        assert resolve_jurisdiction(" qc ") is Jurisdiction.QC

    @pytest.mark.parametrize(
        "postal_code,expected",
        [
            ("M5V 3L9", Jurisdiction.ON),
            ("h2x1y4", Jurisdiction.QC),
            ("V6B 1A1", Jurisdiction.BC),
            ("X0A 0H0", Jurisdiction.NT),
            ("A1C 5M2", Jurisdiction.NL),
        ],
    )
    def test_postal_code_lookup(self, postal_code, expected):
        """Should map postal code prefixes to jurisdictions."""
        assert jurisdiction_for_postal_code(postal_code) is expected

    def test_postal_code_unknown_prefix(self):
        """Should return None for prefixes not used in Canada."""
        assert jurisdiction_for_postal_code("D1A 1A1") is None
        assert jurisdiction_for_postal_code("") is None

    def test_effective_rate_compounds_qst(self):
        """Should include QST on the GST-inclusive base."""
        assert effective_rate("QC") == Decimal("0.1547375")
        assert effective_rate("ON") == Decimal("0.13")
        assert effective_rate("BC") == Decimal("0.12")


# =============================================================================
# Line items and auditing
# =============================================================================


class TestLineItemsAndValidation:
    """Tests for compute_line_items_tax and validate_tax_calculation."""

    def test_line_items_taxed_on_sum(self):
        """Should sum line items and tax the subtotal once."""
        calc = compute_line_items_tax(
            [TaxableItem(quantity=2, unit_price_cents=2500), {"quantity": 1, "unit_price_cents": 5000}],
            "ON",
        )

        assert calc.subtotal_cents == 10000
        assert calc.total_tax_cents == 1300

    def test_line_items_reject_zero_quantity(self):
        """Should reject non-positive quantities."""
        with pytest.raises(InvalidAmountError):
            compute_line_items_tax([TaxableItem(quantity=0, unit_price_cents=100)], "ON")

    def test_valid_calculation_has_no_problems(self):
        """Should report no problems for an engine-produced calculation."""
        assert validate_tax_calculation(compute_tax(10000, "QC")) == []

    def test_tampered_calculation_is_reported(self):
        """Should report totals that do not add up."""
        calc = dataclasses.replace(compute_tax(10000, "ON"), total_cents=11000)

        problems = validate_tax_calculation(calc)

        assert problems
        assert "total_cents" in problems[0]


# =============================================================================
# Presentation
# =============================================================================


class TestPresentation:
    """Tests for receipt lines and provider metadata."""

    def test_format_amount(self):
        """Should format cents as Canadian dollars."""
        assert format_amount(11300) == "$113.00 CAD"
        assert format_amount(5) == "$0.05 CAD"

    def test_summary_lines_ontario(self):
        """Should describe HST with one decimal place."""
        assert tax_summary_lines(compute_tax(10000, "ON")) == [
            "HST (13.0%): $13.00 CAD",
            "Total Tax: $13.00 CAD",
        ]

    def test_summary_lines_quebec(self):
        """Should describe QST with three decimal places."""
        assert tax_summary_lines(compute_tax(10000, "QC")) == [
            "GST (5.0%): $5.00 CAD",
            "QST (9.975%): $10.47 CAD",
            "Total Tax: $15.47 CAD",
        ]

    def test_provider_metadata(self):
        """Should flatten the breakdown into string metadata."""
        metadata = provider_metadata(compute_tax(10000, "QC"))

        assert metadata["tax_jurisdiction"] == "QC"
        assert metadata["tax_total"] == "1547"
        assert metadata["gst_rate"] == "5.00"
        assert metadata["qst_rate"] == "9.975"
        assert metadata["qst_amount"] == "1047"
        assert all(isinstance(value, str) for value in metadata.values())

    def test_as_dict_is_json_safe(self):
        """Should serialise rates as strings for JSON storage."""
        data = compute_tax(10000, "BC").as_dict()

        assert data["breakdown"]["pst"] == {"rate": "0.07", "amount_cents": 700}
        assert data["total_cents"] == 11200
