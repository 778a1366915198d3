"""
Canadian sales tax rate tables.

One table version is active, effective 2024-01-01. Rates are Decimals so
multiplication against integer cents is exact before rounding.

Regimes:
    Harmonized (HST): a single combined tax on the subtotal
        NB, NL, NS, PE at 15%, ON at 13%
    Compound: federal GST 5% plus an optional provincial component
        PST on the subtotal: BC 7%, MB 7%, SK 6%
        QST on subtotal + GST: QC 9.975%
        GST only: AB, NT, NU, YT
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from decimal import Decimal


class Jurisdiction(str, enum.Enum):
    """Canadian provinces and territories by postal abbreviation."""

    AB = "AB"
    BC = "BC"
    MB = "MB"
    NB = "NB"
    NL = "NL"
    NS = "NS"
    NT = "NT"
    NU = "NU"
    ON = "ON"
    PE = "PE"
    QC = "QC"
    SK = "SK"
    YT = "YT"


class TaxKind(str, enum.Enum):
    """Component taxes that can appear in a breakdown."""

    GST = "gst"
    HST = "hst"
    PST = "pst"
    QST = "qst"


@dataclass(frozen=True)
class JurisdictionRates:
    """
    Rates applicable in one jurisdiction.

    Exactly one of ``hst`` or ``gst`` is set. ``pst`` and ``qst`` are
    mutually exclusive and only accompany ``gst``.
    """

    jurisdiction: Jurisdiction
    name: str
    gst: Decimal | None = None
    hst: Decimal | None = None
    pst: Decimal | None = None
    qst: Decimal | None = None

    @property
    def is_harmonized(self) -> bool:
        return self.hst is not None


FEDERAL_GST_RATE = Decimal("0.05")

RATES_EFFECTIVE_DATE = datetime.date(2024, 1, 1)

TAX_RATES: dict[Jurisdiction, JurisdictionRates] = {
    # Harmonized
    Jurisdiction.NB: JurisdictionRates(Jurisdiction.NB, "New Brunswick", hst=Decimal("0.15")),
    Jurisdiction.NL: JurisdictionRates(
        Jurisdiction.NL, "Newfoundland and Labrador", hst=Decimal("0.15")
    ),
    Jurisdiction.NS: JurisdictionRates(Jurisdiction.NS, "Nova Scotia", hst=Decimal("0.15")),
    Jurisdiction.PE: JurisdictionRates(
        Jurisdiction.PE, "Prince Edward Island", hst=Decimal("0.15")
    ),
    Jurisdiction.ON: JurisdictionRates(Jurisdiction.ON, "Ontario", hst=Decimal("0.13")),
    # GST + PST
    Jurisdiction.BC: JurisdictionRates(
        Jurisdiction.BC, "British Columbia", gst=FEDERAL_GST_RATE, pst=Decimal("0.07")
    ),
    Jurisdiction.MB: JurisdictionRates(
        Jurisdiction.MB, "Manitoba", gst=FEDERAL_GST_RATE, pst=Decimal("0.07")
    ),
    Jurisdiction.SK: JurisdictionRates(
        Jurisdiction.SK, "Saskatchewan", gst=FEDERAL_GST_RATE, pst=Decimal("0.06")
    ),
    # GST + QST (compounded)
    Jurisdiction.QC: JurisdictionRates(
        Jurisdiction.QC, "Quebec", gst=FEDERAL_GST_RATE, qst=Decimal("0.09975")
    ),
    # GST only
    Jurisdiction.AB: JurisdictionRates(Jurisdiction.AB, "Alberta", gst=FEDERAL_GST_RATE),
    Jurisdiction.NT: JurisdictionRates(
        Jurisdiction.NT, "Northwest Territories", gst=FEDERAL_GST_RATE
    ),
    Jurisdiction.NU: JurisdictionRates(Jurisdiction.NU, "Nunavut", gst=FEDERAL_GST_RATE),
    Jurisdiction.YT: JurisdictionRates(Jurisdiction.YT, "Yukon", gst=FEDERAL_GST_RATE),
}

# First letter of a postal code. X covers both NT and NU; it resolves to NT.
POSTAL_PREFIXES: dict[str, Jurisdiction] = {
    "A": Jurisdiction.NL,
    "B": Jurisdiction.NS,
    "C": Jurisdiction.PE,
    "E": Jurisdiction.NB,
    "G": Jurisdiction.QC,
    "H": Jurisdiction.QC,
    "J": Jurisdiction.QC,
    "K": Jurisdiction.ON,
    "L": Jurisdiction.ON,
    "M": Jurisdiction.ON,
    "N": Jurisdiction.ON,
    "P": Jurisdiction.ON,
    "R": Jurisdiction.MB,
    "S": Jurisdiction.SK,
    "T": Jurisdiction.AB,
    "V": Jurisdiction.BC,
    "X": Jurisdiction.NT,
    "Y": Jurisdiction.YT,
}


__all__ = [
    "FEDERAL_GST_RATE",
    "POSTAL_PREFIXES",
    "RATES_EFFECTIVE_DATE",
    "TAX_RATES",
    "Jurisdiction",
    "JurisdictionRates",
    "TaxKind",
]
