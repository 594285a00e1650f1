from decimal import Decimal
from typing import Dict, Optional, Tuple

from money import to_money, round_money

DEFAULT_JURISDICTION = "ON"

# province -> (gst, pst). HST provinces are split into the 5% federal part
# and the provincial remainder.
TAX_RATES: Dict[str, Tuple[Decimal, Decimal]] = {
    "AB": (Decimal("0.05"), Decimal("0.00")),
    "BC": (Decimal("0.05"), Decimal("0.07")),
    "MB": (Decimal("0.05"), Decimal("0.07")),
    "NB": (Decimal("0.05"), Decimal("0.10")),
    "NL": (Decimal("0.05"), Decimal("0.10")),
    "NS": (Decimal("0.05"), Decimal("0.10")),
    "NT": (Decimal("0.05"), Decimal("0.00")),
    "NU": (Decimal("0.05"), Decimal("0.00")),
    "ON": (Decimal("0.05"), Decimal("0.08")),
    "PE": (Decimal("0.05"), Decimal("0.10")),
    "QC": (Decimal("0.05"), Decimal("0.09975")),
    "SK": (Decimal("0.05"), Decimal("0.06")),
    "YT": (Decimal("0.05"), Decimal("0.00")),
}


def tax_rate_for(
    jurisdiction: Optional[str],
    default: str = DEFAULT_JURISDICTION,
) -> Tuple[Decimal, Decimal]:
    """
    resolve (gst, pst) for a jurisdiction code.
    unknown or empty codes fall back to `default`; never raises.
    """
    code = (jurisdiction or "").strip().upper()
    return TAX_RATES.get(code) or TAX_RATES[default]


def calculate_taxes(
    amount,
    jurisdiction: Optional[str],
    default: str = DEFAULT_JURISDICTION,
) -> Dict[str, Decimal]:
    """
    tax breakdown for `amount` in `jurisdiction`.
    each output is rounded independently; the total comes from the unrounded sum.
    """
    base = to_money(amount)
    gst_rate, pst_rate = tax_rate_for(jurisdiction, default)

    gst = base * gst_rate
    pst = base * pst_rate

    return {
        "gst_amount": round_money(gst),
        "pst_amount": round_money(pst),
        "total_tax_amount": round_money(gst + pst),
    }
