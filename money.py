from decimal import Decimal, ROUND_HALF_UP, getcontext

getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value) -> Decimal:
    """
    coerce ints / strings / Decimals (and floats via str) into an unrounded Decimal.
    None is treated as zero so optional DB columns can be summed directly.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(value) -> Decimal:
    """
    single rounding step to 2 dp, half-up.
    callers accumulate unrounded sums and call this once at the end.
    """
    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value) -> int:
    """
    dollars -> cents for the payment provider.
    """
    return int((to_money(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fmt_money(value) -> str:
    return f"{round_money(value):.2f}"
