from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_percent(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def safe_ratio(numerator, denominator) -> Decimal:
    denominator = to_decimal(denominator)
    if denominator == 0:
        return ZERO
    return to_decimal(numerator) / denominator


def average_ticket(total, count: int) -> Decimal:
    if not count:
        return ZERO
    return to_decimal(total) / Decimal(count)


def percent_change(current, previous) -> Decimal:
    """Period-over-period change in percent.

    Returns 100 when there is no previous amount but some current amount,
    and 0 when both are empty.
    """
    current = to_decimal(current)
    previous = to_decimal(previous)
    if previous > 0:
        return (current - previous) / previous * HUNDRED
    return HUNDRED if current > 0 else ZERO


def signed_percent_change(current, previous) -> Decimal:
    """Like percent_change, but relative to |previous| so losses compare too."""
    current = to_decimal(current)
    previous = to_decimal(previous)
    if previous != 0:
        return (current - previous) / abs(previous) * HUNDRED
    return HUNDRED if current > 0 else ZERO
