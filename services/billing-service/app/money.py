"""
Integer-cent money and integer-minute duration arithmetic.

Every amount in the service is an ``int`` number of cents and every duration an
``int`` number of minutes. Intermediate products are computed with ``Decimal``
and rounded exactly once, half away from zero.
"""

import math
import re
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Tuple, Union

Number = Union[int, float, Decimal]

MINUTES_PER_HOUR = 60
NBSP = "\u00a0"

_SPACE_RUN = re.compile(r" {2,}")


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round_half_away(value: Number) -> int:
    """Round to the nearest whole cent, ties away from zero"""
    return int(_to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def amount_for_minutes(minutes: int, hourly_rate_cents: int) -> int:
    """Pre-discount amount for ``minutes`` of work billed at ``hourly_rate_cents``"""
    exact = Decimal(minutes) * Decimal(hourly_rate_cents) / Decimal(MINUTES_PER_HOUR)
    return round_half_away(exact)


def discount_for_amount(pre_discount_cents: int, discount_percent: Number = 0) -> int:
    """Discount in cents for a pre-discount amount"""
    if not discount_percent:
        return 0
    exact = Decimal(pre_discount_cents) * _to_decimal(discount_percent) / Decimal(100)
    return round_half_away(exact)


def apply_discount(pre_discount_cents: int, discount_percent: Number = 0) -> Tuple[int, int]:
    """Return ``(discount_cents, post_discount_cents)``"""
    discount_cents = discount_for_amount(pre_discount_cents, discount_percent)
    return discount_cents, pre_discount_cents - discount_cents


def billable_amount(minutes: int, hourly_rate_cents: int, discount_percent: Number = 0) -> int:
    """Post-discount amount for a block of minutes"""
    pre_discount = amount_for_minutes(minutes, hourly_rate_cents)
    return apply_discount(pre_discount, discount_percent)[1]


# --- Display formatting (documents only, never fed back into arithmetic) ---

def format_currency(cents: int) -> str:
    """Format cents as ``$X.XX``"""
    amount = (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if amount < 0:
        return f"-${-amount:.2f}"
    return f"${amount:.2f}"


def format_hours(minutes: int) -> str:
    """Format minutes as decimal hours with two places (90 -> ``1.50``)"""
    value = (Decimal(minutes) / Decimal(MINUTES_PER_HOUR)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{value:.2f}"


def format_percent(percent: Number) -> str:
    """Format a discount percentage without trailing zeros (10 -> ``10%``, 12.5 -> ``12.5%``)"""
    if not percent:
        return "0%"
    text = format(_to_decimal(percent).normalize(), "f")
    return f"{text}%"


def format_minutes(minutes: int) -> str:
    """Format minutes as ``1h 30m`` or ``45m``"""
    hours, rest = divmod(minutes, MINUTES_PER_HOUR)
    if hours > 0:
        return f"{hours}h {rest}m"
    return f"{rest}m"


def preserve_spaces(text: str) -> str:
    """Keep runs of spaces visible while still allowing line wrapping.

    A run of N >= 2 spaces becomes one ordinary space followed by N-1
    non-breaking spaces.
    """
    if not text:
        return ""
    return _SPACE_RUN.sub(lambda match: " " + NBSP * (len(match.group(0)) - 1), str(text))


# --- Duration input ---

def parse_duration(value: Union[str, int, float, None]) -> int:
    """Parse a duration as typed by a user into minutes, rounded up to 5.

    Accepts ``H:MM`` ("1:30"), decimal hours ("1.5", "0,75") and whole numbers,
    where numbers below 10 are hours and anything else is minutes.
    """
    if value is None or value == "":
        return 0

    minutes: Decimal
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            if ":" in text:
                hours_part, minutes_part = text.split(":", 1)
                minutes = Decimal(hours_part or "0") * MINUTES_PER_HOUR + Decimal(minutes_part or "0")
            elif "." in text or "," in text:
                minutes = Decimal(text.replace(",", ".")) * MINUTES_PER_HOUR
            else:
                whole = int(text)
                minutes = Decimal(whole * MINUTES_PER_HOUR if whole < 10 else whole)
        except (ArithmeticError, ValueError):
            raise ValueError(f"Unrecognised duration: {value!r}")
    else:
        number = _to_decimal(value)
        if number != number.to_integral_value():
            minutes = number * MINUTES_PER_HOUR
        else:
            minutes = number * MINUTES_PER_HOUR if number < 10 else number

    if minutes < 0:
        raise ValueError(f"Duration cannot be negative: {value!r}")
    return int((minutes / 5).to_integral_value(rounding=ROUND_CEILING)) * 5


def hours(minutes: int) -> float:
    """Minutes as float hours, for summary figures"""
    return math.floor(minutes / MINUTES_PER_HOUR * 100 + 0.5) / 100
