"""Exact money arithmetic on integer minor units (cents).

Every operation converts its operands to integer cents, works in integer
space and converts back, so repeated arithmetic never drifts the way binary
floats do. Rounding is half away from zero at the cent boundary
(``decimal.ROUND_HALF_UP``)::

    >>> to_cents("10.555")
    1056
    >>> multiply("1000.00", 3)
    Decimal('3000.00')
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

PRECISION = 2
MULTIPLIER = 10**PRECISION
_CENT = Decimal(1).scaleb(-PRECISION)  # Decimal("0.01")
_UNIT = Decimal(1)

Number = Decimal | int | float | str

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CNY": "¥",
    "INR": "₹",
    "KRW": "₩",
    "CAD": "CA$",
    "AUD": "A$",
    "CHF": "CHF ",
}
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


def to_decimal(value: Number) -> Decimal:
    """Coerce to Decimal; floats go through ``str`` so 10.555 stays 10.555."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _round_to_int(value: Decimal) -> int:
    return int(value.quantize(_UNIT, rounding=ROUND_HALF_UP))


def to_cents(amount: Number) -> int:
    """Convert an amount to integer cents, rounding half away from zero."""
    return _round_to_int(to_decimal(amount) * MULTIPLIER)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal."""
    return (Decimal(cents) / MULTIPLIER).quantize(_CENT)


def add(a: Number, b: Number) -> Decimal:
    return from_cents(to_cents(a) + to_cents(b))


def subtract(a: Number, b: Number) -> Decimal:
    return from_cents(to_cents(a) - to_cents(b))


def multiply(amount: Number, scalar: Number) -> Decimal:
    """Multiply an amount by a plain scalar; the product is rounded to the cent."""
    return from_cents(_round_to_int(to_cents(amount) * to_decimal(scalar)))


def divide(amount: Number, divisor: Number) -> Decimal:
    """Divide an amount by a plain scalar; the quotient is rounded to the cent.

    Raises:
        ZeroDivisionError: when ``divisor`` is zero.
    """
    divisor = to_decimal(divisor)
    if divisor == 0:
        raise ZeroDivisionError("Division by zero")
    return from_cents(_round_to_int(to_cents(amount) / divisor))


def round_amount(amount: Number) -> Decimal:
    """Round to standard precision (two places, half away from zero)."""
    return from_cents(to_cents(amount))


# ``round`` is the public name; the alias avoids shadowing the builtin inside this module.
round = round_amount  # noqa: A001


def sum_amounts(amounts: Iterable[Number]) -> Decimal:
    total = 0
    for amount in amounts:
        total += to_cents(amount)
    return from_cents(total)


def format(amount: Number, currency: str = "USD") -> str:  # noqa: A001
    """Render ``amount`` like ``-$1,000.00``: sign, symbol, grouped digits."""
    code = currency.upper()
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    value = round_amount(amount)
    sign = "-" if value < 0 else ""
    if code in ZERO_DECIMAL_CURRENCIES:
        digits = f"{_round_to_int(abs(value)):,}"
    else:
        digits = f"{abs(value):,.2f}"
    return f"{sign}{symbol}{digits}"


def to_json(amount: Number) -> str:
    """Serialise an amount for JSON payloads (alert context, job results)."""
    return str(round_amount(amount))
