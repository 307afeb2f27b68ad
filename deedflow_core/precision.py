"""
Precision constants and helpers for DeedFlow.

DeedFlow keeps every currency amount as an integer count of base units,
with 18 decimal places of precision:

    1 token = 1,000,000,000,000,000,000 units (smallest indivisible unit)

Conversions go through ``Decimal`` so that ``tokens("0.1")`` is exact.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext

# Number of decimal places for all amounts.
TOKEN_DECIMALS: int = 18

# Smallest representable unit: 1 unit = 10**-18 token.
UNITS_PER_TOKEN: int = 10 ** TOKEN_DECIMALS


def tokens(value: int | float | str | Decimal) -> int:
    """Convert a human token amount to integer base units.

    >>> tokens(10)
    10000000000000000000
    >>> tokens("0.5")
    500000000000000000
    """
    try:
        dec = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"amount must be finite: {value!r}")
    with localcontext() as ctx:
        # exact for any number of significant digits
        ctx.prec = max(ctx.prec, len(dec.as_tuple().digits) + TOKEN_DECIMALS)
        units = dec.scaleb(TOKEN_DECIMALS)
        if units != units.to_integral_value():
            raise ValueError(f"{value!r} has more than {TOKEN_DECIMALS} decimals")
        return int(units)


def units_to_tokens(units: int) -> Decimal:
    """Convert integer base units back to a ``Decimal`` token amount."""
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(str(abs(units))) + 1)
        return Decimal(units).scaleb(-TOKEN_DECIMALS)


def format_amount(units: int, currency: str = "ETH") -> str:
    """Return a human-readable string, trailing zeros trimmed."""
    text = f"{units_to_tokens(units):.{TOKEN_DECIMALS}f}".rstrip("0").rstrip(".")
    return f"{text} {currency}"
