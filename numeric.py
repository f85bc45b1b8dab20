#!/usr/bin/env python3
"""Chain fixed-point <-> canonical Decimal conversions.

Amounts, prices and balances never pass through binary floats. The local
decimal context is wide enough for any uint256 value.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Optional, Union

# uint256 max has 78 decimal digits.
_PRECISION = 80

BPS_SCALE = 2

Number = Union[int, str, Decimal]


def _finite(value: Decimal) -> Decimal:
    if not value.is_finite():
        raise ValueError(f"Not a finite amount: {value}")
    return value


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return _finite(value)
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric amount")
    if isinstance(value, float):
        raise TypeError("binary floats are not accepted for amounts; pass str or Decimal")
    if isinstance(value, int):
        return Decimal(value)
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {value!r}") from exc
    return _finite(parsed)


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Wire value (str/int/Decimal) to Decimal; None and '' stay None."""
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, float):
        # JSON decoders hand us floats for bare numbers; repr keeps the shortest form.
        return _finite(Decimal(repr(value)))
    return _as_decimal(value)


def to_canonical(raw: Number, decimals: int) -> Decimal:
    """Scaled integer (e.g. wei) to Decimal: to_canonical(1500000, 6) == Decimal('1.5')."""
    if decimals < 0:
        raise ValueError(f"decimals must be >= 0, got {decimals}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return _as_decimal(int(_as_decimal(raw))).scaleb(-decimals)


def from_canonical(value: Number, decimals: int, rounding: Optional[str] = None) -> int:
    """Decimal to scaled integer.

    Without a rounding mode, a value finer than `decimals` raises ValueError.
    """
    if decimals < 0:
        raise ValueError(f"decimals must be >= 0, got {decimals}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = _as_decimal(value).scaleb(decimals)
        integral = scaled.to_integral_value(rounding=rounding or ROUND_HALF_UP)
        if rounding is None and integral != scaled:
            raise ValueError(f"{value} exceeds {decimals} decimal places")
        return int(integral)


def leverage_from_bps(bps: Number) -> Decimal:
    """On-chain basis points to canonical leverage: 250 -> 2.5."""
    return to_canonical(bps, BPS_SCALE)


def leverage_to_bps(leverage: Number) -> int:
    """Canonical leverage to basis points, round(leverage * 100)."""
    return from_canonical(leverage, BPS_SCALE, rounding=ROUND_HALF_UP)


def percent_from_bps(bps: Number) -> Decimal:
    """Signed basis-point percentage (e.g. unrealized pnl %) to Decimal."""
    return to_canonical(bps, BPS_SCALE)
