"""Fixed-point amount helpers.

All ledger amounts are integers in the collateral token's smallest unit
(18 decimals unless configured otherwise). These helpers move between
human-typed whole-token text and those integers."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext
from typing import Final

DEFAULT_DECIMALS: Final = 18

# enough digits for any uint256 amount so scaling never rounds
PRECISION: Final = 80


def scale(decimals: int = DEFAULT_DECIMALS) -> int:
    return 10**decimals


def parse_units(amount: str | int | Decimal, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a whole-token amount like "10" or "0.25" into smallest units.

    Raises ValueError for negative amounts or for precision finer than one
    smallest unit (we never silently round away collateral)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {amount!r}") from e

    if not value.is_finite() or value < 0:
        raise ValueError(f"Amount must be a non-negative number: {amount!r}")

    with localcontext() as ctx:
        ctx.prec = PRECISION
        scaled = value.scaleb(decimals)

    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"Amount {amount} has more than {decimals} decimal places of precision"
        )

    return int(scaled)


def format_units(amount: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Render smallest-unit integer as whole-token text with trailing zeros trimmed."""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        value = Decimal(amount).scaleb(-decimals)

    # normalize() switches to exponent notation for round values, so format
    # with 'f' and trim by hand
    text = f"{value:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")

    return text


def tokens(amount: int, decimals: int = DEFAULT_DECIMALS, places: int = 4) -> str:
    """format smallest-unit amount as grouped whole tokens for reports"""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        value = Decimal(amount).scaleb(-decimals)
    return f"{value:,.{places}f}"
