"""Token amount helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


USDC_DECIMALS = 6


def _quant(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid token amount: {value!r}") from None
    if not dec.is_finite():
        raise ValueError(f"Invalid token amount: {value!r}")
    return dec


def parse_token_amount(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a spend amount to base units, rounding up (conservative)."""
    dec = _to_decimal(value).quantize(_quant(decimals), rounding=ROUND_CEILING)
    return int(dec.scaleb(decimals))


def parse_token_limit(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a cap to base units, rounding down (conservative)."""
    dec = _to_decimal(value).quantize(_quant(decimals), rounding=ROUND_FLOOR)
    return int(dec.scaleb(decimals))


def base_units_to_decimal(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return (Decimal(value).scaleb(-decimals)).quantize(_quant(decimals))


def format_token_amount(value: int, decimals: int = USDC_DECIMALS, symbol: str = "USDC") -> str:
    """Format base units as a display string, e.g. ``40.00 USDC``."""
    return f"{base_units_to_decimal(value, decimals):.2f} {symbol}"
