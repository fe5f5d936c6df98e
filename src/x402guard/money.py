"""USDC amount helpers using fixed 6-decimal base units."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


USDC_DECIMALS = 6
BASE_UNITS_PER_USD = 10 ** USDC_DECIMALS
_USD_QUANT = Decimal("0.000001")


def amount_usd_to_base_units(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to base units, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * BASE_UNITS_PER_USD)


def limit_usd_to_base_units(value: Decimal | float | int | str) -> int:
    """Convert a policy limit to base units, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * BASE_UNITS_PER_USD)


def base_units_to_usd(value: int) -> Decimal:
    return (Decimal(value) / Decimal(BASE_UNITS_PER_USD)).quantize(_USD_QUANT)


def format_usd(value: int) -> str:
    """Format integer base units as a currency string."""
    return f"${base_units_to_usd(value):.2f}"
