"""Fixed-point money handling in integer minor units."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

_BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class TaskCosts:
    """Escrow economics for a task, all in minor units."""

    subtotal: int
    platform_fee: int
    total_cost: int


def to_minor_units(value: object, decimals: int) -> int:
    """
    Convert a native-unit amount (e.g. "0.05") to integer minor units.

    Accepts str, int, Decimal and float; floats go through their shortest
    repr so that 0.1 means 0.1. Raises ValueError for non-numeric input,
    non-finite values, or more fractional digits than the currency has.
    """
    if isinstance(value, bool) or not isinstance(value, (str, int, float, Decimal)):
        msg = "Amount must be a number or a numeric string"
        raise ValueError(msg)

    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        msg = f"Amount is not a valid number: {value!r}"
        raise ValueError(msg) from exc

    if not amount.is_finite():
        msg = "Amount must be finite"
        raise ValueError(msg)

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        msg = f"Amount has more than {decimals} decimal places"
        raise ValueError(msg)
    return int(scaled)


def format_native(minor_units: int, decimals: int) -> str:
    """Render minor units as a plain decimal string in native units."""
    value = Decimal(minor_units).scaleb(-decimals)
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def platform_fee(subtotal: int, fee_bps: int) -> int:
    """Fee on a non-negative subtotal, rounded half-up to the nearest minor unit."""
    return (subtotal * fee_bps + _BPS_DENOMINATOR // 2) // _BPS_DENOMINATOR


def compute_task_costs(payout_per_worker: int, required_workers: int, fee_bps: int) -> TaskCosts:
    """Compute subtotal, platform fee and total cost for a task."""
    subtotal = payout_per_worker * required_workers
    fee = platform_fee(subtotal, fee_bps)
    return TaskCosts(subtotal=subtotal, platform_fee=fee, total_cost=subtotal + fee)
