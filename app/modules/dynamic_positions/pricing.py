"""
Price and size arithmetic.

Pure functions over Decimal. Prices sent to the exchange are always
rounded to the contract tick size first.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple

from app.infrastructure.exchanges.schemas import ContractSpec, PositionDirection

TIER1_FRACTION = Decimal("0.5")
TIER2_FRACTION = Decimal("0.3")


def round_to_tick(price: Decimal, tick_size: Decimal) -> Decimal:
    """Nearest multiple of tick_size, expressed with the tick's precision."""
    ticks = (price / tick_size).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    precision = tick_size.normalize()
    if precision.as_tuple().exponent > 0:
        precision = Decimal("1")
    return (ticks * tick_size).quantize(precision)


def quantity_for_notional(notional: Decimal, spec: ContractSpec) -> int:
    """Whole contracts for a notional at the last price, never below one."""
    per_contract = spec.last_price * spec.quanto_multiplier
    return max(1, int(notional // per_contract))


def split_tiers(quantity: int) -> Tuple[int, int, int]:
    """(tier1, tier2, runner); the runner absorbs rounding so nothing is lost."""
    tier1 = int(TIER1_FRACTION * quantity)
    tier2 = int(TIER2_FRACTION * quantity)
    return tier1, tier2, quantity - tier1 - tier2


def offset_price(price: Decimal, direction: PositionDirection, fraction: Decimal) -> Decimal:
    """Move price by fraction in the profitable direction."""
    return price * (Decimal("1") + fraction * direction.sign)


def break_even_stop(entry_price: Decimal, direction: PositionDirection, buffer: Decimal) -> Decimal:
    # Long stops sit just above entry, short stops just below
    return offset_price(entry_price, direction, buffer)


def trailing_stop(fill_price: Decimal, direction: PositionDirection, distance: Decimal) -> Decimal:
    return offset_price(fill_price, direction, -distance)


def realized_pnl(
    entry_price: Decimal,
    fill_price: Decimal,
    direction: PositionDirection,
    size: int,
    quanto_multiplier: Decimal = Decimal("1"),
) -> Decimal:
    return (fill_price - entry_price) * direction.sign * size * quanto_multiplier
