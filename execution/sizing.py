from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from adapters.types import TradingRules
from core.errors import ValidationError


def floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    units = (value / step).to_integral_value(rounding=ROUND_FLOOR)
    return units * step


def ceil_to_step(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    units = (value / step).to_integral_value(rounding=ROUND_CEILING)
    return units * step


def round_price(price: Decimal, tick: Decimal) -> Decimal:
    """Nearest-tick rounding for trigger prices (half up on the tick grid)."""
    if tick <= 0:
        return price
    units = (price / tick + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR)
    return units * tick


def size_entry(
    notional: Decimal,
    price: Decimal,
    rules: TradingRules,
) -> Decimal:
    """
    Quantity for ``notional`` quote units at ``price``.

    Rounded down to the step size; when the result falls below the exchange minimum
    (quantity or notional) it is raised to the smallest step that satisfies both.
    Orders are never dropped for being too small, only rejected when inputs are bad.
    """
    if price is None or price <= 0:
        raise ValidationError(f"invalid price {price}", symbol=rules.symbol)
    if notional is None or notional <= 0:
        raise ValidationError(f"invalid notional {notional}", symbol=rules.symbol)

    step = rules.step_size
    qty = floor_to_step(notional / price, step)

    floor_qty = rules.min_qty
    if rules.min_notional > 0:
        floor_qty = max(floor_qty, rules.min_notional / price)
    if qty < floor_qty or qty <= 0:
        qty = ceil_to_step(floor_qty, step)
        if qty <= 0:
            qty = step
        # decimal division can land a hair under the boundary
        while step > 0 and rules.min_notional > 0 and qty * price < rules.min_notional:
            qty += step

    if qty <= 0:
        raise ValidationError("computed quantity is zero", symbol=rules.symbol, notional=notional, price=price)
    if rules.max_qty is not None and qty > rules.max_qty:
        raise ValidationError(
            f"quantity {qty} above exchange max {rules.max_qty}",
            symbol=rules.symbol,
        )
    return qty


def bracket_prices(
    side: str,
    reference_price: Decimal,
    take_profit_pct: Decimal | None,
    stop_loss_pct: Decimal | None,
    tick: Decimal,
) -> tuple[Decimal | None, Decimal | None]:
    """TP/SL trigger prices around ``reference_price`` for a long (buy) or short (sell) entry."""
    if reference_price <= 0:
        raise ValidationError(f"invalid reference price {reference_price}")
    direction = Decimal(1) if side == "buy" else Decimal(-1)
    tp = sl = None
    if take_profit_pct:
        tp = round_price(reference_price * (1 + direction * Decimal(take_profit_pct)), tick)
    if stop_loss_pct:
        sl = round_price(reference_price * (1 - direction * Decimal(stop_loss_pct)), tick)
    for label, value in (("take_profit", tp), ("stop_loss", sl)):
        if value is not None and value <= 0:
            raise ValidationError(f"{label} trigger price {value} is not positive")
    return tp, sl
