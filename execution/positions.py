from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .models import BracketLink, ScheduledOrder


@dataclass(frozen=True)
class Position:
    """Derived from filled orders; never persisted."""

    symbol: str
    net_qty: Decimal
    avg_cost: Decimal | None

    @property
    def is_flat(self) -> bool:
        return self.net_qty == 0


def position_for(symbol: str, strategy_id: int | None = None) -> Position:
    qs = ScheduledOrder.objects.filter(symbol=symbol, status=ScheduledOrder.Status.FILLED)
    if strategy_id is not None:
        qs = qs.filter(strategy_id=strategy_id)

    net = Decimal("0")
    avg: Decimal | None = None
    for order in qs.order_by("updated_at", "id"):
        qty = order.executed_qty if order.executed_qty else order.quantity
        price = order.avg_price or order.price or order.trigger_price
        signed = qty if order.side == ScheduledOrder.Side.BUY else -qty
        new_net = net + signed
        if net == 0 or (net > 0) == (signed > 0):
            # opening or adding in the same direction
            if price is not None:
                avg = price if avg is None or net == 0 else (avg * abs(net) + price * qty) / abs(new_net)
        elif new_net != 0 and (new_net > 0) != (net > 0):
            # flipped through zero; the remainder was opened at this fill
            avg = price
        net = new_net
        if net == 0:
            avg = None
    return Position(symbol=symbol, net_qty=net, avg_cost=avg)


def has_live_exposure(symbol: str, strategy_id: int | None) -> bool:
    """True if the strategy already holds ``symbol`` or has a bracket still working on it."""
    live = BracketLink.objects.filter(
        symbol=symbol,
        status__in=[BracketLink.Status.ACTIVE, BracketLink.Status.CLOSING],
    )
    if strategy_id is not None:
        live = live.filter(strategy_id=strategy_id)
    if live.exists():
        return True
    return not position_for(symbol, strategy_id=strategy_id).is_flat
