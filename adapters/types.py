from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any


def to_decimal(val: Any, default: Decimal | None = Decimal("0")) -> Decimal | None:
    """Convert ccxt floats/strings to Decimal via ``str`` to avoid binary float noise."""
    if val is None or val == "":
        return default
    try:
        out = Decimal(str(val))
    except (InvalidOperation, ValueError, TypeError):
        return default
    if not out.is_finite():
        return default
    return out


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: str
    kind: str
    quantity: Decimal
    client_order_id: str
    price: Decimal | None = None
    trigger_price: Decimal | None = None
    reduce_only: bool = False
    leverage: int = 0


@dataclass(frozen=True)
class OrderAck:
    exchange_order_id: str
    status: str
    filled_qty: Decimal = Decimal("0")
    avg_price: Decimal | None = None
    raw: dict = field(default_factory=dict)


def raw_status(order: dict | None) -> str:
    """Exchange-native status string; algo orders report ``algoStatus``."""
    if not isinstance(order, dict):
        return ""
    info = order.get("info") or {}
    if isinstance(info, dict):
        for key in ("algoStatus", "status"):
            val = info.get(key)
            if val:
                return str(val)
    return str(order.get("status") or "")


def parse_ack(order: dict) -> OrderAck:
    return OrderAck(
        exchange_order_id=str(order.get("id") or ""),
        status=raw_status(order),
        filled_qty=to_decimal(order.get("filled")),
        avg_price=to_decimal(order.get("average"), default=None),
        raw=order,
    )


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    last_price: Decimal
    bid: Decimal | None = None
    ask: Decimal | None = None
    ts: datetime | None = None


def _precision_step(value: Any, tick_size_mode: bool = True) -> Decimal:
    """
    ccxt exposes precision either as the step itself (TICK_SIZE mode, which binance
    uses) or as a number of decimal places (DECIMAL_PLACES mode, 0 -> step 1).
    """
    dec = to_decimal(value, default=None)
    if dec is None or dec < 0:
        return Decimal("0")
    if tick_size_mode:
        return dec
    return Decimal(1).scaleb(-int(dec))


@dataclass(frozen=True)
class TradingRules:
    symbol: str
    step_size: Decimal
    tick_size: Decimal = Decimal("0")
    min_qty: Decimal = Decimal("0")
    max_qty: Decimal | None = None
    min_notional: Decimal = Decimal("0")

    @classmethod
    def from_market(cls, symbol: str, market: dict, tick_size_mode: bool = True) -> "TradingRules":
        precision = market.get("precision") or {}
        limits = market.get("limits") or {}
        amount_limits = limits.get("amount") or {}
        cost_limits = limits.get("cost") or {}
        step = _precision_step(precision.get("amount"), tick_size_mode)
        min_qty = to_decimal(amount_limits.get("min"))
        if step <= 0 and min_qty > 0:
            step = min_qty
        max_qty = to_decimal(amount_limits.get("max"), default=None)
        if max_qty is not None and max_qty <= 0:
            max_qty = None
        return cls(
            symbol=symbol,
            step_size=step,
            tick_size=_precision_step(precision.get("price"), tick_size_mode),
            min_qty=min_qty,
            max_qty=max_qty,
            min_notional=to_decimal(cost_limits.get("min")),
        )
