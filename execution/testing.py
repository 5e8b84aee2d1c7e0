"""
In-memory stand-in for the raw Binance adapter, shared by the execution tests.

Orders are keyed by client order id like on the exchange. ``script`` queues
exceptions per method so tests can inject faults. A client order id can be reused
once its previous order is no longer open, as on binance.
"""
from __future__ import annotations

import threading
from collections import defaultdict, deque
from decimal import Decimal

from adapters.types import MarketSnapshot, OrderAck, OrderRequest, TradingRules
from core.errors import ExchangeRejectionError, ExchangeTransientError, OrderNotFoundError

_OPEN = {"NEW", "PARTIALLY_FILLED", "WORKING"}


class FakeExchange:
    def __init__(self, prices: dict[str, str] | None = None, rules: dict[str, TradingRules] | None = None):
        self.prices = {k: Decimal(v) for k, v in (prices or {}).items()}
        self.rules = dict(rules or {})
        self.orders: dict[str, dict] = {}
        self.calls: defaultdict[str, int] = defaultdict(int)
        self.cancelled: list[str] = []
        self.created: list[str] = []
        self._lost_acks: set[str] = set()
        self._script: defaultdict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()
        self._seq = 0

    # -- test controls ---------------------------------------------------------------

    def script(self, method: str, *effects) -> None:
        """Queue exceptions to raise on the next calls of ``method``."""
        self._script[method].extend(effects)

    def set_status(self, client_order_id: str, status: str, filled: str | None = None, average: str | None = None) -> None:
        order = self.orders[client_order_id]
        order["status"] = status
        if filled is not None:
            order["filled"] = filled
        if average is not None:
            order["average"] = average

    def lose_next_ack(self, method: str) -> None:
        """The next ``method`` call places the order, then fails as if the response timed out."""
        self._lost_acks.add(method)

    def forget(self, client_order_id: str) -> None:
        self.orders.pop(client_order_id, None)

    def _enter(self, method: str) -> None:
        with self._lock:
            self.calls[method] += 1
            effect = self._script[method].popleft() if self._script[method] else None
        if isinstance(effect, BaseException):
            raise effect

    def _place(self, method: str, client_order_id: str, order: dict) -> None:
        existing = self.orders.get(client_order_id)
        if existing is not None and existing["status"] in _OPEN:
            raise ExchangeRejectionError("ClientOrderId is duplicated", cid=client_order_id)
        self.orders[client_order_id] = order
        self.created.append(client_order_id)
        if method in self._lost_acks:
            self._lost_acks.discard(method)
            raise ExchangeTransientError("RequestTimeout", cid=client_order_id)

    def _next_id(self) -> str:
        with self._lock:
            self._seq += 1
            return str(self._seq)

    # -- adapter surface ---------------------------------------------------------------

    def submit_order(self, request: OrderRequest) -> OrderAck:
        self._enter("submit_order")
        price = self.prices.get(request.symbol, Decimal("1"))
        order = {
            "id": self._next_id(),
            "symbol": request.symbol,
            "status": "FILLED",
            "filled": str(request.quantity),
            "average": str(price),
        }
        self._place("submit_order", request.client_order_id, order)
        return OrderAck(
            exchange_order_id=order["id"],
            status="FILLED",
            filled_qty=request.quantity,
            avg_price=price,
            raw={"id": order["id"]},
        )

    def submit_conditional_order(self, request: OrderRequest) -> OrderAck:
        self._enter("submit_conditional_order")
        order = {
            "id": self._next_id(),
            "symbol": request.symbol,
            "status": "NEW",
            "filled": "0",
            "average": None,
            "trigger_price": str(request.trigger_price),
        }
        self._place("submit_conditional_order", request.client_order_id, order)
        return OrderAck(exchange_order_id=order["id"], status="NEW")

    def cancel_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> dict:
        self._enter("cancel_order")
        order = self.orders.get(client_order_id)
        if order is None:
            raise OrderNotFoundError("Unknown order sent.", cid=client_order_id)
        if order["status"] not in _OPEN:
            raise ExchangeRejectionError(f"order is {order['status']}", cid=client_order_id)
        order["status"] = "CANCELED"
        self.cancelled.append(client_order_id)
        return {"id": order["id"], "status": "canceled"}

    def fetch_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> dict:
        self._enter("fetch_order")
        order = self.orders.get(client_order_id)
        if order is None:
            raise OrderNotFoundError("Order does not exist.", cid=client_order_id)
        return dict(order)

    def query_status(self, symbol: str, client_order_id: str, conditional: bool = False) -> str:
        self._enter("query_status")
        order = self.orders.get(client_order_id)
        if order is None:
            raise OrderNotFoundError("Order does not exist.", cid=client_order_id)
        return order["status"]

    def fetch_trading_rules(self, symbol: str) -> TradingRules:
        self._enter("fetch_trading_rules")
        return self.rules.get(symbol) or TradingRules(
            symbol=symbol,
            step_size=Decimal("0.001"),
            tick_size=Decimal("0.01"),
            min_qty=Decimal("0.001"),
            min_notional=Decimal("5"),
        )

    def fetch_snapshot(self, symbol: str) -> MarketSnapshot:
        self._enter("fetch_snapshot")
        return MarketSnapshot(symbol=symbol, last_price=self.prices.get(symbol, Decimal("1")))


def seed_bracket(
    fake: FakeExchange | None = None,
    *,
    strategy=None,
    symbol: str = "XYZUSDT",
    group_id: str = "g1",
    entry_id: str = "e-1",
    tp_id: str = "tp-1",
    sl_id: str = "sl-1",
    side: str = "buy",
    qty: str = "1",
    entry_status: str = "filled",
):
    """Persist an active bracket (and mirror its orders on ``fake``). Returns the BracketLink."""
    from .models import ScheduledOrder
    from .store import OrderRow, SubmissionRecord, persist_submission

    close_side = "sell" if side == "buy" else "buy"
    quantity = Decimal(qty)
    record = SubmissionRecord(
        group_id=group_id,
        symbol=symbol,
        strategy_id=strategy.pk if strategy is not None else None,
        entry=OrderRow(
            client_order_id=entry_id,
            symbol=symbol,
            side=side,
            kind=ScheduledOrder.Kind.MARKET,
            quantity=quantity,
            status=entry_status,
            executed_qty=quantity if entry_status == ScheduledOrder.Status.FILLED else Decimal("0"),
            avg_price=Decimal("10"),
        ),
        legs=[
            OrderRow(
                client_order_id=tp_id,
                symbol=symbol,
                side=close_side,
                kind=ScheduledOrder.Kind.TAKE_PROFIT,
                quantity=quantity,
                trigger_price=Decimal("11"),
                status=ScheduledOrder.Status.SUBMITTED,
            ),
            OrderRow(
                client_order_id=sl_id,
                symbol=symbol,
                side=close_side,
                kind=ScheduledOrder.Kind.STOP_LOSS,
                quantity=quantity,
                trigger_price=Decimal("9"),
                status=ScheduledOrder.Status.SUBMITTED,
            ),
        ],
    )
    link = persist_submission(record)
    if fake is not None:
        entry_raw = "FILLED" if entry_status == ScheduledOrder.Status.FILLED else "NEW"
        fake.orders[entry_id] = {"id": f"x-{entry_id}", "status": entry_raw, "filled": qty, "average": "10"}
        for cid in (tp_id, sl_id):
            fake.orders[cid] = {"id": f"x-{cid}", "status": "NEW", "filled": "0", "average": None}
    return link
