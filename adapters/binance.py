"""
Binance Futures (USDT-margined) adapter using CCXT.
Designed for testnet by default; switch with BINANCE_TESTNET env var.

Orders are addressed by client order id (``newClientOrderId`` on submit,
``origClientOrderId`` on query/cancel) so that every leg of a bracket can be tracked
without knowing the exchange-assigned id. ccxt exceptions are translated into the
``core.errors`` taxonomy here; retries live in ``adapters.client``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import ccxt

from core.errors import (
    ExchangeRejectionError,
    ExchangeTransientError,
    OrderNotFoundError,
)

from .types import MarketSnapshot, OrderAck, OrderRequest, TradingRules, parse_ack, raw_status, to_decimal

logger = logging.getLogger(__name__)

CONDITIONAL_ORDER_TYPES = {
    "take_profit": "TAKE_PROFIT_MARKET",
    "stop_loss": "STOP_MARKET",
}


def _is_duplicate_client_id_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    patterns = (
        "clientorderid is duplicated",
        "duplicate clientorderid",
        '"code":-4116',
        "-4116",
    )
    return any(p in msg for p in patterns)


def _native_symbol(symbol: str) -> str:
    """BTC/USDT:USDT -> BTCUSDT, for raw endpoints that take the exchange symbol."""
    if "/" not in symbol:
        return symbol
    base, _, rest = symbol.partition("/")
    return base + rest.split(":", 1)[0]


def _algo_order_to_order(data: Any) -> dict:
    """Shape an algoOrder response like a ccxt order so ``parse_ack`` can read it."""
    data = data if isinstance(data, dict) else {}
    return {
        "id": str(data.get("algoId") or ""),
        "clientOrderId": data.get("clientAlgoId"),
        "status": data.get("algoStatus"),
        "filled": data.get("executedQty"),
        "average": data.get("actualPrice") or data.get("avgPrice"),
        "info": data,
    }


class BinanceFuturesAdapter:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = True,
        margin_mode: str = "cross",
        leverage: int = 3,
        timeout_seconds: float = 10.0,
    ):
        self.testnet = testnet
        self.margin_mode = margin_mode
        self.leverage = leverage
        options = {"defaultType": "future"}
        if testnet:
            options["urls"] = {
                **ccxt.binance().urls,
                "api": {
                    "public": "https://testnet.binancefuture.com/fapi/v1",
                    "private": "https://testnet.binancefuture.com/fapi/v1",
                },
            }
        self.client = ccxt.binance({
            "apiKey": api_key,
            "secret": api_secret,
            "enableRateLimit": True,
            # ccxt raises RequestTimeout past this bound (milliseconds)
            "timeout": int(max(1.0, float(timeout_seconds)) * 1000),
            "options": options,
        })
        self._markets_loaded = False
        self._leverage_set_symbols: set[str] = set()

    @classmethod
    def from_config(cls, cfg: dict | None = None) -> "BinanceFuturesAdapter":
        if cfg is None:
            from .credentials import get_exchange_credentials

            cfg = get_exchange_credentials()
        key = str(cfg.get("api_key", "") or "")
        secret = str(cfg.get("api_secret", "") or "")
        if not key or not secret:
            logger.warning("BINANCE_API_KEY/SECRET not set; adapter will run in public-only mode.")
        return cls(
            api_key=key,
            api_secret=secret,
            testnet=bool(cfg.get("sandbox", True)),
            margin_mode=str(cfg.get("margin_mode", "cross") or "cross"),
            leverage=int(cfg.get("leverage", 3) or 3),
            timeout_seconds=float(cfg.get("timeout_seconds", 10.0) or 10.0),
        )

    def _map_symbol(self, symbol: str) -> str:
        """Normalize symbol for Binance futures (e.g. BTCUSDT -> BTC/USDT:USDT)."""
        if "/" in symbol:
            return symbol
        if symbol.endswith("USDT"):
            base = symbol[:-4]
            return f"{base}/USDT:USDT"
        return symbol

    def _call(self, label: str, fn: Callable[..., Any], *args: Any, cid: str = "", **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ccxt.OrderNotFound as exc:
            raise OrderNotFoundError(str(exc), op=label, cid=cid) from exc
        except ccxt.NetworkError as exc:
            # RequestTimeout, RateLimitExceeded, DDoSProtection, ExchangeNotAvailable
            raise ExchangeTransientError(str(exc), op=label, cid=cid) from exc
        except ccxt.BaseError as exc:
            raise ExchangeRejectionError(str(exc), op=label, cid=cid) from exc

    def _ensure_markets_loaded(self) -> None:
        if self._markets_loaded:
            return
        self._call("load_markets", self.client.load_markets)
        self._markets_loaded = True

    def _ensure_leverage(self, mapped: str, leverage: int) -> None:
        leverage = int(leverage or self.leverage or 0)
        if leverage <= 0 or mapped in self._leverage_set_symbols:
            return
        try:
            self.client.set_leverage(leverage, mapped)
            self._leverage_set_symbols.add(mapped)
        except ccxt.BaseError as exc:
            logger.warning("set_leverage failed for %s: %s", mapped, exc)

    def _recover_duplicate(self, request: OrderRequest, conditional: bool = False) -> OrderAck:
        """A resend after a timeout can hit the exchange's duplicate-id guard: the
        first attempt landed, so return what the exchange holds for that id."""
        logger.info(
            "duplicate client id on submit, fetching existing order symbol=%s cid=%s",
            request.symbol,
            request.client_order_id,
        )
        return parse_ack(self.fetch_order(request.symbol, request.client_order_id, conditional=conditional))

    def submit_order(self, request: OrderRequest) -> OrderAck:
        mapped = self._map_symbol(request.symbol)
        self._ensure_markets_loaded()
        self._ensure_leverage(mapped, request.leverage)
        params: dict[str, Any] = {"newClientOrderId": request.client_order_id}
        if request.reduce_only:
            params["reduceOnly"] = True
        price = float(request.price) if request.kind == "limit" and request.price is not None else None
        try:
            order = self._call(
                "create_order",
                self.client.create_order,
                mapped,
                request.kind,
                request.side,
                float(request.quantity),
                price,
                params,
                cid=request.client_order_id,
            )
        except ExchangeRejectionError as exc:
            if _is_duplicate_client_id_error(exc):
                return self._recover_duplicate(request)
            raise
        return parse_ack(order)

    def submit_conditional_order(self, request: OrderRequest) -> OrderAck:
        order_type = CONDITIONAL_ORDER_TYPES.get(request.kind)
        if order_type is None:
            raise ValueError(f"not a conditional order kind: {request.kind}")
        if request.trigger_price is None:
            raise ValueError("conditional order requires trigger_price")
        mapped = self._map_symbol(request.symbol)
        self._ensure_markets_loaded()
        params = {
            "newClientOrderId": request.client_order_id,
            "stopPrice": float(request.trigger_price),
            "reduceOnly": True,
            "workingType": "MARK_PRICE",
        }
        try:
            order = self._call(
                "create_conditional_order",
                self.client.create_order,
                mapped,
                order_type,
                request.side,
                float(request.quantity),
                None,
                params,
                cid=request.client_order_id,
            )
        except ExchangeRejectionError as exc:
            if _is_duplicate_client_id_error(exc):
                return self._recover_duplicate(request, conditional=True)
            raise
        return parse_ack(order)

    # -- algo (conditional) orders ---------------------------------------------------
    # binance serves TP/SL legs from /fapi/v1/algoOrder, keyed by clientAlgoId. Legs
    # placed before the algo migration still live in the regular order book, so
    # every algo lookup falls back to the regular endpoint.

    def _fetch_algo_order(self, symbol: str, client_order_id: str) -> dict:
        params = {"symbol": _native_symbol(symbol), "clientAlgoId": client_order_id}
        data = self._call(
            "fetch_algo_order",
            self.client.request,
            "algoOrder",
            "fapiPrivate",
            "GET",
            params,
            cid=client_order_id,
        )
        return _algo_order_to_order(data)

    def _cancel_algo_order(self, symbol: str, client_order_id: str) -> dict:
        params = {"symbol": _native_symbol(symbol), "clientAlgoId": client_order_id}
        data = self._call(
            "cancel_algo_order",
            self.client.request,
            "algoOrder",
            "fapiPrivate",
            "DELETE",
            params,
            cid=client_order_id,
        )
        return _algo_order_to_order(data)

    def cancel_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> dict:
        if conditional:
            try:
                return self._cancel_algo_order(symbol, client_order_id)
            except OrderNotFoundError:
                logger.info("no algo order cid=%s, cancelling as regular order", client_order_id)
        mapped = self._map_symbol(symbol)
        return self._call(
            "cancel_order",
            self.client.cancel_order,
            None,
            mapped,
            {"origClientOrderId": client_order_id},
            cid=client_order_id,
        )

    def fetch_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> dict:
        if conditional:
            try:
                return self._fetch_algo_order(symbol, client_order_id)
            except ExchangeRejectionError as exc:
                logger.info("algo order query failed cid=%s, trying regular order: %s", client_order_id, exc)
        mapped = self._map_symbol(symbol)
        return self._call(
            "fetch_order",
            self.client.fetch_order,
            None,
            mapped,
            {"origClientOrderId": client_order_id},
            cid=client_order_id,
        )

    def query_status(self, symbol: str, client_order_id: str, conditional: bool = False) -> str:
        return raw_status(self.fetch_order(symbol, client_order_id, conditional=conditional))

    def fetch_trading_rules(self, symbol: str) -> TradingRules:
        mapped = self._map_symbol(symbol)
        self._ensure_markets_loaded()
        market = self._call("market", self.client.market, mapped)
        tick_mode = getattr(self.client, "precisionMode", ccxt.TICK_SIZE) == ccxt.TICK_SIZE
        return TradingRules.from_market(symbol, market, tick_size_mode=tick_mode)

    def fetch_snapshot(self, symbol: str) -> MarketSnapshot:
        ticker = self._call("fetch_ticker", self.client.fetch_ticker, self._map_symbol(symbol))
        ts_ms = ticker.get("timestamp")
        return MarketSnapshot(
            symbol=symbol,
            last_price=to_decimal(ticker.get("last") or ticker.get("close")),
            bid=to_decimal(ticker.get("bid"), default=None),
            ask=to_decimal(ticker.get("ask"), default=None),
            ts=datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc) if ts_ms else None,
        )
