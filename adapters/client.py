"""
Retrying exchange client.

Wraps a raw adapter (``BinanceFuturesAdapter`` in production, a fake in tests) and
applies ``core.retry`` uniformly: only ``ExchangeTransientError`` is retried, at most
``attempts`` calls in total, then the last error is re-raised to the caller.
Rejections and not-found errors pass straight through.

A submit that failed transiently is looked up by client order id before it is
resent, so an order that reached the exchange is never placed twice.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from django.conf import settings

from core.errors import ExchangeTransientError, OrderNotFoundError
from core.retry import call_with_retry

from .types import MarketSnapshot, OrderAck, OrderRequest, TradingRules, parse_ack

logger = logging.getLogger(__name__)


class ExchangeClient:
    def __init__(
        self,
        adapter: Any,
        *,
        attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Any] | None = None,
    ):
        self.adapter = adapter
        self.attempts = max(
            1,
            int(attempts if attempts is not None else getattr(settings, "EXCHANGE_RETRY_ATTEMPTS", 3)),
        )
        self.base_delay = (
            base_delay if base_delay is not None else float(getattr(settings, "EXCHANGE_RETRY_BASE_DELAY_SECONDS", 0.5))
        )
        self.max_delay = (
            max_delay if max_delay is not None else float(getattr(settings, "EXCHANGE_RETRY_MAX_DELAY_SECONDS", 8.0))
        )
        self._sleep = sleep

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return call_with_retry(
            fn,
            *args,
            retry_on=ExchangeTransientError,
            attempts=self.attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
            **kwargs,
        )

    def _submit(self, submit: Callable[[OrderRequest], OrderAck], request: OrderRequest, *, conditional: bool) -> OrderAck:
        # binance only rejects a reused client id while the first order is still open;
        # a filled market order would be placed a second time by a blind resend
        attempt = 0

        def once() -> OrderAck:
            nonlocal attempt
            attempt += 1
            if attempt > 1:
                ack = self._find_submitted(request, conditional)
                if ack is not None:
                    return ack
            return submit(request)

        return self._call(once)

    def _find_submitted(self, request: OrderRequest, conditional: bool) -> OrderAck | None:
        try:
            order = self.adapter.fetch_order(request.symbol, request.client_order_id, conditional=conditional)
        except OrderNotFoundError:
            return None
        ack = parse_ack(order)
        logger.warning(
            "submit landed despite transient error symbol=%s cid=%s status=%s",
            request.symbol,
            request.client_order_id,
            ack.status,
        )
        return ack

    def submit_order(self, request: OrderRequest) -> OrderAck:
        return self._submit(self.adapter.submit_order, request, conditional=False)

    def submit_conditional_order(self, request: OrderRequest) -> OrderAck:
        return self._submit(self.adapter.submit_conditional_order, request, conditional=True)

    def cancel_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> Any:
        return self._call(self.adapter.cancel_order, symbol, client_order_id, conditional=conditional)

    def query_status(self, symbol: str, client_order_id: str, conditional: bool = False) -> str:
        return self._call(self.adapter.query_status, symbol, client_order_id, conditional=conditional)

    def fetch_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> dict:
        return self._call(self.adapter.fetch_order, symbol, client_order_id, conditional=conditional)

    def fetch_trading_rules(self, symbol: str) -> TradingRules:
        return self._call(self.adapter.fetch_trading_rules, symbol)

    def fetch_snapshot(self, symbol: str) -> MarketSnapshot:
        return self._call(self.adapter.fetch_snapshot, symbol)
