from __future__ import annotations

from typing import Protocol

from .binance import BinanceFuturesAdapter
from .client import ExchangeClient
from .credentials import get_default_adapter_signature, get_exchange_credentials
from .trading_rules import TradingRulesCache
from .types import MarketSnapshot, OrderAck, OrderRequest, TradingRules


class AdapterProtocol(Protocol):
    """What ``ExchangeClient`` needs from a raw exchange adapter."""

    def submit_order(self, request: OrderRequest) -> OrderAck:
        ...

    def submit_conditional_order(self, request: OrderRequest) -> OrderAck:
        ...

    def cancel_order(self, symbol: str, client_order_id: str, conditional: bool = False):
        ...

    def fetch_order(self, symbol: str, client_order_id: str, conditional: bool = False) -> dict:
        ...

    def query_status(self, symbol: str, client_order_id: str, conditional: bool = False) -> str:
        ...

    def fetch_trading_rules(self, symbol: str) -> TradingRules:
        ...

    def fetch_snapshot(self, symbol: str) -> MarketSnapshot:
        ...


def get_default_adapter() -> AdapterProtocol:
    return BinanceFuturesAdapter.from_config(get_exchange_credentials())


__all__ = [
    "AdapterProtocol",
    "BinanceFuturesAdapter",
    "ExchangeClient",
    "MarketSnapshot",
    "OrderAck",
    "OrderRequest",
    "TradingRules",
    "TradingRulesCache",
    "get_default_adapter",
    "get_default_adapter_signature",
]
