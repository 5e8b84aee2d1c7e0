"""
Decision provider contract and the timeout-bounded evaluator.

A provider is any object with ``evaluate(symbol, snapshot, params) -> Decision``.
Providers are resolved from the dotted path stored on ``Strategy.provider``.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Protocol

from django.conf import settings
from django.utils.module_loading import import_string

from adapters.types import MarketSnapshot
from core.errors import ValidationError

logger = logging.getLogger(__name__)

BUY = "buy"
SELL = "sell"
NO_OP = "no_op"
ACTIONS = (BUY, SELL, NO_OP)


@dataclass(frozen=True)
class Decision:
    action: str
    reason: str = ""
    size_multiplier: float = 1.0

    @property
    def is_trade(self) -> bool:
        return self.action in (BUY, SELL)

    @classmethod
    def no_op(cls, reason: str = "") -> "Decision":
        return cls(action=NO_OP, reason=reason, size_multiplier=0.0)


class DecisionProvider(Protocol):
    def evaluate(self, symbol: str, snapshot: MarketSnapshot, params: dict) -> Decision:
        ...


def validate_decision(raw: Any) -> Decision:
    if not isinstance(raw, Decision):
        raise ValidationError(f"provider returned {type(raw).__name__}, expected Decision")
    if raw.action not in ACTIONS:
        raise ValidationError(f"unknown decision action {raw.action!r}")
    if raw.is_trade:
        try:
            mult = float(raw.size_multiplier)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid size_multiplier {raw.size_multiplier!r}")
        if not mult > 0:
            raise ValidationError(f"size_multiplier must be positive, got {mult}")
    return raw


class DecisionEvaluator:
    """
    Calls providers on a small thread pool with a hard wait bound.

    A provider that does not answer within ``timeout_seconds`` yields ``no_op``; its
    thread is left to finish on its own (no preemption) and is not retried this tick.
    """

    def __init__(self, timeout_seconds: float | None = None, max_workers: int | None = None):
        if timeout_seconds is None:
            timeout_seconds = float(getattr(settings, "DECISION_TIMEOUT_SECONDS", 5.0))
        if max_workers is None:
            max_workers = int(getattr(settings, "DECISION_MAX_WORKERS", 4))
        self.timeout_seconds = max(0.01, float(timeout_seconds))
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="decision")
        self._providers: dict[str, Any] = {}
        self._lock = threading.Lock()

    def provider_for(self, path: str) -> DecisionProvider:
        with self._lock:
            provider = self._providers.get(path)
            if provider is None:
                try:
                    provider = import_string(path)()
                except ImportError as exc:
                    raise ValidationError(f"cannot load decision provider {path!r}: {exc}")
                self._providers[path] = provider
            return provider

    def evaluate(self, path: str, symbol: str, snapshot: MarketSnapshot, params: dict) -> Decision:
        provider = self.provider_for(path)
        future = self._pool.submit(provider.evaluate, symbol, snapshot, dict(params or {}))
        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            logger.warning(
                "decision provider timed out provider=%s symbol=%s timeout=%.2fs; treating as no_op",
                path,
                symbol,
                self.timeout_seconds,
            )
            return Decision.no_op("provider timeout")
        return validate_decision(raw)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)
