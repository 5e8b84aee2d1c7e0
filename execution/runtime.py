"""
Composition root: builds the exchange client, the trading-rules cache and every
service that shares them. Celery tasks and the ``run_autopilot`` host both go through
``get_runtime()``; tests call ``build_runtime(adapter=fake)`` directly.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from django.conf import settings

from adapters import get_default_adapter, get_default_adapter_signature
from adapters.client import ExchangeClient
from adapters.trading_rules import TradingRulesCache
from strategies.decision import DecisionEvaluator

from .closure import BracketClosureHandler
from .reconciliation import ReconciliationLoop
from .submission import SubmissionPipeline

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    client: ExchangeClient
    rules_cache: TradingRulesCache
    pipeline: SubmissionPipeline
    closure: BracketClosureHandler
    reconciler: ReconciliationLoop
    evaluator: DecisionEvaluator

    def shutdown(self) -> None:
        self.reconciler.stop(timeout=5)
        self.evaluator.shutdown()


def build_runtime(adapter: Any = None, *, sleep: Callable[[float], Any] | None = None) -> Runtime:
    if adapter is None:
        adapter = get_default_adapter()
    client = ExchangeClient(adapter, sleep=sleep)
    rules_cache = TradingRulesCache(
        client.fetch_trading_rules,
        ttl_seconds=float(getattr(settings, "TRADING_RULES_TTL_SECONDS", 3600)),
    )
    closure = BracketClosureHandler(client)
    reconcile_kwargs = {"sleep": sleep} if sleep is not None else {}
    return Runtime(
        client=client,
        rules_cache=rules_cache,
        pipeline=SubmissionPipeline(client, rules_cache),
        closure=closure,
        reconciler=ReconciliationLoop(client, closure, **reconcile_kwargs),
        evaluator=DecisionEvaluator(),
    )


_RUNTIME: Runtime | None = None
_RUNTIME_SIG: str | None = None
_RUNTIME_LOCK = threading.Lock()


def get_runtime() -> Runtime:
    """Per-process runtime, rebuilt when the exchange configuration changes."""
    global _RUNTIME, _RUNTIME_SIG
    signature = get_default_adapter_signature()
    with _RUNTIME_LOCK:
        if _RUNTIME is None or _RUNTIME_SIG != signature:
            previous = _RUNTIME
            _RUNTIME = build_runtime()
            _RUNTIME_SIG = signature
            logger.info("execution runtime reloaded (%s)", signature.split("|")[0])
            if previous is not None:
                previous.evaluator.shutdown()
        return _RUNTIME


def set_runtime(runtime: Runtime | None) -> None:
    """Install (or clear) the process runtime; used by hosts and tests."""
    global _RUNTIME, _RUNTIME_SIG
    with _RUNTIME_LOCK:
        _RUNTIME = runtime
        _RUNTIME_SIG = get_default_adapter_signature() if runtime is not None else None
