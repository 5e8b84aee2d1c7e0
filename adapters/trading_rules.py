from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .types import TradingRules

logger = logging.getLogger(__name__)


class TradingRulesCache:
    """
    Per-symbol exchange trading rules (step size, min notional...).

    Built once at the composition root and handed to the components that need it.
    Entries expire after ``ttl_seconds``; ``invalidate`` drops one symbol or all.
    """

    def __init__(
        self,
        fetch: Callable[[str], TradingRules],
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entries: dict[str, tuple[float, TradingRules]] = {}
        self._lock = threading.Lock()

    def get(self, symbol: str) -> TradingRules:
        now = self._clock()
        with self._lock:
            hit = self._entries.get(symbol)
            if hit is not None and now - hit[0] < self.ttl_seconds:
                return hit[1]
        # fetch outside the lock so one slow symbol does not stall the others
        rules = self._fetch(symbol)
        with self._lock:
            self._entries[symbol] = (self._clock(), rules)
        logger.debug("trading rules refreshed symbol=%s step=%s min_notional=%s", symbol, rules.step_size, rules.min_notional)
        return rules

    def invalidate(self, symbol: str | None = None) -> None:
        with self._lock:
            if symbol is None:
                self._entries.clear()
            else:
                self._entries.pop(symbol, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
