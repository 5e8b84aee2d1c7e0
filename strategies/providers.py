from __future__ import annotations

from adapters.types import MarketSnapshot

from .decision import ACTIONS, NO_OP, Decision


class NoopDecisionProvider:
    def evaluate(self, symbol: str, snapshot: MarketSnapshot, params: dict) -> Decision:
        return Decision.no_op("noop provider")


class FixedActionDecisionProvider:
    """Returns ``params["action"]`` for every symbol. Handy for smoke runs on testnet."""

    def evaluate(self, symbol: str, snapshot: MarketSnapshot, params: dict) -> Decision:
        action = str(params.get("action") or NO_OP).strip().lower()
        if action not in ACTIONS:
            action = NO_OP
        if action == NO_OP:
            return Decision.no_op("fixed no_op")
        return Decision(
            action=action,
            reason=str(params.get("reason") or "fixed action"),
            size_multiplier=float(params.get("size_multiplier", 1.0)),
        )
