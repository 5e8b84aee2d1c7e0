"""
Error taxonomy shared by the scheduler, submission pipeline and reconciliation loop.

Every error carries an optional ``context`` dict (strategy id, symbol, correlation ids)
that is rendered into the message so log lines are diagnosable on their own.
"""
from __future__ import annotations

from typing import Any


class AutopilotError(Exception):
    def __init__(self, message: str = "", **context: Any):
        self.message = str(message or self.__class__.__name__)
        self.context = {k: v for k, v in context.items() if v not in (None, "")}
        super().__init__(self.message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = " ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} [{ctx}]"


class ValidationError(AutopilotError):
    """Malformed strategy parameters or order sizing. Never retried."""


class ExchangeTransientError(AutopilotError):
    """Timeout, rate limit or connection failure. Retried with bounded backoff."""


class ExchangeRejectionError(AutopilotError):
    """Permanent exchange-side refusal (insufficient margin, invalid order...)."""


class OrderNotFoundError(ExchangeRejectionError):
    """The exchange does not know the requested correlation id."""


class PersistenceError(AutopilotError):
    """Store write conflict or unavailability after bounded retries."""


class ReconciliationAmbiguity(AutopilotError):
    """Exchange returned a status string the mapping table does not recognize."""
