"""
Exchange status taxonomy.

Raw exchange status strings are mapped through one reviewed table into a closed set
of leg states. Anything not in the table is ``UNKNOWN``: it is logged and left for the
next poll, never guessed into a terminal state.
"""
from __future__ import annotations

import enum
import logging
from types import MappingProxyType

from core import metrics

from .models import ScheduledOrder

logger = logging.getLogger(__name__)


class LegStatus(str, enum.Enum):
    OPEN = "open"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    UNKNOWN = "unknown"

    @property
    def is_dead(self) -> bool:
        return self in (LegStatus.CANCELLED, LegStatus.REJECTED)


# Keys are upper-case. EXPIRED is left out on purpose: binance reports it both for a
# genuinely expired order and for a stop that fired and handed off to a market order.
EXCHANGE_STATUS_MAP = MappingProxyType({
    "NEW": LegStatus.OPEN,
    "PARTIALLY_FILLED": LegStatus.OPEN,
    "WORKING": LegStatus.OPEN,
    "TRIGGERED": LegStatus.TRIGGERED,
    "FILLED": LegStatus.TRIGGERED,
    "FINISHED": LegStatus.TRIGGERED,
    "SUCCESS": LegStatus.TRIGGERED,
    "EXECUTED": LegStatus.TRIGGERED,
    "CANCELED": LegStatus.CANCELLED,
    "CANCELLED": LegStatus.CANCELLED,
    "REJECTED": LegStatus.REJECTED,
})


def normalize_exchange_status(raw: str | None) -> LegStatus:
    key = str(raw or "").strip().upper()
    status = EXCHANGE_STATUS_MAP.get(key)
    if status is None:
        metrics.UNKNOWN_EXCHANGE_STATUS.inc()
        logger.warning("unmapped exchange status raw=%r; treating as unknown", raw)
        return LegStatus.UNKNOWN
    return status


# ScheduledOrder lifecycle: a status may only move to a strictly later stage.
_ORDER_STAGE = {
    ScheduledOrder.Status.PENDING: 0,
    ScheduledOrder.Status.SUBMITTED: 1,
    ScheduledOrder.Status.UNKNOWN: 2,
    ScheduledOrder.Status.FILLED: 3,
    ScheduledOrder.Status.CANCELLED: 3,
    ScheduledOrder.Status.FAILED: 3,
}

ORDER_FINAL_STATUSES = frozenset(s for s, stage in _ORDER_STAGE.items() if stage == 3)


def order_predecessors(new_status: str) -> list[str]:
    """Statuses from which ``new_status`` is a legal forward move."""
    target = _ORDER_STAGE[ScheduledOrder.Status(new_status)]
    return [str(s) for s, stage in _ORDER_STAGE.items() if stage < target]


def can_advance(old_status: str, new_status: str) -> bool:
    return _ORDER_STAGE[ScheduledOrder.Status(old_status)] < _ORDER_STAGE[ScheduledOrder.Status(new_status)]


def order_status_for_ack(raw: str | None) -> str:
    """Initial ScheduledOrder status from the exchange's answer to a submission."""
    leg = EXCHANGE_STATUS_MAP.get(str(raw or "").strip().upper())
    if leg is LegStatus.TRIGGERED:
        return ScheduledOrder.Status.FILLED
    if leg is not None and leg.is_dead:
        return ScheduledOrder.Status.FAILED
    return ScheduledOrder.Status.SUBMITTED
