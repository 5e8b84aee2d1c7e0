"""
Persistence helpers for brackets and their orders.

Lock order
----------
Any transaction that touches more than one row of a bracket MUST lock the
``BracketLink`` row first and then its ``ScheduledOrder`` rows sorted by ascending id.
``lock_bracket`` is the only place that takes those locks; callers go through it.

Conflicts
---------
``run_atomic`` retries a transaction that failed on a detected write conflict
(deadlock, serialization failure, lock timeout, sqlite "database is locked") a few
times with jittered backoff, then raises ``PersistenceError``. It must be called
outside of any enclosing transaction, otherwise a retry would run inside an aborted
transaction.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Callable

from django.conf import settings
from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.utils import timezone

from core.errors import PersistenceError
from core.retry import call_with_retry

from .models import BracketLink, ReconciliationIssue, ScheduledOrder
from .status import order_predecessors

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = (
    "deadlock",
    "could not serialize",
    "serialization failure",
    "lock timeout",
    "lock wait timeout",
    "could not obtain lock",
    "database is locked",
)


class WriteConflict(Exception):
    """Internal marker for a retryable store conflict."""


def is_write_conflict(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _CONFLICT_MARKERS)


def run_atomic(fn: Callable[..., Any], *args: Any, label: str = "", **kwargs: Any) -> Any:
    def attempt():
        try:
            with transaction.atomic():
                return fn(*args, **kwargs)
        except IntegrityError as exc:
            raise PersistenceError(f"integrity error: {exc}", op=label) from exc
        except OperationalError as exc:
            if is_write_conflict(exc):
                raise WriteConflict(str(exc)) from exc
            raise PersistenceError(f"store unavailable: {exc}", op=label) from exc
        except DatabaseError as exc:
            raise PersistenceError(f"store error: {exc}", op=label) from exc

    try:
        return call_with_retry(
            attempt,
            retry_on=WriteConflict,
            attempts=int(getattr(settings, "STORE_CONFLICT_RETRIES", 3)),
            base_delay=float(getattr(settings, "STORE_CONFLICT_BASE_DELAY_SECONDS", 0.05)),
            max_delay=float(getattr(settings, "STORE_CONFLICT_MAX_DELAY_SECONDS", 1.0)),
            jitter=float(getattr(settings, "STORE_CONFLICT_JITTER_SECONDS", 0.05)),
        )
    except WriteConflict as exc:
        raise PersistenceError(f"write conflict persisted after retries: {exc}", op=label) from exc


def lock_bracket(link_id: int) -> tuple[BracketLink, dict[str, ScheduledOrder]]:
    """Lock a bracket and its orders in the documented order. Call inside a transaction."""
    link = BracketLink.objects.select_for_update().get(pk=link_id)
    orders = (
        ScheduledOrder.objects.select_for_update()
        .filter(client_order_id__in=[cid for cid in link.client_ids if cid])
        .order_by("id")
    )
    return link, {order.client_order_id: order for order in orders}


def advance_order(order_id: int, new_status: str, **fields: Any) -> bool:
    """
    Move an order forward in its lifecycle. The predecessor check runs inside the
    UPDATE itself, so a concurrent writer can never drag a status backwards.
    Returns False when the order was already at or past ``new_status``.
    """
    allowed = order_predecessors(new_status)
    updated = ScheduledOrder.objects.filter(pk=order_id, status__in=allowed).update(
        status=new_status,
        updated_at=timezone.now(),
        **fields,
    )
    return bool(updated)


@dataclass
class OrderRow:
    client_order_id: str
    symbol: str
    side: str
    kind: str
    quantity: Decimal
    status: str = ScheduledOrder.Status.PENDING
    price: Decimal | None = None
    trigger_price: Decimal | None = None
    exchange_order_id: str = ""
    executed_qty: Decimal = Decimal("0")
    avg_price: Decimal | None = None
    status_reason: str = ""
    raw_response: dict | None = None


_DECIMAL_FIELDS = ("quantity", "price", "trigger_price", "executed_qty", "avg_price")


def _row_to_payload(row: OrderRow) -> dict:
    data = asdict(row)
    for key in _DECIMAL_FIELDS:
        if data[key] is not None:
            data[key] = str(data[key])
    data["status"] = str(data["status"])
    data["raw_response"] = None
    return data


def _row_from_payload(data: dict) -> OrderRow:
    values = dict(data)
    for key in _DECIMAL_FIELDS:
        if values.get(key) is not None:
            values[key] = Decimal(str(values[key]))
    return OrderRow(**values)


@dataclass
class SubmissionRecord:
    """Everything the exchange accepted for one decision, ready to be persisted."""

    group_id: str
    symbol: str
    entry: OrderRow
    legs: list[OrderRow] = field(default_factory=list)
    strategy_id: int | None = None
    run_id: int | None = None
    create_link: bool = True

    def leg(self, kind: str) -> OrderRow | None:
        for row in self.legs:
            if row.kind == kind:
                return row
        return None

    def to_payload(self) -> dict:
        return {
            "group_id": self.group_id,
            "symbol": self.symbol,
            "strategy_id": self.strategy_id,
            "run_id": self.run_id,
            "create_link": self.create_link,
            "entry": _row_to_payload(self.entry),
            "legs": [_row_to_payload(row) for row in self.legs],
        }

    @classmethod
    def from_payload(cls, data: dict) -> "SubmissionRecord":
        return cls(
            group_id=str(data["group_id"]),
            symbol=str(data["symbol"]),
            strategy_id=data.get("strategy_id"),
            run_id=data.get("run_id"),
            create_link=bool(data.get("create_link", True)),
            entry=_row_from_payload(data["entry"]),
            legs=[_row_from_payload(row) for row in data.get("legs") or []],
        )


def _create_order(record: SubmissionRecord, row: OrderRow, parent: ScheduledOrder | None) -> ScheduledOrder:
    existing = ScheduledOrder.objects.filter(client_order_id=row.client_order_id).first()
    if existing is not None:
        return existing
    return ScheduledOrder.objects.create(
        strategy_id=record.strategy_id,
        run_id=record.run_id,
        symbol=row.symbol,
        side=row.side,
        kind=row.kind,
        quantity=row.quantity,
        price=row.price,
        trigger_price=row.trigger_price,
        client_order_id=row.client_order_id,
        exchange_order_id=row.exchange_order_id,
        status=row.status,
        status_reason=row.status_reason[:255],
        executed_qty=row.executed_qty,
        avg_price=row.avg_price,
        parent=parent,
        trigger_time=timezone.now() if row.status == ScheduledOrder.Status.FILLED and parent else None,
        raw_response=row.raw_response,
    )


def _persist(record: SubmissionRecord) -> BracketLink | None:
    entry = _create_order(record, record.entry, parent=None)
    for row in record.legs:
        _create_order(record, row, parent=entry)
    if not record.create_link:
        return None
    tp = record.leg(ScheduledOrder.Kind.TAKE_PROFIT)
    sl = record.leg(ScheduledOrder.Kind.STOP_LOSS)
    if tp is None or sl is None:
        raise PersistenceError("bracket link needs both tp and sl legs", group=record.group_id)
    link, created = BracketLink.objects.get_or_create(
        group_id=record.group_id,
        defaults={
            "strategy_id": record.strategy_id,
            "symbol": record.symbol,
            "entry_client_id": record.entry.client_order_id,
            "tp_client_id": tp.client_order_id,
            "sl_client_id": sl.client_order_id,
            "status": BracketLink.Status.ACTIVE,
        },
    )
    if not created:
        logger.info("bracket already persisted group=%s", record.group_id)
    return link


def persist_submission(record: SubmissionRecord) -> BracketLink | None:
    """Create the order rows (and the active link) in one transaction. Idempotent on client ids."""
    return run_atomic(_persist, record, label=f"persist:{record.group_id}")


def _record_issue(
    kind: str,
    *,
    bracket: BracketLink | None = None,
    client_order_id: str = "",
    raw_status: str = "",
    details: dict | None = None,
    review_threshold: int = 1,
) -> tuple[ReconciliationIssue, bool]:
    """
    Upsert an open issue of ``kind`` for ``client_order_id`` and bump its counter.
    Returns (issue, newly_flagged) where newly_flagged is True exactly once, when the
    counter first reaches ``review_threshold``.
    """
    now = timezone.now()
    issue = (
        ReconciliationIssue.objects.select_for_update()
        .filter(kind=kind, client_order_id=client_order_id, resolved=False)
        .first()
    )
    if issue is None:
        issue = ReconciliationIssue(
            kind=kind,
            bracket=bracket,
            client_order_id=client_order_id,
            occurrences=0,
        )
    issue.occurrences += 1
    issue.raw_status = str(raw_status or "")[:64]
    issue.last_seen_at = now
    if details:
        issue.details = {**(issue.details or {}), **details}
    newly_flagged = not issue.needs_review and issue.occurrences >= max(1, int(review_threshold))
    if newly_flagged:
        issue.needs_review = True
    issue.save()
    return issue, newly_flagged


def record_issue(kind: str, **kwargs: Any) -> tuple[ReconciliationIssue, bool]:
    return run_atomic(_record_issue, kind, label=f"issue:{kind}", **kwargs)


def resolve_issues(kind: str, client_order_id: str) -> int:
    return ReconciliationIssue.objects.filter(
        kind=kind, client_order_id=client_order_id, resolved=False
    ).update(resolved=True, updated_at=timezone.now())
