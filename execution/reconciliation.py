"""
Reconciliation loop: polls the exchange for every live bracket and feeds the
closure handler.

Each link is reconciled in isolation; an error on one link is logged with its group
id and the cycle moves on. Links are processed in id order, in batches, with a pause
between batches to stay under the exchange rate limits.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Callable

from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from adapters.client import ExchangeClient
from adapters.types import to_decimal
from core.errors import (
    AutopilotError,
    ExchangeRejectionError,
    ExchangeTransientError,
    OrderNotFoundError,
    ReconciliationAmbiguity,
)
from core.locks import acquire_task_lock, release_task_lock
from core.notifications import notify_manual_attention

from .closure import BracketClosureHandler, LegTriggered
from .models import BracketLink, ReconciliationIssue, ScheduledOrder
from .recovery import drain_persistence_gaps
from .status import LegStatus, normalize_exchange_status, order_status_for_ack
from .store import SubmissionRecord, advance_order, persist_submission, record_issue, resolve_issues

logger = logging.getLogger(__name__)

ACTIVE = "active"
PENDING_ENTRY = "pending_entry"
DEFERRED = "deferred"
SKIPPED = "skipped"


@dataclass
class CycleStats:
    checked: int = 0
    recovered: int = 0
    errors: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def record(self, outcome: str) -> None:
        self.checked += 1
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def as_text(self) -> str:
        parts = [f"checked={self.checked}", f"recovered={self.recovered}", f"errors={self.errors}"]
        parts.extend(f"{k}={v}" for k, v in sorted(self.outcomes.items()))
        return " ".join(parts)


def _chunks(items: list[int], size: int):
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ReconciliationLoop:
    def __init__(
        self,
        client: ExchangeClient,
        handler: BracketClosureHandler,
        *,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        batch_pause_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.handler = handler
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else getattr(settings, "RECONCILE_INTERVAL_SECONDS", 15)
        )
        self.batch_size = int(batch_size if batch_size is not None else getattr(settings, "RECONCILE_BATCH_SIZE", 20))
        self.batch_pause_seconds = float(
            batch_pause_seconds
            if batch_pause_seconds is not None
            else getattr(settings, "RECONCILE_BATCH_PAUSE_SECONDS", 1.0)
        )
        self._sleep = sleep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -- lifecycle -----------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation", daemon=True)
        self._thread.start()
        logger.info("reconciliation loop started interval=%ss", self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("reconciliation loop stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                stats = self.run_guarded_cycle()
                if stats is not None:
                    logger.info("reconciliation cycle %s", stats.as_text())
            except Exception:
                logger.exception("reconciliation cycle crashed")
            finally:
                close_old_connections()
            self._stop.wait(self.interval_seconds)

    # -- one pass ------------------------------------------------------------------

    def run_guarded_cycle(self) -> CycleStats | None:
        """One cycle under the shared reconcile lock. Returns None when another cycle holds it."""
        lock_key = str(getattr(settings, "RECONCILE_LOCK_KEY", "lock:reconcile_brackets") or "lock:reconcile_brackets")
        lock_ttl = max(10, int(getattr(settings, "RECONCILE_LOCK_TTL_SECONDS", 120) or 120))
        lock_client, lock_token = acquire_task_lock(lock_key, lock_ttl)
        if lock_client is not None and not lock_token:
            logger.info("reconciliation cycle skipped: lock active key=%s ttl=%ss", lock_key, lock_ttl)
            return None
        try:
            return self.run_cycle()
        finally:
            release_task_lock(lock_client, lock_key, lock_token)

    def run_cycle(self) -> CycleStats:
        stats = CycleStats()
        stats.recovered = self.recover_persistence_gaps()
        link_ids = list(
            BracketLink.objects.filter(
                status__in=[BracketLink.Status.ACTIVE, BracketLink.Status.CLOSING]
            ).order_by("id").values_list("id", flat=True)
        )
        for idx, batch in enumerate(_chunks(link_ids, self.batch_size)):
            if idx and self.batch_pause_seconds > 0:
                self._sleep(self.batch_pause_seconds)
            for link_id in batch:
                try:
                    outcome = self.reconcile_link(link_id)
                except Exception:
                    stats.errors += 1
                    logger.exception("reconciliation failed link=%s", link_id)
                    continue
                stats.record(outcome)
        return stats

    def reconcile_link(self, link_id: int) -> str:
        link = BracketLink.objects.filter(pk=link_id).first()
        if link is None:
            return SKIPPED
        if link.status == BracketLink.Status.CLOSING:
            return self._reconcile_closing(link)
        if link.status != BracketLink.Status.ACTIVE:
            return SKIPPED

        orders = {
            o.client_order_id: o
            for o in ScheduledOrder.objects.filter(client_order_id__in=link.client_ids)
        }
        entry = orders.get(link.entry_client_id)
        if entry is None:
            return self.handler.orphan(link.pk, "entry order row missing", attention=True).action

        try:
            entry_state = LegStatus.TRIGGERED
            if entry.status != ScheduledOrder.Status.FILLED:
                entry_state = self._poll_entry(link, entry)
                if entry_state is not None and entry_state.is_dead:
                    final = (
                        ScheduledOrder.Status.CANCELLED
                        if entry_state is LegStatus.CANCELLED
                        else ScheduledOrder.Status.FAILED
                    )
                    return self.handler.orphan(
                        link.pk, f"entry {entry_state.value} before fill", entry_status=final
                    ).action
            outcome = self._reconcile_legs(link, orders, entry_missing=entry_state is None)
        except ExchangeTransientError as exc:
            logger.warning("reconciliation deferred group=%s (transient): %s", link.group_id, exc)
            return DEFERRED
        except ExchangeRejectionError as exc:
            logger.warning("reconciliation deferred group=%s (rejected query): %s", link.group_id, exc)
            return DEFERRED

        if outcome != ACTIVE or entry_state is LegStatus.TRIGGERED:
            return outcome
        # legs are quiet and the entry fill is not confirmed yet
        if entry_state is None:
            return self.handler.note_unresolvable(link.pk).action
        return PENDING_ENTRY if entry_state is LegStatus.OPEN else DEFERRED

    def _reconcile_closing(self, link: BracketLink) -> str:
        stale_after = timedelta(seconds=float(getattr(settings, "CLOSURE_STALE_SECONDS", 60)))
        started = link.closing_started_at
        if started is not None and timezone.now() - started < stale_after:
            return "closing"
        return self.handler.resume_closing(link).action

    def _poll_entry(self, link: BracketLink, entry: ScheduledOrder) -> LegStatus | None:
        """Entry state on the exchange; None means the exchange does not know the id."""
        try:
            raw = self.client.query_status(link.symbol, entry.client_order_id, conditional=False)
        except OrderNotFoundError:
            return None
        status = normalize_exchange_status(raw)
        if status is LegStatus.TRIGGERED:
            advance_order(
                entry.pk,
                ScheduledOrder.Status.FILLED,
                executed_qty=entry.executed_qty or entry.quantity,
                status_reason=f"exchange:{raw}"[:255],
            )
        elif status is LegStatus.UNKNOWN:
            self._note_unknown(link, entry, raw)
        return status

    def _infer_entry_filled(self, link: BracketLink, entry: ScheduledOrder | None) -> None:
        # a reduce-only leg can only execute against the position the entry opened
        if entry is None or entry.status == ScheduledOrder.Status.FILLED:
            return
        if advance_order(
            entry.pk,
            ScheduledOrder.Status.FILLED,
            executed_qty=entry.executed_qty or entry.quantity,
            status_reason="inferred: bracket leg triggered",
        ):
            logger.warning(
                "entry fill inferred from triggered leg group=%s cid=%s was=%s",
                link.group_id,
                entry.client_order_id,
                entry.status,
            )
            resolve_issues(ReconciliationIssue.Kind.UNKNOWN_STATUS, entry.client_order_id)

    def _poll_leg(self, link: BracketLink, order: ScheduledOrder | None, client_order_id: str) -> tuple[LegStatus | None, str]:
        """(status, raw); status None means the exchange does not know the id."""
        try:
            raw = self.client.query_status(link.symbol, client_order_id, conditional=True)
        except OrderNotFoundError:
            return None, ""
        status = normalize_exchange_status(raw)
        if status is LegStatus.UNKNOWN:
            self._note_unknown(link, order, raw, client_order_id=client_order_id)
        else:
            resolve_issues(ReconciliationIssue.Kind.UNKNOWN_STATUS, client_order_id)
        return status, raw

    def _reconcile_legs(
        self,
        link: BracketLink,
        orders: dict[str, ScheduledOrder],
        *,
        entry_missing: bool = False,
    ) -> str:
        tp_order = orders.get(link.tp_client_id)
        sl_order = orders.get(link.sl_client_id)
        tp, tp_raw = self._poll_leg(link, tp_order, link.tp_client_id)
        sl, sl_raw = self._poll_leg(link, sl_order, link.sl_client_id)

        if tp is None and sl is None:
            return self.handler.note_unresolvable(link.pk).action
        if link.unresolved_polls and not entry_missing:
            self.handler.reset_unresolvable(link.pk)
        if LegStatus.TRIGGERED in (tp, sl):
            self._infer_entry_filled(link, orders.get(link.entry_client_id))

        if tp is LegStatus.TRIGGERED and sl is LegStatus.TRIGGERED:
            logger.error("both legs report triggered group=%s symbol=%s", link.group_id, link.symbol)
            record_issue(
                ReconciliationIssue.Kind.DOUBLE_EXECUTION,
                bracket=link,
                client_order_id=link.sl_client_id,
                raw_status=sl_raw,
                details={"group": link.group_id, "tp": tp_raw, "sl": sl_raw},
            )
            notify_manual_attention(
                "Both bracket legs executed",
                {"group": link.group_id, "symbol": link.symbol},
            )
            result = self._trigger(link, BracketLink.Leg.TP, tp_raw)
            if sl_order is not None:
                advance_order(sl_order.pk, ScheduledOrder.Status.FILLED, status_reason=f"exchange:{sl_raw}")
            return result
        if tp is LegStatus.TRIGGERED:
            return self._trigger(link, BracketLink.Leg.TP, tp_raw)
        if sl is LegStatus.TRIGGERED:
            return self._trigger(link, BracketLink.Leg.SL, sl_raw)

        if tp is not None and sl is not None and tp.is_dead and sl.is_dead:
            return self.handler.orphan(
                link.pk,
                "both conditional legs gone on exchange",
                cancel_legs=False,
                attention=True,
            ).action
        for order, status, raw in ((tp_order, tp, tp_raw), (sl_order, sl, sl_raw)):
            if order is not None and status is not None and status.is_dead:
                if advance_order(order.pk, ScheduledOrder.Status.CANCELLED, status_reason=f"exchange:{raw}"):
                    logger.warning(
                        "bracket leg removed on exchange group=%s cid=%s status=%s",
                        link.group_id,
                        order.client_order_id,
                        raw,
                    )
                    BracketLink.objects.filter(pk=link.pk).update(needs_attention=True, updated_at=timezone.now())
        return ACTIVE

    def _trigger(self, link: BracketLink, leg: str, raw: str) -> str:
        executed, avg = self._fill_details(link, link.leg_client_id(leg))
        event = LegTriggered(link_id=link.pk, leg=leg, raw_status=raw, executed_qty=executed, avg_price=avg)
        return self.handler.handle_triggered(event).action

    def _fill_details(self, link: BracketLink, client_order_id: str) -> tuple[Decimal | None, Decimal | None]:
        try:
            order = self.client.fetch_order(link.symbol, client_order_id, conditional=True)
        except AutopilotError as exc:
            logger.info("fill details unavailable cid=%s: %s", client_order_id, exc)
            return None, None
        filled = to_decimal(order.get("filled"), default=None)
        return (filled if filled else None), to_decimal(order.get("average"), default=None)

    def _note_unknown(
        self,
        link: BracketLink,
        order: ScheduledOrder | None,
        raw: str,
        *,
        client_order_id: str = "",
    ) -> None:
        cid = client_order_id or (order.client_order_id if order is not None else "")
        ambiguity = ReconciliationAmbiguity(
            f"unrecognized exchange status {raw!r}", group=link.group_id, cid=cid
        )
        logger.warning("%s; left unknown, re-polled next cycle", ambiguity)
        if order is not None:
            advance_order(order.pk, ScheduledOrder.Status.UNKNOWN, status_reason=f"exchange:{raw}"[:255])
        threshold = int(getattr(settings, "UNKNOWN_STATUS_REVIEW_THRESHOLD", 3))
        _issue, flagged = record_issue(
            ReconciliationIssue.Kind.UNKNOWN_STATUS,
            bracket=link,
            client_order_id=cid,
            raw_status=raw,
            details={"group": link.group_id, "symbol": link.symbol},
            review_threshold=threshold,
        )
        if flagged:
            notify_manual_attention(
                "Unrecognized exchange status needs review",
                {"group": link.group_id, "order": cid, "status": raw},
            )

    # -- persistence gaps ------------------------------------------------------------

    def recover_persistence_gaps(self) -> int:
        limit = int(getattr(settings, "RECOVERY_DRAIN_LIMIT", 50))
        return drain_persistence_gaps(self._replay_gap, limit=limit)

    def _replay_gap(self, record: SubmissionRecord) -> None:
        conditional_kinds = (ScheduledOrder.Kind.TAKE_PROFIT, ScheduledOrder.Kind.STOP_LOSS)
        for row in [record.entry, *record.legs]:
            try:
                raw = self.client.query_status(record.symbol, row.client_order_id, conditional=row.kind in conditional_kinds)
            except OrderNotFoundError:
                row.status = ScheduledOrder.Status.FAILED
                row.status_reason = "not found on exchange during recovery"
                continue
            row.status = order_status_for_ack(raw)
            row.status_reason = f"recovered:{raw}"
        if record.entry.status == ScheduledOrder.Status.FAILED:
            record.create_link = False
        link = persist_submission(record)
        logger.warning("persistence gap recovered group=%s link=%s", record.group_id, link.pk if link else None)
        record_issue(
            ReconciliationIssue.Kind.PERSISTENCE_GAP,
            bracket=link,
            client_order_id=record.entry.client_order_id,
            raw_status=record.entry.status,
            details={"group": record.group_id, "replayed": True},
        )
        if link is None:
            return
        for row in record.legs:
            if row.status == ScheduledOrder.Status.FILLED:
                leg = BracketLink.Leg.TP if row.kind == ScheduledOrder.Kind.TAKE_PROFIT else BracketLink.Leg.SL
                self.handler.handle_triggered(LegTriggered(link_id=link.pk, leg=leg, raw_status=row.status_reason))
                break
