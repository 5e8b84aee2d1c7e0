"""
Bracket closure state machine.

    active --leg triggered--> closing --sibling cancel attempted--> closed
    active --entry dead / legs unresolvable--> orphaned

Closure runs in three steps so the exchange call never happens inside a database
transaction:

1. lock the link, flip ``active -> closing``, mark the triggered leg filled, commit;
2. cancel the sibling leg (bounded retries in the exchange client);
3. lock again, flip ``closing -> closed`` whatever the cancel outcome was, commit.

Step 1 only proceeds from ``active``, which makes a repeated trigger event a no-op:
it neither cancels again nor writes again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.utils import timezone

from adapters.client import ExchangeClient
from core import metrics
from core.errors import ExchangeRejectionError, ExchangeTransientError
from core.notifications import notify_manual_attention

from .models import BracketLink, ReconciliationIssue, ScheduledOrder
from .status import LegStatus, normalize_exchange_status
from .store import advance_order, lock_bracket, record_issue, run_atomic

logger = logging.getLogger(__name__)

NOOP = "noop"
CLOSED = "closed"
ORPHANED = "orphaned"


@dataclass(frozen=True)
class LegTriggered:
    link_id: int
    leg: str
    raw_status: str = ""
    executed_qty: Decimal | None = None
    avg_price: Decimal | None = None


@dataclass(frozen=True)
class ClosureResult:
    action: str
    cancel_outcome: str = ""
    needs_attention: bool = False


class BracketClosureHandler:
    def __init__(self, client: ExchangeClient):
        self.client = client

    # -- active -> closing -> closed ------------------------------------------------

    def handle_triggered(self, event: LegTriggered) -> ClosureResult:
        link = run_atomic(self._begin_closing, event, label=f"closing:{event.link_id}")
        if link is None:
            logger.info("closure no-op link=%s leg=%s (not active)", event.link_id, event.leg)
            return ClosureResult(action=NOOP)
        logger.info(
            "bracket closing group=%s symbol=%s leg=%s sibling=%s",
            link.group_id,
            link.symbol,
            link.closed_leg,
            link.sibling_client_id,
        )
        return self._finish(link)

    def resume_closing(self, link: BracketLink) -> ClosureResult:
        """Finish a closure whose worker died between steps 1 and 3."""
        if link.status != BracketLink.Status.CLOSING:
            return ClosureResult(action=NOOP)
        logger.warning("resuming stale closure group=%s since=%s", link.group_id, link.closing_started_at)
        return self._finish(link)

    def _begin_closing(self, event: LegTriggered) -> BracketLink | None:
        link, orders = lock_bracket(event.link_id)
        if link.status != BracketLink.Status.ACTIVE:
            return None
        now = timezone.now()
        link.status = BracketLink.Status.CLOSING
        link.closed_leg = event.leg
        link.sibling_client_id = link.sibling_of(event.leg)
        link.closing_started_at = now
        link.unresolved_polls = 0
        link.save(update_fields=[
            "status", "closed_leg", "sibling_client_id", "closing_started_at", "unresolved_polls", "updated_at",
        ])
        triggered = orders.get(link.leg_client_id(event.leg))
        if triggered is not None:
            fields = {"trigger_time": now, "status_reason": f"exchange:{event.raw_status}"[:255]}
            fields["executed_qty"] = event.executed_qty if event.executed_qty else triggered.quantity
            if event.avg_price is not None:
                fields["avg_price"] = event.avg_price
            advance_order(triggered.pk, ScheduledOrder.Status.FILLED, **fields)
        return link

    def _finish(self, link: BracketLink) -> ClosureResult:
        outcome, attention = self._cancel_sibling(link)
        committed = run_atomic(self._commit_closed, link.pk, outcome, attention, label=f"closed:{link.pk}")
        if not committed:
            return ClosureResult(action=NOOP, cancel_outcome=outcome, needs_attention=attention)
        metrics.BRACKETS_CLOSED.labels(leg=link.closed_leg or "unknown").inc()
        if outcome not in (BracketLink.CancelOutcome.CANCELLED, BracketLink.CancelOutcome.SKIPPED):
            metrics.SIBLING_CANCEL_FAILURES.inc()
        logger.info(
            "bracket closed group=%s leg=%s cancel=%s attention=%s",
            link.group_id,
            link.closed_leg,
            outcome,
            attention,
        )
        return ClosureResult(action=CLOSED, cancel_outcome=outcome, needs_attention=attention)

    def _cancel_sibling(self, link: BracketLink) -> tuple[str, bool]:
        sibling = link.sibling_client_id
        if not sibling:
            return BracketLink.CancelOutcome.SKIPPED, False
        try:
            self.client.cancel_order(link.symbol, sibling, conditional=True)
            return BracketLink.CancelOutcome.CANCELLED, False
        except ExchangeRejectionError as exc:
            # "unknown order" / "already executed": find out which before deciding
            status = self._recheck_status(link.symbol, sibling)
            if status is LegStatus.TRIGGERED:
                logger.error(
                    "both legs executed group=%s symbol=%s sibling=%s: %s",
                    link.group_id,
                    link.symbol,
                    sibling,
                    exc,
                )
                self._flag(link, ReconciliationIssue.Kind.DOUBLE_EXECUTION, sibling, "Both bracket legs executed", exc)
                return BracketLink.CancelOutcome.REJECTED, True
            if status is not None and status.is_dead:
                logger.info("sibling already gone group=%s sibling=%s status=%s", link.group_id, sibling, status.value)
                return BracketLink.CancelOutcome.REJECTED, False
            logger.warning("sibling cancel rejected group=%s sibling=%s: %s", link.group_id, sibling, exc)
            self._flag(link, ReconciliationIssue.Kind.CANCEL_FAILED, sibling, "Sibling leg may remain open", exc)
            return BracketLink.CancelOutcome.REJECTED, True
        except ExchangeTransientError as exc:
            logger.warning(
                "sibling cancel abandoned after retries group=%s sibling=%s: %s",
                link.group_id,
                sibling,
                exc,
            )
            self._flag(link, ReconciliationIssue.Kind.CANCEL_FAILED, sibling, "Sibling leg may remain open", exc)
            return BracketLink.CancelOutcome.FAILED, True

    def _recheck_status(self, symbol: str, client_order_id: str) -> LegStatus | None:
        try:
            return normalize_exchange_status(self.client.query_status(symbol, client_order_id, conditional=True))
        except (ExchangeRejectionError, ExchangeTransientError) as exc:
            logger.info("status recheck failed cid=%s: %s", client_order_id, exc)
            return None

    def _flag(self, link: BracketLink, kind: str, client_order_id: str, subject: str, exc: Exception) -> None:
        record_issue(
            kind,
            bracket=link,
            client_order_id=client_order_id,
            details={"group": link.group_id, "error": str(exc)[:500]},
        )
        notify_manual_attention(
            subject,
            {"group": link.group_id, "symbol": link.symbol, "order": client_order_id, "error": str(exc)[:300]},
        )

    def _commit_closed(self, link_id: int, outcome: str, attention: bool) -> bool:
        link, orders = lock_bracket(link_id)
        if link.status != BracketLink.Status.CLOSING:
            return False
        link.status = BracketLink.Status.CLOSED
        link.cancel_outcome = outcome
        link.needs_attention = link.needs_attention or attention
        link.closed_at = timezone.now()
        link.save(update_fields=["status", "cancel_outcome", "needs_attention", "closed_at", "updated_at"])
        sibling = orders.get(link.sibling_client_id)
        if sibling is not None and outcome == BracketLink.CancelOutcome.CANCELLED:
            advance_order(sibling.pk, ScheduledOrder.Status.CANCELLED, status_reason="cancelled: sibling triggered")
        return True

    # -- active -> orphaned ---------------------------------------------------------

    def orphan(
        self,
        link_id: int,
        reason: str,
        *,
        entry_status: str | None = None,
        cancel_legs: bool = True,
        attention: bool = False,
    ) -> ClosureResult:
        link = run_atomic(
            self._commit_orphaned,
            link_id,
            reason,
            entry_status,
            attention,
            label=f"orphan:{link_id}",
        )
        if link is None:
            return ClosureResult(action=NOOP)
        metrics.BRACKETS_ORPHANED.inc()
        logger.warning("bracket orphaned group=%s symbol=%s reason=%s", link.group_id, link.symbol, reason)
        if attention:
            notify_manual_attention(
                "Bracket orphaned",
                {"group": link.group_id, "symbol": link.symbol, "reason": reason},
            )
        if cancel_legs:
            for cid in (link.tp_client_id, link.sl_client_id):
                self._cancel_resting_leg(link, cid)
        return ClosureResult(action=ORPHANED, needs_attention=attention)

    def _commit_orphaned(
        self,
        link_id: int,
        reason: str,
        entry_status: str | None,
        attention: bool,
    ) -> BracketLink | None:
        link, orders = lock_bracket(link_id)
        if link.status != BracketLink.Status.ACTIVE:
            return None
        link.status = BracketLink.Status.ORPHANED
        link.needs_attention = link.needs_attention or attention
        link.closed_at = timezone.now()
        link.save(update_fields=["status", "needs_attention", "closed_at", "updated_at"])
        entry = orders.get(link.entry_client_id)
        if entry is not None and entry_status:
            advance_order(entry.pk, entry_status, status_reason=reason[:255])
        return link

    def _cancel_resting_leg(self, link: BracketLink, client_order_id: str) -> None:
        if not client_order_id:
            return
        try:
            self.client.cancel_order(link.symbol, client_order_id, conditional=True)
        except (ExchangeRejectionError, ExchangeTransientError) as exc:
            logger.info("resting leg cancel failed group=%s cid=%s: %s", link.group_id, client_order_id, exc)
            return
        order = ScheduledOrder.objects.filter(client_order_id=client_order_id).only("pk").first()
        if order is not None:
            advance_order(order.pk, ScheduledOrder.Status.CANCELLED, status_reason="cancelled: bracket orphaned")

    # -- unresolvable legs ----------------------------------------------------------

    def note_unresolvable(self, link_id: int) -> ClosureResult:
        threshold = max(1, int(getattr(settings, "BRACKET_UNRESOLVABLE_MAX_POLLS", 5)))
        polls = run_atomic(self._bump_unresolved, link_id, label=f"unresolved:{link_id}")
        if polls is None or polls < threshold:
            return ClosureResult(action=NOOP)
        link = BracketLink.objects.get(pk=link_id)
        record_issue(
            ReconciliationIssue.Kind.UNRESOLVABLE,
            bracket=link,
            client_order_id=link.tp_client_id,
            details={"group": link.group_id, "polls": polls},
        )
        return self.orphan(link_id, f"legs unresolvable after {polls} polls", cancel_legs=False, attention=True)

    def _bump_unresolved(self, link_id: int) -> int | None:
        link, _orders = lock_bracket(link_id)
        if link.status != BracketLink.Status.ACTIVE:
            return None
        link.unresolved_polls += 1
        link.save(update_fields=["unresolved_polls", "updated_at"])
        return link.unresolved_polls

    @staticmethod
    def reset_unresolvable(link_id: int) -> None:
        BracketLink.objects.filter(pk=link_id, unresolved_polls__gt=0).update(
            unresolved_polls=0, updated_at=timezone.now()
        )
