from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone

from core.errors import ExchangeTransientError
from strategies import scheduler
from strategies.models import Strategy, StrategyRun

from .models import BracketLink, ReconciliationIssue, ScheduledOrder
from .reconciliation import ReconciliationLoop
from .recovery import push_persistence_gap
from .runtime import build_runtime
from .store import OrderRow, SubmissionRecord
from .tasks import reconcile_brackets
from .testing import FakeExchange, seed_bracket


class _DummyRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.lists: dict[str, list] = {}

    def get(self, key: str):
        return self.store.get(key)

    def set(self, key: str, value, nx: bool = False, ex: int | None = None):
        if nx and key in self.store:
            return False
        self.store[key] = str(value)
        return True

    def delete(self, key: str):
        self.store.pop(key, None)
        return 1

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    def lpop(self, key):
        items = self.lists.get(key) or []
        return items.pop(0) if items else None


class ReconciliationTestBase(TestCase):
    def setUp(self):
        self.redis = _DummyRedis()
        patcher = mock.patch("core.locks.redis_client", return_value=self.redis)
        patcher.start()
        self.addCleanup(patcher.stop)
        recovery_patcher = mock.patch("execution.recovery.redis_client", return_value=self.redis)
        recovery_patcher.start()
        self.addCleanup(recovery_patcher.stop)

        self.fake = FakeExchange(prices={"XYZUSDT": "1"})
        self.sleeps: list[float] = []
        self.runtime = build_runtime(adapter=self.fake, sleep=self.sleeps.append)
        self.addCleanup(self.runtime.evaluator.shutdown)
        self.loop = self.runtime.reconciler

    def _link(self, link):
        return BracketLink.objects.get(pk=link.pk)

    def _order(self, cid):
        return ScheduledOrder.objects.get(client_order_id=cid)


class EndToEndTest(ReconciliationTestBase):
    def test_take_profit_fill_closes_bracket_and_cancels_stop_once(self):
        strategy = Strategy.objects.create(
            name="S",
            provider="strategies.providers.FixedActionDecisionProvider",
            params={"action": "buy"},
            symbols=["XYZUSDT"],
            order_notional_usdt=Decimal("100"),
            leverage=1,
            take_profit_pct=Decimal("0.02"),
            stop_loss_pct=Decimal("0.01"),
        )
        self.runtime.pipeline.group_id_factory = lambda _s: "g-xyz"
        self.runtime.pipeline.client_id_factory = lambda _group, suffix: f"{suffix}-1"

        # t0: the strategy submits entry + tp-1 + sl-1
        self.assertEqual(scheduler.run_strategy(strategy.pk, runtime=self.runtime), StrategyRun.Status.COMPLETED)
        link = BracketLink.objects.get(group_id="g-xyz")
        self.assertEqual(link.status, BracketLink.Status.ACTIVE)
        self.assertEqual((link.tp_client_id, link.sl_client_id), ("tp-1", "sl-1"))
        self.assertEqual(self._order("e-1").quantity, Decimal("100"))

        # a quiet cycle changes nothing
        self.loop.run_cycle()
        self.assertEqual(self._link(link).status, BracketLink.Status.ACTIVE)

        # t1: tp-1 reports FINISHED
        self.fake.set_status("tp-1", "FINISHED", filled="100", average="1.02")
        stats = self.loop.run_cycle()

        link = self._link(link)
        self.assertEqual(stats.outcomes.get("closed"), 1)
        self.assertEqual(link.status, BracketLink.Status.CLOSED)
        self.assertEqual(link.closed_leg, "tp")
        self.assertEqual(self.fake.calls["cancel_order"], 1)
        self.assertEqual(self.fake.cancelled, ["sl-1"])
        tp = self._order("tp-1")
        self.assertEqual(tp.status, ScheduledOrder.Status.FILLED)
        self.assertEqual(tp.avg_price, Decimal("1.02"))
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.CANCELLED)

        # later cycles leave the closed link alone
        self.loop.run_cycle()
        self.assertEqual(self.fake.calls["cancel_order"], 1)


class EntryReconciliationTest(ReconciliationTestBase):
    def test_open_entry_waits_while_legs_are_quiet(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.assertEqual(self.loop.reconcile_link(link.pk), "pending_entry")
        self.assertEqual(self.fake.calls["query_status"], 3)
        self.assertEqual(self._order("e-1").status, ScheduledOrder.Status.SUBMITTED)

    def test_filled_entry_is_recorded_then_legs_checked(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.fake.set_status("e-1", "FILLED")
        self.assertEqual(self.loop.reconcile_link(link.pk), "active")
        self.assertEqual(self._order("e-1").status, ScheduledOrder.Status.FILLED)
        self.assertEqual(self.fake.calls["query_status"], 3)

    def test_cancelled_entry_orphans_bracket(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.fake.set_status("e-1", "CANCELED")
        self.assertEqual(self.loop.reconcile_link(link.pk), "orphaned")
        self.assertEqual(self._link(link).status, BracketLink.Status.ORPHANED)
        self.assertEqual(self._order("e-1").status, ScheduledOrder.Status.CANCELLED)
        self.assertEqual(sorted(self.fake.cancelled), ["sl-1", "tp-1"])
        self.assertEqual(self.fake.calls["query_status"], 1)

    def test_unmapped_entry_status_still_closes_on_triggered_leg(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.fake.set_status("e-1", "EXPIRED")
        self.fake.set_status("tp-1", "FINISHED")
        self.assertEqual(self.loop.reconcile_link(link.pk), "closed")
        link = self._link(link)
        self.assertEqual((link.status, link.closed_leg), (BracketLink.Status.CLOSED, "tp"))
        self.assertEqual(self.fake.cancelled, ["sl-1"])
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.CANCELLED)
        entry = self._order("e-1")
        self.assertEqual(entry.status, ScheduledOrder.Status.FILLED)
        self.assertEqual(entry.executed_qty, Decimal("1"))
        issue = ReconciliationIssue.objects.get(kind=ReconciliationIssue.Kind.UNKNOWN_STATUS, client_order_id="e-1")
        self.assertTrue(issue.resolved)

    def test_unmapped_entry_status_with_quiet_legs_is_deferred(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.fake.set_status("e-1", "EXPIRED")
        self.assertEqual(self.loop.reconcile_link(link.pk), "deferred")
        self.assertEqual(self._order("e-1").status, ScheduledOrder.Status.UNKNOWN)
        self.assertEqual(self.fake.calls["query_status"], 3)

    def test_open_entry_with_triggered_leg_is_inferred_filled(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.fake.set_status("sl-1", "FILLED")
        self.assertEqual(self.loop.reconcile_link(link.pk), "closed")
        self.assertEqual(self._order("e-1").status, ScheduledOrder.Status.FILLED)
        self.assertEqual(self.fake.cancelled, ["tp-1"])

    @override_settings(BRACKET_UNRESOLVABLE_MAX_POLLS=2)
    def test_missing_entry_is_unresolvable_even_with_open_legs(self):
        link = seed_bracket(self.fake, entry_status="submitted")
        self.fake.forget("e-1")
        outcomes = [self.loop.reconcile_link(link.pk) for _ in range(2)]
        self.assertEqual(outcomes, ["noop", "orphaned"])
        self.assertTrue(self._link(link).needs_attention)


class LegReconciliationTest(ReconciliationTestBase):
    def setUp(self):
        super().setUp()
        self.link = seed_bracket(self.fake)

    def test_unknown_status_goes_to_review_after_threshold(self):
        self.fake.set_status("tp-1", "EXPIRED")
        with (
            override_settings(UNKNOWN_STATUS_REVIEW_THRESHOLD=3),
            mock.patch("execution.reconciliation.notify_manual_attention") as notify,
        ):
            outcomes = [self.loop.reconcile_link(self.link.pk) for _ in range(4)]

        self.assertEqual(outcomes, ["active"] * 4)
        self.assertEqual(self._link(self.link).status, BracketLink.Status.ACTIVE)
        self.assertEqual(self._order("tp-1").status, ScheduledOrder.Status.UNKNOWN)
        issue = ReconciliationIssue.objects.get(kind=ReconciliationIssue.Kind.UNKNOWN_STATUS)
        self.assertEqual((issue.client_order_id, issue.raw_status, issue.occurrences), ("tp-1", "EXPIRED", 4))
        self.assertTrue(issue.needs_review)
        notify.assert_called_once()

        self.fake.set_status("tp-1", "NEW")
        self.loop.reconcile_link(self.link.pk)
        issue.refresh_from_db()
        self.assertTrue(issue.resolved)

    def test_unknown_then_triggered_still_closes(self):
        self.fake.set_status("sl-1", "EXPIRED")
        self.loop.reconcile_link(self.link.pk)
        self.fake.set_status("sl-1", "FILLED")
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "closed")
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.FILLED)
        self.assertEqual(self.fake.cancelled, ["tp-1"])

    @override_settings(BRACKET_UNRESOLVABLE_MAX_POLLS=3)
    def test_missing_legs_orphan_after_consecutive_polls(self):
        self.fake.forget("tp-1")
        self.fake.forget("sl-1")
        outcomes = [self.loop.reconcile_link(self.link.pk) for _ in range(3)]
        self.assertEqual(outcomes, ["noop", "noop", "orphaned"])
        link = self._link(self.link)
        self.assertEqual(link.status, BracketLink.Status.ORPHANED)
        self.assertTrue(link.needs_attention)

    @override_settings(BRACKET_UNRESOLVABLE_MAX_POLLS=2)
    def test_found_leg_resets_unresolved_counter(self):
        sl = self.fake.orders.pop("sl-1")
        tp = self.fake.orders.pop("tp-1")
        self.loop.reconcile_link(self.link.pk)
        self.fake.orders["sl-1"] = sl
        self.fake.orders["tp-1"] = tp
        self.loop.reconcile_link(self.link.pk)
        self.assertEqual(self._link(self.link).unresolved_polls, 0)

    def test_transient_error_skips_link_this_cycle(self):
        self.fake.script("query_status", *[ExchangeTransientError("timeout")] * 3)
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "deferred")
        self.assertEqual(self._link(self.link).status, BracketLink.Status.ACTIVE)

    def test_both_legs_triggered_is_flagged(self):
        self.fake.set_status("tp-1", "FINISHED")
        self.fake.set_status("sl-1", "FINISHED")
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "closed")
        link = self._link(self.link)
        self.assertEqual(link.status, BracketLink.Status.CLOSED)
        self.assertTrue(link.needs_attention)
        self.assertTrue(ReconciliationIssue.objects.filter(kind=ReconciliationIssue.Kind.DOUBLE_EXECUTION).exists())
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.FILLED)

    def test_both_legs_gone_orphans_without_cancels(self):
        self.fake.set_status("tp-1", "CANCELED")
        self.fake.set_status("sl-1", "REJECTED")
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "orphaned")
        self.assertTrue(self._link(self.link).needs_attention)
        self.assertEqual(self.fake.calls["cancel_order"], 0)

    def test_one_leg_cancelled_externally_keeps_link_active(self):
        self.fake.set_status("sl-1", "CANCELED")
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "active")
        link = self._link(self.link)
        self.assertEqual(link.status, BracketLink.Status.ACTIVE)
        self.assertTrue(link.needs_attention)
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.CANCELLED)

    @override_settings(CLOSURE_STALE_SECONDS=60)
    def test_stale_closing_is_resumed(self):
        BracketLink.objects.filter(pk=self.link.pk).update(
            status=BracketLink.Status.CLOSING,
            closed_leg="tp",
            sibling_client_id="sl-1",
            closing_started_at=timezone.now() - timedelta(seconds=10),
        )
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "closing")
        BracketLink.objects.filter(pk=self.link.pk).update(closing_started_at=timezone.now() - timedelta(seconds=120))
        self.assertEqual(self.loop.reconcile_link(self.link.pk), "closed")
        self.assertEqual(self.fake.cancelled, ["sl-1"])


class CycleTest(ReconciliationTestBase):
    def test_batches_are_paced(self):
        loop = ReconciliationLoop(
            self.runtime.client,
            self.runtime.closure,
            batch_size=2,
            batch_pause_seconds=0.5,
            sleep=self.sleeps.append,
        )
        for n in range(5):
            seed_bracket(self.fake, group_id=f"g{n}", entry_id=f"e-{n}", tp_id=f"tp-{n}", sl_id=f"sl-{n}")
        stats = loop.run_cycle()
        self.assertEqual(stats.checked, 5)
        self.assertEqual(self.sleeps, [0.5, 0.5])

    def test_one_broken_link_does_not_stop_the_cycle(self):
        first = seed_bracket(self.fake)
        second = seed_bracket(self.fake, group_id="g2", entry_id="e-2", tp_id="tp-2", sl_id="sl-2")
        self.fake.set_status("tp-2", "FINISHED")
        original = self.loop._reconcile_legs

        def _legs(link, orders, **kwargs):
            if link.pk == first.pk:
                raise RuntimeError("boom")
            return original(link, orders, **kwargs)

        with mock.patch.object(self.loop, "_reconcile_legs", side_effect=_legs):
            stats = self.loop.run_cycle()

        self.assertEqual(stats.errors, 1)
        self.assertEqual(stats.outcomes, {"closed": 1})
        self.assertEqual(self._link(second).status, BracketLink.Status.CLOSED)

    def test_persistence_gap_is_replayed_from_exchange_state(self):
        strategy = Strategy.objects.create(name="s")
        record = SubmissionRecord(
            group_id="gap1",
            symbol="XYZUSDT",
            strategy_id=strategy.pk,
            entry=OrderRow(
                client_order_id="gap1-e", symbol="XYZUSDT", side="buy", kind="market",
                quantity=Decimal("5"), status="filled",
            ),
            legs=[
                OrderRow(
                    client_order_id="gap1-tp", symbol="XYZUSDT", side="sell", kind="take_profit",
                    quantity=Decimal("5"), trigger_price=Decimal("1.1"), status="submitted",
                ),
                OrderRow(
                    client_order_id="gap1-sl", symbol="XYZUSDT", side="sell", kind="stop_loss",
                    quantity=Decimal("5"), trigger_price=Decimal("0.9"), status="submitted",
                ),
            ],
        )
        self.fake.orders["gap1-e"] = {"id": "1", "status": "FILLED"}
        self.fake.orders["gap1-tp"] = {"id": "2", "status": "NEW"}
        self.fake.orders["gap1-sl"] = {"id": "3", "status": "FINISHED"}
        push_persistence_gap(record, client=self.redis)

        stats = self.loop.run_cycle()

        self.assertEqual(stats.recovered, 1)
        link = BracketLink.objects.get(group_id="gap1")
        self.assertEqual((link.status, link.closed_leg), (BracketLink.Status.CLOSED, "sl"))
        self.assertEqual(self.fake.cancelled, ["gap1-tp"])
        self.assertEqual(self._order("gap1-sl").status, ScheduledOrder.Status.FILLED)
        self.assertTrue(
            ReconciliationIssue.objects.filter(kind=ReconciliationIssue.Kind.PERSISTENCE_GAP, client_order_id="gap1-e").exists()
        )
        self.assertEqual(self.redis.lists["bracketpilot:persistence_gaps"], [])


class ReconcileTaskTest(ReconciliationTestBase):
    def test_overlapping_cycle_is_skipped(self):
        seed_bracket(self.fake)
        self.redis.store["lock:reconcile_brackets"] = "other"
        with mock.patch("execution.tasks.get_runtime", return_value=self.runtime):
            self.assertEqual(reconcile_brackets(), "reconcile_brackets:locked")
        self.assertEqual(dict(self.fake.calls), {})
        self.assertEqual(self.redis.store["lock:reconcile_brackets"], "other")

    def test_runs_one_cycle_and_releases_lock(self):
        seed_bracket(self.fake)
        with mock.patch("execution.tasks.get_runtime", return_value=self.runtime):
            result = reconcile_brackets()
        self.assertIn("checked=1", result)
        self.assertNotIn("lock:reconcile_brackets", self.redis.store)

    def test_in_process_loop_honours_the_task_lock(self):
        seed_bracket(self.fake)
        self.fake.set_status("tp-1", "FINISHED")
        self.redis.store["lock:reconcile_brackets"] = "celery-worker"
        self.assertIsNone(self.loop.run_guarded_cycle())
        self.assertEqual(self.fake.calls["query_status"], 0)
        self.assertEqual(BracketLink.objects.get(group_id="g1").status, BracketLink.Status.ACTIVE)

        del self.redis.store["lock:reconcile_brackets"]
        stats = self.loop.run_guarded_cycle()
        self.assertEqual(stats.outcomes, {"closed": 1})
        self.assertNotIn("lock:reconcile_brackets", self.redis.store)
