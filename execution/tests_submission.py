from decimal import Decimal
from unittest import mock

from django.test import TestCase

from adapters.client import ExchangeClient
from adapters.trading_rules import TradingRulesCache
from adapters.types import MarketSnapshot
from core.errors import ExchangeRejectionError, ExchangeTransientError, PersistenceError, ValidationError
from strategies.decision import Decision
from strategies.models import Strategy

from .models import BracketLink, ScheduledOrder
from .submission import SubmissionPipeline, default_client_id, default_group_id
from .testing import FakeExchange, seed_bracket


class SubmissionPipelineTest(TestCase):
    def setUp(self):
        self.fake = FakeExchange(prices={"XYZUSDT": "10"})
        self.client = ExchangeClient(self.fake, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)
        self.pipeline = SubmissionPipeline(
            self.client,
            TradingRulesCache(self.client.fetch_trading_rules),
            group_id_factory=lambda _s: "g1",
        )
        self.strategy = Strategy.objects.create(
            name="s",
            symbols=["XYZUSDT"],
            order_notional_usdt=Decimal("10"),
            leverage=1,
            take_profit_pct=Decimal("0.1"),
            stop_loss_pct=Decimal("0.05"),
        )
        self.snapshot = MarketSnapshot(symbol="XYZUSDT", last_price=Decimal("10"))

    def _submit(self, decision=None, snapshot=None):
        return self.pipeline.submit(
            self.strategy,
            "XYZUSDT",
            decision or Decision(action="buy", reason="test"),
            snapshot or self.snapshot,
        )

    def test_entry_and_legs_are_persisted_with_active_link(self):
        outcome = self._submit()

        link = outcome.link
        self.assertEqual(link.status, BracketLink.Status.ACTIVE)
        self.assertEqual((link.entry_client_id, link.tp_client_id, link.sl_client_id), ("g1-e", "g1-tp", "g1-sl"))
        entry = ScheduledOrder.objects.get(client_order_id="g1-e")
        tp = ScheduledOrder.objects.get(client_order_id="g1-tp")
        sl = ScheduledOrder.objects.get(client_order_id="g1-sl")
        self.assertEqual(entry.status, ScheduledOrder.Status.FILLED)
        self.assertEqual(entry.quantity, Decimal("1"))
        self.assertEqual((tp.side, tp.trigger_price, tp.status), ("sell", Decimal("11"), ScheduledOrder.Status.SUBMITTED))
        self.assertEqual((sl.side, sl.trigger_price), ("sell", Decimal("9.5")))
        self.assertEqual(tp.parent_id, entry.pk)
        self.assertEqual(self.fake.calls["fetch_trading_rules"], 1)

    def test_no_op_submits_nothing(self):
        outcome = self._submit(Decision.no_op("flat"))
        self.assertFalse(outcome.submitted)
        self.assertEqual(outcome.skipped, "no_op")
        self.assertEqual(self.fake.calls["submit_order"], 0)

    def test_stacking_guard(self):
        seed_bracket(strategy=self.strategy, group_id="old", entry_id="o-e", tp_id="o-tp", sl_id="o-sl")
        outcome = self._submit()
        self.assertEqual(outcome.skipped, "live exposure")
        self.assertEqual(self.fake.calls["submit_order"], 0)

        self.strategy.allow_stacking = True
        self.assertTrue(self._submit().submitted)

    def test_invalid_price_submits_nothing(self):
        with self.assertRaises(ValidationError):
            self._submit(snapshot=MarketSnapshot(symbol="XYZUSDT", last_price=Decimal("0")))
        self.assertEqual(self.fake.calls["submit_order"], 0)

    def test_transient_entry_failure_is_retried_then_abandoned(self):
        self.fake.script("submit_order", *[ExchangeTransientError("timeout")] * 3)
        with self.assertRaises(ExchangeTransientError):
            self._submit()
        self.assertEqual(self.fake.calls["submit_order"], 3)
        self.assertFalse(ScheduledOrder.objects.exists())

    def test_lost_entry_ack_does_not_open_a_second_position(self):
        self.fake.lose_next_ack("submit_order")
        outcome = self._submit()

        self.assertEqual(self.fake.created.count("g1-e"), 1)
        self.assertEqual(self.fake.calls["submit_order"], 1)
        self.assertEqual(outcome.link.status, BracketLink.Status.ACTIVE)
        entry = ScheduledOrder.objects.get(client_order_id="g1-e")
        self.assertEqual(entry.status, ScheduledOrder.Status.FILLED)
        self.assertEqual(entry.exchange_order_id, "1")

    def test_lost_leg_ack_keeps_one_conditional_order(self):
        self.fake.lose_next_ack("submit_conditional_order")
        outcome = self._submit()

        self.assertEqual(self.fake.created, ["g1-e", "g1-tp", "g1-sl"])
        self.assertEqual(self.fake.calls["submit_conditional_order"], 2)
        self.assertEqual(outcome.link.status, BracketLink.Status.ACTIVE)
        self.assertEqual(ScheduledOrder.objects.get(client_order_id="g1-tp").status, ScheduledOrder.Status.SUBMITTED)

    def test_failed_leg_keeps_accepted_orders_without_link(self):
        self.fake.script("submit_conditional_order", None, ExchangeRejectionError("stop price would trigger"))
        with mock.patch("execution.submission.notify_manual_attention") as notify:
            with self.assertRaises(ExchangeRejectionError):
                self._submit()

        notify.assert_called_once()
        self.assertEqual(
            set(ScheduledOrder.objects.values_list("client_order_id", flat=True)),
            {"g1-e", "g1-tp"},
        )
        self.assertFalse(BracketLink.objects.exists())

    def test_persistence_gap_parks_record_instead_of_resubmitting(self):
        with (
            mock.patch("execution.submission.persist_submission", side_effect=PersistenceError("db down")),
            mock.patch("execution.submission.push_persistence_gap") as push,
            mock.patch("execution.submission.notify_error") as notify,
        ):
            with self.assertRaises(PersistenceError):
                self._submit()

        record = push.call_args.args[0]
        self.assertEqual(record.group_id, "g1")
        self.assertTrue(record.create_link)
        self.assertEqual([row.client_order_id for row in record.legs], ["g1-tp", "g1-sl"])
        self.assertEqual(self.fake.calls["submit_order"], 1)
        self.assertEqual(self.fake.calls["submit_conditional_order"], 2)
        notify.assert_called_once()

    def test_default_ids_fit_exchange_limit(self):
        group = default_group_id(self.strategy)
        self.assertTrue(group.startswith(f"bp{self.strategy.pk}-"))
        self.assertLessEqual(len(default_client_id(group, "tp")), 36)
        self.assertNotEqual(group, default_group_id(self.strategy))
