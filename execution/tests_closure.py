from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.utils import timezone

from adapters.client import ExchangeClient
from core.errors import ExchangeTransientError

from .closure import CLOSED, NOOP, ORPHANED, BracketClosureHandler, LegTriggered
from .models import BracketLink, ReconciliationIssue, ScheduledOrder
from .testing import FakeExchange, seed_bracket


class ClosureTestBase(TestCase):
    def setUp(self):
        self.fake = FakeExchange(prices={"XYZUSDT": "10"})
        self.client = ExchangeClient(self.fake, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)
        self.handler = BracketClosureHandler(self.client)
        self.link = seed_bracket(self.fake)

    def _order(self, cid):
        return ScheduledOrder.objects.get(client_order_id=cid)


class HandleTriggeredTest(ClosureTestBase):
    def test_take_profit_closes_link_and_cancels_stop(self):
        self.fake.set_status("tp-1", "FINISHED")
        result = self.handler.handle_triggered(LegTriggered(self.link.pk, "tp", "FINISHED"))

        self.assertEqual((result.action, result.cancel_outcome, result.needs_attention), (CLOSED, "cancelled", False))
        link = BracketLink.objects.get(pk=self.link.pk)
        self.assertEqual(link.status, BracketLink.Status.CLOSED)
        self.assertEqual((link.closed_leg, link.sibling_client_id), ("tp", "sl-1"))
        self.assertIsNotNone(link.closing_started_at)
        self.assertIsNotNone(link.closed_at)
        self.assertEqual(self._order("tp-1").status, ScheduledOrder.Status.FILLED)
        self.assertIsNotNone(self._order("tp-1").trigger_time)
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.CANCELLED)
        self.assertEqual(self.fake.cancelled, ["sl-1"])

    def test_repeated_event_is_a_no_op(self):
        event = LegTriggered(self.link.pk, "sl", "FILLED")
        self.handler.handle_triggered(event)
        before = BracketLink.objects.get(pk=self.link.pk)

        result = self.handler.handle_triggered(event)

        self.assertEqual(result.action, NOOP)
        self.assertEqual(self.fake.calls["cancel_order"], 1)
        after = BracketLink.objects.get(pk=self.link.pk)
        self.assertEqual(after.updated_at, before.updated_at)
        self.assertEqual(after.closed_leg, "sl")

    def test_cancel_retry_is_bounded_and_link_still_closes(self):
        self.fake.script("cancel_order", *[ExchangeTransientError("timeout")] * 3)
        with mock.patch("execution.closure.notify_manual_attention") as notify:
            result = self.handler.handle_triggered(LegTriggered(self.link.pk, "tp", "FINISHED"))

        self.assertEqual(self.fake.calls["cancel_order"], 3)
        self.assertEqual((result.action, result.cancel_outcome, result.needs_attention), (CLOSED, "failed", True))
        link = BracketLink.objects.get(pk=self.link.pk)
        self.assertEqual(link.status, BracketLink.Status.CLOSED)
        self.assertTrue(link.needs_attention)
        self.assertEqual(self._order("sl-1").status, ScheduledOrder.Status.SUBMITTED)
        issue = ReconciliationIssue.objects.get(kind=ReconciliationIssue.Kind.CANCEL_FAILED)
        self.assertEqual(issue.client_order_id, "sl-1")
        notify.assert_called_once()
        self.assertIn("remain open", notify.call_args.args[0])

    def test_rejected_cancel_of_executed_sibling_is_double_execution(self):
        self.fake.set_status("tp-1", "FINISHED")
        self.fake.set_status("sl-1", "FINISHED")
        result = self.handler.handle_triggered(LegTriggered(self.link.pk, "tp", "FINISHED"))

        self.assertEqual((result.action, result.cancel_outcome, result.needs_attention), (CLOSED, "rejected", True))
        self.assertTrue(
            ReconciliationIssue.objects.filter(kind=ReconciliationIssue.Kind.DOUBLE_EXECUTION, client_order_id="sl-1").exists()
        )

    def test_rejected_cancel_of_already_cancelled_sibling_needs_no_attention(self):
        self.fake.set_status("sl-1", "CANCELED")
        result = self.handler.handle_triggered(LegTriggered(self.link.pk, "tp", "FINISHED"))
        self.assertEqual((result.cancel_outcome, result.needs_attention), ("rejected", False))
        self.assertFalse(ReconciliationIssue.objects.exists())

    def test_resume_stuck_closing(self):
        BracketLink.objects.filter(pk=self.link.pk).update(
            status=BracketLink.Status.CLOSING,
            closed_leg="sl",
            sibling_client_id="tp-1",
            closing_started_at=timezone.now() - timedelta(minutes=5),
        )
        link = BracketLink.objects.get(pk=self.link.pk)
        result = self.handler.resume_closing(link)

        self.assertEqual(result.action, CLOSED)
        self.assertEqual(self.fake.cancelled, ["tp-1"])
        self.assertEqual(BracketLink.objects.get(pk=self.link.pk).status, BracketLink.Status.CLOSED)
        self.assertEqual(self.handler.resume_closing(BracketLink.objects.get(pk=self.link.pk)).action, NOOP)


class OrphanTest(ClosureTestBase):
    def setUp(self):
        self.fake = FakeExchange(prices={"XYZUSDT": "10"})
        self.client = ExchangeClient(self.fake, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)
        self.handler = BracketClosureHandler(self.client)
        self.link = seed_bracket(self.fake, entry_status="submitted")

    def test_orphan_cancels_resting_legs(self):
        result = self.handler.orphan(self.link.pk, "entry cancelled", entry_status=ScheduledOrder.Status.CANCELLED)

        self.assertEqual(result.action, ORPHANED)
        self.assertEqual(BracketLink.objects.get(pk=self.link.pk).status, BracketLink.Status.ORPHANED)
        self.assertEqual(self._order("e-1").status, ScheduledOrder.Status.CANCELLED)
        self.assertEqual(sorted(self.fake.cancelled), ["sl-1", "tp-1"])
        self.assertEqual(self._order("tp-1").status, ScheduledOrder.Status.CANCELLED)

    def test_orphan_of_closed_link_is_a_no_op(self):
        BracketLink.objects.filter(pk=self.link.pk).update(status=BracketLink.Status.CLOSED)
        self.assertEqual(self.handler.orphan(self.link.pk, "late").action, NOOP)
        self.assertEqual(self.fake.calls["cancel_order"], 0)

    @override_settings(BRACKET_UNRESOLVABLE_MAX_POLLS=2)
    def test_unresolvable_legs_orphan_after_threshold(self):
        self.assertEqual(self.handler.note_unresolvable(self.link.pk).action, NOOP)
        self.assertEqual(BracketLink.objects.get(pk=self.link.pk).unresolved_polls, 1)

        with mock.patch("execution.closure.notify_manual_attention") as notify:
            result = self.handler.note_unresolvable(self.link.pk)

        self.assertEqual((result.action, result.needs_attention), (ORPHANED, True))
        link = BracketLink.objects.get(pk=self.link.pk)
        self.assertTrue(link.needs_attention)
        self.assertTrue(ReconciliationIssue.objects.filter(kind=ReconciliationIssue.Kind.UNRESOLVABLE).exists())
        self.assertEqual(self.fake.calls["cancel_order"], 0)
        notify.assert_called_once()

    def test_reset_unresolvable(self):
        self.handler.note_unresolvable(self.link.pk)
        BracketClosureHandler.reset_unresolvable(self.link.pk)
        self.assertEqual(BracketLink.objects.get(pk=self.link.pk).unresolved_polls, 0)
