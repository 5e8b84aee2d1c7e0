from decimal import Decimal
from unittest import mock

from django.db import IntegrityError, OperationalError, connection, transaction
from django.test import SimpleTestCase, TestCase
from django.test.utils import CaptureQueriesContext

from adapters.types import TradingRules
from core.errors import PersistenceError, ValidationError
from strategies.models import Strategy

from .models import BracketLink, ReconciliationIssue, ScheduledOrder
from .positions import has_live_exposure, position_for
from .recovery import drain_persistence_gaps, push_persistence_gap
from .sizing import bracket_prices, size_entry
from .status import (
    EXCHANGE_STATUS_MAP,
    LegStatus,
    can_advance,
    normalize_exchange_status,
    order_status_for_ack,
)
from .store import (
    OrderRow,
    SubmissionRecord,
    advance_order,
    lock_bracket,
    persist_submission,
    record_issue,
    resolve_issues,
    run_atomic,
)
from .testing import seed_bracket


class _ListRedis:
    def __init__(self):
        self.lists: dict[str, list] = {}

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    def lpop(self, key):
        items = self.lists.get(key) or []
        return items.pop(0).encode() if items else None


def _rules(**overrides) -> TradingRules:
    values = {
        "symbol": "XYZUSDT",
        "step_size": Decimal("0.001"),
        "tick_size": Decimal("0.01"),
        "min_qty": Decimal("0.001"),
        "min_notional": Decimal("5"),
    }
    values.update(overrides)
    return TradingRules(**values)


class StatusMappingTest(SimpleTestCase):
    def test_table_covers_every_documented_status(self):
        expected = {
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
        }
        self.assertEqual(dict(EXCHANGE_STATUS_MAP), expected)
        for raw, status in expected.items():
            self.assertIs(normalize_exchange_status(raw), status)

    def test_case_and_whitespace_are_ignored(self):
        self.assertIs(normalize_exchange_status("  canceled "), LegStatus.CANCELLED)
        self.assertIs(normalize_exchange_status("Finished"), LegStatus.TRIGGERED)

    def test_anything_else_is_unknown(self):
        for raw in ("EXPIRED", "", None, "PENDING_NEW", "weird"):
            self.assertIs(normalize_exchange_status(raw), LegStatus.UNKNOWN)

    def test_table_is_read_only(self):
        with self.assertRaises(TypeError):
            EXCHANGE_STATUS_MAP["EXPIRED"] = LegStatus.CANCELLED

    def test_ack_status(self):
        self.assertEqual(order_status_for_ack("FILLED"), ScheduledOrder.Status.FILLED)
        self.assertEqual(order_status_for_ack("NEW"), ScheduledOrder.Status.SUBMITTED)
        self.assertEqual(order_status_for_ack("REJECTED"), ScheduledOrder.Status.FAILED)
        self.assertEqual(order_status_for_ack("EXPIRED"), ScheduledOrder.Status.SUBMITTED)

    def test_order_lifecycle_never_regresses(self):
        self.assertTrue(can_advance("pending", "submitted"))
        self.assertTrue(can_advance("unknown", "filled"))
        self.assertFalse(can_advance("filled", "cancelled"))
        self.assertFalse(can_advance("submitted", "pending"))
        self.assertFalse(can_advance("submitted", "submitted"))


class SizingTest(SimpleTestCase):
    def test_quantity_is_floored_to_step(self):
        self.assertEqual(size_entry(Decimal("10.0057"), Decimal("1"), _rules()), Decimal("10.005"))

    def test_small_notional_is_bumped_to_min_notional(self):
        qty = size_entry(Decimal("3"), Decimal("10"), _rules())
        self.assertEqual(qty, Decimal("0.5"))

    def test_bump_lands_on_step_grid_at_or_above_min_notional(self):
        qty = size_entry(Decimal("1"), Decimal("3"), _rules())
        self.assertEqual(qty, Decimal("1.667"))
        self.assertGreaterEqual(qty * Decimal("3"), Decimal("5"))

    def test_min_qty_floor(self):
        rules = _rules(step_size=Decimal("1"), min_qty=Decimal("1"), min_notional=Decimal("0"))
        self.assertEqual(size_entry(Decimal("0.5"), Decimal("1"), rules), Decimal("1"))

    def test_bad_inputs_raise_validation_error(self):
        with self.assertRaises(ValidationError):
            size_entry(Decimal("10"), Decimal("0"), _rules())
        with self.assertRaises(ValidationError):
            size_entry(Decimal("-1"), Decimal("10"), _rules())
        with self.assertRaises(ValidationError):
            size_entry(Decimal("1000"), Decimal("1"), _rules(max_qty=Decimal("100")))

    def test_bracket_prices_for_long_and_short(self):
        tp, sl = bracket_prices("buy", Decimal("10"), Decimal("0.1"), Decimal("0.05"), Decimal("0.01"))
        self.assertEqual((tp, sl), (Decimal("11.00"), Decimal("9.50")))
        tp, sl = bracket_prices("sell", Decimal("10"), Decimal("0.1"), Decimal("0.05"), Decimal("0.01"))
        self.assertEqual((tp, sl), (Decimal("9.00"), Decimal("10.50")))

    def test_bracket_prices_snap_to_tick(self):
        tp, sl = bracket_prices("buy", Decimal("1.2345"), Decimal("0.01"), None, Decimal("0.01"))
        self.assertEqual(tp, Decimal("1.25"))
        self.assertIsNone(sl)


class StoreTest(TestCase):
    def test_lock_order_is_link_then_orders_by_id(self):
        link = seed_bracket()
        with CaptureQueriesContext(connection) as ctx, transaction.atomic():
            locked, orders = lock_bracket(link.pk)

        sqls = [q["sql"] for q in ctx.captured_queries if q["sql"].lstrip().upper().startswith("SELECT")]
        self.assertIn('"execution_bracketlink"', sqls[0])
        self.assertIn('"execution_scheduledorder"', sqls[1])
        self.assertIn('ORDER BY "execution_scheduledorder"."id" ASC', sqls[1])
        if connection.features.has_select_for_update:
            self.assertIn("FOR UPDATE", sqls[0])
            self.assertIn("FOR UPDATE", sqls[1])
        self.assertEqual(locked.pk, link.pk)
        self.assertEqual(list(orders), ["e-1", "tp-1", "sl-1"])

    def test_advance_order_is_monotonic(self):
        seed_bracket()
        tp = ScheduledOrder.objects.get(client_order_id="tp-1")

        self.assertTrue(advance_order(tp.pk, ScheduledOrder.Status.UNKNOWN))
        self.assertTrue(advance_order(tp.pk, ScheduledOrder.Status.FILLED, executed_qty=Decimal("1")))
        self.assertFalse(advance_order(tp.pk, ScheduledOrder.Status.CANCELLED))
        self.assertFalse(advance_order(tp.pk, ScheduledOrder.Status.SUBMITTED))
        tp.refresh_from_db()
        self.assertEqual(tp.status, ScheduledOrder.Status.FILLED)

    def test_persist_submission_is_idempotent_on_client_ids(self):
        first = seed_bracket()
        second = seed_bracket()
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(ScheduledOrder.objects.count(), 3)
        self.assertEqual(BracketLink.objects.get().status, BracketLink.Status.ACTIVE)
        tp = ScheduledOrder.objects.get(client_order_id="tp-1")
        self.assertEqual(tp.parent.client_order_id, "e-1")

    def test_link_needs_both_legs(self):
        record = SubmissionRecord(
            group_id="g2",
            symbol="XYZUSDT",
            entry=OrderRow(client_order_id="e-2", symbol="XYZUSDT", side="buy", kind="market", quantity=Decimal("1")),
        )
        with self.assertRaises(PersistenceError):
            persist_submission(record)
        self.assertFalse(ScheduledOrder.objects.filter(client_order_id="e-2").exists())

    def test_write_conflicts_are_retried_then_escalated(self):
        fn = mock.Mock(side_effect=[OperationalError("database is locked"), OperationalError("deadlock detected"), "ok"])
        self.assertEqual(run_atomic(fn, label="t"), "ok")
        self.assertEqual(fn.call_count, 3)

        always = mock.Mock(side_effect=OperationalError("could not serialize access"))
        with self.assertRaises(PersistenceError):
            run_atomic(always, label="t")
        self.assertEqual(always.call_count, 3)

    def test_integrity_errors_are_not_retried(self):
        fn = mock.Mock(side_effect=IntegrityError("duplicate key"))
        with self.assertRaises(PersistenceError):
            run_atomic(fn, label="t")
        self.assertEqual(fn.call_count, 1)

    def test_issue_is_flagged_once_at_threshold(self):
        link = seed_bracket()
        flags = [
            record_issue(
                ReconciliationIssue.Kind.UNKNOWN_STATUS,
                bracket=link,
                client_order_id="tp-1",
                raw_status="EXPIRED",
                review_threshold=3,
            )[1]
            for _ in range(4)
        ]
        self.assertEqual(flags, [False, False, True, False])
        issue = ReconciliationIssue.objects.get()
        self.assertEqual(issue.occurrences, 4)
        self.assertTrue(issue.needs_review)

        self.assertEqual(resolve_issues(ReconciliationIssue.Kind.UNKNOWN_STATUS, "tp-1"), 1)
        _issue, flagged = record_issue(ReconciliationIssue.Kind.UNKNOWN_STATUS, client_order_id="tp-1", review_threshold=3)
        self.assertFalse(flagged)
        self.assertEqual(ReconciliationIssue.objects.filter(resolved=False).get().occurrences, 1)


class RecoveryListTest(SimpleTestCase):
    def _record(self) -> SubmissionRecord:
        return SubmissionRecord(
            group_id="g9",
            symbol="XYZUSDT",
            strategy_id=3,
            entry=OrderRow(
                client_order_id="g9-e",
                symbol="XYZUSDT",
                side="buy",
                kind="market",
                quantity=Decimal("1.5"),
                status="filled",
                avg_price=Decimal("10.25"),
                raw_response={"huge": "payload"},
            ),
            legs=[
                OrderRow(
                    client_order_id="g9-tp",
                    symbol="XYZUSDT",
                    side="sell",
                    kind="take_profit",
                    quantity=Decimal("1.5"),
                    trigger_price=Decimal("11.3"),
                    status="submitted",
                )
            ],
        )

    def test_push_then_drain_replays_record(self):
        client = _ListRedis()
        self.assertTrue(push_persistence_gap(self._record(), client=client))
        seen = []
        self.assertEqual(drain_persistence_gaps(seen.append, client=client), 1)

        replayed = seen[0]
        self.assertEqual(replayed.group_id, "g9")
        self.assertEqual(replayed.entry.quantity, Decimal("1.5"))
        self.assertEqual(replayed.entry.avg_price, Decimal("10.25"))
        self.assertIsNone(replayed.entry.raw_response)
        self.assertEqual(replayed.leg("take_profit").trigger_price, Decimal("11.3"))

    def test_failed_replay_is_requeued_and_stops_drain(self):
        client = _ListRedis()
        push_persistence_gap(self._record(), client=client)
        push_persistence_gap(self._record(), client=client)
        replay = mock.Mock(side_effect=PersistenceError("db down"))

        self.assertEqual(drain_persistence_gaps(replay, client=client), 0)
        self.assertEqual(replay.call_count, 1)
        self.assertEqual(len(client.lists["bracketpilot:persistence_gaps"]), 2)

    def test_malformed_payload_is_dropped(self):
        client = _ListRedis()
        client.rpush("bracketpilot:persistence_gaps", "not json")
        replay = mock.Mock()
        self.assertEqual(drain_persistence_gaps(replay, client=client), 0)
        replay.assert_not_called()
        self.assertEqual(client.lists["bracketpilot:persistence_gaps"], [])


class PositionTest(TestCase):
    def _fill(self, cid, side, qty, price, strategy=None):
        return ScheduledOrder.objects.create(
            strategy=strategy,
            symbol="XYZUSDT",
            side=side,
            kind=ScheduledOrder.Kind.MARKET,
            quantity=Decimal(qty),
            executed_qty=Decimal(qty),
            avg_price=Decimal(price),
            client_order_id=cid,
            status=ScheduledOrder.Status.FILLED,
        )

    def test_net_quantity_and_average_cost(self):
        self._fill("a", "buy", "2", "10")
        self._fill("b", "buy", "2", "12")
        self._fill("c", "sell", "1", "15")
        position = position_for("XYZUSDT")
        self.assertEqual(position.net_qty, Decimal("3"))
        self.assertEqual(position.avg_cost, Decimal("11"))

    def test_flip_resets_average_cost(self):
        self._fill("a", "buy", "1", "10")
        self._fill("b", "sell", "3", "20")
        position = position_for("XYZUSDT")
        self.assertEqual(position.net_qty, Decimal("-2"))
        self.assertEqual(position.avg_cost, Decimal("20"))
        self._fill("c", "buy", "2", "18")
        self.assertTrue(position_for("XYZUSDT").is_flat)
        self.assertIsNone(position_for("XYZUSDT").avg_cost)

    def test_live_exposure_counts_open_brackets_and_positions(self):
        strategy = Strategy.objects.create(name="s")
        other = Strategy.objects.create(name="o")
        self.assertFalse(has_live_exposure("XYZUSDT", strategy.pk))

        self._fill("x", "buy", "1", "10", strategy=other)
        self.assertFalse(has_live_exposure("XYZUSDT", strategy.pk))

        link = seed_bracket(strategy=strategy)
        self.assertTrue(has_live_exposure("XYZUSDT", strategy.pk))
        BracketLink.objects.filter(pk=link.pk).update(status=BracketLink.Status.CLOSED)
        # the entry fill is still on the books
        self.assertTrue(has_live_exposure("XYZUSDT", strategy.pk))
