import threading
import time
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from adapters.types import MarketSnapshot
from core.errors import ExchangeRejectionError, ValidationError

from . import scheduler
from .decision import BUY, Decision, DecisionEvaluator, validate_decision
from .models import Strategy, StrategyRun
from .providers import FixedActionDecisionProvider, NoopDecisionProvider
from .tasks import dispatch_due_strategies


class _DummyRedis:
    def __init__(self):
        self.store: dict[str, str] = {}

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


class _SlowProvider:
    def __init__(self):
        self.release = threading.Event()

    def evaluate(self, symbol, snapshot, params):
        self.release.wait(5)
        return Decision(action=BUY, reason="late")


class _FakeRuntime:
    def __init__(self, prices: dict[str, str], pipeline=None, evaluator=None):
        self.client = mock.Mock()
        self.client.fetch_snapshot.side_effect = lambda s: MarketSnapshot(symbol=s, last_price=Decimal(prices[s]))
        self.pipeline = pipeline or mock.Mock()
        self.evaluator = evaluator or DecisionEvaluator(timeout_seconds=1, max_workers=2)


def _snapshot(symbol="XYZUSDT", price="10"):
    return MarketSnapshot(symbol=symbol, last_price=Decimal(price))


class DecisionTests(SimpleTestCase):
    def test_invalid_action_is_rejected(self):
        with self.assertRaises(ValidationError):
            validate_decision(Decision(action="hold"))
        with self.assertRaises(ValidationError):
            validate_decision({"action": "buy"})

    def test_trade_needs_positive_size_multiplier(self):
        with self.assertRaises(ValidationError):
            validate_decision(Decision(action=BUY, size_multiplier=0))
        self.assertTrue(validate_decision(Decision(action=BUY, size_multiplier=0.5)).is_trade)

    def test_fixed_action_provider(self):
        provider = FixedActionDecisionProvider()
        self.assertEqual(provider.evaluate("XYZUSDT", _snapshot(), {"action": "SELL"}).action, "sell")
        self.assertFalse(provider.evaluate("XYZUSDT", _snapshot(), {"action": "moon"}).is_trade)
        self.assertFalse(NoopDecisionProvider().evaluate("XYZUSDT", _snapshot(), {}).is_trade)


class DecisionEvaluatorTests(SimpleTestCase):
    def test_timeout_yields_no_op(self):
        evaluator = DecisionEvaluator(timeout_seconds=0.05, max_workers=1)
        slow = _SlowProvider()
        evaluator._providers["tests.slow"] = slow
        try:
            started = time.monotonic()
            decision = evaluator.evaluate("tests.slow", "XYZUSDT", _snapshot(), {})
            self.assertLess(time.monotonic() - started, 2)
        finally:
            slow.release.set()
            evaluator.shutdown()
        self.assertFalse(decision.is_trade)
        self.assertEqual(decision.reason, "provider timeout")

    def test_resolves_dotted_path_once(self):
        evaluator = DecisionEvaluator(timeout_seconds=1, max_workers=1)
        try:
            path = "strategies.providers.FixedActionDecisionProvider"
            first = evaluator.provider_for(path)
            self.assertIs(evaluator.provider_for(path), first)
            decision = evaluator.evaluate(path, "XYZUSDT", _snapshot(), {"action": "buy"})
        finally:
            evaluator.shutdown()
        self.assertEqual(decision.action, BUY)

    def test_unknown_path_is_validation_error(self):
        evaluator = DecisionEvaluator(timeout_seconds=1, max_workers=1)
        try:
            with self.assertRaises(ValidationError):
                evaluator.provider_for("strategies.providers.DoesNotExist")
        finally:
            evaluator.shutdown()


class DueStrategiesTests(TestCase):
    def test_never_run_and_overdue_strategies_are_due(self):
        now = timezone.now()
        fresh = Strategy.objects.create(name="fresh", interval_seconds=60)
        overdue = Strategy.objects.create(name="overdue", interval_seconds=60, last_run_at=now - timedelta(seconds=61))
        Strategy.objects.create(name="recent", interval_seconds=60, last_run_at=now - timedelta(seconds=30))
        Strategy.objects.create(name="off", enabled=False)

        due = [s.pk for s in scheduler.due_strategies(now, jitter_seconds=0)]
        self.assertEqual(due, [fresh.pk, overdue.pk])

    def test_jitter_is_deterministic_and_bounded(self):
        now = timezone.now()
        strategy = Strategy.objects.create(name="j", interval_seconds=60, last_run_at=now - timedelta(seconds=62))
        offsets = {scheduler.jitter_for(strategy, 5.0) for _ in range(3)}
        self.assertEqual(len(offsets), 1)
        offset = offsets.pop()
        self.assertTrue(0.0 <= offset <= 5.0)
        self.assertEqual(scheduler.is_due(strategy, now, 5.0), offset <= 2.0)
        self.assertTrue(scheduler.is_due(strategy, now + timedelta(seconds=5), 5.0))


@mock.patch("core.locks.redis_client")
class RunStrategyTests(TestCase):
    def setUp(self):
        self.redis = _DummyRedis()

    def test_held_lease_skips_tick(self, redis_client):
        redis_client.return_value = self.redis
        strategy = Strategy.objects.create(name="s", symbols=["XYZUSDT"])
        self.redis.store[f"lease:strategy:{strategy.pk}"] = "other-worker"

        outcome = scheduler.run_strategy(strategy.pk, runtime=_FakeRuntime({"XYZUSDT": "10"}))

        self.assertEqual(outcome, "locked")
        self.assertFalse(StrategyRun.objects.exists())
        self.assertEqual(self.redis.store[f"lease:strategy:{strategy.pk}"], "other-worker")

    def test_redis_down_fails_closed(self, redis_client):
        redis_client.return_value = None
        strategy = Strategy.objects.create(name="s", symbols=["XYZUSDT"])
        self.assertEqual(scheduler.run_strategy(strategy.pk, runtime=_FakeRuntime({})), "locked")
        with override_settings(SCHEDULER_LEASE_FAIL_OPEN=True):
            outcome = scheduler.run_strategy(strategy.pk, runtime=_FakeRuntime({"XYZUSDT": "10"}))
        self.assertEqual(outcome, StrategyRun.Status.COMPLETED)

    def test_concurrent_runs_of_one_strategy_are_mutually_exclusive(self, redis_client):
        redis_client.return_value = self.redis
        entered = threading.Event()
        release = threading.Event()
        results = []

        def _slow_run(strategy_id, trigger, runtime=None):
            entered.set()
            release.wait(5)
            return "completed"

        with mock.patch("strategies.scheduler._run_leased", side_effect=_slow_run):
            worker = threading.Thread(target=lambda: results.append(scheduler.run_strategy(7)))
            worker.start()
            self.assertTrue(entered.wait(5))
            self.assertEqual(scheduler.run_strategy(7), "locked")
            release.set()
            worker.join(5)

        self.assertEqual(results, ["completed"])
        self.assertNotIn("lease:strategy:7", self.redis.store)

    def test_symbol_failure_does_not_stop_the_run(self, redis_client):
        redis_client.return_value = self.redis
        strategy = Strategy.objects.create(
            name="s",
            provider="strategies.providers.FixedActionDecisionProvider",
            params={"action": "buy"},
            symbols=["AAAUSDT", "bbbusdt"],
        )
        pipeline = mock.Mock()
        pipeline.submit.side_effect = [ExchangeRejectionError("margin"), mock.Mock(submitted=True)]
        runtime = _FakeRuntime({"AAAUSDT": "1", "BBBUSDT": "2"}, pipeline=pipeline)

        outcome = scheduler.run_strategy(strategy.pk, runtime=runtime)

        self.assertEqual(outcome, StrategyRun.Status.COMPLETED)
        run = StrategyRun.objects.get(strategy=strategy)
        self.assertEqual((run.symbols_evaluated, run.orders_submitted, run.orders_failed), (2, 1, 1))
        self.assertIsNotNone(run.finished_at)
        self.assertEqual(pipeline.submit.call_args.args[1], "BBBUSDT")
        strategy.refresh_from_db()
        self.assertEqual(strategy.run_count, 1)
        self.assertIsNotNone(strategy.last_run_at)

    def test_broken_strategy_fails_alone(self, redis_client):
        redis_client.return_value = self.redis
        broken = Strategy.objects.create(name="broken", provider="nowhere.Provider", symbols=["AAAUSDT"])
        healthy = Strategy.objects.create(name="healthy", symbols=["AAAUSDT"])
        runtime = _FakeRuntime({"AAAUSDT": "1"})

        self.assertEqual(scheduler.run_strategy(broken.pk, runtime=runtime), StrategyRun.Status.FAILED)
        self.assertEqual(scheduler.run_strategy(healthy.pk, runtime=runtime), StrategyRun.Status.COMPLETED)

        failed = StrategyRun.objects.get(strategy=broken)
        self.assertEqual(failed.status, StrategyRun.Status.FAILED)
        self.assertIn("nowhere.Provider", failed.error)
        broken.refresh_from_db()
        self.assertIsNotNone(broken.last_run_at)

    def test_max_runs_disables_strategy(self, redis_client):
        redis_client.return_value = self.redis
        strategy = Strategy.objects.create(name="s", symbols=[], max_runs=2)
        runtime = _FakeRuntime({})
        scheduler.run_strategy(strategy.pk, runtime=runtime)
        strategy.refresh_from_db()
        self.assertTrue(strategy.enabled)

        scheduler.run_strategy(strategy.pk, runtime=runtime)
        strategy.refresh_from_db()
        self.assertFalse(strategy.enabled)
        self.assertEqual(strategy.run_count, 2)
        self.assertEqual(scheduler.run_strategy(strategy.pk, runtime=runtime), "disabled")

    def test_evaluate_once_runs_disabled_strategy_manually(self, redis_client):
        redis_client.return_value = self.redis
        strategy = Strategy.objects.create(name="s", symbols=[], enabled=False)
        self.assertEqual(scheduler.evaluate_once(strategy.pk, runtime=_FakeRuntime({})), StrategyRun.Status.COMPLETED)
        self.assertEqual(StrategyRun.objects.get().trigger, StrategyRun.Trigger.MANUAL)


class ExpireAbandonedRunsTests(TestCase):
    @override_settings(SCHEDULER_LEASE_TTL_SECONDS=150)
    def test_only_stale_running_rows_are_abandoned(self):
        now = timezone.now()
        strategy = Strategy.objects.create(name="s")
        stale = StrategyRun.objects.create(strategy=strategy, started_at=now - timedelta(seconds=200))
        fresh = StrategyRun.objects.create(strategy=strategy, started_at=now - timedelta(seconds=10))
        done = StrategyRun.objects.create(
            strategy=strategy,
            started_at=now - timedelta(seconds=500),
            status=StrategyRun.Status.COMPLETED,
        )

        self.assertEqual(scheduler.expire_abandoned_runs(now), 1)
        stale.refresh_from_db()
        fresh.refresh_from_db()
        done.refresh_from_db()
        self.assertEqual(stale.status, StrategyRun.Status.ABANDONED)
        self.assertEqual(fresh.status, StrategyRun.Status.RUNNING)
        self.assertEqual(done.status, StrategyRun.Status.COMPLETED)


class StrategySchedulerTests(TestCase):
    def test_in_flight_strategy_is_not_dispatched_twice(self):
        strategy = Strategy.objects.create(name="s")
        entered = threading.Event()
        release = threading.Event()

        def _slow(strategy_id, trigger, runtime=None):
            entered.set()
            release.wait(5)
            return "completed"

        sched = scheduler.StrategyScheduler(runtime=object(), tick_seconds=1, jitter_seconds=0, max_workers=2)
        with mock.patch("strategies.scheduler.run_strategy", side_effect=_slow):
            self.assertEqual(sched.dispatch_due(), [strategy.pk])
            self.assertTrue(entered.wait(5))
            self.assertEqual(sched.dispatch_due(), [])
            release.set()
            sched._pool.shutdown(wait=True)
        self.assertEqual(sched.in_flight(), set())


class DispatchTaskTests(TestCase):
    @mock.patch("strategies.tasks.run_strategy.delay")
    @mock.patch("core.locks.redis_client")
    def test_dispatch_fans_out_due_strategies(self, redis_client, delay):
        redis_client.return_value = _DummyRedis()
        a = Strategy.objects.create(name="a")
        b = Strategy.objects.create(name="b")

        self.assertEqual(dispatch_due_strategies(), "dispatched=2")
        self.assertEqual([c.args[0] for c in delay.call_args_list], [a.pk, b.pk])

    @mock.patch("strategies.tasks.run_strategy.delay")
    @mock.patch("core.locks.redis_client")
    def test_dispatch_skips_when_previous_dispatch_active(self, redis_client, delay):
        client = _DummyRedis()
        client.store["lock:dispatch_due_strategies"] = "x"
        redis_client.return_value = client
        Strategy.objects.create(name="a")

        self.assertEqual(dispatch_due_strategies(), "dispatch:locked")
        delay.assert_not_called()
