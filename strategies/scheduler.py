"""
Strategy scheduler.

Decides which strategies are due, runs each one under a per-strategy Redis lease and
keeps one strategy's failure from touching any other. The same ``run_strategy``
function is called from the in-process thread pool, from Celery and from
``evaluate_once``.
"""
from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any

from django.conf import settings
from django.db import close_old_connections, connection, transaction
from django.utils import timezone

from core import metrics
from core.errors import AutopilotError
from core.locks import Lease

from .models import Strategy, StrategyRun

logger = logging.getLogger(__name__)

LOCKED = "locked"
MISSING = "missing"
DISABLED = "disabled"


def _lease_ttl() -> int:
    default = int(getattr(settings, "SCHEDULER_RUN_TIMEOUT_SECONDS", 120)) + 30
    return max(1, int(getattr(settings, "SCHEDULER_LEASE_TTL_SECONDS", default)))


def jitter_for(strategy: Strategy, max_jitter: float) -> float:
    """Deterministic offset in [0, max_jitter] for the strategy's next run."""
    if max_jitter <= 0:
        return 0.0
    last = strategy.last_run_at.isoformat() if strategy.last_run_at else "never"
    return random.Random(f"{strategy.pk}:{last}").uniform(0.0, float(max_jitter))


def is_due(strategy: Strategy, now: datetime, max_jitter: float = 0.0) -> bool:
    if not strategy.enabled:
        return False
    if strategy.last_run_at is None:
        return True
    wait = timedelta(seconds=int(strategy.interval_seconds) + jitter_for(strategy, max_jitter))
    return strategy.last_run_at <= now - wait


def due_strategies(now: datetime | None = None, jitter_seconds: float | None = None) -> list[Strategy]:
    now = now or timezone.now()
    if jitter_seconds is None:
        jitter_seconds = float(getattr(settings, "SCHEDULER_JITTER_SECONDS", 5))
    return [s for s in Strategy.objects.filter(enabled=True).order_by("id") if is_due(s, now, jitter_seconds)]


# ---------------------------------------------------------------------------
# One run
# ---------------------------------------------------------------------------
def run_strategy(strategy_id: int, trigger: str = StrategyRun.Trigger.SCHEDULED, runtime: Any = None) -> str:
    """
    Run one strategy under its lease. Returns the run outcome, or ``"locked"`` when
    another worker holds the lease (or Redis is down and the lease fails closed).
    """
    lease = Lease(
        f"lease:strategy:{strategy_id}",
        _lease_ttl(),
        fail_open=bool(getattr(settings, "SCHEDULER_LEASE_FAIL_OPEN", False)),
    )
    if not lease.acquire():
        metrics.STRATEGY_TICKS_SKIPPED.inc()
        logger.info("strategy tick skipped: lease held strategy=%s trigger=%s", strategy_id, trigger)
        return LOCKED
    try:
        return _run_leased(strategy_id, trigger, runtime)
    finally:
        lease.release()


def _run_leased(strategy_id: int, trigger: str, runtime: Any = None) -> str:
    strategy = Strategy.objects.filter(pk=strategy_id).first()
    if strategy is None:
        logger.warning("strategy id=%s not found, skipping", strategy_id)
        return MISSING
    if not strategy.enabled and trigger == StrategyRun.Trigger.SCHEDULED:
        return DISABLED

    started = timezone.now()
    run = StrategyRun.objects.create(strategy=strategy, trigger=trigger, started_at=started)
    outcome = StrategyRun.Status.FAILED
    try:
        if runtime is None:
            from execution.runtime import get_runtime

            runtime = get_runtime()
        _execute_run(strategy, run, runtime)
        outcome = run.status
    except Exception as exc:
        logger.exception("strategy run failed strategy=%s run=%s", strategy.pk, run.pk)
        run.status = StrategyRun.Status.FAILED
        run.error = str(exc)[:2000]
    finally:
        run.finished_at = timezone.now()
        run.save(update_fields=[
            "status", "finished_at", "symbols_evaluated", "orders_submitted", "orders_failed", "error", "updated_at",
        ])
        _mark_ran(strategy.pk, started)
        metrics.STRATEGY_RUNS.labels(outcome=str(outcome)).inc()
    logger.info(
        "strategy run done strategy=%s run=%s outcome=%s symbols=%s submitted=%s failed=%s",
        strategy.pk,
        run.pk,
        outcome,
        run.symbols_evaluated,
        run.orders_submitted,
        run.orders_failed,
    )
    return str(outcome)


def _execute_run(strategy: Strategy, run: StrategyRun, runtime: Any) -> None:
    # a bad provider path fails the whole run, not every symbol
    runtime.evaluator.provider_for(strategy.provider)
    symbols = [str(s).strip().upper() for s in (strategy.symbols or []) if str(s).strip()]
    for symbol in symbols:
        run.symbols_evaluated += 1
        try:
            snapshot = runtime.client.fetch_snapshot(symbol)
            decision = runtime.evaluator.evaluate(strategy.provider, symbol, snapshot, strategy.params)
            if not decision.is_trade:
                continue
            outcome = runtime.pipeline.submit(strategy, symbol, decision, snapshot, run=run)
            if outcome.submitted:
                run.orders_submitted += 1
        except AutopilotError as exc:
            run.orders_failed += 1
            logger.warning("strategy symbol failed strategy=%s symbol=%s: %s", strategy.pk, symbol, exc)
        except Exception:
            run.orders_failed += 1
            logger.exception("strategy symbol crashed strategy=%s symbol=%s", strategy.pk, symbol)
    run.status = StrategyRun.Status.COMPLETED


def _mark_ran(strategy_id: int, when: datetime) -> None:
    with transaction.atomic():
        strategy = Strategy.objects.select_for_update().filter(pk=strategy_id).first()
        if strategy is None:
            return
        strategy.last_run_at = when
        strategy.run_count += 1
        fields = ["last_run_at", "run_count", "updated_at"]
        if strategy.max_runs and strategy.run_count >= strategy.max_runs and strategy.enabled:
            strategy.enabled = False
            fields.append("enabled")
            logger.warning(
                "strategy auto-disabled strategy=%s runs=%s max_runs=%s",
                strategy.pk,
                strategy.run_count,
                strategy.max_runs,
            )
        strategy.save(update_fields=fields)


def evaluate_once(strategy_id: int, runtime: Any = None) -> str:
    """Synchronous manual trigger. Still honours the lease."""
    return run_strategy(strategy_id, StrategyRun.Trigger.MANUAL, runtime=runtime)


def expire_abandoned_runs(now: datetime | None = None) -> int:
    now = now or timezone.now()
    cutoff = now - timedelta(seconds=_lease_ttl())
    expired = StrategyRun.objects.filter(status=StrategyRun.Status.RUNNING, started_at__lt=cutoff).update(
        status=StrategyRun.Status.ABANDONED,
        finished_at=now,
        error="run exceeded lease ttl",
        updated_at=now,
    )
    if expired:
        logger.warning("strategy runs abandoned count=%s cutoff=%s", expired, cutoff.isoformat())
    return expired


# ---------------------------------------------------------------------------
# In-process host
# ---------------------------------------------------------------------------
class StrategyScheduler:
    def __init__(
        self,
        runtime: Any = None,
        *,
        tick_seconds: float | None = None,
        jitter_seconds: float | None = None,
        max_workers: int | None = None,
    ):
        self.runtime = runtime
        self.tick_seconds = float(
            tick_seconds if tick_seconds is not None else getattr(settings, "SCHEDULER_TICK_SECONDS", 5)
        )
        self.jitter_seconds = float(
            jitter_seconds if jitter_seconds is not None else getattr(settings, "SCHEDULER_JITTER_SECONDS", 5)
        )
        workers = int(max_workers if max_workers is not None else getattr(settings, "SCHEDULER_MAX_WORKERS", 4))
        self._pool = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="strategy")
        self._in_flight: set[int] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def due_strategies(self, now: datetime | None = None) -> list[Strategy]:
        return due_strategies(now, self.jitter_seconds)

    def dispatch_due(self, now: datetime | None = None) -> list[int]:
        submitted: list[int] = []
        for strategy in self.due_strategies(now):
            with self._lock:
                if strategy.pk in self._in_flight:
                    continue
                self._in_flight.add(strategy.pk)
            self._pool.submit(self._run_in_pool, strategy.pk)
            submitted.append(strategy.pk)
        if submitted:
            logger.info("scheduler dispatched strategies=%s", submitted)
        return submitted

    def in_flight(self) -> set[int]:
        with self._lock:
            return set(self._in_flight)

    def _run_in_pool(self, strategy_id: int) -> str:
        try:
            return run_strategy(strategy_id, StrategyRun.Trigger.SCHEDULED, runtime=self.runtime)
        except Exception:
            logger.exception("scheduler worker crashed strategy=%s", strategy_id)
            return StrategyRun.Status.FAILED
        finally:
            with self._lock:
                self._in_flight.discard(strategy_id)
            if threading.current_thread() is not threading.main_thread():
                connection.close()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="strategy-scheduler", daemon=True)
        self._thread.start()
        logger.info("strategy scheduler started tick=%ss", self.tick_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._pool.shutdown(wait=True)
        logger.info("strategy scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.dispatch_due()
            except Exception:
                logger.exception("scheduler tick crashed")
            finally:
                close_old_connections()
            self._stop.wait(self.tick_seconds)
