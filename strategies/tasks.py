from __future__ import annotations

import logging

from celery import shared_task
from django.conf import settings

from core.locks import acquire_task_lock, release_task_lock

from . import scheduler
from .models import StrategyRun

logger = logging.getLogger(__name__)


@shared_task(expires=55)
def dispatch_due_strategies():
    """Fan-out: one run_strategy task per due strategy.
    Guarded by a Redis lock so queued-up beat ticks do not dispatch twice."""
    lock_key = "lock:dispatch_due_strategies"
    lock_ttl = max(1, int(getattr(settings, "SCHEDULER_TICK_SECONDS", 5)))
    lock_client, lock_token = acquire_task_lock(lock_key, lock_ttl)
    if lock_client is not None and not lock_token:
        logger.info("dispatch_due_strategies skipped: previous dispatch still active")
        return "dispatch:locked"
    try:
        ids = [s.pk for s in scheduler.due_strategies()]
        for strategy_id in ids:
            run_strategy.delay(strategy_id)
        logger.info("dispatch_due_strategies dispatched %d strategies", len(ids))
        return f"dispatched={len(ids)}"
    finally:
        release_task_lock(lock_client, lock_key, lock_token)


@shared_task
def run_strategy(strategy_id: int, trigger: str = StrategyRun.Trigger.SCHEDULED):
    return scheduler.run_strategy(strategy_id, trigger)


@shared_task
def expire_abandoned_runs():
    return f"abandoned={scheduler.expire_abandoned_runs()}"
