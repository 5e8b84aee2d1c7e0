from __future__ import annotations

import logging

from celery import shared_task

from .runtime import get_runtime

logger = logging.getLogger(__name__)


@shared_task
def reconcile_brackets():
    """One reconciliation cycle. Cycles never overlap: a second worker finds the lock and returns."""
    stats = get_runtime().reconciler.run_guarded_cycle()
    if stats is None:
        return "reconcile_brackets:locked"
    logger.info("reconcile_brackets %s", stats.as_text())
    return stats.as_text()
