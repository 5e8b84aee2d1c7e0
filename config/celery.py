from __future__ import annotations

import json
import logging
import os

from celery import Celery
from celery.signals import task_failure
from django.conf import settings
import redis

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("bracketpilot")
app.config_from_object("django.conf:settings", namespace="CELERY")
logger = logging.getLogger(__name__)

# one trading task at a time per worker process; runs hold leases
app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "300")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "240")),
    worker_prefetch_multiplier=1,
)
app.autodiscover_tasks()


def _dlq_client() -> redis.Redis | None:
    broker_url = str(app.conf.broker_url or "")
    if not broker_url.startswith(("redis://", "rediss://")):
        return None
    try:
        return redis.from_url(broker_url)
    except (redis.RedisError, ValueError) as exc:
        logger.warning("dead-letter redis unavailable: %s", exc)
        return None


def failure_record(task_name: str, task_id: str, exception, args, kwargs, einfo) -> dict:
    """Dead-letter entry; AutopilotError context (strategy, symbol, cids) is kept as a dict."""
    return {
        "task_name": task_name,
        "task_id": task_id,
        "error_type": type(exception).__name__ if exception is not None else "",
        "error": str(exception or "unknown error"),
        "context": dict(getattr(exception, "context", None) or {}),
        "args": list(args or []),
        "kwargs": dict(kwargs or {}),
        "traceback": str(getattr(einfo, "traceback", "") or "")[:4000],
    }


def _push_task_failure_dlq(record: dict) -> bool:
    client = _dlq_client()
    if client is None:
        return False
    key = str(getattr(settings, "CELERY_DLQ_REDIS_KEY", "celery:dlq"))
    maxlen = max(100, int(getattr(settings, "CELERY_DLQ_MAXLEN", 2000)))
    try:
        pipe = client.pipeline()
        pipe.lpush(key, json.dumps(record, default=str))
        pipe.ltrim(key, 0, maxlen - 1)
        pipe.execute()
    except redis.RedisError as exc:
        logger.warning("dead-letter push failed task=%s: %s", record.get("task_name"), exc)
        return False
    return True


def _notify_task_failure(task_name: str, task_id: str, message: str) -> None:
    if not getattr(settings, "CELERY_NOTIFY_ON_FAILURE", True):
        return
    throttle = max(30, int(getattr(settings, "CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS", 300)))
    client = _dlq_client()
    if client is not None:
        try:
            if not client.set(f"celery:notify_fail:{task_name}", "1", nx=True, ex=throttle):
                return
        except redis.RedisError as exc:
            logger.warning("failure alert throttle unavailable, alerting anyway: %s", exc)

    from core.notifications import notify_error

    notify_error(f"celery:{task_name}", f"{task_id}: {message}")


@task_failure.connect
def _on_task_failure(
    sender=None,
    task_id=None,
    exception=None,
    args=None,
    kwargs=None,
    traceback=None,
    einfo=None,
    **extras,
):
    task_name = getattr(sender, "name", str(sender or "unknown"))
    record = failure_record(task_name, str(task_id or ""), exception, args, kwargs, einfo)
    _push_task_failure_dlq(record)
    _notify_task_failure(task_name, record["task_id"], record["error"])
