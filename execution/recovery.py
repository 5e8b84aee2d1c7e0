"""
Persistence-gap recovery.

When the exchange accepted a bracket but the store refused the rows, the submission
is parked on a Redis list instead of being resubmitted. Reconciliation drains the
list and replays the persistence with what it finds on the exchange.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

import redis
from django.conf import settings

from core.locks import decode_redis_value, redis_client

from .store import SubmissionRecord

logger = logging.getLogger(__name__)


def _recovery_key() -> str:
    return str(getattr(settings, "RECOVERY_REDIS_KEY", "bracketpilot:persistence_gaps"))


def push_persistence_gap(record: SubmissionRecord, client: Any = None) -> bool:
    """Park ``record`` for the next reconciliation cycle. Returns False if Redis refused it."""
    client = client if client is not None else redis_client()
    payload = json.dumps(record.to_payload(), default=str)
    if client is None:
        logger.error("persistence gap NOT parked (redis unavailable) payload=%s", payload)
        return False
    try:
        client.rpush(_recovery_key(), payload)
        return True
    except redis.RedisError as exc:
        logger.error("persistence gap NOT parked (%s) payload=%s", exc, payload)
        return False


def drain_persistence_gaps(
    replay: Callable[[SubmissionRecord], Any],
    *,
    limit: int = 50,
    client: Any = None,
) -> int:
    """
    Pop up to ``limit`` parked submissions and hand each to ``replay``.
    A replay that raises puts its payload back at the tail and stops the drain, so a
    store that is still down is not hammered.
    """
    client = client if client is not None else redis_client()
    if client is None:
        return 0
    key = _recovery_key()
    replayed = 0
    for _ in range(max(0, int(limit))):
        try:
            raw = client.lpop(key)
        except redis.RedisError as exc:
            logger.warning("persistence gap drain failed: %s", exc)
            break
        if raw is None:
            break
        text = decode_redis_value(raw)
        try:
            record = SubmissionRecord.from_payload(json.loads(text))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("dropping malformed persistence gap payload=%s error=%s", text[:500], exc)
            continue
        try:
            replay(record)
        except Exception as exc:
            logger.warning("persistence gap replay failed group=%s: %s; requeued", record.group_id, exc)
            client.rpush(key, text)
            break
        replayed += 1
    return replayed
