from __future__ import annotations

import logging
import uuid
from typing import Any

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


def redis_client():
    try:
        return redis.from_url(settings.CELERY_BROKER_URL)
    except Exception as exc:
        logger.warning("redis client unavailable: %s", exc)
        return None


def decode_redis_value(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return str(raw)
    return str(raw)


def acquire_task_lock(lock_key: str, ttl_seconds: int, client: Any = None) -> tuple[Any, str]:
    """
    Acquire a Redis lock with ``SET NX EX``.
    Returns (client, token):
    - client is None when Redis is unavailable.
    - token is empty when the lock is already held.
    """
    if client is None:
        client = redis_client()
    if client is None:
        return None, ""
    token = uuid.uuid4().hex
    ttl = max(1, int(ttl_seconds or 1))
    try:
        acquired = bool(client.set(lock_key, token, nx=True, ex=ttl))
        return client, (token if acquired else "")
    except redis.RedisError as exc:
        logger.warning("lock acquire failed key=%s: %s", lock_key, exc)
        return None, ""


def release_task_lock(client: Any, lock_key: str, token: str) -> None:
    """Best-effort lock release. Deletes only if token still matches."""
    if client is None or not token:
        return
    try:
        current = decode_redis_value(client.get(lock_key))
        if current and current == token:
            client.delete(lock_key)
    except redis.RedisError as exc:
        logger.warning("lock release failed key=%s: %s", lock_key, exc)


class Lease:
    """
    Time-bounded mutual exclusion keyed by a logical task id.

    The TTL bounds how long a crashed holder can block others. ``fail_open`` decides
    what happens when Redis itself is unreachable: proceed unguarded, or skip.
    """

    def __init__(self, key: str, ttl_seconds: int, *, client: Any = None, fail_open: bool = False):
        self.key = key
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.fail_open = fail_open
        self._client = client
        self._token = ""

    @property
    def held(self) -> bool:
        return bool(self._token)

    def acquire(self) -> bool:
        client, token = acquire_task_lock(self.key, self.ttl_seconds, client=self._client)
        if client is None:
            if self.fail_open:
                logger.warning("lease %s: redis unavailable, proceeding without lease", self.key)
                return True
            logger.warning("lease %s: redis unavailable, skipping", self.key)
            return False
        self._client = client
        self._token = token
        return bool(token)

    def release(self) -> None:
        release_task_lock(self._client, self.key, self._token)
        self._token = ""

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc_info) -> None:
        self.release()
