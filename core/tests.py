import warnings
from unittest.mock import Mock, patch

import httpx
import redis
from django.test import SimpleTestCase, override_settings

from core.errors import (
    AutopilotError,
    ExchangeRejectionError,
    ExchangeTransientError,
    OrderNotFoundError,
)
from core.locks import Lease, acquire_task_lock, release_task_lock
from core.notifications import notify_manual_attention, send_telegram
from core.retry import call_with_retry


class _DummyRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}

    def ping(self):
        return True

    def get(self, key: str):
        return self.store.get(key)

    def set(self, key: str, value, nx: bool = False, ex: int | None = None):
        if nx and key in self.store:
            return False
        self.store[key] = str(value)
        if ex is not None:
            self.expiry[key] = int(ex)
        return True

    def delete(self, key: str):
        self.store.pop(key, None)
        return 1


class _BrokenRedis(_DummyRedis):
    def set(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")


class ErrorTaxonomyTest(SimpleTestCase):
    def test_context_is_rendered_into_message(self):
        err = ExchangeTransientError("timeout", symbol="BTCUSDT", cid="g-e", strategy=None)
        self.assertEqual(str(err), "timeout [cid=g-e symbol=BTCUSDT]")
        self.assertEqual(err.context, {"symbol": "BTCUSDT", "cid": "g-e"})

    def test_not_found_is_a_rejection(self):
        self.assertTrue(issubclass(OrderNotFoundError, ExchangeRejectionError))
        self.assertTrue(issubclass(ExchangeRejectionError, AutopilotError))

    def test_message_defaults_to_class_name(self):
        self.assertEqual(str(OrderNotFoundError()), "OrderNotFoundError")


class RetryTest(SimpleTestCase):
    def test_retries_only_listed_errors_up_to_attempts(self):
        fn = Mock(side_effect=ExchangeTransientError("429"))
        sleeps = []
        with self.assertRaises(ExchangeTransientError):
            call_with_retry(
                fn,
                retry_on=ExchangeTransientError,
                attempts=3,
                base_delay=0,
                max_delay=0,
                jitter=0,
                sleep=sleeps.append,
            )
        self.assertEqual(fn.call_count, 3)
        self.assertEqual(len(sleeps), 2)

    def test_non_retryable_error_passes_through_immediately(self):
        fn = Mock(side_effect=ExchangeRejectionError("insufficient margin"))
        with self.assertRaises(ExchangeRejectionError):
            call_with_retry(fn, retry_on=ExchangeTransientError, attempts=5, sleep=lambda _s: None)
        self.assertEqual(fn.call_count, 1)

    def test_returns_value_after_transient_failures(self):
        fn = Mock(side_effect=[ExchangeTransientError("t1"), "ok"])
        out = call_with_retry(fn, "a", retry_on=ExchangeTransientError, attempts=3, sleep=lambda _s: None, k=1)
        self.assertEqual(out, "ok")
        fn.assert_called_with("a", k=1)

    def test_backoff_is_capped_by_max_delay(self):
        fn = Mock(side_effect=ExchangeTransientError("t"))
        sleeps = []
        with self.assertRaises(ExchangeTransientError):
            call_with_retry(
                fn,
                retry_on=ExchangeTransientError,
                attempts=6,
                base_delay=1,
                max_delay=2,
                jitter=0,
                sleep=sleeps.append,
            )
        self.assertEqual(len(sleeps), 5)
        self.assertTrue(all(s <= 2 for s in sleeps))

    def test_backoff_doubles_from_base_delay(self):
        fn = Mock(side_effect=ExchangeTransientError("t"))
        sleeps = []
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            with self.assertRaises(ExchangeTransientError):
                call_with_retry(
                    fn,
                    retry_on=ExchangeTransientError,
                    attempts=4,
                    base_delay=0.5,
                    max_delay=10,
                    jitter=0,
                    sleep=sleeps.append,
                )
        self.assertEqual(sleeps, [0.5, 1.0, 2.0])


class TaskLockTest(SimpleTestCase):
    def test_second_acquire_is_refused_until_release(self):
        client = _DummyRedis()
        c1, token1 = acquire_task_lock("lock:k", 30, client=client)
        c2, token2 = acquire_task_lock("lock:k", 30, client=client)
        self.assertTrue(token1)
        self.assertIs(c2, client)
        self.assertEqual(token2, "")
        self.assertEqual(client.expiry["lock:k"], 30)

        release_task_lock(c1, "lock:k", token1)
        _c3, token3 = acquire_task_lock("lock:k", 30, client=client)
        self.assertTrue(token3)

    def test_release_with_stale_token_keeps_the_new_holder(self):
        client = _DummyRedis()
        client.store["lock:k"] = "someone-else"
        release_task_lock(client, "lock:k", "old-token")
        self.assertEqual(client.store["lock:k"], "someone-else")

    def test_redis_error_reports_unavailable(self):
        client, token = acquire_task_lock("lock:k", 30, client=_BrokenRedis())
        self.assertIsNone(client)
        self.assertEqual(token, "")


class LeaseTest(SimpleTestCase):
    def test_mutual_exclusion(self):
        client = _DummyRedis()
        first = Lease("lease:strategy:1", 60, client=client)
        second = Lease("lease:strategy:1", 60, client=client)
        self.assertTrue(first.acquire())
        self.assertFalse(second.acquire())
        first.release()
        self.assertTrue(second.acquire())
        self.assertTrue(second.held)

    def test_context_manager_releases(self):
        client = _DummyRedis()
        with Lease("lease:strategy:2", 60, client=client) as acquired:
            self.assertTrue(acquired)
            self.assertIn("lease:strategy:2", client.store)
        self.assertNotIn("lease:strategy:2", client.store)

    def test_unavailable_redis_fails_closed_by_default(self):
        with patch("core.locks.redis_client", return_value=None):
            self.assertFalse(Lease("lease:strategy:3", 60).acquire())
            self.assertTrue(Lease("lease:strategy:3", 60, fail_open=True).acquire())


@override_settings(TELEGRAM_ENABLED=True, TELEGRAM_BOT_TOKEN="t", TELEGRAM_CHAT_ID="42", AUTOPILOT_ENV_LABEL="TEST")
class NotificationTest(SimpleTestCase):
    def test_disabled_sends_nothing(self):
        with override_settings(TELEGRAM_ENABLED=False), patch("core.notifications.httpx.post") as post:
            self.assertFalse(send_telegram("hi"))
        post.assert_not_called()

    def test_parse_error_falls_back_to_plain_text(self):
        bad = Mock(status_code=400, text="Bad Request: can't parse entities")
        ok = Mock(status_code=200, text="")
        with patch("core.notifications.httpx.post", side_effect=[bad, ok]) as post:
            self.assertTrue(send_telegram("<b>broken"))
        self.assertEqual(post.call_count, 2)
        self.assertNotIn("parse_mode", post.call_args_list[1].kwargs["json"])

    def test_http_error_is_logged_not_raised(self):
        with patch("core.notifications.httpx.post", side_effect=httpx.ConnectError("down")):
            self.assertFalse(send_telegram("hi"))

    def test_manual_attention_includes_details_and_env(self):
        with patch("core.notifications.httpx.post", return_value=Mock(status_code=200)) as post:
            notify_manual_attention("Sibling leg may remain open", {"group": "g1", "symbol": "XYZUSDT"})
        text = post.call_args.kwargs["json"]["text"]
        self.assertIn("Sibling leg may remain open", text)
        self.assertIn("g1", text)
        self.assertIn("TEST", text)
