from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock, patch

import redis
from django.test import SimpleTestCase, override_settings

from config import celery as celery_cfg
from core.errors import ExchangeTransientError


class DeadLetterTest(SimpleTestCase):
    @override_settings(CELERY_DLQ_REDIS_KEY="celery:test:dlq", CELERY_DLQ_MAXLEN=123)
    def test_push_keeps_the_newest_entries(self):
        pipe = Mock()
        client = Mock()
        client.pipeline.return_value = pipe
        with patch("config.celery._dlq_client", return_value=client):
            self.assertTrue(celery_cfg._push_task_failure_dlq({"task_name": "t1", "error": "boom"}))

        key, encoded = pipe.lpush.call_args.args
        self.assertEqual(key, "celery:test:dlq")
        self.assertIn('"error": "boom"', encoded)
        pipe.ltrim.assert_called_once_with("celery:test:dlq", 0, 122)

    def test_push_reports_redis_failure(self):
        pipe = Mock()
        pipe.execute.side_effect = redis.ConnectionError("down")
        client = Mock()
        client.pipeline.return_value = pipe
        with patch("config.celery._dlq_client", return_value=client):
            self.assertFalse(celery_cfg._push_task_failure_dlq({"task_name": "t1"}))

    def test_memory_broker_has_no_dead_letter_queue(self):
        with patch.dict(celery_cfg.app.conf.changes, {"broker_url": "memory://"}):
            self.assertIsNone(celery_cfg._dlq_client())

    def test_record_carries_error_context(self):
        exc = ExchangeTransientError("timeout", symbol="XYZUSDT", cid="g1-tp")
        record = celery_cfg.failure_record("strategies.tasks.run_strategy", "id-9", exc, (7,), None, None)
        self.assertEqual(record["error_type"], "ExchangeTransientError")
        self.assertEqual(record["context"], {"symbol": "XYZUSDT", "cid": "g1-tp"})
        self.assertEqual(record["args"], [7])

    def test_signal_pushes_record_and_alerts(self):
        sender = SimpleNamespace(name="execution.tasks.reconcile_brackets")
        with (
            patch("config.celery._push_task_failure_dlq") as push_mock,
            patch("config.celery._notify_task_failure") as notify_mock,
        ):
            celery_cfg._on_task_failure(
                sender=sender,
                task_id="abc-1",
                exception=RuntimeError("db-down"),
                args=[],
                kwargs={"k": "v"},
                einfo=SimpleNamespace(traceback="tb"),
            )

        record = push_mock.call_args.args[0]
        self.assertEqual(record["task_name"], "execution.tasks.reconcile_brackets")
        self.assertEqual((record["traceback"], record["context"]), ("tb", {}))
        notify_mock.assert_called_once_with("execution.tasks.reconcile_brackets", "abc-1", "db-down")


@override_settings(CELERY_NOTIFY_ON_FAILURE=True, CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS=300)
class FailureAlertTest(SimpleTestCase):
    def _notify(self, set_result=True, set_error=None):
        client = Mock()
        client.set.return_value = set_result
        if set_error is not None:
            client.set.side_effect = set_error
        with (
            patch("config.celery._dlq_client", return_value=client),
            patch("core.notifications.notify_error") as notify_mock,
        ):
            celery_cfg._notify_task_failure("strategies.tasks.run_strategy", "id-1", "boom")
        return client, notify_mock

    def test_alert_is_throttled_per_task(self):
        client, notify_mock = self._notify(set_result=False)
        notify_mock.assert_not_called()
        self.assertEqual(client.set.call_args.kwargs, {"nx": True, "ex": 300})

    def test_alert_sent_when_not_throttled(self):
        _client, notify_mock = self._notify(set_result=True)
        notify_mock.assert_called_once_with("celery:strategies.tasks.run_strategy", "id-1: boom")

    def test_alert_sent_when_throttle_store_is_down(self):
        _client, notify_mock = self._notify(set_error=redis.ConnectionError("down"))
        notify_mock.assert_called_once()

    @override_settings(CELERY_NOTIFY_ON_FAILURE=False)
    def test_alerts_can_be_disabled(self):
        client, notify_mock = self._notify()
        notify_mock.assert_not_called()
        client.set.assert_not_called()
