from decimal import Decimal
from unittest import mock

from django.test import SimpleTestCase

from core.errors import ExchangeRejectionError, ExchangeTransientError, OrderNotFoundError

from .client import ExchangeClient
from .trading_rules import TradingRulesCache
from .types import OrderAck, OrderRequest, TradingRules, to_decimal


class ExchangeClientRetryTests(SimpleTestCase):
    def test_transient_errors_are_retried_at_most_attempts_times(self):
        adapter = mock.Mock()
        adapter.cancel_order.side_effect = ExchangeTransientError("timeout")
        client = ExchangeClient(adapter, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)

        with self.assertRaises(ExchangeTransientError):
            client.cancel_order("XYZUSDT", "sl-1", conditional=True)
        self.assertEqual(adapter.cancel_order.call_count, 3)
        adapter.cancel_order.assert_called_with("XYZUSDT", "sl-1", conditional=True)

    def test_rejections_are_not_retried(self):
        adapter = mock.Mock()
        adapter.submit_order.side_effect = ExchangeRejectionError("insufficient margin")
        client = ExchangeClient(adapter, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)

        with self.assertRaises(ExchangeRejectionError):
            client.submit_order(mock.Mock())
        self.assertEqual(adapter.submit_order.call_count, 1)

    def test_recovers_after_transient_failure(self):
        adapter = mock.Mock()
        adapter.query_status.side_effect = [ExchangeTransientError("502"), "NEW"]
        client = ExchangeClient(adapter, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)
        self.assertEqual(client.query_status("XYZUSDT", "tp-1", conditional=True), "NEW")

    def _request(self, cid="g1-e"):
        return OrderRequest(symbol="XYZUSDT", side="buy", kind="market", quantity=Decimal("2"), client_order_id=cid)

    def test_submit_after_lost_ack_returns_existing_order(self):
        adapter = mock.Mock()
        adapter.submit_order.side_effect = ExchangeTransientError("RequestTimeout")
        adapter.fetch_order.return_value = {"id": "77", "status": "closed", "filled": 2.0, "average": 10.5, "info": {"status": "FILLED"}}
        client = ExchangeClient(adapter, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)

        ack = client.submit_order(self._request())

        self.assertEqual(adapter.submit_order.call_count, 1)
        adapter.fetch_order.assert_called_once_with("XYZUSDT", "g1-e", conditional=False)
        self.assertEqual((ack.exchange_order_id, ack.status), ("77", "FILLED"))
        self.assertEqual(ack.filled_qty, Decimal("2.0"))

    def test_submit_is_resent_only_when_the_exchange_has_no_such_order(self):
        adapter = mock.Mock()
        ok = OrderAck(exchange_order_id="9", status="NEW")
        adapter.submit_conditional_order.side_effect = [ExchangeTransientError("502"), ok]
        adapter.fetch_order.side_effect = OrderNotFoundError("Order does not exist.")
        client = ExchangeClient(adapter, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)

        self.assertIs(client.submit_conditional_order(self._request("g1-tp")), ok)
        self.assertEqual(adapter.submit_conditional_order.call_count, 2)
        adapter.fetch_order.assert_called_once_with("XYZUSDT", "g1-tp", conditional=True)

    def test_first_submit_does_not_look_up_the_order(self):
        adapter = mock.Mock()
        adapter.submit_order.return_value = OrderAck(exchange_order_id="1", status="FILLED")
        client = ExchangeClient(adapter, attempts=3, base_delay=0, max_delay=0, sleep=lambda _s: None)
        client.submit_order(self._request())
        adapter.fetch_order.assert_not_called()


class TradingRulesCacheTests(SimpleTestCase):
    def _rules(self, symbol, step="0.1"):
        return TradingRules(symbol=symbol, step_size=Decimal(step))

    def test_caches_until_ttl_expires(self):
        now = [100.0]
        fetch = mock.Mock(side_effect=lambda s: self._rules(s))
        cache = TradingRulesCache(fetch, ttl_seconds=60, clock=lambda: now[0])

        cache.get("XYZUSDT")
        cache.get("XYZUSDT")
        self.assertEqual(fetch.call_count, 1)

        now[0] += 61
        cache.get("XYZUSDT")
        self.assertEqual(fetch.call_count, 2)

    def test_invalidate_one_or_all(self):
        fetch = mock.Mock(side_effect=lambda s: self._rules(s))
        cache = TradingRulesCache(fetch, ttl_seconds=3600)
        cache.get("AAAUSDT")
        cache.get("BBBUSDT")
        cache.invalidate("AAAUSDT")
        self.assertEqual(len(cache), 1)
        cache.get("AAAUSDT")
        self.assertEqual(fetch.call_count, 3)
        cache.invalidate()
        self.assertEqual(len(cache), 0)


class ToDecimalTests(SimpleTestCase):
    def test_float_goes_through_str(self):
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))

    def test_bad_values_fall_back_to_default(self):
        self.assertEqual(to_decimal("abc"), Decimal("0"))
        self.assertIsNone(to_decimal(float("nan"), default=None))
        self.assertIsNone(to_decimal("", default=None))
