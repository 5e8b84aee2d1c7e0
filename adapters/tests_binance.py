from decimal import Decimal
from unittest import mock

import ccxt
from django.test import SimpleTestCase

from core.errors import ExchangeRejectionError, ExchangeTransientError, OrderNotFoundError

from .binance import BinanceFuturesAdapter, parse_ack, raw_status
from .types import OrderRequest, TradingRules


class BinanceAdapterTestBase(SimpleTestCase):
    def _build_adapter(self, client):
        adapter = object.__new__(BinanceFuturesAdapter)
        adapter.client = client
        adapter.testnet = True
        adapter.margin_mode = "cross"
        adapter.leverage = 0
        adapter._markets_loaded = True
        adapter._leverage_set_symbols = set()
        return adapter


class BinanceErrorMappingTests(BinanceAdapterTestBase):
    def test_network_errors_are_transient(self):
        for exc in (
            ccxt.RequestTimeout("timed out"),
            ccxt.DDoSProtection("429"),
            ccxt.RateLimitExceeded("too many requests"),
            ccxt.ExchangeNotAvailable("maintenance"),
        ):
            client = mock.Mock()
            client.request.side_effect = exc
            client.fetch_order.side_effect = exc
            adapter = self._build_adapter(client)
            with self.assertRaises(ExchangeTransientError):
                adapter.query_status("XYZUSDT", "g-tp", conditional=True)
            client.fetch_order.assert_not_called()

    def test_order_not_found_maps_to_not_found(self):
        client = mock.Mock()
        client.request.side_effect = ccxt.OrderNotFound("Order does not exist")
        client.fetch_order.side_effect = ccxt.OrderNotFound("Order does not exist")
        adapter = self._build_adapter(client)
        with self.assertRaises(OrderNotFoundError) as ctx:
            adapter.query_status("XYZUSDT", "g-sl", conditional=True)
        self.assertEqual(ctx.exception.context["cid"], "g-sl")

    def test_other_exchange_errors_are_rejections(self):
        client = mock.Mock()
        client.cancel_order.side_effect = ccxt.InsufficientFunds("margin is insufficient")
        adapter = self._build_adapter(client)
        with self.assertRaises(ExchangeRejectionError) as ctx:
            adapter.cancel_order("XYZUSDT", "g-sl")
        self.assertNotIsInstance(ctx.exception, OrderNotFoundError)


class BinanceOrderTests(BinanceAdapterTestBase):
    def test_submit_order_addresses_by_client_id(self):
        client = mock.Mock()
        client.create_order.return_value = {
            "id": "123",
            "status": "closed",
            "filled": 2.0,
            "average": 10.5,
            "info": {"status": "FILLED"},
        }
        adapter = self._build_adapter(client)
        ack = adapter.submit_order(
            OrderRequest(
                symbol="XYZUSDT",
                side="buy",
                kind="market",
                quantity=Decimal("2"),
                client_order_id="g-e",
            )
        )
        args = client.create_order.call_args.args
        self.assertEqual(args[0], "XYZ/USDT:USDT")
        self.assertEqual(args[1:5], ("market", "buy", 2.0, None))
        self.assertEqual(args[5]["newClientOrderId"], "g-e")
        self.assertEqual(ack.status, "FILLED")
        self.assertEqual(ack.filled_qty, Decimal("2.0"))
        self.assertEqual(ack.avg_price, Decimal("10.5"))

    def test_conditional_order_is_reduce_only_stop_market(self):
        client = mock.Mock()
        client.create_order.return_value = {"id": "77", "info": {"status": "NEW"}}
        adapter = self._build_adapter(client)
        adapter.submit_conditional_order(
            OrderRequest(
                symbol="XYZUSDT",
                side="sell",
                kind="stop_loss",
                quantity=Decimal("2"),
                client_order_id="g-sl",
                trigger_price=Decimal("9.5"),
                reduce_only=True,
            )
        )
        args = client.create_order.call_args.args
        self.assertEqual(args[1], "STOP_MARKET")
        self.assertEqual(args[5]["stopPrice"], 9.5)
        self.assertTrue(args[5]["reduceOnly"])
        self.assertEqual(args[5]["newClientOrderId"], "g-sl")

    def test_duplicate_client_id_returns_existing_order(self):
        client = mock.Mock()
        client.create_order.side_effect = ccxt.InvalidOrder('binance {"code":-4116,"msg":"ClientOrderId is duplicated."}')
        client.request.side_effect = ccxt.OrderNotFound("Order does not exist")
        client.fetch_order.return_value = {"id": "555", "info": {"status": "NEW"}}
        adapter = self._build_adapter(client)
        ack = adapter.submit_conditional_order(
            OrderRequest(
                symbol="XYZUSDT",
                side="sell",
                kind="take_profit",
                quantity=Decimal("1"),
                client_order_id="g-tp",
                trigger_price=Decimal("11"),
            )
        )
        self.assertEqual(ack.exchange_order_id, "555")
        self.assertEqual(client.fetch_order.call_args.args[2], {"origClientOrderId": "g-tp"})
        self.assertEqual(client.create_order.call_count, 1)

    def test_query_status_prefers_algo_status(self):
        self.assertEqual(raw_status({"status": "open", "info": {"algoStatus": "FINISHED", "status": "NEW"}}), "FINISHED")
        self.assertEqual(raw_status({"status": "canceled", "info": {}}), "canceled")
        self.assertEqual(raw_status(None), "")

    def test_parse_ack_tolerates_missing_fields(self):
        ack = parse_ack({"id": None, "info": {}})
        self.assertEqual(ack.exchange_order_id, "")
        self.assertEqual(ack.filled_qty, Decimal("0"))
        self.assertIsNone(ack.avg_price)


class BinanceAlgoOrderTests(BinanceAdapterTestBase):
    def _algo(self, **fields):
        return {"algoId": 901, "clientAlgoId": "g-tp", "algoType": "CONDITIONAL", "algoStatus": "NEW", **fields}

    def test_conditional_query_reads_algo_endpoint(self):
        client = mock.Mock()
        client.request.return_value = self._algo(algoStatus="FINISHED", actualPrice="10.9")
        adapter = self._build_adapter(client)

        self.assertEqual(adapter.query_status("XYZ/USDT:USDT", "g-tp", conditional=True), "FINISHED")
        client.request.assert_called_once_with(
            "algoOrder", "fapiPrivate", "GET", {"symbol": "XYZUSDT", "clientAlgoId": "g-tp"}
        )
        client.fetch_order.assert_not_called()

        order = adapter.fetch_order("XYZUSDT", "g-tp", conditional=True)
        self.assertEqual((order["id"], order["average"]), ("901", "10.9"))

    def test_conditional_query_falls_back_to_regular_order(self):
        client = mock.Mock()
        client.request.side_effect = ccxt.ExchangeError("binance algo order not found")
        client.fetch_order.return_value = {"id": "5", "status": "closed", "info": {"status": "FILLED"}}
        adapter = self._build_adapter(client)

        self.assertEqual(adapter.query_status("XYZUSDT", "g-tp", conditional=True), "FILLED")
        self.assertEqual(
            client.fetch_order.call_args.args,
            (None, "XYZ/USDT:USDT", {"origClientOrderId": "g-tp"}),
        )

    def test_regular_query_never_touches_algo_endpoint(self):
        client = mock.Mock()
        client.fetch_order.return_value = {"id": "5", "info": {"status": "NEW"}}
        adapter = self._build_adapter(client)
        self.assertEqual(adapter.query_status("XYZUSDT", "g-e"), "NEW")
        client.request.assert_not_called()

    def test_conditional_cancel_deletes_algo_order(self):
        client = mock.Mock()
        client.request.return_value = self._algo(clientAlgoId="g-sl", algoStatus="CANCELED")
        adapter = self._build_adapter(client)

        out = adapter.cancel_order("XYZUSDT", "g-sl", conditional=True)

        self.assertEqual(out["status"], "CANCELED")
        client.request.assert_called_once_with(
            "algoOrder", "fapiPrivate", "DELETE", {"symbol": "XYZUSDT", "clientAlgoId": "g-sl"}
        )
        client.cancel_order.assert_not_called()

    def test_conditional_cancel_falls_back_when_algo_order_is_unknown(self):
        client = mock.Mock()
        client.request.side_effect = ccxt.OrderNotFound("Unknown order sent.")
        client.cancel_order.return_value = {"id": "5", "status": "canceled"}
        adapter = self._build_adapter(client)

        adapter.cancel_order("XYZUSDT", "g-sl", conditional=True)

        client.cancel_order.assert_called_once_with(None, "XYZ/USDT:USDT", {"origClientOrderId": "g-sl"})

    def test_conditional_cancel_rejection_is_not_retried_as_regular(self):
        client = mock.Mock()
        client.request.side_effect = ccxt.InvalidOrder("Order has been executed")
        adapter = self._build_adapter(client)

        with self.assertRaises(ExchangeRejectionError) as ctx:
            adapter.cancel_order("XYZUSDT", "g-sl", conditional=True)
        self.assertNotIsInstance(ctx.exception, OrderNotFoundError)
        client.cancel_order.assert_not_called()


class BinanceTradingRulesTests(BinanceAdapterTestBase):
    def test_rules_from_tick_size_market(self):
        client = mock.Mock()
        client.precisionMode = ccxt.TICK_SIZE
        client.market.return_value = {
            "precision": {"amount": 0.001, "price": 0.1},
            "limits": {"amount": {"min": 0.001, "max": 1000}, "cost": {"min": 5}},
        }
        adapter = self._build_adapter(client)
        rules = adapter.fetch_trading_rules("BTCUSDT")
        self.assertEqual(rules.step_size, Decimal("0.001"))
        self.assertEqual(rules.tick_size, Decimal("0.1"))
        self.assertEqual(rules.min_notional, Decimal("5"))
        self.assertEqual(rules.max_qty, Decimal("1000"))

    def test_decimal_places_precision_mode(self):
        rules = TradingRules.from_market(
            "XYZUSDT",
            {"precision": {"amount": 0, "price": 2}, "limits": {}},
            tick_size_mode=False,
        )
        self.assertEqual(rules.step_size, Decimal("1"))
        self.assertEqual(rules.tick_size, Decimal("0.01"))
        self.assertIsNone(rules.max_qty)
