from __future__ import annotations

import random
import unittest
import urllib.parse
from typing import Any, Optional
from unittest.mock import patch

import requests

import config
from futures_engine import (
    AccountCredential,
    BinanceFuturesClient,
    EngineSettings,
    OfflineExchangeClient,
    build_query,
    create_exchange_client,
    parse_open_orders,
    sign_query,
)
from futures_engine.exchange_client import format_param_value

NOW = 1_700_000_000.0
SERVER_TIME_MS = 1_700_000_000_500


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, *, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else str(payload)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


class FakeTransport:
    """Routes requests.request calls by path; every route is a list of responses consumed in order."""

    def __init__(self, routes: dict[str, list[Any]]) -> None:
        self.routes = routes
        self.calls: list[dict[str, Any]] = []

    def __call__(self, method: str, url: str, *, headers: dict, timeout: float) -> Any:
        parsed = urllib.parse.urlsplit(url)
        self.calls.append(
            {"method": method, "path": parsed.path, "query": parsed.query, "headers": headers, "timeout": timeout}
        )
        queue = self.routes[parsed.path]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def calls_for(self, path: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["path"] == path]


def _credential(**overrides: Any) -> AccountCredential:
    values: dict[str, Any] = {"name": "main", "api_key": "api-key", "secret_key": "secret-key"}
    values.update(overrides)
    return AccountCredential(**values)


def _time_route() -> list[Any]:
    return [FakeResponse(200, {"serverTime": SERVER_TIME_MS})]


class SigningTests(unittest.TestCase):
    def test_sign_query_matches_reference_vector(self) -> None:
        secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
        query = (
            "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
            "&recvWindow=5000&timestamp=1499827319559"
        )
        self.assertEqual(
            sign_query(query, secret),
            "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71",
        )

    def test_param_values_are_rendered_without_exponents(self) -> None:
        self.assertEqual(format_param_value(0.00001), "0.00001")
        self.assertEqual(format_param_value(45000.0), "45000")
        self.assertEqual(format_param_value(True), "true")
        self.assertEqual(format_param_value(False), "false")
        self.assertEqual(format_param_value(3), "3")

    def test_build_query_skips_none_values_and_keeps_order(self) -> None:
        query = build_query({"symbol": "BTCUSDT", "price": None, "quantity": 0.001, "reduceOnly": True})
        self.assertEqual(query, "symbol=BTCUSDT&quantity=0.001&reduceOnly=true")


class SignedRequestTests(unittest.TestCase):
    def _client(self, **credential_overrides: Any) -> BinanceFuturesClient:
        return BinanceFuturesClient(
            _credential(**credential_overrides),
            settings=EngineSettings(recv_window_ms=7000, request_timeout_seconds=4.0),
            now=lambda: NOW,
        )

    def test_signed_request_syncs_time_and_signs_query(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v2/account": [FakeResponse(200, {"totalMarginBalance": "100"})],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            result = client.get_account()

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "SUCCESS")
        self.assertEqual(client.server_time_offset_ms, 500)

        call = transport.calls_for("/fapi/v2/account")[0]
        self.assertEqual(call["method"], "GET")
        self.assertEqual(call["headers"], {"X-MBX-APIKEY": "api-key"})
        self.assertEqual(call["timeout"], 4.0)
        unsigned, signature = call["query"].rsplit("&signature=", 1)
        self.assertEqual(unsigned, f"timestamp={SERVER_TIME_MS}&recvWindow=7000")
        self.assertEqual(signature, sign_query(unsigned, "secret-key"))

    def test_time_sync_is_not_repeated_within_interval(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v1/openOrders": [FakeResponse(200, [])],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            client.get_open_orders("btcusdt")
            client.get_open_orders()

        self.assertEqual(len(transport.calls_for("/fapi/v1/time")), 1)
        first, second = transport.calls_for("/fapi/v1/openOrders")
        self.assertTrue(first["query"].startswith("symbol=BTCUSDT&"))
        self.assertTrue(second["query"].startswith("timestamp="))

    def test_missing_keys_fail_without_network(self) -> None:
        client = self._client(secret_key="")
        with patch("futures_engine.exchange_client.requests.request") as mocked:
            result = client.get_positions()

        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "AUTH_REQUIRED")
        mocked.assert_not_called()

    def test_timestamp_error_resyncs_and_retries_once(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v1/order": [
                    FakeResponse(400, {"code": -1021, "msg": "Timestamp for this request is outside of the recvWindow."}),
                    FakeResponse(200, {"orderId": 77, "status": "NEW"}),
                ],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            result = client.place_order({"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": 0.001})

        self.assertTrue(result.ok)
        self.assertEqual(result.payload["orderId"], 77)
        self.assertEqual(len(transport.calls_for("/fapi/v1/order")), 2)
        self.assertEqual(len(transport.calls_for("/fapi/v1/time")), 2)

    def test_timestamp_error_is_reported_after_resync_attempts(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v1/order": [FakeResponse(400, {"code": -1021, "msg": "Timestamp for this request"})],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            result = client.cancel_order({"symbol": "BTCUSDT", "orderId": 5})

        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "TIMESTAMP_OUT_OF_SYNC")
        self.assertEqual(result.error_code, -1021)
        self.assertEqual(len(transport.calls_for("/fapi/v1/order")), 2)

    def test_margin_type_unchanged_is_success(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v1/marginType": [FakeResponse(400, {"code": -4046, "msg": "No need to change margin type."})],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            result = client.set_margin_type("BTCUSDT", "crossed")

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "MARGIN_TYPE_UNCHANGED")
        self.assertIn("marginType=CROSSED", transport.calls_for("/fapi/v1/marginType")[0]["query"])

    def test_position_mode_unchanged_is_success(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v1/positionSide/dual": [FakeResponse(400, {"code": -4059, "msg": "No need to change position side."})],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            result = client.set_position_mode(True)

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "POSITION_MODE_UNCHANGED")
        self.assertIn("dualSidePosition=true", transport.calls_for("/fapi/v1/positionSide/dual")[0]["query"])

    def test_other_exchange_rejection_keeps_error_code(self) -> None:
        transport = FakeTransport(
            {
                "/fapi/v1/time": _time_route(),
                "/fapi/v1/leverage": [FakeResponse(400, {"code": -4028, "msg": "Leverage 200 is not valid"})],
            }
        )
        client = self._client()
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            result = client.set_leverage("BTCUSDT", 200)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "EXCHANGE_REJECTED")
        self.assertEqual(result.error_code, -4028)
        self.assertEqual(result.error_message, "Leverage 200 is not valid")

    def test_testnet_credential_uses_testnet_base_url(self) -> None:
        client = self._client(is_testnet=True)
        self.assertEqual(client.base_url, config.FUTURES_TESTNET_BASE_URL)
        self.assertEqual(self._client().base_url, config.FUTURES_BASE_URL)


class TransportFailureTests(unittest.TestCase):
    def _ticker(self, response: Any) -> Any:
        transport = FakeTransport({"/fapi/v1/ticker/price": [response]})
        client = BinanceFuturesClient(_credential(), now=lambda: NOW)
        with patch("futures_engine.exchange_client.requests.request", side_effect=transport):
            return client.get_ticker_price("ethusdt")

    def test_public_ticker_success(self) -> None:
        result = self._ticker(FakeResponse(200, {"symbol": "ETHUSDT", "price": "2800.5"}))
        self.assertTrue(result.ok)
        self.assertEqual(result.payload["price"], "2800.5")

    def test_timeout_maps_to_timeout(self) -> None:
        result = self._ticker(requests.Timeout("read timed out"))
        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "TIMEOUT")

    def test_connection_error_maps_to_network_error(self) -> None:
        result = self._ticker(requests.ConnectionError("refused"))
        self.assertEqual(result.reason_code, "NETWORK_ERROR")

    def test_rate_limit_and_server_errors(self) -> None:
        self.assertEqual(self._ticker(FakeResponse(429, {"code": -1003, "msg": "Too many requests"})).reason_code, "RATE_LIMIT")
        self.assertEqual(self._ticker(FakeResponse(418, {"code": -1003, "msg": "banned"})).reason_code, "RATE_LIMIT")
        self.assertEqual(self._ticker(FakeResponse(503, None, text="Service Unavailable")).reason_code, "SERVER_ERROR")

    def test_non_json_success_body_is_invalid_response(self) -> None:
        result = self._ticker(FakeResponse(200, None, text="<html>"))
        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "INVALID_RESPONSE")

    def test_failed_request_is_logged_as_warning(self) -> None:
        with patch("futures_engine.event_logging.write_engine_log_line") as mocked:
            self._ticker(requests.Timeout("slow"))

        message = mocked.call_args.args[0]
        self.assertIn("component=exchange_client", message)
        self.assertIn("event=rest_request", message)
        self.assertIn("failure_reason=TIMEOUT", message)
        self.assertEqual(mocked.call_args.kwargs["level"], "WARNING")


class ClientFactoryTests(unittest.TestCase):
    def test_missing_keys_select_offline_client(self) -> None:
        client = create_exchange_client(AccountCredential("demo"))
        self.assertIsInstance(client, OfflineExchangeClient)
        self.assertTrue(client.is_offline)
        self.assertEqual(client.account_name, "demo")

    def test_offline_mode_overrides_keys(self) -> None:
        client = create_exchange_client(_credential(), EngineSettings(offline_mode=True))
        self.assertIsInstance(client, OfflineExchangeClient)

    def test_keys_select_rest_client(self) -> None:
        client = create_exchange_client(_credential())
        self.assertIsInstance(client, BinanceFuturesClient)
        self.assertFalse(client.is_offline)


class OfflineExchangeClientTests(unittest.TestCase):
    def test_synthetic_ticker_stays_within_jitter(self) -> None:
        client = OfflineExchangeClient(rng=random.Random(7))
        for _ in range(20):
            price = float(client.get_ticker_price("BTCUSDT").payload["price"])
            self.assertGreaterEqual(price, 45_900.0)
            self.assertLessEqual(price, 46_100.0)

    def test_exchange_info_is_unavailable_offline(self) -> None:
        result = OfflineExchangeClient().get_exchange_info()
        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "OFFLINE")

    def test_place_and_cancel_round_trip_through_order_book(self) -> None:
        client = OfflineExchangeClient()
        placed = client.place_order(
            {"symbol": "ethusdt", "side": "SELL", "type": "STOP_MARKET", "quantity": 0.5, "stopPrice": 2700.0}
        )
        self.assertEqual(placed.payload["orderId"], 12346)

        orders = parse_open_orders(client.get_open_orders("ETHUSDT").payload)
        self.assertEqual([order.order_id for order in orders], [12346])
        self.assertEqual(orders[0].stop_price, 2700.0)

        self.assertTrue(client.cancel_order({"symbol": "ETHUSDT", "orderId": 12346}).ok)
        missing = client.cancel_order({"symbol": "ETHUSDT", "orderId": 12346})
        self.assertFalse(missing.ok)
        self.assertEqual(missing.error_code, -2011)

    def test_market_orders_do_not_rest_in_book(self) -> None:
        client = OfflineExchangeClient()
        client.place_order({"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": 0.001})
        self.assertEqual(len(client.get_open_orders().payload), 1)

    def test_margin_type_and_position_mode_report_unchanged(self) -> None:
        client = OfflineExchangeClient()
        self.assertEqual(client.set_margin_type("BTCUSDT", "CROSSED").reason_code, "MARGIN_TYPE_UNCHANGED")
        self.assertEqual(client.set_margin_type("BTCUSDT", "ISOLATED").reason_code, "SUCCESS")
        self.assertEqual(client.set_position_mode(False).reason_code, "POSITION_MODE_UNCHANGED")
        self.assertTrue(client.set_position_mode(True).ok)
        self.assertTrue(client.get_position_mode().payload["dualSidePosition"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
