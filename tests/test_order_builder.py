from __future__ import annotations

import unittest
from typing import Any, Mapping
from unittest.mock import patch

from futures_engine import (
    GatewayCallResult,
    OrderBuildRequest,
    OrderCancelRequest,
    RetryPolicy,
    SymbolRule,
    build_order,
    build_order_with_logging,
    cancel_order_with_retry,
    prepare_cancel_order,
    resolve_position_side,
    round_callback_rate,
    submit_order,
    submit_order_with_logging,
    validate_leverage,
)


def _rule(**overrides: Any) -> SymbolRule:
    values: dict = {
        "symbol": "BTCUSDT",
        "min_qty": 0.001,
        "max_qty": 1000.0,
        "step_size": 0.001,
        "tick_size": 0.1,
        "max_leverage": 125,
        "fetched_at": 0.0,
        "min_notional": 100.0,
    }
    values.update(overrides)
    return SymbolRule(**values)


class RecordingGateway:
    def __init__(self, *results: GatewayCallResult) -> None:
        self.results = list(results)
        self.calls: list[Mapping[str, Any]] = []

    def __call__(self, params: Mapping[str, Any]) -> GatewayCallResult:
        self.calls.append(params)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class BuildOrderTests(unittest.TestCase):
    def test_market_order_adjusts_quantity_and_omits_price(self) -> None:
        result = build_order(
            OrderBuildRequest("btcusdt", "BUY", "MARKET", quantity=0.2222222, reference_price=45_000.0),
            rule=_rule(),
            position_mode="ONE_WAY",
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "ORDER_READY_ONE_WAY")
        self.assertEqual(
            dict(result.params),
            {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": 0.222, "positionSide": "BOTH"},
        )
        self.assertAlmostEqual(result.notional, 0.222 * 45_000.0)

    def test_limit_order_requires_price_and_defaults_time_in_force(self) -> None:
        missing = build_order(
            OrderBuildRequest("BTCUSDT", "BUY", "LIMIT", quantity=0.01),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertFalse(missing.ok)
        self.assertEqual(missing.reason_code, "LIMIT_PRICE_REQUIRED")
        self.assertEqual(missing.params, {})

        ready = build_order(
            OrderBuildRequest("BTCUSDT", "BUY", "LIMIT", quantity=0.01, price=45_000.07),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertTrue(ready.ok)
        self.assertEqual(ready.params["price"], 45_000.0)
        self.assertEqual(ready.params["timeInForce"], "GTC")

    def test_stop_market_requires_stop_price_and_sets_working_type(self) -> None:
        missing = build_order(
            OrderBuildRequest("BTCUSDT", "SELL", "STOP_MARKET", quantity=0.01),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertEqual(missing.reason_code, "STOP_PRICE_REQUIRED")

        ready = build_order(
            OrderBuildRequest(
                "BTCUSDT",
                "SELL",
                "STOP_MARKET",
                quantity=0.01,
                stop_price=42_750.55,
                reduce_only=True,
                working_type="MARK_PRICE",
            ),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertTrue(ready.ok)
        self.assertEqual(ready.params["stopPrice"], 42_750.5)
        self.assertEqual(ready.params["workingType"], "MARK_PRICE")
        self.assertTrue(ready.params["reduceOnly"])

    def test_close_position_omits_quantity_and_needs_stop_type(self) -> None:
        ready = build_order(
            OrderBuildRequest("BTCUSDT", "SELL", "TAKE_PROFIT_MARKET", stop_price=50_000.0, close_position=True),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertTrue(ready.ok)
        self.assertNotIn("quantity", ready.params)
        self.assertTrue(ready.params["closePosition"])
        self.assertNotIn("reduceOnly", ready.params)

        rejected = build_order(
            OrderBuildRequest("BTCUSDT", "SELL", "LIMIT", price=50_000.0, close_position=True),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertEqual(rejected.reason_code, "CLOSE_POSITION_UNSUPPORTED_ORDER_TYPE")

    def test_trailing_stop_rounds_callback_rate_and_adjusts_activation(self) -> None:
        result = build_order(
            OrderBuildRequest(
                "BTCUSDT",
                "SELL",
                "TRAILING_STOP_MARKET",
                quantity=0.01,
                callback_rate=1.25,
                activation_price=46_123.45,
                reduce_only=True,
            ),
            rule=_rule(),
            position_mode="ONE_WAY",
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.params["callbackRate"], 1.3)
        self.assertEqual(result.params["activationPrice"], 46_123.4)
        self.assertEqual(result.adjusted_activation_price, 46_123.4)

    def test_trailing_stop_activation_is_optional(self) -> None:
        result = build_order(
            OrderBuildRequest(
                "BTCUSDT", "SELL", "TRAILING_STOP_MARKET", quantity=0.01, callback_rate=2.0, reference_price=45_000.0
            ),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertTrue(result.ok)
        self.assertNotIn("activationPrice", result.params)

    def test_trailing_stop_callback_rate_bounds(self) -> None:
        for rate, reason in ((0.0, "INVALID_CALLBACK_RATE"), (None, "INVALID_CALLBACK_RATE"), (10.5, "CALLBACK_RATE_ABOVE_MAXIMUM")):
            result = build_order(
                OrderBuildRequest("BTCUSDT", "SELL", "TRAILING_STOP_MARKET", quantity=0.01, callback_rate=rate),
                rule=_rule(),
                position_mode="ONE_WAY",
            )
            self.assertFalse(result.ok, msg=f"rate={rate}")
            self.assertEqual(result.reason_code, reason)

    def test_quantity_validation(self) -> None:
        for quantity, reason in ((None, "QUANTITY_REQUIRED"), (0.0, "INVALID_QUANTITY"), (-1.0, "INVALID_QUANTITY"), (float("nan"), "INVALID_QUANTITY")):
            result = build_order(
                OrderBuildRequest("BTCUSDT", "BUY", "MARKET", quantity=quantity),
                rule=_rule(),
                position_mode="ONE_WAY",
            )
            self.assertEqual(result.reason_code, reason, msg=f"quantity={quantity}")

    def test_input_validation(self) -> None:
        self.assertEqual(
            build_order(OrderBuildRequest(" ", "BUY", "MARKET", quantity=1.0), rule=_rule(), position_mode="ONE_WAY").reason_code,
            "INVALID_SYMBOL",
        )
        self.assertEqual(
            build_order(OrderBuildRequest("BTCUSDT", "BUY", "ICEBERG", quantity=1.0), rule=_rule(), position_mode="ONE_WAY").reason_code,
            "UNSUPPORTED_ORDER_TYPE",
        )
        self.assertEqual(
            build_order(OrderBuildRequest("BTCUSDT", "HOLD", "MARKET", quantity=1.0), rule=_rule(), position_mode="ONE_WAY").reason_code,
            "INVALID_SIDE",
        )

    def test_min_notional_skipped_for_reduce_only(self) -> None:
        opening = build_order(
            OrderBuildRequest("BTCUSDT", "BUY", "MARKET", quantity=0.001, reference_price=45_000.0),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertEqual(opening.reason_code, "MIN_NOTIONAL_NOT_MET")
        self.assertAlmostEqual(opening.notional, 45.0)

        closing = build_order(
            OrderBuildRequest("BTCUSDT", "SELL", "MARKET", quantity=0.001, reference_price=45_000.0, reduce_only=True),
            rule=_rule(),
            position_mode="ONE_WAY",
        )
        self.assertTrue(closing.ok)

    def test_max_notional_exceeded(self) -> None:
        result = build_order(
            OrderBuildRequest("BTCUSDT", "BUY", "LIMIT", quantity=100.0, price=45_000.0),
            rule=_rule(max_notional=2_000_000.0),
            position_mode="ONE_WAY",
        )
        self.assertEqual(result.reason_code, "MAX_NOTIONAL_EXCEEDED")

    def test_as_pair_returns_params_or_validation_error(self) -> None:
        ok = build_order(OrderBuildRequest("BTCUSDT", "BUY", "MARKET", quantity=0.01), rule=_rule(), position_mode="ONE_WAY")
        params, error = ok.as_pair()
        self.assertIsNotNone(params)
        self.assertIsNone(error)

        failed = build_order(OrderBuildRequest("BTCUSDT", "BUY", "MARKET"), rule=_rule(), position_mode="ONE_WAY")
        params, error = failed.as_pair()
        self.assertIsNone(params)
        assert error is not None
        self.assertEqual(error.reason_code, "QUANTITY_REQUIRED")


class PositionSideTests(unittest.TestCase):
    def test_one_way_forces_both(self) -> None:
        request = OrderBuildRequest("BTCUSDT", "BUY", "MARKET", quantity=0.01, position_side="LONG")
        self.assertEqual(resolve_position_side(request, "ONE_WAY"), "BOTH")

    def test_hedge_infers_side_from_direction_and_close_flag(self) -> None:
        cases = (
            ("BUY", False, "LONG"),
            ("SELL", False, "SHORT"),
            ("SELL", True, "LONG"),
            ("BUY", True, "SHORT"),
        )
        for side, reduce_only, expected in cases:
            request = OrderBuildRequest("BTCUSDT", side, "MARKET", quantity=0.01, reduce_only=reduce_only)
            self.assertEqual(resolve_position_side(request, "HEDGE"), expected, msg=f"{side} reduce_only={reduce_only}")

    def test_hedge_keeps_explicit_side_and_drops_reduce_only(self) -> None:
        result = build_order(
            OrderBuildRequest("BTCUSDT", "SELL", "STOP_MARKET", quantity=0.01, stop_price=40_000.0, reduce_only=True, position_side="LONG"),
            rule=_rule(),
            position_mode="HEDGE",
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "ORDER_READY_HEDGE")
        self.assertEqual(result.params["positionSide"], "LONG")
        self.assertNotIn("reduceOnly", result.params)


class LeverageAndCancelTests(unittest.TestCase):
    def test_validate_leverage(self) -> None:
        rule = _rule(max_leverage=50)
        self.assertTrue(validate_leverage(20, rule).ok)
        self.assertEqual(validate_leverage(0, rule).reason_code, "LEVERAGE_BELOW_MINIMUM")
        self.assertEqual(validate_leverage(51, rule).reason_code, "LEVERAGE_ABOVE_MAXIMUM")
        self.assertEqual(validate_leverage("x", rule).reason_code, "INVALID_LEVERAGE")

    def test_prepare_cancel_requires_identifier(self) -> None:
        self.assertEqual(prepare_cancel_order(OrderCancelRequest("BTCUSDT")).reason_code, "ORDER_IDENTIFIER_REQUIRED")
        prepared = prepare_cancel_order(OrderCancelRequest("btcusdt", order_id=42))
        self.assertTrue(prepared.ok)
        self.assertEqual(dict(prepared.params), {"symbol": "BTCUSDT", "orderId": 42})

    def test_round_callback_rate_half_up(self) -> None:
        self.assertEqual(round_callback_rate(1.25), 1.3)
        self.assertEqual(round_callback_rate(0.04), 0.0)
        self.assertEqual(round_callback_rate(2.0), 2.0)


class SubmitTests(unittest.TestCase):
    def _ready(self) -> Any:
        return build_order(
            OrderBuildRequest("BTCUSDT", "BUY", "MARKET", quantity=0.01),
            rule=_rule(),
            position_mode="ONE_WAY",
        )

    def test_retryable_failures_are_retried_until_success(self) -> None:
        gateway = RecordingGateway(
            GatewayCallResult(ok=False, reason_code="TIMEOUT"),
            GatewayCallResult(ok=False, reason_code="RATE_LIMIT"),
            GatewayCallResult(ok=True, reason_code="SUCCESS", payload={"orderId": 9}),
        )
        result = submit_order(self._ready(), call=gateway, retry_policy=RetryPolicy(max_attempts=3))

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.payload, {"orderId": 9})

    def test_non_retryable_failure_stops_immediately(self) -> None:
        gateway = RecordingGateway(GatewayCallResult(ok=False, reason_code="EXCHANGE_REJECTED", error_code=-2019))
        result = submit_order(self._ready(), call=gateway)

        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.reason_code, "EXCHANGE_REJECTED")

    def test_rejected_build_is_never_sent(self) -> None:
        gateway = RecordingGateway(GatewayCallResult(ok=True, reason_code="SUCCESS"))
        failed = build_order(OrderBuildRequest("BTCUSDT", "BUY", "MARKET"), rule=_rule(), position_mode="ONE_WAY")

        result = submit_order(failed, call=gateway)

        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 0)
        self.assertEqual(result.reason_code, "QUANTITY_REQUIRED")
        self.assertEqual(gateway.calls, [])

    def test_cancel_with_retry_sends_prepared_params(self) -> None:
        gateway = RecordingGateway(GatewayCallResult(ok=True, reason_code="SUCCESS", payload={"orderId": 7}))
        result = cancel_order_with_retry(OrderCancelRequest("ethusdt", order_id=7), call=gateway)

        self.assertTrue(result.success)
        self.assertEqual(dict(gateway.calls[0]), {"symbol": "ETHUSDT", "orderId": 7})

    def test_logging_wrappers_emit_structured_events(self) -> None:
        gateway = RecordingGateway(GatewayCallResult(ok=False, reason_code="EXCHANGE_REJECTED", error_code=-2019))
        with patch("futures_engine.event_logging.write_engine_log_line") as mocked:
            built = build_order_with_logging(
                OrderBuildRequest("BTCUSDT", "BUY", "MARKET", quantity=0.01),
                rule=_rule(),
                position_mode="ONE_WAY",
                loop_label="manual",
            )
            submit_order_with_logging(built, call=gateway, loop_label="manual")

        self.assertEqual(mocked.call_count, 2)
        build_message = mocked.call_args_list[0].args[0]
        submit_message = mocked.call_args_list[1].args[0]
        self.assertIn("event=build_order", build_message)
        self.assertIn("result=prepared", build_message)
        self.assertIn("event=submit_order", submit_message)
        self.assertIn("failure_reason=EXCHANGE_REJECTED", submit_message)
        self.assertIn("exchange_error_code=-2019", submit_message)
        self.assertEqual(mocked.call_args_list[1].kwargs["level"], "WARNING")


if __name__ == "__main__":
    unittest.main(verbosity=2)
