from __future__ import annotations

import unittest
from typing import Any, Mapping
from unittest.mock import patch

from futures_engine import (
    GatewayCallResult,
    OpenOrder,
    Position,
    SymbolRule,
    TrailingStopConverter,
    coexist_quantity,
    convert,
    convert_with_logging,
    derive_callback_rate,
    find_eligible,
    profit_percent,
    unsettled_claims,
)


def _rule(symbol: str = "SOLUSDT") -> SymbolRule:
    return SymbolRule(
        symbol=symbol,
        min_qty=0.001,
        max_qty=10_000.0,
        step_size=0.001,
        tick_size=0.01,
        max_leverage=50,
        fetched_at=0.0,
    )


def _long(mark: float = 103.0, **overrides: Any) -> Position:
    values: dict = {"symbol": "SOLUSDT", "signed_amount": 2.0, "entry_price": 100.0, "mark_price": mark}
    values.update(overrides)
    return Position(**values)


def _stop(order_id: int = 501, side: str = "SELL", stop_price: float = 98.0, **overrides: Any) -> OpenOrder:
    values: dict = {
        "order_id": order_id,
        "symbol": "SOLUSDT",
        "side": side,
        "order_type": "STOP_MARKET",
        "orig_qty": 2.0,
        "stop_price": stop_price,
        "reduce_only": True,
    }
    values.update(overrides)
    return OpenOrder(**values)


class ExchangeRecorder:
    """Shared place/cancel fakes that record the call sequence."""

    def __init__(self, *, place_ok: bool = True, cancel_ok: bool = True, reject_place_number: int = 0) -> None:
        self.place_ok = place_ok
        self.cancel_ok = cancel_ok
        self.reject_place_number = reject_place_number
        self.next_order_id = 900
        self.sequence: list[tuple[str, Mapping[str, Any]]] = []

    def place(self, params: Mapping[str, Any]) -> GatewayCallResult:
        self.sequence.append(("place", params))
        placed_count = sum(1 for step, _ in self.sequence if step == "place")
        if not self.place_ok or placed_count == self.reject_place_number:
            return GatewayCallResult(ok=False, reason_code="EXCHANGE_REJECTED", error_code=-2021, error_message="Order would immediately trigger.")
        order_id = self.next_order_id
        self.next_order_id += 1
        return GatewayCallResult(ok=True, reason_code="SUCCESS", payload={"orderId": order_id})

    def cancel(self, params: Mapping[str, Any]) -> GatewayCallResult:
        self.sequence.append(("cancel", params))
        if not self.cancel_ok:
            return GatewayCallResult(ok=False, reason_code="EXCHANGE_REJECTED", error_code=-2011, error_message="Unknown order sent.")
        return GatewayCallResult(ok=True, reason_code="SUCCESS", payload={"orderId": params["orderId"]})


class CallbackRateTests(unittest.TestCase):
    def test_two_percent_stop_gives_two_percent_callback(self) -> None:
        self.assertEqual(derive_callback_rate(100.0, 98.0), 2.0)

    def test_rate_is_clamped_to_bounds(self) -> None:
        self.assertEqual(derive_callback_rate(100.0, 99.99), 0.1)
        self.assertEqual(derive_callback_rate(100.0, 80.0), 5.0)
        self.assertEqual(derive_callback_rate(100.0, 100.0), 0.1)

    def test_rate_is_rounded_half_up_to_one_decimal(self) -> None:
        self.assertEqual(derive_callback_rate(100.0, 98.75), 1.3)
        self.assertEqual(derive_callback_rate(200.0, 203.3), 1.7)

    def test_rate_stays_within_bounds_for_any_stop(self) -> None:
        for stop in (0.5, 50.0, 90.0, 95.5, 99.0, 99.95, 100.5, 104.0, 180.0):
            rate = derive_callback_rate(100.0, stop)
            assert rate is not None
            self.assertGreaterEqual(rate, 0.1)
            self.assertLessEqual(rate, 5.0)

    def test_invalid_prices_return_none(self) -> None:
        self.assertIsNone(derive_callback_rate(0.0, 98.0))
        self.assertIsNone(derive_callback_rate(100.0, float("nan")))


class EligibilityTests(unittest.TestCase):
    def test_long_in_profit_with_reduce_only_stop_is_eligible(self) -> None:
        candidates = find_eligible([_long()], [_stop()])

        self.assertEqual(len(candidates), 1)
        candidate = candidates[0]
        self.assertEqual(candidate.callback_rate, 2.0)
        self.assertEqual(candidate.activation_price, 103.0)
        self.assertEqual(candidate.quantity, 2.0)
        self.assertEqual(candidate.stop_order.order_id, 501)

    def test_mark_must_be_strictly_beyond_entry(self) -> None:
        self.assertEqual(find_eligible([_long(mark=100.0)], [_stop()]), [])
        self.assertEqual(find_eligible([_long(mark=99.0)], [_stop()]), [])

    def test_short_position_profit_direction(self) -> None:
        short = _long(mark=96.0, signed_amount=-2.0)
        candidates = find_eligible([short], [_stop(side="BUY", stop_price=102.0)])
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].callback_rate, 2.0)
        self.assertEqual(find_eligible([_long(mark=104.0, signed_amount=-2.0)], [_stop(side="BUY", stop_price=102.0)]), [])

    def test_requires_close_type_stop_on_close_side(self) -> None:
        self.assertEqual(find_eligible([_long()], [_stop(reduce_only=False)]), [])
        self.assertEqual(find_eligible([_long()], [_stop(side="BUY")]), [])
        self.assertEqual(find_eligible([_long()], [_stop(symbol="ETHUSDT")]), [])
        self.assertEqual(find_eligible([_long()], []), [])

    def test_existing_trailing_stop_blocks_conversion(self) -> None:
        trailing = _stop(order_id=777, order_type="TRAILING_STOP_MARKET", stop_price=0.0, callback_rate=1.0)
        self.assertEqual(find_eligible([_long()], [_stop(), trailing]), [])

    def test_nearest_stop_is_chosen_and_close_position_uses_position_size(self) -> None:
        far = _stop(order_id=1, stop_price=90.0)
        near = _stop(order_id=2, stop_price=99.0, orig_qty=0.0, reduce_only=False, close_position=True)

        candidate = find_eligible([_long()], [far, near])[0]

        self.assertEqual(candidate.stop_order.order_id, 2)
        self.assertEqual(candidate.quantity, 2.0)
        self.assertEqual(candidate.callback_rate, 1.0)

    def test_hedge_mode_position_side_must_match(self) -> None:
        position = _long(position_side="LONG")
        self.assertEqual(len(find_eligible([position], [_stop(position_side="LONG")])), 1)
        self.assertEqual(find_eligible([position], [_stop(position_side="SHORT")]), [])


class ConversionTests(unittest.TestCase):
    def test_places_trailing_order_then_cancels_original_stop(self) -> None:
        exchange = ExchangeRecorder()
        candidate = find_eligible([_long()], [_stop()])[0]

        result = convert(
            candidate,
            rule=_rule(),
            position_mode="ONE_WAY",
            place_call=exchange.place,
            cancel_call=exchange.cancel,
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "TRAILING_CONVERTED")
        self.assertEqual(result.new_order_id, 900)
        self.assertEqual(result.old_order_id, 501)
        self.assertTrue(result.cancel_ok)
        self.assertEqual([step for step, _ in exchange.sequence], ["place", "cancel"])
        placed = exchange.sequence[0][1]
        self.assertEqual(placed["type"], "TRAILING_STOP_MARKET")
        self.assertEqual(placed["side"], "SELL")
        self.assertEqual(placed["quantity"], 2.0)
        self.assertEqual(placed["callbackRate"], 2.0)
        self.assertEqual(placed["activationPrice"], 103.0)
        self.assertTrue(placed["reduceOnly"])
        self.assertEqual(exchange.sequence[1][1], {"symbol": "SOLUSDT", "orderId": 501})

    def test_rejected_placement_never_cancels(self) -> None:
        exchange = ExchangeRecorder(place_ok=False)
        candidate = find_eligible([_long()], [_stop()])[0]

        result = convert(candidate, rule=_rule(), position_mode="ONE_WAY", place_call=exchange.place, cancel_call=exchange.cancel)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "TRAILING_PLACE_FAILED")
        self.assertEqual(result.failure_reason, "Order would immediately trigger.")
        self.assertEqual([step for step, _ in exchange.sequence], ["place"])

    def test_cancel_failure_keeps_trailing_order_and_warns(self) -> None:
        exchange = ExchangeRecorder(cancel_ok=False)
        candidate = find_eligible([_long()], [_stop()])[0]

        with patch("futures_engine.event_logging.write_engine_log_line") as mocked:
            result = convert_with_logging(
                candidate,
                rule=_rule(),
                position_mode="ONE_WAY",
                place_call=exchange.place,
                cancel_call=exchange.cancel,
            )

        self.assertTrue(result.ok)
        self.assertFalse(result.cancel_ok)
        self.assertEqual(result.reason_code, "TRAILING_CONVERTED_CANCEL_FAILED")
        self.assertEqual(result.new_order_id, 900)
        message = mocked.call_args.args[0]
        self.assertIn("result=converted_cancel_failed", message)
        self.assertIn("failure_reason=Unknown order sent.", message)
        self.assertEqual(mocked.call_args.kwargs["level"], "WARNING")

    def test_hedge_mode_conversion_uses_position_side(self) -> None:
        exchange = ExchangeRecorder()
        candidate = find_eligible([_long(position_side="LONG")], [_stop(position_side="LONG")])[0]

        convert(candidate, rule=_rule(), position_mode="HEDGE", place_call=exchange.place, cancel_call=exchange.cancel)

        placed = exchange.sequence[0][1]
        self.assertEqual(placed["positionSide"], "LONG")
        self.assertNotIn("reduceOnly", placed)

    def test_converter_runs_every_eligible_position(self) -> None:
        exchange = ExchangeRecorder()
        rules_requested: list[str] = []

        def rule_for(symbol: str) -> SymbolRule:
            rules_requested.append(symbol)
            return _rule(symbol)

        converter = TrailingStopConverter(place_call=exchange.place, cancel_call=exchange.cancel, rule_for=rule_for)
        positions = [_long(), _long(symbol="AVAXUSDT", mark=99.0)]
        orders = [_stop(), _stop(order_id=502, symbol="AVAXUSDT")]

        results = converter.run(positions, orders, position_mode="ONE_WAY", loop_label="account-refresh")

        self.assertEqual(len(results), 1)
        self.assertEqual(rules_requested, ["SOLUSDT"])
        self.assertEqual(results[0].reason_code, "TRAILING_CONVERTED")


class ClaimTests(unittest.TestCase):
    def test_claimed_stop_makes_position_ineligible(self) -> None:
        orders = [_stop(order_id=501, orig_qty=1.0), _stop(order_id=503, stop_price=95.0, orig_qty=1.0)]
        self.assertEqual(find_eligible([_long()], orders, skip_order_ids={503}), [])
        self.assertEqual(len(find_eligible([_long()], orders, skip_order_ids={999})), 1)

    def test_candidate_records_every_protective_stop_and_coverage(self) -> None:
        orders = [_stop(order_id=501, orig_qty=1.0), _stop(order_id=503, stop_price=95.0, orig_qty=0.5)]
        candidate = find_eligible([_long()], orders)[0]
        self.assertEqual([order.order_id for order in candidate.protective_stops], [501, 503])
        self.assertEqual(candidate.covered_quantity, 1.5)

    def test_claims_settle_when_stop_leaves_or_trailing_appears(self) -> None:
        trailing = _stop(order_id=777, order_type="TRAILING_STOP_MARKET", stop_price=0.0, callback_rate=1.0)
        self.assertEqual(unsettled_claims({501}, [_stop()]), {501})
        self.assertEqual(unsettled_claims({501}, []), set())
        self.assertEqual(unsettled_claims({501}, [_stop(), trailing]), set())
        self.assertEqual(unsettled_claims({501}, [_stop(), _stop(order_id=778, symbol="ETHUSDT", order_type="TRAILING_STOP_MARKET")]), {501})


class CoexistModeTests(unittest.TestCase):
    def test_quantity_covers_unprotected_share_within_bounds(self) -> None:
        position = _long(unrealized_profit=6.0)
        partial = find_eligible([position], [_stop(orig_qty=1.5)])[0]
        full = find_eligible([position], [_stop(orig_qty=2.0)])[0]
        thin = find_eligible([position], [_stop(orig_qty=0.2)])[0]

        self.assertEqual(coexist_quantity(partial), 0.5)
        self.assertEqual(coexist_quantity(full), 0.4)
        self.assertEqual(coexist_quantity(thin), 1.0)

    def test_callback_follows_profit_tiers(self) -> None:
        expectations = {1.0: 0.8, 6.0: 1.0, 12.0: 1.5, 22.0: 2.0}
        for profit, rate in expectations.items():
            exchange = ExchangeRecorder()
            position = _long(unrealized_profit=profit)
            candidate = find_eligible([position], [_stop()])[0]
            convert(
                candidate,
                rule=_rule(),
                position_mode="ONE_WAY",
                place_call=exchange.place,
                cancel_call=exchange.cancel,
                mode="COEXIST",
            )
            self.assertEqual(exchange.sequence[0][1]["callbackRate"], rate, msg=f"profit%={profit_percent(position)}")

    def test_adds_trailing_order_and_keeps_static_stop(self) -> None:
        exchange = ExchangeRecorder()
        candidate = find_eligible([_long(unrealized_profit=6.0)], [_stop(orig_qty=1.5)])[0]

        with patch("futures_engine.event_logging.write_engine_log_line") as mocked:
            result = convert_with_logging(
                candidate,
                rule=_rule(),
                position_mode="ONE_WAY",
                place_call=exchange.place,
                cancel_call=exchange.cancel,
                mode="COEXIST",
            )

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "TRAILING_ADDED")
        self.assertEqual(result.mode, "COEXIST")
        self.assertEqual(result.new_order_id, 900)
        self.assertEqual(result.cancelled_order_ids, ())
        self.assertEqual([step for step, _ in exchange.sequence], ["place"])
        placed = exchange.sequence[0][1]
        self.assertEqual(placed["quantity"], 0.5)
        self.assertEqual(placed["callbackRate"], 1.0)
        message = mocked.call_args.args[0]
        self.assertIn("decision=add_trailing_beside_static_stops", message)
        self.assertIn("mode=COEXIST", message)


class SmartLayeringModeTests(unittest.TestCase):
    def _candidate(self, profit: float = 6.0):
        orders = [_stop(order_id=501, orig_qty=1.0), _stop(order_id=503, stop_price=95.0, orig_qty=1.0)]
        return find_eligible([_long(unrealized_profit=profit)], orders)[0]

    def test_places_fixed_and_trailing_layers_before_cancelling_old_stops(self) -> None:
        exchange = ExchangeRecorder()

        result = convert(
            self._candidate(),
            rule=_rule(),
            position_mode="ONE_WAY",
            place_call=exchange.place,
            cancel_call=exchange.cancel,
            mode="SMART_LAYERING",
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.reason_code, "TRAILING_LAYERED")
        self.assertEqual(result.fixed_order_id, 900)
        self.assertEqual(result.new_order_id, 901)
        self.assertEqual(tuple(result.cancelled_order_ids), (501, 503))
        self.assertEqual([step for step, _ in exchange.sequence], ["place", "place", "cancel", "cancel"])
        fixed = exchange.sequence[0][1]
        self.assertEqual(fixed["type"], "STOP_MARKET")
        self.assertEqual(fixed["quantity"], 1.4)
        self.assertEqual(fixed["stopPrice"], 97.85)
        self.assertTrue(fixed["reduceOnly"])
        trailing = exchange.sequence[1][1]
        self.assertEqual(trailing["type"], "TRAILING_STOP_MARKET")
        self.assertEqual(trailing["quantity"], 0.6)
        self.assertEqual(trailing["callbackRate"], 1.5)
        self.assertNotIn("activationPrice", trailing)

    def test_high_profit_uses_widest_callback(self) -> None:
        exchange = ExchangeRecorder()
        convert(
            self._candidate(profit=32.0),
            rule=_rule(),
            position_mode="ONE_WAY",
            place_call=exchange.place,
            cancel_call=exchange.cancel,
            mode="SMART_LAYERING",
        )
        self.assertEqual(exchange.sequence[1][1]["callbackRate"], 3.0)

    def test_trailing_layer_rejection_keeps_old_stops(self) -> None:
        exchange = ExchangeRecorder(reject_place_number=2)

        result = convert(
            self._candidate(),
            rule=_rule(),
            position_mode="ONE_WAY",
            place_call=exchange.place,
            cancel_call=exchange.cancel,
            mode="SMART_LAYERING",
        )

        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "LAYERING_TRAILING_PLACE_FAILED")
        self.assertEqual(result.fixed_order_id, 900)
        self.assertIsNone(result.new_order_id)
        self.assertEqual([step for step, _ in exchange.sequence], ["place", "place"])

    def test_fixed_layer_rejection_stops_before_trailing(self) -> None:
        exchange = ExchangeRecorder(reject_place_number=1)

        result = convert(
            self._candidate(),
            rule=_rule(),
            position_mode="ONE_WAY",
            place_call=exchange.place,
            cancel_call=exchange.cancel,
            mode="SMART_LAYERING",
        )

        self.assertFalse(result.ok)
        self.assertEqual(result.reason_code, "LAYERING_FIXED_PLACE_FAILED")
        self.assertIsNone(result.fixed_order_id)
        self.assertEqual([step for step, _ in exchange.sequence], ["place"])

    def test_partial_cancel_failure_is_reported(self) -> None:
        exchange = ExchangeRecorder(cancel_ok=False)

        result = convert(
            self._candidate(),
            rule=_rule(),
            position_mode="ONE_WAY",
            place_call=exchange.place,
            cancel_call=exchange.cancel,
            mode="SMART_LAYERING",
        )

        self.assertTrue(result.ok)
        self.assertFalse(result.cancel_ok)
        self.assertEqual(result.reason_code, "TRAILING_LAYERED_CANCEL_FAILED")
        self.assertIn("501:Unknown order sent.", result.failure_reason)
        self.assertEqual(tuple(result.cancelled_order_ids), ())

    def test_converter_applies_configured_mode(self) -> None:
        exchange = ExchangeRecorder()
        converter = TrailingStopConverter(
            place_call=exchange.place,
            cancel_call=exchange.cancel,
            rule_for=_rule,
            mode="SMART_LAYERING",
        )

        results = converter.convert_all([self._candidate()], position_mode="ONE_WAY")

        self.assertEqual(converter.mode, "SMART_LAYERING")
        self.assertEqual([result.reason_code for result in results], ["TRAILING_LAYERED"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
