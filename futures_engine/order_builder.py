from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Mapping, Optional

from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import (
    GatewayCallResult,
    GatewayRetryResult,
    OrderOperation,
    PositionMode,
    PositionSide,
    RetryPolicy,
    SymbolRule,
)
from .order_builder_models import (
    TIME_IN_FORCE_DEFAULT,
    LeverageCheckResult,
    OrderBuildRequest,
    OrderBuildResult,
    OrderCancelRequest,
    OrderRefPreparationResult,
)
from .precision import adjust_price, adjust_quantity

SUPPORTED_ORDER_TYPES: tuple[str, ...] = (
    "MARKET",
    "LIMIT",
    "STOP",
    "TAKE_PROFIT",
    "STOP_MARKET",
    "TAKE_PROFIT_MARKET",
    "TRAILING_STOP_MARKET",
)
LIMIT_STYLE_TYPES: tuple[str, ...] = ("LIMIT", "STOP", "TAKE_PROFIT")
STOP_TRIGGER_TYPES: tuple[str, ...] = ("STOP", "STOP_MARKET", "TAKE_PROFIT", "TAKE_PROFIT_MARKET")
CLOSE_POSITION_TYPES: tuple[str, ...] = ("STOP_MARKET", "TAKE_PROFIT_MARKET")

CALLBACK_RATE_MAX = 10.0


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def _positive_finite(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(converted) or converted <= 0:
        return None
    return converted


def _rejected(reason_code: str, failure_reason: str, **adjusted: Optional[float]) -> OrderBuildResult:
    return OrderBuildResult(
        ok=False,
        reason_code=reason_code,
        failure_reason=failure_reason,
        params={},
        **adjusted,
    )


def round_callback_rate(value: float) -> Optional[float]:
    try:
        rounded = Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None
    return float(rounded)


def resolve_position_side(
    request: OrderBuildRequest,
    position_mode: PositionMode,
) -> PositionSide:
    if position_mode != "HEDGE":
        return "BOTH"
    if request.position_side in ("LONG", "SHORT"):
        return request.position_side
    closing = bool(request.reduce_only or request.close_position)
    if request.side == "BUY":
        return "SHORT" if closing else "LONG"
    return "LONG" if closing else "SHORT"


def _resolve_reference_price(request: OrderBuildRequest, *candidates: Optional[float]) -> Optional[float]:
    for candidate in candidates:
        if candidate is not None and candidate > 0:
            return candidate
    return _positive_finite(request.reference_price)


def build_order(
    request: OrderBuildRequest,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
) -> OrderBuildResult:
    symbol = _normalize_symbol(request.symbol)
    if not symbol:
        return _rejected("INVALID_SYMBOL", "symbol is empty")
    if request.order_type not in SUPPORTED_ORDER_TYPES:
        return _rejected("UNSUPPORTED_ORDER_TYPE", f"order type {request.order_type} is not supported")
    if request.side not in ("BUY", "SELL"):
        return _rejected("INVALID_SIDE", "side must be BUY or SELL")
    if position_mode not in ("ONE_WAY", "HEDGE"):
        return _rejected("INVALID_POSITION_MODE", "position_mode must be ONE_WAY or HEDGE")
    if request.close_position and request.order_type not in CLOSE_POSITION_TYPES:
        return _rejected(
            "CLOSE_POSITION_UNSUPPORTED_ORDER_TYPE",
            "closePosition is only allowed for STOP_MARKET/TAKE_PROFIT_MARKET",
        )

    params: dict[str, Any] = {
        "symbol": symbol,
        "side": request.side,
        "type": request.order_type,
    }

    adjusted_quantity: Optional[float] = None
    if not request.close_position:
        if request.quantity is None:
            return _rejected("QUANTITY_REQUIRED", f"quantity is required for {request.order_type} order")
        quantity = _positive_finite(request.quantity)
        if quantity is None:
            return _rejected("INVALID_QUANTITY", "quantity must be a positive finite number")
        adjusted_quantity = adjust_quantity(quantity, rule)
        if adjusted_quantity <= 0:
            return _rejected(
                "QUANTITY_NON_POSITIVE_AFTER_ADJUST",
                "adjusted quantity is not positive",
                adjusted_quantity=adjusted_quantity,
            )
        params["quantity"] = adjusted_quantity

    adjusted_price: Optional[float] = None
    if request.order_type in LIMIT_STYLE_TYPES:
        if request.price is None:
            return _rejected(
                "LIMIT_PRICE_REQUIRED",
                f"price is required for {request.order_type} order",
                adjusted_quantity=adjusted_quantity,
            )
        price = _positive_finite(request.price)
        if price is None:
            return _rejected(
                "INVALID_PRICE",
                "price must be a positive finite number",
                adjusted_quantity=adjusted_quantity,
            )
        adjusted_price = adjust_price(price, rule)
        if adjusted_price <= 0:
            return _rejected(
                "PRICE_NON_POSITIVE_AFTER_ADJUST",
                "adjusted price is not positive",
                adjusted_quantity=adjusted_quantity,
                adjusted_price=adjusted_price,
            )
        params["price"] = adjusted_price
        params["timeInForce"] = request.time_in_force or TIME_IN_FORCE_DEFAULT

    adjusted_stop_price: Optional[float] = None
    if request.order_type in STOP_TRIGGER_TYPES:
        if request.stop_price is None:
            return _rejected(
                "STOP_PRICE_REQUIRED",
                "stop_price is required for stop-family orders",
                adjusted_quantity=adjusted_quantity,
                adjusted_price=adjusted_price,
            )
        stop_price = _positive_finite(request.stop_price)
        if stop_price is None:
            return _rejected(
                "INVALID_STOP_PRICE",
                "stop_price must be a positive finite number",
                adjusted_quantity=adjusted_quantity,
                adjusted_price=adjusted_price,
            )
        adjusted_stop_price = adjust_price(stop_price, rule)
        if adjusted_stop_price <= 0:
            return _rejected(
                "STOP_PRICE_NON_POSITIVE_AFTER_ADJUST",
                "adjusted stop price is not positive",
                adjusted_quantity=adjusted_quantity,
                adjusted_price=adjusted_price,
                adjusted_stop_price=adjusted_stop_price,
            )
        params["stopPrice"] = adjusted_stop_price
        params["workingType"] = request.working_type

    callback_rate: Optional[float] = None
    adjusted_activation_price: Optional[float] = None
    if request.order_type == "TRAILING_STOP_MARKET":
        raw_rate = _positive_finite(request.callback_rate)
        callback_rate = round_callback_rate(raw_rate) if raw_rate is not None else None
        if callback_rate is None or callback_rate <= 0:
            return _rejected(
                "INVALID_CALLBACK_RATE",
                "callback_rate must be a positive percentage",
                adjusted_quantity=adjusted_quantity,
            )
        if callback_rate > CALLBACK_RATE_MAX:
            return _rejected(
                "CALLBACK_RATE_ABOVE_MAXIMUM",
                f"callback_rate={callback_rate} > max={CALLBACK_RATE_MAX}",
                adjusted_quantity=adjusted_quantity,
            )
        params["callbackRate"] = callback_rate
        if request.activation_price is not None:
            activation_price = _positive_finite(request.activation_price)
            if activation_price is None:
                return _rejected(
                    "INVALID_ACTIVATION_PRICE",
                    "activation_price must be a positive finite number",
                    adjusted_quantity=adjusted_quantity,
                )
            adjusted_activation_price = adjust_price(activation_price, rule)
            params["activationPrice"] = adjusted_activation_price
        params["workingType"] = request.working_type

    notional: Optional[float] = None
    if adjusted_quantity is not None:
        reference_price = _resolve_reference_price(
            request,
            adjusted_price,
            adjusted_stop_price,
            adjusted_activation_price,
        )
        if reference_price is not None:
            notional = adjusted_quantity * reference_price
            if (
                not request.reduce_only
                and rule.min_notional is not None
                and rule.min_notional > 0
                and notional < rule.min_notional
            ):
                return _rejected(
                    "MIN_NOTIONAL_NOT_MET",
                    f"notional={notional} < min_notional={rule.min_notional}",
                    adjusted_quantity=adjusted_quantity,
                    adjusted_price=adjusted_price,
                    adjusted_stop_price=adjusted_stop_price,
                    notional=notional,
                )
            if rule.max_notional is not None and rule.max_notional > 0 and notional > rule.max_notional:
                return _rejected(
                    "MAX_NOTIONAL_EXCEEDED",
                    f"notional={notional} > max_notional={rule.max_notional}",
                    adjusted_quantity=adjusted_quantity,
                    adjusted_price=adjusted_price,
                    adjusted_stop_price=adjusted_stop_price,
                    notional=notional,
                )

    position_side = resolve_position_side(request, position_mode)
    params["positionSide"] = position_side
    if request.close_position:
        params["closePosition"] = True
    elif request.reduce_only and position_mode == "ONE_WAY":
        # Hedge mode rejects reduceOnly; positionSide already scopes the close.
        params["reduceOnly"] = True
    if request.new_client_order_id:
        params["newClientOrderId"] = request.new_client_order_id

    return OrderBuildResult(
        ok=True,
        reason_code="ORDER_READY_HEDGE" if position_mode == "HEDGE" else "ORDER_READY_ONE_WAY",
        failure_reason="-",
        params=params,
        adjusted_quantity=adjusted_quantity,
        adjusted_price=adjusted_price,
        adjusted_stop_price=adjusted_stop_price,
        adjusted_activation_price=adjusted_activation_price,
        callback_rate=callback_rate,
        notional=notional,
    )


def validate_leverage(leverage: int, rule: SymbolRule) -> LeverageCheckResult:
    try:
        value = int(leverage)
    except (TypeError, ValueError):
        return LeverageCheckResult(False, "INVALID_LEVERAGE", "leverage must be an integer", 0)
    if value < 1:
        return LeverageCheckResult(False, "LEVERAGE_BELOW_MINIMUM", "leverage must be >= 1", value)
    if value > rule.max_leverage:
        return LeverageCheckResult(
            False,
            "LEVERAGE_ABOVE_MAXIMUM",
            f"leverage={value} > max_leverage={rule.max_leverage}",
            value,
        )
    return LeverageCheckResult(True, "LEVERAGE_VALID", "-", value)


def prepare_cancel_order(request: OrderCancelRequest) -> OrderRefPreparationResult:
    symbol = _normalize_symbol(request.symbol)
    if not symbol:
        return OrderRefPreparationResult(
            ok=False,
            reason_code="INVALID_SYMBOL",
            failure_reason="symbol is empty",
            params={},
        )
    client_id = (request.orig_client_order_id or "").strip()
    if (request.order_id is None or int(request.order_id) <= 0) and not client_id:
        return OrderRefPreparationResult(
            ok=False,
            reason_code="ORDER_IDENTIFIER_REQUIRED",
            failure_reason="order_id or orig_client_order_id is required",
            params={},
        )
    params: dict[str, Any] = {"symbol": symbol}
    if request.order_id is not None and int(request.order_id) > 0:
        params["orderId"] = int(request.order_id)
    if client_id:
        params["origClientOrderId"] = client_id
    return OrderRefPreparationResult(
        ok=True,
        reason_code="ORDER_REFERENCE_READY",
        failure_reason="-",
        params=params,
    )


def _failed_retry_result(
    operation: OrderOperation,
    reason_code: str,
    failure_reason: str,
) -> GatewayRetryResult:
    final = GatewayCallResult(
        ok=False,
        reason_code=reason_code,
        payload=None,
        error_code=None,
        error_message=failure_reason,
    )
    return GatewayRetryResult(
        operation=operation,
        success=False,
        attempts=0,
        reason_code=reason_code,
        last_result=final,
        history=[],
    )


def execute_gateway_with_retry(
    operation: OrderOperation,
    *,
    params: Mapping[str, Any],
    call: Callable[[Mapping[str, Any]], GatewayCallResult],
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    policy = retry_policy if retry_policy is not None else RetryPolicy()
    max_attempts = max(1, int(policy.max_attempts))
    retryable = set(policy.retryable_reason_codes)
    history: list[GatewayCallResult] = []

    for attempt_index in range(max_attempts):
        result = call(dict(params))
        history.append(result)
        if result.ok:
            return GatewayRetryResult(
                operation=operation,
                success=True,
                attempts=attempt_index + 1,
                reason_code="SUCCESS",
                last_result=result,
                history=history,
            )
        if result.reason_code not in retryable:
            break

    last_result = history[-1]
    return GatewayRetryResult(
        operation=operation,
        success=False,
        attempts=len(history),
        reason_code=last_result.reason_code,
        last_result=last_result,
        history=history,
    )


def submit_order(
    build_result: OrderBuildResult,
    *,
    call: Callable[[Mapping[str, Any]], GatewayCallResult],
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    if not build_result.ok:
        return _failed_retry_result("CREATE", build_result.reason_code, build_result.failure_reason)
    return execute_gateway_with_retry(
        "CREATE",
        params=build_result.params,
        call=call,
        retry_policy=retry_policy,
    )


def cancel_order_with_retry(
    request: OrderCancelRequest,
    *,
    call: Callable[[Mapping[str, Any]], GatewayCallResult],
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    prepared = prepare_cancel_order(request)
    if not prepared.ok:
        return _failed_retry_result("CANCEL", prepared.reason_code, prepared.failure_reason)
    return execute_gateway_with_retry(
        "CANCEL",
        params=prepared.params,
        call=call,
        retry_policy=retry_policy,
    )


def build_order_with_logging(
    request: OrderBuildRequest,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    loop_label: str = "loop",
) -> OrderBuildResult:
    result = build_order(request, rule=rule, position_mode=position_mode)
    log_structured_event(
        StructuredLogEvent(
            component="order_builder",
            event="build_order",
            input_data=(
                f"symbol={_normalize(request.symbol)} side={request.side} type={request.order_type} "
                f"quantity={request.quantity if request.quantity is not None else '-'} "
                f"position_mode={position_mode}"
            ),
            decision="apply_precision_and_type_rules",
            result="prepared" if result.ok else "rejected",
            state_before="request_received",
            state_after="request_prepared" if result.ok else "request_rejected",
            failure_reason=result.reason_code if not result.ok else "-",
            level="INFO" if result.ok else "WARNING",
        ),
        loop_label=loop_label,
        reason_code=result.reason_code,
        rule_source=rule.source,
        adjusted_quantity=result.adjusted_quantity if result.adjusted_quantity is not None else "-",
        adjusted_price=result.adjusted_price if result.adjusted_price is not None else "-",
        adjusted_stop_price=result.adjusted_stop_price if result.adjusted_stop_price is not None else "-",
        callback_rate=result.callback_rate if result.callback_rate is not None else "-",
        notional=result.notional if result.notional is not None else "-",
    )
    return result


def submit_order_with_logging(
    build_result: OrderBuildResult,
    *,
    call: Callable[[Mapping[str, Any]], GatewayCallResult],
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> GatewayRetryResult:
    result = submit_order(build_result, call=call, retry_policy=retry_policy)
    params = build_result.params
    log_structured_event(
        StructuredLogEvent(
            component="order_builder",
            event="submit_order",
            input_data=(
                f"symbol={_normalize(params.get('symbol', '-'))} side={_normalize(params.get('side', '-'))} "
                f"type={_normalize(params.get('type', '-'))}"
            ),
            decision="execute_retry_policy",
            result="success" if result.success else "failed",
            state_before="order_create_pending",
            state_after="order_create_done",
            failure_reason=result.reason_code if not result.success else "-",
            level="INFO" if result.success else "WARNING",
        ),
        loop_label=loop_label,
        attempts=result.attempts,
        reason_code=result.reason_code,
        exchange_error_code=result.last_result.error_code if result.last_result.error_code is not None else "-",
        order_id=(result.payload or {}).get("orderId", "-"),
    )
    return result


def cancel_order_with_retry_with_logging(
    request: OrderCancelRequest,
    *,
    call: Callable[[Mapping[str, Any]], GatewayCallResult],
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> GatewayRetryResult:
    result = cancel_order_with_retry(request, call=call, retry_policy=retry_policy)
    log_structured_event(
        StructuredLogEvent(
            component="order_builder",
            event="cancel_order_with_retry",
            input_data=(
                f"symbol={_normalize(request.symbol)} order_id={request.order_id if request.order_id is not None else '-'} "
                f"orig_client_order_id={_normalize(request.orig_client_order_id)}"
            ),
            decision="prepare_cancel_request_and_execute_retry_policy",
            result="success" if result.success else "failed",
            state_before="order_cancel_pending",
            state_after="order_cancel_done",
            failure_reason=result.reason_code if not result.success else "-",
            level="INFO" if result.success else "WARNING",
        ),
        loop_label=loop_label,
        attempts=result.attempts,
        reason_code=result.reason_code,
        exchange_error_code=result.last_result.error_code if result.last_result.error_code is not None else "-",
    )
    return result
