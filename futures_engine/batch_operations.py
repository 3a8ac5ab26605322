from __future__ import annotations

import time
from typing import Any, Callable, Mapping, Optional, Sequence

from .batch_operations_models import BatchItemResult, BatchOperation, BatchResult
from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import GatewayCallResult, GatewayRetryResult, OpenOrder, Position, PositionMode, RetryPolicy, SymbolRule
from .order_builder import build_order, cancel_order_with_retry, submit_order
from .order_builder_models import OrderBuildRequest, OrderCancelRequest
from .risk_capital import profit_protection_stop_price, stop_loss_price

GatewayCall = Callable[[Mapping[str, Any]], GatewayCallResult]
SleepFn = Callable[[float], None]


def _retry_item(key: str, result: GatewayRetryResult) -> BatchItemResult:
    order_id: Optional[int] = None
    if result.payload is not None and result.payload.get("orderId") is not None:
        order_id = int(result.payload["orderId"])
    return BatchItemResult(
        key=key,
        success=result.success,
        reason_code=result.reason_code,
        failure_reason="-" if result.success else (result.last_result.error_message or result.reason_code),
        order_id=order_id,
    )


def _run_sequential(
    operation: BatchOperation,
    keys: Sequence[str],
    step: Callable[[int], BatchItemResult],
    *,
    delay_ms: int,
    sleep: SleepFn,
    loop_label: str,
) -> BatchResult:
    items: list[BatchItemResult] = []
    for index, key in enumerate(keys):
        if index > 0 and delay_ms > 0:
            sleep(delay_ms / 1000.0)
        items.append(step(index))
    succeeded = sum(1 for item in items if item.success)
    result = BatchResult(
        operation=operation,
        total=len(items),
        succeeded=succeeded,
        failed=len(items) - succeeded,
        items=tuple(items),
    )
    failed_keys = [item.key for item in items if not item.success]
    log_structured_event(
        StructuredLogEvent(
            component="batch_operations",
            event=operation.lower(),
            input_data=f"items={len(keys)} delay_ms={delay_ms}",
            decision="run_sequentially_record_each",
            result=f"succeeded={result.succeeded} failed={result.failed}",
            state_before="batch_pending",
            state_after="batch_done",
            failure_reason=",".join(failed_keys) if failed_keys else "-",
            level="INFO" if result.all_succeeded else "WARNING",
        ),
        loop_label=loop_label,
        keys=",".join(keys) or "-",
    )
    return result


def cancel_orders(
    orders: Sequence[OpenOrder],
    *,
    cancel_call: GatewayCall,
    delay_ms: int = 150,
    sleep: SleepFn = time.sleep,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> BatchResult:
    def _step(index: int) -> BatchItemResult:
        order = orders[index]
        result = cancel_order_with_retry(
            OrderCancelRequest(symbol=order.symbol, order_id=order.order_id),
            call=cancel_call,
            retry_policy=retry_policy,
        )
        return _retry_item(str(order.order_id), result)

    return _run_sequential(
        "CANCEL_ORDERS",
        [str(order.order_id) for order in orders],
        _step,
        delay_ms=delay_ms,
        sleep=sleep,
        loop_label=loop_label,
    )


def cancel_all_for_symbols(
    symbols: Sequence[str],
    *,
    cancel_all_call: Callable[[str], GatewayCallResult],
    delay_ms: int = 150,
    sleep: SleepFn = time.sleep,
    loop_label: str = "loop",
) -> BatchResult:
    normalized: list[str] = []
    for symbol in symbols:
        value = (symbol or "").strip().upper()
        if value and value not in normalized:
            normalized.append(value)

    def _step(index: int) -> BatchItemResult:
        symbol = normalized[index]
        result = cancel_all_call(symbol)
        return BatchItemResult(
            key=symbol,
            success=result.ok,
            reason_code=result.reason_code,
            failure_reason="-" if result.ok else (result.error_message or result.reason_code),
        )

    return _run_sequential(
        "CANCEL_ALL_FOR_SYMBOLS",
        normalized,
        _step,
        delay_ms=delay_ms,
        sleep=sleep,
        loop_label=loop_label,
    )


def _submit_for_position(
    position: Position,
    request: OrderBuildRequest,
    *,
    rule_for: Callable[[str], SymbolRule],
    position_mode: PositionMode,
    place_call: GatewayCall,
    retry_policy: Optional[RetryPolicy],
) -> BatchItemResult:
    built = build_order(request, rule=rule_for(position.symbol), position_mode=position_mode)
    if not built.ok:
        return BatchItemResult(
            key=position.key,
            success=False,
            reason_code=built.reason_code,
            failure_reason=built.failure_reason,
        )
    return _retry_item(position.key, submit_order(built, call=place_call, retry_policy=retry_policy))


def close_positions(
    positions: Sequence[Position],
    *,
    place_call: GatewayCall,
    rule_for: Callable[[str], SymbolRule],
    position_mode: PositionMode,
    delay_ms: int = 150,
    sleep: SleepFn = time.sleep,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> BatchResult:
    def _step(index: int) -> BatchItemResult:
        position = positions[index]
        request = OrderBuildRequest(
            symbol=position.symbol,
            side=position.close_side,
            order_type="MARKET",
            quantity=position.quantity,
            reduce_only=True,
            position_side=position.position_side,
        )
        return _submit_for_position(
            position,
            request,
            rule_for=rule_for,
            position_mode=position_mode,
            place_call=place_call,
            retry_policy=retry_policy,
        )

    return _run_sequential(
        "CLOSE_POSITIONS",
        [position.key for position in positions],
        _step,
        delay_ms=delay_ms,
        sleep=sleep,
        loop_label=loop_label,
    )


def _stop_request(position: Position, stop_price: float) -> OrderBuildRequest:
    return OrderBuildRequest(
        symbol=position.symbol,
        side=position.close_side,
        order_type="STOP_MARKET",
        quantity=position.quantity,
        stop_price=stop_price,
        reduce_only=True,
        position_side=position.position_side,
    )


def place_stop_losses(
    positions: Sequence[Position],
    *,
    stop_loss_ratio_percent: float,
    place_call: GatewayCall,
    rule_for: Callable[[str], SymbolRule],
    position_mode: PositionMode,
    delay_ms: int = 150,
    sleep: SleepFn = time.sleep,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> BatchResult:
    def _step(index: int) -> BatchItemResult:
        position = positions[index]
        entry_side = "BUY" if position.is_long else "SELL"
        stop = stop_loss_price(
            position.entry_price,
            stop_loss_ratio_percent,
            entry_side,
            rule_for(position.symbol),
        )
        if not stop.ok:
            return BatchItemResult(
                key=position.key,
                success=False,
                reason_code=stop.reason_code,
                failure_reason=stop.failure_reason,
            )
        return _submit_for_position(
            position,
            _stop_request(position, stop.value),
            rule_for=rule_for,
            position_mode=position_mode,
            place_call=place_call,
            retry_policy=retry_policy,
        )

    return _run_sequential(
        "PLACE_STOP_LOSSES",
        [position.key for position in positions],
        _step,
        delay_ms=delay_ms,
        sleep=sleep,
        loop_label=loop_label,
    )


def place_break_even_stops(
    positions: Sequence[Position],
    *,
    place_call: GatewayCall,
    rule_for: Callable[[str], SymbolRule],
    position_mode: PositionMode,
    delay_ms: int = 150,
    sleep: SleepFn = time.sleep,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> BatchResult:
    def _step(index: int) -> BatchItemResult:
        position = positions[index]
        if position.entry_price <= 0:
            return BatchItemResult(
                key=position.key,
                success=False,
                reason_code="NON_POSITIVE_ENTRY_PRICE",
                failure_reason="entry price must be > 0",
            )
        return _submit_for_position(
            position,
            _stop_request(position, position.entry_price),
            rule_for=rule_for,
            position_mode=position_mode,
            place_call=place_call,
            retry_policy=retry_policy,
        )

    return _run_sequential(
        "PLACE_BREAK_EVEN_STOPS",
        [position.key for position in positions],
        _step,
        delay_ms=delay_ms,
        sleep=sleep,
        loop_label=loop_label,
    )


def place_profit_protection_stop(
    position: Position,
    amount: float,
    *,
    place_call: GatewayCall,
    rule_for: Callable[[str], SymbolRule],
    position_mode: PositionMode,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "manual",
) -> BatchResult:
    """Reduce-only stop that still books ``amount`` of profit if the price pulls back."""

    def _step(_index: int) -> BatchItemResult:
        stop = profit_protection_stop_price(position, amount, rule_for(position.symbol))
        if not stop.ok:
            return BatchItemResult(
                key=position.key,
                success=False,
                reason_code=stop.reason_code,
                failure_reason=stop.failure_reason,
            )
        return _submit_for_position(
            position,
            _stop_request(position, stop.value),
            rule_for=rule_for,
            position_mode=position_mode,
            place_call=place_call,
            retry_policy=retry_policy,
        )

    return _run_sequential(
        "PLACE_PROFIT_PROTECTION_STOP",
        [position.key],
        _step,
        delay_ms=0,
        sleep=time.sleep,
        loop_label=loop_label,
    )
