from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import AbstractSet, Any, Callable, Mapping, Optional, Sequence

from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import GatewayCallResult, GatewayRetryResult, OpenOrder, Position, PositionMode, RetryPolicy, SymbolRule
from .order_builder import build_order, cancel_order_with_retry, submit_order
from .order_builder_models import OrderBuildRequest, OrderBuildResult, OrderCancelRequest
from .trailing_stop_models import (
    CALLBACK_RATE_CEILING,
    CALLBACK_RATE_FLOOR,
    COEXIST_MAX_SHARE,
    COEXIST_MIN_SHARE,
    LAYERING_FIXED_SHARE,
    LAYERING_FIXED_STOP_PERCENT,
    LAYERING_TRAILING_SHARE,
    TrailingCandidate,
    TrailingConversionResult,
    TrailingStopMode,
)

GatewayCall = Callable[[Mapping[str, Any]], GatewayCallResult]

# (minimum profit percent of notional, callback rate), checked top-down
COEXIST_CALLBACK_TIERS: tuple[tuple[float, float], ...] = ((10.0, 2.0), (5.0, 1.5), (2.0, 1.0))
COEXIST_CALLBACK_DEFAULT = 0.8
LAYERING_CALLBACK_TIERS: tuple[tuple[float, float], ...] = ((15.0, 3.0), (10.0, 2.5), (5.0, 2.0), (2.0, 1.5))
LAYERING_CALLBACK_DEFAULT = 1.0

_MODE_DECISIONS: Mapping[str, str] = {
    "REPLACE": "place_trailing_then_cancel_static_stop",
    "COEXIST": "add_trailing_beside_static_stops",
    "SMART_LAYERING": "place_fixed_and_trailing_then_cancel_static_stops",
}
_MODE_STATES: Mapping[str, str] = {
    "REPLACE": "trailing_stop",
    "COEXIST": "static_and_trailing_stop",
    "SMART_LAYERING": "layered_stops",
}


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _clamp_rate(rate: Decimal) -> float:
    floor = Decimal(str(CALLBACK_RATE_FLOOR))
    ceiling = Decimal(str(CALLBACK_RATE_CEILING))
    return float(min(max(rate, floor), ceiling))


def derive_callback_rate(entry_price: float, stop_price: float) -> Optional[float]:
    """Stop distance from entry as a percentage, clamped to [0.1, 5.0] on a 0.1 grid."""
    try:
        entry = Decimal(str(entry_price))
        stop = Decimal(str(stop_price))
    except (InvalidOperation, ValueError):
        return None
    if not entry.is_finite() or not stop.is_finite() or entry <= 0 or stop <= 0:
        return None
    raw = abs(entry - stop) / entry * Decimal("100")
    return _clamp_rate(raw.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def profit_percent(position: Position) -> float:
    notional = position.quantity * position.mark_price
    if notional <= 0:
        return 0.0
    return position.unrealized_profit / notional * 100.0


def tiered_callback_rate(
    position: Position,
    tiers: Sequence[tuple[float, float]],
    default: float,
) -> float:
    percent = profit_percent(position)
    for threshold, rate in tiers:
        if percent >= threshold:
            return _clamp_rate(Decimal(str(rate)))
    return _clamp_rate(Decimal(str(default)))


def coexist_quantity(candidate: TrailingCandidate) -> float:
    total = Decimal(str(candidate.position.quantity))
    uncovered = total - Decimal(str(candidate.covered_quantity))
    lower = total * Decimal(str(COEXIST_MIN_SHARE))
    upper = total * Decimal(str(COEXIST_MAX_SHARE))
    return float(max(lower, min(upper, uncovered)))


def _in_profit(position: Position) -> bool:
    if position.entry_price <= 0 or position.mark_price <= 0:
        return False
    if position.is_long:
        return position.mark_price > position.entry_price
    return position.mark_price < position.entry_price


def _protects(order: OpenOrder, position: Position) -> bool:
    if order.symbol != position.symbol or not order.is_close_type:
        return False
    if order.side != position.close_side:
        return False
    if position.position_side != "BOTH" and order.position_side not in ("BOTH", position.position_side):
        return False
    return True


def find_eligible(
    positions: Sequence[Position],
    open_orders: Sequence[OpenOrder],
    *,
    skip_order_ids: AbstractSet[int] = frozenset(),
) -> list[TrailingCandidate]:
    """Positions in profit that carry a static stop and no trailing stop yet.

    A position is skipped while any of its stops is listed in ``skip_order_ids``.
    """
    candidates: list[TrailingCandidate] = []
    for position in positions:
        if position.quantity <= 1e-12 or not _in_profit(position):
            continue
        protective = [order for order in open_orders if _protects(order, position)]
        if any(order.order_type == "TRAILING_STOP_MARKET" for order in protective):
            continue
        stops = [order for order in protective if order.order_type == "STOP_MARKET" and order.stop_price > 0]
        if not stops or any(order.order_id in skip_order_ids for order in stops):
            continue
        # The stop nearest the mark price is the one that would fire first.
        stop = min(stops, key=lambda order: abs(position.mark_price - order.stop_price))
        callback_rate = derive_callback_rate(position.entry_price, stop.stop_price)
        if callback_rate is None:
            continue
        quantity = stop.orig_qty if stop.orig_qty > 0 and not stop.close_position else position.quantity
        covered = sum(
            position.quantity if order.close_position or order.orig_qty <= 0 else order.orig_qty
            for order in stops
        )
        candidates.append(
            TrailingCandidate(
                position=position,
                stop_order=stop,
                callback_rate=callback_rate,
                activation_price=position.mark_price,
                quantity=min(quantity, position.quantity),
                protective_stops=tuple(stops),
                covered_quantity=min(covered, position.quantity),
            )
        )
    return candidates


def unsettled_claims(claimed: AbstractSet[int], open_orders: Sequence[OpenOrder]) -> set[int]:
    """Claimed stop ids still live with no trailing stop on the same close side yet."""
    trailing_sides = {
        (order.symbol, order.side, order.position_side)
        for order in open_orders
        if order.order_type == "TRAILING_STOP_MARKET"
    }
    return {
        order.order_id
        for order in open_orders
        if order.order_id in claimed and (order.symbol, order.side, order.position_side) not in trailing_sides
    }


def _submit(
    request: OrderBuildRequest,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    place_call: GatewayCall,
    retry_policy: Optional[RetryPolicy],
) -> tuple[OrderBuildResult, Optional[GatewayRetryResult]]:
    built = build_order(request, rule=rule, position_mode=position_mode)
    if not built.ok:
        return built, None
    return built, submit_order(built, call=place_call, retry_policy=retry_policy)


def _order_id(placed: GatewayRetryResult) -> Optional[int]:
    if placed.payload is not None and placed.payload.get("orderId") is not None:
        return int(placed.payload["orderId"])
    return None


def _trailing_request(
    candidate: TrailingCandidate,
    *,
    quantity: float,
    callback_rate: float,
    activation_price: Optional[float],
) -> OrderBuildRequest:
    position = candidate.position
    return OrderBuildRequest(
        symbol=position.symbol,
        side=position.close_side,
        order_type="TRAILING_STOP_MARKET",
        quantity=quantity,
        callback_rate=callback_rate,
        activation_price=activation_price,
        reduce_only=True,
        position_side=position.position_side,
        working_type=candidate.stop_order.working_type,
    )


def _place_failure(
    candidate: TrailingCandidate,
    mode: TrailingStopMode,
    built: OrderBuildResult,
    placed: Optional[GatewayRetryResult],
    *,
    reason_prefix: str = "TRAILING",
    fixed_order_id: Optional[int] = None,
) -> TrailingConversionResult:
    if placed is None:
        reason_code = f"{reason_prefix}_BUILD_{built.reason_code}"
        failure_reason = built.failure_reason
    else:
        reason_code = f"{reason_prefix}_PLACE_FAILED"
        failure_reason = placed.last_result.error_message or placed.reason_code
    return TrailingConversionResult(
        ok=False,
        reason_code=reason_code,
        failure_reason=failure_reason,
        symbol=candidate.position.symbol,
        old_order_id=candidate.stop_order.order_id,
        callback_rate=built.callback_rate,
        activation_price=built.adjusted_activation_price,
        mode=mode,
        fixed_order_id=fixed_order_id,
    )


def _replace(
    candidate: TrailingCandidate,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    place_call: GatewayCall,
    cancel_call: GatewayCall,
    retry_policy: Optional[RetryPolicy],
) -> TrailingConversionResult:
    position = candidate.position
    stop = candidate.stop_order
    request = _trailing_request(
        candidate,
        quantity=candidate.quantity,
        callback_rate=candidate.callback_rate,
        activation_price=candidate.activation_price,
    )
    built, placed = _submit(
        request, rule=rule, position_mode=position_mode, place_call=place_call, retry_policy=retry_policy
    )
    if placed is None or not placed.success:
        return _place_failure(candidate, "REPLACE", built, placed)

    cancelled = cancel_order_with_retry(
        OrderCancelRequest(symbol=position.symbol, order_id=stop.order_id),
        call=cancel_call,
        retry_policy=retry_policy,
    )
    return TrailingConversionResult(
        ok=True,
        reason_code="TRAILING_CONVERTED" if cancelled.success else "TRAILING_CONVERTED_CANCEL_FAILED",
        failure_reason="-" if cancelled.success else (
            cancelled.last_result.error_message or cancelled.reason_code
        ),
        symbol=position.symbol,
        old_order_id=stop.order_id,
        new_order_id=_order_id(placed),
        callback_rate=built.callback_rate,
        activation_price=built.adjusted_activation_price,
        cancel_ok=cancelled.success,
        cancelled_order_ids=(stop.order_id,) if cancelled.success else (),
    )


def _coexist(
    candidate: TrailingCandidate,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    place_call: GatewayCall,
    retry_policy: Optional[RetryPolicy],
) -> TrailingConversionResult:
    request = _trailing_request(
        candidate,
        quantity=coexist_quantity(candidate),
        callback_rate=tiered_callback_rate(candidate.position, COEXIST_CALLBACK_TIERS, COEXIST_CALLBACK_DEFAULT),
        activation_price=candidate.activation_price,
    )
    built, placed = _submit(
        request, rule=rule, position_mode=position_mode, place_call=place_call, retry_policy=retry_policy
    )
    if placed is None or not placed.success:
        return _place_failure(candidate, "COEXIST", built, placed)
    return TrailingConversionResult(
        ok=True,
        reason_code="TRAILING_ADDED",
        failure_reason="-",
        symbol=candidate.position.symbol,
        old_order_id=candidate.stop_order.order_id,
        new_order_id=_order_id(placed),
        callback_rate=built.callback_rate,
        activation_price=built.adjusted_activation_price,
        cancel_ok=True,
        mode="COEXIST",
    )


def _layering_stop_price(position: Position) -> float:
    offset = Decimal(str(LAYERING_FIXED_STOP_PERCENT)) / Decimal("100")
    mark = Decimal(str(position.mark_price))
    factor = Decimal("1") - offset if position.is_long else Decimal("1") + offset
    return float(mark * factor)


def _smart_layering(
    candidate: TrailingCandidate,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    place_call: GatewayCall,
    cancel_call: GatewayCall,
    retry_policy: Optional[RetryPolicy],
) -> TrailingConversionResult:
    """Split protection into a tighter fixed stop and a trailing stop, then drop the old stops.

    Both new orders are placed before any cancel so the position is never left unprotected.
    """
    position = candidate.position
    total = Decimal(str(position.quantity))
    fixed_request = OrderBuildRequest(
        symbol=position.symbol,
        side=position.close_side,
        order_type="STOP_MARKET",
        quantity=float(total * Decimal(str(LAYERING_FIXED_SHARE))),
        stop_price=_layering_stop_price(position),
        reduce_only=True,
        position_side=position.position_side,
        working_type=candidate.stop_order.working_type,
    )
    fixed_built, fixed_placed = _submit(
        fixed_request, rule=rule, position_mode=position_mode, place_call=place_call, retry_policy=retry_policy
    )
    if fixed_placed is None or not fixed_placed.success:
        return _place_failure(candidate, "SMART_LAYERING", fixed_built, fixed_placed, reason_prefix="LAYERING_FIXED")
    fixed_order_id = _order_id(fixed_placed)

    trailing_request = _trailing_request(
        candidate,
        quantity=float(total * Decimal(str(LAYERING_TRAILING_SHARE))),
        callback_rate=tiered_callback_rate(position, LAYERING_CALLBACK_TIERS, LAYERING_CALLBACK_DEFAULT),
        activation_price=None,
    )
    built, placed = _submit(
        trailing_request, rule=rule, position_mode=position_mode, place_call=place_call, retry_policy=retry_policy
    )
    if placed is None or not placed.success:
        return _place_failure(
            candidate,
            "SMART_LAYERING",
            built,
            placed,
            reason_prefix="LAYERING_TRAILING",
            fixed_order_id=fixed_order_id,
        )

    cancelled_ids: list[int] = []
    failures: list[str] = []
    for stop in candidate.protective_stops or (candidate.stop_order,):
        cancelled = cancel_order_with_retry(
            OrderCancelRequest(symbol=position.symbol, order_id=stop.order_id),
            call=cancel_call,
            retry_policy=retry_policy,
        )
        if cancelled.success:
            cancelled_ids.append(stop.order_id)
        else:
            failures.append(f"{stop.order_id}:{cancelled.last_result.error_message or cancelled.reason_code}")
    return TrailingConversionResult(
        ok=True,
        reason_code="TRAILING_LAYERED" if not failures else "TRAILING_LAYERED_CANCEL_FAILED",
        failure_reason=",".join(failures) if failures else "-",
        symbol=position.symbol,
        old_order_id=candidate.stop_order.order_id,
        new_order_id=_order_id(placed),
        callback_rate=built.callback_rate,
        cancel_ok=not failures,
        mode="SMART_LAYERING",
        fixed_order_id=fixed_order_id,
        cancelled_order_ids=tuple(cancelled_ids),
    )


def convert(
    candidate: TrailingCandidate,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    place_call: GatewayCall,
    cancel_call: GatewayCall,
    retry_policy: Optional[RetryPolicy] = None,
    mode: TrailingStopMode = "REPLACE",
) -> TrailingConversionResult:
    """Protect a profitable position with a trailing stop according to ``mode``.

    REPLACE places the trailing replacement, then cancels the static stop it supersedes.
    A failed cancel leaves both protective orders live and is reported, never rolled back.
    """
    if mode == "COEXIST":
        return _coexist(
            candidate, rule=rule, position_mode=position_mode, place_call=place_call, retry_policy=retry_policy
        )
    if mode == "SMART_LAYERING":
        return _smart_layering(
            candidate,
            rule=rule,
            position_mode=position_mode,
            place_call=place_call,
            cancel_call=cancel_call,
            retry_policy=retry_policy,
        )
    return _replace(
        candidate,
        rule=rule,
        position_mode=position_mode,
        place_call=place_call,
        cancel_call=cancel_call,
        retry_policy=retry_policy,
    )


def convert_with_logging(
    candidate: TrailingCandidate,
    *,
    rule: SymbolRule,
    position_mode: PositionMode,
    place_call: GatewayCall,
    cancel_call: GatewayCall,
    retry_policy: Optional[RetryPolicy] = None,
    mode: TrailingStopMode = "REPLACE",
    loop_label: str = "loop",
) -> TrailingConversionResult:
    result = convert(
        candidate,
        rule=rule,
        position_mode=position_mode,
        place_call=place_call,
        cancel_call=cancel_call,
        retry_policy=retry_policy,
        mode=mode,
    )
    if result.ok and result.cancel_ok:
        outcome, level = "converted", "INFO"
    elif result.ok:
        outcome, level = "converted_cancel_failed", "WARNING"
    else:
        outcome, level = "not_converted", "WARNING"
    position = candidate.position
    log_structured_event(
        StructuredLogEvent(
            component="trailing_stop",
            event="convert_stop_to_trailing",
            input_data=(
                f"symbol={_normalize(position.symbol)} entry={position.entry_price} "
                f"mark={position.mark_price} stop={candidate.stop_order.stop_price}"
            ),
            decision=_MODE_DECISIONS[mode],
            result=outcome,
            state_before="static_stop",
            state_after=_MODE_STATES[mode] if result.ok else "static_stop",
            failure_reason=result.failure_reason,
            level=level,
        ),
        loop_label=loop_label,
        mode=mode,
        reason_code=result.reason_code,
        old_order_id=result.old_order_id,
        new_order_id=result.new_order_id if result.new_order_id is not None else "-",
        fixed_order_id=result.fixed_order_id if result.fixed_order_id is not None else "-",
        callback_rate=result.callback_rate if result.callback_rate is not None else "-",
        activation_price=result.activation_price if result.activation_price is not None else "-",
    )
    return result


class TrailingStopConverter:
    """Runs trailing-stop conversions for the candidates of one reconciliation cycle."""

    def __init__(
        self,
        *,
        place_call: GatewayCall,
        cancel_call: GatewayCall,
        rule_for: Callable[[str], SymbolRule],
        retry_policy: Optional[RetryPolicy] = None,
        mode: TrailingStopMode = "REPLACE",
    ) -> None:
        self._place_call = place_call
        self._cancel_call = cancel_call
        self._rule_for = rule_for
        self._retry_policy = retry_policy
        self._mode = mode

    @property
    def mode(self) -> TrailingStopMode:
        return self._mode

    def convert_all(
        self,
        candidates: Sequence[TrailingCandidate],
        *,
        position_mode: PositionMode,
        loop_label: str = "loop",
    ) -> list[TrailingConversionResult]:
        return [
            convert_with_logging(
                candidate,
                rule=self._rule_for(candidate.position.symbol),
                position_mode=position_mode,
                place_call=self._place_call,
                cancel_call=self._cancel_call,
                retry_policy=self._retry_policy,
                mode=self._mode,
                loop_label=loop_label,
            )
            for candidate in candidates
        ]

    def run(
        self,
        positions: Sequence[Position],
        open_orders: Sequence[OpenOrder],
        *,
        position_mode: PositionMode,
        loop_label: str = "loop",
    ) -> list[TrailingConversionResult]:
        return self.convert_all(find_eligible(positions, open_orders), position_mode=position_mode, loop_label=loop_label)
