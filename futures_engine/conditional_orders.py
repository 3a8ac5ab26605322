from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional, Sequence

from .conditional_order_models import (
    ConditionalCategory,
    ConditionalOrderPlan,
    ConditionalOrderRecord,
    ConditionalStatus,
    ConditionalSyncResult,
    StatusTransitionResult,
)
from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import CONDITIONAL_ORDER_TYPES, OpenOrder, OrderSide, Position
from .order_builder_models import OrderBuildRequest
from .risk_capital import add_position_trigger_price

EXCHANGE_STATUS_MAP: Mapping[str, ConditionalStatus] = {
    "NEW": "PENDING",
    "PARTIALLY_FILLED": "PARTIALLY_FILLED",
    "FILLED": "TRIGGERED",
    "CANCELED": "CANCELLED",
    "CANCELLED": "CANCELLED",
    "REJECTED": "REJECTED",
    "EXPIRED": "EXPIRED",
    "EXPIRED_IN_MATCH": "EXPIRED",
}

ALLOWED_TRANSITIONS: Mapping[ConditionalStatus, tuple[ConditionalStatus, ...]] = {
    "PENDING": ("PARTIALLY_FILLED", "TRIGGERED", "CANCELLED", "REJECTED", "EXPIRED"),
    "PARTIALLY_FILLED": ("TRIGGERED", "CANCELLED", "REJECTED", "EXPIRED"),
    "TRIGGERED": (),
    "CANCELLED": (),
    "REJECTED": (),
    "EXPIRED": (),
}

API_DESCRIPTION_PREFIX = "API conditional order"
_PRICE_MATCH_TOLERANCE = 1e-9


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def classify_order(reduce_only: bool, close_position: bool) -> ConditionalCategory:
    return "CLOSE_POSITION" if (reduce_only or close_position) else "ADD_POSITION"


def classify_open_order(order: OpenOrder) -> ConditionalCategory:
    return classify_order(order.reduce_only, order.close_position)


def map_exchange_status(status: str) -> ConditionalStatus:
    return EXCHANGE_STATUS_MAP.get(str(status or "").strip().upper(), "PENDING")


def transition_status(current: ConditionalStatus, observed: ConditionalStatus) -> StatusTransitionResult:
    if observed == current:
        return StatusTransitionResult(current, current, False, "STATUS_UNCHANGED")
    if observed in ALLOWED_TRANSITIONS.get(current, ()):
        return StatusTransitionResult(current, observed, True, "STATUS_TRANSITIONED")
    return StatusTransitionResult(current, current, False, "STATUS_TRANSITION_REJECTED")


def _trigger_price_for(order: OpenOrder) -> float:
    if order.stop_price > 0:
        return order.stop_price
    if order.activation_price > 0:
        return order.activation_price
    return order.price


def record_from_open_order(
    order: OpenOrder,
    *,
    description: Optional[str] = None,
    created_at: float = 0.0,
) -> ConditionalOrderRecord:
    return ConditionalOrderRecord(
        order_id=order.order_id,
        symbol=_normalize_symbol(order.symbol),
        order_type=order.order_type,
        side=order.side,
        trigger_price=_trigger_price_for(order),
        quantity=order.orig_qty,
        status=map_exchange_status(order.status),
        category=classify_open_order(order),
        description=description or f"{API_DESCRIPTION_PREFIX} - {order.order_type}",
        created_at=created_at,
    )


def _matches_local_record(record: ConditionalOrderRecord, order: OpenOrder) -> bool:
    if record.symbol != _normalize_symbol(order.symbol):
        return False
    if record.side != order.side or record.order_type != order.order_type:
        return False
    if record.category != classify_open_order(order):
        return False
    trigger = _trigger_price_for(order)
    return abs(record.trigger_price - trigger) <= _PRICE_MATCH_TOLERANCE * max(1.0, abs(trigger))


def sync_conditional_records(
    records: Sequence[ConditionalOrderRecord],
    open_orders: Sequence[OpenOrder],
    *,
    now: float = 0.0,
) -> ConditionalSyncResult:
    """Re-derive tracked conditional records from the live open-order set.

    Confirmed records whose order left the open set are dropped; unconfirmed local
    records are kept until a matching live order adopts them.
    """
    live: dict[int, OpenOrder] = {}
    for order in open_orders:
        if order.is_conditional:
            live[order.order_id] = order

    tracked_ids = {record.order_id for record in records if record.order_id > 0}
    claimed: set[int] = set()
    kept: list[ConditionalOrderRecord] = []
    removed: list[int] = []
    adopted: list[int] = []
    status_changed: list[int] = []
    rejected: list[int] = []

    for record in records:
        if record.order_id > 0:
            order = live.get(record.order_id)
            if order is None:
                removed.append(record.order_id)
                continue
            claimed.add(order.order_id)
            transition = transition_status(record.status, map_exchange_status(order.status))
            if transition.reason_code == "STATUS_TRANSITION_REJECTED":
                rejected.append(record.order_id)
            if transition.changed:
                status_changed.append(record.order_id)
            kept.append(
                replace(
                    record,
                    status=transition.current,
                    trigger_price=_trigger_price_for(order),
                    quantity=order.orig_qty,
                    category=classify_open_order(order),
                )
            )
            continue

        match: Optional[OpenOrder] = None
        for order in live.values():
            if order.order_id in tracked_ids or order.order_id in claimed:
                continue
            if _matches_local_record(record, order):
                match = order
                break
        if match is None:
            kept.append(record)
            continue
        claimed.add(match.order_id)
        adopted.append(match.order_id)
        kept.append(
            replace(
                record,
                order_id=match.order_id,
                status=transition_status(record.status, map_exchange_status(match.status)).current,
                quantity=match.orig_qty,
            )
        )

    added: list[int] = []
    for order_id, order in live.items():
        if order_id in claimed:
            continue
        kept.append(record_from_open_order(order, created_at=now))
        added.append(order_id)

    return ConditionalSyncResult(
        records=tuple(kept),
        added=tuple(added),
        removed=tuple(removed),
        adopted=tuple(adopted),
        status_changed=tuple(status_changed),
        rejected_transitions=tuple(rejected),
    )


def breakout_order_type(side: OrderSide, trigger_price: float, latest_price: Optional[float]) -> str:
    """Pick the trigger type the exchange fires in the intended direction.

    A BUY above (or SELL below) the market is a STOP_MARKET; the opposite direction is a
    TAKE_PROFIT_MARKET. Without a market price the take-profit form is used.
    """
    if latest_price is None or latest_price <= 0:
        return "TAKE_PROFIT_MARKET"
    if side == "BUY":
        return "STOP_MARKET" if trigger_price > latest_price else "TAKE_PROFIT_MARKET"
    return "STOP_MARKET" if trigger_price < latest_price else "TAKE_PROFIT_MARKET"


def _plan_failure(reason_code: str, failure_reason: str) -> ConditionalOrderPlan:
    return ConditionalOrderPlan(
        ok=False,
        reason_code=reason_code,
        failure_reason=failure_reason,
        request=None,
        trigger_price=0.0,
        category=None,
        description="-",
    )


def default_breakout_prices(latest_price: float) -> tuple[float, float]:
    """Initial up/down breakout triggers at +/-10% of the latest price."""
    if latest_price <= 0:
        return 0.0, 0.0
    return latest_price * 1.1, latest_price * 0.9


def plan_breakout_order(
    symbol: str,
    *,
    side: OrderSide,
    quantity: float,
    trigger_price: float,
    latest_price: Optional[float] = None,
    working_type: str = "CONTRACT_PRICE",
) -> ConditionalOrderPlan:
    if quantity <= 0:
        return _plan_failure("NON_POSITIVE_QUANTITY", "quantity must be > 0")
    if trigger_price <= 0:
        return _plan_failure("NON_POSITIVE_TRIGGER_PRICE", "trigger price must be > 0")
    direction = "up" if side == "BUY" else "down"
    request = OrderBuildRequest(
        symbol=_normalize_symbol(symbol),
        side=side,
        order_type=breakout_order_type(side, trigger_price, latest_price),
        quantity=quantity,
        stop_price=trigger_price,
        reduce_only=False,
        working_type=working_type,
    )
    return ConditionalOrderPlan(
        ok=True,
        reason_code="BREAKOUT_ORDER_PLANNED",
        failure_reason="-",
        request=request,
        trigger_price=trigger_price,
        category="ADD_POSITION",
        description=f"Breakout {direction} entry @{trigger_price}",
    )


def build_breakout_orders(
    symbol: str,
    *,
    quantity: float,
    up_price: float = 0.0,
    down_price: float = 0.0,
    latest_price: Optional[float] = None,
    working_type: str = "CONTRACT_PRICE",
) -> list[ConditionalOrderPlan]:
    """Plan the up (BUY) and/or down (SELL) breakout entries; a non-positive price skips that leg."""
    plans: list[ConditionalOrderPlan] = []
    if up_price > 0:
        plans.append(
            plan_breakout_order(
                symbol,
                side="BUY",
                quantity=quantity,
                trigger_price=up_price,
                latest_price=latest_price,
                working_type=working_type,
            )
        )
    if down_price > 0:
        plans.append(
            plan_breakout_order(
                symbol,
                side="SELL",
                quantity=quantity,
                trigger_price=down_price,
                latest_price=latest_price,
                working_type=working_type,
            )
        )
    if not plans:
        plans.append(_plan_failure("BREAKOUT_PRICE_REQUIRED", "at least one breakout price must be > 0"))
    return plans


def plan_add_position_order(
    position: Position,
    *,
    quantity: float,
    target_profit: float,
    latest_price: float,
    working_type: str = "CONTRACT_PRICE",
) -> ConditionalOrderPlan:
    trigger = add_position_trigger_price(position, latest_price=latest_price, target_profit=target_profit)
    if not trigger.ok:
        return _plan_failure(trigger.reason_code, trigger.failure_reason)
    if quantity <= 0:
        return _plan_failure("NON_POSITIVE_QUANTITY", "quantity must be > 0")
    side: OrderSide = "BUY" if position.is_long else "SELL"
    request = OrderBuildRequest(
        symbol=position.symbol,
        side=side,
        order_type=breakout_order_type(side, trigger.value, latest_price),
        quantity=quantity,
        stop_price=trigger.value,
        reduce_only=False,
        position_side=position.position_side,
        working_type=working_type,
    )
    return ConditionalOrderPlan(
        ok=True,
        reason_code="ADD_POSITION_ORDER_PLANNED",
        failure_reason="-",
        request=request,
        trigger_price=trigger.value,
        category="ADD_POSITION",
        description=f"Add position at profit {target_profit} @{trigger.value}",
    )


def plan_close_position_order(
    position: Position,
    *,
    target_price: float,
    latest_price: Optional[float] = None,
    working_type: str = "CONTRACT_PRICE",
) -> ConditionalOrderPlan:
    if position.quantity <= 1e-12:
        return _plan_failure("NO_POSITION", "position amount is zero")
    if target_price <= 0:
        return _plan_failure("NON_POSITIVE_TRIGGER_PRICE", "target price must be > 0")
    request = OrderBuildRequest(
        symbol=position.symbol,
        side=position.close_side,
        order_type=breakout_order_type(position.close_side, target_price, latest_price),
        quantity=position.quantity,
        stop_price=target_price,
        reduce_only=True,
        position_side=position.position_side,
        working_type=working_type,
    )
    return ConditionalOrderPlan(
        ok=True,
        reason_code="CLOSE_POSITION_ORDER_PLANNED",
        failure_reason="-",
        request=request,
        trigger_price=target_price,
        category="CLOSE_POSITION",
        description=f"Take profit close @{target_price}",
    )


class ConditionalOrderMonitor:
    """Owner-thread store of conditional order records, re-derived every reconciliation cycle."""

    def __init__(self, *, now: Callable[[], float] = time.time) -> None:
        self._now = now
        self._records: tuple[ConditionalOrderRecord, ...] = ()

    @property
    def records(self) -> tuple[ConditionalOrderRecord, ...]:
        return self._records

    def clear(self) -> None:
        self._records = ()

    def register_local(
        self,
        request: OrderBuildRequest,
        *,
        description: str,
        order_id: int = 0,
        trigger_price: Optional[float] = None,
        quantity: Optional[float] = None,
    ) -> ConditionalOrderRecord:
        record = ConditionalOrderRecord(
            order_id=max(0, int(order_id)),
            symbol=_normalize_symbol(request.symbol),
            order_type=request.order_type,
            side=request.side,
            trigger_price=float(
                trigger_price
                if trigger_price is not None
                else (request.stop_price or request.activation_price or request.price or 0.0)
            ),
            quantity=float(quantity if quantity is not None else (request.quantity or 0.0)),
            status="PENDING",
            category=classify_order(request.reduce_only, request.close_position),
            description=description,
            created_at=float(self._now()),
        )
        if record.order_id > 0:
            self._records = tuple(item for item in self._records if item.order_id != record.order_id)
        self._records = self._records + (record,)
        log_structured_event(
            StructuredLogEvent(
                component="conditional_orders",
                event="register_local",
                input_data=f"symbol={record.symbol} type={record.order_type} side={record.side}",
                decision="track_conditional_order",
                result=record.category.lower(),
                state_before="untracked",
                state_after="confirmed" if record.is_confirmed else "local_pending",
            ),
            order_id=record.order_id,
            trigger_price=record.trigger_price,
            description=record.description,
        )
        return record

    def remove(self, order_id: int) -> bool:
        before = len(self._records)
        self._records = tuple(item for item in self._records if item.order_id != order_id)
        return len(self._records) != before

    def sync(self, open_orders: Sequence[OpenOrder], *, loop_label: str = "loop") -> ConditionalSyncResult:
        before = len(self._records)
        result = sync_conditional_records(self._records, open_orders, now=float(self._now()))
        self._records = tuple(result.records)
        if result.changed or result.rejected_transitions:
            log_structured_event(
                StructuredLogEvent(
                    component="conditional_orders",
                    event="sync_records",
                    input_data=f"open_orders={len(open_orders)} tracked_before={before}",
                    decision="rederive_from_live_orders",
                    result=f"tracked_after={len(self._records)}",
                    state_before="records_stale",
                    state_after="records_synced",
                    failure_reason=(
                        "transition_rejected" if result.rejected_transitions else "-"
                    ),
                    level="WARNING" if result.rejected_transitions else "INFO",
                ),
                loop_label=loop_label,
                added=",".join(str(item) for item in result.added) or "-",
                removed=",".join(str(item) for item in result.removed) or "-",
                adopted=",".join(str(item) for item in result.adopted) or "-",
                status_changed=",".join(str(item) for item in result.status_changed) or "-",
            )
        return result

    def monitor_view(self, symbol: Optional[str] = None) -> list[ConditionalOrderRecord]:
        target = _normalize_symbol(symbol) if symbol else ""
        return [
            record
            for record in self._records
            if record.category == "ADD_POSITION" and (not target or record.symbol == target)
        ]

    def close_position_records(self) -> list[ConditionalOrderRecord]:
        return [record for record in self._records if record.category == "CLOSE_POSITION"]


def reduce_only_view(open_orders: Sequence[OpenOrder], symbol: Optional[str] = None) -> list[OpenOrder]:
    target = _normalize_symbol(symbol) if symbol else ""
    return [
        order
        for order in open_orders
        if classify_open_order(order) == "CLOSE_POSITION" and (not target or order.symbol == target)
    ]
