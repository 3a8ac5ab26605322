from __future__ import annotations

import time
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from typing import Any, Callable, Optional, Sequence

from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import OpenOrder, OrderSide, Position, SymbolRule
from .precision import adjust_price, adjust_quantity
from .risk_capital_models import (
    EntryExposure,
    PnlRiskResult,
    QuantityFromLossResult,
    RiskSnapshot,
    RiskValueResult,
    StopSegment,
)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_QTY_EPSILON = Decimal("1e-12")


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        converted = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not converted.is_finite():
        return None
    return converted


def _ceil(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_CEILING)


def standard_risk_capital(equity: float, risk_division_factor: int) -> RiskValueResult:
    factor = _to_decimal(risk_division_factor)
    if factor is None or factor <= 0:
        return RiskValueResult(False, 0.0, "INVALID_RISK_DIVISION_FACTOR", "risk_division_factor must be > 0")
    equity_decimal = _to_decimal(equity)
    if equity_decimal is None or equity_decimal <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_EQUITY", "account equity must be > 0")
    return RiskValueResult(True, float(_ceil(equity_decimal / factor)), "STANDARD_RISK_CAPITAL_READY", "-")


def _entry_price_for_order(order: OpenOrder, latest_price: Optional[float]) -> float:
    if order.price > 0:
        return order.price
    if order.stop_price > 0:
        return order.stop_price
    if latest_price is not None and latest_price > 0:
        return latest_price
    return 0.0


def collect_entry_exposures(
    symbol: str,
    positions: Sequence[Position],
    open_orders: Sequence[OpenOrder],
    *,
    latest_price: Optional[float] = None,
) -> list[EntryExposure]:
    target = _normalize_symbol(symbol)
    entries: list[EntryExposure] = []
    for position in positions:
        if _normalize_symbol(position.symbol) != target or position.quantity <= 1e-12:
            continue
        if position.entry_price <= 0:
            continue
        entries.append(
            EntryExposure(
                source="POSITION",
                reference=position.key,
                side="BUY" if position.is_long else "SELL",
                quantity=position.quantity,
                price=position.entry_price,
            )
        )
    for order in open_orders:
        if _normalize_symbol(order.symbol) != target or order.is_close_type:
            continue
        remaining = order.orig_qty - order.executed_qty
        price = _entry_price_for_order(order, latest_price)
        if remaining <= 1e-12 or price <= 0:
            continue
        entries.append(
            EntryExposure(
                source="ORDER",
                reference=str(order.order_id),
                side=order.side,
                quantity=remaining,
                price=price,
            )
        )
    return entries


def collect_protective_stops(symbol: str, open_orders: Sequence[OpenOrder]) -> list[OpenOrder]:
    target = _normalize_symbol(symbol)
    stops = [
        order
        for order in open_orders
        if _normalize_symbol(order.symbol) == target
        and order.order_type == "STOP_MARKET"
        and order.is_close_type
        and order.stop_price > 0
    ]
    # Long protection (SELL) triggers from the highest stop down; short protection from the lowest up.
    stops.sort(key=lambda order: -order.stop_price if order.side == "SELL" else order.stop_price)
    return stops


def pnl_risk_capital(
    symbol: str,
    positions: Sequence[Position],
    open_orders: Sequence[OpenOrder],
    *,
    latest_price: Optional[float] = None,
) -> PnlRiskResult:
    """Projected P&L if every protective stop fires, matched FIFO against entry exposure.

    SELL stops consume long (BUY) exposure and BUY stops consume short (SELL) exposure.
    Exposure that no stop covers contributes nothing.
    """
    entries = collect_entry_exposures(symbol, positions, open_orders, latest_price=latest_price)
    stops = collect_protective_stops(symbol, open_orders)
    remaining = [_to_decimal(entry.quantity) or _ZERO for entry in entries]

    total = _ZERO
    segments: list[StopSegment] = []
    for stop in stops:
        exposure_side: OrderSide = "BUY" if stop.side == "SELL" else "SELL"
        if stop.orig_qty > 0 and not stop.close_position:
            wanted = _to_decimal(stop.orig_qty) or _ZERO
        else:
            wanted = sum(
                (remaining[index] for index, entry in enumerate(entries) if entry.side == exposure_side),
                _ZERO,
            )
        covered = _ZERO
        cost = _ZERO
        for index, entry in enumerate(entries):
            if wanted - covered <= _QTY_EPSILON:
                break
            if entry.side != exposure_side or remaining[index] <= _QTY_EPSILON:
                continue
            take = min(remaining[index], wanted - covered)
            remaining[index] -= take
            covered += take
            cost += take * (_to_decimal(entry.price) or _ZERO)
        if covered <= _QTY_EPSILON:
            continue
        average = cost / covered
        stop_price = _to_decimal(stop.stop_price) or _ZERO
        if stop.side == "SELL":
            segment_pnl = (stop_price - average) * covered
        else:
            segment_pnl = (average - stop_price) * covered
        total += segment_pnl
        segments.append(
            StopSegment(
                order_id=stop.order_id,
                stop_side=stop.side,
                stop_price=stop.stop_price,
                covered_quantity=float(covered),
                average_entry_price=float(average),
                pnl=float(segment_pnl),
            )
        )

    unmatched = sum(remaining, _ZERO)
    return PnlRiskResult(
        pnl_risk_capital=float(total),
        segments=tuple(segments),
        entry_count=len(entries),
        stop_count=len(stops),
        unmatched_quantity=float(unmatched),
    )


def total_risk_capital(standard: float, pnl: float) -> float:
    standard_decimal = _to_decimal(standard) or _ZERO
    pnl_decimal = _to_decimal(pnl) or _ZERO
    return float(_ceil(standard_decimal + pnl_decimal))


def compute_risk_snapshot(
    symbol: str,
    *,
    equity: float,
    risk_division_factor: int,
    positions: Sequence[Position],
    open_orders: Sequence[OpenOrder],
    latest_price: Optional[float] = None,
    now: Callable[[], float] = time.time,
) -> RiskSnapshot:
    normalized = _normalize_symbol(symbol)
    computed_at = float(now())
    standard = standard_risk_capital(equity, risk_division_factor)
    if not standard.ok:
        return RiskSnapshot(
            ok=False,
            reason_code=standard.reason_code,
            failure_reason=standard.failure_reason,
            symbol=normalized,
            standard_risk_capital=0.0,
            pnl_risk_capital=0.0,
            total_risk_capital=0.0,
            computed_at=computed_at,
        )
    pnl = pnl_risk_capital(normalized, positions, open_orders, latest_price=latest_price)
    return RiskSnapshot(
        ok=True,
        reason_code="RISK_SNAPSHOT_READY",
        failure_reason="-",
        symbol=normalized,
        standard_risk_capital=standard.value,
        pnl_risk_capital=pnl.pnl_risk_capital,
        total_risk_capital=total_risk_capital(standard.value, pnl.pnl_risk_capital),
        computed_at=computed_at,
        segments=pnl.segments,
        unmatched_quantity=pnl.unmatched_quantity,
    )


def quantity_from_loss(
    loss_amount: float,
    price: float,
    stop_loss_ratio_percent: float,
    rule: SymbolRule,
) -> QuantityFromLossResult:
    loss = _to_decimal(loss_amount)
    price_decimal = _to_decimal(price)
    ratio = _to_decimal(stop_loss_ratio_percent)
    if loss is None or loss <= 0:
        return QuantityFromLossResult(False, "NON_POSITIVE_LOSS_AMOUNT", "stop loss amount must be > 0", 0.0, 0.0)
    if price_decimal is None or price_decimal <= 0:
        return QuantityFromLossResult(False, "NON_POSITIVE_PRICE", "price must be > 0", 0.0, 0.0)
    if ratio is None or ratio <= 0:
        return QuantityFromLossResult(False, "NON_POSITIVE_STOP_LOSS_RATIO", "stop loss ratio must be > 0", 0.0, 0.0)
    raw = loss / (price_decimal * ratio / _HUNDRED)
    quantity = adjust_quantity(float(raw), rule)
    return QuantityFromLossResult(True, "QUANTITY_READY", "-", quantity, float(raw))


def stop_loss_price(
    price: float,
    stop_loss_ratio_percent: float,
    side: OrderSide,
    rule: Optional[SymbolRule] = None,
) -> RiskValueResult:
    price_decimal = _to_decimal(price)
    ratio = _to_decimal(stop_loss_ratio_percent)
    if price_decimal is None or price_decimal <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_PRICE", "price must be > 0")
    if ratio is None or ratio <= 0 or ratio >= _HUNDRED:
        return RiskValueResult(False, 0.0, "INVALID_STOP_LOSS_RATIO", "stop loss ratio must be in (0, 100)")
    if side == "BUY":
        raw = price_decimal * (1 - ratio / _HUNDRED)
    else:
        raw = price_decimal * (1 + ratio / _HUNDRED)
    value = adjust_price(float(raw), rule) if rule is not None else float(raw)
    return RiskValueResult(True, value, "STOP_LOSS_PRICE_READY", "-")


def stop_loss_amount_from_ratio(available_risk_capital: float, ratio_percent: float) -> RiskValueResult:
    capital = _to_decimal(available_risk_capital)
    ratio = _to_decimal(ratio_percent)
    if capital is None or capital <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_RISK_CAPITAL", "available risk capital must be > 0")
    if ratio is None or ratio <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_RATIO", "ratio must be > 0")
    return RiskValueResult(True, float(_ceil(capital * ratio / _HUNDRED)), "STOP_LOSS_AMOUNT_READY", "-")


def expected_loss(latest_price: float, stop_price: float, quantity: float) -> float:
    if latest_price <= 0 or stop_price <= 0 or quantity <= 0:
        return 0.0
    return abs(latest_price - stop_price) * quantity


def profit_trigger_price(position: Position, target_profit: float) -> RiskValueResult:
    """Price at which the position's profit versus entry reaches ``target_profit``."""
    if position.quantity <= 1e-12:
        return RiskValueResult(False, 0.0, "NO_POSITION", "position amount is zero")
    if target_profit <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_TARGET_PROFIT", "target profit must be > 0")
    offset = target_profit / position.quantity
    price = position.entry_price + offset if position.is_long else position.entry_price - offset
    if price <= 0:
        return RiskValueResult(False, 0.0, "TRIGGER_PRICE_NON_POSITIVE", "derived trigger price is not positive")
    return RiskValueResult(True, price, "TRIGGER_PRICE_READY", "-")


def add_position_trigger_price(
    position: Position,
    *,
    latest_price: float,
    target_profit: float,
) -> RiskValueResult:
    """Breakout trigger: move from the latest price until unrealized profit reaches the target."""
    if position.quantity <= 1e-12:
        return RiskValueResult(False, 0.0, "NO_POSITION", "position amount is zero")
    if latest_price <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_PRICE", "latest price must be > 0")
    remaining_profit = target_profit - position.unrealized_profit
    if remaining_profit <= 0:
        return RiskValueResult(False, 0.0, "TARGET_ALREADY_REACHED", "unrealized profit already exceeds target")
    offset = remaining_profit / position.quantity
    price = latest_price + offset if position.is_long else latest_price - offset
    if price <= 0:
        return RiskValueResult(False, 0.0, "TRIGGER_PRICE_NON_POSITIVE", "derived trigger price is not positive")
    return RiskValueResult(True, price, "TRIGGER_PRICE_READY", "-")


def profit_protection_stop_price(position: Position, amount: float, rule: SymbolRule) -> RiskValueResult:
    """Stop price that still locks in ``amount`` of profit if it fires.

    The tick-adjusted stop must sit strictly between the entry and mark prices.
    """
    if position.quantity <= 1e-12:
        return RiskValueResult(False, 0.0, "NO_POSITION", "position amount is zero")
    if position.unrealized_profit <= 0:
        return RiskValueResult(False, 0.0, "POSITION_NOT_IN_PROFIT", "unrealized profit must be > 0")
    protected = _to_decimal(amount)
    if protected is None or protected <= 0:
        return RiskValueResult(False, 0.0, "NON_POSITIVE_PROTECTION_AMOUNT", "protection amount must be > 0")
    entry = Decimal(str(position.entry_price))
    offset = protected / Decimal(str(position.quantity))
    raw = entry + offset if position.is_long else entry - offset
    if raw <= 0:
        return RiskValueResult(False, 0.0, "STOP_PRICE_NON_POSITIVE", "derived stop price is not positive")
    price = adjust_price(float(raw), rule)
    if position.is_long:
        between = position.entry_price < price < position.mark_price
    else:
        between = position.mark_price < price < position.entry_price
    if not between:
        return RiskValueResult(
            False,
            price,
            "STOP_NOT_BETWEEN_ENTRY_AND_MARK",
            f"stop={price} must lie between entry={position.entry_price} and mark={position.mark_price}",
        )
    return RiskValueResult(True, price, "PROFIT_PROTECTION_PRICE_READY", "-")


def margin_used(positions: Sequence[Position]) -> float:
    total = 0.0
    for position in positions:
        if position.quantity <= 1e-12:
            continue
        if position.isolated_margin > 0:
            total += position.isolated_margin
            continue
        mark = position.mark_price if position.mark_price > 0 else position.entry_price
        total += position.quantity * mark / max(1, position.leverage)
    return total


def compute_risk_snapshot_with_logging(
    symbol: str,
    *,
    equity: float,
    risk_division_factor: int,
    positions: Sequence[Position],
    open_orders: Sequence[OpenOrder],
    latest_price: Optional[float] = None,
    now: Callable[[], float] = time.time,
    loop_label: str = "loop",
) -> RiskSnapshot:
    snapshot = compute_risk_snapshot(
        symbol,
        equity=equity,
        risk_division_factor=risk_division_factor,
        positions=positions,
        open_orders=open_orders,
        latest_price=latest_price,
        now=now,
    )
    log_structured_event(
        StructuredLogEvent(
            component="risk_capital",
            event="compute_risk_snapshot",
            input_data=(
                f"symbol={_normalize(symbol)} equity={equity} risk_division_factor={risk_division_factor} "
                f"positions={len(positions)} open_orders={len(open_orders)}"
            ),
            decision="match_stops_against_entry_exposure",
            result="computed" if snapshot.ok else "rejected",
            state_before="risk_stale",
            state_after="risk_fresh" if snapshot.ok else "risk_invalid",
            failure_reason=snapshot.failure_reason,
            level="INFO" if snapshot.ok else "WARNING",
        ),
        loop_label=loop_label,
        reason_code=snapshot.reason_code,
        standard=snapshot.standard_risk_capital,
        pnl=snapshot.pnl_risk_capital,
        total=snapshot.total_risk_capital,
        segments=len(snapshot.segments),
        unmatched_quantity=snapshot.unmatched_quantity,
    )
    return snapshot


def quantity_from_loss_with_logging(
    loss_amount: float,
    price: float,
    stop_loss_ratio_percent: float,
    rule: SymbolRule,
    *,
    loop_label: str = "loop",
) -> QuantityFromLossResult:
    result = quantity_from_loss(loss_amount, price, stop_loss_ratio_percent, rule)
    log_structured_event(
        StructuredLogEvent(
            component="risk_capital",
            event="quantity_from_loss",
            input_data=(
                f"symbol={_normalize(rule.symbol)} loss_amount={loss_amount} price={price} "
                f"stop_loss_ratio={stop_loss_ratio_percent}"
            ),
            decision="divide_loss_by_stop_distance",
            result=f"quantity={result.quantity}" if result.ok else "rejected",
            failure_reason=result.failure_reason,
            level="INFO" if result.ok else "WARNING",
        ),
        loop_label=loop_label,
        reason_code=result.reason_code,
        raw_quantity=result.raw_quantity,
        step_size=rule.step_size,
    )
    return result
