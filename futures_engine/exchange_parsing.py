from __future__ import annotations

import math
from typing import Any, Mapping, Optional, Sequence

from .exchange_models import AccountSnapshot, OpenOrder, Position, SymbolRule


def _normalize_symbol(value: Any) -> str:
    return str(value or "").strip().upper()


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(converted):
        return default
    return converted


def _safe_optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return None
    return converted if math.isfinite(converted) else None


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def _safe_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _margin_type(value: Any) -> str:
    lowered = str(value or "").strip().lower()
    if lowered in ("isolated",):
        return "ISOLATED"
    return "CROSSED"


def _position_side(value: Any) -> str:
    candidate = str(value or "").strip().upper()
    return candidate if candidate in ("LONG", "SHORT") else "BOTH"


def parse_account(payload: Any) -> Optional[AccountSnapshot]:
    if not isinstance(payload, Mapping):
        return None
    if "totalMarginBalance" not in payload and "totalWalletBalance" not in payload:
        return None
    return AccountSnapshot(
        wallet_balance=_safe_float(payload.get("totalWalletBalance")),
        margin_balance=_safe_float(payload.get("totalMarginBalance")),
        unrealized_profit=_safe_float(payload.get("totalUnrealizedProfit")),
        available_balance=_safe_float(payload.get("availableBalance")),
    )


def parse_position(payload: Any) -> Optional[Position]:
    if not isinstance(payload, Mapping):
        return None
    symbol = _normalize_symbol(payload.get("symbol"))
    if not symbol:
        return None
    return Position(
        symbol=symbol,
        signed_amount=_safe_float(payload.get("positionAmt")),
        entry_price=_safe_float(payload.get("entryPrice")),
        mark_price=_safe_float(payload.get("markPrice")),
        unrealized_profit=_safe_float(payload.get("unRealizedProfit", payload.get("unrealizedProfit"))),
        position_side=_position_side(payload.get("positionSide")),
        leverage=max(1, _safe_int(payload.get("leverage"), 1)),
        margin_type=_margin_type(payload.get("marginType")),
        isolated_margin=_safe_float(payload.get("isolatedMargin")),
    )


def parse_positions(payload: Any, *, nonzero_only: bool = True) -> list[Position]:
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        return []
    positions: list[Position] = []
    for item in payload:
        position = parse_position(item)
        if position is None:
            continue
        if nonzero_only and abs(position.signed_amount) <= 1e-12:
            continue
        positions.append(position)
    return positions


def parse_open_order(payload: Any) -> Optional[OpenOrder]:
    if not isinstance(payload, Mapping):
        return None
    symbol = _normalize_symbol(payload.get("symbol"))
    order_id = _safe_int(payload.get("orderId"))
    if not symbol or order_id <= 0:
        return None
    side = str(payload.get("side") or "").strip().upper()
    if side not in ("BUY", "SELL"):
        return None
    return OpenOrder(
        order_id=order_id,
        symbol=symbol,
        side=side,
        order_type=str(payload.get("type") or payload.get("origType") or "").strip().upper(),
        orig_qty=_safe_float(payload.get("origQty")),
        price=_safe_float(payload.get("price")),
        stop_price=_safe_float(payload.get("stopPrice")),
        status=str(payload.get("status") or "NEW").strip().upper(),
        reduce_only=_safe_bool(payload.get("reduceOnly", False)),
        close_position=_safe_bool(payload.get("closePosition", False)),
        position_side=_position_side(payload.get("positionSide")),
        working_type=str(payload.get("workingType") or "CONTRACT_PRICE").strip().upper(),
        time_in_force=str(payload.get("timeInForce") or "").strip().upper(),
        activation_price=_safe_float(payload.get("activatePrice")),
        callback_rate=_safe_float(payload.get("priceRate")),
        executed_qty=_safe_float(payload.get("executedQty")),
        update_time=_safe_int(payload.get("updateTime")),
    )


def parse_open_orders(payload: Any) -> list[OpenOrder]:
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        return []
    orders: list[OpenOrder] = []
    for item in payload:
        order = parse_open_order(item)
        if order is not None:
            orders.append(order)
    return orders


def parse_ticker_price(payload: Any) -> Optional[float]:
    if not isinstance(payload, Mapping):
        return None
    price = _safe_float(payload.get("price"))
    return price if price > 0 else None


def find_symbol_entry(exchange_info: Any, symbol: str) -> Optional[Mapping[str, Any]]:
    if not isinstance(exchange_info, Mapping):
        return None
    symbols = exchange_info.get("symbols")
    if not isinstance(symbols, Sequence):
        return None
    target = _normalize_symbol(symbol)
    for item in symbols:
        if isinstance(item, Mapping) and _normalize_symbol(item.get("symbol")) == target:
            return item
    return None


def parse_symbol_rules(
    exchange_info: Any,
    symbol: str,
    *,
    max_leverage: int,
    fetched_at: float,
) -> Optional[SymbolRule]:
    entry = find_symbol_entry(exchange_info, symbol)
    if entry is None:
        return None
    filters = entry.get("filters")
    if not isinstance(filters, Sequence):
        return None

    tick_size: Optional[float] = None
    step_size: Optional[float] = None
    min_qty: Optional[float] = None
    max_qty: Optional[float] = None
    min_notional: Optional[float] = None
    for item in filters:
        if not isinstance(item, Mapping):
            continue
        filter_type = str(item.get("filterType") or "").upper()
        if filter_type == "PRICE_FILTER":
            tick_size = _safe_optional_float(item.get("tickSize"))
        elif filter_type == "LOT_SIZE":
            step_size = _safe_optional_float(item.get("stepSize"))
            min_qty = _safe_optional_float(item.get("minQty"))
            max_qty = _safe_optional_float(item.get("maxQty"))
        elif filter_type == "MIN_NOTIONAL":
            min_notional = _safe_optional_float(item.get("notional", item.get("minNotional")))

    if tick_size is None or step_size is None or min_qty is None or max_qty is None:
        return None
    if tick_size <= 0 or step_size <= 0 or min_qty > max_qty:
        return None
    return SymbolRule(
        symbol=_normalize_symbol(symbol),
        min_qty=min_qty,
        max_qty=max_qty,
        step_size=step_size,
        tick_size=tick_size,
        max_leverage=max_leverage,
        fetched_at=fetched_at,
        min_notional=min_notional,
        source="EXCHANGE",
    )
