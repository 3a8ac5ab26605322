from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Optional

from .exchange_models import SymbolRule

# (symbol prefix, price decimals, quantity decimals); first match wins.
FALLBACK_PRECISION_BY_PREFIX: tuple[tuple[str, int, int], ...] = (
    ("BTC", 1, 3),
    ("ETH", 2, 3),
    ("ADA", 4, 0),
    ("DOGE", 5, 0),
    ("1000", 6, 0),
)
FALLBACK_PRECISION_DEFAULT: tuple[int, int] = (4, 3)


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


def price_decimals(tick_size: float) -> int:
    tick = _to_decimal(tick_size)
    if tick is None or tick <= 0:
        return 0
    exponent = tick.normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


def _floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).quantize(Decimal("1"), rounding=ROUND_FLOOR) * step


def _ceil_to_step(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).quantize(Decimal("1"), rounding=ROUND_CEILING) * step


def adjust_quantity(value: float, rule: SymbolRule) -> float:
    """Snap a quantity down to the step grid and clamp it into [min_qty, max_qty].

    The bounds are first moved onto the grid (min_qty up, max_qty down) so the result is
    always a step multiple and adjusting it again changes nothing. Non-positive step sizes
    and unparsable inputs return ``value`` as is.
    """
    step = _to_decimal(rule.step_size)
    raw = _to_decimal(value)
    if step is None or step <= 0 or raw is None:
        return value
    min_qty = _to_decimal(rule.min_qty) or Decimal("0")
    max_qty = _to_decimal(rule.max_qty)
    try:
        qty = _floor_to_step(raw, step)
        min_qty = _ceil_to_step(min_qty, step)
        if max_qty is not None:
            max_qty = max(_floor_to_step(max_qty, step), min_qty)
    except InvalidOperation:
        return value
    if max_qty is None:
        return float(max(qty, min_qty))
    qty = max(min_qty, min(qty, max_qty))
    return float(qty)


def adjust_price(value: float, rule: SymbolRule) -> float:
    tick = _to_decimal(rule.tick_size)
    raw = _to_decimal(value)
    if tick is None or tick <= 0 or raw is None:
        return value
    decimals = price_decimals(rule.tick_size)
    try:
        floored = _floor_to_step(raw, tick)
        rounded = floored.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return value
    return float(rounded)


def fallback_precision(symbol: str) -> tuple[int, int]:
    normalized = _normalize_symbol(symbol)
    for prefix, price_places, quantity_places in FALLBACK_PRECISION_BY_PREFIX:
        if normalized.startswith(prefix):
            return price_places, quantity_places
    return FALLBACK_PRECISION_DEFAULT


def _round_places(value: float, places: int, rounding: str) -> float:
    raw = _to_decimal(value)
    if raw is None:
        return value
    try:
        return float(raw.quantize(Decimal(1).scaleb(-places), rounding=rounding))
    except InvalidOperation:
        return value


def adjust_price_for_symbol(value: float, symbol: str, rule: Optional[SymbolRule]) -> float:
    if rule is not None:
        return adjust_price(value, rule)
    price_places, _ = fallback_precision(symbol)
    return _round_places(value, price_places, ROUND_HALF_UP)


def adjust_quantity_for_symbol(value: float, symbol: str, rule: Optional[SymbolRule]) -> float:
    if rule is not None:
        return adjust_quantity(value, rule)
    _, quantity_places = fallback_precision(symbol)
    return _round_places(value, quantity_places, ROUND_DOWN)


def is_on_step(value: float, step_size: float) -> bool:
    raw = _to_decimal(value)
    step = _to_decimal(step_size)
    if raw is None or step is None or step <= 0:
        return False
    return raw % step == 0
