from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from .exchange_models import OpenOrder, Position

TrailingStopMode = Literal["REPLACE", "COEXIST", "SMART_LAYERING"]
TRAILING_STOP_MODES: tuple[TrailingStopMode, ...] = ("REPLACE", "COEXIST", "SMART_LAYERING")

CALLBACK_RATE_FLOOR = 0.1
CALLBACK_RATE_CEILING = 5.0

# COEXIST sizes the trailing order from the quantity the static stops leave uncovered,
# kept within this share of the position.
COEXIST_MIN_SHARE = 0.2
COEXIST_MAX_SHARE = 0.5

LAYERING_FIXED_SHARE = 0.7
LAYERING_TRAILING_SHARE = 0.3
LAYERING_FIXED_STOP_PERCENT = 5.0


@dataclass(frozen=True)
class TrailingCandidate:
    position: Position
    stop_order: OpenOrder
    callback_rate: float
    activation_price: float
    quantity: float
    protective_stops: Sequence[OpenOrder] = field(default_factory=tuple)
    covered_quantity: float = 0.0


@dataclass(frozen=True)
class TrailingConversionResult:
    ok: bool
    reason_code: str
    failure_reason: str
    symbol: str
    old_order_id: int
    new_order_id: Optional[int] = None
    callback_rate: Optional[float] = None
    activation_price: Optional[float] = None
    cancel_ok: bool = False
    mode: TrailingStopMode = "REPLACE"
    fixed_order_id: Optional[int] = None
    cancelled_order_ids: Sequence[int] = field(default_factory=tuple)
