from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Sequence

from .exchange_models import OrderSide

ExposureSource = Literal["POSITION", "ORDER"]


@dataclass(frozen=True)
class RiskValueResult:
    ok: bool
    value: float
    reason_code: str
    failure_reason: str


@dataclass(frozen=True)
class EntryExposure:
    source: ExposureSource
    reference: str
    side: OrderSide
    quantity: float
    price: float


@dataclass(frozen=True)
class StopSegment:
    order_id: int
    stop_side: OrderSide
    stop_price: float
    covered_quantity: float
    average_entry_price: float
    pnl: float


@dataclass(frozen=True)
class PnlRiskResult:
    pnl_risk_capital: float
    segments: Sequence[StopSegment] = field(default_factory=tuple)
    entry_count: int = 0
    stop_count: int = 0
    unmatched_quantity: float = 0.0


@dataclass(frozen=True)
class RiskSnapshot:
    ok: bool
    reason_code: str
    failure_reason: str
    symbol: str
    standard_risk_capital: float
    pnl_risk_capital: float
    total_risk_capital: float
    computed_at: float
    segments: Sequence[StopSegment] = field(default_factory=tuple)
    unmatched_quantity: float = 0.0


@dataclass(frozen=True)
class QuantityFromLossResult:
    ok: bool
    reason_code: str
    failure_reason: str
    quantity: float
    raw_quantity: float
