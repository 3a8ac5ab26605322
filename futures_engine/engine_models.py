from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from .conditional_order_models import ConditionalSyncResult
from .exchange_models import GatewayRetryResult, PositionMode
from .order_builder_models import OrderBuildResult
from .reconciliation_models import ReconcileResult
from .risk_capital_models import RiskSnapshot
from .trailing_stop_models import TrailingCandidate, TrailingConversionResult, TrailingStopMode

PriceSource = Literal["EXCHANGE", "LAST_KNOWN", "SYNTHETIC"]


@dataclass(frozen=True)
class TrailingPlan:
    """Candidates claimed on the owner thread, converted later on a worker."""

    generation: int
    mode: TrailingStopMode
    candidates: Sequence[TrailingCandidate]
    position_mode: Optional[PositionMode] = None


@dataclass(frozen=True)
class TrailingExecution:
    generation: int
    results: Sequence[TrailingConversionResult] = field(default_factory=tuple)
    position_mode: Optional[PositionMode] = None


@dataclass(frozen=True)
class PriceFetch:
    generation: int
    symbol: str
    price: float
    source: PriceSource
    reason_code: str


@dataclass(frozen=True)
class EngineCycleResult:
    reconcile: ReconcileResult
    conditional_sync: Optional[ConditionalSyncResult] = None
    risk: Optional[RiskSnapshot] = None
    trailing: Sequence[TrailingConversionResult] = field(default_factory=tuple)
    trailing_plan: Optional[TrailingPlan] = None


@dataclass(frozen=True)
class EngineOrderResult:
    ok: bool
    reason_code: str
    failure_reason: str
    order_id: Optional[int] = None
    build: Optional[OrderBuildResult] = None
    submit: Optional[GatewayRetryResult] = None


@dataclass(frozen=True)
class SymbolConfigResult:
    ok: bool
    reason_code: str
    failure_reason: str
    leverage: int = 0
    margin_type: str = "-"
