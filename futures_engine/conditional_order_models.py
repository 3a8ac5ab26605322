from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from .exchange_models import OrderSide
from .order_builder_models import OrderBuildRequest

ConditionalStatus = Literal[
    "PENDING",
    "PARTIALLY_FILLED",
    "TRIGGERED",
    "CANCELLED",
    "REJECTED",
    "EXPIRED",
]
ConditionalCategory = Literal["ADD_POSITION", "CLOSE_POSITION"]

TERMINAL_STATUSES: tuple[str, ...] = ("TRIGGERED", "CANCELLED", "REJECTED", "EXPIRED")


@dataclass(frozen=True)
class ConditionalOrderRecord:
    order_id: int
    symbol: str
    order_type: str
    side: OrderSide
    trigger_price: float
    quantity: float
    status: ConditionalStatus
    category: ConditionalCategory
    description: str
    created_at: float = 0.0

    @property
    def is_confirmed(self) -> bool:
        return self.order_id > 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class StatusTransitionResult:
    previous: ConditionalStatus
    current: ConditionalStatus
    changed: bool
    reason_code: str


@dataclass(frozen=True)
class ConditionalSyncResult:
    records: Sequence[ConditionalOrderRecord]
    added: Sequence[int] = field(default_factory=tuple)
    removed: Sequence[int] = field(default_factory=tuple)
    adopted: Sequence[int] = field(default_factory=tuple)
    status_changed: Sequence[int] = field(default_factory=tuple)
    rejected_transitions: Sequence[int] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.adopted or self.status_changed)


@dataclass(frozen=True)
class ConditionalOrderPlan:
    ok: bool
    reason_code: str
    failure_reason: str
    request: Optional[OrderBuildRequest]
    trigger_price: float
    category: Optional[ConditionalCategory]
    description: str
