from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from .exchange_models import AccountSnapshot, OpenOrder, Position

ReconcilePath = Literal["INTELLIGENT", "FULL_REBUILD", "SKIPPED"]


@dataclass(frozen=True)
class ExchangeSnapshot:
    """One fetch of account state. A part left as None failed to load and keeps its previous value."""

    ok: bool
    reason_code: str
    failure_reason: str
    generation: int
    account: Optional[AccountSnapshot] = None
    positions: Optional[Sequence[Position]] = None
    open_orders: Optional[Sequence[OpenOrder]] = None
    fetched_at: float = 0.0

    @property
    def failed_parts(self) -> tuple[str, ...]:
        parts: list[str] = []
        if self.account is None:
            parts.append("account")
        if self.positions is None:
            parts.append("positions")
        if self.open_orders is None:
            parts.append("open_orders")
        return tuple(parts)


@dataclass(frozen=True)
class ReconcileResult:
    ok: bool
    path: ReconcilePath
    reason_code: str
    failure_reason: str
    generation: int
    position_count: int = 0
    order_count: int = 0
    added_positions: Sequence[str] = field(default_factory=tuple)
    removed_positions: Sequence[str] = field(default_factory=tuple)
    added_orders: Sequence[int] = field(default_factory=tuple)
    removed_orders: Sequence[int] = field(default_factory=tuple)
    patched: int = 0
    reselected: int = 0
    used_margin: float = 0.0
    stale_parts: Sequence[str] = field(default_factory=tuple)

    @property
    def membership_changed(self) -> bool:
        return bool(self.added_positions or self.removed_positions or self.added_orders or self.removed_orders)
