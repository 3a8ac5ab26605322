from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

BatchOperation = Literal[
    "CANCEL_ORDERS",
    "CANCEL_ALL_FOR_SYMBOLS",
    "CLOSE_POSITIONS",
    "PLACE_STOP_LOSSES",
    "PLACE_BREAK_EVEN_STOPS",
    "PLACE_PROFIT_PROTECTION_STOP",
]


@dataclass(frozen=True)
class BatchItemResult:
    key: str
    success: bool
    reason_code: str
    failure_reason: str = "-"
    order_id: Optional[int] = None


@dataclass(frozen=True)
class BatchResult:
    operation: BatchOperation
    total: int
    succeeded: int
    failed: int
    items: Sequence[BatchItemResult] = field(default_factory=tuple)

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0
