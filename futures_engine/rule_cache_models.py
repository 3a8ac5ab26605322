from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from .exchange_models import SymbolRule

RuleLookupSource = Literal["CACHE", "EXCHANGE", "FALLBACK"]


@dataclass(frozen=True)
class FallbackLimits:
    min_qty: float
    max_qty: float
    tick_size: float
    step_size: float
    max_leverage: int
    max_notional: float


@dataclass(frozen=True)
class RuleLookupResult:
    rule: SymbolRule
    source: RuleLookupSource
    reason_code: str
    failure_reason: str
    reference_price: Optional[float] = None

    @property
    def is_fallback(self) -> bool:
        return self.source == "FALLBACK"
