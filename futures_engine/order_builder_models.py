from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .exchange_models import OrderSide, OrderType, PositionSide

TIME_IN_FORCE_DEFAULT = "GTC"
WORKING_TYPE_DEFAULT = "CONTRACT_PRICE"


@dataclass(frozen=True)
class OrderBuildRequest:
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Optional[float] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    callback_rate: Optional[float] = None
    activation_price: Optional[float] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: PositionSide = "BOTH"
    working_type: str = WORKING_TYPE_DEFAULT
    time_in_force: Optional[str] = None
    reference_price: Optional[float] = None
    new_client_order_id: Optional[str] = None


@dataclass(frozen=True)
class ValidationError:
    reason_code: str
    message: str


@dataclass(frozen=True)
class OrderBuildResult:
    ok: bool
    reason_code: str
    failure_reason: str
    params: Mapping[str, Any]
    adjusted_quantity: Optional[float] = None
    adjusted_price: Optional[float] = None
    adjusted_stop_price: Optional[float] = None
    adjusted_activation_price: Optional[float] = None
    callback_rate: Optional[float] = None
    notional: Optional[float] = None

    @property
    def error(self) -> Optional[ValidationError]:
        if self.ok:
            return None
        return ValidationError(reason_code=self.reason_code, message=self.failure_reason)

    def as_pair(self) -> tuple[Optional[Mapping[str, Any]], Optional[ValidationError]]:
        if self.ok:
            return self.params, None
        return None, self.error


@dataclass(frozen=True)
class OrderCancelRequest:
    symbol: str
    order_id: Optional[int] = None
    orig_client_order_id: Optional[str] = None


@dataclass(frozen=True)
class OrderRefPreparationResult:
    ok: bool
    reason_code: str
    failure_reason: str
    params: Mapping[str, Any]


@dataclass(frozen=True)
class LeverageCheckResult:
    ok: bool
    reason_code: str
    failure_reason: str
    leverage: int
