from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional, Sequence

PositionMode = Literal["ONE_WAY", "HEDGE"]
OrderSide = Literal["BUY", "SELL"]
PositionSide = Literal["BOTH", "LONG", "SHORT"]
OrderType = Literal[
    "MARKET",
    "LIMIT",
    "STOP",
    "TAKE_PROFIT",
    "STOP_MARKET",
    "TAKE_PROFIT_MARKET",
    "TRAILING_STOP_MARKET",
]
OrderOperation = Literal["CREATE", "CANCEL", "QUERY"]
RuleSource = Literal["EXCHANGE", "FALLBACK"]

CONDITIONAL_ORDER_TYPES: tuple[str, ...] = (
    "STOP",
    "STOP_MARKET",
    "TAKE_PROFIT",
    "TAKE_PROFIT_MARKET",
    "TRAILING_STOP_MARKET",
)

DEFAULT_RETRYABLE_REASON_CODES: tuple[str, ...] = (
    "NETWORK_ERROR",
    "TIMEOUT",
    "RATE_LIMIT",
    "SERVER_ERROR",
)


@dataclass(frozen=True)
class SymbolRule:
    symbol: str
    min_qty: float
    max_qty: float
    step_size: float
    tick_size: float
    max_leverage: int
    fetched_at: float
    min_notional: Optional[float] = None
    max_notional: Optional[float] = None
    source: RuleSource = "EXCHANGE"


@dataclass
class Position:
    symbol: str
    signed_amount: float
    entry_price: float
    mark_price: float = 0.0
    unrealized_profit: float = 0.0
    position_side: PositionSide = "BOTH"
    leverage: int = 1
    margin_type: str = "CROSSED"
    isolated_margin: float = 0.0
    selected: bool = False

    @property
    def key(self) -> str:
        return f"{self.symbol}_{self.position_side}"

    @property
    def is_long(self) -> bool:
        if self.position_side == "LONG":
            return True
        if self.position_side == "SHORT":
            return False
        return self.signed_amount > 0

    @property
    def quantity(self) -> float:
        return abs(self.signed_amount)

    @property
    def close_side(self) -> OrderSide:
        return "SELL" if self.is_long else "BUY"


@dataclass
class OpenOrder:
    order_id: int
    symbol: str
    side: OrderSide
    order_type: str
    orig_qty: float
    price: float = 0.0
    stop_price: float = 0.0
    status: str = "NEW"
    reduce_only: bool = False
    close_position: bool = False
    position_side: PositionSide = "BOTH"
    working_type: str = "CONTRACT_PRICE"
    time_in_force: str = ""
    activation_price: float = 0.0
    callback_rate: float = 0.0
    executed_qty: float = 0.0
    update_time: int = 0
    selected: bool = False

    @property
    def is_close_type(self) -> bool:
        return bool(self.reduce_only or self.close_position)

    @property
    def is_conditional(self) -> bool:
        return self.order_type in CONDITIONAL_ORDER_TYPES


@dataclass(frozen=True)
class AccountSnapshot:
    wallet_balance: float
    margin_balance: float
    unrealized_profit: float
    available_balance: float

    @property
    def equity(self) -> float:
        return self.margin_balance


@dataclass(frozen=True)
class GatewayCallResult:
    ok: bool
    reason_code: str
    payload: Optional[Any] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    retryable_reason_codes: Sequence[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_REASON_CODES)


@dataclass(frozen=True)
class GatewayRetryResult:
    operation: OrderOperation
    success: bool
    attempts: int
    reason_code: str
    last_result: GatewayCallResult
    history: Sequence[GatewayCallResult]

    @property
    def payload(self) -> Optional[Mapping[str, Any]]:
        payload = self.last_result.payload
        return payload if isinstance(payload, Mapping) else None
