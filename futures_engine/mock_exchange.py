from __future__ import annotations

import random
import time
from typing import Any, Callable, Mapping, Optional

from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import GatewayCallResult

# symbol -> (base price, jitter half-width)
SYNTHETIC_PRICE_TABLE: Mapping[str, tuple[float, float]] = {
    "BTCUSDT": (46000.0, 100.0),
    "ETHUSDT": (2800.0, 25.0),
    "BNBUSDT": (320.0, 5.0),
}
SYNTHETIC_PRICE_DEFAULT: tuple[float, float] = (1.0, 0.05)

OFFLINE_ORDER_ID_START = 12345


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def synthetic_base_price(symbol: str) -> float:
    base, _ = SYNTHETIC_PRICE_TABLE.get(_normalize_symbol(symbol), SYNTHETIC_PRICE_DEFAULT)
    return base


def synthetic_price(symbol: str, rng: Optional[random.Random] = None) -> float:
    base, jitter = SYNTHETIC_PRICE_TABLE.get(_normalize_symbol(symbol), SYNTHETIC_PRICE_DEFAULT)
    source = rng if rng is not None else random
    return round(base + source.uniform(-jitter, jitter), 8)


def _ok(payload: Any) -> GatewayCallResult:
    return GatewayCallResult(ok=True, reason_code="SUCCESS", payload=payload)


def _rejected(message: str) -> GatewayCallResult:
    return GatewayCallResult(ok=False, reason_code="EXCHANGE_REJECTED", error_code=-2011, error_message=message)


class OfflineExchangeClient:
    """Synthetic stand-in for the REST client, used without credentials or in offline mode."""

    is_offline = True

    def __init__(
        self,
        account_name: str = "offline",
        *,
        rng: Optional[random.Random] = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._account_name = account_name
        self._rng = rng if rng is not None else random.Random()
        self._now = now
        self._next_order_id = OFFLINE_ORDER_ID_START + 1
        self._dual_side = False
        self._leverage: dict[str, int] = {"BTCUSDT": 10}
        self._margin_type: dict[str, str] = {"BTCUSDT": "CROSSED"}
        self._positions: list[dict[str, Any]] = [
            {
                "symbol": "BTCUSDT",
                "positionAmt": "0.001",
                "entryPrice": "45000",
                "markPrice": "46000",
                "unRealizedProfit": "1.0",
                "positionSide": "BOTH",
                "leverage": "10",
                "marginType": "cross",
                "isolatedMargin": "0",
            }
        ]
        self._orders: list[dict[str, Any]] = [
            {
                "orderId": OFFLINE_ORDER_ID_START,
                "symbol": "BTCUSDT",
                "status": "NEW",
                "type": "LIMIT",
                "side": "BUY",
                "origQty": "0.001",
                "price": "45500",
                "stopPrice": "0",
                "timeInForce": "GTC",
                "positionSide": "BOTH",
                "reduceOnly": False,
                "closePosition": False,
                "workingType": "CONTRACT_PRICE",
            }
        ]

    @property
    def account_name(self) -> str:
        return self._account_name

    def _log(self, event: str, input_data: str, result: str) -> None:
        log_structured_event(
            StructuredLogEvent(
                component="offline_exchange",
                event=event,
                input_data=input_data,
                decision="serve_synthetic_data",
                result=result,
                level="DEBUG",
            ),
            account=self._account_name,
        )

    def sync_server_time(self) -> bool:
        return True

    def get_server_time(self) -> GatewayCallResult:
        return _ok({"serverTime": int(self._now() * 1000)})

    def get_account(self) -> GatewayCallResult:
        return _ok(
            {
                "totalWalletBalance": "1000",
                "totalMarginBalance": "1050",
                "totalUnrealizedProfit": "50",
                "availableBalance": "750",
                "totalPositionInitialMargin": "200",
            }
        )

    def get_positions(self) -> GatewayCallResult:
        return _ok([dict(item) for item in self._positions])

    def get_open_orders(self, symbol: Optional[str] = None) -> GatewayCallResult:
        target = _normalize_symbol(symbol or "")
        rows = [dict(item) for item in self._orders if not target or item["symbol"] == target]
        return _ok(rows)

    def get_order_history(self, symbol: str, limit: int = 50) -> GatewayCallResult:
        rows = self.get_open_orders(symbol).payload or []
        return _ok(list(rows)[: max(1, int(limit))])

    def place_order(self, params: Mapping[str, Any]) -> GatewayCallResult:
        symbol = _normalize_symbol(str(params.get("symbol", "")))
        if not symbol:
            return _rejected("symbol is required")
        order = {
            "orderId": self._next_order_id,
            "symbol": symbol,
            "status": "NEW",
            "type": str(params.get("type", "MARKET")),
            "side": str(params.get("side", "BUY")),
            "origQty": str(params.get("quantity", "0")),
            "price": str(params.get("price", "0")),
            "stopPrice": str(params.get("stopPrice", "0")),
            "timeInForce": str(params.get("timeInForce", "")),
            "positionSide": str(params.get("positionSide", "BOTH")),
            "reduceOnly": bool(params.get("reduceOnly", False)),
            "closePosition": bool(params.get("closePosition", False)),
            "workingType": str(params.get("workingType", "CONTRACT_PRICE")),
            "activatePrice": str(params.get("activationPrice", "0")),
            "priceRate": str(params.get("callbackRate", "0")),
        }
        self._next_order_id += 1
        if order["type"] != "MARKET":
            self._orders.append(order)
        self._log("place_order", f"symbol={symbol} type={order['type']}", f"order_id={order['orderId']}")
        return _ok(dict(order))

    def cancel_order(self, params: Mapping[str, Any]) -> GatewayCallResult:
        try:
            order_id = int(params.get("orderId", 0))
        except (TypeError, ValueError):
            order_id = 0
        for index, item in enumerate(self._orders):
            if item["orderId"] == order_id:
                removed = self._orders.pop(index)
                removed["status"] = "CANCELED"
                return _ok(removed)
        return _rejected("Unknown order sent.")

    def cancel_all_open_orders(self, symbol: str) -> GatewayCallResult:
        target = _normalize_symbol(symbol)
        self._orders = [item for item in self._orders if item["symbol"] != target]
        return _ok({"code": 200, "msg": "The operation of cancel all open order is done."})

    def set_leverage(self, symbol: str, leverage: int) -> GatewayCallResult:
        self._leverage[_normalize_symbol(symbol)] = int(leverage)
        return _ok({"symbol": _normalize_symbol(symbol), "leverage": int(leverage)})

    def set_margin_type(self, symbol: str, margin_type: str) -> GatewayCallResult:
        normalized = _normalize_symbol(symbol)
        if self._margin_type.get(normalized) == margin_type:
            return GatewayCallResult(ok=True, reason_code="MARGIN_TYPE_UNCHANGED", error_code=-4046)
        self._margin_type[normalized] = margin_type
        return _ok({"code": 200, "msg": "success"})

    def get_position_mode(self) -> GatewayCallResult:
        return _ok({"dualSidePosition": self._dual_side})

    def set_position_mode(self, hedge: bool) -> GatewayCallResult:
        if self._dual_side == bool(hedge):
            return GatewayCallResult(ok=True, reason_code="POSITION_MODE_UNCHANGED", error_code=-4059)
        self._dual_side = bool(hedge)
        return _ok({"code": 200, "msg": "success"})

    def adjust_position_margin(
        self,
        symbol: str,
        amount: float,
        *,
        add: bool,
        position_side: str = "BOTH",
    ) -> GatewayCallResult:
        return _ok({"amount": float(amount), "code": 200, "type": 1 if add else 2})

    def get_exchange_info(self) -> GatewayCallResult:
        return GatewayCallResult(
            ok=False,
            reason_code="OFFLINE",
            error_message="exchange info is not available offline",
        )

    def get_ticker_price(self, symbol: str) -> GatewayCallResult:
        normalized = _normalize_symbol(symbol)
        return _ok({"symbol": normalized, "price": str(synthetic_price(normalized, self._rng))})
