from __future__ import annotations

import hashlib
import hmac
import threading
import time
import urllib.parse
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional, Union

import requests

import config

from .config import AccountCredential, EngineSettings
from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import GatewayCallResult
from .mock_exchange import OfflineExchangeClient

ACCOUNT_PATH = "/fapi/v2/account"
POSITION_RISK_PATH = "/fapi/v1/positionRisk"
OPEN_ORDERS_PATH = "/fapi/v1/openOrders"
ALL_ORDERS_PATH = "/fapi/v1/allOrders"
ORDER_PATH = "/fapi/v1/order"
ALL_OPEN_ORDERS_PATH = "/fapi/v1/allOpenOrders"
LEVERAGE_PATH = "/fapi/v1/leverage"
MARGIN_TYPE_PATH = "/fapi/v1/marginType"
POSITION_MODE_PATH = "/fapi/v1/positionSide/dual"
POSITION_MARGIN_PATH = "/fapi/v1/positionMargin"
EXCHANGE_INFO_PATH = "/fapi/v1/exchangeInfo"
TICKER_PRICE_PATH = "/fapi/v1/ticker/price"
SERVER_TIME_PATH = "/fapi/v1/time"

SIGNED_REQUEST_TIME_SYNC_RETRY_COUNT = 1
SERVER_TIME_ERROR_CODE = -1021
MARGIN_TYPE_UNCHANGED_CODE = -4046
POSITION_MODE_UNCHANGED_CODE = -4059

_RAW_TEXT_LIMIT = 300


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def _trim_text(value: Any) -> str:
    text = " ".join(str(value or "").split())
    return text if len(text) <= _RAW_TEXT_LIMIT else f"{text[:_RAW_TEXT_LIMIT]}..."


def format_param_value(value: Any) -> str:
    """Render a request parameter the way the exchange expects (no exponents, lowercase bools)."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        try:
            rendered = format(Decimal(repr(value)).normalize(), "f")
        except InvalidOperation:
            return str(value)
        return rendered
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


def build_query(params: Mapping[str, Any]) -> str:
    return urllib.parse.urlencode(
        [(key, format_param_value(value)) for key, value in params.items() if value is not None]
    )


def sign_query(query: str, secret_key: str) -> str:
    return hmac.new(secret_key.encode(), query.encode(), hashlib.sha256).hexdigest()


def _is_server_time_sync_error_payload(payload: object) -> bool:
    if not isinstance(payload, Mapping):
        return False
    code = payload.get("code")
    if isinstance(code, int) and code == SERVER_TIME_ERROR_CODE:
        return True
    message = payload.get("msg")
    if isinstance(message, str):
        lowered = message.lower()
        if "timestamp for this request" in lowered or "outside of the recvwindow" in lowered:
            return True
    return False


def _error_code(payload: object) -> Optional[int]:
    if not isinstance(payload, Mapping):
        return None
    code = payload.get("code")
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _failure_reason_code(status_code: int, payload: object) -> str:
    if status_code in (418, 429):
        return "RATE_LIMIT"
    if status_code >= 500:
        return "SERVER_ERROR"
    if _is_server_time_sync_error_payload(payload):
        return "TIMESTAMP_OUT_OF_SYNC"
    return "EXCHANGE_REJECTED"


class BinanceFuturesClient:
    """Signed REST client for the USDT-M futures API.

    Every method returns a GatewayCallResult; transport errors never escape.
    """

    is_offline = False

    def __init__(
        self,
        credential: AccountCredential,
        *,
        settings: Optional[EngineSettings] = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._credential = credential
        self._settings = settings if settings is not None else EngineSettings()
        self._now = now
        self.base_url = config.FUTURES_TESTNET_BASE_URL if credential.is_testnet else config.FUTURES_BASE_URL
        self._server_time_offset_lock = threading.Lock()
        self._server_time_offset_ms = 0
        self._server_time_synced_at = 0.0

    @property
    def account_name(self) -> str:
        return self._credential.name

    @property
    def server_time_offset_ms(self) -> int:
        with self._server_time_offset_lock:
            return int(self._server_time_offset_ms)

    def _current_signed_timestamp_ms(self) -> int:
        return int(self._now() * 1000) + self.server_time_offset_ms

    def _time_sync_due(self) -> bool:
        with self._server_time_offset_lock:
            synced_at = self._server_time_synced_at
        if synced_at <= 0:
            return True
        return self._now() - synced_at >= float(self._settings.time_sync_interval_seconds)

    def _log_request(
        self,
        method: str,
        path: str,
        result: GatewayCallResult,
        *,
        params: Mapping[str, Any],
        detail: Any = "-",
    ) -> None:
        log_structured_event(
            StructuredLogEvent(
                component="exchange_client",
                event="rest_request",
                input_data=f"method={method} path={path} symbol={_normalize(params.get('symbol', '-'))}",
                decision="send_request",
                result="success" if result.ok else "failed",
                state_before="request_pending",
                state_after="request_done",
                failure_reason=result.reason_code if not result.ok else "-",
                level="INFO" if result.ok else "WARNING",
            ),
            account=self._credential.name,
            reason_code=result.reason_code,
            exchange_error_code=result.error_code if result.error_code is not None else "-",
            error_message=result.error_message or "-",
            detail=_trim_text(detail),
        )

    def _send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> requests.Response | GatewayCallResult:
        try:
            return requests.request(
                method,
                url,
                headers=dict(headers or {}),
                timeout=self._settings.request_timeout_seconds,
            )
        except requests.Timeout as exc:
            return GatewayCallResult(ok=False, reason_code="TIMEOUT", error_message=repr(exc))
        except requests.RequestException as exc:
            return GatewayCallResult(ok=False, reason_code="NETWORK_ERROR", error_message=repr(exc))

    def _interpret(self, response: requests.Response) -> tuple[GatewayCallResult, object]:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not response.ok:
            message = data.get("msg") if isinstance(data, Mapping) else _trim_text(response.text)
            return (
                GatewayCallResult(
                    ok=False,
                    reason_code=_failure_reason_code(response.status_code, data),
                    payload=data,
                    error_code=_error_code(data),
                    error_message=str(message) if message is not None else None,
                ),
                data,
            )
        if data is None:
            return (
                GatewayCallResult(
                    ok=False,
                    reason_code="INVALID_RESPONSE",
                    error_message=f"non-JSON body status={response.status_code}",
                ),
                response.text,
            )
        code = _error_code(data)
        if code is not None and code < 0:
            return (
                GatewayCallResult(
                    ok=False,
                    reason_code=_failure_reason_code(response.status_code, data),
                    payload=data,
                    error_code=code,
                    error_message=str(data.get("msg")) if isinstance(data, Mapping) else None,
                ),
                data,
            )
        return GatewayCallResult(ok=True, reason_code="SUCCESS", payload=data), data

    def _signed_request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        _time_sync_retry_count: int = SIGNED_REQUEST_TIME_SYNC_RETRY_COUNT,
    ) -> GatewayCallResult:
        request_params = dict(params or {})
        if not self._credential.has_keys:
            result = GatewayCallResult(
                ok=False,
                reason_code="AUTH_REQUIRED",
                error_message="api_key and secret_key are required",
            )
            self._log_request(method, path, result, params=request_params)
            return result
        if self._time_sync_due():
            self.sync_server_time()

        signed_params = dict(request_params)
        signed_params["timestamp"] = self._current_signed_timestamp_ms()
        signed_params["recvWindow"] = int(self._settings.recv_window_ms)
        query = build_query(signed_params)
        signature = sign_query(query, self._credential.secret_key)
        url = f"{self.base_url}{path}?{query}&signature={signature}"
        headers = {"X-MBX-APIKEY": self._credential.api_key}

        response = self._send(method, url, headers=headers)
        if isinstance(response, GatewayCallResult):
            self._log_request(method, path, response, params=request_params)
            return response

        result, detail = self._interpret(response)
        if (
            not result.ok
            and _time_sync_retry_count > 0
            and _is_server_time_sync_error_payload(result.payload)
        ):
            synced = self.sync_server_time()
            self._log_request(method, path, result, params=request_params, detail=f"time_drift synced={synced}")
            if synced:
                return self._signed_request(
                    method,
                    path,
                    request_params,
                    _time_sync_retry_count=_time_sync_retry_count - 1,
                )
        self._log_request(method, path, result, params=request_params, detail=detail if not result.ok else "-")
        return result

    def _public_get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> GatewayCallResult:
        request_params = dict(params or {})
        query = build_query(request_params)
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"
        response = self._send("GET", url)
        if isinstance(response, GatewayCallResult):
            self._log_request("GET", path, response, params=request_params)
            return response
        result, detail = self._interpret(response)
        if not result.ok:
            self._log_request("GET", path, result, params=request_params, detail=detail)
        return result

    def get_server_time(self) -> GatewayCallResult:
        return self._public_get(SERVER_TIME_PATH)

    def sync_server_time(self) -> bool:
        result = self.get_server_time()
        payload = result.payload if isinstance(result.payload, Mapping) else {}
        try:
            server_time = int(payload.get("serverTime", 0))
        except (TypeError, ValueError):
            server_time = 0
        if not result.ok or server_time <= 0:
            log_structured_event(
                StructuredLogEvent(
                    component="exchange_client",
                    event="sync_server_time",
                    input_data=f"path={SERVER_TIME_PATH}",
                    decision="keep_previous_offset",
                    result="failed",
                    state_before="offset_stale",
                    state_after="offset_stale",
                    failure_reason=result.reason_code if not result.ok else "INVALID_SERVER_TIME",
                    level="WARNING",
                ),
                account=self._credential.name,
                offset_ms=self.server_time_offset_ms,
            )
            return False
        local_time = int(self._now() * 1000)
        offset_ms = server_time - local_time
        with self._server_time_offset_lock:
            self._server_time_offset_ms = offset_ms
            self._server_time_synced_at = self._now()
        log_structured_event(
            StructuredLogEvent(
                component="exchange_client",
                event="sync_server_time",
                input_data=f"server_time={server_time} local_time={local_time}",
                decision="store_offset",
                result="synced",
                state_before="offset_stale",
                state_after="offset_fresh",
            ),
            account=self._credential.name,
            offset_ms=offset_ms,
        )
        return True

    def get_account(self) -> GatewayCallResult:
        return self._signed_request("GET", ACCOUNT_PATH)

    def get_positions(self) -> GatewayCallResult:
        return self._signed_request("GET", POSITION_RISK_PATH)

    def get_open_orders(self, symbol: Optional[str] = None) -> GatewayCallResult:
        params = {"symbol": _normalize_symbol(symbol)} if symbol else {}
        return self._signed_request("GET", OPEN_ORDERS_PATH, params)

    def get_order_history(self, symbol: str, limit: int = 50) -> GatewayCallResult:
        params = {"symbol": _normalize_symbol(symbol), "limit": max(1, min(int(limit), 1000))}
        return self._signed_request("GET", ALL_ORDERS_PATH, params)

    def place_order(self, params: Mapping[str, Any]) -> GatewayCallResult:
        return self._signed_request("POST", ORDER_PATH, params)

    def cancel_order(self, params: Mapping[str, Any]) -> GatewayCallResult:
        return self._signed_request("DELETE", ORDER_PATH, params)

    def cancel_all_open_orders(self, symbol: str) -> GatewayCallResult:
        return self._signed_request("DELETE", ALL_OPEN_ORDERS_PATH, {"symbol": _normalize_symbol(symbol)})

    def set_leverage(self, symbol: str, leverage: int) -> GatewayCallResult:
        return self._signed_request(
            "POST",
            LEVERAGE_PATH,
            {"symbol": _normalize_symbol(symbol), "leverage": int(leverage)},
        )

    def set_margin_type(self, symbol: str, margin_type: str) -> GatewayCallResult:
        result = self._signed_request(
            "POST",
            MARGIN_TYPE_PATH,
            {"symbol": _normalize_symbol(symbol), "marginType": str(margin_type).upper()},
        )
        if not result.ok and result.error_code == MARGIN_TYPE_UNCHANGED_CODE:
            return GatewayCallResult(
                ok=True,
                reason_code="MARGIN_TYPE_UNCHANGED",
                payload=result.payload,
                error_code=result.error_code,
                error_message=result.error_message,
            )
        return result

    def get_position_mode(self) -> GatewayCallResult:
        return self._signed_request("GET", POSITION_MODE_PATH)

    def set_position_mode(self, hedge: bool) -> GatewayCallResult:
        result = self._signed_request("POST", POSITION_MODE_PATH, {"dualSidePosition": bool(hedge)})
        if not result.ok and result.error_code == POSITION_MODE_UNCHANGED_CODE:
            return GatewayCallResult(
                ok=True,
                reason_code="POSITION_MODE_UNCHANGED",
                payload=result.payload,
                error_code=result.error_code,
                error_message=result.error_message,
            )
        return result

    def adjust_position_margin(
        self,
        symbol: str,
        amount: float,
        *,
        add: bool,
        position_side: str = "BOTH",
    ) -> GatewayCallResult:
        params: dict[str, Any] = {
            "symbol": _normalize_symbol(symbol),
            "amount": float(amount),
            "type": 1 if add else 2,
        }
        if position_side in ("LONG", "SHORT"):
            params["positionSide"] = position_side
        return self._signed_request("POST", POSITION_MARGIN_PATH, params)

    def get_exchange_info(self) -> GatewayCallResult:
        return self._public_get(EXCHANGE_INFO_PATH)

    def get_ticker_price(self, symbol: str) -> GatewayCallResult:
        return self._public_get(TICKER_PRICE_PATH, {"symbol": _normalize_symbol(symbol)})


ExchangeClient = Union[BinanceFuturesClient, OfflineExchangeClient]


def create_exchange_client(
    credential: AccountCredential,
    settings: Optional[EngineSettings] = None,
    *,
    now: Callable[[], float] = time.time,
) -> ExchangeClient:
    resolved = settings if settings is not None else EngineSettings()
    use_offline = resolved.offline_mode or not credential.has_keys
    log_structured_event(
        StructuredLogEvent(
            component="exchange_client",
            event="create_exchange_client",
            input_data=f"account={_normalize(credential.name)} testnet={credential.is_testnet}",
            decision="select_offline_source" if use_offline else "select_rest_source",
            result="offline" if use_offline else "rest",
            state_before="no_client",
            state_after="client_ready",
            failure_reason="credentials_missing" if not credential.has_keys else "-",
        ),
        offline_mode=resolved.offline_mode,
    )
    if use_offline:
        return OfflineExchangeClient(credential.name, now=now)
    return BinanceFuturesClient(credential, settings=resolved, now=now)
