from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Mapping, Optional

from .event_logging import LOG_FIELD_EMPTY, StructuredLogEvent, log_structured_event
from .trailing_stop_models import TRAILING_STOP_MODES, TrailingStopMode

MarginType = Literal["CROSSED", "ISOLATED"]

PRICE_REFRESH_SECONDS_DEFAULT = 2.0
ACCOUNT_REFRESH_SECONDS_DEFAULT = 5.0
RECV_WINDOW_MS_DEFAULT = 5000
TIME_SYNC_INTERVAL_SECONDS_DEFAULT = 300
RULE_TTL_SECONDS_DEFAULT = 3600
EXCHANGE_INFO_TTL_SECONDS_DEFAULT = 1800
BATCH_DELAY_MS_DEFAULT = 150
REQUEST_TIMEOUT_SECONDS_DEFAULT = 10.0
ORDER_MAX_ATTEMPTS_DEFAULT = 3
RISK_DIVISION_FACTOR_DEFAULT = 10

PRICE_REFRESH_SECONDS_ENV = "LTS_PRICE_REFRESH_SECONDS"
ACCOUNT_REFRESH_SECONDS_ENV = "LTS_ACCOUNT_REFRESH_SECONDS"
RECV_WINDOW_MS_ENV = "LTS_RECV_WINDOW_MS"
TIME_SYNC_INTERVAL_SECONDS_ENV = "LTS_TIME_SYNC_INTERVAL_SECONDS"
RULE_TTL_SECONDS_ENV = "LTS_RULE_TTL_SECONDS"
EXCHANGE_INFO_TTL_SECONDS_ENV = "LTS_EXCHANGE_INFO_TTL_SECONDS"
BATCH_DELAY_MS_ENV = "LTS_BATCH_DELAY_MS"
REQUEST_TIMEOUT_SECONDS_ENV = "LTS_REQUEST_TIMEOUT_SECONDS"
TRAILING_STOP_ENABLED_ENV = "LTS_TRAILING_STOP_ENABLED"
TRAILING_STOP_MODE_ENV = "LTS_TRAILING_STOP_MODE"
OFFLINE_MODE_ENV = "LTS_OFFLINE_MODE"
ORDER_MAX_ATTEMPTS_ENV = "LTS_ORDER_MAX_ATTEMPTS"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass(frozen=True)
class EngineSettings:
    price_refresh_seconds: float = PRICE_REFRESH_SECONDS_DEFAULT
    account_refresh_seconds: float = ACCOUNT_REFRESH_SECONDS_DEFAULT
    recv_window_ms: int = RECV_WINDOW_MS_DEFAULT
    time_sync_interval_seconds: int = TIME_SYNC_INTERVAL_SECONDS_DEFAULT
    rule_ttl_seconds: int = RULE_TTL_SECONDS_DEFAULT
    exchange_info_ttl_seconds: int = EXCHANGE_INFO_TTL_SECONDS_DEFAULT
    batch_delay_ms: int = BATCH_DELAY_MS_DEFAULT
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS_DEFAULT
    trailing_stop_enabled: bool = False
    trailing_stop_mode: TrailingStopMode = "REPLACE"
    offline_mode: bool = False
    order_max_attempts: int = ORDER_MAX_ATTEMPTS_DEFAULT


@dataclass(frozen=True)
class AccountCredential:
    name: str
    api_key: str = ""
    secret_key: str = ""
    risk_division_factor: int = RISK_DIVISION_FACTOR_DEFAULT
    is_testnet: bool = False

    @property
    def has_keys(self) -> bool:
        return bool(self.api_key.strip()) and bool(self.secret_key.strip())


@dataclass(frozen=True)
class TradingDefaults:
    symbol: str = "BTCUSDT"
    side: str = "BUY"
    leverage: int = 10
    margin_type: MarginType = "CROSSED"
    order_type: str = "MARKET"
    stop_loss_ratio: float = 5.0


def _log_config_event(
    event: str,
    input_data: str,
    decision: str,
    result: str,
    *,
    state_before: str = LOG_FIELD_EMPTY,
    state_after: str = LOG_FIELD_EMPTY,
    failure_reason: str = LOG_FIELD_EMPTY,
    level: str = "INFO",
    **context: object,
) -> None:
    log_structured_event(
        StructuredLogEvent(
            component="config",
            event=event,
            input_data=input_data,
            decision=decision,
            result=result,
            state_before=state_before,
            state_after=state_after,
            failure_reason=failure_reason,
            level=level,
        ),
        **context,
    )


def _log_default(key: str, default: object) -> None:
    _log_config_event(
        "setting_default_used",
        input_data=f"{key}=<missing>",
        decision="use_default",
        result=f"value={default}",
        state_before="loading",
        state_after="loading",
        key=key,
        value=default,
    )


def _log_fallback(key: str, raw: object, default: object, failure_reason: str, **context: object) -> None:
    _log_config_event(
        "setting_rejected",
        input_data=f"{key}={raw}",
        decision="fallback_to_default",
        result=f"value={default}",
        state_before="loading",
        state_after="loading",
        failure_reason=failure_reason,
        level="WARNING",
        key=key,
        raw=raw,
        fallback=default,
        **context,
    )


def _log_loaded(key: str, raw: object, value: object) -> None:
    _log_config_event(
        "setting_loaded",
        input_data=f"{key}={raw}",
        decision="accept_input",
        result=f"value={value}",
        state_before="loading",
        state_after="loading",
        key=key,
        value=value,
    )


def _read_int(
    env: Mapping[str, str],
    key: str,
    default: int,
    *,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    raw = env.get(key)
    if raw is None:
        _log_default(key, default)
        return default
    try:
        value = int(raw)
    except ValueError:
        _log_fallback(key, raw, default, "invalid_int")
        return default
    if minimum is not None and value < minimum:
        _log_fallback(key, value, default, "below_minimum", minimum=minimum)
        return default
    if maximum is not None and value > maximum:
        _log_fallback(key, value, default, "above_maximum", maximum=maximum)
        return default
    _log_loaded(key, raw, value)
    return value


def _read_float(
    env: Mapping[str, str],
    key: str,
    default: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    raw = env.get(key)
    if raw is None:
        _log_default(key, default)
        return default
    try:
        value = float(raw)
    except ValueError:
        _log_fallback(key, raw, default, "invalid_float")
        return default
    if value != value:
        _log_fallback(key, raw, default, "invalid_float")
        return default
    if minimum is not None and value < minimum:
        _log_fallback(key, value, default, "below_minimum", minimum=minimum)
        return default
    if maximum is not None and value > maximum:
        _log_fallback(key, value, default, "above_maximum", maximum=maximum)
        return default
    _log_loaded(key, raw, value)
    return value


def _read_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        _log_default(key, default)
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        value = True
    elif lowered in _FALSE_VALUES:
        value = False
    else:
        _log_fallback(key, raw, default, "invalid_bool")
        return default
    _log_loaded(key, raw, value)
    return value


def _read_trailing_mode(env: Mapping[str, str], key: str, default: TrailingStopMode) -> TrailingStopMode:
    raw = env.get(key)
    if raw is None:
        _log_default(key, default)
        return default
    candidate = raw.strip().upper().replace("-", "_")
    for mode in TRAILING_STOP_MODES:
        if candidate == mode:
            _log_loaded(key, raw, mode)
            return mode
    _log_fallback(key, raw, default, "unknown_trailing_mode", allowed=",".join(TRAILING_STOP_MODES))
    return default


def load_engine_settings(env: Optional[Mapping[str, str]] = None) -> EngineSettings:
    source = env if env is not None else os.environ
    _log_config_event(
        "settings_load_started",
        input_data=f"env_source={'custom' if env is not None else 'os.environ'}",
        decision="begin_settings_load",
        result="started",
        state_before="idle",
        state_after="loading",
    )

    settings = EngineSettings(
        price_refresh_seconds=_read_float(
            source,
            PRICE_REFRESH_SECONDS_ENV,
            PRICE_REFRESH_SECONDS_DEFAULT,
            minimum=0.5,
        ),
        account_refresh_seconds=_read_float(
            source,
            ACCOUNT_REFRESH_SECONDS_ENV,
            ACCOUNT_REFRESH_SECONDS_DEFAULT,
            minimum=1.0,
        ),
        recv_window_ms=_read_int(
            source,
            RECV_WINDOW_MS_ENV,
            RECV_WINDOW_MS_DEFAULT,
            minimum=1000,
            maximum=60000,
        ),
        time_sync_interval_seconds=_read_int(
            source,
            TIME_SYNC_INTERVAL_SECONDS_ENV,
            TIME_SYNC_INTERVAL_SECONDS_DEFAULT,
            minimum=30,
        ),
        rule_ttl_seconds=_read_int(
            source,
            RULE_TTL_SECONDS_ENV,
            RULE_TTL_SECONDS_DEFAULT,
            minimum=1,
        ),
        exchange_info_ttl_seconds=_read_int(
            source,
            EXCHANGE_INFO_TTL_SECONDS_ENV,
            EXCHANGE_INFO_TTL_SECONDS_DEFAULT,
            minimum=1,
        ),
        batch_delay_ms=_read_int(
            source,
            BATCH_DELAY_MS_ENV,
            BATCH_DELAY_MS_DEFAULT,
            minimum=0,
            maximum=5000,
        ),
        request_timeout_seconds=_read_float(
            source,
            REQUEST_TIMEOUT_SECONDS_ENV,
            REQUEST_TIMEOUT_SECONDS_DEFAULT,
            minimum=1.0,
            maximum=60.0,
        ),
        trailing_stop_enabled=_read_bool(source, TRAILING_STOP_ENABLED_ENV, False),
        trailing_stop_mode=_read_trailing_mode(source, TRAILING_STOP_MODE_ENV, "REPLACE"),
        offline_mode=_read_bool(source, OFFLINE_MODE_ENV, False),
        order_max_attempts=_read_int(
            source,
            ORDER_MAX_ATTEMPTS_ENV,
            ORDER_MAX_ATTEMPTS_DEFAULT,
            minimum=1,
            maximum=10,
        ),
    )
    _log_config_event(
        "settings_load_completed",
        input_data="all_settings_processed",
        decision="finalize_settings",
        result="settings_ready",
        state_before="loading",
        state_after="loaded",
        price_refresh_seconds=settings.price_refresh_seconds,
        account_refresh_seconds=settings.account_refresh_seconds,
        recv_window_ms=settings.recv_window_ms,
        time_sync_interval_seconds=settings.time_sync_interval_seconds,
        rule_ttl_seconds=settings.rule_ttl_seconds,
        exchange_info_ttl_seconds=settings.exchange_info_ttl_seconds,
        batch_delay_ms=settings.batch_delay_ms,
        trailing_stop_enabled=settings.trailing_stop_enabled,
        trailing_stop_mode=settings.trailing_stop_mode,
        offline_mode=settings.offline_mode,
        order_max_attempts=settings.order_max_attempts,
    )
    return settings
