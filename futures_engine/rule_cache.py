from __future__ import annotations

import threading
import time
from typing import Any, Callable, Mapping, Optional

from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import GatewayCallResult, SymbolRule
from .exchange_parsing import parse_symbol_rules
from .mock_exchange import synthetic_base_price
from .rule_cache_models import FallbackLimits, RuleLookupResult

RULE_TTL_SECONDS_DEFAULT = 3600.0
EXCHANGE_INFO_TTL_SECONDS_DEFAULT = 1800.0

MAX_LEVERAGE_BY_SYMBOL: Mapping[str, int] = {
    "BTCUSDT": 125,
    "ETHUSDT": 100,
    "BNBUSDT": 75,
    "ADAUSDT": 75,
    "LTCUSDT": 75,
    "BCHUSDT": 75,
    "XRPUSDT": 75,
    "DOGEUSDT": 50,
    "SOLUSDT": 50,
    "DOTUSDT": 50,
    "LINKUSDT": 50,
    "MATICUSDT": 50,
    "AVAXUSDT": 50,
    "UNIUSDT": 50,
    "ATOMUSDT": 50,
}
MAX_LEVERAGE_DEFAULT = 25

FALLBACK_LIMITS_BY_SYMBOL: Mapping[str, FallbackLimits] = {
    "AIOTUSDT": FallbackLimits(
        min_qty=1.0,
        max_qty=1_000_000.0,
        tick_size=0.00001,
        step_size=1.0,
        max_leverage=50,
        max_notional=100_000.0,
    ),
}

# (minimum reference price, limits); scanned top-down, last row is the floor tier.
FALLBACK_LIMITS_BY_PRICE: tuple[tuple[float, FallbackLimits], ...] = (
    (1000.0, FallbackLimits(0.001, 1000.0, 0.1, 0.001, 125, 2_000_000.0)),
    (100.0, FallbackLimits(0.001, 10_000.0, 0.01, 0.001, 100, 1_000_000.0)),
    (10.0, FallbackLimits(0.01, 100_000.0, 0.001, 0.01, 75, 500_000.0)),
    (1.0, FallbackLimits(0.1, 1_000_000.0, 0.0001, 0.1, 75, 200_000.0)),
    (0.1, FallbackLimits(1.0, 10_000_000.0, 0.00001, 1.0, 75, 100_000.0)),
    (0.01, FallbackLimits(10.0, 100_000_000.0, 0.000001, 10.0, 50, 100_000.0)),
    (0.0, FallbackLimits(1000.0, 10_000_000_000.0, 0.00000001, 1000.0, 25, 25_000.0)),
)


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def max_leverage_for_symbol(symbol: str) -> int:
    return MAX_LEVERAGE_BY_SYMBOL.get(_normalize_symbol(symbol), MAX_LEVERAGE_DEFAULT)


def fallback_limits(symbol: str, reference_price: Optional[float]) -> FallbackLimits:
    special = FALLBACK_LIMITS_BY_SYMBOL.get(_normalize_symbol(symbol))
    if special is not None:
        return special
    price = reference_price if reference_price is not None and reference_price > 0 else 0.0
    for threshold, limits in FALLBACK_LIMITS_BY_PRICE:
        if price >= threshold:
            return limits
    return FALLBACK_LIMITS_BY_PRICE[-1][1]


def build_fallback_rule(symbol: str, reference_price: Optional[float], *, fetched_at: float) -> SymbolRule:
    limits = fallback_limits(symbol, reference_price)
    return SymbolRule(
        symbol=_normalize_symbol(symbol),
        min_qty=limits.min_qty,
        max_qty=limits.max_qty,
        step_size=limits.step_size,
        tick_size=limits.tick_size,
        max_leverage=limits.max_leverage,
        fetched_at=fetched_at,
        max_notional=limits.max_notional,
        source="FALLBACK",
    )


class RuleCache:
    """Per-engine symbol rule cache with separate TTLs for rules and the exchangeInfo payload."""

    def __init__(
        self,
        *,
        fetch_exchange_info: Callable[[], GatewayCallResult],
        reference_price: Optional[Callable[[str], Optional[float]]] = None,
        now: Callable[[], float] = time.time,
        rule_ttl_seconds: float = RULE_TTL_SECONDS_DEFAULT,
        exchange_info_ttl_seconds: float = EXCHANGE_INFO_TTL_SECONDS_DEFAULT,
    ) -> None:
        self._fetch_exchange_info = fetch_exchange_info
        self._reference_price = reference_price
        self._now = now
        self.rule_ttl_seconds = float(rule_ttl_seconds)
        self.exchange_info_ttl_seconds = float(exchange_info_ttl_seconds)
        self._rules: dict[str, SymbolRule] = {}
        self._exchange_info: Optional[Mapping[str, Any]] = None
        self._exchange_info_fetched_at = 0.0
        # Lookups also run on the trailing-stop worker.
        self._lock = threading.RLock()

    def cached_rule(self, symbol: str) -> Optional[SymbolRule]:
        with self._lock:
            return self._rules.get(_normalize_symbol(symbol))

    def invalidate(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._rules.clear()
                self._exchange_info = None
                self._exchange_info_fetched_at = 0.0
                return
            self._rules.pop(_normalize_symbol(symbol), None)

    def _load_exchange_info(self, now: float) -> tuple[Optional[Mapping[str, Any]], str]:
        if (
            self._exchange_info is not None
            and now - self._exchange_info_fetched_at <= self.exchange_info_ttl_seconds
        ):
            return self._exchange_info, "EXCHANGE_INFO_CACHE_HIT"
        result = self._fetch_exchange_info()
        if not result.ok or not isinstance(result.payload, Mapping):
            return None, f"EXCHANGE_INFO_{result.reason_code}" if not result.ok else "EXCHANGE_INFO_INVALID"
        self._exchange_info = result.payload
        self._exchange_info_fetched_at = now
        return self._exchange_info, "EXCHANGE_INFO_FETCHED"

    def _resolve_reference_price(self, symbol: str) -> float:
        if self._reference_price is not None:
            price = self._reference_price(symbol)
            if price is not None and price > 0:
                return float(price)
        return synthetic_base_price(symbol)

    def lookup(self, symbol: str) -> RuleLookupResult:
        with self._lock:
            return self._lookup_locked(symbol)

    def _lookup_locked(self, symbol: str) -> RuleLookupResult:
        normalized = _normalize_symbol(symbol)
        now = float(self._now())
        cached = self._rules.get(normalized)
        if cached is not None and now - cached.fetched_at <= self.rule_ttl_seconds:
            return RuleLookupResult(
                rule=cached,
                source="CACHE",
                reason_code="RULE_CACHE_HIT",
                failure_reason="-",
            )

        exchange_info, info_reason = self._load_exchange_info(now)
        if exchange_info is not None:
            rule = parse_symbol_rules(
                exchange_info,
                normalized,
                max_leverage=max_leverage_for_symbol(normalized),
                fetched_at=now,
            )
            if rule is not None:
                self._rules[normalized] = rule
                return RuleLookupResult(
                    rule=rule,
                    source="EXCHANGE",
                    reason_code="RULE_REFRESHED",
                    failure_reason="-",
                )
            info_reason = "SYMBOL_RULE_NOT_FOUND"

        reference_price = self._resolve_reference_price(normalized)
        return RuleLookupResult(
            rule=build_fallback_rule(normalized, reference_price, fetched_at=now),
            source="FALLBACK",
            reason_code="RULE_FALLBACK_USED",
            failure_reason=info_reason,
            reference_price=reference_price,
        )

    def get_rule(self, symbol: str) -> SymbolRule:
        return self.lookup_with_logging(symbol).rule

    def lookup_with_logging(self, symbol: str, *, loop_label: str = "loop") -> RuleLookupResult:
        result = self.lookup(symbol)
        if result.source == "CACHE":
            return result
        log_structured_event(
            StructuredLogEvent(
                component="rule_cache",
                event="lookup_symbol_rule",
                input_data=f"symbol={_normalize(symbol)}",
                decision="refresh_from_exchange_info" if result.source == "EXCHANGE" else "use_fallback_table",
                result=result.source.lower(),
                state_before="rule_stale_or_missing",
                state_after="rule_cached" if result.source == "EXCHANGE" else "rule_fallback",
                failure_reason=result.failure_reason,
                level="INFO" if result.source == "EXCHANGE" else "WARNING",
            ),
            loop_label=loop_label,
            reason_code=result.reason_code,
            step_size=result.rule.step_size,
            tick_size=result.rule.tick_size,
            min_qty=result.rule.min_qty,
            max_qty=result.rule.max_qty,
            max_leverage=result.rule.max_leverage,
            reference_price=result.reference_price if result.reference_price is not None else "-",
        )
        return result
