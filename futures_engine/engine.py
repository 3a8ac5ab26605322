from __future__ import annotations

import random
import time
from dataclasses import replace
from typing import Any, Callable, Optional, Sequence

from .batch_operations import (
    cancel_all_for_symbols,
    cancel_orders,
    close_positions,
    place_break_even_stops,
    place_profit_protection_stop,
    place_stop_losses,
)
from .batch_operations_models import BatchOperation, BatchResult
from .conditional_orders import ConditionalOrderMonitor
from .config import AccountCredential, EngineSettings, TradingDefaults
from .engine_models import (
    EngineCycleResult,
    EngineOrderResult,
    PriceFetch,
    SymbolConfigResult,
    TrailingExecution,
    TrailingPlan,
)
from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_client import ExchangeClient, create_exchange_client
from .exchange_models import (
    GatewayCallResult,
    GatewayRetryResult,
    OpenOrder,
    Position,
    PositionMode,
    RetryPolicy,
    SymbolRule,
)
from .exchange_parsing import parse_account, parse_open_orders, parse_positions, parse_ticker_price
from .mock_exchange import synthetic_price
from .order_builder import (
    build_order_with_logging,
    cancel_order_with_retry_with_logging,
    submit_order_with_logging,
    validate_leverage,
)
from .order_builder_models import OrderBuildRequest, OrderCancelRequest
from .reconciliation import ReconciliationEngine
from .reconciliation_models import ExchangeSnapshot
from .risk_capital import compute_risk_snapshot_with_logging, quantity_from_loss_with_logging
from .risk_capital_models import QuantityFromLossResult, RiskSnapshot
from .rule_cache import RuleCache
from .trailing_stop import TrailingStopConverter, find_eligible, unsettled_claims
from .trailing_stop_models import TrailingConversionResult

ClientFactory = Callable[..., ExchangeClient]


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def _log_engine_event(
    *,
    event: str,
    input_data: str,
    decision: str,
    result: str,
    state_before: str = "-",
    state_after: str = "-",
    failure_reason: str = "-",
    level: str = "INFO",
    **context: object,
) -> None:
    log_structured_event(
        StructuredLogEvent(
            component="engine",
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


class TradingEngine:
    """Owner-thread facade over one selected account.

    ``fetch_*`` methods only read from the exchange and may run on worker threads;
    ``apply_*`` and every order operation mutate state and belong to the owner thread.
    ``execute_trailing`` is the one order path meant for a worker; its outcome comes back
    through ``apply_trailing``. Results for an account that has since been replaced are discarded.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        defaults: Optional[TradingDefaults] = None,
        client_factory: ClientFactory = create_exchange_client,
        now: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings if settings is not None else EngineSettings()
        self._defaults = defaults if defaults is not None else TradingDefaults()
        self._client_factory = client_factory
        self._now = now
        self._rng = rng if rng is not None else random.Random()
        self._sleep = sleep
        self._credential: Optional[AccountCredential] = None
        self._client: Optional[ExchangeClient] = None
        self._generation = 0
        self._position_mode: Optional[PositionMode] = None
        self._latest_prices: dict[str, float] = {}
        self._active_symbol = _normalize_symbol(self._defaults.symbol)
        self._retry_policy = RetryPolicy(max_attempts=self._settings.order_max_attempts)
        self._reconciliation = ReconciliationEngine(generation=self._generation)
        self._monitor = ConditionalOrderMonitor(now=now)
        self._rule_cache = self._new_rule_cache()
        self._last_risk: Optional[RiskSnapshot] = None
        self._trailing_claims: set[int] = set()
        self._last_trailing: tuple[TrailingConversionResult, ...] = ()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def defaults(self) -> TradingDefaults:
        return self._defaults

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def has_account(self) -> bool:
        return self._client is not None

    @property
    def credential(self) -> Optional[AccountCredential]:
        return self._credential

    @property
    def client(self) -> Optional[ExchangeClient]:
        return self._client

    @property
    def is_offline(self) -> bool:
        return self._client is None or bool(self._client.is_offline)

    @property
    def active_symbol(self) -> str:
        return self._active_symbol

    def set_active_symbol(self, symbol: str) -> None:
        self._active_symbol = _normalize_symbol(symbol)

    @property
    def reconciliation(self) -> ReconciliationEngine:
        return self._reconciliation

    @property
    def conditional_orders(self) -> ConditionalOrderMonitor:
        return self._monitor

    @property
    def rule_cache(self) -> RuleCache:
        return self._rule_cache

    @property
    def positions(self) -> list[Position]:
        return self._reconciliation.positions

    @property
    def open_orders(self) -> list[OpenOrder]:
        return self._reconciliation.open_orders

    @property
    def last_risk_snapshot(self) -> Optional[RiskSnapshot]:
        return self._last_risk

    def _new_rule_cache(self) -> RuleCache:
        return RuleCache(
            fetch_exchange_info=self._fetch_exchange_info,
            reference_price=self.latest_price,
            now=self._now,
            rule_ttl_seconds=self._settings.rule_ttl_seconds,
            exchange_info_ttl_seconds=self._settings.exchange_info_ttl_seconds,
        )

    def _fetch_exchange_info(self) -> GatewayCallResult:
        client = self._client
        if client is None:
            return GatewayCallResult(ok=False, reason_code="NO_ACCOUNT_SELECTED")
        return client.get_exchange_info()

    def select_account(self, credential: AccountCredential) -> int:
        previous = self._credential.name if self._credential is not None else "-"
        self._generation += 1
        self._credential = credential
        self._client = self._client_factory(credential, self._settings, now=self._now)
        self._position_mode = None
        self._latest_prices.clear()
        self._reconciliation.reset(self._generation)
        self._monitor.clear()
        self._rule_cache = self._new_rule_cache()
        self._last_risk = None
        self._trailing_claims.clear()
        self._last_trailing = ()
        _log_engine_event(
            event="select_account",
            input_data=f"account={_normalize(credential.name)} testnet={credential.is_testnet}",
            decision="replace_client_and_reset_state",
            result="offline" if self.is_offline else "rest",
            state_before=f"account={_normalize(previous)}",
            state_after=f"account={_normalize(credential.name)}",
            generation=self._generation,
            risk_division_factor=credential.risk_division_factor,
        )
        return self._generation

    def clear_account(self) -> None:
        previous = self._credential.name if self._credential is not None else "-"
        self._generation += 1
        self._credential = None
        self._client = None
        self._position_mode = None
        self._latest_prices.clear()
        self._reconciliation.reset(self._generation)
        self._monitor.clear()
        self._rule_cache = self._new_rule_cache()
        self._last_risk = None
        self._trailing_claims.clear()
        self._last_trailing = ()
        _log_engine_event(
            event="clear_account",
            input_data=f"account={_normalize(previous)}",
            decision="drop_client_and_reset_state",
            result="cleared",
            state_before=f"account={_normalize(previous)}",
            state_after="account=-",
            generation=self._generation,
        )

    def position_mode(self) -> PositionMode:
        """Account position mode, read once per selected account and cached."""
        if self._position_mode is not None:
            return self._position_mode
        client = self._client
        if client is None:
            return "ONE_WAY"
        mode = self._read_position_mode(client)
        if mode is None:
            return "ONE_WAY"
        self._position_mode = mode
        return mode

    def _read_position_mode(self, client: ExchangeClient) -> Optional[PositionMode]:
        result = client.get_position_mode()
        payload = result.payload if isinstance(result.payload, dict) else {}
        if not result.ok or "dualSidePosition" not in payload:
            _log_engine_event(
                event="position_mode",
                input_data=f"account={_normalize(client.account_name)}",
                decision="assume_one_way_until_next_read",
                result="unknown",
                failure_reason=result.reason_code,
                level="WARNING",
            )
            return None
        mode: PositionMode = "HEDGE" if str(payload["dualSidePosition"]).lower() == "true" else "ONE_WAY"
        _log_engine_event(
            event="position_mode",
            input_data=f"account={_normalize(client.account_name)}",
            decision="cache_for_session",
            result=mode.lower(),
        )
        return mode

    def latest_price(self, symbol: str) -> Optional[float]:
        return self._latest_prices.get(_normalize_symbol(symbol))

    def rule_for(self, symbol: str) -> SymbolRule:
        return self._rule_cache.get_rule(symbol)

    def fetch_price(self, symbol: str) -> PriceFetch:
        normalized = _normalize_symbol(symbol)
        generation = self._generation
        client = self._client
        reason_code = "NO_ACCOUNT_SELECTED"
        if client is not None:
            result = client.get_ticker_price(normalized)
            price = parse_ticker_price(result.payload) if result.ok else None
            if price is not None:
                return PriceFetch(generation, normalized, price, "EXCHANGE", "PRICE_FETCHED")
            reason_code = result.reason_code if not result.ok else "INVALID_RESPONSE"
        last_known = self._latest_prices.get(normalized)
        if last_known is not None:
            return PriceFetch(generation, normalized, last_known, "LAST_KNOWN", reason_code)
        return PriceFetch(generation, normalized, synthetic_price(normalized, self._rng), "SYNTHETIC", reason_code)

    def apply_price(self, fetched: PriceFetch) -> bool:
        if fetched.generation != self._generation:
            return False
        self._latest_prices[fetched.symbol] = fetched.price
        if fetched.source != "EXCHANGE":
            _log_engine_event(
                event="apply_price",
                input_data=f"symbol={fetched.symbol} price={fetched.price}",
                decision="degrade_to_fallback_price",
                result=fetched.source.lower(),
                failure_reason=fetched.reason_code,
                level="WARNING",
            )
        return True

    def refresh_price(self, symbol: str) -> PriceFetch:
        fetched = self.fetch_price(symbol)
        self.apply_price(fetched)
        return fetched

    def fetch_snapshot(self) -> ExchangeSnapshot:
        generation = self._generation
        client = self._client
        if client is None:
            return ExchangeSnapshot(
                ok=False,
                reason_code="NO_ACCOUNT_SELECTED",
                failure_reason="no account selected",
                generation=generation,
                fetched_at=float(self._now()),
            )
        failures: list[str] = []
        account_result = client.get_account()
        account = parse_account(account_result.payload) if account_result.ok else None
        if account is None:
            failures.append(f"account:{account_result.reason_code if not account_result.ok else 'INVALID_RESPONSE'}")

        positions: Optional[list[Position]] = None
        positions_result = client.get_positions()
        if positions_result.ok and isinstance(positions_result.payload, list):
            positions = parse_positions(positions_result.payload)
        else:
            failures.append(f"positions:{positions_result.reason_code if not positions_result.ok else 'INVALID_RESPONSE'}")

        open_orders: Optional[list[OpenOrder]] = None
        orders_result = client.get_open_orders()
        if orders_result.ok and isinstance(orders_result.payload, list):
            open_orders = parse_open_orders(orders_result.payload)
        else:
            failures.append(f"open_orders:{orders_result.reason_code if not orders_result.ok else 'INVALID_RESPONSE'}")

        return ExchangeSnapshot(
            ok=not failures,
            reason_code="SNAPSHOT_FETCHED" if not failures else ("SNAPSHOT_FAILED" if len(failures) == 3 else "SNAPSHOT_PARTIAL"),
            failure_reason=" ".join(failures) if failures else "-",
            generation=generation,
            account=account,
            positions=positions,
            open_orders=open_orders,
            fetched_at=float(self._now()),
        )

    def apply_snapshot(self, snapshot: ExchangeSnapshot, *, loop_label: str = "account-refresh") -> EngineCycleResult:
        reconcile = self._reconciliation.apply_with_logging(snapshot, loop_label=loop_label)
        if not reconcile.ok:
            return EngineCycleResult(reconcile=reconcile)
        sync = self._monitor.sync(self.open_orders, loop_label=loop_label)
        risk: Optional[RiskSnapshot] = None
        if self._active_symbol and self._reconciliation.account is not None:
            risk = self.risk_snapshot(self._active_symbol, loop_label=loop_label)
        plan = self.plan_trailing(loop_label=loop_label)
        return EngineCycleResult(reconcile=reconcile, conditional_sync=sync, risk=risk, trailing_plan=plan)

    def run_account_cycle(self) -> EngineCycleResult:
        """Fetch, apply and convert inline; the poller splits these across threads instead."""
        cycle = self.apply_snapshot(self.fetch_snapshot())
        if cycle.trailing_plan is None:
            return cycle
        execution = self.execute_trailing(cycle.trailing_plan)
        self.apply_trailing(execution)
        return replace(cycle, trailing=tuple(execution.results))

    @property
    def trailing_claims(self) -> frozenset[int]:
        return frozenset(self._trailing_claims)

    @property
    def last_trailing_results(self) -> tuple[TrailingConversionResult, ...]:
        return self._last_trailing

    def plan_trailing(self, *, loop_label: str = "account-refresh") -> Optional[TrailingPlan]:
        """Claim the static stops to convert from the current state; no exchange I/O.

        A claimed stop is not offered again until it leaves the open orders or a trailing
        stop appears beside it, so snapshots fetched before a conversion cannot repeat it.
        """
        if self._client is None or not self._settings.trailing_stop_enabled:
            return None
        self._trailing_claims = unsettled_claims(self._trailing_claims, self.open_orders)
        if not any(position.unrealized_profit > 0 for position in self.positions):
            return None
        candidates = find_eligible(self.positions, self.open_orders, skip_order_ids=self._trailing_claims)
        if not candidates:
            return None
        for candidate in candidates:
            self._trailing_claims.add(candidate.stop_order.order_id)
        _log_engine_event(
            event="plan_trailing",
            input_data=f"positions={len(self.positions)} open_orders={len(self.open_orders)}",
            decision="claim_static_stops",
            result=f"candidates={len(candidates)}",
            loop_label=loop_label,
            generation=self._generation,
            mode=self._settings.trailing_stop_mode,
            order_ids=",".join(str(candidate.stop_order.order_id) for candidate in candidates),
        )
        return TrailingPlan(
            generation=self._generation,
            mode=self._settings.trailing_stop_mode,
            candidates=tuple(candidates),
            position_mode=self._position_mode,
        )

    def execute_trailing(self, plan: TrailingPlan, *, loop_label: str = "trailing-worker") -> TrailingExecution:
        """Place and cancel the planned orders; safe to call from a worker thread."""
        client = self._client
        if client is None or plan.generation != self._generation:
            return TrailingExecution(generation=plan.generation)
        position_mode = plan.position_mode or self._read_position_mode(client)
        converter = TrailingStopConverter(
            place_call=client.place_order,
            cancel_call=client.cancel_order,
            rule_for=self.rule_for,
            retry_policy=self._retry_policy,
            mode=plan.mode,
        )
        results = converter.convert_all(
            plan.candidates,
            position_mode=position_mode or "ONE_WAY",
            loop_label=loop_label,
        )
        return TrailingExecution(generation=plan.generation, results=tuple(results), position_mode=position_mode)

    def apply_trailing(self, execution: TrailingExecution) -> bool:
        if execution.generation != self._generation:
            return False
        if self._position_mode is None and execution.position_mode is not None:
            self._position_mode = execution.position_mode
        for result in execution.results:
            # Nothing reached the exchange, so the stop may be offered again.
            if not result.ok and result.new_order_id is None and result.fixed_order_id is None:
                self._trailing_claims.discard(result.old_order_id)
        self._last_trailing = tuple(execution.results)
        return True

    def risk_snapshot(self, symbol: Optional[str] = None, *, loop_label: str = "loop") -> RiskSnapshot:
        target = _normalize_symbol(symbol or self._active_symbol)
        account = self._reconciliation.account
        factor = self._credential.risk_division_factor if self._credential is not None else 0
        snapshot = compute_risk_snapshot_with_logging(
            target,
            equity=account.equity if account is not None else 0.0,
            risk_division_factor=factor,
            positions=self.positions,
            open_orders=self.open_orders,
            latest_price=self.latest_price(target),
            now=self._now,
            loop_label=loop_label,
        )
        self._last_risk = snapshot
        return snapshot

    def quantity_for_loss(
        self,
        symbol: str,
        loss_amount: float,
        *,
        price: Optional[float] = None,
        stop_loss_ratio_percent: Optional[float] = None,
    ) -> QuantityFromLossResult:
        target = _normalize_symbol(symbol)
        resolved_price = price if price is not None else (self.latest_price(target) or 0.0)
        ratio = stop_loss_ratio_percent if stop_loss_ratio_percent is not None else self._defaults.stop_loss_ratio
        return quantity_from_loss_with_logging(loss_amount, resolved_price, ratio, self.rule_for(target))

    def place_order(self, request: OrderBuildRequest, *, loop_label: str = "manual") -> EngineOrderResult:
        client = self._client
        if client is None:
            return EngineOrderResult(False, "NO_ACCOUNT_SELECTED", "select an account before placing orders")
        if request.reference_price is None:
            latest = self.latest_price(request.symbol)
            if latest is not None:
                request = replace(request, reference_price=latest)
        built = build_order_with_logging(
            request,
            rule=self.rule_for(request.symbol),
            position_mode=self.position_mode(),
            loop_label=loop_label,
        )
        if not built.ok:
            return EngineOrderResult(False, built.reason_code, built.failure_reason, build=built)
        submitted = submit_order_with_logging(
            built,
            call=client.place_order,
            retry_policy=self._retry_policy,
            loop_label=loop_label,
        )
        order_id: Optional[int] = None
        if submitted.payload is not None and submitted.payload.get("orderId") is not None:
            order_id = int(submitted.payload["orderId"])
        return EngineOrderResult(
            ok=submitted.success,
            reason_code=submitted.reason_code,
            failure_reason="-" if submitted.success else (
                submitted.last_result.error_message or submitted.reason_code
            ),
            order_id=order_id,
            build=built,
            submit=submitted,
        )

    def place_conditional_order(
        self,
        request: OrderBuildRequest,
        description: str,
        *,
        loop_label: str = "manual",
    ) -> EngineOrderResult:
        result = self.place_order(request, loop_label=loop_label)
        if result.ok and result.build is not None:
            self._monitor.register_local(
                request,
                description=description,
                order_id=result.order_id or 0,
                trigger_price=result.build.adjusted_stop_price or result.build.adjusted_activation_price,
                quantity=result.build.adjusted_quantity,
            )
        return result

    def cancel_order(self, symbol: str, order_id: int, *, loop_label: str = "manual") -> GatewayRetryResult:
        client = self._client
        request = OrderCancelRequest(symbol=symbol, order_id=order_id)
        if client is None:
            return cancel_order_with_retry_with_logging(
                request,
                call=lambda _params: GatewayCallResult(ok=False, reason_code="NO_ACCOUNT_SELECTED"),
                retry_policy=RetryPolicy(max_attempts=1),
                loop_label=loop_label,
            )
        result = cancel_order_with_retry_with_logging(
            request,
            call=client.cancel_order,
            retry_policy=self._retry_policy,
            loop_label=loop_label,
        )
        if result.success:
            self._monitor.remove(int(order_id))
        return result

    def configure_symbol(self, symbol: str, *, leverage: int, margin_type: str) -> SymbolConfigResult:
        client = self._client
        target = _normalize_symbol(symbol)
        if client is None:
            return SymbolConfigResult(False, "NO_ACCOUNT_SELECTED", "select an account first")
        normalized_margin = str(margin_type or "").strip().upper()
        if normalized_margin not in ("CROSSED", "ISOLATED"):
            return SymbolConfigResult(False, "INVALID_MARGIN_TYPE", "margin_type must be CROSSED or ISOLATED")
        check = validate_leverage(leverage, self.rule_for(target))
        if not check.ok:
            return SymbolConfigResult(False, check.reason_code, check.failure_reason, leverage=check.leverage)
        margin_result = client.set_margin_type(target, normalized_margin)
        if not margin_result.ok:
            outcome = SymbolConfigResult(
                False,
                f"MARGIN_TYPE_{margin_result.reason_code}",
                margin_result.error_message or margin_result.reason_code,
                leverage=check.leverage,
                margin_type=normalized_margin,
            )
        else:
            leverage_result = client.set_leverage(target, check.leverage)
            outcome = SymbolConfigResult(
                ok=leverage_result.ok,
                reason_code="SYMBOL_CONFIGURED" if leverage_result.ok else f"LEVERAGE_{leverage_result.reason_code}",
                failure_reason="-" if leverage_result.ok else (
                    leverage_result.error_message or leverage_result.reason_code
                ),
                leverage=check.leverage,
                margin_type=normalized_margin,
            )
        _log_engine_event(
            event="configure_symbol",
            input_data=f"symbol={target} leverage={leverage} margin_type={normalized_margin}",
            decision="set_margin_type_then_leverage",
            result="configured" if outcome.ok else "failed",
            failure_reason=outcome.failure_reason,
            level="INFO" if outcome.ok else "WARNING",
            reason_code=outcome.reason_code,
        )
        return outcome

    def _batch_targets(self, positions: Optional[Sequence[Position]]) -> Sequence[Position]:
        return positions if positions is not None else list(self.positions)

    def _unavailable_batch(self, operation: BatchOperation) -> BatchResult:
        return BatchResult(operation=operation, total=0, succeeded=0, failed=0)

    def cancel_orders(self, orders: Optional[Sequence[OpenOrder]] = None) -> BatchResult:
        client = self._client
        if client is None:
            return self._unavailable_batch("CANCEL_ORDERS")
        return cancel_orders(
            orders if orders is not None else list(self.open_orders),
            cancel_call=client.cancel_order,
            delay_ms=self._settings.batch_delay_ms,
            sleep=self._sleep,
            retry_policy=self._retry_policy,
        )

    def cancel_all_for_symbols(self, symbols: Sequence[str]) -> BatchResult:
        client = self._client
        if client is None:
            return self._unavailable_batch("CANCEL_ALL_FOR_SYMBOLS")
        return cancel_all_for_symbols(
            symbols,
            cancel_all_call=client.cancel_all_open_orders,
            delay_ms=self._settings.batch_delay_ms,
            sleep=self._sleep,
        )

    def close_positions(self, positions: Optional[Sequence[Position]] = None) -> BatchResult:
        client = self._client
        if client is None:
            return self._unavailable_batch("CLOSE_POSITIONS")
        return close_positions(
            self._batch_targets(positions),
            place_call=client.place_order,
            rule_for=self.rule_for,
            position_mode=self.position_mode(),
            delay_ms=self._settings.batch_delay_ms,
            sleep=self._sleep,
            retry_policy=self._retry_policy,
        )

    def place_stop_losses(
        self,
        positions: Optional[Sequence[Position]] = None,
        *,
        stop_loss_ratio_percent: Optional[float] = None,
    ) -> BatchResult:
        client = self._client
        if client is None:
            return self._unavailable_batch("PLACE_STOP_LOSSES")
        return place_stop_losses(
            self._batch_targets(positions),
            stop_loss_ratio_percent=(
                stop_loss_ratio_percent if stop_loss_ratio_percent is not None else self._defaults.stop_loss_ratio
            ),
            place_call=client.place_order,
            rule_for=self.rule_for,
            position_mode=self.position_mode(),
            delay_ms=self._settings.batch_delay_ms,
            sleep=self._sleep,
            retry_policy=self._retry_policy,
        )

    def place_break_even_stops(self, positions: Optional[Sequence[Position]] = None) -> BatchResult:
        client = self._client
        if client is None:
            return self._unavailable_batch("PLACE_BREAK_EVEN_STOPS")
        return place_break_even_stops(
            self._batch_targets(positions),
            place_call=client.place_order,
            rule_for=self.rule_for,
            position_mode=self.position_mode(),
            delay_ms=self._settings.batch_delay_ms,
            sleep=self._sleep,
            retry_policy=self._retry_policy,
        )

    def place_profit_protection_stop(self, position: Position, amount: float) -> BatchResult:
        client = self._client
        if client is None:
            return self._unavailable_batch("PLACE_PROFIT_PROTECTION_STOP")
        return place_profit_protection_stop(
            position,
            amount,
            place_call=client.place_order,
            rule_for=self.rule_for,
            position_mode=self.position_mode(),
            retry_policy=self._retry_policy,
        )
