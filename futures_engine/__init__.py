from .batch_operations import (
    cancel_all_for_symbols,
    cancel_orders,
    close_positions,
    place_break_even_stops,
    place_profit_protection_stop,
    place_stop_losses,
)
from .batch_operations_models import BatchItemResult, BatchResult
from .conditional_order_models import (
    ConditionalOrderPlan,
    ConditionalOrderRecord,
    ConditionalSyncResult,
    StatusTransitionResult,
)
from .conditional_orders import (
    ConditionalOrderMonitor,
    breakout_order_type,
    build_breakout_orders,
    classify_open_order,
    classify_order,
    default_breakout_prices,
    map_exchange_status,
    plan_add_position_order,
    plan_breakout_order,
    plan_close_position_order,
    record_from_open_order,
    reduce_only_view,
    sync_conditional_records,
    transition_status,
)
from .config import AccountCredential, EngineSettings, TradingDefaults, load_engine_settings
from .engine import TradingEngine
from .engine_models import (
    EngineCycleResult,
    EngineOrderResult,
    PriceFetch,
    SymbolConfigResult,
    TrailingExecution,
    TrailingPlan,
)
from .event_logging import StructuredLogEvent, format_structured_event, log_structured_event
from .exchange_client import BinanceFuturesClient, build_query, create_exchange_client, sign_query
from .exchange_models import (
    AccountSnapshot,
    GatewayCallResult,
    GatewayRetryResult,
    OpenOrder,
    Position,
    RetryPolicy,
    SymbolRule,
)
from .exchange_parsing import (
    parse_account,
    parse_open_order,
    parse_open_orders,
    parse_position,
    parse_positions,
    parse_symbol_rules,
    parse_ticker_price,
)
from .mock_exchange import OfflineExchangeClient, synthetic_base_price, synthetic_price
from .order_builder import (
    build_order,
    build_order_with_logging,
    cancel_order_with_retry,
    cancel_order_with_retry_with_logging,
    execute_gateway_with_retry,
    prepare_cancel_order,
    resolve_position_side,
    round_callback_rate,
    submit_order,
    submit_order_with_logging,
    validate_leverage,
)
from .order_builder_models import (
    LeverageCheckResult,
    OrderBuildRequest,
    OrderBuildResult,
    OrderCancelRequest,
    ValidationError,
)
from .polling import EnginePoller, OwnerThreadQueue, PeriodicWorker
from .precision import (
    adjust_price,
    adjust_price_for_symbol,
    adjust_quantity,
    adjust_quantity_for_symbol,
    fallback_precision,
    is_on_step,
    price_decimals,
)
from .reconciliation import ReconciliationEngine
from .reconciliation_models import ExchangeSnapshot, ReconcileResult
from .risk_capital import (
    add_position_trigger_price,
    collect_entry_exposures,
    collect_protective_stops,
    compute_risk_snapshot,
    compute_risk_snapshot_with_logging,
    expected_loss,
    margin_used,
    pnl_risk_capital,
    profit_protection_stop_price,
    profit_trigger_price,
    quantity_from_loss,
    quantity_from_loss_with_logging,
    standard_risk_capital,
    stop_loss_amount_from_ratio,
    stop_loss_price,
    total_risk_capital,
)
from .risk_capital_models import (
    EntryExposure,
    PnlRiskResult,
    QuantityFromLossResult,
    RiskSnapshot,
    RiskValueResult,
    StopSegment,
)
from .rule_cache import RuleCache, build_fallback_rule, fallback_limits, max_leverage_for_symbol
from .rule_cache_models import FallbackLimits, RuleLookupResult
from .trailing_stop import (
    TrailingStopConverter,
    convert,
    convert_with_logging,
    coexist_quantity,
    derive_callback_rate,
    find_eligible,
    profit_percent,
    tiered_callback_rate,
    unsettled_claims,
)
from .trailing_stop_models import (
    TRAILING_STOP_MODES,
    TrailingCandidate,
    TrailingConversionResult,
    TrailingStopMode,
)

__all__ = [
    "AccountCredential",
    "AccountSnapshot",
    "BatchItemResult",
    "BatchResult",
    "BinanceFuturesClient",
    "ConditionalOrderMonitor",
    "ConditionalOrderPlan",
    "ConditionalOrderRecord",
    "ConditionalSyncResult",
    "EngineCycleResult",
    "EngineOrderResult",
    "EnginePoller",
    "EngineSettings",
    "EntryExposure",
    "ExchangeSnapshot",
    "FallbackLimits",
    "GatewayCallResult",
    "GatewayRetryResult",
    "LeverageCheckResult",
    "OfflineExchangeClient",
    "OpenOrder",
    "OrderBuildRequest",
    "OrderBuildResult",
    "OrderCancelRequest",
    "OwnerThreadQueue",
    "PeriodicWorker",
    "PnlRiskResult",
    "Position",
    "PriceFetch",
    "QuantityFromLossResult",
    "ReconcileResult",
    "ReconciliationEngine",
    "RetryPolicy",
    "RiskSnapshot",
    "RiskValueResult",
    "RuleCache",
    "RuleLookupResult",
    "StatusTransitionResult",
    "StopSegment",
    "StructuredLogEvent",
    "TRAILING_STOP_MODES",
    "SymbolConfigResult",
    "SymbolRule",
    "TradingDefaults",
    "TradingEngine",
    "TrailingCandidate",
    "TrailingConversionResult",
    "TrailingExecution",
    "TrailingPlan",
    "TrailingStopConverter",
    "TrailingStopMode",
    "ValidationError",
    "add_position_trigger_price",
    "adjust_price",
    "adjust_price_for_symbol",
    "adjust_quantity",
    "adjust_quantity_for_symbol",
    "breakout_order_type",
    "build_breakout_orders",
    "build_fallback_rule",
    "build_order",
    "build_order_with_logging",
    "build_query",
    "cancel_all_for_symbols",
    "cancel_order_with_retry",
    "cancel_order_with_retry_with_logging",
    "cancel_orders",
    "classify_open_order",
    "classify_order",
    "close_positions",
    "coexist_quantity",
    "collect_entry_exposures",
    "collect_protective_stops",
    "compute_risk_snapshot",
    "compute_risk_snapshot_with_logging",
    "convert",
    "convert_with_logging",
    "create_exchange_client",
    "default_breakout_prices",
    "derive_callback_rate",
    "execute_gateway_with_retry",
    "expected_loss",
    "fallback_limits",
    "fallback_precision",
    "find_eligible",
    "format_structured_event",
    "is_on_step",
    "load_engine_settings",
    "log_structured_event",
    "map_exchange_status",
    "margin_used",
    "max_leverage_for_symbol",
    "parse_account",
    "parse_open_order",
    "parse_open_orders",
    "parse_position",
    "parse_positions",
    "parse_symbol_rules",
    "parse_ticker_price",
    "place_break_even_stops",
    "place_profit_protection_stop",
    "place_stop_losses",
    "plan_add_position_order",
    "plan_breakout_order",
    "plan_close_position_order",
    "pnl_risk_capital",
    "prepare_cancel_order",
    "price_decimals",
    "profit_percent",
    "profit_protection_stop_price",
    "profit_trigger_price",
    "quantity_from_loss",
    "quantity_from_loss_with_logging",
    "record_from_open_order",
    "reduce_only_view",
    "resolve_position_side",
    "round_callback_rate",
    "sign_query",
    "standard_risk_capital",
    "stop_loss_amount_from_ratio",
    "stop_loss_price",
    "submit_order",
    "submit_order_with_logging",
    "sync_conditional_records",
    "synthetic_base_price",
    "synthetic_price",
    "tiered_callback_rate",
    "total_risk_capital",
    "transition_status",
    "unsettled_claims",
    "validate_leverage",
]
