from __future__ import annotations

from dataclasses import fields, replace
from typing import Any, Callable, Optional, Sequence

from .event_logging import StructuredLogEvent, log_structured_event
from .exchange_models import AccountSnapshot, OpenOrder, Position
from .reconciliation_models import ExchangeSnapshot, ReconcileResult
from .risk_capital import margin_used

ReconcileListener = Callable[[ReconcileResult], None]

_POSITION_IDENTITY_FIELDS = ("symbol", "position_side", "selected")
_ORDER_IDENTITY_FIELDS = ("order_id", "selected")


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _patch_in_place(target: Any, source: Any, *, skip: Sequence[str]) -> bool:
    changed = False
    for item in fields(target):
        if item.name in skip:
            continue
        value = getattr(source, item.name)
        if getattr(target, item.name) != value:
            setattr(target, item.name, value)
            changed = True
    return changed


def _position_keys(positions: Sequence[Position]) -> list[str]:
    return [position.key for position in positions]


def _order_ids(orders: Sequence[OpenOrder]) -> list[int]:
    return [order.order_id for order in orders]


class ReconciliationEngine:
    """Merges exchange snapshots into the owner thread's position/order lists.

    When the set of position keys and order ids is unchanged the existing objects are
    patched in place, so list identity and ``selected`` survive. Any membership change
    rebuilds the lists and re-marks the previously selected keys.
    """

    def __init__(self, *, generation: int = 0) -> None:
        self._generation = generation
        self._positions: list[Position] = []
        self._open_orders: list[OpenOrder] = []
        self._account: Optional[AccountSnapshot] = None
        self._used_margin = 0.0
        self._listeners: list[ReconcileListener] = []

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def positions(self) -> list[Position]:
        return self._positions

    @property
    def open_orders(self) -> list[OpenOrder]:
        return self._open_orders

    @property
    def account(self) -> Optional[AccountSnapshot]:
        return self._account

    @property
    def used_margin(self) -> float:
        return self._used_margin

    def reset(self, generation: int) -> None:
        self._generation = generation
        self._positions = []
        self._open_orders = []
        self._account = None
        self._used_margin = 0.0

    def subscribe(self, listener: ReconcileListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, result: ReconcileResult) -> None:
        for listener in list(self._listeners):
            listener(result)

    def find_position(self, symbol: str, position_side: str = "BOTH") -> Optional[Position]:
        key = f"{(symbol or '').strip().upper()}_{position_side}"
        for position in self._positions:
            if position.key == key:
                return position
        return None

    def positions_for_symbol(self, symbol: str) -> list[Position]:
        target = (symbol or "").strip().upper()
        return [position for position in self._positions if position.symbol == target]

    def set_selected(self, *, position_keys: Sequence[str] = (), order_ids: Sequence[int] = ()) -> None:
        keys = set(position_keys)
        ids = set(order_ids)
        for position in self._positions:
            position.selected = position.key in keys
        for order in self._open_orders:
            order.selected = order.order_id in ids

    def selected_positions(self) -> list[Position]:
        return [position for position in self._positions if position.selected]

    def selected_orders(self) -> list[OpenOrder]:
        return [order for order in self._open_orders if order.selected]

    def apply(self, snapshot: ExchangeSnapshot) -> ReconcileResult:
        if snapshot.generation != self._generation:
            return ReconcileResult(
                ok=False,
                path="SKIPPED",
                reason_code="RECONCILE_STALE_ACCOUNT",
                failure_reason=f"snapshot_generation={snapshot.generation} current={self._generation}",
                generation=self._generation,
                position_count=len(self._positions),
                order_count=len(self._open_orders),
                used_margin=self._used_margin,
            )
        stale_parts = snapshot.failed_parts
        if len(stale_parts) == 3:
            return ReconcileResult(
                ok=False,
                path="SKIPPED",
                reason_code=f"RECONCILE_SNAPSHOT_FAILED_{snapshot.reason_code}",
                failure_reason=snapshot.failure_reason or snapshot.reason_code,
                generation=self._generation,
                position_count=len(self._positions),
                order_count=len(self._open_orders),
                used_margin=self._used_margin,
                stale_parts=stale_parts,
            )

        if snapshot.account is not None:
            self._account = snapshot.account

        fresh_positions = (
            [replace(position, selected=False) for position in snapshot.positions]
            if snapshot.positions is not None
            else None
        )
        fresh_orders = (
            [replace(order, selected=False) for order in snapshot.open_orders]
            if snapshot.open_orders is not None
            else None
        )

        current_keys = _position_keys(self._positions)
        current_ids = _order_ids(self._open_orders)
        fresh_keys = _position_keys(fresh_positions) if fresh_positions is not None else current_keys
        fresh_ids = _order_ids(fresh_orders) if fresh_orders is not None else current_ids
        current_key_set, fresh_key_set = set(current_keys), set(fresh_keys)
        current_id_set, fresh_id_set = set(current_ids), set(fresh_ids)
        added_positions = tuple(key for key in fresh_keys if key not in current_key_set)
        removed_positions = tuple(key for key in current_keys if key not in fresh_key_set)
        added_orders = tuple(order_id for order_id in fresh_ids if order_id not in current_id_set)
        removed_orders = tuple(order_id for order_id in current_ids if order_id not in fresh_id_set)
        membership_same = not (added_positions or removed_positions or added_orders or removed_orders)

        patched = 0
        reselected = 0
        if membership_same:
            path = "INTELLIGENT"
            if fresh_positions is not None:
                by_key = {position.key: position for position in fresh_positions}
                for position in self._positions:
                    if _patch_in_place(position, by_key[position.key], skip=_POSITION_IDENTITY_FIELDS):
                        patched += 1
            if fresh_orders is not None:
                by_id = {order.order_id: order for order in fresh_orders}
                for order in self._open_orders:
                    if _patch_in_place(order, by_id[order.order_id], skip=_ORDER_IDENTITY_FIELDS):
                        patched += 1
        else:
            path = "FULL_REBUILD"
            selected_keys = {position.key for position in self._positions if position.selected}
            selected_ids = {order.order_id for order in self._open_orders if order.selected}
            if fresh_positions is not None:
                self._positions = fresh_positions
            if fresh_orders is not None:
                self._open_orders = fresh_orders
            for position in self._positions:
                if position.key in selected_keys:
                    position.selected = True
                    reselected += 1
            for order in self._open_orders:
                if order.order_id in selected_ids:
                    order.selected = True
                    reselected += 1

        # Derived after the list is complete so observers never see a partial total.
        self._used_margin = margin_used(self._positions)

        result = ReconcileResult(
            ok=True,
            path=path,
            reason_code="RECONCILE_PARTIAL" if stale_parts else f"RECONCILE_{path}",
            failure_reason=(
                f"stale_parts={','.join(stale_parts)} {snapshot.failure_reason}".strip()
                if stale_parts
                else "-"
            ),
            generation=self._generation,
            position_count=len(self._positions),
            order_count=len(self._open_orders),
            added_positions=added_positions,
            removed_positions=removed_positions,
            added_orders=added_orders,
            removed_orders=removed_orders,
            patched=patched,
            reselected=reselected,
            used_margin=self._used_margin,
            stale_parts=stale_parts,
        )
        self._notify(result)
        return result

    def apply_with_logging(self, snapshot: ExchangeSnapshot, *, loop_label: str = "loop") -> ReconcileResult:
        before = f"positions={len(self._positions)}/orders={len(self._open_orders)}"
        result = self.apply(snapshot)
        log_structured_event(
            StructuredLogEvent(
                component="reconciliation",
                event="apply_snapshot",
                input_data=(
                    f"generation={snapshot.generation} ok={snapshot.ok} "
                    f"failed_parts={','.join(snapshot.failed_parts) or '-'}"
                ),
                decision="compare_membership_then_patch_or_rebuild",
                result=result.path.lower(),
                state_before=before,
                state_after=f"positions={result.position_count}/orders={result.order_count}",
                failure_reason=result.failure_reason,
                level="INFO" if result.ok and not result.stale_parts else "WARNING",
            ),
            loop_label=loop_label,
            reason_code=result.reason_code,
            added_positions=_normalize(",".join(result.added_positions)),
            removed_positions=_normalize(",".join(result.removed_positions)),
            added_orders=_normalize(",".join(str(item) for item in result.added_orders)),
            removed_orders=_normalize(",".join(str(item) for item in result.removed_orders)),
            patched=result.patched,
            reselected=result.reselected,
            used_margin=result.used_margin,
        )
        return result
