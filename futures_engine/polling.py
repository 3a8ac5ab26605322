from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Callable, Optional

from .config import EngineSettings
from .engine_models import TrailingExecution, TrailingPlan
from .logging_utils import log_engine
from .reconciliation_models import ExchangeSnapshot

if TYPE_CHECKING:
    from .engine import TradingEngine

STOP_JOIN_TIMEOUT_SEC = 5.0


def _spawn_daemon(task: Callable[[], None]) -> None:
    threading.Thread(target=task, name="trailing-stop", daemon=True).start()


class OwnerThreadQueue:
    """Callables posted by workers and executed only when the owner thread drains them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: list[Callable[[], None]] = []

    def post(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._pending.append(callback)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._pending)
            self._pending.clear()
        return dropped

    def drain(self, max_count: int = 50) -> int:
        with self._lock:
            if not self._pending:
                return 0
            count = min(max_count, len(self._pending))
            batch = self._pending[:count]
            del self._pending[:count]
        for callback in batch:
            callback()
        return len(batch)


class PeriodicWorker:
    def __init__(self, name: str, interval_seconds: float, task: Callable[[], None]) -> None:
        self._name = name
        self._interval = max(0.05, float(interval_seconds))
        self._task = task
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> bool:
        if self.is_running():
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        log_engine("polling", "worker_started", worker=self._name, interval_sec=self._interval)
        return True

    def stop(self, timeout_seconds: float = STOP_JOIN_TIMEOUT_SEC) -> bool:
        self._stop.set()
        thread = self._thread
        if thread is None or not thread.is_alive() or threading.current_thread() is thread:
            return True
        deadline = time.time() + timeout_seconds
        while thread.is_alive() and time.time() < deadline:
            thread.join(timeout=0.2)
        if thread.is_alive():
            log_engine(
                "polling",
                "worker_stop_timeout",
                level="WARNING",
                worker=self._name,
                timeout_sec=timeout_seconds,
            )
            return False
        log_engine("polling", "worker_stopped", worker=self._name, ticks=self._tick_count)
        return True

    def run_once(self) -> None:
        self._tick_count += 1
        try:
            self._task()
        except Exception as exc:
            log_engine("polling", "worker_tick_error", level="ERROR", worker=self._name, error=repr(exc))

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self._interval)


class EnginePoller:
    """Drives the price and account timers for one engine.

    Timer workers only perform exchange reads and trailing-stop orders go out on a
    spawned worker; every state mutation is posted to ``queue`` and applied when the
    owner thread drains it.
    """

    def __init__(
        self,
        engine: TradingEngine,
        *,
        settings: Optional[EngineSettings] = None,
        queue: Optional[OwnerThreadQueue] = None,
        symbol_provider: Optional[Callable[[], str]] = None,
        spawn: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> None:
        self._engine = engine
        self._settings = settings if settings is not None else engine.settings
        self._queue = queue if queue is not None else OwnerThreadQueue()
        self._symbol_provider = symbol_provider
        self._spawn = spawn if spawn is not None else _spawn_daemon
        self._price_worker = PeriodicWorker(
            "price-refresh",
            self._settings.price_refresh_seconds,
            self.price_tick,
        )
        self._account_worker = PeriodicWorker(
            "account-refresh",
            self._settings.account_refresh_seconds,
            self.account_tick,
        )

    @property
    def queue(self) -> OwnerThreadQueue:
        return self._queue

    def is_running(self) -> bool:
        return self._price_worker.is_running() or self._account_worker.is_running()

    def _active_symbol(self) -> str:
        if self._symbol_provider is not None:
            return self._symbol_provider()
        return self._engine.active_symbol

    def price_tick(self) -> None:
        symbol = self._active_symbol()
        if not symbol:
            return
        fetched = self._engine.fetch_price(symbol)
        self._queue.post(lambda: self._engine.apply_price(fetched))

    def account_tick(self) -> None:
        if not self._engine.has_account:
            return
        snapshot = self._engine.fetch_snapshot()
        self._queue.post(lambda: self._apply_snapshot(snapshot))

    def _apply_snapshot(self, snapshot: ExchangeSnapshot) -> None:
        cycle = self._engine.apply_snapshot(snapshot)
        plan = cycle.trailing_plan
        if plan is not None:
            self._spawn(lambda: self._run_trailing(plan))

    def _run_trailing(self, plan: TrailingPlan) -> None:
        try:
            execution = self._engine.execute_trailing(plan)
        except Exception as exc:
            log_engine(
                "polling",
                "trailing_worker_error",
                level="ERROR",
                generation=plan.generation,
                candidates=len(plan.candidates),
                error=repr(exc),
            )
            execution = TrailingExecution(generation=plan.generation)
        self._queue.post(lambda: self._engine.apply_trailing(execution))

    def start(self) -> bool:
        started_price = self._price_worker.start()
        started_account = self._account_worker.start()
        return started_price or started_account

    def stop(self) -> bool:
        price_stopped = self._price_worker.stop()
        account_stopped = self._account_worker.stop()
        dropped = self._queue.clear()
        if dropped:
            log_engine("polling", "pending_results_dropped", dropped=dropped)
        return price_stopped and account_stopped
