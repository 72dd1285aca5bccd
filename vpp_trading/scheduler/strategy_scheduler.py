"""Strategy scheduler: executor registry, global trading switch, periodic tick.

One scheduler instance owns its registry and flag; there is no process-wide
state. The lock is only taken to register/deregister executors or flip the
global flag. tick() reads snapshots without it, so one slow strategy never
serializes the others.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from vpp_trading.config import settings
from vpp_trading.connectors.market_data import MarketDataProvider
from vpp_trading.errors import PersistenceError, ValidationError
from vpp_trading.execution.gateway import ExecutionGateway
from vpp_trading.risk.risk_gate import RiskGate
from vpp_trading.scheduler.executor import StrategyExecutor
from vpp_trading.store.db import DEFAULT_DB_PATH, get_strategy, update_strategy_status
from vpp_trading.store.models import StrategyStatus

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Summary of one scheduler tick."""

    skipped: bool = False  # global trading disabled
    executors_run: int = 0
    executor_failures: int = 0
    orders_submitted: int = 0
    orders_failed: int = 0


class StrategyScheduler:
    def __init__(
        self,
        gateway: ExecutionGateway,
        market_data: MarketDataProvider,
        risk_gate: RiskGate | None = None,
        db_path: Path | str = DEFAULT_DB_PATH,
        max_workers: int | None = None,
        market_window: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.market_data = market_data
        self.risk_gate = risk_gate or RiskGate()
        self.db_path = db_path
        self.market_window = market_window or settings.scheduler_market_window

        self._executors: dict[int, StrategyExecutor] = {}
        self._global_enabled = settings.global_trading_enabled
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.scheduler_max_workers,
            thread_name_prefix="strategy",
        )
        self._stop_event = threading.Event()
        self._timer_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # registry
    # ------------------------------------------------------------------

    def start_execution(self, strategy_id: int) -> bool:
        """Register an ACTIVE strategy. Returns False if it was already running.

        A strategy stored as RUNNING without an executor in this scheduler was
        left behind by a process that exited without stopping it; it is
        adopted like an ACTIVE one.
        """
        if strategy_id in self._executors:
            logger.info("Strategy %d already running, ignoring start", strategy_id)
            return False

        try:
            strategy = get_strategy(strategy_id, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot load strategy {strategy_id}: {e}") from e
        if strategy is None:
            raise ValidationError(f"strategy {strategy_id} not found")

        with self._lock:
            # 同時 start の後発スレッドは RUNNING を読むことがあるので先に登録を見る
            if strategy_id in self._executors:
                logger.info("Strategy %d already running, ignoring start", strategy_id)
                return False
            if strategy.status not in (StrategyStatus.ACTIVE, StrategyStatus.RUNNING):
                raise ValidationError(
                    f"strategy {strategy_id} must be ACTIVE to start (status={strategy.status})"
                )
            executor = StrategyExecutor(
                strategy,
                market_data=self.market_data,
                gateway=self.gateway,
                risk_gate=self.risk_gate,
                window=self.market_window,
                db_path=self.db_path,
            )
            self._executors[strategy_id] = executor

        if strategy.status == StrategyStatus.RUNNING:
            logger.warning("Strategy %d was left RUNNING without an executor, adopting it", strategy_id)

        started_at = datetime.now(timezone.utc).isoformat()
        try:
            update_strategy_status(
                strategy_id,
                StrategyStatus.RUNNING,
                last_execution_time=started_at,
                db_path=self.db_path,
            )
        except sqlite3.Error as e:
            with self._lock:
                self._executors.pop(strategy_id, None)
            raise PersistenceError(f"cannot mark strategy {strategy_id} RUNNING: {e}") from e

        logger.info("Started strategy %d (%s) on %s", strategy_id, strategy.name, strategy.market)
        return True

    def stop_execution(self, strategy_id: int) -> bool:
        """Deregister a strategy. Returns False if it was not running."""
        with self._lock:
            executor = self._executors.pop(strategy_id, None)
        if executor is None:
            logger.info("Strategy %d not running, ignoring stop", strategy_id)
            return False

        executor.stop()
        try:
            update_strategy_status(strategy_id, StrategyStatus.ACTIVE, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot revert strategy {strategy_id} to ACTIVE: {e}") from e
        logger.info("Stopped strategy %d", strategy_id)
        return True

    def stop_all(self) -> int:
        stopped = 0
        for strategy_id in self.list_running():
            if self.stop_execution(strategy_id):
                stopped += 1
        logger.info("Stopped %d strategies", stopped)
        return stopped

    def list_running(self) -> list[int]:
        # list(dict) は GIL 下で原子的
        return sorted(list(self._executors))

    def set_global_trading_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._global_enabled = enabled
        logger.warning("Global trading %s", "ENABLED" if enabled else "DISABLED")

    def is_global_trading_enabled(self) -> bool:
        return self._global_enabled

    # ------------------------------------------------------------------
    # tick
    # ------------------------------------------------------------------

    def tick(self) -> TickSummary:
        """Run every registered executor once on the worker pool."""
        if not self._global_enabled:
            logger.debug("Global trading disabled, tick skipped")
            return TickSummary(skipped=True)

        executors = list(self._executors.values())
        summary = TickSummary()
        if not executors:
            return summary

        futures = {self._pool.submit(e.execute): e for e in executors}
        for fut in as_completed(futures):
            executor = futures[fut]
            summary.executors_run += 1
            try:
                result = fut.result()
            except Exception:
                summary.executor_failures += 1
                logger.exception("Strategy %d execute() failed", executor.strategy_id)
                continue
            summary.orders_submitted += result.orders_submitted
            summary.orders_failed += result.orders_failed

        if summary.orders_submitted or summary.executor_failures:
            logger.info(
                "Tick: executors=%d failures=%d orders=%d failed_orders=%d",
                summary.executors_run,
                summary.executor_failures,
                summary.orders_submitted,
                summary.orders_failed,
            )
        return summary

    # ------------------------------------------------------------------
    # timer
    # ------------------------------------------------------------------

    def start(self, interval_sec: float | None = None) -> None:
        """Start the periodic driver thread."""
        if self._timer_thread is not None and self._timer_thread.is_alive():
            return
        interval = interval_sec or settings.scheduler_tick_sec
        self._stop_event.clear()
        self._timer_thread = threading.Thread(
            target=self._timer_loop, args=(interval,), name="strategy-scheduler", daemon=True
        )
        self._timer_thread.start()
        logger.info("Scheduler started (interval=%.1fs)", interval)

    def _timer_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(interval)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the driver thread and the worker pool. Registrations are kept."""
        self._stop_event.set()
        if self._timer_thread is not None and self._timer_thread.is_alive():
            self._timer_thread.join(timeout=10)
        self._timer_thread = None
        self._pool.shutdown(wait=wait)
        logger.info("Scheduler shut down")
