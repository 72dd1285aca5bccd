"""Backtest replay and the asynchronous backtest service.

replay() is deterministic: it takes ticks in ascending time order and never
reads the clock. BacktestService validates requests synchronously, then runs
each replay as an independent task on its own worker pool.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from vpp_trading.backtest.metrics import BacktestMetrics, compute_metrics
from vpp_trading.backtest.simulator import BacktestSimulator, PortfolioSnapshot, Trade
from vpp_trading.config import settings
from vpp_trading.connectors.market_data import MarketDataProvider
from vpp_trading.errors import PersistenceError, ValidationError
from vpp_trading.execution.gateway import SimulatedExecutionGateway
from vpp_trading.execution.pipeline import submit_order
from vpp_trading.risk.risk_gate import RiskGate
from vpp_trading.store.db import (
    DEFAULT_DB_PATH,
    get_backtest_runs,
    get_strategy,
    log_backtest_run,
)
from vpp_trading.store.models import BacktestRunRecord, MarketTick, Strategy, to_iso
from vpp_trading.strategy.actions import parse_actions
from vpp_trading.strategy.conditions import build_context, evaluate_conditions, parse_conditions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BacktestRequest:
    strategy_id: int
    start: datetime
    end: datetime
    initial_capital: float
    commission_rate: float | None = None
    slippage_rate: float | None = None


@dataclass
class BacktestResult:
    strategy_id: int
    strategy_name: str
    market: str
    start: datetime
    end: datetime
    initial_capital: float
    metrics: BacktestMetrics
    trades: list[Trade] = field(default_factory=list)
    snapshots: list[PortfolioSnapshot] = field(default_factory=list)
    run_id: int | None = None


def validate_request(req: BacktestRequest) -> None:
    if req.strategy_id is None:
        raise ValidationError("strategy_id is required")
    if req.start is None or req.end is None:
        raise ValidationError("start and end are required")
    if req.start > req.end:
        raise ValidationError(f"start {req.start} is after end {req.end}")
    if req.initial_capital is None or req.initial_capital <= 0:
        raise ValidationError(f"initial_capital must be positive, got {req.initial_capital}")
    for name in ("commission_rate", "slippage_rate"):
        rate = getattr(req, name)
        if rate is not None and rate < 0:
            raise ValidationError(f"{name} must be >= 0, got {rate}")


def replay(
    strategy: Strategy,
    ticks: list[MarketTick],
    initial_capital: float,
    commission_rate: float | None = None,
    slippage_rate: float | None = None,
    risk_gate: RiskGate | None = None,
) -> BacktestSimulator:
    """Replay ticks through the strategy and return the finished simulator."""
    conditions = parse_conditions(strategy.conditions)
    actions = parse_actions(strategy.actions)
    sim = BacktestSimulator(initial_capital, commission_rate, slippage_rate)
    gateway = SimulatedExecutionGateway(sim)
    gate = risk_gate or RiskGate()

    for tick in sorted(ticks, key=lambda t: t.timestamp):
        gateway.observe(tick)
        ctx = build_context(tick, position=gateway.position(tick.market), cash=sim.cash)
        if evaluate_conditions(conditions, ctx):
            for template in actions:
                order = template.build_order(
                    tick, strategy_id=strategy.id, resource_id=strategy.resource_id
                )
                if order is not None:
                    submit_order(order, gateway, gate)
        # 取引の有無にかかわらず毎 tick スナップショットを残す
        sim.update_portfolio(tick)
    return sim


class BacktestService:
    def __init__(
        self,
        market_data: MarketDataProvider,
        db_path: Path | str = DEFAULT_DB_PATH,
        max_workers: int | None = None,
        risk_gate: RiskGate | None = None,
    ) -> None:
        self.market_data = market_data
        self.db_path = db_path
        self.risk_gate = risk_gate or RiskGate()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.backtest_max_workers,
            thread_name_prefix="backtest",
        )

    def run_backtest(
        self,
        strategy_id: int,
        start: datetime,
        end: datetime,
        initial_capital: float,
        commission_rate: float | None = None,
        slippage_rate: float | None = None,
    ) -> Future[BacktestResult]:
        """Validate now, replay asynchronously.

        Raises ValidationError immediately for bad parameters or an unknown
        strategy. Store failures during the run surface from Future.result()
        as PersistenceError.
        """
        req = BacktestRequest(
            strategy_id=strategy_id,
            start=start,
            end=end,
            initial_capital=initial_capital,
            commission_rate=commission_rate,
            slippage_rate=slippage_rate,
        )
        strategy = self._prepare(req)
        return self._pool.submit(self.run, req, strategy)

    def run_batch_backtest(self, requests: list[BacktestRequest]) -> list[Future[BacktestResult]]:
        """Submit several backtests; any invalid request raises before one is submitted."""
        prepared = [(req, self._prepare(req)) for req in requests]
        return [self._pool.submit(self.run, req, strategy) for req, strategy in prepared]

    def _prepare(self, req: BacktestRequest) -> Strategy:
        validate_request(req)
        strategy = self._load_strategy(req.strategy_id)
        # payload 不正もここで検出する
        parse_conditions(strategy.conditions)
        parse_actions(strategy.actions)
        return strategy

    def compare_backtests(
        self,
        strategy_ids: list[int],
        start: datetime,
        end: datetime,
        initial_capital: float,
    ) -> list[BacktestResult]:
        """Run the same window for several strategies, best total return first."""
        futures = self.run_batch_backtest(
            [BacktestRequest(sid, start, end, initial_capital) for sid in strategy_ids]
        )
        results = [f.result() for f in futures]
        return sorted(results, key=lambda r: r.metrics.total_return, reverse=True)

    def get_backtest_history(self, strategy_id: int) -> list[BacktestRunRecord]:
        try:
            return get_backtest_runs(strategy_id, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot read backtest history: {e}") from e

    def run(self, req: BacktestRequest, strategy: Strategy) -> BacktestResult:
        """Synchronous body of a backtest task."""
        try:
            ticks = self.market_data.ticks_between(strategy.market, req.start, req.end)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot load ticks for {strategy.market}: {e}") from e

        sim = replay(
            strategy,
            ticks,
            req.initial_capital,
            req.commission_rate,
            req.slippage_rate,
            risk_gate=self.risk_gate,
        )
        metrics = compute_metrics(sim.trades, sim.snapshots, req.initial_capital)
        result = BacktestResult(
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            market=strategy.market,
            start=req.start,
            end=req.end,
            initial_capital=req.initial_capital,
            metrics=metrics,
            trades=list(sim.trades),
            snapshots=list(sim.snapshots),
        )

        try:
            result.run_id = log_backtest_run(
                strategy_id=strategy.id,
                strategy_name=strategy.name,
                market=strategy.market,
                start_time=to_iso(req.start),
                end_time=to_iso(req.end),
                initial_capital=req.initial_capital,
                final_capital=metrics.final_capital,
                total_return=metrics.total_return,
                annualized_return=metrics.annualized_return,
                max_drawdown=metrics.max_drawdown,
                sharpe_ratio=metrics.sharpe_ratio,
                win_rate=metrics.win_rate,
                total_trades=metrics.total_trades,
                profitable_trades=metrics.profitable_trades,
                average_profit=metrics.average_profit,
                average_loss=metrics.average_loss,
                max_consecutive_wins=metrics.max_consecutive_wins,
                max_consecutive_losses=metrics.max_consecutive_losses,
                db_path=self.db_path,
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"backtest run for strategy {strategy.id} not recorded: {e}") from e

        logger.info(
            "Backtest strategy=%d %s ticks=%d trades=%d return=%.4f dd=%.4f sharpe=%.2f",
            strategy.id, strategy.market, len(ticks), metrics.total_trades,
            metrics.total_return, metrics.max_drawdown, metrics.sharpe_ratio,
        )
        return result

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _load_strategy(self, strategy_id: int) -> Strategy:
        try:
            strategy = get_strategy(strategy_id, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot load strategy {strategy_id}: {e}") from e
        if strategy is None:
            raise ValidationError(f"strategy {strategy_id} not found")
        return strategy
