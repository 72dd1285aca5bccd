"""Backtest performance metrics computed from the simulator ledgers.

Win/loss statistics are taken over SELL trades only, since a BUY realizes
nothing. Drawdown and the Sharpe ratio use the snapshot equity curve, which
starts from the initial capital.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from vpp_trading.backtest.simulator import PortfolioSnapshot, Trade
from vpp_trading.config import settings


@dataclass(frozen=True)
class BacktestMetrics:
    final_capital: float
    total_return: float
    annualized_return: float
    max_drawdown: float
    sharpe_ratio: float
    win_rate: float
    total_trades: int
    profitable_trades: int
    average_profit: float
    average_loss: float
    max_consecutive_wins: int
    max_consecutive_losses: int


def compute_metrics(
    trades: list[Trade],
    snapshots: list[PortfolioSnapshot],
    initial_capital: float,
    annualize_factor: float | None = None,
) -> BacktestMetrics:
    factor = settings.backtest_annualize_factor if annualize_factor is None else annualize_factor
    final_capital = snapshots[-1].total_assets if snapshots else initial_capital
    total_return = (final_capital - initial_capital) / initial_capital

    profits = [t.profit for t in trades if t.side == "SELL" and t.profit is not None]
    wins = [p for p in profits if p > 0]
    losses = [p for p in profits if p < 0]
    max_wins, max_losses = max_streaks(profits)

    return BacktestMetrics(
        final_capital=final_capital,
        total_return=total_return,
        annualized_return=annualized_return(total_return, snapshots),
        max_drawdown=max_drawdown(snapshots, initial_capital),
        sharpe_ratio=sharpe_ratio(snapshots, initial_capital, factor),
        win_rate=len(wins) / len(profits) if profits else 0.0,
        total_trades=len(trades),
        profitable_trades=len(wins),
        average_profit=sum(wins) / len(wins) if wins else 0.0,
        average_loss=sum(losses) / len(losses) if losses else 0.0,
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
    )


def max_streaks(profits: list[float]) -> tuple[int, int]:
    """Longest runs of winning / losing trades. A zero-profit trade ends both runs."""
    max_wins = max_losses = 0
    cur_wins = cur_losses = 0
    for p in profits:
        if p > 0:
            cur_wins += 1
            cur_losses = 0
        elif p < 0:
            cur_losses += 1
            cur_wins = 0
        else:
            cur_wins = cur_losses = 0
        max_wins = max(max_wins, cur_wins)
        max_losses = max(max_losses, cur_losses)
    return max_wins, max_losses


def max_drawdown(snapshots: list[PortfolioSnapshot], initial_capital: float) -> float:
    """Largest peak-to-trough fall of total assets, as a fraction of the peak."""
    peak = initial_capital
    worst = 0.0
    for s in snapshots:
        if s.total_assets > peak:
            peak = s.total_assets
        if peak > 0:
            worst = max(worst, (peak - s.total_assets) / peak)
    return worst


def sharpe_ratio(
    snapshots: list[PortfolioSnapshot],
    initial_capital: float,
    annualize_factor: float,
) -> float:
    """Mean over sample std of per-snapshot returns, scaled by sqrt(factor).

    Risk-free rate is taken as zero. Returns 0.0 when fewer than two returns
    exist or the curve is flat.
    """
    equity = np.array([initial_capital] + [s.total_assets for s in snapshots], dtype=float)
    if len(equity) < 3 or np.any(equity[:-1] <= 0):
        return 0.0
    returns = np.diff(equity) / equity[:-1]
    std = float(np.std(returns, ddof=1))
    if std == 0.0 or math.isnan(std):
        return 0.0
    return float(np.mean(returns) / std * math.sqrt(annualize_factor))


def annualized_return(total_return: float, snapshots: list[PortfolioSnapshot]) -> float:
    """Compound total_return over the replayed wall-clock span.

    Windows shorter than one day are not annualized.
    """
    if len(snapshots) < 2:
        return total_return
    days = (snapshots[-1].timestamp - snapshots[0].timestamp).total_seconds() / 86400
    if days < 1.0 or total_return <= -1.0:
        return total_return
    try:
        return (1.0 + total_return) ** (365.0 / days) - 1.0
    except OverflowError:
        return math.inf
