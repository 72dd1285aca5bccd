"""Tests for backtest performance metrics."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

from tests.helpers import T0
from vpp_trading.backtest.metrics import (
    annualized_return,
    compute_metrics,
    max_drawdown,
    max_streaks,
    sharpe_ratio,
)
from vpp_trading.backtest.simulator import PortfolioSnapshot, Trade


def _curve(values: list[float], step: timedelta = timedelta(days=1)) -> list[PortfolioSnapshot]:
    return [
        PortfolioSnapshot(
            timestamp=T0 + step * i,
            total_assets=v,
            cash=v,
            market_value=0.0,
            total_return=(v - values[0]) / values[0],
            position_count=0,
        )
        for i, v in enumerate(values)
    ]


def _sell(profit: float) -> Trade:
    return Trade("A", "SELL", 1.0, 100.0, 0.0, 0.0, T0, profit=profit)


def _buy() -> Trade:
    return Trade("A", "BUY", 1.0, 100.0, 0.0, 0.0, T0)


class TestMaxDrawdown:
    def test_peak_to_trough(self):
        assert max_drawdown(_curve([100, 120, 90, 130, 117]), 100) == pytest.approx(0.25)

    def test_monotonic_up(self):
        assert max_drawdown(_curve([100, 110, 120]), 100) == 0.0

    def test_starts_from_initial_capital(self):
        assert max_drawdown(_curve([80, 90]), 100) == pytest.approx(0.2)

    def test_empty(self):
        assert max_drawdown([], 100) == 0.0


class TestSharpe:
    def test_flat_curve(self):
        assert sharpe_ratio(_curve([100, 100, 100]), 100, 252) == 0.0

    def test_too_few_returns(self):
        assert sharpe_ratio(_curve([110]), 100, 252) == 0.0

    def test_sample_std(self):
        # returns: +10%, -10%, +10%
        curve = _curve([110, 99, 108.9])
        r = [0.1, -0.1, 0.1]
        mean = sum(r) / 3
        std = math.sqrt(sum((x - mean) ** 2 for x in r) / 2)
        assert sharpe_ratio(curve, 100, 252) == pytest.approx(mean / std * math.sqrt(252))


class TestAnnualized:
    def test_short_window_not_annualized(self):
        curve = _curve([100, 110], step=timedelta(hours=1))
        assert annualized_return(0.1, curve) == 0.1

    def test_one_year_is_identity(self):
        curve = _curve([100, 110], step=timedelta(days=365))
        assert annualized_return(0.1, curve) == pytest.approx(0.1)

    def test_half_year_compounds(self):
        curve = _curve([100, 110], step=timedelta(days=182.5))
        assert annualized_return(0.1, curve) == pytest.approx(1.1 ** 2 - 1)

    def test_overflow_is_inf(self):
        curve = _curve([100, 1e6], step=timedelta(days=1))
        assert annualized_return(1e4, curve) == math.inf


class TestStreaks:
    def test_runs(self):
        assert max_streaks([1, 2, -1, 3, 4, 5, -2, -3]) == (3, 2)

    def test_zero_breaks_runs(self):
        assert max_streaks([1, 0, 1, -1, 0, -1]) == (1, 1)

    def test_empty(self):
        assert max_streaks([]) == (0, 0)


class TestComputeMetrics:
    def test_sell_trades_only(self):
        trades = [_buy(), _sell(10.0), _buy(), _sell(-4.0), _buy(), _sell(6.0)]
        m = compute_metrics(trades, _curve([100, 104, 112]), 100, annualize_factor=252)
        assert m.total_trades == 6
        assert m.profitable_trades == 2
        assert m.win_rate == pytest.approx(2 / 3)
        assert m.average_profit == pytest.approx(8.0)
        assert m.average_loss == pytest.approx(-4.0)
        assert m.final_capital == 112
        assert m.total_return == pytest.approx(0.12)

    def test_no_trades(self):
        m = compute_metrics([], [], 1_000)
        assert m.final_capital == 1_000
        assert m.total_return == 0.0
        assert m.win_rate == 0.0
        assert m.sharpe_ratio == 0.0
        assert m.max_drawdown == 0.0
