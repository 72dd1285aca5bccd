"""VPP performance report over a date window."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from vpp_trading.settlement.pnl_calc import REVENUE_SIDES, calc_energy, calc_period_pnl
from vpp_trading.store.models import ResourceCapacityInfo, SettlementRecord, TradeRecord


@dataclass(frozen=True)
class PerformanceReport:
    vpp_id: int
    period_start: date
    period_end: date
    total_revenue: float
    total_cost: float
    net_profit: float
    profit_margin: float  # net / revenue
    average_daily_profit: float
    total_trading_volume: float  # MWh
    trading_count: int
    average_trade_size: float
    success_rate: float  # executed / (executed + rejected)
    resource_utilization: float  # volume / (capacity × hours)
    capacity_factor: float  # delivered / (max_power × hours)
    peak_load_contribution: float  # 単一取引の最大供給量 / max_power
    settlement_count: int
    distributed_profit: float
    carbon_reduction: float | None = None  # t-CO2, API 未設定なら None


def build_performance_report(
    vpp_id: int,
    start: date,
    end: date,
    executed: list[TradeRecord],
    rejected_count: int,
    settlements: list[SettlementRecord],
    capacity: ResourceCapacityInfo,
    carbon_reduction: float | None = None,
) -> PerformanceReport:
    """Aggregate trades and settlements of [start, end] (inclusive days)."""
    days = (end - start).days + 1
    hours = days * 24.0
    pnl = calc_period_pnl(executed)
    volume, delivered = calc_energy(executed)
    count = len(executed)
    attempted = count + rejected_count
    peak = max((t.quantity for t in executed if t.side in REVENUE_SIDES), default=0.0)

    return PerformanceReport(
        vpp_id=vpp_id,
        period_start=start,
        period_end=end,
        total_revenue=pnl.total_revenue,
        total_cost=pnl.total_cost,
        net_profit=pnl.net_profit,
        profit_margin=pnl.net_profit / pnl.total_revenue if pnl.total_revenue > 0 else 0.0,
        average_daily_profit=round(pnl.net_profit / days, 2),
        total_trading_volume=volume,
        trading_count=count,
        average_trade_size=volume / count if count else 0.0,
        success_rate=count / attempted if attempted else 0.0,
        resource_utilization=(
            volume / (capacity.total_capacity * hours) if capacity.total_capacity > 0 else 0.0
        ),
        capacity_factor=delivered / (capacity.max_power * hours) if capacity.max_power > 0 else 0.0,
        peak_load_contribution=peak / capacity.max_power if capacity.max_power > 0 else 0.0,
        settlement_count=len(settlements),
        distributed_profit=round(
            sum(d.amount for s in settlements for d in s.distributions), 2
        ),
        carbon_reduction=carbon_reduction,
    )
