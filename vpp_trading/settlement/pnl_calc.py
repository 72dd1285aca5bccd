"""Pure P&L aggregation for settlement. No DB access or side effects."""

from __future__ import annotations

from dataclasses import dataclass

from vpp_trading.store.models import TradeRecord

REVENUE_SIDES = frozenset({"sell", "discharge"})
COST_SIDES = frozenset({"buy", "charge"})


@dataclass(frozen=True)
class PeriodPnL:
    total_revenue: float
    total_cost: float
    net_profit: float
    total_commission: float
    trade_count: int


def round_money(value: float) -> float:
    return round(value, 2)


def calc_period_pnl(trades: list[TradeRecord]) -> PeriodPnL:
    """Revenue = SELL/DISCHARGE amounts; cost = BUY/CHARGE amounts + all commissions.

    Money figures are rounded to cents after summation.
    """
    revenue = sum(t.amount for t in trades if t.side in REVENUE_SIDES)
    purchases = sum(t.amount for t in trades if t.side in COST_SIDES)
    commission = sum(t.commission for t in trades)
    total_revenue = round_money(revenue)
    total_cost = round_money(purchases + commission)
    return PeriodPnL(
        total_revenue=total_revenue,
        total_cost=total_cost,
        net_profit=round_money(total_revenue - total_cost),
        total_commission=round_money(commission),
        trade_count=len(trades),
    )


def calc_contributions(trades: list[TradeRecord]) -> dict[int, float]:
    """Traded value per resource (both sides). Trades without a resource are ignored."""
    contributions: dict[int, float] = {}
    for t in trades:
        if t.resource_id is None:
            continue
        contributions[t.resource_id] = contributions.get(t.resource_id, 0.0) + abs(t.amount)
    return contributions


def calc_energy(trades: list[TradeRecord]) -> tuple[float, float]:
    """(total traded quantity, delivered quantity on SELL/DISCHARGE)."""
    total = sum(t.quantity for t in trades)
    delivered = sum(t.quantity for t in trades if t.side in REVENUE_SIDES)
    return total, delivered
