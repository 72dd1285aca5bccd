"""Data models for the SQLite store.

Dataclasses only, no DB access. Timestamps are stored as UTC ISO8601 strings;
to_iso / parse_iso keep the on-disk format consistent so that string order
equals time order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import StrEnum


class StrategyStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    RUNNING = "running"


class SettlementStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


class DistributionPolicy(StrEnum):
    CAPACITY_WEIGHTED = "capacity_weighted"
    CONTRIBUTION_WEIGHTED = "contribution_weighted"
    EQUAL_SHARE = "equal_share"


class TradeStatus(StrEnum):
    EXECUTED = "executed"
    REJECTED = "rejected"


@dataclass
class Strategy:
    id: int
    name: str
    status: str
    market: str
    conditions: str  # JSON payload (外部エディタの文法)
    actions: str  # JSON payload
    created_at: str
    updated_at: str
    resource_id: int | None = None
    vpp_id: int | None = None
    last_execution_time: str | None = None


@dataclass(frozen=True)
class MarketTick:
    """Single market observation. Immutable once stored."""

    market: str
    price: float
    volume: float
    timestamp: datetime
    status: str = "open"  # 市場状態 (open / closed / suspended)


@dataclass
class TradeRecord:
    id: int
    vpp_id: int | None
    strategy_id: int | None
    resource_id: int | None
    market: str
    side: str
    quantity: float
    price: float
    amount: float
    commission: float
    status: str
    executed_at: str
    created_at: str
    # 後から追加したカラム
    order_id: str | None = None
    scheduled_at: str | None = None


@dataclass
class Resource:
    id: int
    vpp_id: int
    name: str
    capacity: float  # MW
    max_power: float
    min_power: float
    available_capacity: float
    total_profit: float
    updated_at: str


@dataclass(frozen=True)
class ResourceCapacityInfo:
    """Aggregated capacity of the resources backing one VPP."""

    total_capacity: float
    available_capacity: float
    max_power: float
    min_power: float
    resource_count: int


@dataclass
class ProfitDistribution:
    resource_id: int
    resource_name: str
    ratio: float
    amount: float
    method: str


@dataclass
class SettlementRecord:
    id: int
    vpp_id: int
    period_start: str  # YYYY-MM-DD
    period_end: str  # YYYY-MM-DD (inclusive)
    settlement_type: str
    total_revenue: float
    total_cost: float
    net_profit: float
    distribution_policy: str
    status: str
    created_at: str
    trade_count: int = 0
    resource_count: int = 0
    distributions: list[ProfitDistribution] = field(default_factory=list)


@dataclass
class BacktestRunRecord:
    id: int
    strategy_id: int
    strategy_name: str
    market: str
    start_time: str
    end_time: str
    initial_capital: float
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
    created_at: str


@dataclass
class ArbitrageRunRecord:
    id: int
    arbitrage_type: str
    markets: str  # comma separated
    opportunities_found: int
    trades_executed: int
    total_profit: float
    created_at: str


def to_iso(value: datetime | date | str) -> str:
    """Normalize a timestamp to a UTC ISO8601 string (naive = UTC)."""
    if isinstance(value, str):
        return to_iso(parse_iso(value))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).isoformat()


def parse_iso(ts: str) -> datetime:
    """Parse ISO8601 with trailing Z support. Naive values are taken as UTC."""
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
