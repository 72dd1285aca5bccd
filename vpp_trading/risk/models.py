"""Risk gate data models.

RiskLimits (static thresholds), RiskContext (per-order state supplied by the
execution gateway) and RiskCheckResult.
"""

from __future__ import annotations

from dataclasses import dataclass

from vpp_trading.config import settings


@dataclass(frozen=True)
class RiskLimits:
    max_position_qty: float
    max_order_notional: float
    max_orders_per_minute: int
    price_min: float
    price_max: float
    max_price_deviation_pct: float
    max_daily_loss: float = float("inf")
    min_cash_reserve: float = 0.0

    @classmethod
    def from_settings(cls) -> RiskLimits:
        return cls(
            max_position_qty=settings.risk_max_position_qty,
            max_order_notional=settings.risk_max_order_notional,
            max_orders_per_minute=settings.risk_max_orders_per_minute,
            price_min=settings.risk_price_min,
            price_max=settings.risk_price_max,
            max_price_deviation_pct=settings.risk_max_price_deviation_pct,
            max_daily_loss=settings.risk_max_daily_loss,
            min_cash_reserve=settings.risk_min_cash_reserve,
        )


@dataclass(frozen=True)
class RiskContext:
    """State the gate needs to judge one order. Built fresh per order."""

    available_capital: float
    current_position: float = 0.0
    recent_order_count: int = 0  # 直近 60 秒
    reference_price: float | None = None  # 直近 tick 価格
    daily_realized_pnl: float = 0.0  # 当日の約定キャッシュフロー (売り - 買い - 手数料)


@dataclass(frozen=True)
class RiskCheckResult:
    allowed: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> RiskCheckResult:
        return cls(allowed=True)

    @classmethod
    def reject(cls, reason: str) -> RiskCheckResult:
        return cls(allowed=False, reason=reason)
