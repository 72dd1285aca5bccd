"""Pre-trade risk gate shared by live and simulated execution.

The gate is stateless: every check reads only the order and the RiskContext
the caller supplies. A rejection is an ordinary return value, never an
exception.
"""

from __future__ import annotations

import logging

from vpp_trading.config import settings
from vpp_trading.execution.models import TradingOrder
from vpp_trading.risk.models import RiskCheckResult, RiskContext, RiskLimits

logger = logging.getLogger(__name__)


class RiskGate:
    def __init__(self, limits: RiskLimits | None = None, enabled: bool | None = None) -> None:
        self.limits = limits or RiskLimits.from_settings()
        self.enabled = settings.risk_check_enabled if enabled is None else enabled

    def check(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        """Run all checks in order; the first failure wins."""
        if not self.enabled:
            return RiskCheckResult.ok()

        for check in (
            self._check_order_shape,
            self._check_price_sanity,
            self._check_daily_loss,
            self._check_capital,
            self._check_position,
            self._check_frequency,
        ):
            result = check(order, ctx)
            if not result.allowed:
                logger.info(
                    "Risk rejected order %s (%s %s %.4f@%.4f): %s",
                    order.id, order.side, order.market, order.quantity, order.price, result.reason,
                )
                return result
        return RiskCheckResult.ok()

    # --- individual checks ---

    def _check_order_shape(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        if order.quantity <= 0:
            return RiskCheckResult.reject(f"invalid_quantity={order.quantity}")
        return RiskCheckResult.ok()

    def _check_price_sanity(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        lim = self.limits
        if not (lim.price_min <= order.price <= lim.price_max):
            return RiskCheckResult.reject(
                f"price_out_of_range={order.price:.4f} not in [{lim.price_min}, {lim.price_max}]"
            )
        ref = ctx.reference_price
        if ref is not None and ref > 0:
            deviation_pct = abs(order.price - ref) / ref * 100
            if deviation_pct > lim.max_price_deviation_pct:
                return RiskCheckResult.reject(
                    f"price_deviation={deviation_pct:.1f}%>{lim.max_price_deviation_pct}%"
                )
        return RiskCheckResult.ok()

    def _check_daily_loss(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        loss = -ctx.daily_realized_pnl
        if loss > self.limits.max_daily_loss:
            return RiskCheckResult.reject(
                f"daily_loss={loss:.2f}>{self.limits.max_daily_loss:.2f}"
            )
        return RiskCheckResult.ok()

    def _check_capital(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        if order.notional > self.limits.max_order_notional:
            return RiskCheckResult.reject(
                f"order_notional={order.notional:.2f}>{self.limits.max_order_notional:.2f}"
            )
        if order.side.is_buy and order.notional > ctx.available_capital:
            return RiskCheckResult.reject(
                f"insufficient_capital={ctx.available_capital:.2f}<{order.notional:.2f}"
            )
        reserve = self.limits.min_cash_reserve
        if order.side.is_buy and ctx.available_capital - order.notional < reserve:
            return RiskCheckResult.reject(
                f"cash_reserve={ctx.available_capital - order.notional:.2f}<{reserve:.2f}"
            )
        return RiskCheckResult.ok()

    def _check_position(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        # 売りはショート (発電側の販売) も許容し、絶対値で上限を見る
        delta = order.quantity if order.side.is_buy else -order.quantity
        resulting = ctx.current_position + delta
        if abs(resulting) > self.limits.max_position_qty:
            return RiskCheckResult.reject(
                f"position_limit={abs(resulting):.4f}>{self.limits.max_position_qty}"
            )
        return RiskCheckResult.ok()

    def _check_frequency(self, order: TradingOrder, ctx: RiskContext) -> RiskCheckResult:
        if ctx.recent_order_count >= self.limits.max_orders_per_minute:
            return RiskCheckResult.reject(
                f"order_frequency={ctx.recent_order_count}>={self.limits.max_orders_per_minute}/min"
            )
        return RiskCheckResult.ok()
