"""Execution gateways: live (market connector + trade ledger) and simulated
(BacktestSimulator ledger).

A gateway supplies the RiskContext for an order, executes accepted orders and
records rejected ones. Risk gating itself happens in execution.pipeline.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from vpp_trading.config import settings
from vpp_trading.connectors.market_connector import MarketConnector
from vpp_trading.errors import PersistenceError
from vpp_trading.execution.models import ExecutionResult, OrderStatus, TradingOrder
from vpp_trading.risk.models import RiskContext
from vpp_trading.store.db import (
    DEFAULT_DB_PATH,
    count_recent_orders,
    get_latest_ticks,
    get_net_cash_flow,
    get_net_position,
    get_realized_pnl,
    log_trade,
)
from vpp_trading.store.models import MarketTick, TradeStatus, parse_iso

if TYPE_CHECKING:
    from vpp_trading.backtest.simulator import BacktestSimulator

logger = logging.getLogger(__name__)

FREQUENCY_WINDOW = timedelta(seconds=60)


def start_of_day(ts: datetime) -> datetime:
    """UTC midnight of the day containing ts (naive = UTC)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class ExecutionGateway(Protocol):
    def position(self, market: str, resource_id: int | None = None) -> float: ...

    def risk_context(self, order: TradingOrder) -> RiskContext: ...

    def execute(self, order: TradingOrder) -> ExecutionResult: ...

    def record_rejection(self, order: TradingOrder, reason: str) -> None: ...


class LiveExecutionGateway:
    """Routes orders to a market connector and appends fills to the trade ledger."""

    def __init__(
        self,
        connector: MarketConnector,
        db_path: Path | str = DEFAULT_DB_PATH,
        capital_base: float | None = None,
    ) -> None:
        self.connector = connector
        self.db_path = db_path
        self.capital_base = settings.risk_available_capital if capital_base is None else capital_base

    def position(self, market: str, resource_id: int | None = None) -> float:
        """Net executed quantity on the ledger."""
        try:
            return get_net_position(market, resource_id, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot read position for {market}: {e}") from e

    def risk_context(self, order: TradingOrder) -> RiskContext:
        try:
            now = datetime.now(timezone.utc)
            since = now - FREQUENCY_WINDOW
            latest = get_latest_ticks(order.market, 1, db_path=self.db_path)
            return RiskContext(
                available_capital=self.capital_base + get_net_cash_flow(db_path=self.db_path),
                current_position=get_net_position(
                    order.market, order.resource_id, db_path=self.db_path
                ),
                recent_order_count=count_recent_orders(
                    order.strategy_id, since, db_path=self.db_path
                ),
                reference_price=latest[-1].price if latest else None,
                daily_realized_pnl=get_realized_pnl(start_of_day(now), db_path=self.db_path),
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"risk context for order {order.id}: {e}") from e

    def execute(self, order: TradingOrder) -> ExecutionResult:
        # TransientExecutionError はそのまま pipeline に伝播させる
        fill = self.connector.place_order(order)

        if fill.get("status") != "filled":
            reason = fill.get("reason", "rejected_by_market")
            self.record_rejection(order, reason)
            return ExecutionResult.failed(order, reason)

        price = float(fill["price"])
        commission = float(fill.get("commission", 0.0))
        executed_at = parse_iso(fill["executed_at"])
        try:
            log_trade(
                market=order.market,
                side=str(order.side),
                quantity=order.quantity,
                price=price,
                amount=order.quantity * price,
                commission=commission,
                status=TradeStatus.EXECUTED,
                vpp_id=order.vpp_id,
                strategy_id=order.strategy_id,
                resource_id=order.resource_id,
                order_id=order.id,
                scheduled_at=order.scheduled_at.isoformat() if order.scheduled_at else None,
                executed_at=executed_at,
                db_path=self.db_path,
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"fill of order {order.id} not recorded: {e}") from e

        order.status = OrderStatus.FILLED
        logger.info(
            "Filled %s %s %.4f @ %.4f (order=%s strategy=%s)",
            order.side, order.market, order.quantity, price, order.id, order.strategy_id,
        )
        return ExecutionResult.filled(order, price, commission, executed_at)

    def record_rejection(self, order: TradingOrder, reason: str) -> None:
        order.status = OrderStatus.REJECTED
        try:
            log_trade(
                market=order.market,
                side=str(order.side),
                quantity=order.quantity,
                price=order.price,
                amount=order.notional,
                status=TradeStatus.REJECTED,
                vpp_id=order.vpp_id,
                strategy_id=order.strategy_id,
                resource_id=order.resource_id,
                order_id=order.id,
                scheduled_at=order.scheduled_at.isoformat() if order.scheduled_at else None,
                db_path=self.db_path,
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"rejection of order {order.id} not recorded: {e}") from e


class SimulatedExecutionGateway:
    """Executes orders against a BacktestSimulator at the replay clock."""

    def __init__(self, simulator: BacktestSimulator) -> None:
        self.simulator = simulator
        self.clock: datetime | None = None
        self.reference_prices: dict[str, float] = {}
        self.rejections: list[tuple[str, str]] = []

    def position(self, market: str, resource_id: int | None = None) -> float:
        # シミュレータは銘柄単位でしか建玉を持たない
        pos = self.simulator.get_position(market)
        return pos.quantity if pos else 0.0

    def observe(self, tick: MarketTick) -> None:
        """Advance the replay clock to the tick and use its price as reference."""
        self.clock = tick.timestamp
        self.reference_prices[tick.market] = tick.price

    def risk_context(self, order: TradingOrder) -> RiskContext:
        position = self.simulator.get_position(order.market)
        return RiskContext(
            available_capital=self.simulator.cash,
            current_position=position.quantity if position else 0.0,
            recent_order_count=0,
            reference_price=self.reference_prices.get(order.market),
            daily_realized_pnl=(
                self.simulator.realized_pnl_since(start_of_day(self.clock)) if self.clock else 0.0
            ),
        )

    def execute(self, order: TradingOrder) -> ExecutionResult:
        ts = order.scheduled_at or self.clock
        if ts is None:
            raise ValueError("simulated execution needs a replay clock or scheduled_at")

        if order.side.is_buy:
            ok = self.simulator.buy(order.market, order.quantity, order.price, ts)
        else:
            ok = self.simulator.sell(order.market, order.quantity, order.price, ts)
        if not ok:
            reason = "insufficient_cash" if order.side.is_buy else "insufficient_position"
            self.record_rejection(order, reason)
            return ExecutionResult.failed(order, reason)

        trade = self.simulator.trades[-1]
        order.status = OrderStatus.FILLED
        return ExecutionResult.filled(
            order, trade.price, trade.commission + trade.slippage, trade.timestamp
        )

    def record_rejection(self, order: TradingOrder, reason: str) -> None:
        order.status = OrderStatus.REJECTED
        self.rejections.append((order.id, reason))
