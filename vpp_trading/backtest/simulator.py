"""Deterministic portfolio simulator used by backtests.

Holds cash, open positions and two append-only ledgers (trades and
portfolio snapshots). Rejected buy/sell calls return False and leave every
piece of state untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from vpp_trading.config import settings
from vpp_trading.store.models import MarketTick

logger = logging.getLogger(__name__)

QTY_EPSILON = 1e-9  # これ未満の残量はゼロとみなしてポジションを閉じる


@dataclass
class Position:
    symbol: str
    quantity: float = 0.0
    total_cost: float = 0.0  # 手数料を含まない取得原価
    current_price: float = 0.0

    @property
    def average_cost(self) -> float:
        if self.quantity <= 0:
            return 0.0
        return self.total_cost / self.quantity

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price


@dataclass(frozen=True)
class Trade:
    symbol: str
    side: str  # "BUY" | "SELL"
    quantity: float
    price: float
    commission: float
    slippage: float
    timestamp: datetime
    profit: float | None = None  # SELL のみ


@dataclass(frozen=True)
class PortfolioSnapshot:
    timestamp: datetime
    total_assets: float
    cash: float
    market_value: float
    total_return: float
    position_count: int


class BacktestSimulator:
    def __init__(
        self,
        initial_capital: float,
        commission_rate: float | None = None,
        slippage_rate: float | None = None,
    ) -> None:
        self.initial_capital = initial_capital
        self.commission_rate = (
            settings.backtest_commission_rate if commission_rate is None else commission_rate
        )
        self.slippage_rate = (
            settings.backtest_slippage_rate if slippage_rate is None else slippage_rate
        )
        self.cash = initial_capital
        self.positions: dict[str, Position] = {}
        self.trades: list[Trade] = []
        self.snapshots: list[PortfolioSnapshot] = []

    # --- queries ---

    def get_position(self, symbol: str) -> Position | None:
        return self.positions.get(symbol)

    def fees_for(self, quantity: float, price: float) -> tuple[float, float]:
        """Return (commission, slippage) for a trade of quantity at price."""
        gross = quantity * price
        return gross * self.commission_rate, gross * self.slippage_rate

    def has_enough_capital(self, quantity: float, price: float) -> bool:
        commission, slippage = self.fees_for(quantity, price)
        return self.cash >= quantity * price + commission + slippage

    def has_enough_position(self, symbol: str, quantity: float) -> bool:
        position = self.positions.get(symbol)
        return position is not None and quantity <= position.quantity + QTY_EPSILON

    def realized_pnl_since(self, since: datetime) -> float:
        """Profit of sells since a timestamp, less the fees of buys in the same window."""
        total = 0.0
        for t in self.trades:
            if t.timestamp < since:
                continue
            if t.profit is not None:
                total += t.profit
            else:
                total -= t.commission + t.slippage
        return total

    # --- mutations ---

    def buy(self, symbol: str, quantity: float, price: float, timestamp: datetime) -> bool:
        if quantity <= 0:
            logger.debug("Rejected BUY %s: non-positive quantity %.6f", symbol, quantity)
            return False
        cost = quantity * price
        commission, slippage = self.fees_for(quantity, price)
        total = cost + commission + slippage
        if self.cash < total:
            logger.debug("Rejected BUY %s: cash %.4f < %.4f", symbol, self.cash, total)
            return False

        position = self.positions.get(symbol)
        if position is None:
            position = Position(symbol=symbol, current_price=price)
            self.positions[symbol] = position
        position.total_cost += cost
        position.quantity += quantity
        position.current_price = price

        self.cash -= total
        self.trades.append(
            Trade(
                symbol=symbol,
                side="BUY",
                quantity=quantity,
                price=price,
                commission=commission,
                slippage=slippage,
                timestamp=timestamp,
            )
        )
        return True

    def sell(self, symbol: str, quantity: float, price: float, timestamp: datetime) -> bool:
        if quantity <= 0 or not self.has_enough_position(symbol, quantity):
            logger.debug("Rejected SELL %s %.6f: insufficient position", symbol, quantity)
            return False

        position = self.positions[symbol]
        avg_cost = position.average_cost
        commission, slippage = self.fees_for(quantity, price)
        net_income = quantity * price - commission - slippage
        profit = quantity * (price - avg_cost) - commission - slippage

        position.quantity -= quantity
        position.total_cost -= avg_cost * quantity
        position.current_price = price
        if position.quantity <= QTY_EPSILON:
            del self.positions[symbol]

        self.cash += net_income
        self.trades.append(
            Trade(
                symbol=symbol,
                side="SELL",
                quantity=quantity,
                price=price,
                commission=commission,
                slippage=slippage,
                timestamp=timestamp,
                profit=profit,
            )
        )
        return True

    def update_portfolio(self, tick: MarketTick) -> PortfolioSnapshot:
        """Mark to market at the tick price and append a snapshot.

        Positions in other symbols keep their last seen price.
        """
        position = self.positions.get(tick.market)
        if position is not None:
            position.current_price = tick.price

        market_value = sum(p.market_value for p in self.positions.values())
        total_assets = self.cash + market_value
        snapshot = PortfolioSnapshot(
            timestamp=tick.timestamp,
            total_assets=total_assets,
            cash=self.cash,
            market_value=market_value,
            total_return=(total_assets - self.initial_capital) / self.initial_capital,
            position_count=len(self.positions),
        )
        self.snapshots.append(snapshot)
        return snapshot
