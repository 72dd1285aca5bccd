"""Arbitrage engine: snapshot markets, detect, risk-score, execute paired legs."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path

from vpp_trading.arbitrage.detector import (
    ArbitrageOpportunity,
    ArbitrageType,
    find_cross_commodity,
    find_spatial,
    find_temporal,
    risk_score,
)
from vpp_trading.config import settings
from vpp_trading.connectors.market_data import MarketDataProvider
from vpp_trading.errors import PersistenceError, ValidationError
from vpp_trading.execution.gateway import ExecutionGateway
from vpp_trading.execution.models import ExecutionResult, OrderSide, TradingOrder
from vpp_trading.execution.pipeline import submit_order
from vpp_trading.risk.risk_gate import RiskGate
from vpp_trading.store.db import DEFAULT_DB_PATH, log_arbitrage_run
from vpp_trading.store.models import MarketTick

logger = logging.getLogger(__name__)


@dataclass
class OpportunityResult:
    opportunity: ArbitrageOpportunity
    risk_score: float
    executed: bool = False
    profit: float = 0.0
    reason: str = ""  # 未約定の理由 (risk / duplicate / leg failure)
    buy_result: ExecutionResult | None = None
    sell_result: ExecutionResult | None = None


@dataclass
class ArbitrageSummary:
    arbitrage_type: ArbitrageType
    opportunities_found: int = 0
    trades_executed: int = 0
    total_profit: float = 0.0
    results: list[OpportunityResult] = field(default_factory=list)
    run_id: int | None = None


class ArbitrageEngine:
    def __init__(
        self,
        market_data: MarketDataProvider,
        gateway: ExecutionGateway,
        risk_gate: RiskGate | None = None,
        db_path: Path | str = DEFAULT_DB_PATH,
        vpp_id: int | None = None,
        window: int | None = None,
        max_volume: float | None = None,
        cache_size: int | None = None,
    ) -> None:
        self.market_data = market_data
        self.gateway = gateway
        self.risk_gate = risk_gate or RiskGate()
        self.db_path = db_path
        self.vpp_id = vpp_id
        self.window = window or settings.arbitrage_temporal_window
        self.max_volume = max_volume or settings.arbitrage_max_volume
        self.cache_size = cache_size or settings.arbitrage_cache_size
        self._executed_ids: OrderedDict[str, None] = OrderedDict()
        self._cache_lock = threading.Lock()

    # --- opportunity id cache ---

    def _claim(self, opportunity_id: str) -> bool:
        """Reserve an id for execution. False if it was already claimed."""
        with self._cache_lock:
            if opportunity_id in self._executed_ids:
                return False
            self._executed_ids[opportunity_id] = None
            while len(self._executed_ids) > self.cache_size:
                self._executed_ids.popitem(last=False)
            return True

    # --- public API ---

    def snapshot(self, markets: list[str]) -> dict[str, list[MarketTick]]:
        snapshots: dict[str, list[MarketTick]] = {}
        for market in markets:
            ticks = self.market_data.latest_ticks(market, self.window)
            if not ticks:
                logger.warning("No market data for %s, skipping", market)
                continue
            snapshots[market] = ticks
        return snapshots

    def detect(
        self,
        snapshots: dict[str, list[MarketTick]],
        arbitrage_type: ArbitrageType,
        min_margin: float,
    ) -> list[ArbitrageOpportunity]:
        if arbitrage_type == ArbitrageType.SPATIAL:
            return find_spatial(snapshots, min_margin, self.max_volume)
        if arbitrage_type == ArbitrageType.TEMPORAL:
            return find_temporal(snapshots, min_margin, self.window, self.max_volume)
        return find_cross_commodity(snapshots, min_margin)

    def execute_arbitrage_strategy(
        self,
        markets: list[str],
        arbitrage_type: ArbitrageType | str = ArbitrageType.SPATIAL,
        min_margin: float | None = None,
        max_risk: float | None = None,
    ) -> ArbitrageSummary:
        """Scan markets once and execute every acceptable opportunity."""
        if not markets:
            raise ValidationError("markets must not be empty")
        try:
            arb_type = ArbitrageType(str(arbitrage_type).lower())
        except ValueError:
            raise ValidationError(f"unsupported arbitrage type: {arbitrage_type}") from None
        min_margin = settings.arbitrage_min_margin if min_margin is None else min_margin
        max_risk = settings.arbitrage_max_risk if max_risk is None else max_risk
        if min_margin < 0:
            raise ValidationError(f"min_margin must be >= 0, got {min_margin}")

        snapshots = self.snapshot(markets)
        opportunities = self.detect(snapshots, arb_type, min_margin)
        summary = ArbitrageSummary(arbitrage_type=arb_type, opportunities_found=len(opportunities))

        for opp in opportunities:
            score = risk_score(opp, snapshots)
            result = OpportunityResult(opportunity=opp, risk_score=score)
            summary.results.append(result)
            if score > max_risk:
                result.reason = f"risk_score={score:.4f}>{max_risk}"
                logger.info("Opportunity %s rejected: %s", opp.id, result.reason)
                continue
            if not self._claim(opp.id):
                result.reason = "duplicate"
                logger.info("Opportunity %s already executed, skipping", opp.id)
                continue
            self._execute(opp, result)
            if result.executed:
                summary.trades_executed += 1
                summary.total_profit += result.profit

        try:
            summary.run_id = log_arbitrage_run(
                arbitrage_type=arb_type,
                markets=markets,
                opportunities_found=summary.opportunities_found,
                trades_executed=summary.trades_executed,
                total_profit=summary.total_profit,
                db_path=self.db_path,
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"arbitrage run not recorded: {e}") from e

        logger.info(
            "Arbitrage %s over %s: found=%d executed=%d profit=%.2f",
            arb_type, ",".join(markets), summary.opportunities_found,
            summary.trades_executed, summary.total_profit,
        )
        return summary

    def _execute(self, opp: ArbitrageOpportunity, result: OpportunityResult) -> None:
        temporal = opp.type == ArbitrageType.TEMPORAL
        buy = TradingOrder(
            market=opp.buy_market,
            side=OrderSide.BUY,
            quantity=opp.volume,
            price=opp.buy_price,
            vpp_id=self.vpp_id,
            scheduled_at=opp.buy_time if temporal else None,
        )
        sell = TradingOrder(
            market=opp.sell_market,
            side=OrderSide.SELL,
            quantity=opp.volume,
            price=opp.sell_price,
            vpp_id=self.vpp_id,
            scheduled_at=opp.sell_time if temporal else None,
        )

        result.buy_result = submit_order(buy, self.gateway, self.risk_gate)
        if not result.buy_result.success:
            # 買い脚が通らなければ売り脚は出さない (片張り回避)
            result.reason = f"buy_leg: {result.buy_result.reason}"
            return

        result.sell_result = submit_order(sell, self.gateway, self.risk_gate)
        if not result.sell_result.success:
            result.reason = f"sell_leg: {result.sell_result.reason}"
            logger.warning(
                "Opportunity %s left one-legged: buy filled, sell failed (%s)",
                opp.id, result.sell_result.reason,
            )
            return

        result.executed = True
        result.profit = (
            result.sell_result.execution_price - result.buy_result.execution_price
        ) * opp.volume
