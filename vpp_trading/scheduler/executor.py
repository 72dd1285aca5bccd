"""Per-strategy executor driven by the StrategyScheduler tick."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from vpp_trading.connectors.market_data import MarketDataProvider
from vpp_trading.execution.gateway import ExecutionGateway
from vpp_trading.execution.models import ExecutionResult
from vpp_trading.execution.pipeline import submit_order
from vpp_trading.risk.risk_gate import RiskGate
from vpp_trading.store.db import DEFAULT_DB_PATH, touch_strategy_execution
from vpp_trading.store.models import Strategy
from vpp_trading.strategy.actions import parse_actions
from vpp_trading.strategy.conditions import build_context, evaluate_conditions, parse_conditions

logger = logging.getLogger(__name__)


@dataclass
class ExecuteResult:
    strategy_id: int
    ticks_evaluated: int = 0
    orders_submitted: int = 0
    orders_failed: int = 0
    results: list[ExecutionResult] = field(default_factory=list)


class StrategyExecutor:
    """Evaluates one strategy against its market window and submits orders.

    Payloads are parsed once at construction so a malformed strategy fails
    at registration, not on every tick. Each tick is evaluated at most once:
    ticks at or before the newest one already seen are skipped.
    """

    def __init__(
        self,
        strategy: Strategy,
        market_data: MarketDataProvider,
        gateway: ExecutionGateway,
        risk_gate: RiskGate,
        window: int,
        db_path: Path | str = DEFAULT_DB_PATH,
    ) -> None:
        self.strategy = strategy
        self.market_data = market_data
        self.gateway = gateway
        self.risk_gate = risk_gate
        self.window = window
        self.db_path = db_path
        self.conditions = parse_conditions(strategy.conditions)
        self.actions = parse_actions(strategy.actions)
        self.running = True
        self.last_seen_tick: datetime | None = None
        self.last_execution_time: datetime | None = None

    @property
    def strategy_id(self) -> int:
        return self.strategy.id

    def stop(self) -> None:
        # 実行中の発注は中断しない。次 tick から止まる
        self.running = False

    def execute(self) -> ExecuteResult:
        result = ExecuteResult(strategy_id=self.strategy.id)
        if not self.running:
            return result

        ticks = self.market_data.latest_ticks(self.strategy.market, self.window)
        for tick in ticks:
            if self.last_seen_tick is not None and tick.timestamp <= self.last_seen_tick:
                continue
            self.last_seen_tick = tick.timestamp
            result.ticks_evaluated += 1

            # 直前 tick の約定を反映した建玉で評価する
            position = self.gateway.position(tick.market, self.strategy.resource_id)
            ctx = build_context(tick, position=position)
            if not evaluate_conditions(self.conditions, ctx):
                continue

            for template in self.actions:
                order = template.build_order(
                    tick,
                    strategy_id=self.strategy.id,
                    resource_id=self.strategy.resource_id,
                    vpp_id=self.strategy.vpp_id,
                )
                if order is None:
                    continue
                result.orders_submitted += 1
                try:
                    exec_result = submit_order(order, self.gateway, self.risk_gate)
                except Exception:
                    # 1 注文の失敗で同一バッチの後続注文を止めない
                    logger.exception(
                        "Order submission raised for strategy %d (order=%s)",
                        self.strategy.id, order.id,
                    )
                    result.orders_failed += 1
                    continue
                result.results.append(exec_result)
                if not exec_result.success:
                    result.orders_failed += 1

        self.last_execution_time = datetime.now(timezone.utc)
        touch_strategy_execution(
            self.strategy.id, self.last_execution_time.isoformat(), db_path=self.db_path
        )
        return result
