"""Order and execution result models shared by live and simulated execution."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum


class OrderSide(StrEnum):
    BUY = "buy"
    SELL = "sell"
    CHARGE = "charge"  # 蓄電 (買い側として扱う)
    DISCHARGE = "discharge"  # 放電 (売り側として扱う)

    @property
    def is_buy(self) -> bool:
        return self in (OrderSide.BUY, OrderSide.CHARGE)


class OrderStatus(StrEnum):
    PENDING = "pending"
    FILLED = "filled"
    REJECTED = "rejected"
    FAILED = "failed"


def _new_order_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class TradingOrder:
    market: str
    side: OrderSide
    quantity: float
    price: float
    strategy_id: int | None = None
    resource_id: int | None = None
    vpp_id: int | None = None
    scheduled_at: datetime | None = None  # temporal arbitrage の予約時刻
    status: OrderStatus = OrderStatus.PENDING
    id: str = field(default_factory=_new_order_id)

    @property
    def notional(self) -> float:
        return self.quantity * self.price


@dataclass
class ExecutionResult:
    success: bool
    execution_price: float = 0.0
    execution_amount: float = 0.0
    commission: float = 0.0
    reason: str = ""
    executed_at: datetime | None = None
    order_id: str = ""

    @classmethod
    def filled(
        cls,
        order: TradingOrder,
        price: float,
        commission: float = 0.0,
        executed_at: datetime | None = None,
    ) -> ExecutionResult:
        return cls(
            success=True,
            execution_price=price,
            execution_amount=order.quantity * price,
            commission=commission,
            executed_at=executed_at or datetime.now(timezone.utc),
            order_id=order.id,
        )

    @classmethod
    def failed(cls, order: TradingOrder, reason: str) -> ExecutionResult:
        return cls(success=False, reason=reason, order_id=order.id)
