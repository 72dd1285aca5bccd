"""Single order path: RiskGate -> ExecutionGateway."""

from __future__ import annotations

import logging

from vpp_trading.errors import TransientExecutionError
from vpp_trading.execution.gateway import ExecutionGateway
from vpp_trading.execution.models import ExecutionResult, OrderStatus, TradingOrder
from vpp_trading.risk.risk_gate import RiskGate

logger = logging.getLogger(__name__)


def submit_order(
    order: TradingOrder,
    gateway: ExecutionGateway,
    risk_gate: RiskGate,
) -> ExecutionResult:
    """Risk-check then execute one order.

    Risk rejections and transient connector failures come back as a failed
    ExecutionResult. PersistenceError and programming errors propagate.
    """
    check = risk_gate.check(order, gateway.risk_context(order))
    if not check.allowed:
        gateway.record_rejection(order, check.reason)
        return ExecutionResult.failed(order, check.reason)

    try:
        return gateway.execute(order)
    except TransientExecutionError as e:
        order.status = OrderStatus.FAILED
        logger.warning("Transient failure for order %s on %s: %s", order.id, order.market, e)
        return ExecutionResult.failed(order, f"transient: {e}")
