"""Market connectors: place one order, return a fill dict.

Fill dict keys: status ("filled" | "rejected"), price, commission,
executed_at (ISO8601), reason (rejections only).

Connectors raise TransientExecutionError for timeouts and transport
failures; exchange-side rejections come back as a "rejected" fill.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from vpp_trading.config import settings
from vpp_trading.errors import TransientExecutionError, ValidationError
from vpp_trading.execution.models import TradingOrder

logger = logging.getLogger(__name__)


class MarketConnector(Protocol):
    def place_order(self, order: TradingOrder) -> dict[str, Any]: ...


class PaperMarketConnector:
    """Fills every order immediately at its limit price. Used in paper mode."""

    def __init__(self, commission_rate: float = 0.0) -> None:
        self.commission_rate = commission_rate

    def place_order(self, order: TradingOrder) -> dict[str, Any]:
        logger.info(
            "[paper] %s %s %.4f @ %.4f (order=%s)",
            order.side, order.market, order.quantity, order.price, order.id,
        )
        return {
            "status": "filled",
            "price": order.price,
            "commission": order.notional * self.commission_rate,
            "executed_at": datetime.now(timezone.utc).isoformat(),
        }


class HttpMarketConnector:
    """Exchange adapter speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = (base_url or settings.market_connector_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.market_connector_api_key
        self.timeout = timeout or settings.market_connector_timeout_sec

    def place_order(self, order: TradingOrder) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "client_order_id": order.id,
            "market": order.market,
            "side": str(order.side),
            "quantity": order.quantity,
            "price": order.price,
        }
        if order.scheduled_at is not None:
            payload["scheduled_at"] = order.scheduled_at.isoformat()

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = httpx.post(
                f"{self.base_url}/orders",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise TransientExecutionError(f"order {order.id} timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            # 4xx/5xx は取引所側の拒否として扱う
            logger.warning(
                "Market connector HTTP %d for order %s", e.response.status_code, order.id
            )
            return {"status": "rejected", "reason": f"http_{e.response.status_code}"}
        except httpx.TransportError as e:
            raise TransientExecutionError(f"order {order.id} transport error: {e}") from e

        status = data.get("status", "filled")
        if status != "filled":
            return {"status": "rejected", "reason": data.get("reason", status)}
        return {
            "status": "filled",
            "price": float(data.get("price", order.price)),
            "commission": float(data.get("commission", 0.0)),
            "executed_at": data.get("executed_at") or datetime.now(timezone.utc).isoformat(),
        }


def build_connector(execution_mode: str | None = None) -> MarketConnector:
    """Pick the connector for an execution mode (default: settings.execution_mode)."""
    if (execution_mode or settings.execution_mode) == "live":
        if not settings.market_connector_url:
            raise ValidationError("MARKET_CONNECTOR_URL is required in live mode")
        return HttpMarketConnector()
    return PaperMarketConnector()
