"""Action payload parser: action templates -> TradingOrder.

    [{"type": "buy", "quantity": 10},
     {"type": "discharge", "quantity": 5, "price_mode": "offset_pct", "offset_pct": 2.0},
     {"type": "sell", "quantity": 3, "price_mode": "limit", "price": 120.0}]

"hold" templates are accepted and produce no order. Editor-style entries
with a nested "parameters" object are flattened before parsing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from vpp_trading.errors import ValidationError
from vpp_trading.execution.models import OrderSide, TradingOrder
from vpp_trading.store.models import MarketTick

PRICE_MODES = ("market", "limit", "offset_pct")


@dataclass(frozen=True)
class ActionTemplate:
    side: OrderSide | None  # None = hold
    quantity: float = 0.0
    price_mode: str = "market"
    price: float | None = None
    offset_pct: float = 0.0
    resource_id: int | None = None
    market: str | None = None  # 省略時は戦略の market

    def order_price(self, tick: MarketTick) -> float:
        if self.price_mode == "limit":
            return float(self.price)  # type: ignore[arg-type]
        if self.price_mode == "offset_pct":
            return tick.price * (1 + self.offset_pct / 100)
        return tick.price

    def build_order(
        self,
        tick: MarketTick,
        strategy_id: int | None = None,
        resource_id: int | None = None,
        vpp_id: int | None = None,
    ) -> TradingOrder | None:
        if self.side is None:
            return None
        return TradingOrder(
            market=self.market or tick.market,
            side=self.side,
            quantity=self.quantity,
            price=self.order_price(tick),
            strategy_id=strategy_id,
            resource_id=self.resource_id if self.resource_id is not None else resource_id,
            vpp_id=vpp_id,
        )


def parse_action(node: dict[str, Any]) -> ActionTemplate:
    if not isinstance(node, dict):
        raise ValidationError(f"action must be an object, got {type(node).__name__}")
    params = {**node.get("parameters", {}), **{k: v for k, v in node.items() if k != "parameters"}}

    kind = str(params.get("type") or params.get("side") or "").lower()
    if kind == "hold":
        return ActionTemplate(side=None)
    try:
        side = OrderSide(kind)
    except ValueError:
        raise ValidationError(f"unknown action type: {kind!r}") from None

    try:
        quantity = float(params.get("quantity", 0))
    except (TypeError, ValueError):
        raise ValidationError(f"action quantity is not a number: {params.get('quantity')!r}") from None
    if quantity <= 0:
        raise ValidationError(f"action quantity must be positive, got {quantity}")

    price_mode = str(params.get("price_mode", "limit" if "price" in params else "market")).lower()
    if price_mode not in PRICE_MODES:
        raise ValidationError(f"unknown price_mode: {price_mode!r}")
    price = params.get("price")
    if price_mode == "limit" and price is None:
        raise ValidationError("limit action needs a 'price'")

    resource_id = params.get("resource_id")
    return ActionTemplate(
        side=side,
        quantity=quantity,
        price_mode=price_mode,
        price=float(price) if price is not None else None,
        offset_pct=float(params.get("offset_pct", 0.0)),
        resource_id=int(resource_id) if resource_id is not None else None,
        market=params.get("market"),
    )


def parse_actions(payload: str | list | dict | None) -> list[ActionTemplate]:
    """Parse an actions payload, keeping declaration order."""
    if payload is None or payload == "":
        return []
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"actions payload is not valid JSON: {e}") from e
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValidationError("actions payload must be a list")
    return [parse_action(node) for node in payload]
