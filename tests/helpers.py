"""Shared test helpers. Import in test files: from tests.helpers import insert_strategy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from vpp_trading.execution.models import TradingOrder
from vpp_trading.store.db import create_strategy, insert_market_ticks, log_trade, upsert_resource
from vpp_trading.store.models import MarketTick

T0 = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


def make_tick(market: str = "JEPX_TOKYO", price: float = 100.0, volume: float = 50.0,
              ts: datetime | None = None, minutes: int = 0, status: str = "open") -> MarketTick:
    return MarketTick(
        market=market,
        price=price,
        volume=volume,
        timestamp=(ts or T0) + timedelta(minutes=minutes),
        status=status,
    )


def make_series(market: str, prices: list[float], volume: float = 50.0,
                step_minutes: int = 60, start: datetime | None = None) -> list[MarketTick]:
    """Evenly spaced ticks for one market, oldest first."""
    return [
        make_tick(market, p, volume, ts=start, minutes=i * step_minutes)
        for i, p in enumerate(prices)
    ]


def insert_ticks(db_path: Path, ticks: list[MarketTick]) -> int:
    return insert_market_ticks(ticks, db_path=db_path)


def insert_strategy(db_path: Path, **overrides) -> int:
    """Insert an ACTIVE strategy with sensible defaults. Override any field via kwargs."""
    defaults: dict[str, Any] = {
        "name": "peak-shaver",
        "market": "JEPX_TOKYO",
        "conditions": [{"type": "price_threshold", "operator": "less_than", "value": 105}],
        "actions": [{"type": "buy", "quantity": 10}],
        "status": "active",
        "resource_id": None,
        "vpp_id": 1,
        "db_path": db_path,
    }
    defaults.update(overrides)
    return create_strategy(**defaults)


def insert_resource(db_path: Path, **overrides) -> int:
    """Insert a resource with sensible defaults."""
    defaults: dict[str, Any] = {
        "vpp_id": 1,
        "name": "battery-a",
        "capacity": 10.0,
        "max_power": 5.0,
        "min_power": 0.0,
        "db_path": db_path,
    }
    defaults.update(overrides)
    return upsert_resource(**defaults)


def insert_trade(db_path: Path, **overrides) -> int:
    """Insert an executed trade; amount defaults to quantity * price."""
    defaults: dict[str, Any] = {
        "market": "JEPX_TOKYO",
        "side": "sell",
        "quantity": 10.0,
        "price": 100.0,
        "vpp_id": 1,
        "executed_at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        "db_path": db_path,
    }
    defaults.update(overrides)
    defaults.setdefault("amount", defaults["quantity"] * defaults["price"])
    return log_trade(**defaults)


class FakeConnector:
    """Market connector double: records orders, answers from a script."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.orders: list[TradingOrder] = []
        self.responses = list(responses or [])

    def place_order(self, order: TradingOrder) -> dict[str, Any]:
        self.orders.append(order)
        if self.responses:
            resp = self.responses.pop(0)
            if isinstance(resp, Exception):
                raise resp
            return resp
        return {
            "status": "filled",
            "price": order.price,
            "commission": 0.0,
            "executed_at": "2026-03-01T12:00:00+00:00",
        }


class ListMarketData:
    """In-memory MarketDataProvider."""

    def __init__(self, ticks: dict[str, list[MarketTick]] | None = None) -> None:
        self.ticks: dict[str, list[MarketTick]] = ticks or {}

    def latest_ticks(self, market: str, limit: int) -> list[MarketTick]:
        return self.ticks.get(market, [])[-limit:]

    def ticks_between(self, market: str, start: datetime, end: datetime) -> list[MarketTick]:
        return [t for t in self.ticks.get(market, []) if start <= t.timestamp <= end]
