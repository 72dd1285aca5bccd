"""Market data and resource capacity providers backed by the local store."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol

from vpp_trading.store.models import MarketTick, ResourceCapacityInfo
from vpp_trading.store.schema import DEFAULT_DB_PATH


class MarketDataProvider(Protocol):
    def latest_ticks(self, market: str, limit: int) -> list[MarketTick]: ...

    def ticks_between(self, market: str, start: datetime, end: datetime) -> list[MarketTick]: ...


class ResourceCapacityProvider(Protocol):
    def capacity_info(self, vpp_id: int) -> ResourceCapacityInfo: ...


class DbMarketDataProvider:
    """Reads time-ordered ticks from the market_ticks table."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path

    def latest_ticks(self, market: str, limit: int) -> list[MarketTick]:
        from vpp_trading.store.db import get_latest_ticks

        return get_latest_ticks(market, limit, db_path=self.db_path)

    def ticks_between(self, market: str, start: datetime, end: datetime) -> list[MarketTick]:
        from vpp_trading.store.db import get_ticks_between

        return get_ticks_between(market, start, end, db_path=self.db_path)


class DbResourceCapacityProvider:
    """Aggregates the resources table per VPP."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path

    def capacity_info(self, vpp_id: int) -> ResourceCapacityInfo:
        from vpp_trading.store.db import get_resources

        resources = get_resources(vpp_id, db_path=self.db_path)
        return ResourceCapacityInfo(
            total_capacity=sum(r.capacity for r in resources),
            available_capacity=sum(r.available_capacity for r in resources),
            max_power=sum(r.max_power for r in resources),
            min_power=sum(r.min_power for r in resources),
            resource_count=len(resources),
        )
