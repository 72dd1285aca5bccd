"""Arbitrage opportunity detection and risk scoring.

Pure functions over per-market tick snapshots (oldest first). Margins are
compared inclusively: an opportunity whose margin equals min_margin is
emitted for every arbitrage type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from itertools import combinations

import numpy as np

from vpp_trading.store.models import MarketTick

logger = logging.getLogger(__name__)


class ArbitrageType(StrEnum):
    SPATIAL = "spatial"
    TEMPORAL = "temporal"
    CROSS_COMMODITY = "cross_commodity"


@dataclass(frozen=True)
class ArbitrageOpportunity:
    id: str
    type: ArbitrageType
    buy_market: str
    sell_market: str
    buy_price: float
    sell_price: float
    buy_time: datetime
    sell_time: datetime
    volume: float
    profit_margin: float

    @property
    def expected_profit(self) -> float:
        return (self.sell_price - self.buy_price) * self.volume


def _ts(tick: MarketTick) -> str:
    return tick.timestamp.strftime("%Y%m%dT%H%M%S")


def find_spatial(
    snapshots: dict[str, list[MarketTick]],
    min_margin: float,
    max_volume: float,
) -> list[ArbitrageOpportunity]:
    """Every unordered market pair, compared on its latest tick."""
    latest = {m: ticks[-1] for m, ticks in snapshots.items() if ticks}
    opportunities: list[ArbitrageOpportunity] = []
    for m1, m2 in combinations(latest, 2):
        t1, t2 = latest[m1], latest[m2]
        avg = (t1.price + t2.price) / 2
        if avg <= 0:
            logger.debug("Skipping pair %s/%s: non-positive average price", m1, m2)
            continue
        margin = abs(t1.price - t2.price) / avg
        if margin < min_margin or margin == 0:
            continue
        volume = min(t1.volume, t2.volume, max_volume)
        if volume <= 0:
            continue
        buy, sell = (t1, t2) if t1.price <= t2.price else (t2, t1)
        opportunities.append(
            ArbitrageOpportunity(
                id=f"spatial_{m1}_{m2}_{_ts(t1)}_{_ts(t2)}",
                type=ArbitrageType.SPATIAL,
                buy_market=buy.market,
                sell_market=sell.market,
                buy_price=buy.price,
                sell_price=sell.price,
                buy_time=buy.timestamp,
                sell_time=sell.timestamp,
                volume=volume,
                profit_margin=margin,
            )
        )
    return opportunities


def find_temporal(
    snapshots: dict[str, list[MarketTick]],
    min_margin: float,
    window: int,
    max_volume: float,
) -> list[ArbitrageOpportunity]:
    """Per market: buy at the cheapest and sell at the dearest of the last `window` samples."""
    opportunities: list[ArbitrageOpportunity] = []
    for market, ticks in snapshots.items():
        samples = ticks[-window:]
        if len(samples) < 2:
            continue
        lo = min(samples, key=lambda t: t.price)
        hi = max(samples, key=lambda t: t.price)
        if lo.price <= 0:
            logger.debug("Skipping %s: non-positive minimum price", market)
            continue
        margin = (hi.price - lo.price) / lo.price
        if margin < min_margin or margin == 0:
            continue
        volume = min(lo.volume, hi.volume, max_volume)
        if volume <= 0:
            continue
        opportunities.append(
            ArbitrageOpportunity(
                id=f"temporal_{market}_{_ts(lo)}_{_ts(hi)}",
                type=ArbitrageType.TEMPORAL,
                buy_market=market,
                sell_market=market,
                buy_price=lo.price,
                sell_price=hi.price,
                buy_time=lo.timestamp,
                sell_time=hi.timestamp,
                volume=volume,
                profit_margin=margin,
            )
        )
    return opportunities


def find_cross_commodity(
    snapshots: dict[str, list[MarketTick]],
    min_margin: float,
) -> list[ArbitrageOpportunity]:
    # TODO: needs a commodity relationship table (power vs gas/carbon spreads) before pairs can be priced
    logger.info("Cross-commodity arbitrage is not implemented, no opportunities returned")
    return []


def risk_score(opportunity: ArbitrageOpportunity, snapshots: dict[str, list[MarketTick]]) -> float:
    """Price volatility of the involved markets: the worst coefficient of variation.

    A market with a single sample scores 0.0. A non-positive mean price
    scores infinity so the opportunity is never accepted.
    """
    score = 0.0
    for market in {opportunity.buy_market, opportunity.sell_market}:
        prices = np.array([t.price for t in snapshots.get(market, [])], dtype=float)
        if len(prices) < 2:
            continue
        mean = float(np.mean(prices))
        if mean <= 0:
            return float("inf")
        score = max(score, float(np.std(prices)) / mean)
    return score
