"""Profit distribution policies.

Each policy is a pure weight function dispatched through DISTRIBUTORS.
Amounts are allocated in whole cents with the largest-remainder method, so
the distributed total always equals net profit to the cent and no resource
receives a negative share.
"""

from __future__ import annotations

import math
from collections.abc import Callable

from vpp_trading.store.models import DistributionPolicy, ProfitDistribution, Resource

# weights(resources, contributions) -> (ratios aligned with resources, method actually applied)
WeightFn = Callable[[list[Resource], dict[int, float]], tuple[list[float], DistributionPolicy]]


def equal_share_weights(
    resources: list[Resource], contributions: dict[int, float]
) -> tuple[list[float], DistributionPolicy]:
    n = len(resources)
    return [1.0 / n] * n, DistributionPolicy.EQUAL_SHARE


def capacity_weights(
    resources: list[Resource], contributions: dict[int, float]
) -> tuple[list[float], DistributionPolicy]:
    total = sum(max(r.capacity, 0.0) for r in resources)
    if total <= 0:
        return equal_share_weights(resources, contributions)
    return [max(r.capacity, 0.0) / total for r in resources], DistributionPolicy.CAPACITY_WEIGHTED


def contribution_weights(
    resources: list[Resource], contributions: dict[int, float]
) -> tuple[list[float], DistributionPolicy]:
    values = [max(contributions.get(r.id, 0.0), 0.0) for r in resources]
    total = sum(values)
    if total <= 0:
        # 貢献ゼロなら均等配分にフォールバック
        return equal_share_weights(resources, contributions)
    return [v / total for v in values], DistributionPolicy.CONTRIBUTION_WEIGHTED


DISTRIBUTORS: dict[DistributionPolicy, WeightFn] = {
    DistributionPolicy.CAPACITY_WEIGHTED: capacity_weights,
    DistributionPolicy.CONTRIBUTION_WEIGHTED: contribution_weights,
    DistributionPolicy.EQUAL_SHARE: equal_share_weights,
}


def allocate_cents(total: float, ratios: list[float]) -> list[float]:
    """Split total into cent amounts proportional to ratios, summing exactly to total."""
    total_cents = round(total * 100)
    raw = [total_cents * r for r in ratios]
    cents = [math.floor(x) for x in raw]
    leftover = total_cents - sum(cents)
    # 端数の大きい順 (同率は先頭優先) に 1 セントずつ配る
    order = sorted(range(len(raw)), key=lambda i: (-(raw[i] - cents[i]), i))
    for i in order[:leftover]:
        cents[i] += 1
    return [c / 100 for c in cents]


def distribute_profit(
    net_profit: float,
    resources: list[Resource],
    policy: DistributionPolicy,
    contributions: dict[int, float] | None = None,
) -> list[ProfitDistribution]:
    """Distribute a positive net profit over resources. Empty when nothing to share."""
    if net_profit <= 0 or not resources:
        return []
    ratios, method = DISTRIBUTORS[policy](resources, contributions or {})
    amounts = allocate_cents(net_profit, ratios)
    return [
        ProfitDistribution(
            resource_id=r.id,
            resource_name=r.name,
            ratio=ratio,
            amount=amount,
            method=str(method),
        )
        for r, ratio, amount in zip(resources, ratios, amounts)
    ]
