"""Tests for profit distribution policies and cent allocation."""

from __future__ import annotations

import pytest

from vpp_trading.settlement.distribution import allocate_cents, distribute_profit
from vpp_trading.store.models import DistributionPolicy, Resource


def _resource(rid: int, capacity: float, name: str | None = None) -> Resource:
    return Resource(
        id=rid,
        vpp_id=1,
        name=name or f"r{rid}",
        capacity=capacity,
        max_power=capacity / 2,
        min_power=0.0,
        available_capacity=capacity,
        total_profit=0.0,
        updated_at="2026-03-01T00:00:00+00:00",
    )


class TestAllocateCents:
    def test_sums_exactly(self):
        amounts = allocate_cents(100.0, [1 / 3] * 3)
        assert amounts == [33.34, 33.33, 33.33]
        assert round(sum(amounts), 2) == 100.0

    def test_largest_remainder_gets_cent(self):
        # 0.6 / 2.4 cents -> 端数 0.6 の方に 1 セント
        assert allocate_cents(0.03, [0.2, 0.8]) == [0.01, 0.02]

    def test_never_negative(self):
        amounts = allocate_cents(0.01, [0.2] * 5)
        assert all(a >= 0 for a in amounts)
        assert round(sum(amounts), 2) == 0.01


class TestPolicies:
    def test_equal_share(self):
        dist = distribute_profit(90.0, [_resource(1, 10), _resource(2, 30), _resource(3, 60)],
                                 DistributionPolicy.EQUAL_SHARE)
        assert [d.amount for d in dist] == [30.0, 30.0, 30.0]
        assert {d.method for d in dist} == {"equal_share"}

    def test_capacity_weighted(self):
        dist = distribute_profit(198.0, [_resource(1, 10), _resource(2, 30)],
                                 DistributionPolicy.CAPACITY_WEIGHTED)
        assert [d.amount for d in dist] == [49.5, 148.5]
        assert [d.ratio for d in dist] == [pytest.approx(0.25), pytest.approx(0.75)]
        assert dist[0].method == "capacity_weighted"

    def test_capacity_zero_falls_back(self):
        dist = distribute_profit(10.0, [_resource(1, 0), _resource(2, 0)],
                                 DistributionPolicy.CAPACITY_WEIGHTED)
        assert [d.amount for d in dist] == [5.0, 5.0]
        assert dist[0].method == "equal_share"

    def test_contribution_weighted(self):
        dist = distribute_profit(100.0, [_resource(1, 10), _resource(2, 10)],
                                 DistributionPolicy.CONTRIBUTION_WEIGHTED,
                                 contributions={1: 300.0, 2: 100.0})
        assert [d.amount for d in dist] == [75.0, 25.0]
        assert dist[0].method == "contribution_weighted"

    def test_contribution_missing_falls_back(self):
        dist = distribute_profit(100.0, [_resource(1, 10), _resource(2, 10)],
                                 DistributionPolicy.CONTRIBUTION_WEIGHTED)
        assert [d.amount for d in dist] == [50.0, 50.0]
        assert dist[0].method == "equal_share"

    @pytest.mark.parametrize("net", [0.0, -50.0])
    def test_nothing_to_share(self, net):
        assert distribute_profit(net, [_resource(1, 10)], DistributionPolicy.EQUAL_SHARE) == []

    def test_no_resources(self):
        assert distribute_profit(100.0, [], DistributionPolicy.EQUAL_SHARE) == []

    @pytest.mark.parametrize("policy", list(DistributionPolicy))
    def test_totals_conserved(self, policy):
        resources = [_resource(1, 7), _resource(2, 11), _resource(3, 13)]
        dist = distribute_profit(1234.57, resources, policy, contributions={1: 5, 2: 3, 3: 1})
        assert round(sum(d.amount for d in dist), 2) == 1234.57
        assert sum(d.ratio for d in dist) == pytest.approx(1.0)
        assert all(d.amount >= 0 for d in dist)
