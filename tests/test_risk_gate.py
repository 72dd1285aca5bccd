"""Tests for the pre-trade risk gate."""

from __future__ import annotations

from dataclasses import replace

import pytest

from vpp_trading.execution.models import OrderSide, TradingOrder
from vpp_trading.risk.models import RiskContext, RiskLimits
from vpp_trading.risk.risk_gate import RiskGate


def _order(side=OrderSide.BUY, quantity=10.0, price=100.0, market="JEPX_TOKYO") -> TradingOrder:
    return TradingOrder(market=market, side=side, quantity=quantity, price=price)


def _ctx(**overrides) -> RiskContext:
    defaults = {"available_capital": 10_000.0}
    defaults.update(overrides)
    return RiskContext(**defaults)


class TestAccept:
    def test_plain_order_passes(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(), _ctx())
        assert result.allowed
        assert result.reason == ""

    def test_disabled_gate_allows_everything(self, limits: RiskLimits):
        gate = RiskGate(limits=limits, enabled=False)
        assert gate.check(_order(quantity=-5), _ctx(available_capital=0)).allowed

    def test_sell_does_not_need_capital(self, risk_gate: RiskGate):
        assert risk_gate.check(_order(side=OrderSide.SELL), _ctx(available_capital=0)).allowed

    def test_capital_exactly_enough(self, risk_gate: RiskGate):
        assert risk_gate.check(_order(quantity=10, price=100), _ctx(available_capital=1000)).allowed


class TestReject:
    def test_non_positive_quantity(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(quantity=0), _ctx())
        assert not result.allowed
        assert result.reason.startswith("invalid_quantity")

    def test_price_out_of_range(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(price=20_000), _ctx())
        assert result.reason.startswith("price_out_of_range")

    def test_negative_price_within_range_allowed(self, risk_gate: RiskGate):
        assert risk_gate.check(_order(side=OrderSide.SELL, price=-10), _ctx()).allowed

    def test_price_deviation(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(price=130), _ctx(reference_price=100))
        assert not result.allowed
        assert result.reason.startswith("price_deviation")

    def test_price_deviation_within_limit_allowed(self, risk_gate: RiskGate):
        assert risk_gate.check(_order(price=110), _ctx(reference_price=100)).allowed

    def test_order_notional(self, risk_gate: RiskGate):
        result = risk_gate.check(
            _order(side=OrderSide.SELL, quantity=900, price=200), _ctx()
        )
        assert result.reason.startswith("order_notional")

    def test_insufficient_capital(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(quantity=10, price=100), _ctx(available_capital=999.99))
        assert result.reason.startswith("insufficient_capital")

    def test_charge_counts_as_buy(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(side=OrderSide.CHARGE), _ctx(available_capital=0))
        assert result.reason.startswith("insufficient_capital")

    def test_position_limit_long(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(quantity=10), _ctx(current_position=995))
        assert result.reason.startswith("position_limit")

    def test_position_limit_short(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(side=OrderSide.SELL, quantity=10), _ctx(current_position=-995))
        assert result.reason.startswith("position_limit")

    def test_sell_reducing_position_allowed(self, risk_gate: RiskGate):
        assert risk_gate.check(
            _order(side=OrderSide.SELL, quantity=10), _ctx(current_position=1_000)
        ).allowed

    def test_frequency(self, risk_gate: RiskGate):
        result = risk_gate.check(_order(), _ctx(recent_order_count=10))
        assert result.reason.startswith("order_frequency")

    def test_first_failure_wins(self, risk_gate: RiskGate):
        result = risk_gate.check(
            _order(quantity=10, price=20_000),
            _ctx(available_capital=0, recent_order_count=100),
        )
        assert result.reason.startswith("price_out_of_range")

    @pytest.mark.parametrize("side", [OrderSide.BUY, OrderSide.SELL])
    def test_daily_loss_blocks_both_sides(self, limits: RiskLimits, side):
        gate = RiskGate(limits=replace(limits, max_daily_loss=500.0), enabled=True)
        result = gate.check(_order(side=side), _ctx(daily_realized_pnl=-500.01))
        assert not result.allowed
        assert result.reason.startswith("daily_loss")

    def test_daily_loss_at_limit_allowed(self, limits: RiskLimits):
        gate = RiskGate(limits=replace(limits, max_daily_loss=500.0), enabled=True)
        assert gate.check(_order(), _ctx(daily_realized_pnl=-500.0)).allowed
        assert gate.check(_order(), _ctx(daily_realized_pnl=10_000.0)).allowed

    def test_cash_reserve(self, limits: RiskLimits):
        gate = RiskGate(limits=replace(limits, min_cash_reserve=200.0), enabled=True)
        result = gate.check(_order(quantity=10, price=100), _ctx(available_capital=1_100))
        assert result.reason.startswith("cash_reserve")
        assert gate.check(_order(quantity=10, price=100), _ctx(available_capital=1_200)).allowed

    def test_cash_reserve_ignores_sells(self, limits: RiskLimits):
        gate = RiskGate(limits=replace(limits, min_cash_reserve=200.0), enabled=True)
        assert gate.check(_order(side=OrderSide.SELL), _ctx(available_capital=0)).allowed


class TestLimitsFromSettings:
    def test_reads_settings_at_call_time(self, monkeypatch):
        monkeypatch.setattr("vpp_trading.risk.models.settings.risk_max_position_qty", 42.0)
        assert RiskLimits.from_settings().max_position_qty == 42.0

    def test_daily_loss_and_reserve_from_settings(self, monkeypatch):
        monkeypatch.setattr("vpp_trading.risk.models.settings.risk_max_daily_loss", 750.0)
        monkeypatch.setattr("vpp_trading.risk.models.settings.risk_min_cash_reserve", 25.0)
        lim = RiskLimits.from_settings()
        assert lim.max_daily_loss == 750.0
        assert lim.min_cash_reserve == 25.0

    def test_gate_default_enabled_from_settings(self, monkeypatch):
        monkeypatch.setattr("vpp_trading.risk.risk_gate.settings.risk_check_enabled", False)
        assert RiskGate().enabled is False

    @pytest.mark.parametrize("qty", [0.0, -1.0])
    def test_disabled_from_settings_skips(self, monkeypatch, qty):
        monkeypatch.setattr("vpp_trading.risk.risk_gate.settings.risk_check_enabled", False)
        assert RiskGate().check(_order(quantity=qty), _ctx()).allowed
