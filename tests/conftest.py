"""Shared fixtures for vpp_trading tests.

Helper functions (insert_strategy, insert_ticks, etc.) are in tests/helpers.py.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from vpp_trading.risk.models import RiskLimits
from vpp_trading.risk.risk_gate import RiskGate


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Temporary database path; each test gets an isolated SQLite file."""
    return tmp_path / "test.db"


@pytest.fixture()
def limits() -> RiskLimits:
    """Loose limits that only the test under scrutiny should hit."""
    return RiskLimits(
        max_position_qty=1_000.0,
        max_order_notional=100_000.0,
        max_orders_per_minute=10,
        price_min=-500.0,
        price_max=10_000.0,
        max_price_deviation_pct=20.0,
    )


@pytest.fixture()
def risk_gate(limits: RiskLimits) -> RiskGate:
    return RiskGate(limits=limits, enabled=True)
