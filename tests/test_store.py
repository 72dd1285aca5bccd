"""Tests for the SQLite store (vpp_trading/store/db.py)."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tests.helpers import T0, insert_resource, insert_strategy, insert_trade, make_series, make_tick
from vpp_trading.store.db import (
    count_recent_orders,
    get_arbitrage_runs,
    get_completed_settlement,
    get_latest_ticks,
    get_net_cash_flow,
    get_net_position,
    get_realized_pnl,
    get_resource,
    get_resources,
    get_settlement_history,
    get_strategies_by_status,
    get_strategy,
    get_ticks_between,
    get_trades_between,
    get_vpp_ids,
    has_completed_settlement,
    insert_market_ticks,
    log_arbitrage_run,
    save_settlement,
    update_strategy_status,
    upsert_resource,
)
from vpp_trading.store.models import ProfitDistribution, StrategyStatus, TradeStatus
from vpp_trading.store.schema import _connect


class TestConnect:
    def test_creates_database(self, db_path: Path):
        assert not db_path.exists()
        conn = _connect(db_path)
        conn.close()
        assert db_path.exists()

    def test_creates_tables(self, db_path: Path):
        conn = _connect(db_path)
        tables = {
            r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        conn.close()
        for name in ("strategies", "market_ticks", "trades", "resources", "settlements",
                     "backtest_runs", "arbitrage_runs"):
            assert name in tables

    def test_idempotent_schema(self, db_path: Path):
        _connect(db_path).close()
        _connect(db_path).close()

    def test_trade_columns_migrated(self, db_path: Path):
        conn = _connect(db_path)
        cols = {r[1] for r in conn.execute("PRAGMA table_info(trades)").fetchall()}
        conn.close()
        assert {"order_id", "scheduled_at"} <= cols

    def test_tick_status_column_added_to_old_table(self, db_path: Path):
        conn = sqlite3.connect(str(db_path))
        conn.execute(
            "CREATE TABLE market_ticks (id INTEGER PRIMARY KEY AUTOINCREMENT, market TEXT NOT NULL, "
            "price REAL NOT NULL, volume REAL NOT NULL DEFAULT 0.0, ts TEXT NOT NULL, UNIQUE(market, ts))"
        )
        conn.execute("INSERT INTO market_ticks (market, price, ts) VALUES ('A', 1.0, '2026-03-01T00:00:00+00:00')")
        conn.commit()
        conn.close()

        [tick] = get_latest_ticks("A", 1, db_path=db_path)
        assert tick.status == "open"


class TestStrategies:
    def test_create_and_get(self, db_path: Path):
        sid = insert_strategy(db_path)
        s = get_strategy(sid, db_path=db_path)
        assert s is not None
        assert s.name == "peak-shaver"
        assert s.status == "active"
        assert '"price_threshold"' in s.conditions

    def test_missing_strategy(self, db_path: Path):
        assert get_strategy(999, db_path=db_path) is None

    def test_status_update_keeps_execution_time(self, db_path: Path):
        sid = insert_strategy(db_path)
        update_strategy_status(sid, StrategyStatus.RUNNING, "2026-03-01T00:00:00+00:00",
                               db_path=db_path)
        update_strategy_status(sid, StrategyStatus.ACTIVE, db_path=db_path)
        s = get_strategy(sid, db_path=db_path)
        assert s.status == "active"
        assert s.last_execution_time == "2026-03-01T00:00:00+00:00"

    def test_by_status(self, db_path: Path):
        insert_strategy(db_path, name="a")
        insert_strategy(db_path, name="b", status="draft")
        assert [s.name for s in get_strategies_by_status("active", db_path=db_path)] == ["a"]


class TestMarketTicks:
    def test_duplicates_ignored(self, db_path: Path):
        ticks = make_series("JEPX_TOKYO", [100, 101, 102])
        assert insert_market_ticks(ticks, db_path=db_path) == 3
        assert insert_market_ticks(ticks, db_path=db_path) == 0

    def test_latest_oldest_first(self, db_path: Path):
        insert_market_ticks(make_series("JEPX_TOKYO", [100, 101, 102, 103]), db_path=db_path)
        latest = get_latest_ticks("JEPX_TOKYO", 2, db_path=db_path)
        assert [t.price for t in latest] == [102, 103]
        assert latest[0].timestamp < latest[1].timestamp

    def test_between_inclusive(self, db_path: Path):
        insert_market_ticks(make_series("JEPX_TOKYO", [100, 101, 102, 103]), db_path=db_path)
        ticks = get_ticks_between(
            "JEPX_TOKYO", T0 + timedelta(hours=1), T0 + timedelta(hours=2), db_path=db_path
        )
        assert [t.price for t in ticks] == [101, 102]

    def test_markets_isolated(self, db_path: Path):
        insert_market_ticks([make_tick("A", 1.0), make_tick("B", 2.0)], db_path=db_path)
        assert [t.price for t in get_latest_ticks("B", 10, db_path=db_path)] == [2.0]

    def test_status_roundtrip(self, db_path: Path):
        insert_market_ticks([make_tick(status="suspended")], db_path=db_path)
        assert get_latest_ticks("JEPX_TOKYO", 1, db_path=db_path)[0].status == "suspended"


class TestTradeLedger:
    def test_window_is_half_open(self, db_path: Path):
        day = datetime(2026, 3, 1, tzinfo=timezone.utc)
        insert_trade(db_path, executed_at=day)
        insert_trade(db_path, executed_at=day + timedelta(days=1))
        trades = get_trades_between(1, day, day + timedelta(days=1), db_path=db_path)
        assert len(trades) == 1

    def test_status_filter(self, db_path: Path):
        insert_trade(db_path)
        insert_trade(db_path, status=TradeStatus.REJECTED)
        executed = get_trades_between(1, "2026-03-01", "2026-03-02",
                                      status=TradeStatus.EXECUTED, db_path=db_path)
        assert len(executed) == 1
        assert executed[0].status == "executed"

    def test_side_lowercased(self, db_path: Path):
        insert_trade(db_path, side="SELL")
        assert get_trades_between(1, "2026-03-01", "2026-03-02", db_path=db_path)[0].side == "sell"

    def test_net_position_ignores_rejected(self, db_path: Path):
        insert_trade(db_path, side="buy", quantity=10)
        insert_trade(db_path, side="sell", quantity=4)
        insert_trade(db_path, side="buy", quantity=100, status=TradeStatus.REJECTED)
        assert get_net_position("JEPX_TOKYO", db_path=db_path) == pytest.approx(6.0)

    def test_net_cash_flow(self, db_path: Path):
        insert_trade(db_path, side="buy", quantity=10, price=100, commission=1.0)
        insert_trade(db_path, side="sell", quantity=10, price=110, commission=1.0)
        assert get_net_cash_flow(db_path=db_path) == pytest.approx(1100 - 1000 - 2)

    def test_realized_pnl_average_cost(self, db_path: Path):
        day1 = T0
        day2 = T0 + timedelta(days=1)
        insert_trade(db_path, side="buy", quantity=10, price=100, executed_at=day1)
        insert_trade(db_path, side="buy", quantity=10, price=120, executed_at=day1)
        # 平均単価 110 に対して 15 売り、5 が反対側 (ショート) に回る
        insert_trade(db_path, side="sell", quantity=25, price=130, commission=2.0, executed_at=day2)
        insert_trade(db_path, side="buy", quantity=5, price=120, executed_at=day2)
        assert get_realized_pnl(day2, db_path=db_path) == pytest.approx(20 * 20 - 2 + 5 * 10)
        assert get_realized_pnl(day1, db_path=db_path) == pytest.approx(20 * 20 - 2 + 5 * 10)
        assert get_realized_pnl(day2 + timedelta(days=1), db_path=db_path) == 0.0

    def test_realized_pnl_ignores_rejected(self, db_path: Path):
        insert_trade(db_path, side="buy", quantity=10, price=100)
        insert_trade(db_path, side="sell", quantity=10, price=50, status=TradeStatus.REJECTED)
        assert get_realized_pnl(T0, db_path=db_path) == 0.0

    def test_count_recent_orders(self, db_path: Path):
        insert_trade(db_path, strategy_id=7)
        insert_trade(db_path, strategy_id=7, status=TradeStatus.REJECTED)
        insert_trade(db_path, strategy_id=8)
        since = datetime.now(timezone.utc) - timedelta(minutes=1)
        assert count_recent_orders(7, since, db_path=db_path) == 2
        assert count_recent_orders(7, datetime.now(timezone.utc) + timedelta(minutes=1),
                                   db_path=db_path) == 0


class TestResources:
    def test_upsert_insert_then_update(self, db_path: Path):
        rid = insert_resource(db_path)
        rid2 = upsert_resource(vpp_id=1, name="battery-a", capacity=20.0, resource_id=rid,
                               db_path=db_path)
        assert rid2 == rid
        r = get_resource(rid, db_path=db_path)
        assert r.capacity == 20.0
        assert r.available_capacity == 20.0
        assert r.total_profit == 0.0

    def test_vpp_ids(self, db_path: Path):
        insert_resource(db_path, vpp_id=2)
        insert_resource(db_path, vpp_id=1)
        insert_resource(db_path, vpp_id=2, name="pv")
        assert get_vpp_ids(db_path=db_path) == [1, 2]
        assert len(get_resources(2, db_path=db_path)) == 2


def _save(db_path: Path, rid: int, **overrides):
    kwargs = dict(
        vpp_id=1,
        period_start="2026-03-01",
        period_end="2026-03-01",
        settlement_type="daily",
        total_revenue=1000.0,
        total_cost=800.0,
        net_profit=200.0,
        distribution_policy="equal_share",
        distributions=[ProfitDistribution(rid, "battery-a", 1.0, 200.0, "equal_share")],
        trade_count=2,
        resource_count=1,
        db_path=db_path,
    )
    kwargs.update(overrides)
    return save_settlement(**kwargs)


class TestSettlements:
    def test_save_credits_resource(self, db_path: Path):
        rid = insert_resource(db_path)
        record = _save(db_path, rid)
        assert record.id == 1
        assert get_resource(rid, db_path=db_path).total_profit == pytest.approx(200.0)

    def test_roundtrip_distributions(self, db_path: Path):
        rid = insert_resource(db_path)
        _save(db_path, rid)
        found = get_completed_settlement(1, "2026-03-01", "2026-03-01", db_path=db_path)
        assert found.distributions[0].resource_id == rid
        assert found.distributions[0].amount == 200.0
        assert has_completed_settlement(1, "2026-03-01", "2026-03-01", db_path=db_path)

    def test_second_completed_rejected_atomically(self, db_path: Path):
        rid = insert_resource(db_path)
        _save(db_path, rid)
        with pytest.raises(sqlite3.IntegrityError):
            _save(db_path, rid)
        # 失敗した側の加算は残らない
        assert get_resource(rid, db_path=db_path).total_profit == pytest.approx(200.0)

    def test_history_window(self, db_path: Path):
        rid = insert_resource(db_path)
        _save(db_path, rid, period_start="2026-02-01", period_end="2026-02-28")
        _save(db_path, rid, period_start="2026-03-01", period_end="2026-03-01")
        hist = get_settlement_history(1, "2026-03-01", "2026-03-31", db_path=db_path)
        assert [h.period_start for h in hist] == ["2026-03-01"]


class TestRunHistory:
    def test_arbitrage_runs_newest_first(self, db_path: Path):
        log_arbitrage_run(arbitrage_type="spatial", markets=["A", "B"], opportunities_found=1,
                          trades_executed=1, total_profit=10.0, db_path=db_path)
        log_arbitrage_run(arbitrage_type="temporal", markets=["A"], opportunities_found=0,
                          trades_executed=0, total_profit=0.0, db_path=db_path)
        runs = get_arbitrage_runs(db_path=db_path)
        assert [r.arbitrage_type for r in runs] == ["temporal", "spatial"]
        assert runs[1].markets == "A,B"
