"""SQLite store for strategies, market ticks, the trade ledger, resources,
settlements and run history.

Every function opens its own connection so that callers on different worker
threads never share one.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from vpp_trading.store.models import (
    ArbitrageRunRecord,
    BacktestRunRecord,
    MarketTick,
    ProfitDistribution,
    Resource,
    SettlementRecord,
    SettlementStatus,
    Strategy,
    TradeRecord,
    TradeStatus,
    parse_iso,
    to_iso,
)
from vpp_trading.store.schema import DEFAULT_DB_PATH, _connect

_BUY_SIDES = ("buy", "charge")
_SELL_SIDES = ("sell", "discharge")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _payload(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def create_strategy(
    *,
    name: str,
    market: str,
    conditions: Any,
    actions: Any,
    status: str = "draft",
    resource_id: int | None = None,
    vpp_id: int | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    """Insert a strategy definition and return its row id."""
    now = _now()
    conn = _connect(db_path)
    try:
        cur = conn.execute(
            """INSERT INTO strategies
               (name, status, market, conditions, actions, resource_id, vpp_id,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                name,
                status,
                market,
                _payload(conditions),
                _payload(actions),
                resource_id,
                vpp_id,
                now,
                now,
            ),
        )
        conn.commit()
        return cur.lastrowid  # type: ignore[return-value]
    finally:
        conn.close()


def get_strategy(strategy_id: int, db_path: Path | str = DEFAULT_DB_PATH) -> Strategy | None:
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM strategies WHERE id = ?", (strategy_id,)).fetchone()
        return Strategy(**dict(row)) if row else None
    finally:
        conn.close()


def get_strategies_by_status(
    status: str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[Strategy]:
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM strategies WHERE status = ? ORDER BY id", (status,)
        ).fetchall()
        return [Strategy(**dict(r)) for r in rows]
    finally:
        conn.close()


def update_strategy_status(
    strategy_id: int,
    status: str,
    last_execution_time: str | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> None:
    """Set strategy status; last_execution_time is only overwritten when given."""
    conn = _connect(db_path)
    try:
        if last_execution_time is not None:
            conn.execute(
                """UPDATE strategies
                   SET status = ?, last_execution_time = ?, updated_at = ?
                   WHERE id = ?""",
                (status, last_execution_time, _now(), strategy_id),
            )
        else:
            conn.execute(
                "UPDATE strategies SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), strategy_id),
            )
        conn.commit()
    finally:
        conn.close()


def touch_strategy_execution(
    strategy_id: int,
    executed_at: str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> None:
    conn = _connect(db_path)
    try:
        conn.execute(
            "UPDATE strategies SET last_execution_time = ? WHERE id = ?",
            (executed_at, strategy_id),
        )
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Market ticks
# ---------------------------------------------------------------------------


def _row_to_tick(row: Any) -> MarketTick:
    return MarketTick(
        market=row["market"],
        price=float(row["price"]),
        volume=float(row["volume"]),
        timestamp=parse_iso(row["ts"]),
        status=row["status"],
    )


def insert_market_ticks(
    ticks: list[MarketTick],
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    """Insert ticks, ignoring (market, ts) duplicates. Returns inserted count."""
    conn = _connect(db_path)
    try:
        inserted = 0
        for t in ticks:
            cur = conn.execute(
                """INSERT OR IGNORE INTO market_ticks (market, price, volume, ts, status)
                   VALUES (?, ?, ?, ?, ?)""",
                (t.market, t.price, t.volume, to_iso(t.timestamp), t.status),
            )
            inserted += cur.rowcount
        conn.commit()
        return inserted
    finally:
        conn.close()


def get_latest_ticks(
    market: str,
    limit: int,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[MarketTick]:
    """Return the most recent `limit` ticks for a market, oldest first."""
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            """SELECT * FROM market_ticks WHERE market = ?
               ORDER BY ts DESC LIMIT ?""",
            (market, limit),
        ).fetchall()
        return [_row_to_tick(r) for r in reversed(rows)]
    finally:
        conn.close()


def get_ticks_between(
    market: str,
    start: datetime | str,
    end: datetime | str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[MarketTick]:
    """Return ticks with start <= ts <= end, oldest first."""
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            """SELECT * FROM market_ticks
               WHERE market = ? AND ts >= ? AND ts <= ?
               ORDER BY ts ASC, id ASC""",
            (market, to_iso(start), to_iso(end)),
        ).fetchall()
        return [_row_to_tick(r) for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Trade ledger
# ---------------------------------------------------------------------------


def log_trade(
    *,
    market: str,
    side: str,
    quantity: float,
    price: float,
    amount: float,
    commission: float = 0.0,
    status: str = TradeStatus.EXECUTED,
    vpp_id: int | None = None,
    strategy_id: int | None = None,
    resource_id: int | None = None,
    order_id: str | None = None,
    scheduled_at: str | None = None,
    executed_at: datetime | str | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    """Append a ledger row and return its id."""
    now = _now()
    conn = _connect(db_path)
    try:
        cur = conn.execute(
            """INSERT INTO trades
               (vpp_id, strategy_id, resource_id, market, side, quantity, price,
                amount, commission, status, executed_at, created_at,
                order_id, scheduled_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                vpp_id,
                strategy_id,
                resource_id,
                market,
                side.lower(),
                quantity,
                price,
                amount,
                commission,
                str(status),
                to_iso(executed_at) if executed_at is not None else now,
                now,
                order_id,
                scheduled_at,
            ),
        )
        conn.commit()
        return cur.lastrowid  # type: ignore[return-value]
    finally:
        conn.close()


def get_trades_between(
    vpp_id: int,
    start: datetime | date | str,
    end: datetime | date | str,
    status: str | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[TradeRecord]:
    """Return trades of a VPP with start <= executed_at < end, oldest first."""
    conn = _connect(db_path)
    try:
        sql = """SELECT * FROM trades
                 WHERE vpp_id = ? AND executed_at >= ? AND executed_at < ?"""
        params: list[Any] = [vpp_id, to_iso(start), to_iso(end)]
        if status is not None:
            sql += " AND status = ?"
            params.append(str(status))
        sql += " ORDER BY executed_at ASC, id ASC"
        rows = conn.execute(sql, params).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]
    finally:
        conn.close()


def count_recent_orders(
    strategy_id: int | None,
    since: datetime | str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    """Count ledger rows (any status) for a strategy since a timestamp."""
    conn = _connect(db_path)
    try:
        if strategy_id is None:
            row = conn.execute(
                "SELECT COUNT(*) FROM trades WHERE strategy_id IS NULL AND created_at >= ?",
                (to_iso(since),),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) FROM trades WHERE strategy_id = ? AND created_at >= ?",
                (strategy_id, to_iso(since)),
            ).fetchone()
        return int(row[0])
    finally:
        conn.close()


def get_net_position(
    market: str,
    resource_id: int | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> float:
    """Net executed quantity (buy/charge minus sell/discharge) for a market."""
    conn = _connect(db_path)
    try:
        sql = """SELECT
                   COALESCE(SUM(CASE WHEN side IN ('buy', 'charge') THEN quantity ELSE 0 END), 0),
                   COALESCE(SUM(CASE WHEN side IN ('sell', 'discharge') THEN quantity ELSE 0 END), 0)
                 FROM trades WHERE market = ? AND status = 'executed'"""
        params: list[Any] = [market]
        if resource_id is not None:
            sql += " AND resource_id = ?"
            params.append(resource_id)
        bought, sold = conn.execute(sql, params).fetchone()
        return float(bought) - float(sold)
    finally:
        conn.close()


def get_net_cash_flow(db_path: Path | str = DEFAULT_DB_PATH) -> float:
    """Sell proceeds minus purchase cost and commissions over the whole ledger."""
    conn = _connect(db_path)
    try:
        row = conn.execute(
            """SELECT
                 COALESCE(SUM(CASE WHEN side IN ('sell', 'discharge') THEN amount ELSE 0 END), 0),
                 COALESCE(SUM(CASE WHEN side IN ('buy', 'charge') THEN amount ELSE 0 END), 0),
                 COALESCE(SUM(commission), 0)
               FROM trades WHERE status = 'executed'""",
        ).fetchone()
        return float(row[0]) - float(row[1]) - float(row[2])
    finally:
        conn.close()


def get_realized_pnl(
    since: datetime | str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> float:
    """Realized P&L of executed trades since a timestamp, net of their commissions.

    Positions are carried at average cost per market over the whole ledger, so
    a sell today realizes against purchases made on earlier days.
    """
    since_iso = to_iso(since)
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            """SELECT market, side, quantity, price, commission, executed_at FROM trades
               WHERE status = 'executed' ORDER BY executed_at ASC, id ASC"""
        ).fetchall()
    finally:
        conn.close()

    qty: dict[str, float] = {}
    cost: dict[str, float] = {}  # 建玉の簿価 (ショートは負)
    realized = 0.0
    for r in rows:
        market = r["market"]
        delta = r["quantity"] if r["side"] in ("buy", "charge") else -r["quantity"]
        held = qty.get(market, 0.0)
        basis = cost.get(market, 0.0)
        pnl = 0.0
        if held and (held > 0) != (delta > 0):
            closed = min(abs(delta), abs(held))
            avg = basis / held
            sign = 1.0 if held > 0 else -1.0
            pnl = sign * closed * (r["price"] - avg)
            basis -= avg * closed * sign
            held -= closed * sign
            opened = delta + closed * sign
        else:
            opened = delta
        # 決済しきれなかった分は反対側の新規建玉
        basis += opened * r["price"]
        held += opened
        qty[market] = held
        cost[market] = basis if abs(held) > 1e-12 else 0.0
        if r["executed_at"] >= since_iso:
            realized += pnl - float(r["commission"] or 0.0)
    return realized


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


def upsert_resource(
    *,
    vpp_id: int,
    name: str,
    capacity: float,
    max_power: float = 0.0,
    min_power: float = 0.0,
    available_capacity: float | None = None,
    resource_id: int | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    """Insert or update a resource. total_profit is never touched here."""
    now = _now()
    available = capacity if available_capacity is None else available_capacity
    conn = _connect(db_path)
    try:
        if resource_id is not None:
            cur = conn.execute(
                """UPDATE resources
                   SET vpp_id = ?, name = ?, capacity = ?, max_power = ?, min_power = ?,
                       available_capacity = ?, updated_at = ?
                   WHERE id = ?""",
                (vpp_id, name, capacity, max_power, min_power, available, now, resource_id),
            )
            if cur.rowcount:
                conn.commit()
                return resource_id
        cur = conn.execute(
            """INSERT INTO resources
               (vpp_id, name, capacity, max_power, min_power, available_capacity,
                total_profit, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 0.0, ?)""",
            (vpp_id, name, capacity, max_power, min_power, available, now),
        )
        conn.commit()
        return cur.lastrowid  # type: ignore[return-value]
    finally:
        conn.close()


def get_resources(vpp_id: int, db_path: Path | str = DEFAULT_DB_PATH) -> list[Resource]:
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM resources WHERE vpp_id = ? ORDER BY id", (vpp_id,)
        ).fetchall()
        return [Resource(**dict(r)) for r in rows]
    finally:
        conn.close()


def get_resource(resource_id: int, db_path: Path | str = DEFAULT_DB_PATH) -> Resource | None:
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM resources WHERE id = ?", (resource_id,)).fetchone()
        return Resource(**dict(row)) if row else None
    finally:
        conn.close()


def get_vpp_ids(db_path: Path | str = DEFAULT_DB_PATH) -> list[int]:
    """Distinct VPP ids that have at least one resource."""
    conn = _connect(db_path)
    try:
        rows = conn.execute("SELECT DISTINCT vpp_id FROM resources ORDER BY vpp_id").fetchall()
        return [int(r[0]) for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Settlements
# ---------------------------------------------------------------------------


def _row_to_settlement(row: Any) -> SettlementRecord:
    data = dict(row)
    details = json.loads(data.pop("distribution_details") or "[]")
    return SettlementRecord(
        **data,
        distributions=[ProfitDistribution(**d) for d in details],
    )


def get_completed_settlement(
    vpp_id: int,
    period_start: str,
    period_end: str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> SettlementRecord | None:
    conn = _connect(db_path)
    try:
        row = conn.execute(
            """SELECT * FROM settlements
               WHERE vpp_id = ? AND period_start = ? AND period_end = ? AND status = ?""",
            (vpp_id, period_start, period_end, SettlementStatus.COMPLETED.value),
        ).fetchone()
        return _row_to_settlement(row) if row else None
    finally:
        conn.close()


def has_completed_settlement(
    vpp_id: int,
    period_start: str,
    period_end: str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> bool:
    return get_completed_settlement(vpp_id, period_start, period_end, db_path=db_path) is not None


def save_settlement(
    *,
    vpp_id: int,
    period_start: str,
    period_end: str,
    settlement_type: str,
    total_revenue: float,
    total_cost: float,
    net_profit: float,
    distribution_policy: str,
    distributions: list[ProfitDistribution],
    trade_count: int,
    resource_count: int,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> SettlementRecord:
    """Persist a COMPLETED settlement and credit resource profits atomically.

    Raises sqlite3.IntegrityError when a COMPLETED record for the same
    (vpp_id, period) already exists; nothing is written in that case.
    """
    now = _now()
    details = json.dumps([asdict(d) for d in distributions], ensure_ascii=False)
    conn = _connect(db_path)
    try:
        # unit of work: settlement 行と resources.total_profit の加算は同一トランザクション
        with conn:
            cur = conn.execute(
                """INSERT INTO settlements
                   (vpp_id, period_start, period_end, settlement_type, total_revenue,
                    total_cost, net_profit, distribution_policy, distribution_details,
                    trade_count, resource_count, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    vpp_id,
                    period_start,
                    period_end,
                    settlement_type,
                    total_revenue,
                    total_cost,
                    net_profit,
                    str(distribution_policy),
                    details,
                    trade_count,
                    resource_count,
                    SettlementStatus.COMPLETED.value,
                    now,
                ),
            )
            for d in distributions:
                conn.execute(
                    """UPDATE resources
                       SET total_profit = total_profit + ?, updated_at = ?
                       WHERE id = ?""",
                    (d.amount, now, d.resource_id),
                )
        return SettlementRecord(
            id=cur.lastrowid,  # type: ignore[arg-type]
            vpp_id=vpp_id,
            period_start=period_start,
            period_end=period_end,
            settlement_type=settlement_type,
            total_revenue=total_revenue,
            total_cost=total_cost,
            net_profit=net_profit,
            distribution_policy=str(distribution_policy),
            status=SettlementStatus.COMPLETED.value,
            created_at=now,
            trade_count=trade_count,
            resource_count=resource_count,
            distributions=list(distributions),
        )
    finally:
        conn.close()


def get_settlement_history(
    vpp_id: int,
    start: date | str,
    end: date | str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[SettlementRecord]:
    """COMPLETED settlements whose period lies within [start, end], oldest first."""
    start_s = start.isoformat() if isinstance(start, date) else start
    end_s = end.isoformat() if isinstance(end, date) else end
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            """SELECT * FROM settlements
               WHERE vpp_id = ? AND status = ?
                 AND period_start >= ? AND period_end <= ?
               ORDER BY period_start ASC, id ASC""",
            (vpp_id, SettlementStatus.COMPLETED.value, start_s, end_s),
        ).fetchall()
        return [_row_to_settlement(r) for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Backtest / arbitrage run history
# ---------------------------------------------------------------------------


def log_backtest_run(
    *,
    strategy_id: int,
    strategy_name: str,
    market: str,
    start_time: str,
    end_time: str,
    initial_capital: float,
    final_capital: float,
    total_return: float,
    annualized_return: float,
    max_drawdown: float,
    sharpe_ratio: float,
    win_rate: float,
    total_trades: int,
    profitable_trades: int,
    average_profit: float,
    average_loss: float,
    max_consecutive_wins: int,
    max_consecutive_losses: int,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    conn = _connect(db_path)
    try:
        cur = conn.execute(
            """INSERT INTO backtest_runs
               (strategy_id, strategy_name, market, start_time, end_time,
                initial_capital, final_capital, total_return, annualized_return,
                max_drawdown, sharpe_ratio, win_rate, total_trades, profitable_trades,
                average_profit, average_loss, max_consecutive_wins,
                max_consecutive_losses, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                strategy_id,
                strategy_name,
                market,
                start_time,
                end_time,
                initial_capital,
                final_capital,
                total_return,
                annualized_return,
                max_drawdown,
                sharpe_ratio,
                win_rate,
                total_trades,
                profitable_trades,
                average_profit,
                average_loss,
                max_consecutive_wins,
                max_consecutive_losses,
                _now(),
            ),
        )
        conn.commit()
        return cur.lastrowid  # type: ignore[return-value]
    finally:
        conn.close()


def get_backtest_runs(
    strategy_id: int,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[BacktestRunRecord]:
    """Backtest history for a strategy, newest first."""
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM backtest_runs WHERE strategy_id = ? ORDER BY id DESC",
            (strategy_id,),
        ).fetchall()
        return [BacktestRunRecord(**dict(r)) for r in rows]
    finally:
        conn.close()


def get_backtest_run(run_id: int, db_path: Path | str = DEFAULT_DB_PATH) -> BacktestRunRecord | None:
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM backtest_runs WHERE id = ?", (run_id,)).fetchone()
        return BacktestRunRecord(**dict(row)) if row else None
    finally:
        conn.close()


def log_arbitrage_run(
    *,
    arbitrage_type: str,
    markets: list[str],
    opportunities_found: int,
    trades_executed: int,
    total_profit: float,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> int:
    conn = _connect(db_path)
    try:
        cur = conn.execute(
            """INSERT INTO arbitrage_runs
               (arbitrage_type, markets, opportunities_found, trades_executed,
                total_profit, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                str(arbitrage_type),
                ",".join(markets),
                opportunities_found,
                trades_executed,
                total_profit,
                _now(),
            ),
        )
        conn.commit()
        return cur.lastrowid  # type: ignore[return-value]
    finally:
        conn.close()


def get_arbitrage_runs(
    limit: int = 50,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[ArbitrageRunRecord]:
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM arbitrage_runs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [ArbitrageRunRecord(**dict(r)) for r in rows]
    finally:
        conn.close()
