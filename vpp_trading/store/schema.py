"""Database schema DDL and migration helpers.

Schema definitions and additive column migrations only; queries live in
vpp_trading/store/db.py.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "data" / "vpp_trading.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS strategies (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    name                TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'draft',
    market              TEXT NOT NULL,
    conditions          TEXT NOT NULL DEFAULT '[]',
    actions             TEXT NOT NULL DEFAULT '[]',
    resource_id         INTEGER,
    vpp_id              INTEGER,
    last_execution_time TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS market_ticks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    market      TEXT NOT NULL,
    price       REAL NOT NULL,
    volume      REAL NOT NULL DEFAULT 0.0,
    ts          TEXT NOT NULL,
    UNIQUE(market, ts)
);

CREATE TABLE IF NOT EXISTS trades (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    vpp_id      INTEGER,
    strategy_id INTEGER,
    resource_id INTEGER,
    market      TEXT NOT NULL,
    side        TEXT NOT NULL,
    quantity    REAL NOT NULL,
    price       REAL NOT NULL,
    amount      REAL NOT NULL,
    commission  REAL NOT NULL DEFAULT 0.0,
    status      TEXT NOT NULL DEFAULT 'executed',
    executed_at TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_trades_vpp_time ON trades(vpp_id, executed_at);
"""

RESOURCES_SQL = """
CREATE TABLE IF NOT EXISTS resources (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    vpp_id              INTEGER NOT NULL,
    name                TEXT NOT NULL,
    capacity            REAL NOT NULL DEFAULT 0.0,
    max_power           REAL NOT NULL DEFAULT 0.0,
    min_power           REAL NOT NULL DEFAULT 0.0,
    available_capacity  REAL NOT NULL DEFAULT 0.0,
    total_profit        REAL NOT NULL DEFAULT 0.0,
    updated_at          TEXT NOT NULL
);
"""

SETTLEMENTS_SQL = """
CREATE TABLE IF NOT EXISTS settlements (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    vpp_id              INTEGER NOT NULL,
    period_start        TEXT NOT NULL,
    period_end          TEXT NOT NULL,
    settlement_type     TEXT NOT NULL DEFAULT 'daily',
    total_revenue       REAL NOT NULL,
    total_cost          REAL NOT NULL,
    net_profit          REAL NOT NULL,
    distribution_policy TEXT NOT NULL,
    distribution_details TEXT NOT NULL DEFAULT '[]',
    trade_count         INTEGER NOT NULL DEFAULT 0,
    resource_count      INTEGER NOT NULL DEFAULT 0,
    status              TEXT NOT NULL DEFAULT 'completed',
    created_at          TEXT NOT NULL
);

-- (vpp_id, period) あたり COMPLETED は 1 件のみ
CREATE UNIQUE INDEX IF NOT EXISTS ux_settlements_completed
    ON settlements(vpp_id, period_start, period_end)
    WHERE status = 'completed';
"""

RUNS_SQL = """
CREATE TABLE IF NOT EXISTS backtest_runs (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_id             INTEGER NOT NULL,
    strategy_name           TEXT NOT NULL,
    market                  TEXT NOT NULL,
    start_time              TEXT NOT NULL,
    end_time                TEXT NOT NULL,
    initial_capital         REAL NOT NULL,
    final_capital           REAL NOT NULL,
    total_return            REAL NOT NULL,
    annualized_return       REAL NOT NULL,
    max_drawdown            REAL NOT NULL,
    sharpe_ratio            REAL NOT NULL,
    win_rate                REAL NOT NULL,
    total_trades            INTEGER NOT NULL,
    profitable_trades       INTEGER NOT NULL,
    average_profit          REAL NOT NULL,
    average_loss            REAL NOT NULL,
    max_consecutive_wins    INTEGER NOT NULL,
    max_consecutive_losses  INTEGER NOT NULL,
    created_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS arbitrage_runs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    arbitrage_type      TEXT NOT NULL,
    markets             TEXT NOT NULL,
    opportunities_found INTEGER NOT NULL,
    trades_executed     INTEGER NOT NULL,
    total_profit        REAL NOT NULL,
    created_at          TEXT NOT NULL
);
"""

# 約定記録の追加カラム (既存 DB との後方互換性のため ALTER TABLE で追加)
_TRADE_COLUMNS = [
    ("order_id", "TEXT"),
    ("scheduled_at", "TEXT"),
]


def _ensure_trade_columns(conn: sqlite3.Connection) -> None:
    """Add late-added columns to trades table if they don't exist."""
    existing = {row[1] for row in conn.execute("PRAGMA table_info(trades)").fetchall()}
    for col_name, col_def in _TRADE_COLUMNS:
        if col_name not in existing:
            conn.execute(f"ALTER TABLE trades ADD COLUMN {col_name} {col_def}")
    conn.commit()


# 市場状態 (open / closed / suspended など) は後から追加
_TICK_COLUMNS = [
    ("status", "TEXT NOT NULL DEFAULT 'open'"),
]


def _ensure_tick_columns(conn: sqlite3.Connection) -> None:
    existing = {row[1] for row in conn.execute("PRAGMA table_info(market_ticks)").fetchall()}
    for col_name, col_def in _TICK_COLUMNS:
        if col_name not in existing:
            conn.execute(f"ALTER TABLE market_ticks ADD COLUMN {col_name} {col_def}")
    conn.commit()


def _connect(db_path: Path | str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open (or create) the SQLite database and ensure schema exists."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # scheduler / settlement のワーカースレッドが同時に書くので busy timeout を長めに
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA_SQL)
    conn.executescript(RESOURCES_SQL)
    conn.executescript(SETTLEMENTS_SQL)
    conn.executescript(RUNS_SQL)
    _ensure_trade_columns(conn)
    _ensure_tick_columns(conn)
    return conn
