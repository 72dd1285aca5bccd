#!/usr/bin/env python3
"""Backtest strategies against stored market ticks.

Usage:
    # Single strategy
    python scripts/backtest.py --strategy 1 --start 2026-01-01 --end 2026-03-01 --capital 100000

    # Compare several strategies on the same window (best total return first)
    python scripts/backtest.py --compare 1 2 3 --start 2026-01-01 --end 2026-03-01

    # Past runs of a strategy
    python scripts/backtest.py --history 1
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger(__name__)


def _parse_ts(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def main() -> None:
    from vpp_trading.backtest.runner import BacktestService
    from vpp_trading.connectors.market_data import DbMarketDataProvider
    from vpp_trading.errors import VppTradingError
    from vpp_trading.store.db_path import resolve_db_path

    parser = argparse.ArgumentParser(description="Strategy backtest")
    parser.add_argument("--strategy", type=int, help="Strategy id")
    parser.add_argument("--compare", type=int, nargs="+", help="Strategy ids to compare")
    parser.add_argument("--history", type=int, help="Show past runs of a strategy")
    parser.add_argument("--start", type=_parse_ts, help="Window start (ISO8601)")
    parser.add_argument("--end", type=_parse_ts, help="Window end (ISO8601)")
    parser.add_argument("--capital", type=float, default=100_000.0)
    parser.add_argument("--commission", type=float, default=None)
    parser.add_argument("--slippage", type=float, default=None)
    parser.add_argument("--db", type=str, default=None, help="Explicit DB path")
    args = parser.parse_args()

    db_path = resolve_db_path(execution_mode="paper", explicit_db_path=args.db)
    service = BacktestService(DbMarketDataProvider(db_path), db_path=db_path)
    try:
        if args.history is not None:
            for r in service.get_backtest_history(args.history):
                print(
                    f"#{r.id} {r.start_time[:10]}..{r.end_time[:10]} return={r.total_return:+.2%}"
                    f" dd={r.max_drawdown:.2%} sharpe={r.sharpe_ratio:.2f} trades={r.total_trades}"
                )
            return

        if args.start is None or args.end is None:
            parser.error("--start and --end are required")

        if args.compare:
            results = service.compare_backtests(args.compare, args.start, args.end, args.capital)
        elif args.strategy is not None:
            future = service.run_backtest(
                args.strategy, args.start, args.end, args.capital, args.commission, args.slippage
            )
            results = [future.result()]
        else:
            parser.error("give --strategy, --compare or --history")

        for res in results:
            m = res.metrics
            print(
                f"[{res.strategy_id}] {res.strategy_name} ({res.market})\n"
                f"  final={m.final_capital:,.2f} return={m.total_return:+.2%}"
                f" annualized={m.annualized_return:+.2%}\n"
                f"  max_dd={m.max_drawdown:.2%} sharpe={m.sharpe_ratio:.2f}"
                f" win_rate={m.win_rate:.1%} trades={m.total_trades}\n"
                f"  avg_profit={m.average_profit:,.2f} avg_loss={m.average_loss:,.2f}"
                f" streaks W{m.max_consecutive_wins}/L{m.max_consecutive_losses}"
            )
    except VppTradingError as e:
        log.error("Backtest failed: %s", e)
        sys.exit(1)
    finally:
        service.shutdown()


if __name__ == "__main__":
    main()
