#!/usr/bin/env python3
"""One arbitrage scan over a set of markets.

Usage:
    # Spatial scan between three regional markets (paper execution)
    python scripts/scan_arbitrage.py --markets JEPX_TOKYO JEPX_KANSAI JEPX_KYUSHU

    # Temporal scan with custom thresholds
    python scripts/scan_arbitrage.py --markets JEPX_TOKYO --type temporal --min-margin 0.05 --max-risk 0.2

    # Show recent runs
    python scripts/scan_arbitrage.py --history
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger(__name__)


def main() -> None:
    from vpp_trading.arbitrage.engine import ArbitrageEngine
    from vpp_trading.config import settings
    from vpp_trading.connectors.market_connector import build_connector
    from vpp_trading.connectors.market_data import DbMarketDataProvider
    from vpp_trading.errors import VppTradingError
    from vpp_trading.execution.gateway import LiveExecutionGateway
    from vpp_trading.notifications.telegram import format_arbitrage_summary, send_message
    from vpp_trading.store.db import get_arbitrage_runs
    from vpp_trading.store.db_path import resolve_db_path

    parser = argparse.ArgumentParser(description="Arbitrage scan")
    parser.add_argument("--markets", nargs="+", default=[])
    parser.add_argument("--type", default="spatial", choices=["spatial", "temporal", "cross_commodity"])
    parser.add_argument("--min-margin", type=float, default=None)
    parser.add_argument("--max-risk", type=float, default=None)
    parser.add_argument("--vpp", type=int, default=None, help="Attribute fills to this VPP")
    parser.add_argument("--execution", choices=["paper", "live"], default=None)
    parser.add_argument("--db", type=str, default=None, help="Explicit DB path")
    parser.add_argument("--history", action="store_true", help="List recent runs")
    args = parser.parse_args()

    execution_mode = args.execution or settings.execution_mode
    db_path = resolve_db_path(execution_mode=execution_mode, explicit_db_path=args.db)

    if args.history:
        for r in get_arbitrage_runs(db_path=db_path):
            print(
                f"#{r.id} {r.created_at[:19]} {r.arbitrage_type:10s} [{r.markets}]"
                f" found={r.opportunities_found} executed={r.trades_executed}"
                f" profit={r.total_profit:+,.2f}"
            )
        return
    if not args.markets:
        parser.error("--markets is required")

    try:
        engine = ArbitrageEngine(
            market_data=DbMarketDataProvider(db_path),
            gateway=LiveExecutionGateway(build_connector(execution_mode), db_path=db_path),
            db_path=db_path,
            vpp_id=args.vpp,
        )
        summary = engine.execute_arbitrage_strategy(
            args.markets, args.type, args.min_margin, args.max_risk
        )
    except VppTradingError as e:
        log.error("Arbitrage scan failed: %s", e)
        sys.exit(1)

    text = format_arbitrage_summary(summary)
    print(text or "No arbitrage opportunities.")
    if text and summary.trades_executed:
        send_message(text)


if __name__ == "__main__":
    main()
