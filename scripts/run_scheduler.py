#!/usr/bin/env python3
"""Long-running strategy scheduler.

Usage:
    # Paper mode, start strategies 1 and 2, tick every 5s (settings default)
    python scripts/run_scheduler.py --strategies 1 2

    # Live mode with a custom interval
    python scripts/run_scheduler.py --execution live --interval 10 --strategies 3

    # Single tick and exit (cron style)
    python scripts/run_scheduler.py --strategies 1 --once
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

log = logging.getLogger(__name__)


def main() -> None:
    from vpp_trading.config import settings
    from vpp_trading.connectors.market_connector import build_connector
    from vpp_trading.connectors.market_data import DbMarketDataProvider
    from vpp_trading.errors import VppTradingError
    from vpp_trading.execution.gateway import LiveExecutionGateway
    from vpp_trading.logging_config import setup_logging
    from vpp_trading.notifications.telegram import format_tick_alert, send_message
    from vpp_trading.scheduler.strategy_scheduler import StrategyScheduler
    from vpp_trading.store.db_path import resolve_db_path

    parser = argparse.ArgumentParser(description="VPP strategy scheduler")
    parser.add_argument(
        "--execution",
        choices=["paper", "live"],
        default=None,
        help="Execution mode (default: from settings.execution_mode)",
    )
    parser.add_argument("--strategies", type=int, nargs="+", default=[], help="Strategy IDs to start")
    parser.add_argument("--interval", type=float, default=None, help="Tick interval in seconds")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--db", type=str, default=None, help="Explicit DB path")
    args = parser.parse_args()

    run_id = setup_logging(filename="scheduler.log")
    execution_mode = args.execution or settings.execution_mode
    db_path = resolve_db_path(execution_mode=execution_mode, explicit_db_path=args.db)
    log.info("=== Scheduler start (run_id=%s, execution=%s) ===", run_id, execution_mode)
    log.info("DB path: %s", db_path)

    try:
        connector = build_connector(execution_mode)
    except VppTradingError as e:
        parser.error(str(e))

    scheduler = StrategyScheduler(
        gateway=LiveExecutionGateway(connector, db_path=db_path),
        market_data=DbMarketDataProvider(db_path),
        db_path=db_path,
    )

    for strategy_id in args.strategies:
        try:
            scheduler.start_execution(strategy_id)
        except VppTradingError as e:
            log.error("Cannot start strategy %d: %s", strategy_id, e)

    if not scheduler.list_running():
        log.warning("No strategies running, exiting")
        scheduler.shutdown()
        return

    try:
        if args.once:
            summary = scheduler.tick()
            alert = format_tick_alert(summary)
            if alert:
                send_message(alert)
            return

        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        scheduler.start(args.interval)
        try:
            stop.wait()
        except KeyboardInterrupt:
            log.info("Interrupted")
    finally:
        scheduler.shutdown()
        scheduler.stop_all()


if __name__ == "__main__":
    main()
