#!/usr/bin/env python3
"""Settle VPP trading P&L and distribute profit to resources.

Usage:
    # Daily auto-settle (yesterday UTC, every VPP with resources)
    python scripts/settle.py --auto

    # Auto-settle a specific day
    python scripts/settle.py --auto --date 2026-03-14

    # Settle one VPP for one month with a policy
    python scripts/settle.py --vpp 3 --month 2026-02 --policy equal_share

    # Show settlement history / profit ranking
    python scripts/settle.py --vpp 3 --history 2026-01-01 2026-03-31
    python scripts/settle.py --vpp 3 --ranking 2026-01-01 2026-03-31

    # Performance report
    python scripts/settle.py --vpp 3 --report 2026-02-01 2026-02-28
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

log = logging.getLogger(__name__)


def _parse_date(s: str) -> date:
    return date.fromisoformat(s)


def main() -> None:
    from vpp_trading.errors import VppTradingError
    from vpp_trading.logging_config import setup_logging
    from vpp_trading.notifications.telegram import send_error_alert, send_settlement_summary
    from vpp_trading.settlement.settler import SettlementEngine, SettlementPeriod
    from vpp_trading.store.db_path import resolve_db_path

    parser = argparse.ArgumentParser(description="VPP settlement")
    parser.add_argument("--auto", action="store_true", help="Daily auto-settle over all VPPs")
    parser.add_argument("--date", type=_parse_date, help="Settlement day YYYY-MM-DD")
    parser.add_argument("--vpp", type=int, help="VPP id")
    parser.add_argument("--month", type=str, help="Monthly settlement YYYY-MM (with --vpp)")
    parser.add_argument("--policy", type=str, default=None, help="Distribution policy")
    parser.add_argument("--history", type=_parse_date, nargs=2, metavar=("START", "END"))
    parser.add_argument("--ranking", type=_parse_date, nargs=2, metavar=("START", "END"))
    parser.add_argument("--report", type=_parse_date, nargs=2, metavar=("START", "END"))
    parser.add_argument("--execution", choices=["paper", "live"], default=None)
    parser.add_argument("--db", type=str, default=None, help="Explicit DB path")
    args = parser.parse_args()

    run_id = setup_logging(filename="settle.log")
    db_path = resolve_db_path(execution_mode=args.execution, explicit_db_path=args.db)
    engine = SettlementEngine(db_path=db_path)
    log.info("=== Settlement start (run_id=%s) ===", run_id)
    try:
        if args.auto:
            summary = engine.auto_settle(args.date, policy=args.policy)
            print(summary.format_summary())
            if summary.settled or summary.errors:
                send_settlement_summary(summary)
            return

        if args.vpp is None:
            parser.error("--vpp is required unless --auto is given")

        if args.month:
            year, month = (int(x) for x in args.month.split("-"))
            result = engine.execute_monthly_settlement(args.vpp, year, month, args.policy)
            _print_result(result)
        elif args.date:
            result = engine.execute_settlement(args.vpp, SettlementPeriod.daily(args.date), args.policy)
            _print_result(result)
        elif args.history:
            for r in engine.get_settlement_history(args.vpp, *args.history):
                print(
                    f"#{r.id} {r.period_start}..{r.period_end} {r.settlement_type:8s}"
                    f" net={r.net_profit:+12,.2f} trades={r.trade_count}"
                )
        elif args.ranking:
            for i, r in enumerate(engine.get_resource_profit_ranking(args.vpp, *args.ranking), 1):
                print(f"{i:3d}. {r.resource_name:30s} {r.total_amount:+12,.2f} ({r.settlement_count})")
        elif args.report:
            report = engine.generate_performance_report(args.vpp, *args.report)
            for key, value in vars(report).items():
                print(f"{key:24s} {value}")
        else:
            parser.error("nothing to do: give --month, --date, --history, --ranking or --report")
    except VppTradingError as e:
        log.error("Settlement failed: %s", e)
        send_error_alert(type(e).__name__, str(e))
        sys.exit(1)
    finally:
        engine.shutdown()


def _print_result(result) -> None:
    if result.empty:
        print(f"VPP {result.vpp_id} {result.period.start}..{result.period.end}: no trades")
        return
    r = result.record
    tag = " (already settled)" if result.already_settled else ""
    print(f"Settlement #{r.id}{tag}: revenue={r.total_revenue:,.2f} cost={r.total_cost:,.2f}"
          f" net={r.net_profit:+,.2f}")
    for d in r.distributions:
        print(f"  {d.resource_name:30s} {d.ratio:7.2%} {d.amount:12,.2f} ({d.method})")


if __name__ == "__main__":
    main()
