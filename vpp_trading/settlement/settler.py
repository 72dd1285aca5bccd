"""Settlement engine: period P&L, profit distribution, idempotent persistence.

A (vpp_id, period) pair is settled at most once. Concurrent calls for the
same pair are serialized by a per-key lock inside this process; across
processes the partial unique index on COMPLETED settlements rejects the
second insert and the existing record is returned instead.
"""

from __future__ import annotations

import calendar
import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from vpp_trading.config import settings
from vpp_trading.connectors.carbon import CarbonAccountingClient
from vpp_trading.connectors.market_data import DbResourceCapacityProvider, ResourceCapacityProvider
from vpp_trading.errors import (
    PersistenceError,
    SettlementConsistencyError,
    ValidationError,
    VppTradingError,
)
from vpp_trading.settlement.distribution import distribute_profit
from vpp_trading.settlement.pnl_calc import calc_contributions, calc_energy, calc_period_pnl
from vpp_trading.settlement.report import PerformanceReport, build_performance_report
from vpp_trading.store.db import (
    DEFAULT_DB_PATH,
    get_completed_settlement,
    get_resources,
    get_settlement_history,
    get_trades_between,
    get_vpp_ids,
    save_settlement,
)
from vpp_trading.store.models import DistributionPolicy, SettlementRecord, TradeStatus

log = logging.getLogger(__name__)

# (vpp_id, period) ごとの排他はハッシュで固定本数のロックに割り当てる
KEY_LOCK_STRIPES = 64


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class SettlementPeriod:
    start: date
    end: date  # inclusive
    settlement_type: str = "custom"

    @classmethod
    def daily(cls, day: date) -> SettlementPeriod:
        return cls(start=day, end=day, settlement_type="daily")

    @classmethod
    def monthly(cls, year: int, month: int) -> SettlementPeriod:
        last = calendar.monthrange(year, month)[1]
        return cls(start=date(year, month, 1), end=date(year, month, last), settlement_type="monthly")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    @property
    def end_exclusive(self) -> date:
        return self.end + timedelta(days=1)

    @property
    def key(self) -> tuple[str, str]:
        return self.start.isoformat(), self.end.isoformat()


@dataclass
class SettlementResult:
    vpp_id: int
    period: SettlementPeriod
    record: SettlementRecord | None = None
    already_settled: bool = False  # 既存 COMPLETED を返した

    @property
    def empty(self) -> bool:
        """No trades in the window; nothing was persisted."""
        return self.record is None


@dataclass
class ResourceProfit:
    resource_id: int
    resource_name: str
    total_amount: float
    settlement_count: int


@dataclass
class AutoSettleSummary:
    """Summary of an auto-settle run."""

    settlement_date: date
    settled: list[SettlementRecord] = field(default_factory=list)
    skipped: int = 0  # 既に COMPLETED
    empty: int = 0  # 取引なし
    errors: int = 0

    @property
    def total_net_profit(self) -> float:
        return round(sum(r.net_profit for r in self.settled), 2)

    def format_summary(self) -> str:
        if not self.settled and not self.errors:
            return f"Auto-settle {self.settlement_date}: nothing settled."
        lines = [
            f"*Auto-Settle {self.settlement_date}*",
            f"Settled: {len(self.settled)} | Skipped: {self.skipped}"
            f" | Empty: {self.empty} | Errors: {self.errors}",
        ]
        for r in self.settled:
            lines.append(
                f"  VPP {r.vpp_id}: net {r.net_profit:+,.2f}"
                f" (rev {r.total_revenue:,.2f} / cost {r.total_cost:,.2f},"
                f" {len(r.distributions)} resources)"
            )
        lines.append(f"Total net: {self.total_net_profit:+,.2f}")
        return "\n".join(lines)


def _parse_policy(policy: DistributionPolicy | str | None) -> DistributionPolicy:
    raw = policy if policy is not None else settings.settlement_default_policy
    try:
        return DistributionPolicy(str(raw).lower())
    except ValueError:
        raise ValidationError(f"unknown distribution policy: {raw}") from None


class SettlementEngine:
    def __init__(
        self,
        db_path: Path | str = DEFAULT_DB_PATH,
        capacity_provider: ResourceCapacityProvider | None = None,
        carbon_client: CarbonAccountingClient | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.db_path = db_path
        self.capacity_provider = capacity_provider or DbResourceCapacityProvider(db_path)
        self.carbon_client = carbon_client or CarbonAccountingClient()
        self._key_locks = [threading.Lock() for _ in range(KEY_LOCK_STRIPES)]
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.settlement_max_workers,
            thread_name_prefix="settlement",
        )

    def _lock_for(self, vpp_id: int, period: SettlementPeriod) -> threading.Lock:
        """Lock serializing settlements of one (vpp_id, period); unrelated keys may share it."""
        key = (vpp_id, *period.key)
        return self._key_locks[hash(key) % len(self._key_locks)]

    # ------------------------------------------------------------------
    # settlement
    # ------------------------------------------------------------------

    def execute_settlement(
        self,
        vpp_id: int,
        period: SettlementPeriod,
        policy: DistributionPolicy | str | None = None,
    ) -> SettlementResult:
        """Settle one VPP over one period.

        Returns the existing record when the pair is already settled, and an
        empty result (no record) when the window has no executed trades.
        """
        if vpp_id is None:
            raise ValidationError("vpp_id is required")
        if period is None:
            raise ValidationError("period is required")
        if period.start > period.end:
            raise ValidationError(f"period start {period.start} is after end {period.end}")
        if period.end > _today():
            raise ValidationError(f"cannot settle a future period (ends {period.end})")
        dist_policy = _parse_policy(policy)
        start_s, end_s = period.key

        try:
            with self._lock_for(vpp_id, period):
                existing = get_completed_settlement(vpp_id, start_s, end_s, db_path=self.db_path)
                if existing is not None:
                    log.info("VPP %d %s..%s already settled (#%d)", vpp_id, start_s, end_s, existing.id)
                    return SettlementResult(vpp_id, period, existing, already_settled=True)

                trades = get_trades_between(
                    vpp_id, period.start, period.end_exclusive,
                    status=TradeStatus.EXECUTED, db_path=self.db_path,
                )
                if not trades:
                    log.info("VPP %d %s..%s: no trades, nothing to settle", vpp_id, start_s, end_s)
                    return SettlementResult(vpp_id, period)

                pnl = calc_period_pnl(trades)
                resources = get_resources(vpp_id, db_path=self.db_path)
                distributions = distribute_profit(
                    pnl.net_profit, resources, dist_policy, calc_contributions(trades)
                )
                try:
                    record = save_settlement(
                        vpp_id=vpp_id,
                        period_start=start_s,
                        period_end=end_s,
                        settlement_type=period.settlement_type,
                        total_revenue=pnl.total_revenue,
                        total_cost=pnl.total_cost,
                        net_profit=pnl.net_profit,
                        distribution_policy=dist_policy,
                        distributions=distributions,
                        trade_count=pnl.trade_count,
                        resource_count=len(resources),
                        db_path=self.db_path,
                    )
                except sqlite3.IntegrityError as e:
                    # 別プロセスが先に COMPLETED を書いた
                    existing = get_completed_settlement(vpp_id, start_s, end_s, db_path=self.db_path)
                    if existing is None:
                        raise SettlementConsistencyError(
                            f"VPP {vpp_id} {start_s}..{end_s}: insert rejected but no COMPLETED record"
                        ) from e
                    log.warning("VPP %d %s..%s settled concurrently, reusing #%d",
                                vpp_id, start_s, end_s, existing.id)
                    return SettlementResult(vpp_id, period, existing, already_settled=True)
        except sqlite3.Error as e:
            raise PersistenceError(f"settlement of VPP {vpp_id} {start_s}..{end_s} failed: {e}") from e

        log.info(
            "Settled VPP %d %s..%s: revenue=%.2f cost=%.2f net=%.2f trades=%d distributions=%d (%s)",
            vpp_id, start_s, end_s, record.total_revenue, record.total_cost, record.net_profit,
            record.trade_count, len(record.distributions), dist_policy,
        )
        return SettlementResult(vpp_id, period, record)

    def submit_settlement(
        self,
        vpp_id: int,
        period: SettlementPeriod,
        policy: DistributionPolicy | str | None = None,
    ) -> Future[SettlementResult]:
        """Run execute_settlement as an independent task."""
        return self._pool.submit(self.execute_settlement, vpp_id, period, policy)

    def execute_monthly_settlement(
        self,
        vpp_id: int,
        year: int,
        month: int,
        policy: DistributionPolicy | str | None = None,
    ) -> SettlementResult:
        if not 1 <= month <= 12:
            raise ValidationError(f"month must be 1..12, got {month}")
        return self.execute_settlement(vpp_id, SettlementPeriod.monthly(year, month), policy)

    def auto_settle(
        self,
        settlement_date: date | None = None,
        vpp_ids: list[int] | None = None,
        policy: DistributionPolicy | str | None = None,
    ) -> AutoSettleSummary:
        """Daily batch: settle every VPP for one day, skipping settled pairs.

        Defaults to yesterday (UTC) over every VPP with resources. A failure
        for one VPP is logged and counted; the batch continues.
        """
        day = settlement_date or (_today() - timedelta(days=1))
        period = SettlementPeriod.daily(day)
        summary = AutoSettleSummary(settlement_date=day)
        try:
            targets = vpp_ids if vpp_ids is not None else get_vpp_ids(db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot list VPPs: {e}") from e

        for vpp_id in targets:
            try:
                if get_completed_settlement(vpp_id, *period.key, db_path=self.db_path):
                    summary.skipped += 1
                    continue
                result = self.execute_settlement(vpp_id, period, policy)
            except (VppTradingError, sqlite3.Error):
                log.exception("Auto-settle failed for VPP %s on %s", vpp_id, day)
                summary.errors += 1
                continue
            if result.already_settled:
                summary.skipped += 1
            elif result.empty:
                summary.empty += 1
            else:
                summary.settled.append(result.record)  # type: ignore[arg-type]

        log.info(
            "Auto-settle %s: settled=%d skipped=%d empty=%d errors=%d",
            day, len(summary.settled), summary.skipped, summary.empty, summary.errors,
        )
        return summary

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_settlement_history(self, vpp_id: int, start: date, end: date) -> list[SettlementRecord]:
        if start > end:
            raise ValidationError(f"start {start} is after end {end}")
        try:
            return get_settlement_history(vpp_id, start, end, db_path=self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot read settlement history: {e}") from e

    def get_resource_profit_ranking(
        self, vpp_id: int, start: date, end: date
    ) -> list[ResourceProfit]:
        """Distributed profit per resource over settled periods, highest first."""
        ranking: dict[int, ResourceProfit] = {}
        for record in self.get_settlement_history(vpp_id, start, end):
            for d in record.distributions:
                entry = ranking.get(d.resource_id)
                if entry is None:
                    entry = ResourceProfit(d.resource_id, d.resource_name, 0.0, 0)
                    ranking[d.resource_id] = entry
                entry.total_amount = round(entry.total_amount + d.amount, 2)
                entry.settlement_count += 1
        return sorted(ranking.values(), key=lambda r: (-r.total_amount, r.resource_id))

    def generate_performance_report(self, vpp_id: int, start: date, end: date) -> PerformanceReport:
        if vpp_id is None:
            raise ValidationError("vpp_id is required")
        if start > end:
            raise ValidationError(f"start {start} is after end {end}")
        end_exclusive = end + timedelta(days=1)
        try:
            executed = get_trades_between(
                vpp_id, start, end_exclusive, status=TradeStatus.EXECUTED, db_path=self.db_path
            )
            rejected = get_trades_between(
                vpp_id, start, end_exclusive, status=TradeStatus.REJECTED, db_path=self.db_path
            )
            settlements = get_settlement_history(vpp_id, start, end, db_path=self.db_path)
            capacity = self.capacity_provider.capacity_info(vpp_id)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot build report for VPP {vpp_id}: {e}") from e

        _, delivered = calc_energy(executed)
        carbon = self.carbon_client.carbon_reduction(vpp_id, start, end, delivered)
        return build_performance_report(
            vpp_id, start, end, executed, len(rejected), settlements, capacity, carbon
        )

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
