"""
Offline repair for acceptance windows whose start has fallen out of its horizon.

Such a window looks expired on every read. The repair moves its start to a
point inside the horizon (1 hour into the 24h window, 1 day into the 7d
window, 5 days into the 30d window by default) and keeps every count as it
was. Windows that are still fresh are not touched, so repairing twice is the
same as repairing once.

Usage:
    ridedispatch-repair check <driver_id>
    ridedispatch-repair fix <driver_id>
    ridedispatch-repair fix-all
    ridedispatch-repair inspect <driver_id>
    ridedispatch-repair init-metrics [driver_id]
    ridedispatch-repair --database-url sqlite+aiosqlite:///local.db fix-all
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional
import argparse
import asyncio
import json
import logging

from sqlalchemy.ext.asyncio import create_async_engine

from .errors import ConcurrentUpdateError
from .logging_setup import configure_logging
from .metrics import tier_outlook
from .policy import TierPolicy, WindowPolicy, tier_policy_from_settings, window_policy_from_settings
from .repository import DriverRepository
from .schemas import HORIZON_DURATIONS, WINDOW_FIELDS, DriverMetrics, Horizon, utcnow

logger = logging.getLogger(__name__)


class RepairOutcome(str, Enum):
    REPAIRED = "repaired"
    INITIALIZED = "initialized"
    SKIPPED = "skipped"


@dataclass
class RepairReport:
    repaired: int = 0
    initialized: int = 0
    skipped: int = 0
    errored: int = 0

    @property
    def total(self) -> int:
        return self.repaired + self.initialized + self.skipped + self.errored


class MetricsRepairTool:
    def __init__(
        self,
        drivers: DriverRepository,
        window_policy: Optional[WindowPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        tier_policy: Optional[TierPolicy] = None,
    ):
        self.drivers = drivers
        self.window_policy = window_policy or window_policy_from_settings()
        self.tier_policy = tier_policy or tier_policy_from_settings()
        self.clock = clock

    @staticmethod
    def stale_horizons(metrics: DriverMetrics, now: datetime) -> List[Horizon]:
        return [h for h, duration in HORIZON_DURATIONS.items() if not metrics.window(h).is_fresh(now, duration)]

    async def needs_repair(self, driver_id: str) -> bool:
        driver = await self.drivers.get(driver_id)
        if driver is None or driver.metrics is None:
            return False
        return bool(self.stale_horizons(driver.metrics, self.clock()))

    async def fix_one(self, driver_id: str) -> RepairOutcome:
        driver = await self.drivers.get(driver_id)
        if driver is None:
            logger.warning("repair_skipped: driver=%s reason=not_found", driver_id)
            return RepairOutcome.SKIPPED
        if driver.metrics is None:
            logger.info("repair_skipped: driver=%s reason=no_metrics", driver_id)
            return RepairOutcome.SKIPPED

        metrics = driver.metrics
        now = self.clock()
        stale = self.stale_horizons(metrics, now)
        if not stale:
            logger.debug("repair_skipped: driver=%s reason=fresh", driver_id)
            return RepairOutcome.SKIPPED

        updates = {"last_updated": now}
        for horizon in stale:
            window = metrics.window(horizon)
            new_start = now - self.window_policy.repair_offsets[horizon]
            updates[WINDOW_FIELDS[horizon]] = window.model_copy(update={"window_start": new_start})
            logger.info(
                "window_repaired: driver=%s horizon=%s old_start=%s new_start=%s total=%d",
                driver_id, horizon.value, window.window_start.isoformat(), new_start.isoformat(), window.total,
            )
        if not await self.drivers.compare_and_set_metrics(driver_id, metrics.model_copy(update=updates), driver.metrics_version):
            raise ConcurrentUpdateError(f"metrics for driver {driver_id} changed during repair")
        return RepairOutcome.REPAIRED

    async def fix_all(self) -> RepairReport:
        report = await self._for_all(self.fix_one)
        logger.info("repair_complete: repaired=%d skipped=%d errored=%d total=%d",
                    report.repaired, report.skipped, report.errored, report.total)
        return report

    async def init_one(self, driver_id: str) -> RepairOutcome:
        """Give a driver without metrics a fresh aggregate; drivers with metrics are left alone."""
        driver = await self.drivers.get(driver_id)
        if driver is None:
            logger.warning("init_skipped: driver=%s reason=not_found", driver_id)
            return RepairOutcome.SKIPPED
        if driver.metrics is not None:
            return RepairOutcome.SKIPPED
        if not await self.drivers.compare_and_set_metrics(driver_id, DriverMetrics.initial(self.clock()), driver.metrics_version):
            raise ConcurrentUpdateError(f"metrics for driver {driver_id} changed during initialization")
        logger.info("metrics_initialized: driver=%s", driver_id)
        return RepairOutcome.INITIALIZED

    async def init_all(self) -> RepairReport:
        report = await self._for_all(self.init_one)
        logger.info("init_complete: initialized=%d skipped=%d errored=%d total=%d",
                    report.initialized, report.skipped, report.errored, report.total)
        return report

    async def _for_all(self, action: Callable[[str], Awaitable[RepairOutcome]]) -> RepairReport:
        report = RepairReport()
        for driver_id in await self.drivers.list_ids():
            try:
                outcome = await action(driver_id)
            except Exception:
                logger.exception("repair_failed: driver=%s action=%s", driver_id, action.__name__)
                report.errored += 1
                continue
            if outcome == RepairOutcome.REPAIRED:
                report.repaired += 1
            elif outcome == RepairOutcome.INITIALIZED:
                report.initialized += 1
            else:
                report.skipped += 1
        return report

    async def inspect(self, driver_id: str) -> Optional[dict]:
        """Window ages and derived values for one driver, for operators."""
        driver = await self.drivers.get(driver_id)
        if driver is None:
            return None
        if driver.metrics is None:
            return {"driver_id": driver_id, "metrics": None}
        m = driver.metrics
        now = self.clock()
        windows = {}
        for horizon, duration in HORIZON_DURATIONS.items():
            w = m.window(horizon)
            windows[horizon.value] = {
                "window_start": w.window_start.isoformat(),
                "age_hours": round(w.age(now).total_seconds() / 3600, 2),
                "would_reset": not w.is_fresh(now, duration),
                "accepted": w.accepted,
                "rejected": w.rejected,
                "cancelled": w.cancelled,
                "total": w.total,
                "rate": w.rate,
                "reset_count": w.reset_count,
            }
        outlook = tier_outlook(m, driver.rating, self.tier_policy, self.window_policy)
        next_tier_gap = None
        if outlook.next_tier is not None:
            next_tier_gap = {
                "tier": outlook.next_tier.value,
                "acceptance": round(outlook.acceptance_gap, 2),
                "rating": round(outlook.rating_gap, 2),
            }
        return {
            "driver_id": driver_id,
            "now": now.isoformat(),
            "rating": driver.rating,
            "trips_requested": m.trips_requested,
            "trips_accepted": m.trips_accepted,
            "trips_cancelled": m.trips_cancelled,
            "trips_completed": m.trips_completed,
            "acceptance_rate": m.acceptance_rate,
            "cancellation_rate": m.cancellation_rate,
            "reliability_score": m.reliability_score,
            "tier": m.tier.value,
            "is_in_grace_period": m.is_in_grace_period,
            "at_risk": outlook.at_risk,
            "next_tier_gap": next_tier_gap,
            "last_updated": m.last_updated.isoformat(),
            "windows": windows,
        }


def _report_line(report: RepairReport) -> str:
    return (f"repaired={report.repaired} initialized={report.initialized} skipped={report.skipped} "
            f"errored={report.errored} total={report.total}")


async def _run(args) -> int:
    if args.database_url:
        engine = create_async_engine(args.database_url)
    else:
        from . import db
        engine = db.engine

    tool = MetricsRepairTool(DriverRepository(engine))
    try:
        if args.command == "check":
            needs = await tool.needs_repair(args.driver_id)
            print(f"{args.driver_id}: {'needs repair' if needs else 'ok'}")
        elif args.command == "fix":
            outcome = await tool.fix_one(args.driver_id)
            print(f"{args.driver_id}: {outcome.value}")
        elif args.command == "fix-all":
            report = await tool.fix_all()
            print(_report_line(report))
            return 1 if report.errored else 0
        elif args.command == "init-metrics":
            if args.driver_id:
                outcome = await tool.init_one(args.driver_id)
                print(f"{args.driver_id}: {outcome.value}")
            else:
                report = await tool.init_all()
                print(_report_line(report))
                return 1 if report.errored else 0
        elif args.command == "inspect":
            info = await tool.inspect(args.driver_id)
            if info is None:
                print(f"{args.driver_id}: not found")
                return 1
            print(json.dumps(info, indent=2))
    finally:
        await engine.dispose()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ridedispatch-repair",
        description="Repair driver acceptance windows whose start predates their horizon",
    )
    parser.add_argument("--database-url", help="database to work on (default: DATABASE_URL setting)")
    sub = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("check", "report whether a driver's windows need repair"),
        ("fix", "repair one driver's windows"),
        ("inspect", "print one driver's metrics, window ages and tier outlook"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("driver_id")
    sub.add_parser("fix-all", help="repair every driver's windows")
    p = sub.add_parser("init-metrics", help="create empty metrics for drivers that have none")
    p.add_argument("driver_id", nargs="?", help="only this driver (default: every driver)")
    args = parser.parse_args(argv)

    configure_logging(log_file="repair.log", level=logging.INFO)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
