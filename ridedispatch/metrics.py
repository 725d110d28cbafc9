"""Reliability window tracker.

Each driver carries three acceptance windows (24h, 7d, 30d). An outcome
lands in all three; a window whose start has fallen out of its horizon is
reset first, explicitly and with an audit log line, and its new start is the
time of the event that reset it. Tier and reliability score are derived from
the windows, the lifetime counters and the driver's star rating.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple
import logging

from .errors import ConcurrentUpdateError, DriverNotFoundError
from .policy import TierPolicy, WindowPolicy, tier_policy_from_settings, window_policy_from_settings
from .repository import DriverRepository
from .schemas import (
    HORIZON_DURATIONS,
    WINDOW_FIELDS,
    AcceptanceWindow,
    DriverMetrics,
    DriverMetricsOut,
    Horizon,
    Outcome,
    Tier,
    TierOutlook,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowReset:
    horizon: Horizon
    previous: AcceptanceWindow
    reset_at: datetime


def weighted_acceptance(metrics: DriverMetrics, policy: WindowPolicy) -> float:
    """Window acceptance rates blended by the policy weights, as a percent."""
    return sum(metrics.window(h).rate * w for h, w in policy.weights.items()) * 100.0


def reliability_score(rating: float, weighted: float, cancellation_rate: float) -> float:
    """0-100: rating carries 60 points, weighted acceptance 35, and up to 5 for few cancellations."""
    rating_component = (rating / 5.0) * 60.0
    acceptance_component = weighted * 0.35
    cancellation_component = min(5.0, max(0.0, 5.0 - cancellation_rate / 10.0))
    return min(100.0, max(0.0, rating_component + acceptance_component + cancellation_component))


def tier_of(
    metrics: DriverMetrics,
    rating: float,
    tier_policy: Optional[TierPolicy] = None,
    window_policy: Optional[WindowPolicy] = None,
) -> Tier:
    tier_policy = tier_policy or tier_policy_from_settings()
    window_policy = window_policy or window_policy_from_settings()
    if metrics.is_in_grace_period:
        return Tier.SILVER
    acceptance = weighted_acceptance(metrics, window_policy)
    for threshold in tier_policy.thresholds:
        if acceptance >= threshold.min_acceptance and rating >= threshold.min_rating:
            return threshold.tier
    return Tier.BRONZE


# how close to the held tier's minimums counts as at risk of losing it
AT_RISK_ACCEPTANCE_MARGIN = 5.0
AT_RISK_RATING_MARGIN = 0.2


def tier_outlook(
    metrics: DriverMetrics,
    rating: float,
    tier_policy: Optional[TierPolicy] = None,
    window_policy: Optional[WindowPolicy] = None,
) -> TierOutlook:
    """Downgrade warning and the distance to the next tier up.

    Bronze cannot drop and grace-period drivers are held at silver, so
    neither is ever at risk.
    """
    tier_policy = tier_policy or tier_policy_from_settings()
    window_policy = window_policy or window_policy_from_settings()
    acceptance = weighted_acceptance(metrics, window_policy)

    held = next((t for t in tier_policy.thresholds if t.tier == metrics.tier), None)
    at_risk = (
        held is not None
        and not metrics.is_in_grace_period
        and (acceptance < held.min_acceptance + AT_RISK_ACCEPTANCE_MARGIN or rating < held.min_rating + AT_RISK_RATING_MARGIN)
    )

    # thresholds run strictest first; bronze sits below the last one
    ladder = list(tier_policy.thresholds)
    position = ladder.index(held) if held is not None else len(ladder)
    if position == 0:
        return TierOutlook(at_risk=at_risk)
    target = ladder[position - 1]
    return TierOutlook(
        at_risk=at_risk,
        next_tier=target.tier,
        acceptance_gap=max(0.0, target.min_acceptance - acceptance),
        rating_gap=max(0.0, target.min_rating - rating),
    )


def recalculate(
    metrics: DriverMetrics,
    rating: float,
    now: datetime,
    tier_policy: Optional[TierPolicy] = None,
    window_policy: Optional[WindowPolicy] = None,
) -> DriverMetrics:
    tier_policy = tier_policy or tier_policy_from_settings()
    window_policy = window_policy or window_policy_from_settings()

    acceptance_rate = 0.0
    if metrics.trips_requested:
        acceptance_rate = min(100.0, metrics.trips_accepted / metrics.trips_requested * 100.0)
    cancellation_rate = 0.0
    if metrics.trips_accepted:
        cancellation_rate = min(100.0, metrics.trips_cancelled / metrics.trips_accepted * 100.0)

    in_grace = metrics.is_in_grace_period and metrics.trips_completed < tier_policy.grace_period_trips
    updated = metrics.model_copy(update={
        "acceptance_rate": acceptance_rate,
        "cancellation_rate": cancellation_rate,
        "is_in_grace_period": in_grace,
        "reliability_score": reliability_score(rating, weighted_acceptance(metrics, window_policy), cancellation_rate),
        "last_updated": now,
    })
    return updated.model_copy(update={"tier": tier_of(updated, rating, tier_policy, window_policy)})


def apply_outcome(metrics: DriverMetrics, outcome: Outcome, now: datetime) -> Tuple[DriverMetrics, List[WindowReset]]:
    """Count `outcome` in every window, resetting stale windows first.

    Returns the new aggregate (rates and tier not yet recalculated) and the
    resets that happened, one per stale window.
    """
    updates = {}
    resets = []
    for horizon, duration in HORIZON_DURATIONS.items():
        window = metrics.window(horizon)
        if not window.is_fresh(now, duration):
            resets.append(WindowReset(horizon, window, now))
            window = AcceptanceWindow.empty(now, reset_count=window.reset_count + 1)
        updates[WINDOW_FIELDS[horizon]] = window.with_outcome(outcome)
    if outcome == Outcome.ACCEPTED:
        updates["trips_accepted"] = metrics.trips_accepted + 1
    elif outcome == Outcome.CANCELLED:
        updates["trips_cancelled"] = metrics.trips_cancelled + 1
    return metrics.model_copy(update=updates), resets


class ReliabilityTracker:
    """Applies driver outcome events to the stored metrics aggregate.

    Every update is read-modify-write against the driver row, guarded by the
    row's metrics version and retried when a concurrent writer got there first.
    """

    def __init__(
        self,
        drivers: DriverRepository,
        tier_policy: Optional[TierPolicy] = None,
        window_policy: Optional[WindowPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.drivers = drivers
        self.tier_policy = tier_policy or tier_policy_from_settings()
        self.window_policy = window_policy or window_policy_from_settings()
        self.clock = clock

    def is_excused(self, reason: Optional[str]) -> bool:
        return bool(reason) and reason.lower() in self.window_policy.excused_cancellation_reasons

    async def observe(self, driver_id: str, outcome: Outcome, reason: Optional[str] = None) -> DriverMetrics:
        outcome = Outcome(outcome)
        if outcome == Outcome.CANCELLED and self.is_excused(reason):
            logger.info("cancellation_excused: driver=%s reason=%s", driver_id, reason)
            return await self.current(driver_id)

        def count(metrics: DriverMetrics, now: datetime) -> DriverMetrics:
            updated, resets = apply_outcome(metrics, outcome, now)
            for r in resets:
                logger.info(
                    "window_reset: driver=%s horizon=%s stale_start=%s age=%s discarded_total=%d discarded_accepted=%d reset_count=%d",
                    driver_id, r.horizon.value, r.previous.window_start.isoformat(), r.reset_at - r.previous.window_start,
                    r.previous.total, r.previous.accepted, r.previous.reset_count + 1,
                )
            return updated

        metrics = await self._update(driver_id, count)
        logger.info(
            "outcome_observed: driver=%s outcome=%s tier=%s rate_30d=%.3f total_30d=%d",
            driver_id, outcome.value, metrics.tier.value, metrics.last_30d.rate, metrics.last_30d.total,
        )
        return metrics

    async def record_request(self, driver_id: str) -> DriverMetrics:
        return await self._update(
            driver_id, lambda m, now: m.model_copy(update={"trips_requested": m.trips_requested + 1})
        )

    async def record_completion(self, driver_id: str) -> DriverMetrics:
        metrics = await self._update(
            driver_id, lambda m, now: m.model_copy(update={"trips_completed": m.trips_completed + 1})
        )
        if not metrics.is_in_grace_period and metrics.trips_completed == self.tier_policy.grace_period_trips:
            logger.info("grace_period_ended: driver=%s tier=%s", driver_id, metrics.tier.value)
        return metrics

    async def current(self, driver_id: str) -> DriverMetrics:
        """Stored metrics, or a fresh aggregate (not persisted) when the driver has none."""
        driver = await self.drivers.get(driver_id)
        if driver is None:
            raise DriverNotFoundError(driver_id)
        return driver.metrics or DriverMetrics.initial(self.clock())

    async def summary(self, driver_id: str) -> DriverMetricsOut:
        driver = await self.drivers.get(driver_id)
        if driver is None:
            raise DriverNotFoundError(driver_id)
        metrics = driver.metrics or DriverMetrics.initial(self.clock())
        outlook = tier_outlook(metrics, driver.rating, self.tier_policy, self.window_policy)
        return DriverMetricsOut(**metrics.model_dump(), outlook=outlook)

    async def _update(self, driver_id: str, mutate: Callable[[DriverMetrics, datetime], DriverMetrics]) -> DriverMetrics:
        for attempt in range(1, self.window_policy.cas_retries + 1):
            driver = await self.drivers.get(driver_id)
            if driver is None:
                logger.warning("metrics_update_skipped: driver=%s reason=not_found", driver_id)
                raise DriverNotFoundError(driver_id)
            now = self.clock()
            metrics = driver.metrics
            if metrics is None:
                logger.info("metrics_initialized: driver=%s", driver_id)
                metrics = DriverMetrics.initial(now)
            updated = recalculate(mutate(metrics, now), driver.rating, now, self.tier_policy, self.window_policy)
            if await self.drivers.compare_and_set_metrics(driver_id, updated, driver.metrics_version):
                return updated
            logger.info("metrics_write_conflict: driver=%s attempt=%d", driver_id, attempt)
        raise ConcurrentUpdateError(f"metrics for driver {driver_id} changed concurrently {self.window_policy.cas_retries} times")
