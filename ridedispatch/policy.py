"""
Tunable thresholds for tiering, reliability windows and priority scoring.

No logic here beyond validation: the tracker, scorer and repair tool take
these objects as arguments, so thresholds and weights change through
configuration (application.yaml / environment) without touching them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet, List, Tuple

from .config import Settings, settings as default_settings
from .schemas import HORIZON_DURATIONS, Horizon, Tier


@dataclass(frozen=True)
class TierThreshold:
    tier: Tier
    min_acceptance: float  # weighted acceptance, percent
    min_rating: float


@dataclass(frozen=True)
class TierPolicy:
    # checked in order; the first threshold met wins, bronze otherwise
    thresholds: Tuple[TierThreshold, ...] = (
        TierThreshold(Tier.PLATINUM, 95.0, 4.8),
        TierThreshold(Tier.GOLD, 85.0, 4.5),
        TierThreshold(Tier.SILVER, 75.0, 4.0),
    )
    # completed trips before a driver leaves the grace period (held at silver)
    grace_period_trips: int = 20

    def validate(self) -> None:
        if self.grace_period_trips < 0:
            raise ValueError("grace_period_trips must be >= 0")
        last = None
        for threshold in self.thresholds:
            if not 0.0 <= threshold.min_acceptance <= 100.0:
                raise ValueError(f"{threshold.tier.value}: min_acceptance must be within 0-100")
            if not 0.0 <= threshold.min_rating <= 5.0:
                raise ValueError(f"{threshold.tier.value}: min_rating must be within 0-5")
            if last is not None and (threshold.min_acceptance > last.min_acceptance or threshold.min_rating > last.min_rating):
                raise ValueError("tier thresholds must be ordered from strictest to loosest")
            last = threshold


@dataclass(frozen=True)
class WindowPolicy:
    weights: Dict[Horizon, float] = field(default_factory=lambda: {
        Horizon.SHORT: 0.2,
        Horizon.MEDIUM: 0.3,
        Horizon.LONG: 0.5,
    })
    excused_cancellation_reasons: FrozenSet[str] = frozenset(
        {"emergency", "safety_concern", "passenger_no_show", "vehicle_issue"}
    )
    cas_retries: int = 5
    # how far into a horizon the repair tool places a rewritten window start
    repair_offsets: Dict[Horizon, timedelta] = field(default_factory=lambda: {
        Horizon.SHORT: timedelta(hours=1),
        Horizon.MEDIUM: timedelta(days=1),
        Horizon.LONG: timedelta(days=5),
    })

    def validate(self) -> None:
        if set(self.weights) != set(Horizon):
            raise ValueError("weights must cover every horizon")
        if any(w < 0 for w in self.weights.values()):
            raise ValueError("window weights must be >= 0")
        if abs(sum(self.weights.values()) - 1.0) > 1e-9:
            raise ValueError("window weights must sum to 1")
        if self.cas_retries < 1:
            raise ValueError("cas_retries must be >= 1")
        if set(self.repair_offsets) != set(Horizon):
            raise ValueError("repair_offsets must cover every horizon")
        for horizon, offset in self.repair_offsets.items():
            if not timedelta(0) < offset < HORIZON_DURATIONS[horizon]:
                raise ValueError(f"repair offset for {horizon.value} must fall inside its horizon")


@dataclass(frozen=True)
class ScoringPolicy:
    distance_max: float = 50.0
    distance_per_km: float = 5.0
    tier_points: Dict[Tier, float] = field(default_factory=lambda: {
        Tier.PLATINUM: 15.0,
        Tier.GOLD: 10.0,
        Tier.SILVER: 5.0,
        Tier.BRONZE: 0.0,
    })
    unknown_tier_points: float = 5.0
    acceptance_max: float = 20.0
    rating_max: float = 15.0
    rating_scale: float = 5.0

    def validate(self) -> None:
        if self.distance_max < 0 or self.distance_per_km <= 0:
            raise ValueError("distance_max must be >= 0 and distance_per_km > 0")
        if self.acceptance_max < 0 or self.rating_max < 0:
            raise ValueError("score maxima must be >= 0")
        if set(self.tier_points) != set(Tier):
            raise ValueError("tier_points must cover every tier")
        if self.unknown_tier_points < 0 or any(p < 0 for p in self.tier_points.values()):
            raise ValueError("tier points must be >= 0")


def tier_policy_from_settings(s: Settings = default_settings) -> TierPolicy:
    p = TierPolicy(
        thresholds=(
            TierThreshold(Tier.PLATINUM, s.TIER_PLATINUM_MIN_ACCEPTANCE, s.TIER_PLATINUM_MIN_RATING),
            TierThreshold(Tier.GOLD, s.TIER_GOLD_MIN_ACCEPTANCE, s.TIER_GOLD_MIN_RATING),
            TierThreshold(Tier.SILVER, s.TIER_SILVER_MIN_ACCEPTANCE, s.TIER_SILVER_MIN_RATING),
        ),
        grace_period_trips=s.GRACE_PERIOD_TRIPS,
    )
    p.validate()
    return p


def window_policy_from_settings(s: Settings = default_settings) -> WindowPolicy:
    reasons: List[str] = [r.lower() for r in s.EXCUSED_CANCELLATION_REASONS]
    p = WindowPolicy(
        weights={
            Horizon.SHORT: s.WINDOW_WEIGHT_SHORT,
            Horizon.MEDIUM: s.WINDOW_WEIGHT_MEDIUM,
            Horizon.LONG: s.WINDOW_WEIGHT_LONG,
        },
        excused_cancellation_reasons=frozenset(reasons),
        cas_retries=s.METRICS_CAS_RETRIES,
        repair_offsets={
            Horizon.SHORT: timedelta(seconds=s.REPAIR_OFFSET_SHORT_SEC),
            Horizon.MEDIUM: timedelta(seconds=s.REPAIR_OFFSET_MEDIUM_SEC),
            Horizon.LONG: timedelta(seconds=s.REPAIR_OFFSET_LONG_SEC),
        },
    )
    p.validate()
    return p


def scoring_policy_from_settings(s: Settings = default_settings) -> ScoringPolicy:
    p = ScoringPolicy(
        distance_max=s.SCORE_DISTANCE_MAX,
        distance_per_km=s.SCORE_DISTANCE_PER_KM,
        acceptance_max=s.SCORE_ACCEPTANCE_MAX,
        rating_max=s.SCORE_RATING_MAX,
        tier_points={Tier(name.lower()): float(points) for name, points in s.SCORE_TIER_POINTS.items()},
        unknown_tier_points=s.SCORE_UNKNOWN_TIER_POINTS,
    )
    p.validate()
    return p
