"""Priority scoring for dispatch candidates.

Score (0-100 with the default policy) is the sum of four bounded parts:

    distance     0-50   max(0, 50 - km * 5)
    tier         0-15   platinum 15, gold 10, silver 5, bronze 0 (unknown: 5)
    acceptance   0-20   long-horizon acceptance percent / 100 * 20
    rating       0-15   stars / 5 * 15

Candidates are ordered by score, highest first, then by driver id so equal
scores always come out in the same order.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional
import logging

from .policy import ScoringPolicy, scoring_policy_from_settings
from .schemas import DriverRecord, NearbyDriver, Tier

logger = logging.getLogger(__name__)


def _bounded(value: float, upper: float) -> float:
    return min(upper, max(0.0, value))


@dataclass(frozen=True)
class ScoreBreakdown:
    distance: float
    tier: float
    acceptance: float
    rating: float

    @property
    def total(self) -> float:
        return self.distance + self.tier + self.acceptance + self.rating

    def as_dict(self) -> Dict[str, str]:
        return {
            "distance": f"{self.distance:.1f}",
            "tier": f"{self.tier:.0f}",
            "acceptance": f"{self.acceptance:.1f}",
            "rating": f"{self.rating:.1f}",
            "total": f"{self.total:.1f}",
        }


@dataclass(frozen=True)
class ScoredCandidate:
    driver_id: str
    distance_km: float
    tier: Tier
    acceptance_rate: float  # percent, long horizon
    rating: float
    reliability_score: float
    breakdown: ScoreBreakdown
    display_name: str = "Driver"
    push_token: Optional[str] = None

    @property
    def priority_score(self) -> float:
        return self.breakdown.total

    def summary(self) -> NearbyDriver:
        return NearbyDriver(
            driver_id=self.driver_id,
            distance_km=self.distance_km,
            tier=self.tier,
            priority_score=self.priority_score,
            acceptance_rate=self.acceptance_rate,
        )


@dataclass
class Ranking:
    candidates: List[ScoredCandidate] = field(default_factory=list)

    @property
    def top(self) -> Optional[ScoredCandidate]:
        return self.candidates[0] if self.candidates else None


def score_candidate(driver: DriverRecord, distance_km: float, policy: Optional[ScoringPolicy] = None) -> ScoredCandidate:
    policy = policy or scoring_policy_from_settings()
    metrics = driver.metrics

    distance_points = _bounded(policy.distance_max - distance_km * policy.distance_per_km, policy.distance_max)

    if metrics is None:
        tier = Tier.SILVER
        tier_points = policy.unknown_tier_points
        acceptance_rate = 0.0
        reliability = 0.0
    else:
        tier = metrics.tier
        tier_points = policy.tier_points.get(tier, policy.unknown_tier_points)
        acceptance_rate = metrics.last_30d.rate * 100.0
        reliability = metrics.reliability_score

    acceptance_points = _bounded(acceptance_rate / 100.0 * policy.acceptance_max, policy.acceptance_max)
    rating_points = _bounded(driver.rating / policy.rating_scale * policy.rating_max, policy.rating_max)

    return ScoredCandidate(
        driver_id=driver.id,
        distance_km=distance_km,
        tier=tier,
        acceptance_rate=acceptance_rate,
        rating=driver.rating,
        reliability_score=reliability,
        breakdown=ScoreBreakdown(distance_points, tier_points, acceptance_points, rating_points),
        display_name=driver.display_name or "Driver",
        push_token=driver.push_token,
    )


def rank_candidates(
    candidates: Mapping[str, float],
    drivers: Mapping[str, DriverRecord],
    policy: Optional[ScoringPolicy] = None,
) -> Ranking:
    """Score every candidate (driver id -> distance km) and order them best first."""
    policy = policy or scoring_policy_from_settings()
    scored = []
    for driver_id, distance_km in candidates.items():
        driver = drivers.get(driver_id)
        if driver is None:
            logger.warning("rank_candidates: driver=%s missing from registry snapshot", driver_id)
            continue
        try:
            scored.append(score_candidate(driver, distance_km, policy))
        except (TypeError, ValueError, ArithmeticError) as e:
            logger.warning("rank_candidates: driver=%s excluded, scoring failed: %s", driver_id, e)
    scored.sort(key=lambda c: (-c.priority_score, c.driver_id))
    return Ranking(scored)
