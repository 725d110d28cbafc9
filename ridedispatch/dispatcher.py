"""
Dispatch orchestrator.

Ride states handled here:

    searching -> driver_notified -> accepted
                                 -> searching (no response; next refresh re-runs the search)

A search cycle loads online/available drivers, keeps those within the search
radius, ranks them and notifies the top one. The status write happens before
the push so a concurrent cycle sees `driver_notified` and backs off; the write
itself only succeeds while the ride is still `searching`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
import logging

from .candidates import select_candidates
from .config import settings
from .notifications import PushSender, TripRequestPayload
from .policy import ScoringPolicy, scoring_policy_from_settings
from .repository import DriverRepository, RideRepository
from .schemas import RideRecord, RideStatus, utcnow
from .scoring import ScoredCandidate, rank_candidates

logger = logging.getLogger(__name__)

NOTIFIED = "notified"
NO_CANDIDATES = "no_candidates"
LOST_RACE = "lost_race"


@dataclass
class DispatchResult:
    ride_id: int
    outcome: str
    ranked: List[ScoredCandidate] = field(default_factory=list)
    notified_driver_id: Optional[str] = None
    delivered: bool = False


class Dispatcher:
    def __init__(
        self,
        rides: RideRepository,
        drivers: DriverRepository,
        push: PushSender,
        scoring_policy: Optional[ScoringPolicy] = None,
        radius_km: Optional[float] = None,
        response_expiry_sec: Optional[int] = None,
        max_stops: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rides = rides
        self.drivers = drivers
        self.push = push
        self.scoring_policy = scoring_policy or scoring_policy_from_settings()
        self.radius_km = settings.SEARCH_RADIUS_KM if radius_km is None else radius_km
        self.response_expiry_sec = response_expiry_sec or settings.RESPONSE_EXPIRY_SEC
        self.max_stops = settings.MAX_NOTIFIED_STOPS if max_stops is None else max_stops
        self.clock = clock

    # -- triggers -------------------------------------------------------

    async def on_ride_created(self, ride: RideRecord) -> Optional[DispatchResult]:
        try:
            logger.info("ride_created_trigger: ride=%s status=%s", ride.id, ride.status.value)
            if ride.status != RideStatus.SEARCHING:
                logger.info("ride_created_ignored: ride=%s status=%s", ride.id, ride.status.value)
                return None
            return await self.run_search_cycle(ride)
        except Exception:
            logger.exception("on_ride_created_failed: ride=%s", ride.id)
            return None

    async def on_ride_updated(self, before: Optional[RideRecord], after: RideRecord) -> Optional[DispatchResult]:
        try:
            if not self.should_refresh(before, after):
                return None
            # only one handler gets to act on a given refresh stamp
            if not await self.rides.claim_refresh(after.id, after.search_refreshed_at):
                logger.info("refresh_ignored: ride=%s stamp=%s reason=already_handled", after.id, after.search_refreshed_at)
                return None
            logger.info("refresh_search: ride=%s attempts=%s", after.id, after.search_attempts)
            return await self.run_search_cycle(after)
        except Exception:
            logger.exception("on_ride_updated_failed: ride=%s", after.id)
            return None

    @staticmethod
    def should_refresh(before: Optional[RideRecord], after: RideRecord) -> bool:
        """True when `after` carries a refresh stamp newer than any seen for this ride."""
        if after.status != RideStatus.SEARCHING:
            return False
        stamp = after.search_refreshed_at
        if stamp is None:
            return False
        if before is not None and before.search_refreshed_at is not None and stamp <= before.search_refreshed_at:
            return False
        if after.last_search_refresh_handled is not None and stamp <= after.last_search_refresh_handled:
            return False
        return True

    async def on_driver_accepted(self, ride_id: int, driver_id: str) -> bool:
        return await self._resolve(ride_id, driver_id, RideStatus.ACCEPTED)

    async def on_no_response(self, ride_id: int, driver_id: str) -> bool:
        """Put an unanswered ride back to searching; the next refresh signal re-runs the search."""
        return await self._resolve(ride_id, driver_id, RideStatus.SEARCHING)

    async def _resolve(self, ride_id: int, driver_id: str, to_status: RideStatus) -> bool:
        try:
            moved = await self.rides.transition(ride_id, RideStatus.DRIVER_NOTIFIED, to_status, driver_id, self.clock())
        except Exception:
            logger.exception("ride_transition_failed: ride=%s driver=%s to=%s", ride_id, driver_id, to_status.value)
            return False
        if moved:
            logger.info("ride_transition: ride=%s driver=%s to=%s", ride_id, driver_id, to_status.value)
        else:
            logger.warning("ride_transition_refused: ride=%s driver=%s to=%s", ride_id, driver_id, to_status.value)
        return moved

    # -- search cycle ---------------------------------------------------

    async def run_search_cycle(self, ride: RideRecord) -> DispatchResult:
        pickup = (ride.pickup.lat, ride.pickup.lon)
        drivers = await self.drivers.list_available()
        if not drivers:
            logger.info("no_available_drivers: ride=%s", ride.id)
            return await self._no_candidates(ride)

        candidates = select_candidates(pickup, drivers, self.radius_km)
        ranking = rank_candidates(candidates, {d.id: d for d in drivers}, self.scoring_policy)
        top = ranking.top
        if top is None:
            logger.info("no_drivers_in_radius: ride=%s radius_km=%s", ride.id, self.radius_km)
            return await self._no_candidates(ride)

        for rank, c in enumerate(ranking.candidates[:3], start=1):
            logger.info(
                "candidate_rank: ride=%s rank=%d driver=%s tier=%s priority=%.1f distance_km=%.2f breakdown=%s",
                ride.id, rank, c.driver_id, c.tier.value, c.priority_score, c.distance_km, c.breakdown.as_dict(),
            )

        now = self.clock()
        if not await self.rides.mark_driver_notified(ride.id, ranking.candidates, top, now):
            logger.warning("notify_skipped: ride=%s reason=no_longer_searching", ride.id)
            return DispatchResult(ride.id, LOST_RACE, ranking.candidates)

        delivered = await self._notify(ride, top, now)
        return DispatchResult(ride.id, NOTIFIED, ranking.candidates, top.driver_id, delivered)

    async def _no_candidates(self, ride: RideRecord) -> DispatchResult:
        await self.rides.mark_no_drivers(ride.id, self.clock())
        return DispatchResult(ride.id, NO_CANDIDATES)

    async def _notify(self, ride: RideRecord, top: ScoredCandidate, now: datetime) -> bool:
        if not top.push_token:
            logger.warning("notify_skipped: ride=%s driver=%s reason=no_push_token", ride.id, top.driver_id)
            return False
        payload = TripRequestPayload(
            trip_id=ride.id,
            pickup=ride.pickup,
            dropoff=ride.dropoff,
            fare=ride.fare,
            distance_km=ride.distance_km,
            duration_min=ride.duration_min,
            stops=ride.stops,
            distance_to_pickup_km=top.distance_km,
            expires_in_sec=self.response_expiry_sec,
            notification_time=now,
        )
        try:
            delivered = await self.push.send(payload.to_message(top.push_token, self.max_stops))
        except Exception:
            # the ride stays driver_notified; the response timeout on the client side recovers
            logger.exception("notify_failed: ride=%s driver=%s", ride.id, top.driver_id)
            return False
        logger.info(
            "driver_notified: ride=%s driver=%s tier=%s priority=%.1f delivered=%s",
            ride.id, top.driver_id, top.tier.value, top.priority_score, delivered,
        )
        return delivered
