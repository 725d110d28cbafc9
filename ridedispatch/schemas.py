from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from enum import Enum
from datetime import datetime, timedelta, timezone


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (sqlite hands them back without tzinfo)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    PLATINUM = "platinum"
    GOLD = "gold"
    SILVER = "silver"
    BRONZE = "bronze"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Horizon(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


HORIZON_DURATIONS = {
    Horizon.SHORT: timedelta(hours=24),
    Horizon.MEDIUM: timedelta(days=7),
    Horizon.LONG: timedelta(days=30),
}

# metrics attribute holding each horizon's window
WINDOW_FIELDS = {
    Horizon.SHORT: "last_24h",
    Horizon.MEDIUM: "last_7d",
    Horizon.LONG: "last_30d",
}


class RideStatus(str, Enum):
    SEARCHING = "searching"
    DRIVER_NOTIFIED = "driver_notified"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"


class AcceptanceWindow(BaseModel):
    """Outcome counts for one horizon since `window_start`."""
    accepted: int = Field(0, ge=0)
    rejected: int = Field(0, ge=0)
    cancelled: int = Field(0, ge=0)
    total: int = Field(0, ge=0)
    rate: float = Field(0.0, ge=0.0, le=1.0)
    window_start: datetime
    reset_count: int = Field(0, ge=0)

    @field_validator("window_start")
    @classmethod
    def _window_start_utc(cls, v):
        return as_utc(v)

    @classmethod
    def empty(cls, window_start: datetime, reset_count: int = 0) -> "AcceptanceWindow":
        return cls(window_start=window_start, reset_count=reset_count)

    def age(self, now: datetime) -> timedelta:
        return now - self.window_start

    def is_fresh(self, now: datetime, horizon: timedelta) -> bool:
        return self.age(now) <= horizon

    def with_outcome(self, outcome: Outcome) -> "AcceptanceWindow":
        accepted = self.accepted + (outcome == Outcome.ACCEPTED)
        rejected = self.rejected + (outcome == Outcome.REJECTED)
        cancelled = self.cancelled + (outcome == Outcome.CANCELLED)
        total = accepted + rejected + cancelled
        return self.model_copy(update={
            "accepted": accepted,
            "rejected": rejected,
            "cancelled": cancelled,
            "total": total,
            "rate": accepted / total if total else 0.0,
        })


class DriverMetrics(BaseModel):
    trips_requested: int = Field(0, ge=0)
    trips_accepted: int = Field(0, ge=0)
    trips_cancelled: int = Field(0, ge=0)
    trips_completed: int = Field(0, ge=0)

    # lifetime rates, percent
    acceptance_rate: float = 0.0
    cancellation_rate: float = 0.0
    reliability_score: float = Field(0.0, ge=0.0, le=100.0)
    tier: Tier = Tier.SILVER

    last_24h: AcceptanceWindow
    last_7d: AcceptanceWindow
    last_30d: AcceptanceWindow

    last_updated: datetime
    is_in_grace_period: bool = True

    @field_validator("last_updated")
    @classmethod
    def _last_updated_utc(cls, v):
        return as_utc(v)

    @classmethod
    def initial(cls, now: datetime) -> "DriverMetrics":
        return cls(
            last_24h=AcceptanceWindow.empty(now),
            last_7d=AcceptanceWindow.empty(now),
            last_30d=AcceptanceWindow.empty(now),
            last_updated=now,
        )

    def window(self, horizon: Horizon) -> AcceptanceWindow:
        return getattr(self, WINDOW_FIELDS[horizon])


class TierOutlook(BaseModel):
    """Where a driver stands against the tier above and the tier they hold."""
    # close enough to the held tier's minimums that one bad week drops it
    at_risk: bool = False
    # None at the top tier
    next_tier: Optional[Tier] = None
    # weighted acceptance percent points and stars still missing for next_tier
    acceptance_gap: float = 0.0
    rating_gap: float = 0.0


class DriverMetricsOut(DriverMetrics):
    outlook: TierOutlook


class Location(BaseModel):
    lat: float
    lon: float


class Place(Location):
    address: Optional[str] = Field(None, max_length=500)


class Stop(Place):
    # minutes the driver waits at this stop
    waiting_time: int = Field(0, ge=0)


class NearbyDriver(BaseModel):
    """Summary of one ranked candidate, persisted on the ride after a search cycle."""
    driver_id: str
    distance_km: float
    tier: Tier
    priority_score: float
    # percent, long horizon
    acceptance_rate: float


class DriverRecord(BaseModel):
    id: str
    display_name: Optional[str] = None
    is_online: bool = False
    is_available: bool = False
    rating: float = Field(5.0, ge=0.0, le=5.0)
    push_token: Optional[str] = None
    location: Optional[Location] = None
    metrics: Optional[DriverMetrics] = None
    metrics_version: int = 0


class RideRecord(BaseModel):
    id: int
    rider_id: Optional[int] = None
    status: RideStatus = RideStatus.SEARCHING
    pickup: Place
    dropoff: Place
    stops: List[Stop] = []
    fare: Optional[float] = None
    distance_km: Optional[float] = None
    duration_min: Optional[float] = None

    nearby_drivers: List[NearbyDriver] = []
    notified_driver_id: Optional[str] = None
    notified_driver_tier: Optional[Tier] = None
    notified_driver_priority: Optional[float] = None
    notification_time: Optional[datetime] = None
    no_drivers_available: bool = False

    search_refreshed_at: Optional[datetime] = None
    last_search_refresh_handled: Optional[datetime] = None
    search_attempts: int = 0

    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @field_validator("notification_time", "search_refreshed_at", "last_search_refresh_handled", "created_at", "last_updated")
    @classmethod
    def _timestamps_utc(cls, v):
        return as_utc(v)


class RideCreate(BaseModel):
    rider_id: Optional[int] = Field(None, gt=0)
    pickup: Place
    dropoff: Place
    stops: List[Stop] = []
    fare: Optional[float] = Field(None, ge=0)
    distance_km: Optional[float] = Field(None, ge=0)
    duration_min: Optional[float] = Field(None, ge=0)


class RideOut(BaseModel):
    id: int
    status: RideStatus
    notified_driver_id: Optional[str] = None
    no_drivers_available: bool = False
    search_attempts: int = 0


class RefreshRequest(BaseModel):
    # client-stamped refresh time; the server stamps one when omitted
    search_refreshed_at: Optional[datetime] = None


class DriverResponse(BaseModel):
    driver_id: str = Field(..., min_length=1)


class DriverUpsert(BaseModel):
    display_name: Optional[str] = Field(None, max_length=100)
    is_online: bool = False
    is_available: bool = False
    rating: float = Field(5.0, ge=0.0, le=5.0)
    push_token: Optional[str] = Field(None, max_length=4096)


class OutcomeEvent(str, Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class OutcomeRequest(BaseModel):
    event: OutcomeEvent
    reason: Optional[str] = Field(None, max_length=100)
