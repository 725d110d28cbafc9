"""Driver registry and ride store on top of the async SQLAlchemy engine.

The dispatcher, reliability tracker and repair tool receive these objects
instead of touching tables directly. Status and metrics writes are
conditional updates so concurrent cycles cannot both win.
"""
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple
from pydantic import ValidationError
from sqlalchemy import select, insert, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncEngine
import logging

from . import models, services
from .errors import RideNotFoundError
from .schemas import (
    DriverMetrics,
    DriverRecord,
    DriverUpsert,
    Location,
    RideCreate,
    RideRecord,
    RideStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

LocationLookup = Callable[[str], Awaitable[Optional[Tuple[float, float]]]]


class DriverRepository:
    def __init__(self, engine: AsyncEngine, locate: LocationLookup = services.get_driver_location):
        self.engine = engine
        self.locate = locate

    async def _to_record(self, row, with_location: bool) -> DriverRecord:
        m = row._mapping
        location = None
        if with_location:
            loc = await self.locate(m[models.drivers.c.id])
            if loc is not None:
                location = Location(lat=loc[0], lon=loc[1])
        return DriverRecord(
            id=m[models.drivers.c.id],
            display_name=m[models.drivers.c.display_name],
            is_online=bool(m[models.drivers.c.is_online]),
            is_available=bool(m[models.drivers.c.is_available]),
            rating=m[models.drivers.c.rating] if m[models.drivers.c.rating] is not None else 5.0,
            push_token=m[models.drivers.c.push_token],
            location=location,
            metrics=m[models.drivers.c.metrics],
            metrics_version=m[models.drivers.c.metrics_version] or 0,
        )

    async def get(self, driver_id: str, with_location: bool = False) -> Optional[DriverRecord]:
        sel = select(models.drivers).where(models.drivers.c.id == driver_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(sel)).first()
        if not row:
            return None
        return await self._to_record(row, with_location)

    async def list_available(self) -> List[DriverRecord]:
        """Online and available drivers with their last known location (None when stale or missing).

        Rows whose stored fields do not validate are logged and left out.
        """
        sel = select(models.drivers).where(
            and_(models.drivers.c.is_online.is_(True), models.drivers.c.is_available.is_(True))
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(sel)).all()
        drivers = []
        for row in rows:
            try:
                drivers.append(await self._to_record(row, with_location=True))
            except ValidationError as e:
                logger.warning("driver_record_malformed: driver=%s errors=%s", row._mapping[models.drivers.c.id], e.error_count())
        logger.debug("list_available: drivers=%d", len(drivers))
        return drivers

    async def list_ids(self) -> List[str]:
        async with self.engine.connect() as conn:
            res = await conn.execute(select(models.drivers.c.id).order_by(models.drivers.c.id))
            return [r[0] for r in res.all()]

    async def upsert(self, driver_id: str, data: DriverUpsert) -> DriverRecord:
        values = data.model_dump()
        async with self.engine.begin() as conn:
            exists = (await conn.execute(select(models.drivers.c.id).where(models.drivers.c.id == driver_id))).first()
            if exists:
                await conn.execute(update(models.drivers).where(models.drivers.c.id == driver_id).values(**values))
            else:
                await conn.execute(insert(models.drivers).values(id=driver_id, metrics=None, metrics_version=0, **values))
        logger.info("driver_upserted: driver=%s online=%s available=%s", driver_id, data.is_online, data.is_available)
        return await self.get(driver_id)

    async def compare_and_set_metrics(self, driver_id: str, metrics: DriverMetrics, expected_version: int) -> bool:
        """Write `metrics` only if nobody else wrote since `expected_version` was read."""
        stmt = (
            update(models.drivers)
            .where(and_(models.drivers.c.id == driver_id, models.drivers.c.metrics_version == expected_version))
            .values(metrics=metrics.model_dump(mode="json"), metrics_version=expected_version + 1)
        )
        async with self.engine.begin() as conn:
            res = await conn.execute(stmt)
        return res.rowcount == 1


class RideRepository:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @staticmethod
    def _to_record(row) -> RideRecord:
        m = dict(row._mapping)
        m["stops"] = m.get("stops") or []
        m["nearby_drivers"] = m.get("nearby_drivers") or []
        m["no_drivers_available"] = bool(m.get("no_drivers_available"))
        m["search_attempts"] = m.get("search_attempts") or 0
        return RideRecord.model_validate(m)

    async def create(self, req: RideCreate, now: datetime | None = None) -> RideRecord:
        now = now or utcnow()
        async with self.engine.begin() as conn:
            res = await conn.execute(
                insert(models.rides).returning(models.rides.c.id).values(
                    rider_id=req.rider_id,
                    status=RideStatus.SEARCHING.value,
                    pickup=req.pickup.model_dump(),
                    dropoff=req.dropoff.model_dump(),
                    stops=[s.model_dump() for s in req.stops],
                    fare=req.fare,
                    distance_km=req.distance_km,
                    duration_min=req.duration_min,
                    nearby_drivers=[],
                    no_drivers_available=False,
                    search_attempts=0,
                    created_at=now,
                    last_updated=now,
                )
            )
            ride_id = res.scalar_one()
        logger.info("ride_created: id=%s", ride_id)
        return await self.get(ride_id)

    async def get(self, ride_id: int) -> Optional[RideRecord]:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(models.rides).where(models.rides.c.id == ride_id))).first()
        return self._to_record(row) if row else None

    async def require(self, ride_id: int) -> RideRecord:
        ride = await self.get(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)
        return ride

    async def _conditional_update(self, ride_id: int, condition, **values) -> bool:
        stmt = update(models.rides).where(and_(models.rides.c.id == ride_id, condition)).values(**values)
        async with self.engine.begin() as conn:
            res = await conn.execute(stmt)
        return res.rowcount == 1

    async def stamp_refresh(self, ride_id: int, stamp: datetime) -> bool:
        """Record a refresh request on a still-searching ride.

        The stored stamp only moves forward; an equal or older `stamp` is
        refused and does not count as an attempt.
        """
        refreshed = models.rides.c.search_refreshed_at
        return await self._conditional_update(
            ride_id,
            and_(
                models.rides.c.status == RideStatus.SEARCHING.value,
                or_(refreshed.is_(None), refreshed < stamp),
            ),
            search_refreshed_at=stamp,
            search_attempts=models.rides.c.search_attempts + 1,
            last_updated=utcnow(),
        )

    async def claim_refresh(self, ride_id: int, stamp: datetime) -> bool:
        """Mark the refresh stamped `stamp` as handled; False if it, or a newer one, already was."""
        handled = models.rides.c.last_search_refresh_handled
        return await self._conditional_update(
            ride_id,
            and_(
                models.rides.c.status == RideStatus.SEARCHING.value,
                or_(handled.is_(None), handled < stamp),
            ),
            last_search_refresh_handled=stamp,
        )

    async def mark_no_drivers(self, ride_id: int, now: datetime) -> bool:
        return await self._conditional_update(
            ride_id,
            models.rides.c.status == RideStatus.SEARCHING.value,
            no_drivers_available=True,
            last_updated=now,
        )

    async def mark_driver_notified(self, ride_id: int, ranked: Sequence, top, now: datetime) -> bool:
        """searching -> driver_notified, recording the ranked candidates and the chosen one.

        `ranked` and `top` are ScoredCandidate values. Returns False when the
        ride already left `searching` (another cycle won).
        """
        return await self._conditional_update(
            ride_id,
            models.rides.c.status == RideStatus.SEARCHING.value,
            status=RideStatus.DRIVER_NOTIFIED.value,
            nearby_drivers=[c.summary().model_dump(mode="json") for c in ranked],
            notified_driver_id=top.driver_id,
            notified_driver_tier=top.tier.value,
            notified_driver_priority=top.priority_score,
            notification_time=now,
            no_drivers_available=False,
            last_updated=now,
        )

    async def transition(self, ride_id: int, from_status: RideStatus, to_status: RideStatus, driver_id: str, now: datetime) -> bool:
        """Move a notified ride on, provided `driver_id` is the driver that was notified."""
        return await self._conditional_update(
            ride_id,
            and_(
                models.rides.c.status == from_status.value,
                models.rides.c.notified_driver_id == driver_id,
            ),
            status=to_status.value,
            last_updated=now,
        )
