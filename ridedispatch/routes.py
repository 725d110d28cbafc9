from fastapi import APIRouter, Depends, HTTPException
from . import db, services
from .dispatcher import Dispatcher
from .errors import ConcurrentUpdateError, DriverNotFoundError, RideNotFoundError
from .metrics import ReliabilityTracker
from .notifications import PushSender
from .repository import DriverRepository, RideRepository
from .schemas import (
    DriverMetrics,
    DriverMetricsOut,
    DriverRecord,
    DriverResponse,
    DriverUpsert,
    Location,
    OutcomeEvent,
    OutcomeRequest,
    Outcome,
    RefreshRequest,
    RideCreate,
    RideOut,
    RideRecord,
    as_utc,
    utcnow,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def get_ride_repository() -> RideRepository:
    return RideRepository(db.engine)


def get_driver_repository() -> DriverRepository:
    return DriverRepository(db.engine)


def get_push_sender() -> PushSender:
    return PushSender()


def get_dispatcher(
    rides: RideRepository = Depends(get_ride_repository),
    drivers: DriverRepository = Depends(get_driver_repository),
    push: PushSender = Depends(get_push_sender),
) -> Dispatcher:
    return Dispatcher(rides, drivers, push)


def get_tracker(drivers: DriverRepository = Depends(get_driver_repository)) -> ReliabilityTracker:
    return ReliabilityTracker(drivers)


def _ride_out(ride: RideRecord) -> RideOut:
    return RideOut(
        id=ride.id,
        status=ride.status,
        notified_driver_id=ride.notified_driver_id,
        no_drivers_available=ride.no_drivers_available,
        search_attempts=ride.search_attempts,
    )


async def _require_ride(rides: RideRepository, ride_id: int) -> RideRecord:
    try:
        return await rides.require(ride_id)
    except RideNotFoundError:
        raise HTTPException(status_code=404, detail="ride not found")


@router.post("/rides", response_model=RideOut)
async def create_ride(req: RideCreate, rides: RideRepository = Depends(get_ride_repository), dispatcher: Dispatcher = Depends(get_dispatcher)):
    logger.info("create_ride: rider=%s pickup=(%s,%s) stops=%d", req.rider_id, req.pickup.lat, req.pickup.lon, len(req.stops))
    ride = await rides.create(req)
    await dispatcher.on_ride_created(ride)
    return _ride_out(await _require_ride(rides, ride.id))


@router.get("/rides/{ride_id}", response_model=RideRecord)
async def get_ride(ride_id: int, rides: RideRepository = Depends(get_ride_repository)):
    return await _require_ride(rides, ride_id)


@router.post("/rides/{ride_id}/refresh", response_model=RideOut)
async def refresh_ride(ride_id: int, req: RefreshRequest | None = None, rides: RideRepository = Depends(get_ride_repository), dispatcher: Dispatcher = Depends(get_dispatcher)):
    before = await _require_ride(rides, ride_id)
    stamp = as_utc(req.search_refreshed_at) if req and req.search_refreshed_at else utcnow()
    if before.search_refreshed_at is None or stamp > before.search_refreshed_at:
        await rides.stamp_refresh(ride_id, stamp)
    else:
        logger.info("refresh_stamp_ignored: ride=%s stamp=%s stored=%s", ride_id, stamp.isoformat(), before.search_refreshed_at.isoformat())
    after = await _require_ride(rides, ride_id)
    logger.info("refresh_ride: ride=%s status=%s stamp=%s", ride_id, after.status.value, stamp.isoformat())
    await dispatcher.on_ride_updated(before, after)
    return _ride_out(await _require_ride(rides, ride_id))


@router.post("/rides/{ride_id}/accept", response_model=RideOut)
async def accept_ride(ride_id: int, payload: DriverResponse, rides: RideRepository = Depends(get_ride_repository), dispatcher: Dispatcher = Depends(get_dispatcher)):
    await _require_ride(rides, ride_id)
    if not await dispatcher.on_driver_accepted(ride_id, payload.driver_id):
        raise HTTPException(status_code=409, detail="ride is not awaiting this driver")
    return _ride_out(await _require_ride(rides, ride_id))


@router.post("/rides/{ride_id}/no-response", response_model=RideOut)
async def ride_no_response(ride_id: int, payload: DriverResponse, rides: RideRepository = Depends(get_ride_repository), dispatcher: Dispatcher = Depends(get_dispatcher)):
    await _require_ride(rides, ride_id)
    if not await dispatcher.on_no_response(ride_id, payload.driver_id):
        raise HTTPException(status_code=409, detail="ride is not awaiting this driver")
    return _ride_out(await _require_ride(rides, ride_id))


@router.put("/drivers/{driver_id}", response_model=DriverRecord)
async def upsert_driver(driver_id: str, payload: DriverUpsert, drivers: DriverRepository = Depends(get_driver_repository)):
    return await drivers.upsert(driver_id, payload)


@router.post("/drivers/{driver_id}/location")
async def driver_location(driver_id: str, loc: Location, drivers: DriverRepository = Depends(get_driver_repository)):
    if not await drivers.get(driver_id):
        raise HTTPException(status_code=404, detail="driver not found")
    await services.update_driver_location(driver_id, loc.lat, loc.lon)
    return {"status": "ok"}


@router.post("/drivers/{driver_id}/outcomes", response_model=DriverMetrics)
async def driver_outcome(driver_id: str, payload: OutcomeRequest, tracker: ReliabilityTracker = Depends(get_tracker)):
    logger.info("driver_outcome: driver=%s event=%s reason=%s", driver_id, payload.event.value, payload.reason)
    try:
        if payload.event == OutcomeEvent.REQUESTED:
            return await tracker.record_request(driver_id)
        if payload.event == OutcomeEvent.COMPLETED:
            return await tracker.record_completion(driver_id)
        return await tracker.observe(driver_id, Outcome(payload.event.value), payload.reason)
    except DriverNotFoundError:
        raise HTTPException(status_code=404, detail="driver not found")
    except ConcurrentUpdateError:
        raise HTTPException(status_code=409, detail="metrics busy, retry")


@router.get("/drivers/{driver_id}/metrics", response_model=DriverMetricsOut)
async def driver_metrics(driver_id: str, tracker: ReliabilityTracker = Depends(get_tracker)):
    try:
        return await tracker.summary(driver_id)
    except DriverNotFoundError:
        raise HTTPException(status_code=404, detail="driver not found")
