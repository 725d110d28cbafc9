import asyncio
from datetime import timedelta

import pytest

from ridedispatch.dispatcher import LOST_RACE, NO_CANDIDATES, NOTIFIED, Dispatcher
from ridedispatch.errors import RideNotFoundError
from ridedispatch.policy import ScoringPolicy
from ridedispatch.repository import DriverRepository, RideRepository
from ridedispatch.schemas import Place, RideCreate, RideStatus, Stop, Tier

from support import KM_LAT, PICKUP, RecordingPush, metrics, seed_driver, sqlite_engine, static_locations, window

LAT, LON = PICKUP

# strong: 2 km, platinum, 90%, 4.5 stars -> 86.5; close: 1 km, bronze, 50%, 3 stars -> 64
FLEET = {
    "strong": ((LAT + 2 * KM_LAT, LON), 4.5, Tier.PLATINUM, 90),
    "close": ((LAT + KM_LAT, LON), 3.0, Tier.BRONZE, 50),
}


class Harness:
    def __init__(self, engine, clock, push=None, locations=None):
        self.locations = dict(locations or {})
        self.drivers = DriverRepository(engine, locate=static_locations(self.locations))
        self.rides = RideRepository(engine)
        self.push = push or RecordingPush()
        self.clock = clock
        self.dispatcher = Dispatcher(
            self.rides, self.drivers, self.push, ScoringPolicy(),
            radius_km=5.0, response_expiry_sec=20, max_stops=5, clock=clock,
        )

    async def add_fleet(self, fleet=FLEET, tokens=True):
        for driver_id, (loc, rating, tier, rate) in fleet.items():
            long = window(accepted=rate, rejected=100 - rate)
            await seed_driver(
                self.drivers, driver_id, rating=rating,
                token=f"tok-{driver_id}" if tokens else None,
                m=metrics(tier, long=long, now=self.clock()),
            )
            self.locations[driver_id] = loc

    async def new_ride(self, stops=()):
        return await self.rides.create(RideCreate(
            rider_id=7,
            pickup=Place(lat=LAT, lon=LON, address="Pickup"),
            dropoff=Place(lat=LAT + 0.05, lon=LON),
            stops=list(stops),
            fare=120.0,
        ), now=self.clock())


def test_notifies_top_ranked_driver(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            await h.add_fleet()
            ride = await h.new_ride(stops=[Stop(lat=LAT + 0.01, lon=LON, waiting_time=4)])

            result = await h.dispatcher.on_ride_created(ride)
            assert result.outcome == NOTIFIED
            assert [c.driver_id for c in result.ranked] == ["strong", "close"]
            assert result.delivered

            stored = await h.rides.get(ride.id)
            assert stored.status == RideStatus.DRIVER_NOTIFIED
            assert stored.notified_driver_id == "strong"
            assert stored.notified_driver_id == stored.nearby_drivers[0].driver_id
            assert [d.driver_id for d in stored.nearby_drivers] == ["strong", "close"]
            assert stored.nearby_drivers[0].acceptance_rate == 90.0
            assert stored.notified_driver_tier == Tier.PLATINUM
            assert round(stored.notified_driver_priority, 1) == 86.5
            assert stored.notification_time == clock()
            assert not stored.no_drivers_available

            assert len(h.push.sent) == 1
            msg = h.push.sent[0]
            assert msg.token == "tok-strong"
            assert msg.data["tripId"] == str(ride.id)
            assert msg.data["stopsCount"] == "1"
            assert msg.data["expiresIn"] == "20"

    asyncio.run(scenario())


def test_no_drivers_in_radius(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            await h.add_fleet({"far": ((LAT + 20 * KM_LAT, LON), 5.0, Tier.GOLD, 95)})
            ride = await h.new_ride()

            result = await h.dispatcher.on_ride_created(ride)
            assert result.outcome == NO_CANDIDATES
            stored = await h.rides.get(ride.id)
            assert stored.status == RideStatus.SEARCHING
            assert stored.no_drivers_available
            assert stored.notified_driver_id is None
            assert h.push.sent == []

    asyncio.run(scenario())


def test_no_drivers_registered(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            ride = await h.new_ride()
            result = await h.dispatcher.on_ride_created(ride)
            assert result.outcome == NO_CANDIDATES
            assert (await h.rides.get(ride.id)).no_drivers_available
            assert h.push.sent == []

    asyncio.run(scenario())


def test_refresh_with_same_stamp_is_ignored(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            ride = await h.new_ride()
            await h.dispatcher.on_ride_created(ride)

            await h.add_fleet()
            before = await h.rides.get(ride.id)
            assert await h.rides.stamp_refresh(ride.id, clock.advance(seconds=30))
            after = await h.rides.get(ride.id)

            assert not Dispatcher.should_refresh(after, after)
            assert await h.dispatcher.on_ride_updated(after, after) is None
            assert h.push.sent == []

            first = await h.dispatcher.on_ride_updated(before, after)
            assert first.outcome == NOTIFIED
            # the same change delivered again
            assert await h.dispatcher.on_ride_updated(before, after) is None
            assert len(h.push.sent) == 1
            assert (await h.rides.get(ride.id)).search_attempts == 1

    asyncio.run(scenario())


def test_refresh_claimed_once_while_searching(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            ride = await h.new_ride()
            before = await h.rides.get(ride.id)
            await h.rides.stamp_refresh(ride.id, clock.advance(seconds=10))
            after = await h.rides.get(ride.id)

            results = await asyncio.gather(
                h.dispatcher.on_ride_updated(before, after),
                h.dispatcher.on_ride_updated(before, after),
            )
            assert sorted(r is None for r in results) == [False, True]
            stored = await h.rides.get(ride.id)
            assert stored.last_search_refresh_handled == after.search_refreshed_at

    asyncio.run(scenario())


def test_refresh_ignored_once_notified(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            await h.add_fleet()
            ride = await h.new_ride()
            await h.dispatcher.on_ride_created(ride)
            assert not await h.rides.stamp_refresh(ride.id, clock.advance(seconds=5))
            stored = await h.rides.get(ride.id)
            assert not Dispatcher.should_refresh(ride, stored)
            assert len(h.push.sent) == 1

    asyncio.run(scenario())


def test_older_refresh_stamp_is_refused(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            ride = await h.new_ride()
            newer = clock() + timedelta(minutes=10)

            assert await h.rides.stamp_refresh(ride.id, newer)
            assert not await h.rides.stamp_refresh(ride.id, newer - timedelta(minutes=5))
            assert not await h.rides.stamp_refresh(ride.id, newer)

            stored = await h.rides.get(ride.id)
            assert stored.search_refreshed_at == newer
            assert stored.search_attempts == 1

    asyncio.run(scenario())


def test_require_unknown_ride(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            ride = await h.new_ride()
            assert (await h.rides.require(ride.id)).id == ride.id
            with pytest.raises(RideNotFoundError) as exc:
                await h.rides.require(ride.id + 100)
            assert exc.value.ride_id == ride.id + 100

    asyncio.run(scenario())


def test_concurrent_cycles_notify_once(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            await h.add_fleet()
            ride = await h.new_ride()
            results = await asyncio.gather(
                h.dispatcher.run_search_cycle(ride),
                h.dispatcher.run_search_cycle(ride),
            )
            assert sorted(r.outcome for r in results) == sorted([LOST_RACE, NOTIFIED])
            assert len(h.push.sent) == 1
            assert (await h.rides.get(ride.id)).notified_driver_id == "strong"

    asyncio.run(scenario())


def test_delivery_failure_keeps_notified_status(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock, push=RecordingPush(fail_with=RuntimeError("gateway exploded")))
            await h.add_fleet()
            ride = await h.new_ride()
            result = await h.dispatcher.on_ride_created(ride)
            assert result.outcome == NOTIFIED
            assert not result.delivered
            assert (await h.rides.get(ride.id)).status == RideStatus.DRIVER_NOTIFIED

    asyncio.run(scenario())


def test_missing_push_token_skips_delivery(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            await h.add_fleet(tokens=False)
            ride = await h.new_ride()
            result = await h.dispatcher.on_ride_created(ride)
            assert result.outcome == NOTIFIED
            assert result.notified_driver_id == "strong"
            assert not result.delivered
            assert h.push.sent == []

    asyncio.run(scenario())


def test_no_response_then_refresh_then_accept(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            await h.add_fleet()
            ride = await h.new_ride()
            await h.dispatcher.on_ride_created(ride)

            assert not await h.dispatcher.on_driver_accepted(ride.id, "close")
            assert await h.dispatcher.on_no_response(ride.id, "strong")
            assert (await h.rides.get(ride.id)).status == RideStatus.SEARCHING

            before = await h.rides.get(ride.id)
            await h.rides.stamp_refresh(ride.id, clock.advance(seconds=25))
            after = await h.rides.get(ride.id)
            result = await h.dispatcher.on_ride_updated(before, after)
            assert result.outcome == NOTIFIED
            assert len(h.push.sent) == 2

            assert await h.dispatcher.on_driver_accepted(ride.id, "strong")
            stored = await h.rides.get(ride.id)
            assert stored.status == RideStatus.ACCEPTED
            assert stored.search_attempts == 1
            assert not await h.dispatcher.on_no_response(ride.id, "strong")

    asyncio.run(scenario())


def test_ride_not_searching_is_ignored(db_path, clock):
    async def scenario():
        async with sqlite_engine(db_path) as engine:
            h = Harness(engine, clock)
            ride = await h.new_ride()
            done = ride.model_copy(update={"status": RideStatus.ACCEPTED})
            assert await h.dispatcher.on_ride_created(done) is None

    asyncio.run(scenario())
