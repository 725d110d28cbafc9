from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import create_async_engine

from ridedispatch.db import init_db
from ridedispatch.repository import DriverRepository
from ridedispatch.schemas import AcceptanceWindow, DriverMetrics, DriverRecord, DriverUpsert, Location, Tier

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

PICKUP = (12.9716, 77.5946)
# roughly 1.11 km of latitude
KM_LAT = 0.008993


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRedis:
    def __init__(self):
        self.hashes = {}

    async def hset(self, key, mapping=None):
        self.hashes.setdefault(key, {}).update(mapping or {})

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        return True

    async def delete(self, key):
        self.hashes.pop(key, None)

    async def ping(self):
        return True

    async def aclose(self):
        pass


class RecordingPush:
    def __init__(self, fail_with: Exception | None = None, deliver: bool = True):
        self.sent = []
        self.fail_with = fail_with
        self.deliver = deliver

    async def send(self, message):
        self.sent.append(message)
        if self.fail_with is not None:
            raise self.fail_with
        return self.deliver


@asynccontextmanager
async def sqlite_engine(path: str):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


def static_locations(mapping):
    async def locate(driver_id):
        return mapping.get(driver_id)
    return locate


def window(accepted=0, rejected=0, cancelled=0, start=START, reset_count=0) -> AcceptanceWindow:
    total = accepted + rejected + cancelled
    return AcceptanceWindow(
        accepted=accepted,
        rejected=rejected,
        cancelled=cancelled,
        total=total,
        rate=accepted / total if total else 0.0,
        window_start=start,
        reset_count=reset_count,
    )


def metrics(tier=Tier.SILVER, long=None, short=None, medium=None, now=START, **kwargs) -> DriverMetrics:
    return DriverMetrics(
        tier=tier,
        last_24h=short or window(start=now),
        last_7d=medium or window(start=now),
        last_30d=long or window(start=now),
        last_updated=now,
        **kwargs,
    )


def driver(driver_id, lat=None, lon=None, rating=5.0, m=None, token=None, online=True, available=True) -> DriverRecord:
    return DriverRecord(
        id=driver_id,
        display_name=f"Driver {driver_id}",
        is_online=online,
        is_available=available,
        rating=rating,
        push_token=token,
        location=Location(lat=lat, lon=lon) if lat is not None else None,
        metrics=m,
    )


async def seed_driver(repo: DriverRepository, driver_id, rating=5.0, token=None, m=None, online=True, available=True):
    await repo.upsert(driver_id, DriverUpsert(
        display_name=f"Driver {driver_id}", is_online=online, is_available=available, rating=rating, push_token=token,
    ))
    if m is not None:
        assert await repo.compare_and_set_metrics(driver_id, m, 0)
    return await repo.get(driver_id)
