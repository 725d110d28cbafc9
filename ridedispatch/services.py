from math import radians, cos, sin, asin, sqrt
import time
from typing import Optional, Tuple
from .config import settings
from .cache import redis_client
import logging

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance in km between two (lat, lon) pairs in degrees.

    NaN coordinates yield NaN; callers validate before use.
    """
    lat1, lon1, lat2, lon2 = map(radians, (a[0], a[1], b[0], b[1]))
    h = sin((lat2 - lat1) / 2) ** 2 + cos(lat1) * cos(lat2) * sin((lon2 - lon1) / 2) ** 2
    # rounding can push antipodal points just past 1
    return 2 * EARTH_RADIUS_KM * asin(sqrt(min(h, 1.0)))


def _location_key(driver_id: str) -> str:
    return f"driver:{driver_id}:location"


async def invalidate_driver_location(driver_id: str):
    await redis_client.delete(_location_key(driver_id))
    logger.info("location_invalidated: driver=%s", driver_id)


async def update_driver_location(driver_id: str, lat: float, lon: float):
    key = _location_key(driver_id)
    await redis_client.hset(key, mapping={"lat": lat, "lon": lon, "updated_at": time.time()})
    # redis drops the entry on its own if the driver goes quiet
    await redis_client.expire(key, settings.LOCATION_MAX_AGE_SEC)
    logger.debug("location_updated: driver=%s lat=%s lon=%s", driver_id, lat, lon)


async def get_driver_location(driver_id: str, max_age_sec: int | None = None) -> Optional[Tuple[float, float]]:
    """Last reported (lat, lon) for a driver.

    None when nothing is cached, the entry cannot be parsed, or it is older
    than `max_age_sec` (LOCATION_MAX_AGE_SEC by default). Stale entries are
    deleted.
    """
    max_age_sec = settings.LOCATION_MAX_AGE_SEC if max_age_sec is None else max_age_sec
    fix = await redis_client.hgetall(_location_key(driver_id))
    if not fix:
        return None
    try:
        lat, lon = float(fix["lat"]), float(fix["lon"])
        age = time.time() - float(fix.get("updated_at", 0))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("location_unreadable: driver=%s error=%s", driver_id, e)
        return None
    if age > max_age_sec:
        logger.debug("location_stale: driver=%s age=%.1fs", driver_id, age)
        await invalidate_driver_location(driver_id)
        return None
    return lat, lon
