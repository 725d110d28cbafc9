from math import isfinite
from typing import Dict, Iterable, Optional, Tuple
import logging

from .config import settings
from .schemas import DriverRecord
from .services import haversine_km

logger = logging.getLogger(__name__)


def is_valid_coordinate(lat, lon) -> bool:
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return False
    return isfinite(lat) and isfinite(lon) and -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def select_candidates(
    pickup: Tuple[float, float],
    drivers: Iterable[DriverRecord],
    radius_km: Optional[float] = None,
) -> Dict[str, float]:
    """Map driver id -> distance (km) for every eligible driver within `radius_km` of pickup.

    Drivers that are offline, unavailable, or lack a usable location are
    skipped; an empty result means there are no candidates.
    """
    radius_km = settings.SEARCH_RADIUS_KM if radius_km is None else radius_km
    if not is_valid_coordinate(*pickup):
        logger.warning("select_candidates: invalid pickup=%s", pickup)
        return {}

    candidates = {}
    for driver in drivers:
        if not (driver.is_online and driver.is_available):
            continue
        loc = driver.location
        if loc is None or not is_valid_coordinate(loc.lat, loc.lon):
            logger.debug("candidate_excluded: driver=%s reason=no_location", driver.id)
            continue
        distance = haversine_km(pickup, (loc.lat, loc.lon))
        if not isfinite(distance) or distance > radius_km:
            continue
        candidates[driver.id] = distance

    logger.info("select_candidates: pickup=%s radius_km=%s candidates=%d", pickup, radius_km, len(candidates))
    return candidates
