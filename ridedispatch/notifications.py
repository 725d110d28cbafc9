"""Trip request push notifications.

`TripRequestPayload` is the typed message; `to_data()` flattens it into the
string map the driver app reads. Only the first `max_stops` stops go on the
wire (push providers cap message size), the remainder is reported as
`additionalStops`.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel
import httpx
import logging

from .config import settings
from .schemas import Place, Stop

logger = logging.getLogger(__name__)

# bump when keys are added, renamed or removed in TripRequestPayload.to_data()
PAYLOAD_VERSION = 1


def _fmt(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class PushMessage(BaseModel):
    token: str
    title: str
    body: str
    data: Dict[str, str]

    def as_request(self) -> dict:
        return {
            "token": self.token,
            "notification": {"title": self.title, "body": self.body},
            "data": self.data,
        }


class TripRequestPayload(BaseModel):
    trip_id: int
    pickup: Place
    dropoff: Place
    fare: Optional[float] = None
    distance_km: Optional[float] = None
    duration_min: Optional[float] = None
    stops: List[Stop] = []
    distance_to_pickup_km: float
    expires_in_sec: int
    notification_time: datetime

    def title(self) -> str:
        return "New Trip Request"

    def body(self, max_stops: int) -> str:
        text = f"New pickup request ({self.distance_to_pickup_km:.1f}km away)"
        if self.stops:
            n = len(self.stops)
            text += f" with {n} stop{'s' if n > 1 else ''}"
            waiting = sum(s.waiting_time for s in self.stops[:max_stops])
            if waiting > 0:
                text += f" ({waiting} min waiting)"
        return text

    def to_data(self, max_stops: int) -> Dict[str, str]:
        data = {
            "payloadVersion": str(PAYLOAD_VERSION),
            "notificationType": "tripRequest",
            "tripId": str(self.trip_id),
            "pickupAddress": self.pickup.address or "Unknown location",
            "pickupLatitude": _fmt(self.pickup.lat),
            "pickupLongitude": _fmt(self.pickup.lon),
            "dropoffAddress": self.dropoff.address or "Unknown destination",
            "fare": _fmt(self.fare or 0),
            "distance": _fmt(self.distance_km or 0),
            "estimatedDuration": _fmt(self.duration_min or 0),
            "expiresIn": str(self.expires_in_sec),
            "notificationTime": str(int(self.notification_time.timestamp() * 1000)),
        }
        if not self.stops:
            data["hasStops"] = "false"
            data["totalWaitingTime"] = "0"
            return data

        included = self.stops[:max_stops]
        data["hasStops"] = "true"
        data["stopsCount"] = str(len(self.stops))
        for i, stop in enumerate(included, start=1):
            data[f"stop{i}Address"] = stop.address or "Unknown stop location"
            data[f"stop{i}Latitude"] = _fmt(stop.lat)
            data[f"stop{i}Longitude"] = _fmt(stop.lon)
            data[f"stop{i}WaitingTime"] = str(stop.waiting_time)
        data["totalWaitingTime"] = str(sum(s.waiting_time for s in included))
        if len(self.stops) > len(included):
            data["additionalStops"] = str(len(self.stops) - len(included))
        return data

    def to_message(self, token: str, max_stops: Optional[int] = None) -> PushMessage:
        max_stops = settings.MAX_NOTIFIED_STOPS if max_stops is None else max_stops
        return PushMessage(token=token, title=self.title(), body=self.body(max_stops), data=self.to_data(max_stops))


class PushSender:
    """Best-effort delivery through the push gateway; never raises."""

    def __init__(self, gateway_url: Optional[str] = None, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.gateway_url = gateway_url or settings.PUSH_GATEWAY_URL
        self.timeout = timeout or settings.PUSH_TIMEOUT_SEC
        self.transport = transport

    async def send(self, message: PushMessage) -> bool:
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                resp = await client.post(self.gateway_url, json=message.as_request(), timeout=self.timeout)
            if resp.status_code >= 400:
                logger.warning("push_rejected: trip=%s status=%s", message.data.get("tripId"), resp.status_code)
                return False
        except Exception as e:
            logger.error("push_failed: trip=%s error=%s", message.data.get("tripId"), e)
            return False
        logger.info("push_sent: trip=%s", message.data.get("tripId"))
        return True
