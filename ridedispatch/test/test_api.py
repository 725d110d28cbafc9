import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import ridedispatch.cache as cache
import ridedispatch.routes as routes
import ridedispatch.services as services
from ridedispatch.main import app

from support import KM_LAT, PICKUP, FakeRedis, RecordingPush

LAT, LON = PICKUP


@pytest.fixture
def api(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(services, "redis_client", fake)
    monkeypatch.setattr(cache, "redis_client", fake)
    push = RecordingPush()
    app.dependency_overrides[routes.get_push_sender] = lambda: push
    try:
        with TestClient(app) as client:
            yield client, push
    finally:
        app.dependency_overrides.clear()


def _driver(client, lat=LAT + KM_LAT, lon=LON, rating=4.9):
    driver_id = f"drv-{uuid.uuid4().hex[:8]}"
    r = client.put(f"/v1/drivers/{driver_id}", json={
        "display_name": "Asha",
        "is_online": True,
        "is_available": True,
        "rating": rating,
        "push_token": f"tok-{driver_id}",
    })
    assert r.status_code == 200
    r = client.post(f"/v1/drivers/{driver_id}/location", json={"lat": lat, "lon": lon})
    assert r.status_code == 200
    return driver_id


def _ride(client, lat=LAT, lon=LON, stops=()):
    r = client.post("/v1/rides", json={
        "rider_id": 3,
        "pickup": {"lat": lat, "lon": lon, "address": "Brigade Road"},
        "dropoff": {"lat": lat + 0.05, "lon": lon, "address": "Airport"},
        "stops": list(stops),
        "fare": 350,
        "distance_km": 32.5,
        "duration_min": 55,
    })
    assert r.status_code == 200
    return r.json()


def test_health(api):
    client, _ = api
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "redis": True}


def test_ride_lifecycle(api):
    client, push = api
    driver_id = _driver(client)

    ride = _ride(client, stops=[{"lat": LAT + 0.01, "lon": LON, "waiting_time": 5}])
    assert ride["status"] == "driver_notified"
    assert ride["notified_driver_id"] == driver_id
    assert len(push.sent) == 1
    assert push.sent[0].token == f"tok-{driver_id}"
    assert push.sent[0].data["stop1WaitingTime"] == "5"

    detail = client.get(f"/v1/rides/{ride['id']}").json()
    assert detail["nearby_drivers"][0]["driver_id"] == driver_id
    assert detail["notified_driver_priority"] > 0

    # nothing to refresh while a driver is deciding
    r = client.post(f"/v1/rides/{ride['id']}/refresh")
    assert r.json()["status"] == "driver_notified"
    assert len(push.sent) == 1

    r = client.post(f"/v1/rides/{ride['id']}/no-response", json={"driver_id": driver_id})
    assert r.json()["status"] == "searching"

    stamp = {"search_refreshed_at": "2030-01-01T00:00:00Z"}
    r = client.post(f"/v1/rides/{ride['id']}/refresh", json=stamp)
    assert r.json()["status"] == "driver_notified"
    assert r.json()["search_attempts"] == 1
    assert len(push.sent) == 2

    client.post(f"/v1/rides/{ride['id']}/no-response", json={"driver_id": driver_id})
    r = client.post(f"/v1/rides/{ride['id']}/refresh", json=stamp)
    assert r.json()["status"] == "searching"
    assert r.json()["search_attempts"] == 1
    assert len(push.sent) == 2

    r = client.post(f"/v1/rides/{ride['id']}/refresh", json={"search_refreshed_at": "2030-01-01T00:01:00Z"})
    assert r.json()["status"] == "driver_notified"
    r = client.post(f"/v1/rides/{ride['id']}/accept", json={"driver_id": "someone-else"})
    assert r.status_code == 409
    r = client.post(f"/v1/rides/{ride['id']}/accept", json={"driver_id": driver_id})
    assert r.status_code == 200
    assert r.json()["status"] == "accepted"


def test_ride_without_drivers_nearby(api):
    client, push = api
    _driver(client)
    ride = _ride(client, lat=-40.0, lon=-120.0)
    assert ride["status"] == "searching"
    assert ride["no_drivers_available"] is True
    assert ride["notified_driver_id"] is None
    assert push.sent == []


def test_outcomes_update_metrics(api):
    client, _ = api
    driver_id = _driver(client)

    r = client.post(f"/v1/drivers/{driver_id}/outcomes", json={"event": "requested"})
    assert r.json()["trips_requested"] == 1
    r = client.post(f"/v1/drivers/{driver_id}/outcomes", json={"event": "accepted"})
    assert r.status_code == 200
    assert r.json()["last_30d"]["total"] == 1
    assert r.json()["acceptance_rate"] == 100.0

    r = client.post(f"/v1/drivers/{driver_id}/outcomes", json={"event": "cancelled", "reason": "emergency"})
    assert r.json()["last_30d"]["total"] == 1

    metrics = client.get(f"/v1/drivers/{driver_id}/metrics").json()
    assert metrics["last_24h"]["accepted"] == 1
    assert metrics["tier"] == "silver"
    assert metrics["is_in_grace_period"] is True
    assert metrics["outlook"] == {"at_risk": False, "next_tier": "gold", "acceptance_gap": 0.0, "rating_gap": 0.0}


def test_older_refresh_stamp_leaves_ride_unchanged(api):
    client, _ = api
    ride = _ride(client, lat=-41.0, lon=-121.0)
    assert ride["status"] == "searching"

    r = client.post(f"/v1/rides/{ride['id']}/refresh", json={"search_refreshed_at": "2030-01-01T00:10:00Z"})
    assert r.json()["search_attempts"] == 1
    r = client.post(f"/v1/rides/{ride['id']}/refresh", json={"search_refreshed_at": "2030-01-01T00:05:00Z"})
    assert r.status_code == 200
    assert r.json()["search_attempts"] == 1

    detail = client.get(f"/v1/rides/{ride['id']}").json()
    stored = datetime.fromisoformat(detail["search_refreshed_at"].replace("Z", "+00:00"))
    assert stored == datetime(2030, 1, 1, 0, 10, tzinfo=timezone.utc)


def test_unknown_resources(api):
    client, _ = api
    assert client.get("/v1/rides/987654").status_code == 404
    assert client.post("/v1/rides/987654/refresh").status_code == 404
    assert client.post("/v1/drivers/nobody/location", json={"lat": 1, "lon": 2}).status_code == 404
    assert client.post("/v1/drivers/nobody/outcomes", json={"event": "accepted"}).status_code == 404
    assert client.get("/v1/drivers/nobody/metrics").status_code == 404


def test_invalid_payloads(api):
    client, _ = api
    assert client.post("/v1/rides", json={"pickup": {"lat": 1}}).status_code == 422
    assert client.post("/v1/drivers/x/outcomes", json={"event": "teleported"}).status_code == 422
