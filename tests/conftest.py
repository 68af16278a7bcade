import datetime as dt
import math
import os
import tempfile

os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "fleetguard-test-logs"))

import pytest  # noqa: E402

from fleetguard.config import MonitorSettings  # noqa: E402
from fleetguard.exceptions import PersistenceError  # noqa: E402
from fleetguard.geo import EARTH_RADIUS_M  # noqa: E402
from fleetguard.monitor import TripMonitor  # noqa: E402

UTC = dt.timezone.utc

# Johannesburg, roughly; 0.001 deg of latitude is ~111 m
BASE = (-26.2041, 28.0473)
M_PER_DEG = math.radians(1) * EARTH_RADIUS_M


class FakeClock:
    def __init__(self, start: dt.datetime = None):
        self.now = start or dt.datetime(2025, 11, 29, 10, 0, tzinfo=UTC)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now += dt.timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory stand-in for SqlGateway that records every write."""

    def __init__(self):
        self.zones = []
        self.trips = []
        self.driver_scores = []
        self.fail_writes = False

        self.alerts = []
        self.unauthorized_stops = []
        self.unauthorized_flags = []
        self.trip_alerts = []
        self.score_upserts = []
        self.snapshots = []
        self.route_points = []
        self.trip_progress = []

    def _check(self):
        if self.fail_writes:
            raise PersistenceError("database unavailable")

    async def load_zones(self):
        return list(self.zones)

    async def load_active_trips(self):
        return list(self.trips)

    async def load_driver_scores(self):
        return list(self.driver_scores)

    async def write_alert(self, alert):
        self._check()
        self.alerts.append(alert)

    async def record_unauthorized_stop(self, trip_id, position, reason, detected_at):
        self._check()
        self.unauthorized_stops.append(
            {"trip_id": trip_id, "position": position, "reason": reason, "detected_at": detected_at, "synced": False}
        )
        return len(self.unauthorized_stops)

    async def flag_unauthorized_stop(self, trip_id, message, timestamp):
        self._check()
        self.unauthorized_flags.append({"trip_id": trip_id, "message": message, "timestamp": timestamp})
        for row in self.unauthorized_stops:
            if row["trip_id"] == trip_id:
                row["synced"] = True

    async def flag_trip_alert(self, trip_id, alert_type, message, timestamp, status=None, append=False):
        self._check()
        self.trip_alerts.append(
            {"trip_id": trip_id, "alert_type": alert_type, "message": message, "status": status}
        )

    async def flag_trip_at_border(self, trip_id, message, timestamp):
        await self.flag_trip_alert(trip_id, "border", message, timestamp, status="at-border", append=True)

    async def upsert_driver_scores(self, records):
        self._check()
        self.score_upserts.extend(records)

    async def write_score_snapshots(self, records):
        self._check()
        self.snapshots.extend(records)

    async def write_trip_routes(self, points, progress):
        self._check()
        self.route_points.extend(points)
        self.trip_progress.extend(progress)


class FakeGeocoder:
    def __init__(self, known=None):
        self.known = dict(known or {})
        self.calls = []

    async def __call__(self, address):
        self.calls.append(address)
        return self.known.get(address)


def offset(point, north_m=0.0, east_m=0.0):
    """Shift a (lat, lon) point by a few meters; fine for tests near BASE."""
    lat = point[0] + north_m / M_PER_DEG
    lon = point[1] + east_m / (M_PER_DEG * math.cos(math.radians(point[0])))
    return (lat, lon)


def trip_row(trip_id, plate=None, driver=None, status="In Progress", stop_ids=None,
             pickups=None, dropoffs=None, destination=None):
    assignment = {}
    if plate:
        assignment["vehicle"] = {"plate": plate}
    if driver:
        assignment["drivers"] = [{"name": driver}]
    return {
        "id": trip_id,
        "status": status,
        "vehicle_assignments": [assignment],
        "authorized_stop_zone_ids": stop_ids or [],
        "pickup_locations": pickups or [],
        "dropoff_locations": dropoffs or [],
        "destination_coordinates": destination,
    }


def circle_row(zone_id, name, category, center, radius=None):
    return {
        "id": zone_id,
        "name": name,
        "category": category,
        "geometry_kind": "circle",
        "coordinates": f"{center[0]},{center[1]}",
        "radius": radius,
    }


def polygon_row(zone_id, name, category, vertices, radius=None):
    coords = " ".join(f"{lon},{lat},0" for lat, lon in vertices)
    return {
        "id": zone_id,
        "name": name,
        "category": category,
        "geometry_kind": "polygon",
        "coordinates": coords,
        "radius": radius,
    }


def payload(plate="ABC123", driver="John Smith", point=BASE, speed=60, loc_time="2025-11-29T10:00:00", **extra):
    data = {
        "Plate": plate,
        "DriverName": driver,
        "Latitude": point[0],
        "Longitude": point[1],
        "Speed": speed,
        "LocTime": loc_time,
    }
    data.update(extra)
    return data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def settings():
    return MonitorSettings(snapshot_export_dir=None, driver_match_strategy="substring")


@pytest.fixture
def monitor(gateway, settings, clock, geocoder):
    return TripMonitor(gateway, settings=settings, clock=clock, geocoder=geocoder)
