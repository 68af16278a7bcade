import pytest

from fleetguard.exceptions import ZoneParseError
from fleetguard.geo import centroid, distance_m
from fleetguard.trips import Trip, TripStatus
from fleetguard.zones import (NO_STOP_POINTS, OUTSIDE_ALL_ZONES, STOP_POINTS_NOT_FOUND, GeometryKind,
                              PolygonStrategy, ZoneCache, ZoneCategory, check_authorized_stop, find_zone,
                              zone_contains, zone_from_row)

from conftest import BASE, FakeGeocoder, circle_row, offset, polygon_row


def _square(center, half_m):
    return [
        offset(center, north_m=-half_m, east_m=-half_m),
        offset(center, north_m=-half_m, east_m=half_m),
        offset(center, north_m=half_m, east_m=half_m),
        offset(center, north_m=half_m, east_m=-half_m),
    ]


def test_zone_from_circle_row_uses_default_radius():
    zone = zone_from_row(circle_row(1, "Depot", "stop_point", BASE))
    assert zone.kind is GeometryKind.CIRCLE
    assert zone.center == BASE
    assert zone.radius_m == 100.0
    assert zone.strategy is None


def test_zone_kind_is_inferred_from_coordinates():
    row = polygon_row(2, "Gate", "Toll Gate", _square(BASE, 50))
    del row["geometry_kind"]
    zone = zone_from_row(row)
    assert zone.kind is GeometryKind.POLYGON
    assert zone.category is ZoneCategory.TOLL_GATE
    assert zone.strategy is PolygonStrategy.CENTROID_RADIUS
    assert len(zone.vertices) == 4


def test_polygon_strategy_by_category():
    risky = zone_from_row(polygon_row(3, "Hotspot", "high_risk", _square(BASE, 50)))
    border = zone_from_row(polygon_row(4, "Beitbridge", "border", _square(BASE, 50)))
    assert risky.strategy is PolygonStrategy.RAY_CASTING
    assert border.strategy is PolygonStrategy.CENTROID_RADIUS


def test_unknown_category_is_rejected():
    with pytest.raises(ZoneParseError):
        zone_from_row(circle_row(5, "Mystery", "volcano", BASE))


def test_toll_gate_boundary_counts_as_at_zone():
    vertices = _square(BASE, 400)
    gate_centroid = centroid(vertices)
    point = offset(gate_centroid, north_m=150)
    radius = distance_m(point, gate_centroid)
    gate = zone_from_row(polygon_row(6, "Gate", "toll_gate", vertices, radius=radius))

    match = zone_contains(gate, point)
    assert match is not None
    assert match.distance_m == pytest.approx(radius)
    assert zone_contains(gate, offset(gate_centroid, north_m=151)) is None


def test_high_risk_polygon_uses_the_ring_not_the_radius():
    zone = zone_from_row(polygon_row(7, "Hotspot", "high_risk", _square(BASE, 1000), radius=100))

    near_corner = offset(BASE, north_m=900, east_m=900)
    just_outside = offset(BASE, north_m=1010)
    assert zone_contains(zone, near_corner) is not None
    assert zone_contains(zone, just_outside) is None


def test_find_zone_returns_first_match():
    zones = [
        zone_from_row(circle_row(1, "Gate A", "toll_gate", BASE, radius=500)),
        zone_from_row(circle_row(2, "Gate B", "toll_gate", BASE, radius=500)),
    ]
    assert find_zone(BASE, zones).zone.name == "Gate A"
    assert find_zone(offset(BASE, north_m=5000), zones) is None


def test_cache_skips_bad_rows():
    cache = ZoneCache()
    loaded = cache.replace([
        circle_row(1, "Depot", "stop_point", BASE),
        {"id": 2, "name": "Broken", "category": "border", "coordinates": ""},
        {"id": 3, "name": "Odd", "category": "border", "geometry_kind": "polygon", "coordinates": "x,y z"},
    ])
    assert loaded == 1
    assert len(cache.zones(ZoneCategory.STOP_POINT)) == 1
    assert cache.get("1").name == "Depot"
    assert cache.get("nope") is None


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_zones():
    cache = ZoneCache()
    cache.replace([circle_row(1, "Depot", "stop_point", BASE)])

    async def broken_loader():
        raise ConnectionError("db down")

    assert await cache.refresh(broken_loader) is False
    assert len(cache) == 1


# =====================================================================
# Authorized-stop check
# =====================================================================
def _trip(**kwargs):
    return Trip(id=7, status=TripStatus.IN_PROGRESS, plate="ABC123", **kwargs)


@pytest.mark.asyncio
async def test_no_stop_points_defined():
    result = await check_authorized_stop(_trip(), BASE, ZoneCache(), FakeGeocoder())
    assert result.authorized is False
    assert result.reason == NO_STOP_POINTS


@pytest.mark.asyncio
async def test_stop_points_not_in_cache():
    result = await check_authorized_stop(_trip(authorized_stop_zone_ids=frozenset({99})), BASE,
                                         ZoneCache(), FakeGeocoder())
    assert result.reason == STOP_POINTS_NOT_FOUND


@pytest.mark.asyncio
async def test_inside_and_outside_stop_points():
    cache = ZoneCache()
    cache.replace([circle_row(1, "Truck Stop", "stop_point", BASE, radius=200)])
    trip = _trip(authorized_stop_zone_ids=frozenset({1}))

    inside = await check_authorized_stop(trip, offset(BASE, east_m=150), cache, FakeGeocoder())
    outside = await check_authorized_stop(trip, offset(BASE, east_m=250), cache, FakeGeocoder())

    assert inside.authorized and inside.stop_name == "Truck Stop"
    assert not outside.authorized and outside.reason == OUTSIDE_ALL_ZONES


@pytest.mark.asyncio
async def test_pickup_location_authorizes_without_stop_points():
    geocoder = FakeGeocoder({"Depot Rd 1": BASE})
    trip = _trip(pickup_locations=("Depot Rd 1",))

    result = await check_authorized_stop(trip, offset(BASE, north_m=650), ZoneCache(), geocoder)
    assert result.authorized
    assert result.stop_name == "At loading location"

    far = await check_authorized_stop(trip, offset(BASE, north_m=750), ZoneCache(), geocoder)
    assert far.reason == NO_STOP_POINTS


@pytest.mark.asyncio
async def test_destination_coordinate_authorizes():
    trip = _trip(destination=BASE)
    result = await check_authorized_stop(trip, offset(BASE, east_m=300), ZoneCache(), FakeGeocoder())
    assert result.authorized
    assert result.stop_name == "At destination"
