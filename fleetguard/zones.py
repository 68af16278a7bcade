"""
Zone cache and zone evaluator.

Zones come in four categories and two geometry kinds. Polygon membership is
NOT the same test for every category:

- high-risk polygons use true ray casting over the ring
- toll-gate, border and stop-point polygons collapse to their vertex
  centroid and are tested as a circle of the zone's radius

Existing zone data was drawn against those rules, so the strategy stays
keyed by category.
"""
import enum
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from fleetguard.exceptions import ZoneParseError
from fleetguard.geo import LatLon, centroid, distance_m, in_circle, in_polygon, parse_lat_lon, parse_polygon
from fleetguard.logging_config import get_logger

logger = get_logger("zones", "monitor.log")

DEFAULT_ZONE_RADIUS_M = 100.0


class ZoneCategory(str, enum.Enum):
    HIGH_RISK = "high_risk"
    TOLL_GATE = "toll_gate"
    BORDER = "border"
    STOP_POINT = "stop_point"

    @classmethod
    def parse(cls, value: Any) -> "ZoneCategory":
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {"highrisk": "high_risk", "tollgate": "toll_gate", "stoppoint": "stop_point",
                   "border_warning": "border", "authorized_stop": "stop_point"}
        text = aliases.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ZoneParseError(f"unknown zone category {value!r}") from None


class GeometryKind(str, enum.Enum):
    CIRCLE = "circle"
    POLYGON = "polygon"


class PolygonStrategy(str, enum.Enum):
    CENTROID_RADIUS = "centroid_radius"
    RAY_CASTING = "ray_casting"


POLYGON_STRATEGY: Dict[ZoneCategory, PolygonStrategy] = {
    ZoneCategory.HIGH_RISK: PolygonStrategy.RAY_CASTING,
    ZoneCategory.TOLL_GATE: PolygonStrategy.CENTROID_RADIUS,
    ZoneCategory.BORDER: PolygonStrategy.CENTROID_RADIUS,
    ZoneCategory.STOP_POINT: PolygonStrategy.CENTROID_RADIUS,
}


@dataclass(frozen=True)
class Zone:
    id: int
    name: str
    category: ZoneCategory
    kind: GeometryKind
    radius_m: float = DEFAULT_ZONE_RADIUS_M
    center: Optional[LatLon] = None                  # circle center, or polygon vertex centroid
    vertices: Sequence[LatLon] = field(default_factory=tuple)

    @property
    def strategy(self) -> Optional[PolygonStrategy]:
        if self.kind is GeometryKind.CIRCLE:
            return None
        return POLYGON_STRATEGY[self.category]


@dataclass(frozen=True)
class ZoneMatch:
    zone: Zone
    distance_m: Optional[float]   # None for ray-casting hits


def _get(row: Any, name: str, default=None):
    if isinstance(row, dict):
        return row.get(name, default)
    return getattr(row, name, default)


def zone_from_row(row: Any, default_radius_m: float = DEFAULT_ZONE_RADIUS_M) -> Zone:
    """
    Build a Zone from a store row (dict or ORM object).
    geometry_kind may be omitted: a "lat,lon" pair is a circle, anything with
    several whitespace separated vertices is a polygon.
    """
    coords = (_get(row, "coordinates") or "").strip()
    if not coords:
        raise ZoneParseError(f"zone {_get(row, 'id')} has no coordinates")

    kind_value = _get(row, "geometry_kind")
    if kind_value:
        try:
            kind = GeometryKind(str(kind_value).strip().lower())
        except ValueError:
            raise ZoneParseError(f"unknown geometry kind {kind_value!r}") from None
    else:
        kind = GeometryKind.POLYGON if len(coords.split()) > 1 else GeometryKind.CIRCLE

    radius = _get(row, "radius")
    radius_m = float(radius) if radius else default_radius_m

    if kind is GeometryKind.CIRCLE:
        center = parse_lat_lon(coords)
        if center is None:
            raise ZoneParseError(f"zone {_get(row, 'id')} has a bad circle center {coords!r}")
        vertices: Sequence[LatLon] = ()
    else:
        vertices = tuple(parse_polygon(coords))
        center = centroid(vertices)

    return Zone(
        id=int(_get(row, "id")),
        name=str(_get(row, "name") or f"zone-{_get(row, 'id')}"),
        category=ZoneCategory.parse(_get(row, "category")),
        kind=kind,
        radius_m=radius_m,
        center=center,
        vertices=vertices,
    )


# =====================================================================
# Membership
# =====================================================================
def zone_contains(zone: Zone, point: LatLon) -> Optional[ZoneMatch]:
    """Return a ZoneMatch when point is inside zone, else None."""
    if zone.kind is GeometryKind.POLYGON and zone.strategy is PolygonStrategy.RAY_CASTING:
        return ZoneMatch(zone, None) if in_polygon(point, zone.vertices) else None

    # circles, and polygons under the centroid-radius strategy
    dist = distance_m(point, zone.center)
    if dist <= zone.radius_m:
        return ZoneMatch(zone, dist)
    return None


def find_zone(point: LatLon, zones: Iterable[Zone]) -> Optional[ZoneMatch]:
    """First zone containing the point, in cache order."""
    for zone in zones:
        match = zone_contains(zone, point)
        if match:
            return match
    return None


# =====================================================================
# Zone cache
# =====================================================================
ZoneLoader = Callable[[], Awaitable[List[Any]]]


class ZoneCache:
    """
    Holds the current zone set, grouped by category. Swapped wholesale on
    refresh; a refresh that fails keeps whatever was loaded before.
    """

    def __init__(self, default_radius_m: float = DEFAULT_ZONE_RADIUS_M):
        self.default_radius_m = default_radius_m
        self._lock = threading.Lock()
        self._by_category: Dict[ZoneCategory, List[Zone]] = {c: [] for c in ZoneCategory}
        self._by_id: Dict[int, Zone] = {}
        self.loaded = False

    def replace(self, rows: Iterable[Any]) -> int:
        by_category: Dict[ZoneCategory, List[Zone]] = {c: [] for c in ZoneCategory}
        by_id: Dict[int, Zone] = {}
        skipped = 0
        for row in rows:
            try:
                zone = zone_from_row(row, self.default_radius_m)
            except (ZoneParseError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning(f"[zone] skipping zone id={_get(row, 'id')}: {e}")
                continue
            by_category[zone.category].append(zone)
            by_id[zone.id] = zone

        with self._lock:
            self._by_category = by_category
            self._by_id = by_id
            self.loaded = True

        counts = ", ".join(f"{c.value}={len(z)}" for c, z in by_category.items())
        logger.info(f"[zone] Loaded {len(by_id)} zones ({counts}), skipped {skipped}")
        return len(by_id)

    async def refresh(self, loader: ZoneLoader) -> bool:
        try:
            rows = await loader()
        except Exception as e:
            logger.exception(f"[zone] refresh failed, keeping {len(self)} cached zones: {e}")
            return False
        self.replace(rows)
        return True

    def zones(self, category: ZoneCategory) -> List[Zone]:
        with self._lock:
            return list(self._by_category[category])

    def get(self, zone_id: Any) -> Optional[Zone]:
        try:
            key = int(zone_id)
        except (TypeError, ValueError):
            return None
        with self._lock:
            return self._by_id.get(key)

    def resolve(self, zone_ids: Iterable[Any]) -> List[Zone]:
        found = []
        for zone_id in zone_ids:
            zone = self.get(zone_id)
            if zone is not None:
                found.append(zone)
        return found

    def __len__(self):
        with self._lock:
            return len(self._by_id)


# =====================================================================
# Authorized-stop check
# =====================================================================
NO_STOP_POINTS = "No authorized stop points defined"
STOP_POINTS_NOT_FOUND = "Stop points not found"
OUTSIDE_ALL_ZONES = "Outside all authorized zones"


@dataclass(frozen=True)
class AuthorizationResult:
    authorized: bool
    reason: Optional[str] = None
    stop_name: Optional[str] = None


async def check_authorized_stop(trip, point: LatLon, zone_cache: ZoneCache, geocoder,
                                proximity_radius_m: float = 700.0) -> AuthorizationResult:
    """
    A stop is authorized when the vehicle sits in any of:
    - a geocoded pickup location (within proximity_radius_m)
    - the trip destination coordinate (within proximity_radius_m)
    - one of the trip's authorized stop-point zones
    """
    for address in trip.pickup_addresses():
        coords = await geocoder(address)
        if coords and in_circle(point, coords, proximity_radius_m):
            return AuthorizationResult(True, stop_name="At loading location")

    if trip.destination and in_circle(point, trip.destination, proximity_radius_m):
        return AuthorizationResult(True, stop_name="At destination")

    if not trip.authorized_stop_zone_ids:
        return AuthorizationResult(False, reason=NO_STOP_POINTS)

    stop_points = zone_cache.resolve(trip.authorized_stop_zone_ids)
    if not stop_points:
        return AuthorizationResult(False, reason=STOP_POINTS_NOT_FOUND)

    match = find_zone(point, stop_points)
    if match:
        return AuthorizationResult(True, stop_name=match.zone.name)

    return AuthorizationResult(False, reason=OUTSIDE_ALL_ZONES)
