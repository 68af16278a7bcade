"""
Geo helpers shared by every monitor.

All coordinates are (lat, lon) tuples in decimal degrees; distances are
meters. Nothing in here keeps state.
"""
import math
from typing import List, Optional, Sequence, Tuple

from fleetguard.exceptions import ZoneParseError

LatLon = Tuple[float, float]

EARTH_RADIUS_M = 6_371_008.8
EDGE_TOLERANCE = 1e-12


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_m(a: LatLon, b: LatLon) -> float:
    return haversine_m(a[0], a[1], b[0], b[1])


def in_circle(point: LatLon, center: LatLon, radius_m: float) -> bool:
    # boundary counts as inside
    return distance_m(point, center) <= radius_m


def centroid(vertices: Sequence[LatLon]) -> LatLon:
    """Arithmetic mean of the vertices (not the area centroid)."""
    if not vertices:
        raise ValueError("centroid of an empty polygon")
    lat = sum(v[0] for v in vertices) / len(vertices)
    lon = sum(v[1] for v in vertices) / len(vertices)
    return (lat, lon)


def _on_segment(lat: float, lon: float, a: LatLon, b: LatLon) -> bool:
    (ay, ax), (by, bx) = a, b
    cross = (bx - ax) * (lat - ay) - (by - ay) * (lon - ax)
    if abs(cross) > EDGE_TOLERANCE:
        return False
    return (min(ax, bx) - EDGE_TOLERANCE <= lon <= max(ax, bx) + EDGE_TOLERANCE
            and min(ay, by) - EDGE_TOLERANCE <= lat <= max(ay, by) + EDGE_TOLERANCE)


def in_polygon(point: LatLon, vertices: Sequence[LatLon]) -> bool:
    """
    Ray-casting point-in-polygon over the ring (lon as x, lat as y).
    - a point lying on an edge or vertex is inside
    - rings with fewer than 3 vertices contain nothing
    - a closing vertex equal to the first one is allowed
    """
    n = len(vertices)
    if n < 3:
        return False

    lat, lon = point
    inside = False
    j = n - 1
    for i in range(n):
        yi, xi = vertices[i]
        yj, xj = vertices[j]

        if _on_segment(lat, lon, vertices[j], vertices[i]):
            return True

        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i

    return inside


# =====================================================================
# Coordinate string parsing
# =====================================================================
def parse_lat_lon(value: Optional[str]) -> Optional[LatLon]:
    """Parse a "lat,lon" pair. Returns None when blank or unparseable."""
    if not value:
        return None
    parts = [p.strip() for p in str(value).split(",")]
    if len(parts) < 2:
        return None
    try:
        lat, lon = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if math.isnan(lat) or math.isnan(lon):
        return None
    return (lat, lon)


def parse_polygon(value: Optional[str]) -> List[LatLon]:
    """
    Parse whitespace separated "lon,lat[,elevation]" triples into (lat, lon)
    vertices. Raises ZoneParseError if any triple is malformed.
    """
    if not value or not value.strip():
        raise ZoneParseError("empty polygon coordinates")

    vertices: List[LatLon] = []
    for chunk in value.split():
        parts = chunk.split(",")
        if len(parts) < 2:
            raise ZoneParseError(f"bad vertex {chunk!r}")
        try:
            lon, lat = float(parts[0]), float(parts[1])
        except ValueError as e:
            raise ZoneParseError(f"bad vertex {chunk!r}: {e}") from e
        if math.isnan(lat) or math.isnan(lon):
            raise ZoneParseError(f"bad vertex {chunk!r}")
        vertices.append((lat, lon))
    return vertices
