"""
Active-trip cache and the telemetry -> trip matcher.

Telemetry only tells us a plate and a driver name, both typed by humans
somewhere upstream. Matching order, first hit wins:

1. cached plate -> trip
2. cached driver name -> trip
3. scan: plate equality (case-insensitive), then cache it
4. scan: driver name via the configured strategy, then cache it

The driver scan defaults to bidirectional substring containment. That admits
false positives for short or ambiguous names ("Li" matches "Oliver"); the
"exact" strategy trades those for misses on inconsistent spellings.
"""
import enum
import json
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from fleetguard.geo import LatLon, parse_lat_lon
from fleetguard.logging_config import get_logger

logger = get_logger("trips", "monitor.log")

# distinct unmatched (driver, plate) pairs remembered for log suppression
NO_MATCH_LOG_LIMIT = 1000


class TripStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    AT_BORDER = "at-border"
    ALERT = "alert"
    AT_DESTINATION = "at-destination"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "TripStatus":
        text = re.sub(r"[\s_]+", "-", str(value or "").strip().lower())
        aliases = {"inprogress": "in-progress", "atborder": "at-border", "atdestination": "at-destination"}
        text = aliases.get(text, text)
        try:
            return cls(text)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (TripStatus.COMPLETED, TripStatus.DELIVERED)


# =====================================================================
# Assignment payload helpers
# =====================================================================
def _assignments(payload: Any) -> List[dict]:
    if not payload:
        return []
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            logger.warning(f"[trip] unparseable vehicle assignments: {e}")
            return []
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return []
    return [a for a in payload if isinstance(a, dict)]


def _clean_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    name = re.sub(r"^null\s+", "", value.strip(), flags=re.IGNORECASE)
    name = " ".join(name.split())
    if not name or name.lower() == "null":
        return None
    return name


def extract_plate(payload: Any) -> Optional[str]:
    for assignment in _assignments(payload):
        vehicle = assignment.get("vehicle")
        if isinstance(vehicle, dict):
            plate = vehicle.get("plate") or vehicle.get("name")
            if isinstance(plate, str) and plate.strip():
                return plate.strip()
    return None


def extract_driver_name(payload: Any) -> Optional[str]:
    for assignment in _assignments(payload):
        drivers = assignment.get("drivers")
        if not drivers:
            continue
        if not isinstance(drivers, list):
            drivers = [drivers]
        for driver in drivers:
            if not isinstance(driver, dict):
                continue
            for key in ("surname", "name", "first_name"):
                name = _clean_name(driver.get(key))
                if name:
                    return name
    return None


def _location_addresses(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return (value.strip(),) if value.strip() else ()
    if isinstance(value, dict):
        value = [value]
    addresses = []
    for entry in value if isinstance(value, list) else []:
        if isinstance(entry, str):
            address = entry
        elif isinstance(entry, dict):
            address = entry.get("location") or entry.get("address")
        else:
            address = None
        if isinstance(address, str) and address.strip():
            addresses.append(address.strip())
    return tuple(addresses)


def _zone_ids(value: Any) -> FrozenSet[int]:
    if not value:
        return frozenset()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            value = value.split(",")
    if not isinstance(value, (list, tuple, set)):
        value = [value]
    ids = set()
    for item in value:
        try:
            ids.add(int(item))
        except (TypeError, ValueError):
            continue
    return frozenset(ids)


# =====================================================================
# Trip
# =====================================================================
@dataclass(frozen=True)
class Trip:
    id: int
    status: TripStatus
    driver_name: Optional[str] = None
    plate: Optional[str] = None
    authorized_stop_zone_ids: FrozenSet[int] = frozenset()
    pickup_locations: Tuple[str, ...] = ()
    dropoff_locations: Tuple[str, ...] = ()
    destination: Optional[LatLon] = None
    assignments_key: str = field(default="", compare=False, repr=False)

    def pickup_addresses(self) -> Tuple[str, ...]:
        return self.pickup_locations

    def dropoff_addresses(self) -> Tuple[str, ...]:
        return self.dropoff_locations


def _get(row: Any, name: str, default=None):
    if isinstance(row, dict):
        return row.get(name, default)
    return getattr(row, name, default)


def trip_from_row(row: Any) -> Trip:
    assignments = _get(row, "vehicle_assignments")
    if assignments is None:
        assignments = _get(row, "vehicleassignments")
    return Trip(
        id=int(_get(row, "id")),
        status=TripStatus.parse(_get(row, "status")),
        driver_name=extract_driver_name(assignments),
        plate=extract_plate(assignments),
        authorized_stop_zone_ids=_zone_ids(_get(row, "authorized_stop_zone_ids")),
        pickup_locations=_location_addresses(_get(row, "pickup_locations")),
        dropoff_locations=_location_addresses(_get(row, "dropoff_locations")),
        destination=parse_lat_lon(_get(row, "destination_coordinates")),
        assignments_key=json.dumps(assignments, sort_keys=True, default=str),
    )


# =====================================================================
# Driver-name matching strategies
# =====================================================================
def substring_match(telemetry_name: str, trip_name: str) -> bool:
    a, b = telemetry_name.lower(), trip_name.lower()
    return a in b or b in a


def exact_match(telemetry_name: str, trip_name: str) -> bool:
    return " ".join(telemetry_name.lower().split()) == " ".join(trip_name.lower().split())


NAME_MATCHERS: Dict[str, Callable[[str, str], bool]] = {
    "substring": substring_match,
    "exact": exact_match,
}


# =====================================================================
# Trip cache
# =====================================================================
TripLoader = Callable[[], Awaitable[List[Any]]]


class TripCache:
    def __init__(self, driver_match_strategy: str = "substring", no_match_log_limit: int = NO_MATCH_LOG_LIMIT):
        if driver_match_strategy not in NAME_MATCHERS:
            raise ValueError(f"unknown driver match strategy {driver_match_strategy!r}")
        self.driver_match_strategy = driver_match_strategy
        self._names_match = NAME_MATCHERS[driver_match_strategy]

        self._lock = threading.Lock()
        self._trips: Dict[int, Trip] = {}
        self._by_plate: Dict[str, int] = {}
        self._by_driver: Dict[str, int] = {}
        self._no_match_logged: Set[str] = set()
        self.no_match_log_limit = no_match_log_limit

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def replace(self, trips: Iterable[Trip]) -> List[int]:
        """
        Swap in the active trip set. Terminal trips are dropped. Returns the ids
        that were evicted so callers can clean their per-trip state.
        Match indices are cleared when a trip is new or its assignment changed.
        """
        incoming: Dict[int, Trip] = {}
        for trip in trips:
            if trip.status.is_terminal:
                continue
            incoming[trip.id] = trip

        with self._lock:
            evicted = [trip_id for trip_id in self._trips if trip_id not in incoming]
            changed = any(
                trip_id not in self._trips or self._trips[trip_id].assignments_key != trip.assignments_key
                for trip_id, trip in incoming.items()
            )
            if changed or evicted:
                self._by_plate.clear()
                self._by_driver.clear()
            # every refresh gives unmatched vehicles one fresh log line
            self._no_match_logged.clear()
            self._trips = incoming

        if changed:
            logger.info("[trip] Trip changes detected - cleared match cache")
        logger.info(f"[trip] Loaded {len(incoming)} active trips, evicted {len(evicted)}")
        return evicted

    async def refresh(self, loader: TripLoader) -> Optional[List[int]]:
        try:
            rows = await loader()
        except Exception as e:
            logger.exception(f"[trip] refresh failed, keeping {len(self)} cached trips: {e}")
            return None

        trips = []
        for row in rows:
            try:
                trips.append(trip_from_row(row))
            except (TypeError, ValueError) as e:
                logger.warning(f"[trip] skipping trip row {_get(row, 'id')}: {e}")
        return self.replace(trips)

    def evict(self, trip_id: int) -> bool:
        with self._lock:
            if self._trips.pop(trip_id, None) is None:
                return False
            self._by_plate = {k: v for k, v in self._by_plate.items() if v != trip_id}
            self._by_driver = {k: v for k, v in self._by_driver.items() if v != trip_id}
        logger.info(f"[trip] Evicted trip {trip_id}")
        return True

    def get(self, trip_id: int) -> Optional[Trip]:
        with self._lock:
            return self._trips.get(trip_id)

    def trips(self) -> List[Trip]:
        with self._lock:
            return list(self._trips.values())

    def __len__(self):
        with self._lock:
            return len(self._trips)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    def match(self, driver_name: Optional[str], plate: Optional[str]) -> Optional[Trip]:
        """Active trip for this telemetry identity, or None."""
        norm_driver = driver_name.strip().lower() if driver_name and driver_name.strip() else None
        norm_plate = plate.strip().lower() if plate and plate.strip() else None
        if norm_driver is None and norm_plate is None:
            return None

        with self._lock:
            if norm_plate:
                trip_id = self._by_plate.get(norm_plate)
                if trip_id in self._trips:
                    return self._trips[trip_id]

            if norm_driver:
                trip_id = self._by_driver.get(norm_driver)
                if trip_id in self._trips:
                    return self._trips[trip_id]

            if norm_plate:
                for trip_id, trip in self._trips.items():
                    if trip.plate and trip.plate.lower() == norm_plate:
                        self._by_plate[norm_plate] = trip_id
                        logger.info(f"[trip] VEHICLE MATCH: trip {trip_id} - {plate} <-> {trip.plate}")
                        return trip

            if norm_driver:
                for trip_id, trip in self._trips.items():
                    if trip.driver_name and self._names_match(norm_driver, trip.driver_name):
                        self._by_driver[norm_driver] = trip_id
                        logger.info(f"[trip] DRIVER MATCH: trip {trip_id} - {driver_name} <-> {trip.driver_name}")
                        return trip

            no_match_key = f"{norm_driver or 'none'}:{norm_plate or 'none'}"
            first_miss = bool(self._trips) and no_match_key not in self._no_match_logged
            if first_miss:
                if len(self._no_match_logged) >= self.no_match_log_limit:
                    self._no_match_logged.clear()
                self._no_match_logged.add(no_match_key)

        if first_miss:
            logger.info(f"[trip] NO MATCH: driver={driver_name!r} plate={plate!r}")
        return None
