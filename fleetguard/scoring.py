"""
Driver safety score: a 100-point budget with free passes.

Every driver starts at 100 points. Each violation category has a threshold
of free passes; once a category's count goes past it, every further
violation in that category costs one point and the category is flagged as
exceeded for good. The level is derived from the points every time:

    Gold 80-100 | Silver 60-79 | Bronze 40-59 | Critical 0-39

State lives in memory. It is seeded once from the store at startup and
written back in batches (flush) plus an end-of-day snapshot.
"""
import datetime as dt
import enum
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from fleetguard.logging_config import get_logger
from fleetguard.telemetry import VehicleFix

logger = get_logger("scoring", "scoring.log")


class ViolationCategory(str, enum.Enum):
    SPEED = "SPEED"
    HARSH_BRAKING = "HARSH_BRAKING"
    NIGHT_DRIVING = "NIGHT_DRIVING"
    ROUTE = "ROUTE"
    OTHER = "OTHER"


# durable column names, kept compatible with the existing driver_scores table
COUNT_FIELDS = {
    ViolationCategory.SPEED: "speed_violations_count",
    ViolationCategory.HARSH_BRAKING: "harsh_braking_count",
    ViolationCategory.NIGHT_DRIVING: "night_driving_count",
    ViolationCategory.ROUTE: "route_violations_count",
    ViolationCategory.OTHER: "other_violations_count",
}
THRESHOLD_FIELDS = {
    ViolationCategory.SPEED: "speed_threshold_exceeded",
    ViolationCategory.HARSH_BRAKING: "braking_threshold_exceeded",
    ViolationCategory.NIGHT_DRIVING: "night_threshold_exceeded",
    ViolationCategory.ROUTE: "route_threshold_exceeded",
    ViolationCategory.OTHER: "other_threshold_exceeded",
}

STATIONARY_EVENT_KEYWORDS = ("IGNITION OFF", "ENGINE OFF", "STATIONARY", "PARKED", "IDLE", "STOPPED")
STATIONARY_STATUS_KEYWORDS = ("ENGINE OFF", "STATIONARY", "PARKED", "IDLE", "STOPPED", "OFF")
DRIVING_EVENT_KEYWORDS = ("IGNITION ON", "VEHICLE IN MOTION", "ENGINE ON", "DRIVING", "MOVING")
DRIVING_STATUS_KEYWORDS = ("VEHICLE IN MOTION", "ENGINE ON", "DRIVING", "MOVING", "IN MOTION", "RUNNING")
HARSH_BRAKING_MARKER = "HARSH BRAKING"

UNSCORED_DRIVERS = {"", "UNKNOWN", "NULL"}


def calculate_level(points: int) -> str:
    if points >= 80:
        return "Gold"
    if points >= 60:
        return "Silver"
    if points >= 40:
        return "Bronze"
    return "Critical"


def is_driving(fix: VehicleFix, driving_speed_kmh: float = 5.0) -> bool:
    """
    Stationary keywords win over everything else; otherwise a driving
    keyword or speed above driving_speed_kmh means driving.
    """
    event = fix.event_text.upper()
    status = fix.status_text.upper()

    if any(k in event for k in STATIONARY_EVENT_KEYWORDS):
        return False
    if any(k in status for k in STATIONARY_STATUS_KEYWORDS):
        return False

    if any(k in event for k in DRIVING_EVENT_KEYWORDS):
        return True
    if any(k in status for k in DRIVING_STATUS_KEYWORDS):
        return True
    return fix.speed_kmh > driving_speed_kmh


def local_hour(timestamp: dt.datetime, offset_hours: float) -> int:
    return (timestamp + dt.timedelta(hours=offset_hours)).hour


def is_night(hour: int) -> bool:
    return hour >= 22 or hour <= 5


@dataclass
class DriverScoreState:
    driver_name: str
    starting_points: int = 100
    current_points: int = 100
    counts: Dict[ViolationCategory, int] = field(default_factory=lambda: {c: 0 for c in ViolationCategory})
    threshold_exceeded: Dict[ViolationCategory, bool] = field(
        default_factory=lambda: {c: False for c in ViolationCategory})
    last_updated: Optional[dt.datetime] = None

    @property
    def level(self) -> str:
        return calculate_level(self.current_points)

    @property
    def points_deducted(self) -> int:
        return self.starting_points - self.current_points

    @property
    def total_violations(self) -> int:
        return sum(self.counts.values())

    def as_record(self) -> Dict[str, Any]:
        record = {
            "driver_name": self.driver_name,
            "current_points": self.current_points,
            "points_deducted": self.points_deducted,
            "current_level": self.level,
            "last_updated": self.last_updated,
        }
        for category in ViolationCategory:
            record[COUNT_FIELDS[category]] = self.counts[category]
            record[THRESHOLD_FIELDS[category]] = self.threshold_exceeded[category]
        return record


@dataclass(frozen=True)
class ViolationEvent:
    driver_name: str
    plate: Optional[str]
    category: ViolationCategory
    count: int
    points_deducted: int
    current_points: int
    level: str


class ViolationScorer:
    def __init__(self, starting_points: int = 100, threshold: int = 4,
                 thresholds: Optional[Dict[ViolationCategory, int]] = None,
                 speed_limit_kmh: float = 120.0, driving_speed_kmh: float = 5.0,
                 server_time_offset_hours: float = -1):
        self.starting_points = starting_points
        self.thresholds = {c: threshold for c in ViolationCategory}
        self.thresholds.update(thresholds or {})
        self.speed_limit_kmh = speed_limit_kmh
        self.driving_speed_kmh = driving_speed_kmh
        self.server_time_offset_hours = server_time_offset_hours

        self._lock = threading.Lock()
        self._drivers: Dict[str, DriverScoreState] = {}
        self._dirty: Set[str] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def load(self, rows: Iterable[Any]) -> int:
        """Seed in-memory state from previously persisted driver_scores rows."""
        loaded = 0
        with self._lock:
            for row in rows:
                get = row.get if isinstance(row, dict) else (lambda k, d=None, r=row: getattr(r, k, d))
                name = get("driver_name")
                if not name:
                    continue
                points = int(get("current_points") if get("current_points") is not None else self.starting_points)
                state = DriverScoreState(
                    driver_name=name,
                    starting_points=self.starting_points,
                    current_points=max(0, min(self.starting_points, points)),
                    last_updated=get("last_updated"),
                )
                for category in ViolationCategory:
                    state.counts[category] = int(get(COUNT_FIELDS[category]) or 0)
                    state.threshold_exceeded[category] = bool(get(THRESHOLD_FIELDS[category]) or False)
                self._drivers[name] = state
                loaded += 1
        logger.info(f"[score] Loaded {loaded} driver scores")
        return loaded

    def get(self, driver_name: str) -> Optional[DriverScoreState]:
        with self._lock:
            return self._drivers.get(driver_name)

    def drivers(self) -> List[DriverScoreState]:
        with self._lock:
            return list(self._drivers.values())

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def triggered_categories(self, fix: VehicleFix) -> List[ViolationCategory]:
        if not is_driving(fix, self.driving_speed_kmh):
            return []
        categories = []
        if fix.speed_kmh > self.speed_limit_kmh:
            categories.append(ViolationCategory.SPEED)
        if HARSH_BRAKING_MARKER in fix.event_text.upper():
            categories.append(ViolationCategory.HARSH_BRAKING)
        if is_night(local_hour(fix.timestamp, self.server_time_offset_hours)):
            categories.append(ViolationCategory.NIGHT_DRIVING)
        return categories

    def process_fix(self, fix: VehicleFix, now: Optional[dt.datetime] = None) -> List[ViolationEvent]:
        """Score one fix. Returns the violations it produced (possibly none)."""
        if not fix.plate:
            return []
        if (fix.driver_name or "").strip().upper() in UNSCORED_DRIVERS:
            return []

        events = []
        for category in self.triggered_categories(fix):
            event = self.record_violation(fix.driver_name, category, plate=fix.plate, now=now)
            if event:
                events.append(event)
        return events

    def record_violation(self, driver_name: str, category: ViolationCategory,
                         plate: Optional[str] = None, now: Optional[dt.datetime] = None) -> Optional[ViolationEvent]:
        """
        Count one violation against the driver. ROUTE and OTHER only arrive
        through here, from upstream classification.
        """
        name = (driver_name or "").strip()
        if name.upper() in UNSCORED_DRIVERS:
            return None
        category = ViolationCategory(category)
        now = now or dt.datetime.now(dt.timezone.utc)

        with self._lock:
            state = self._drivers.get(name)
            if state is None:
                state = DriverScoreState(
                    driver_name=name,
                    starting_points=self.starting_points,
                    current_points=self.starting_points,
                )
                self._drivers[name] = state

            state.counts[category] += 1
            count = state.counts[category]
            threshold = self.thresholds[category]

            deducted = 0
            if count > threshold:
                deducted = 1 if state.current_points > 0 else 0
                state.current_points = max(0, state.current_points - 1)
                state.threshold_exceeded[category] = True

            state.last_updated = now
            self._dirty.add(name)
            event = ViolationEvent(name, plate, category, count, deducted, state.current_points, state.level)

        if count > threshold:
            logger.info(
                f"[score] {name} ({plate}): {category.value} violation #{count} - "
                f"DEDUCTING {deducted} point (threshold {threshold}), points={event.current_points} level={event.level}"
            )
        else:
            logger.info(
                f"[score] {name} ({plate}): {category.value} violation #{count} - "
                f"FREE PASS ({threshold - count} remaining)"
            )
        return event

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def pending(self) -> int:
        with self._lock:
            return len(self._dirty)

    async def flush(self, writer: Callable[[List[Dict[str, Any]]], Awaitable[Any]]) -> int:
        """
        Write every dirty driver through writer. On failure the drivers stay
        dirty and go out with the next flush. Returns the number written.
        """
        with self._lock:
            names = list(self._dirty)
            self._dirty.clear()
            records = [self._drivers[n].as_record() for n in names if n in self._drivers]

        if not records:
            return 0

        try:
            await writer(records)
        except Exception as e:
            with self._lock:
                self._dirty.update(names)
            logger.exception(f"[score] Flush of {len(records)} driver scores failed, will retry: {e}")
            return 0

        logger.info(f"[score] Flushed {len(records)} driver scores")
        return len(records)

    def snapshot_records(self, snapshot_date: dt.date) -> List[Dict[str, Any]]:
        with self._lock:
            states = list(self._drivers.values())
            return [
                {
                    "driver_name": s.driver_name,
                    "snapshot_date": snapshot_date,
                    "current_points": s.current_points,
                    "points_deducted": s.points_deducted,
                    "current_level": s.level,
                    "speed_violations": s.counts[ViolationCategory.SPEED],
                    "harsh_braking_violations": s.counts[ViolationCategory.HARSH_BRAKING],
                    "night_driving_violations": s.counts[ViolationCategory.NIGHT_DRIVING],
                    "route_violations": s.counts[ViolationCategory.ROUTE],
                    "other_violations": s.counts[ViolationCategory.OTHER],
                    "total_violations": s.total_violations,
                }
                for s in states
            ]
