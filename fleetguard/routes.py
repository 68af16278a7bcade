"""
Trip route and mileage tracking.

Every fix matched to a trip becomes a route point. Points are queued in
memory and written in batches together with each trip's latest position and
odometer range (start / end / total distance). A failed write puts the batch
back at the front of the queue for the next flush.
"""
import datetime as dt
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fleetguard.logging_config import get_logger
from fleetguard.telemetry import VehicleFix

logger = get_logger("routes", "monitor.log")

RouteWriter = Callable[[List[Dict[str, Any]], List[Dict[str, Any]]], Awaitable[Any]]


@dataclass(frozen=True)
class RoutePoint:
    trip_id: int
    latitude: float
    longitude: float
    speed_kmh: float
    mileage: Optional[float]
    recorded_at: dt.datetime

    def as_record(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "lat": self.latitude,
            "lon": self.longitude,
            "speed": self.speed_kmh,
            "mileage": self.mileage,
            "recorded_at": self.recorded_at,
        }


@dataclass
class TripProgress:
    trip_id: int
    position: Tuple[float, float]
    last_seen_at: dt.datetime
    start_mileage: Optional[float] = None
    end_mileage: Optional[float] = None

    @property
    def total_distance(self) -> Optional[float]:
        if self.start_mileage is None or self.end_mileage is None:
            return None
        return self.end_mileage - self.start_mileage

    def as_record(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "current_lat": self.position[0],
            "current_lon": self.position[1],
            "last_position_at": self.last_seen_at,
            "start_mileage": self.start_mileage,
            "end_mileage": self.end_mileage,
        }


class RouteTracker:
    def __init__(self, max_queue: int = 50_000):
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._points: List[RoutePoint] = []
        self._progress: Dict[int, TripProgress] = {}
        self._pending: Dict[int, Dict[str, Any]] = {}

    def record(self, trip_id: int, fix: VehicleFix) -> RoutePoint:
        # a zero or missing odometer is no reading
        mileage = fix.odometer if fix.odometer and fix.odometer > 0 else None
        point = RoutePoint(
            trip_id=trip_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            speed_kmh=fix.speed_kmh,
            mileage=mileage,
            recorded_at=fix.timestamp,
        )
        with self._lock:
            progress = self._progress.get(trip_id)
            if progress is None:
                progress = TripProgress(trip_id=trip_id, position=fix.position, last_seen_at=fix.timestamp)
                self._progress[trip_id] = progress
            progress.position = fix.position
            progress.last_seen_at = fix.timestamp
            if mileage is not None:
                if progress.start_mileage is None:
                    progress.start_mileage = mileage
                if progress.end_mileage is None or mileage >= progress.end_mileage:
                    progress.end_mileage = mileage
                else:
                    logger.debug(f"[route] Trip {trip_id} odometer went back to {mileage}, "
                                 f"keeping {progress.end_mileage}")

            self._points.append(point)
            self._trim()
            self._pending[trip_id] = progress.as_record()
        return point

    def _trim(self):
        overflow = len(self._points) - self.max_queue
        if overflow > 0:
            del self._points[:overflow]
            logger.warning(f"[route] Route queue full, dropped {overflow} oldest points")

    def progress(self, trip_id: int) -> Optional[TripProgress]:
        with self._lock:
            return self._progress.get(trip_id)

    def forget(self, trip_id: int):
        """Drop in-memory progress for a trip; its queued writes still go out."""
        with self._lock:
            self._progress.pop(trip_id, None)

    def pending(self) -> int:
        with self._lock:
            return len(self._points)

    async def flush(self, writer: RouteWriter) -> int:
        """
        Hand every queued point and every changed trip to writer(points, trips).
        Returns the number of points written; 0 when the write failed.
        """
        with self._lock:
            points, self._points = self._points, []
            pending, self._pending = self._pending, {}

        if not points and not pending:
            return 0

        try:
            await writer([p.as_record() for p in points], list(pending.values()))
        except Exception as e:
            with self._lock:
                self._points = points + self._points
                self._trim()
                for trip_id, record in pending.items():
                    # newer progress recorded during the write wins
                    self._pending.setdefault(trip_id, record)
            logger.exception(f"[route] Flush of {len(points)} route points failed, will retry: {e}")
            return 0

        logger.info(f"[route] Flushed {len(points)} route points for {len(pending)} trips")
        return len(points)

    def __len__(self):
        with self._lock:
            return len(self._progress)