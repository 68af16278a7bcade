"""
Per-trip stationary tracking.

A trip is either Moving (no window) or Stationary(anchor, since). Fixes below
the stationary speed keep or restart the window; once the window is old
enough the caller runs exactly one authorization check and the window is
dropped, so a vehicle has to move and stop again before the next check.
"""
import datetime as dt
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from fleetguard.geo import LatLon, distance_m
from fleetguard.logging_config import get_logger

logger = get_logger("stops", "monitor.log")


@dataclass(frozen=True)
class StationaryWindow:
    trip_id: int
    anchor: LatLon
    started_at: dt.datetime


@dataclass(frozen=True)
class StopCandidate:
    """Emitted when a window has lasted long enough to be checked."""
    trip_id: int
    position: LatLon
    window: StationaryWindow
    duration_s: float


class StationaryDetector:
    def __init__(self, speed_threshold_kmh: float = 5.0, radius_m: float = 50.0,
                 detection_seconds: float = 5 * 60):
        self.speed_threshold_kmh = speed_threshold_kmh
        self.radius_m = radius_m
        self.detection_seconds = detection_seconds
        self._lock = threading.Lock()
        self._windows: Dict[int, StationaryWindow] = {}

    def observe(self, trip_id: int, position: LatLon, speed_kmh: float,
                now: dt.datetime) -> Optional[StopCandidate]:
        """
        Feed one fix. Returns a StopCandidate when the stop is due for its
        authorization check; the window is already cleared at that point.
        """
        with self._lock:
            if speed_kmh >= self.speed_threshold_kmh:
                self._windows.pop(trip_id, None)
                return None

            window = self._windows.get(trip_id)
            if window is None:
                self._windows[trip_id] = StationaryWindow(trip_id, position, now)
                return None

            if distance_m(position, window.anchor) > self.radius_m:
                # drifted out of the radius: re-anchor and start counting again
                self._windows[trip_id] = StationaryWindow(trip_id, position, now)
                return None

            duration = (now - window.started_at).total_seconds()
            if duration < self.detection_seconds:
                return None

            del self._windows[trip_id]

        logger.info(
            f"[stop] Trip {trip_id} stationary for {duration:.0f}s at "
            f"{position[0]:.6f},{position[1]:.6f}"
        )
        return StopCandidate(trip_id, position, window, duration)

    def window(self, trip_id: int) -> Optional[StationaryWindow]:
        with self._lock:
            return self._windows.get(trip_id)

    def forget(self, trip_id: int):
        with self._lock:
            self._windows.pop(trip_id, None)

    def __len__(self):
        with self._lock:
            return len(self._windows)
