"""
Alert records and the keyed cooldown that keeps them from repeating.
"""
import datetime as dt
import enum
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple, Union

from fleetguard.logging_config import get_logger

logger = get_logger("alerts", "alerts.log")


class AlertCategory(str, enum.Enum):
    TOLL_GATE = "toll_gate"
    HIGH_RISK = "high_risk"
    BORDER = "border"
    UNAUTHORIZED_STOP = "unauthorized_stop"
    DESTINATION = "destination"


DEFAULT_WINDOWS: Dict[AlertCategory, int] = {
    AlertCategory.TOLL_GATE: 30 * 60,
    AlertCategory.HIGH_RISK: 5 * 60,
    AlertCategory.BORDER: 60 * 60,
    AlertCategory.UNAUTHORIZED_STOP: 5 * 60,
    AlertCategory.DESTINATION: 24 * 60 * 60,
}

CooldownKey = Tuple[str, str, AlertCategory]


@dataclass(frozen=True)
class AlertRecord:
    subject_id: str
    category: AlertCategory
    message: str
    timestamp: dt.datetime
    zone_id: Optional[int] = None
    reason: Optional[str] = None
    trip_id: Optional[int] = None
    position: Optional[Tuple[float, float]] = None
    distance_m: Optional[float] = None

    @property
    def cooldown_key(self) -> CooldownKey:
        tag = str(self.zone_id) if self.zone_id is not None else (self.reason or "")
        return cooldown_key(self.subject_id, tag, self.category)


def cooldown_key(subject_id: Union[str, int], tag: Union[str, int, None], category: AlertCategory) -> CooldownKey:
    return (str(subject_id), "" if tag is None else str(tag), category)


class AlertDebouncer:
    """
    lastFired map keyed by (subject, zone-or-reason, category).

    try_fire() is the only way an alert gets through: it checks the window and
    records the firing in one step, so two concurrent callers cannot both
    pass for the same key.
    """

    def __init__(self, windows: Optional[Mapping[Union[str, AlertCategory], int]] = None):
        self.windows: Dict[AlertCategory, dt.timedelta] = {
            c: dt.timedelta(seconds=s) for c, s in DEFAULT_WINDOWS.items()
        }
        for category, seconds in (windows or {}).items():
            self.windows[AlertCategory(category)] = dt.timedelta(seconds=seconds)

        self._lock = threading.Lock()
        self._last_fired: Dict[CooldownKey, dt.datetime] = {}

    def try_fire(self, key: CooldownKey, now: dt.datetime) -> bool:
        window = self.windows[key[2]]
        with self._lock:
            last = self._last_fired.get(key)
            if last is not None and now - last < window:
                return False
            self._last_fired[key] = now
            return True

    def remaining(self, key: CooldownKey, now: dt.datetime) -> dt.timedelta:
        with self._lock:
            last = self._last_fired.get(key)
        if last is None:
            return dt.timedelta(0)
        return max(dt.timedelta(0), self.windows[key[2]] - (now - last))

    def clear(self, key: CooldownKey) -> bool:
        with self._lock:
            return self._last_fired.pop(key, None) is not None

    def clear_subject(self, subject_id: Union[str, int]) -> int:
        subject = str(subject_id)
        with self._lock:
            stale = [k for k in self._last_fired if k[0] == subject]
            for k in stale:
                del self._last_fired[k]
        return len(stale)

    def sweep(self, now: dt.datetime) -> int:
        """Drop entries whose window has passed. Returns how many were removed."""
        with self._lock:
            stale = [k for k, last in self._last_fired.items() if now - last >= self.windows[k[2]]]
            for k in stale:
                del self._last_fired[k]
        if stale:
            logger.info(f"[alert] Cooldown sweep removed {len(stale)} entries")
        return len(stale)

    def __len__(self):
        with self._lock:
            return len(self._last_fired)
