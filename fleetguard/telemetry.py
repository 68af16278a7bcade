"""
Typed view over the loosely-typed telemetry payloads.

Upstream feeds send JSON like::

    {"Plate": "ABC123", "DriverName": "J Smith", "Speed": 64,
     "Latitude": -26.2, "Longitude": 28.0, "LocTime": "2025-11-29T10:00:00",
     "NameEvent": "Vehicle In Motion", "Statuses": "...", "Mileage": 12345}

Any field may be missing and casing is not reliable, so every field is looked
up case-insensitively and checked explicitly.
"""
import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fleetguard.crud import to_dt
from fleetguard.exceptions import TelemetryError

UTC = dt.timezone.utc


@dataclass(frozen=True)
class VehicleFix:
    plate: Optional[str]
    driver_name: Optional[str]
    latitude: float
    longitude: float
    speed_kmh: float
    timestamp: dt.datetime
    event_text: str = ""
    status_text: str = ""
    odometer: Optional[float] = None
    geozone: Optional[str] = None

    @property
    def position(self):
        return (self.latitude, self.longitude)

    @property
    def vehicle_key(self) -> str:
        """Key used to keep one vehicle's fixes in order."""
        return (self.plate or self.driver_name or "").strip().lower()


def _field(payload: Dict[str, Any], name: str) -> Any:
    if name in payload:
        return payload[name]
    lowered = name.lower()
    for key, value in payload.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TelemetryError(f"{name} is not numeric: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise TelemetryError(f"{name} is not numeric: {value!r}") from e
    if math.isnan(number) or math.isinf(number):
        raise TelemetryError(f"{name} is not finite: {value!r}")
    return number


def _timestamp(value: Any, received_at: dt.datetime) -> dt.datetime:
    if value is None or value == "":
        return received_at
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return dt.datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise TelemetryError(f"LocTime is out of range: {value!r}") from e
    try:
        parsed = to_dt(str(value).strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise TelemetryError(f"LocTime is not a timestamp: {value!r}") from e
    if parsed is None:
        raise TelemetryError(f"LocTime is not a timestamp: {value!r}")
    return parsed


def parse_fix(payload: Dict[str, Any], received_at: Optional[dt.datetime] = None) -> VehicleFix:
    """
    Build a VehicleFix or raise TelemetryError.
    - missing / (0,0) / non-numeric coordinates are rejected
    - non-numeric speed is rejected, missing speed is 0
    - unparseable LocTime is rejected, missing LocTime uses received_at
    """
    if not isinstance(payload, dict):
        raise TelemetryError(f"payload is not an object: {type(payload).__name__}")

    received_at = received_at or dt.datetime.now(UTC)

    lat = _number(_field(payload, "Latitude"), "Latitude")
    lon = _number(_field(payload, "Longitude"), "Longitude")
    if lat is None or lon is None:
        raise TelemetryError("missing coordinates")
    if lat == 0 and lon == 0:
        raise TelemetryError("null island coordinates")
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise TelemetryError(f"coordinates out of range: {lat},{lon}")

    speed = _number(_field(payload, "Speed"), "Speed")
    odometer = None
    try:
        odometer = _number(_field(payload, "Mileage"), "Mileage")
    except TelemetryError:
        pass  # optional; a garbage odometer does not spoil the fix

    return VehicleFix(
        plate=_text(_field(payload, "Plate")),
        driver_name=_text(_field(payload, "DriverName")),
        latitude=lat,
        longitude=lon,
        speed_kmh=speed if speed is not None else 0.0,
        timestamp=_timestamp(_field(payload, "LocTime"), received_at),
        event_text=_text(_field(payload, "NameEvent")) or "",
        status_text=_text(_field(payload, "Statuses")) or "",
        odometer=odometer,
        geozone=_text(_field(payload, "Geozone")),
    )


def try_parse_fix(payload: Dict[str, Any], received_at: Optional[dt.datetime] = None) -> Optional[VehicleFix]:
    """parse_fix that returns None for anything malformed."""
    try:
        return parse_fix(payload, received_at)
    except TelemetryError:
        return None
