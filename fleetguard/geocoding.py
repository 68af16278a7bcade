"""
Address -> coordinate lookups for pickup / dropoff locations.

The provider call lives outside the engine; whatever async callable is
injected gets wrapped in a per-address cache so each address is looked up
once per process (misses included).
"""
import threading
from typing import Awaitable, Callable, Dict, Optional

from fleetguard.geo import LatLon
from fleetguard.logging_config import get_logger

logger = get_logger("geocoding", "monitor.log")

Geocoder = Callable[[str], Awaitable[Optional[LatLon]]]


async def null_geocoder(address: str) -> Optional[LatLon]:
    return None


class CachingGeocoder:
    def __init__(self, geocoder: Optional[Geocoder] = None):
        self._geocoder = geocoder or null_geocoder
        self._cache: Dict[str, Optional[LatLon]] = {}
        self._lock = threading.Lock()

    async def __call__(self, address: str) -> Optional[LatLon]:
        key = " ".join(address.split()).lower()
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        try:
            coords = await self._geocoder(address)
        except Exception as e:
            # provider failures are not cached so the next stop can retry
            logger.warning(f"[geocode] lookup failed for {address!r}: {e}")
            return None

        with self._lock:
            self._cache[key] = coords
        return coords

    def clear(self):
        with self._lock:
            self._cache.clear()

    def __len__(self):
        with self._lock:
            return len(self._cache)
