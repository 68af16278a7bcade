"""
TripMonitor: runs every check for one telemetry fix.

    fix -> trip match -> route point / mileage queue
                      -> high-risk / toll gate / border / destination
                      -> stationary detector -> authorized-stop check
                      -> driver scoring
        -> alert debouncer -> persistence gateway

Each stage is isolated: a failure in one is logged and the rest still run.
Gateway writes are fire-and-forget; a failed write never rolls back the
in-memory state that produced it.
"""
import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from fleetguard.alerts import AlertCategory, AlertDebouncer, AlertRecord, cooldown_key
from fleetguard.config import MonitorSettings
from fleetguard.geo import in_circle
from fleetguard.geocoding import CachingGeocoder
from fleetguard.logging_config import get_logger
from fleetguard.reports import next_midnight, run_daily_snapshot
from fleetguard.routes import RouteTracker
from fleetguard.scoring import ViolationEvent, ViolationScorer
from fleetguard.stops import StationaryDetector
from fleetguard.telemetry import VehicleFix, parse_fix
from fleetguard.exceptions import TelemetryError
from fleetguard.trips import Trip, TripCache
from fleetguard.zones import (AuthorizationResult, ZoneCache, ZoneCategory, check_authorized_stop,
                              find_zone, zone_contains)

logger = get_logger("monitor", "monitor.log")

UTC = dt.timezone.utc

Clock = Callable[[], dt.datetime]


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


@dataclass
class FixOutcome:
    """What one fix produced. Mostly for callers that want to inspect it."""
    fix: VehicleFix
    trip: Optional[Trip] = None
    alerts: List[AlertRecord] = field(default_factory=list)
    stop: Optional[AuthorizationResult] = None
    violations: List[ViolationEvent] = field(default_factory=list)
    failed_stages: List[str] = field(default_factory=list)


def _suffix(fix: VehicleFix) -> str:
    return f" [{fix.geozone}]" if fix.geozone else ""


class TripMonitor:
    def __init__(self, gateway, settings: Optional[MonitorSettings] = None,
                 zone_cache: Optional[ZoneCache] = None, trip_cache: Optional[TripCache] = None,
                 detector: Optional[StationaryDetector] = None, debouncer: Optional[AlertDebouncer] = None,
                 scorer: Optional[ViolationScorer] = None, routes: Optional[RouteTracker] = None,
                 geocoder=None, clock: Clock = utcnow):
        s = settings or MonitorSettings()
        self.settings = s
        self.gateway = gateway
        self.clock = clock

        self.zone_cache = zone_cache if zone_cache is not None else ZoneCache(default_radius_m=s.default_zone_radius_m)
        if trip_cache is None:
            trip_cache = TripCache(driver_match_strategy=s.driver_match_strategy)
        self.trip_cache = trip_cache
        if detector is None:
            detector = StationaryDetector(
                speed_threshold_kmh=s.stationary_speed_kmh,
                radius_m=s.stationary_radius_m,
                detection_seconds=s.stop_detection_seconds,
            )
        self.detector = detector
        self.debouncer = debouncer if debouncer is not None else AlertDebouncer(windows=s.cooldowns)
        if scorer is None:
            scorer = ViolationScorer(
                starting_points=s.starting_points,
                threshold=s.violation_threshold,
                speed_limit_kmh=s.speed_limit_kmh,
                driving_speed_kmh=s.driving_speed_kmh,
                server_time_offset_hours=s.server_time_offset_hours,
            )
        self.scorer = scorer
        self.routes = routes if routes is not None else RouteTracker(max_queue=s.route_queue_limit)
        self.geocoder = geocoder if isinstance(geocoder, CachingGeocoder) else CachingGeocoder(geocoder)

        self._writes: Set[asyncio.Task] = set()
        self._background: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}

    # =====================================================================
    # Lifecycle
    # =====================================================================
    async def start(self, background: bool = True):
        """Load caches and seed scores, then start the background tasks."""
        await self.refresh_zones()
        await self.refresh_trips()
        try:
            self.scorer.load(await self.gateway.load_driver_scores())
        except Exception as e:
            logger.exception(f"[monitor] Could not seed driver scores, starting empty: {e}")

        if background:
            s = self.settings
            self._spawn_loop("cooldown-sweep", s.cooldown_sweep_interval, self.sweep_cooldowns)
            self._spawn_loop("score-flush", s.score_flush_interval, self.flush_scores)
            self._spawn_loop("route-flush", s.route_flush_interval, self.flush_routes)
            self._spawn_loop("zone-refresh", s.zone_refresh_interval, self.refresh_zones)
            self._spawn_loop("trip-refresh", s.trip_refresh_interval, self.refresh_trips)
            self._spawn_daily("daily-snapshot", self.daily_snapshot)
        logger.info(f"[monitor] Started with {len(self.zone_cache)} zones and {len(self.trip_cache)} trips")

    async def shutdown(self):
        """Stop background tasks, wait for in-flight writes, flush scores and routes once."""
        for event in self._stop_events.values():
            event.set()
        if self._background:
            await asyncio.gather(*self._background.values(), return_exceptions=True)
        self._background.clear()
        self._stop_events.clear()

        await self.drain()
        await self.flush_scores()
        await self.flush_routes()
        logger.info("[monitor] Shut down")

    async def drain(self):
        """Wait for every fire-and-forget write scheduled so far."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    # =====================================================================
    # Background tasks
    # =====================================================================
    def _spawn_loop(self, name: str, interval: float, fn: Callable[[], Awaitable[Any]]):
        stop = asyncio.Event()
        self._stop_events[name] = stop
        self._background[name] = asyncio.create_task(self._loop(name, interval, fn, stop), name=name)

    def _spawn_daily(self, name: str, fn: Callable[[dt.date], Awaitable[Any]]):
        stop = asyncio.Event()
        self._stop_events[name] = stop
        self._background[name] = asyncio.create_task(self._daily(name, fn, stop), name=name)

    async def _loop(self, name, interval, fn, stop: asyncio.Event):
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await fn()
            except Exception as e:
                logger.exception(f"[monitor] Background task {name} failed: {e}")

    async def _daily(self, name, fn, stop: asyncio.Event):
        tz_name = self.settings.report_timezone
        while not stop.is_set():
            now = self.clock()
            midnight = next_midnight(now, tz_name)
            day_ending = (midnight - dt.timedelta(days=1)).date()
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(1.0, (midnight - now).total_seconds()))
                break
            except asyncio.TimeoutError:
                pass
            try:
                await fn(day_ending)
            except Exception as e:
                logger.exception(f"[monitor] Background task {name} failed: {e}")

    async def sweep_cooldowns(self) -> int:
        return self.debouncer.sweep(self.clock())

    async def flush_scores(self) -> int:
        return await self.scorer.flush(self.gateway.upsert_driver_scores)

    async def flush_routes(self) -> int:
        return await self.routes.flush(self.gateway.write_trip_routes)

    async def daily_snapshot(self, snapshot_date: dt.date):
        return await run_daily_snapshot(self.scorer, self.gateway, snapshot_date,
                                        export_dir=self.settings.snapshot_export_dir)

    async def refresh_zones(self) -> bool:
        return await self.zone_cache.refresh(self.gateway.load_zones)

    async def refresh_trips(self) -> Optional[List[int]]:
        evicted = await self.trip_cache.refresh(self.gateway.load_active_trips)
        for trip_id in evicted or []:
            self.forget_trip(trip_id)
        return evicted

    def forget_trip(self, trip_id: int):
        self.detector.forget(trip_id)
        self.debouncer.clear_subject(trip_id)
        self.routes.forget(trip_id)

    # =====================================================================
    # Fire-and-forget writes
    # =====================================================================
    def _schedule(self, what: str, coro: Awaitable[Any]):
        task = asyncio.ensure_future(coro)
        self._writes.add(task)

        def _done(t: asyncio.Task):
            self._writes.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"[monitor] {what} failed: {exc!r}")

        task.add_done_callback(_done)
        return task

    def _fire(self, record: AlertRecord, now: dt.datetime, key=None,
              then: Optional[Callable[[], Awaitable[Any]]] = None) -> bool:
        """Debounce one alert; when it passes, write it (and then run `then`)."""
        if not self.debouncer.try_fire(key or record.cooldown_key, now):
            return False

        logger.info(f"[alert] {record.category.value} subject={record.subject_id}: {record.message}")

        async def _persist():
            await self.gateway.write_alert(record)
            if then is not None:
                await then()

        self._schedule(f"{record.category.value} alert for {record.subject_id}", _persist())
        return True

    # =====================================================================
    # Per-fix processing
    # =====================================================================
    async def process(self, payload: Union[VehicleFix, Dict[str, Any]],
                      received_at: Optional[dt.datetime] = None) -> Optional[FixOutcome]:
        now = self.clock()
        if isinstance(payload, VehicleFix):
            fix = payload
        else:
            try:
                fix = parse_fix(payload, received_at or now)
            except TelemetryError as e:
                logger.debug(f"[monitor] Dropping fix: {e}")
                return None

        outcome = FixOutcome(fix=fix)
        outcome.trip = self.trip_cache.match(fix.driver_name, fix.plate)

        await self._stage("high_risk", outcome, self._check_high_risk(fix, outcome, now))
        if outcome.trip is not None:
            await self._stage("route", outcome, self._track_route(fix, outcome))
            await self._stage("toll_gate", outcome, self._check_toll_gates(fix, outcome, now))
            await self._stage("border", outcome, self._check_borders(fix, outcome, now))
            await self._stage("destination", outcome, self._check_destination(fix, outcome, now))
            await self._stage("stops", outcome, self._check_stop(fix, outcome, now))
        await self._stage("scoring", outcome, self._score(fix, outcome, now))
        return outcome

    async def _stage(self, name: str, outcome: FixOutcome, coro):
        try:
            await coro
        except Exception as e:
            outcome.failed_stages.append(name)
            logger.exception(f"[monitor] {name} check failed for {outcome.fix.vehicle_key}: {e}")

    # ----- route point and odometer range: matched trips -----
    async def _track_route(self, fix: VehicleFix, outcome: FixOutcome):
        self.routes.record(outcome.trip.id, fix)

    # ----- high-risk zones: every fix with a plate -----
    async def _check_high_risk(self, fix: VehicleFix, outcome: FixOutcome, now: dt.datetime):
        if not fix.plate:
            return
        trip_id = outcome.trip.id if outcome.trip else None
        for zone in self.zone_cache.zones(ZoneCategory.HIGH_RISK):
            key = cooldown_key(fix.plate, zone.id, AlertCategory.HIGH_RISK)
            match = zone_contains(zone, fix.position)
            if match is None:
                # left (or never entered): re-entry alerts straight away
                self.debouncer.clear(key)
                continue
            record = AlertRecord(
                subject_id=fix.plate,
                category=AlertCategory.HIGH_RISK,
                message=f"{fix.plate} entered high-risk zone {zone.name}{_suffix(fix)}",
                timestamp=now,
                zone_id=zone.id,
                trip_id=trip_id,
                position=fix.position,
                distance_m=match.distance_m,
            )
            if self._fire(record, now, key=key):
                outcome.alerts.append(record)

    # ----- toll gates: matched trips, first gate wins -----
    async def _check_toll_gates(self, fix: VehicleFix, outcome: FixOutcome, now: dt.datetime):
        match = find_zone(fix.position, self.zone_cache.zones(ZoneCategory.TOLL_GATE))
        if match is None:
            return
        subject = fix.plate or str(outcome.trip.id)
        record = AlertRecord(
            subject_id=subject,
            category=AlertCategory.TOLL_GATE,
            message=f"{subject} at toll gate {match.zone.name} ({match.distance_m:.0f} m){_suffix(fix)}",
            timestamp=now,
            zone_id=match.zone.id,
            trip_id=outcome.trip.id,
            position=fix.position,
            distance_m=match.distance_m,
        )
        if self._fire(record, now):
            outcome.alerts.append(record)

    # ----- borders: matched trips, subject is the trip -----
    async def _check_borders(self, fix: VehicleFix, outcome: FixOutcome, now: dt.datetime):
        match = find_zone(fix.position, self.zone_cache.zones(ZoneCategory.BORDER))
        if match is None:
            return
        trip = outcome.trip
        message = f"Approaching border {match.zone.name} ({match.distance_m:.0f} m){_suffix(fix)}"
        record = AlertRecord(
            subject_id=str(trip.id),
            category=AlertCategory.BORDER,
            message=message,
            timestamp=now,
            zone_id=match.zone.id,
            trip_id=trip.id,
            position=fix.position,
            distance_m=match.distance_m,
        )

        async def _flag_trip():
            await self.gateway.flag_trip_at_border(trip.id, message, now)

        if self._fire(record, now, then=_flag_trip):
            outcome.alerts.append(record)

    # ----- destination arrival: first dropoff within proximity -----
    async def _check_destination(self, fix: VehicleFix, outcome: FixOutcome, now: dt.datetime):
        trip = outcome.trip
        radius = self.settings.proximity_radius_m
        for address in trip.dropoff_addresses():
            coords = await self.geocoder(address)
            if not coords or not in_circle(fix.position, coords, radius):
                continue

            message = f"Arrived at destination {address}{_suffix(fix)}"
            record = AlertRecord(
                subject_id=str(trip.id),
                category=AlertCategory.DESTINATION,
                message=message,
                timestamp=now,
                reason="arrived",
                trip_id=trip.id,
                position=fix.position,
            )

            async def _flag_trip():
                await self.gateway.flag_trip_alert(trip.id, "destination", message, now, status="at-destination")

            if self._fire(record, now, then=_flag_trip):
                outcome.alerts.append(record)
            return

    # ----- stationary window and authorized-stop check -----
    async def _check_stop(self, fix: VehicleFix, outcome: FixOutcome, now: dt.datetime):
        trip = outcome.trip
        candidate = self.detector.observe(trip.id, fix.position, fix.speed_kmh, now)
        if candidate is None:
            return

        result = await check_authorized_stop(
            trip, candidate.position, self.zone_cache, self.geocoder,
            proximity_radius_m=self.settings.proximity_radius_m,
        )
        outcome.stop = result
        if result.authorized:
            logger.info(f"[stop] Trip {trip.id} authorized stop: {result.stop_name}")
            return

        logger.warning(f"[stop] Trip {trip.id} UNAUTHORIZED stop: {result.reason}")
        lat, lon = candidate.position
        message = (
            f"Unauthorized stop for {int(candidate.duration_s // 60)} min at "
            f"{lat:.6f},{lon:.6f}: {result.reason}{_suffix(fix)}"
        )
        record = AlertRecord(
            subject_id=str(trip.id),
            category=AlertCategory.UNAUTHORIZED_STOP,
            message=message,
            timestamp=now,
            reason=result.reason,
            trip_id=trip.id,
            position=candidate.position,
        )
        # one notification per trip per window, whatever the reason
        key = cooldown_key(trip.id, None, AlertCategory.UNAUTHORIZED_STOP)
        notify = self.debouncer.try_fire(key, now)
        if notify:
            outcome.alerts.append(record)

        async def _persist():
            # the local record always goes first so the notify step can mark it synced
            await self.gateway.record_unauthorized_stop(trip.id, candidate.position, result.reason, now)
            if notify:
                await self.gateway.write_alert(record)
                await self.gateway.flag_unauthorized_stop(trip.id, message, now)

        self._schedule(f"unauthorized stop for trip {trip.id}", _persist())

    # ----- scoring -----
    async def _score(self, fix: VehicleFix, outcome: FixOutcome, now: dt.datetime):
        outcome.violations = self.scorer.process_fix(fix, now)
