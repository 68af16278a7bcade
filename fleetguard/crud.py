"""
Persistence gateway: every durable read/write the monitor makes goes
through SqlGateway, one short session per call.
"""
import datetime as dt
from typing import Any, Callable, Dict, List, Optional, Tuple

import asyncpg
from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, wait_exponential_jitter, stop_after_attempt, retry_if_exception_type

from fleetguard.database import AsyncSessionLocal
from fleetguard.exceptions import PersistenceError
from fleetguard.logging_config import get_logger
from fleetguard.models import Alert, DriverScore, DriverScoreSnapshot, Trip, TripRoute, UnauthorizedStop, Zone

logger = get_logger("crud", "crud.log")

TRANSIENT_ERRORS = (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError)
TERMINAL_TRIP_STATUSES = ("completed", "delivered", "Completed", "Delivered")


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v)
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=dt.timezone.utc)

    return None


db_retry = retry(
    wait=wait_exponential_jitter(initial=2, max=30),
    stop=stop_after_attempt(7),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True,
)


def _row_dict(obj, columns) -> Dict[str, Any]:
    return {c: getattr(obj, c) for c in columns}


class SqlGateway:
    """
    Async gateway over the trips / trip_routes / zones / alerts /
    unauthorized_stops / driver_scores / driver_score_snapshots tables.

    Transient database errors are retried with jittered backoff; once the
    retries are spent the failure surfaces as PersistenceError.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def _call(self, name: str, fn, *args):
        try:
            return await db_retry(fn)(*args)
        except TRANSIENT_ERRORS as e:
            logger.exception(f"[db] {name} failed after retries: {e}")
            raise PersistenceError(f"{name} failed: {e}") from e

    # =====================================================================
    # Reads
    # =====================================================================
    async def load_zones(self) -> List[Dict[str, Any]]:
        return await self._call("load_zones", self._load_zones)

    async def _load_zones(self) -> List[Dict[str, Any]]:
        cols = ("id", "name", "category", "geometry_kind", "coordinates", "radius")
        async with self.session_factory() as db:
            q = await db.execute(select(Zone).order_by(Zone.id))
            return [_row_dict(z, cols) for z in q.scalars().all()]

    async def load_active_trips(self) -> List[Dict[str, Any]]:
        return await self._call("load_active_trips", self._load_active_trips)

    async def _load_active_trips(self) -> List[Dict[str, Any]]:
        cols = ("id", "status", "vehicle_assignments", "authorized_stop_zone_ids",
                "pickup_locations", "dropoff_locations", "destination_coordinates")
        async with self.session_factory() as db:
            q = await db.execute(
                select(Trip)
                .where(Trip.status.notin_(TERMINAL_TRIP_STATUSES))
                .order_by(Trip.id)
            )
            return [_row_dict(t, cols) for t in q.scalars().all()]

    async def load_driver_scores(self) -> List[Dict[str, Any]]:
        return await self._call("load_driver_scores", self._load_driver_scores)

    async def _load_driver_scores(self) -> List[Dict[str, Any]]:
        cols = [c.name for c in DriverScore.__table__.columns if c.name != "id"]
        async with self.session_factory() as db:
            q = await db.execute(select(DriverScore))
            return [_row_dict(s, cols) for s in q.scalars().all()]

    # =====================================================================
    # Alerts
    # =====================================================================
    async def write_alert(self, alert) -> None:
        await self._call("write_alert", self._write_alert, alert)

    async def _write_alert(self, alert) -> None:
        lat, lon = alert.position if alert.position else (None, None)
        async with self.session_factory() as db:
            db.add(Alert(
                subject_id=str(alert.subject_id),
                category=alert.category.value,
                zone_id=alert.zone_id,
                reason=alert.reason,
                message=alert.message,
                trip_id=alert.trip_id,
                lat=lat,
                lon=lon,
                distance_m=alert.distance_m,
                detected_at=to_dt(alert.timestamp),
            ))
            await db.commit()
        logger.info(f"[db] Alert stored: {alert.category.value} subject={alert.subject_id}")

    # =====================================================================
    # Unauthorized stops
    # =====================================================================
    async def record_unauthorized_stop(self, trip_id: int, position: Tuple[float, float],
                                       reason: Optional[str], detected_at: dt.datetime) -> int:
        return await self._call("record_unauthorized_stop", self._record_unauthorized_stop,
                                trip_id, position, reason, detected_at)

    async def _record_unauthorized_stop(self, trip_id, position, reason, detected_at) -> int:
        async with self.session_factory() as db:
            row = UnauthorizedStop(
                trip_id=trip_id,
                lat=position[0],
                lon=position[1],
                reason=reason,
                detected_at=to_dt(detected_at),
                synced=False,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
        logger.info(f"[db] Unauthorized stop recorded for trip {trip_id} id={row.id}")
        return row.id

    async def flag_unauthorized_stop(self, trip_id: int, message: str, timestamp: dt.datetime) -> None:
        """
        Bump the trip's unauthorized-stop counter, set its alert fields and
        status, and mark its pending local stop records as synced.
        """
        await self._call("flag_unauthorized_stop", self._flag_unauthorized_stop, trip_id, message, timestamp)

    async def _flag_unauthorized_stop(self, trip_id, message, timestamp) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Trip)
                .where(Trip.id == trip_id)
                .values(
                    unauthorized_stops_count=func.coalesce(Trip.unauthorized_stops_count, 0) + 1,
                    alert_type="unauthorized_stop",
                    alert_message=message,
                    alert_timestamp=to_dt(timestamp),
                    status="alert",
                )
            )
            await db.execute(
                update(UnauthorizedStop)
                .where(UnauthorizedStop.trip_id == trip_id, UnauthorizedStop.synced.is_(False))
                .values(synced=True)
            )
            await db.commit()
        logger.info(f"[db] Trip {trip_id} flagged for unauthorized stop")

    # =====================================================================
    # Trip alert fields
    # =====================================================================
    async def flag_trip_alert(self, trip_id: int, alert_type: str, message: str,
                              timestamp: dt.datetime, status: Optional[str] = None,
                              append: bool = False) -> None:
        await self._call("flag_trip_alert", self._flag_trip_alert,
                         trip_id, alert_type, message, timestamp, status, append)

    async def _flag_trip_alert(self, trip_id, alert_type, message, timestamp, status, append) -> None:
        values = {
            "alert_type": alert_type,
            "alert_timestamp": to_dt(timestamp),
        }
        if append:
            # keep earlier alerts on the trip, newest last
            values["alert_message"] = func.coalesce(Trip.alert_message + "\n", "") + message
        else:
            values["alert_message"] = message
        if status:
            values["status"] = status

        async with self.session_factory() as db:
            await db.execute(update(Trip).where(Trip.id == trip_id).values(**values))
            await db.commit()
        logger.info(f"[db] Trip {trip_id} alert set: {alert_type}" + (f" status={status}" if status else ""))

    async def flag_trip_at_border(self, trip_id: int, message: str, timestamp: dt.datetime) -> None:
        await self.flag_trip_alert(trip_id, "border", message, timestamp, status="at-border", append=True)

    # =====================================================================
    # Trip routes and mileage
    # =====================================================================
    async def write_trip_routes(self, points: List[Dict[str, Any]], progress: List[Dict[str, Any]]) -> None:
        """
        Append route points and move each trip's position and odometer range.
        The stored start_mileage is kept once set, so a restart cannot reset it.
        """
        if not points and not progress:
            return
        await self._call("write_trip_routes", self._write_trip_routes, points, progress)

    async def _write_trip_routes(self, points, progress) -> None:
        async with self.session_factory() as db:
            if points:
                await db.execute(pg_insert(TripRoute).values(points))
            for p in progress:
                values = {
                    "current_lat": p["current_lat"],
                    "current_lon": p["current_lon"],
                    "last_position_at": to_dt(p["last_position_at"]),
                }
                if p.get("end_mileage") is not None:
                    start = func.coalesce(Trip.start_mileage, p["start_mileage"])
                    values["start_mileage"] = start
                    values["end_mileage"] = p["end_mileage"]
                    values["total_distance"] = p["end_mileage"] - start
                await db.execute(update(Trip).where(Trip.id == p["trip_id"]).values(**values))
            await db.commit()
        logger.info(f"[db] Stored {len(points)} route points, updated {len(progress)} trips")

    # =====================================================================
    # Driver scores
    # =====================================================================
    async def upsert_driver_scores(self, records: List[Dict[str, Any]]) -> None:
        if not records:
            return
        await self._call("upsert_driver_scores", self._upsert_driver_scores, records)

    async def _upsert_driver_scores(self, records) -> None:
        stmt = pg_insert(DriverScore).values(records)
        update_cols = {k: stmt.excluded[k] for k in records[0] if k != "driver_name"}
        stmt = stmt.on_conflict_do_update(index_elements=["driver_name"], set_=update_cols)
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()
        logger.info(f"[db] Upserted {len(records)} driver scores")

    async def write_score_snapshots(self, records: List[Dict[str, Any]]) -> None:
        if not records:
            return
        await self._call("write_score_snapshots", self._write_score_snapshots, records)

    async def _write_score_snapshots(self, records) -> None:
        stmt = pg_insert(DriverScoreSnapshot).values(records)
        update_cols = {k: stmt.excluded[k] for k in records[0] if k not in ("driver_name", "snapshot_date")}
        stmt = stmt.on_conflict_do_update(index_elements=["driver_name", "snapshot_date"], set_=update_cols)
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()
        logger.info(f"[db] Stored {len(records)} score snapshots")
