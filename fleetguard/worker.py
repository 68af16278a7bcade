import asyncio
import json
import signal
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis

from fleetguard.config import (MonitorSettings, REDIS_URL, TELEMETRY_CONSUMER, TELEMETRY_GROUP,
                               TELEMETRY_STREAM, TRIP_CHANGES_CHANNEL)
from fleetguard.crud import SqlGateway
from fleetguard.database import dispose_engine
from fleetguard.logging_config import get_logger
from fleetguard.monitor import TripMonitor
from fleetguard.telemetry import VehicleFix, try_parse_fix

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")

UNKEYED = "_unkeyed"
PENDING_IDLE_MS = 60_000


# =====================================================================
# Per-vehicle ordered dispatch
# =====================================================================
class PlateDispatcher:
    """
    One FIFO queue and one consumer task per vehicle key. Fixes for the same
    plate are handled strictly in arrival order; different plates run
    concurrently. Idle consumers retire after idle_timeout seconds.
    """

    def __init__(self, handler: Callable[[Any], Awaitable[Any]], idle_timeout: float = 300.0):
        self.handler = handler
        self.idle_timeout = idle_timeout
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, asyncio.Task] = {}

    def submit(self, key: str, item: Any):
        key = key or UNKEYED
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._consumers[key] = asyncio.create_task(self._consume(key, queue), name=f"plate:{key}")
        queue.put_nowait(item)

    async def _consume(self, key: str, queue: asyncio.Queue):
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                if queue.empty():
                    # no await between the check and the removal
                    self._queues.pop(key, None)
                    self._consumers.pop(key, None)
                    return
                continue

            try:
                await self.handler(item)
            except Exception as e:
                logger.exception(f"[worker] Handler failed for {key}: {e}")
            finally:
                queue.task_done()

    async def join(self):
        """Wait until every queued item has been handled."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self):
        await self.join()
        for task in self._consumers.values():
            task.cancel()
        await asyncio.gather(*self._consumers.values(), return_exceptions=True)
        self._consumers.clear()
        self._queues.clear()

    def __len__(self):
        return len(self._queues)


# =====================================================================
# Redis stream consumer
# =====================================================================
class StreamWorker:
    def __init__(self, monitor: TripMonitor, r, stream: str = TELEMETRY_STREAM,
                 group: str = TELEMETRY_GROUP, consumer: str = TELEMETRY_CONSUMER,
                 trip_channel: str = TRIP_CHANGES_CHANNEL):
        self.monitor = monitor
        self.r = r
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.trip_channel = trip_channel
        self.dispatcher = PlateDispatcher(self._handle)

    async def _redis(self, fn, *args, **kwargs):
        # the client is synchronous; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    # ---------- Ensure Consumer Group ----------
    async def init_group(self):
        try:
            await self._redis(self.r.xgroup_create, self.stream, self.group, id="$", mkstream=True)
            logger.info("[worker] Consumer group created.")
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.info("[worker] Consumer group already exists.")
            else:
                raise

    async def _ack(self, msg_id):
        try:
            await self._redis(self.r.xack, self.stream, self.group, msg_id)
            await self._redis(self.r.xdel, self.stream, msg_id)
        except redis.exceptions.RedisError as e:
            logger.exception(f"[worker] Failed to ack/xdel message {msg_id}: {e}")

    async def _handle(self, item: Tuple[Any, VehicleFix]):
        msg_id, fix = item
        try:
            await self.monitor.process(fix)
        except Exception as e:
            logger.exception(f"[worker] Processing failed for message {msg_id}: {e}")
        finally:
            await self._ack(msg_id)

    async def _route(self, msg_id, fields) -> bool:
        raw = fields.get(b"data", fields.get("data"))
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[worker] Failed to json-decode record {msg_id}: {e}")
            # poison message: ack & delete
            await self._ack(msg_id)
            return False

        fix = try_parse_fix(payload, received_at=self.monitor.clock())
        if fix is None:
            logger.debug(f"[worker] Dropping malformed fix {msg_id}")
            await self._ack(msg_id)
            return False

        self.dispatcher.submit(fix.vehicle_key, (msg_id, fix))
        return True

    async def handle_batch(self, msgs) -> int:
        """Route one xreadgroup result into the per-plate queues."""
        dispatched = 0
        for _, records in msgs or []:
            for msg_id, fields in records:
                try:
                    if await self._route(msg_id, fields):
                        dispatched += 1
                except Exception as e:
                    logger.exception(f"[worker] Skipping unreadable record {msg_id}: {e}")
                    await self._ack(msg_id)
        return dispatched

    async def reclaim_pending(self, min_idle_ms: int = PENDING_IDLE_MS) -> int:
        """Take over entries another consumer read but never acked, and route them again."""
        start = "0-0"
        reclaimed = 0
        while True:
            result = await self._redis(
                self.r.xautoclaim, self.stream, self.group, self.consumer, min_idle_ms, start_id=start, count=100
            )
            next_id, records = result[0], result[1]
            live = [(msg_id, fields) for msg_id, fields in records if fields]
            for msg_id, fields in records:
                if not fields:
                    # entry was deleted from the stream while pending
                    await self._ack(msg_id)
            if live:
                reclaimed += len(live)
                await self.handle_batch([[self.stream, live]])
            if next_id in (b"0-0", "0-0") or not records:
                break
            start = next_id
        if reclaimed:
            logger.info(f"[worker] Reclaimed {reclaimed} pending records")
        return reclaimed

    # ---------- Main Worker Loop ----------
    async def consume(self, stop: asyncio.Event):
        await self.init_group()
        try:
            await self.reclaim_pending()
        except redis.exceptions.RedisError as e:
            logger.exception(f"[worker] Could not reclaim pending records: {e}")
        logger.info(f"[worker] Listening on stream {self.stream}...")

        while not stop.is_set():
            try:
                msgs = await self._redis(
                    self.r.xreadgroup, self.group, self.consumer, {self.stream: ">"}, 100, 5000  # block 5 seconds
                )
                if msgs:
                    total = sum(len(rec[1]) for rec in msgs)
                    logger.info(f"[worker] Fetched {total} records from stream")
                await self.handle_batch(msgs)
            except Exception as e:
                logger.exception(f"[worker] Worker loop encountered an error: {e}")
                await asyncio.sleep(1)

            # small sleep to avoid tight loop in case of unexpected fast failures
            await asyncio.sleep(0.1)

    async def listen_trip_changes(self, stop: asyncio.Event):
        """Reload active trips whenever something publishes on the trip channel."""
        pubsub = self.r.pubsub()
        await self._redis(pubsub.subscribe, self.trip_channel)
        logger.info(f"[worker] Subscribed to {self.trip_channel}")
        try:
            while not stop.is_set():
                try:
                    msg = await self._redis(pubsub.get_message, ignore_subscribe_messages=True, timeout=1.0)
                except redis.exceptions.RedisError as e:
                    logger.exception(f"[worker] Trip channel read failed: {e}")
                    await asyncio.sleep(5)
                    continue
                if msg and msg.get("type") == "message":
                    logger.info(f"[worker] Trip change notification: {msg.get('data')!r}")
                    await self.monitor.refresh_trips()
        finally:
            await self._redis(pubsub.close)

    async def run(self, stop: asyncio.Event):
        await self.monitor.start()
        tasks = [
            asyncio.create_task(self.consume(stop), name="stream-consumer"),
            asyncio.create_task(self.listen_trip_changes(stop), name="trip-changes"),
        ]
        try:
            await stop.wait()
        finally:
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.dispatcher.close()
            await self.monitor.shutdown()


async def main(settings: Optional[MonitorSettings] = None):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # not available on this platform

    r = redis.from_url(REDIS_URL, decode_responses=False)
    monitor = TripMonitor(SqlGateway(), settings=settings)
    try:
        await StreamWorker(monitor, r).run(stop)
    finally:
        await dispose_engine()
        r.close()


if __name__ == "__main__":
    logger.info("[worker] Worker starting up...")
    asyncio.run(main())
