"""
Replication Monitor - Broadcast Hub.

============================================================
PURPOSE
============================================================
Keeps a dynamic set of live subscribers fed with the latest
Snapshot on a fixed cadence.

SUBSCRIBER LIFECYCLE:
    CONNECTING -> SUBSCRIBED   welcome sent, caught up to the
                               latest snapshot, then registered
    SUBSCRIBED -> CLOSED       write failure, inbound channel
                               closed, or explicit unregister
    CLOSED is terminal: removed from the registry, transport closed

============================================================
ISOLATION
============================================================
- The registry is copied under a read lock, then released
- Writes run unlocked and concurrently, one per subscriber,
  each bounded by a write timeout
- Failed subscribers are removed in a separate write-lock pass
- A slow or dead subscriber never stalls the others
- A subscriber never receives a snapshot older than one it
  already holds

============================================================
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .exceptions import SubscriberWriteError
from .models import Snapshot, SubscriberState, utcnow


logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], Awaitable[Snapshot]]


# ============================================================
# READ/WRITE LOCK
# ============================================================

class AsyncRWLock:
    """
    Many readers or one writer.

    Waiting writers block new readers so removals are not starved
    by a busy broadcast loop. Never hold either side across I/O.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer

    async def acquire_read(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True

    async def release_write(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield
        finally:
            await self.release_read()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield
        finally:
            await self.release_write()


# ============================================================
# SUBSCRIBER
# ============================================================

class Subscriber:
    """
    One live snapshot consumer.

    Wraps any websocket-like transport exposing `send_str(str)` and
    `close()` (aiohttp's WebSocketResponse in production).
    """

    def __init__(self, transport: Any, remote: Optional[str] = None):
        self.id = uuid.uuid4().hex[:12]
        self.remote = remote or "unknown"
        self.state = SubscriberState.CONNECTING
        self.connected_at: datetime = utcnow()
        self.messages_sent = 0
        self.last_snapshot_at: Optional[datetime] = None
        self._transport = transport

    @property
    def is_subscribed(self) -> bool:
        return self.state == SubscriberState.SUBSCRIBED

    async def send(self, payload: str, timeout: Optional[float] = None) -> None:
        """
        Write one payload.

        Raises:
            SubscriberWriteError: Closed, timed out, or transport error
        """
        if self.state == SubscriberState.CLOSED:
            raise SubscriberWriteError(self.id, "subscriber is closed")

        try:
            await asyncio.wait_for(self._transport.send_str(payload), timeout=timeout)
        except asyncio.TimeoutError:
            raise SubscriberWriteError(self.id, f"write timed out after {timeout}s")
        except Exception as e:
            raise SubscriberWriteError(self.id, str(e) or e.__class__.__name__) from e

        self.messages_sent += 1

    async def send_snapshot(self, snapshot: Snapshot, payload: str, timeout: Optional[float] = None) -> bool:
        """
        Write a snapshot unless one at least as recent was already sent.

        Returns False when skipped. Raises SubscriberWriteError like send().
        """
        if self.last_snapshot_at is not None and snapshot.timestamp <= self.last_snapshot_at:
            return False

        await self.send(payload, timeout=timeout)
        self.last_snapshot_at = snapshot.timestamp
        return True

    async def close(self) -> None:
        """Move to CLOSED and release the transport. Idempotent."""
        if self.state == SubscriberState.CLOSED:
            return
        self.state = SubscriberState.CLOSED
        try:
            await self._transport.close()
        except Exception as e:
            logger.debug(f"Error closing subscriber {self.id}: {e}")

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, remote={self.remote}, state={self.state.value})"


# ============================================================
# BROADCAST HUB
# ============================================================

class BroadcastHub:
    """
    Periodic snapshot fan-out to every subscribed member.

    Usage:
        hub = BroadcastHub(collector.collect, refresh_interval=5)
        await hub.start()
        subscriber = await hub.register(Subscriber(ws))
        ...
        await hub.unregister(subscriber)
        await hub.stop()
    """

    def __init__(
        self,
        collect: SnapshotProvider,
        refresh_interval: float,
        write_timeout: float = 5.0,
    ):
        """
        Initialize hub.

        Args:
            collect: Coroutine function producing a fresh Snapshot
            refresh_interval: Seconds between ticks
            write_timeout: Upper bound on one write to one subscriber
        """
        if refresh_interval <= 0:
            raise ValueError("refresh_interval must be > 0")
        if write_timeout <= 0:
            raise ValueError("write_timeout must be > 0")

        self._collect = collect
        self._refresh_interval = refresh_interval
        self._write_timeout = write_timeout

        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = AsyncRWLock()

        self._latest: Optional[Snapshot] = None
        self._welcome_task: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._tick_count = 0

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def latest(self) -> Optional[Snapshot]:
        """Most recent snapshot produced by a tick or a welcome collect."""
        return self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tick_count(self) -> int:
        return self._tick_count

    async def subscribers(self) -> List[Subscriber]:
        async with self._lock.read():
            return list(self._subscribers.values())

    # --------------------------------------------------------
    # REGISTRY
    # --------------------------------------------------------

    async def register(self, subscriber: Subscriber) -> Subscriber:
        """
        Send the welcome snapshot, then add the subscriber.

        The welcome is the latest snapshot, or a fresh collect when none
        exists yet. The subscriber stays CONNECTING (skipped by broadcasts)
        until it holds the newest snapshot; a tick that lands during the
        welcome is caught up before it is marked SUBSCRIBED. A failed
        welcome write closes the subscriber without registering it.
        """
        snapshot = self._latest
        if snapshot is None:
            try:
                snapshot = await self._welcome_snapshot()
            except Exception as e:
                logger.error(f"Failed to collect welcome snapshot for {subscriber.id}: {e}")

        while True:
            snapshot = self._newest(snapshot)
            if snapshot is not None:
                try:
                    await subscriber.send_snapshot(snapshot, snapshot.to_json(), timeout=self._write_timeout)
                except SubscriberWriteError as e:
                    logger.warning(f"Welcome snapshot failed: {e}")
                    await subscriber.close()
                    return subscriber

            async with self._lock.write():
                if subscriber.state == SubscriberState.CLOSED:
                    return subscriber
                if self._newest(snapshot) is snapshot:
                    self._subscribers[subscriber.id] = subscriber
                    subscriber.state = SubscriberState.SUBSCRIBED
                    count = len(self._subscribers)
                    break

        logger.info(f"Subscriber {subscriber.id} connected from {subscriber.remote}. Total subscribers: {count}")
        return subscriber

    def _newest(self, snapshot: Optional[Snapshot]) -> Optional[Snapshot]:
        """The hub's latest snapshot if it is newer than `snapshot`."""
        latest = self._latest
        if latest is None:
            return snapshot
        if snapshot is None or latest.timestamp > snapshot.timestamp:
            return latest
        return snapshot

    async def _welcome_snapshot(self) -> Snapshot:
        """One shared collect for every subscriber arriving before the first tick."""
        if self._welcome_task is None:
            self._welcome_task = asyncio.create_task(self._collect_welcome(), name="welcome-collect")
        return await asyncio.shield(self._welcome_task)

    async def _collect_welcome(self) -> Snapshot:
        try:
            snapshot = await self._collect()
            if self._latest is None:
                self._latest = snapshot
            return snapshot
        finally:
            self._welcome_task = None

    async def unregister(self, subscriber: Subscriber) -> bool:
        """Remove and close a subscriber. Returns False if it was not registered."""
        async with self._lock.write():
            removed = self._subscribers.pop(subscriber.id, None) is not None
            count = len(self._subscribers)

        await subscriber.close()

        if removed:
            logger.info(f"Subscriber {subscriber.id} disconnected. Total subscribers: {count}")
        return removed

    # --------------------------------------------------------
    # BROADCAST
    # --------------------------------------------------------

    async def broadcast(self, snapshot: Snapshot) -> int:
        """
        Push a snapshot to every subscribed member.

        Returns the number of members kept. A member that already holds a
        snapshot at least this recent is skipped, never sent an older one.
        Failed members are closed and dropped; nothing is raised to the
        caller.
        """
        payload = snapshot.to_json()

        async with self._lock.read():
            members = [s for s in self._subscribers.values() if s.is_subscribed]

        if not members:
            return 0

        results = await asyncio.gather(*(self._deliver(s, snapshot, payload) for s in members))
        failed = [s for s, ok in zip(members, results) if not ok]

        if failed:
            async with self._lock.write():
                for subscriber in failed:
                    self._subscribers.pop(subscriber.id, None)
                remaining = len(self._subscribers)

            await asyncio.gather(*(s.close() for s in failed))
            logger.warning(f"Dropped {len(failed)} subscriber(s) after failed writes. Total subscribers: {remaining}")

        return len(members) - len(failed)

    async def _deliver(self, subscriber: Subscriber, snapshot: Snapshot, payload: str) -> bool:
        try:
            await subscriber.send_snapshot(snapshot, payload, timeout=self._write_timeout)
            return True
        except SubscriberWriteError as e:
            logger.warning(str(e))
            return False

    async def tick(self) -> Snapshot:
        """One collect + broadcast cycle."""
        snapshot = await self._collect()
        if self._latest is None or snapshot.timestamp >= self._latest.timestamp:
            self._latest = snapshot
        self._tick_count += 1

        delivered = await self.broadcast(snapshot)
        logger.debug(
            f"Tick {self._tick_count}: {snapshot.summary.health_status.value}, "
            f"delivered to {delivered} subscriber(s)"
        )
        return snapshot

    # --------------------------------------------------------
    # SCHEDULER
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic ticker. Idempotent."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="broadcast-ticker")
        logger.info(f"Broadcast hub started (refresh every {self._refresh_interval}s)")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._refresh_interval

        while self._running:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error getting snapshot: {e}")

            # Fixed phase; ticks missed during a slow cycle are skipped
            next_tick += self._refresh_interval
            now = loop.time()
            if next_tick < now:
                missed = int((now - next_tick) // self._refresh_interval) + 1
                next_tick += missed * self._refresh_interval

    async def stop(self) -> None:
        """Stop the ticker and close every subscriber."""
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._welcome_task is not None:
            self._welcome_task.cancel()
            self._welcome_task = None

        async with self._lock.write():
            members = list(self._subscribers.values())
            self._subscribers.clear()

        await asyncio.gather(*(s.close() for s in members))
        logger.info(f"Broadcast hub stopped, closed {len(members)} subscriber(s)")
