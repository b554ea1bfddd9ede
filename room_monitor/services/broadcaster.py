from __future__ import annotations
import asyncio
import itertools
import logging
from collections import deque
from typing import Dict, List, Optional

from ..core.timeutil import now_utc
from ..domain.events import (
    Event,
    heartbeat_event,
    initial_state_event,
    link_event,
    sensor_event,
)
from ..domain.interfaces import Repository
from ..storage.sqlite_repo import StorageError

logger = logging.getLogger(__name__)

# sensor, initial_state, link
SNAPSHOT_EVENTS = 3

_CLOSED = object()


class ViewerConnection:
    """One attached dashboard: a bounded outbound queue plus its heartbeat.

    While priming (between attach and the snapshot being ready) published
    events are parked so they are delivered after the snapshot, in order.
    The snapshot itself is never evicted by parked events.
    """

    def __init__(self, conn_id: int, maxsize: int) -> None:
        self.id = conn_id
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(maxsize, SNAPSHOT_EVENTS))
        self._priming = True
        self._closed = False
        self._parked: deque[Event] = deque(maxlen=maxsize)
        self._heartbeat: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: Event) -> bool:
        """Queue an event. Returns False if the oldest queued event had to go."""
        if self._closed:
            return True
        if self._priming:
            if len(self._parked) == self._parked.maxlen:
                self.dropped += 1
                self._parked.append(event)
                return False
            self._parked.append(event)
            return True

        kept = True
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            kept = False
        self._queue.put_nowait(event)
        return kept

    def go_live(self, snapshot: List[Event]) -> None:
        self._priming = False
        if self._closed:
            return
        parked = list(self._parked)
        self._parked.clear()
        room = max(self._queue.maxsize - len(snapshot), 0)
        if len(parked) > room:
            self.dropped += len(parked) - room
            parked = parked[len(parked) - room:]
        for event in snapshot + parked:
            self._queue.put_nowait(event)

    async def next_event(self) -> Optional[Event]:
        """Next outbound event, or None once the connection is closed."""
        event = await self._queue.get()
        if event is _CLOSED:
            # leave the marker for any later caller
            self._queue.put_nowait(_CLOSED)
            return None
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)


class ConnectionRegistry:
    """Set of live viewer connections and the fan-out over them.

    Concurrency: every method runs on the event loop thread. ``publish`` is
    synchronous, so two publishes can never interleave on one connection, and
    it iterates a snapshot of the registry so attach/detach during a fan-out
    is safe.
    """

    def __init__(
        self,
        repo: Repository,
        heartbeat_s: float = 30.0,
        queue_size: int = 100,
    ) -> None:
        self._repo = repo
        self._heartbeat_s = heartbeat_s
        self._queue_size = queue_size
        self._connections: Dict[int, ViewerConnection] = {}
        self._ids = itertools.count(1)
        self._link_connected = False

    @property
    def link_connected(self) -> bool:
        return self._link_connected

    def __len__(self) -> int:
        return len(self._connections)

    async def attach(self) -> ViewerConnection:
        conn = ViewerConnection(next(self._ids), self._queue_size)
        self._connections[conn.id] = conn
        try:
            snapshot = await self._snapshot()
        except BaseException:
            self.detach(conn.id)
            raise

        conn.go_live(snapshot)
        if conn.closed:
            return conn
        conn._heartbeat = asyncio.create_task(
            self._heartbeat_loop(conn), name=f"heartbeat-{conn.id}"
        )
        logger.info("Viewer attached id=%d (viewers=%d)", conn.id, len(self._connections))
        return conn

    def detach(self, conn_id: int) -> None:
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return
        conn.close()
        logger.info(
            "Viewer detached id=%d dropped=%d (viewers=%d)",
            conn_id, conn.dropped, len(self._connections),
        )

    def publish(self, event: Event) -> None:
        for conn in list(self._connections.values()):
            if not conn.offer(event):
                logger.warning(
                    "Slow viewer id=%d, dropped oldest event (total dropped=%d)",
                    conn.id, conn.dropped,
                )

    def set_link_status(self, connected: bool) -> None:
        self._link_connected = connected
        self.publish(link_event(connected))

    def close(self) -> None:
        for conn_id in list(self._connections):
            self.detach(conn_id)

    async def _snapshot(self) -> List[Event]:
        events: List[Event] = []
        try:
            latest = await self._repo.latest_sample()
        except StorageError:
            logger.exception("Snapshot: latest sample unavailable")
            latest = None
        if latest is not None:
            events.append(sensor_event(latest))

        try:
            states = await self._repo.device_states()
        except StorageError:
            logger.exception("Snapshot: device states unavailable, reporting all off")
            states = {}
        events.append(initial_state_event(states))
        events.append(link_event(self._link_connected))
        return events

    async def _heartbeat_loop(self, conn: ViewerConnection) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_s)
            conn.offer(heartbeat_event(now_utc()))
