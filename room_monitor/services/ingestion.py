from __future__ import annotations
import asyncio
import contextlib
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..core.timeutil import now_utc_seconds
from ..domain.events import device_update_event, sensor_event
from ..domain.interfaces import Repository
from ..domain.models import Device, SensorSample, StateOrigin
from ..storage.sqlite_repo import StorageError
from .broadcaster import ConnectionRegistry
from .commands import CommandCoordinator
from .dedup import DedupCache
from .parsing import MalformedPayload, parse_device_state, parse_telemetry

logger = logging.getLogger(__name__)


class IngestionRouter:
    """Turns bus messages into stored rows and live events.

    The bus transport hands messages over with ``submit`` (non-blocking,
    bounded, drop-oldest); a single worker drains them in arrival order.
    Feedback is applied on a per-device lane, so a device whose lock is
    held by a command never stalls telemetry or the other devices.
    """

    def __init__(
        self,
        repo: Repository,
        registry: ConnectionRegistry,
        coordinator: CommandCoordinator,
        telemetry_topic: str = "sensors",
        feedback_prefix: str = "esp32",
        dedup_window_s: float = 1.5,
        queue_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._registry = registry
        self._coordinator = coordinator
        self._telemetry_topic = telemetry_topic
        self._feedback_prefix = feedback_prefix.rstrip("/") + "/"
        self._dedup = DedupCache(window_s=dedup_window_s)
        self._clock = clock

        self._queue: asyncio.Queue[Tuple[str, bytes]] = asyncio.Queue(maxsize=queue_size)
        self._lanes: Dict[Device, asyncio.Queue[bool]] = {
            d: asyncio.Queue(maxsize=queue_size) for d in Device
        }
        self._tasks: List[asyncio.Task] = []

        # Stats
        self._received = 0
        self._stored = 0
        self._suppressed = 0
        self._malformed = 0
        self._dropped = 0

    @property
    def dedup(self) -> DedupCache:
        return self._dedup

    @property
    def stats(self) -> dict:
        return {
            "received": self._received,
            "stored": self._stored,
            "suppressed": self._suppressed,
            "malformed": self._malformed,
            "dropped": self._dropped,
            "queue_depth": self._queue.qsize(),
        }

    async def start(self) -> None:
        self._tasks.append(asyncio.create_task(self._run(), name="ingestion_loop"))
        for device in Device:
            self._tasks.append(
                asyncio.create_task(self._lane_loop(device), name=f"feedback-{device.value}")
            )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def drain(self) -> None:
        """Wait until every submitted message has been handled."""
        await self._queue.join()
        for lane in self._lanes.values():
            await lane.join()

    def submit(self, topic: str, payload: bytes) -> None:
        """Hand a bus message to the worker. Event loop thread only."""
        if self._queue.full():
            old_topic, _ = self._queue.get_nowait()
            self._queue.task_done()
            self._dropped += 1
            logger.warning("Ingest queue full, dropped oldest message (topic=%s)", old_topic)
        self._queue.put_nowait((topic, payload))

    def on_link_change(self, connected: bool) -> None:
        if connected:
            logger.info("Bus link up")
        else:
            logger.warning("Bus link down")
        self._registry.set_link_status(connected)

    async def _run(self) -> None:
        logger.info("Ingestion loop started (telemetry=%s feedback=%s+)", self._telemetry_topic, self._feedback_prefix)
        while True:
            topic, payload = await self._queue.get()
            try:
                await self._dispatch(topic, payload)
            except Exception as e:
                logger.exception("Ingestion error on topic=%s: %s", topic, e)
            finally:
                self._queue.task_done()

    async def _lane_loop(self, device: Device) -> None:
        lane = self._lanes[device]
        while True:
            is_on = await lane.get()
            try:
                await self._apply_feedback(device, is_on)
            except Exception as e:
                logger.exception("Feedback error for %s: %s", device.value, e)
            finally:
                lane.task_done()

    async def on_message(self, topic: str, payload: bytes) -> None:
        """Handle one bus message to completion, feedback included."""
        self._received += 1
        if topic == self._telemetry_topic:
            await self._on_telemetry(payload)
            return
        feedback = self._decode_feedback(topic, payload)
        if feedback is not None:
            await self._apply_feedback(*feedback)

    async def _dispatch(self, topic: str, payload: bytes) -> None:
        self._received += 1
        if topic == self._telemetry_topic:
            await self._on_telemetry(payload)
            return
        feedback = self._decode_feedback(topic, payload)
        if feedback is not None:
            self._enqueue_feedback(*feedback)

    def _enqueue_feedback(self, device: Device, is_on: bool) -> None:
        lane = self._lanes[device]
        if lane.full():
            lane.get_nowait()
            lane.task_done()
            self._dropped += 1
            logger.warning("Feedback lane for %s full, dropped oldest state", device.value)
        lane.put_nowait(is_on)

    async def _on_telemetry(self, payload: bytes) -> None:
        try:
            record = parse_telemetry(payload)
        except MalformedPayload as e:
            self._malformed += 1
            logger.warning("Dropped telemetry payload %r: %s", payload[:80], e)
            return

        if self._dedup.should_suppress(payload.strip(), self._clock()):
            self._suppressed += 1
            logger.debug("Duplicate telemetry within dedup window, ignored")
            return

        sample = SensorSample(
            temperature=record.temperature,
            humidity=record.humidity,
            illuminance=record.illuminance,
            ts_utc=record.ts_utc or now_utc_seconds(),
        )
        try:
            stored = await self._repo.insert_sample(sample)
        except StorageError:
            logger.exception("Sample not stored: %s", sample)
            return

        if stored is None:
            self._suppressed += 1
            logger.debug("Sample already stored, not re-broadcast: %s", sample)
            return

        self._stored += 1
        self._registry.publish(sensor_event(stored))

    def _decode_feedback(self, topic: str, payload: bytes) -> Optional[Tuple[Device, bool]]:
        if not topic.startswith(self._feedback_prefix):
            logger.debug("Ignoring message on unhandled topic %s", topic)
            return None
        device_name = topic[len(self._feedback_prefix):]
        device = Device.parse(device_name)
        if device is None:
            self._malformed += 1
            logger.warning("Feedback for unknown device %r dropped", device_name)
            return None
        try:
            return device, parse_device_state(payload)
        except MalformedPayload as e:
            self._malformed += 1
            logger.warning("Dropped feedback for %s %r: %s", device.value, payload[:80], e)
            return None

    async def _apply_feedback(self, device: Device, is_on: bool) -> None:
        async with self._coordinator.reconcile(device) as requested:
            if requested is not None and requested != is_on:
                logger.warning(
                    "Feedback for %s reports %s, command requested %s",
                    device.value, "ON" if is_on else "OFF", "ON" if requested else "OFF",
                )
            try:
                await self._repo.set_device_state(device, is_on, StateOrigin.FEEDBACK)
            except StorageError:
                logger.exception("Feedback state write failed for %s", device.value)
            self._registry.publish(device_update_event(device, is_on))
