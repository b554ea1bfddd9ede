from __future__ import annotations
import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Optional

from ..core.timeutil import now_utc
from ..domain.events import device_update_event
from ..domain.interfaces import Bus, Repository
from ..domain.models import ActionLogEntry, Device, StateOrigin
from ..storage.sqlite_repo import StorageError
from .broadcaster import ConnectionRegistry

logger = logging.getLogger(__name__)


class RejectReason(str, Enum):
    UNKNOWN_DEVICE = "unknown device"
    IN_FLIGHT = "command already in flight"
    BUS_UNAVAILABLE = "bus unavailable"


@dataclass(frozen=True)
class CommandResult:
    accepted: bool
    device: str
    state: Optional[int] = None
    reason: Optional[RejectReason] = None


@dataclass
class _InFlight:
    token: int
    requested: bool
    timeout: asyncio.Task


class CommandCoordinator:
    """Per-device Idle / CommandInFlight state machine.

    A device leaves CommandInFlight on actuator feedback (``reconcile``) or
    when the timeout expires. Expiry never reverts the optimistic value.
    """

    def __init__(
        self,
        bus: Bus,
        repo: Repository,
        registry: ConnectionRegistry,
        command_timeout_s: float = 5.0,
        topic_template: str = "{device}",
    ) -> None:
        self._bus = bus
        self._repo = repo
        self._registry = registry
        self._timeout_s = command_timeout_s
        self._topic_template = topic_template
        self._locks: Dict[Device, asyncio.Lock] = {d: asyncio.Lock() for d in Device}
        self._in_flight: Dict[Device, _InFlight] = {}
        self._tokens = itertools.count(1)

    def in_flight(self, device: Device) -> bool:
        return device in self._in_flight

    def command_topic(self, device: Device) -> str:
        return self._topic_template.format(device=device.value)

    async def issue_command(self, device_name: str, is_on: bool, actor: str = "USER") -> CommandResult:
        device = Device.parse(device_name)
        if device is None:
            logger.warning("Command rejected: unknown device %r", device_name)
            return CommandResult(False, str(device_name), reason=RejectReason.UNKNOWN_DEVICE)

        async with self._locks[device]:
            if device in self._in_flight:
                logger.info("Command rejected: %s already in flight", device.value)
                return CommandResult(False, device.value, reason=RejectReason.IN_FLIGHT)

            if not self._bus.is_connected or not self._bus.publish(self.command_topic(device), "1" if is_on else "0"):
                logger.warning("Command rejected: bus unavailable (device=%s)", device.value)
                return CommandResult(False, device.value, reason=RejectReason.BUS_UNAVAILABLE)

            token = next(self._tokens)
            self._in_flight[device] = _InFlight(
                token=token,
                requested=is_on,
                timeout=asyncio.create_task(
                    self._expire(device, token), name=f"command-timeout-{device.value}"
                ),
            )
            logger.info("Command accepted: %s -> %s (actor=%s)", device.value, "ON" if is_on else "OFF", actor)

            try:
                await self._repo.set_device_state(device, is_on, StateOrigin.COMMAND)
            except StorageError:
                logger.exception("Optimistic state write failed for %s", device.value)

            await self._repo.log_action(
                ActionLogEntry(actor=actor, device=device, action="ON" if is_on else "OFF", ts_utc=now_utc())
            )
            self._registry.publish(device_update_event(device, is_on))

        return CommandResult(True, device.value, state=1 if is_on else 0)

    @asynccontextmanager
    async def reconcile(self, device: Device) -> AsyncIterator[Optional[bool]]:
        """Hold the device lock while authoritative feedback is applied.

        Returns the device to Idle and yields the value that was requested by
        the in-flight command, or None if nothing was in flight.
        """
        async with self._locks[device]:
            pending = self._in_flight.pop(device, None)
            requested = None
            if pending is not None:
                pending.timeout.cancel()
                requested = pending.requested
            yield requested

    async def _expire(self, device: Device, token: int) -> None:
        await asyncio.sleep(self._timeout_s)
        async with self._locks[device]:
            pending = self._in_flight.get(device)
            if pending is None or pending.token != token:
                return
            del self._in_flight[device]
        logger.warning(
            "No feedback from %s within %.1fs, accepting new commands (optimistic value kept)",
            device.value, self._timeout_s,
        )

    def close(self) -> None:
        for pending in self._in_flight.values():
            pending.timeout.cancel()
        self._in_flight.clear()
