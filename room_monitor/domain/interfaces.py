from __future__ import annotations
from typing import Protocol, Optional, runtime_checkable
from .models import ActionLogEntry, Device, DeviceState, Page, SensorSample, StateOrigin


@runtime_checkable
class Bus(Protocol):
    @property
    def is_connected(self) -> bool:
        ...

    def publish(self, topic: str, payload: str) -> bool:
        ...


@runtime_checkable
class Repository(Protocol):
    async def init(self) -> None:
        ...

    async def insert_sample(self, sample: SensorSample) -> Optional[SensorSample]:
        ...

    async def set_device_state(self, device: Device, is_on: bool, origin: StateOrigin) -> DeviceState:
        ...

    async def log_action(self, entry: ActionLogEntry) -> None:
        ...

    async def latest_sample(self) -> Optional[SensorSample]:
        ...

    async def device_states(self) -> dict[Device, bool]:
        ...

    async def query_samples(self, page: int, page_size: int) -> Page:
        ...

    async def query_actions(self, page: int, page_size: int) -> Page:
        ...
