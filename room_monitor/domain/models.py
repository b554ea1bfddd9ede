from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Device(str, Enum):
    """Closed set of actuators reachable over the bus."""

    LED = "led"
    FAN = "fan"
    SPE = "spe"

    @classmethod
    def parse(cls, name: object) -> Optional["Device"]:
        if not isinstance(name, str):
            return None
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


class StateOrigin(str, Enum):
    COMMAND = "command"    # optimistic, written on user command
    FEEDBACK = "feedback"  # authoritative, reported by the actuator


@dataclass(frozen=True)
class SensorSample:
    temperature: float
    humidity: float
    illuminance: float
    ts_utc: datetime
    id: Optional[int] = None  # assigned on persist

    @property
    def identity(self) -> tuple:
        return (self.ts_utc, self.temperature, self.humidity, self.illuminance)


@dataclass(frozen=True)
class DeviceState:
    device: Device
    is_on: bool
    last_updated: datetime
    origin: StateOrigin = StateOrigin.FEEDBACK


@dataclass(frozen=True)
class ActionLogEntry:
    actor: str
    device: Device
    action: str  # "ON" | "OFF"
    ts_utc: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class Page:
    rows: list
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total // self.page_size))
