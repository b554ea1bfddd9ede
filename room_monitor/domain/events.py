"""Live-channel event payloads sent to viewers."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from .models import Device, SensorSample

Event = dict[str, Any]


def sensor_event(sample: SensorSample) -> Event:
    return {
        "type": "sensor",
        "temperature": sample.temperature,
        "humidity": sample.humidity,
        "illuminance": sample.illuminance,
        "timestamp": sample.ts_utc.isoformat(),
    }


def device_update_event(device: Device, is_on: bool) -> Event:
    return {"type": "device_update", "device": device.value, "state": 1 if is_on else 0}


def initial_state_event(states: Mapping[Device, bool]) -> Event:
    # every known device is present, defaulting to off
    return {
        "type": "initial_state",
        "states": {d.value: 1 if states.get(d, False) else 0 for d in Device},
    }


def link_event(connected: bool) -> Event:
    return {"type": "link", "status": "connected" if connected else "disconnected"}


def heartbeat_event(ts: datetime) -> Event:
    return {"type": "heartbeat", "timestamp": ts.isoformat()}
