import asyncio
from datetime import datetime, timezone

import pytest

from room_monitor.domain.events import device_update_event
from room_monitor.domain.models import Device, SensorSample
from room_monitor.services.broadcaster import ConnectionRegistry
from room_monitor.storage.sqlite_repo import StorageError


class GatedRepo:
    """Repository double whose snapshot reads wait for a gate."""

    def __init__(self):
        self.gate = asyncio.Event()

    async def latest_sample(self):
        await self.gate.wait()
        return None

    async def device_states(self):
        return {Device.FAN: True}


class BrokenRepo:
    async def latest_sample(self):
        raise StorageError("down")

    async def device_states(self):
        raise StorageError("down")


@pytest.mark.asyncio
async def test_attach_sends_initial_state_for_all_devices(registry, drain):
    conn = await registry.attach()
    events = await drain(conn)

    assert events == [
        {"type": "initial_state", "states": {"led": 0, "fan": 0, "spe": 0}},
        {"type": "link", "status": "disconnected"},
    ]


@pytest.mark.asyncio
async def test_attach_sends_latest_sample_first(repo, registry, drain):
    ts = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    await repo.insert_sample(SensorSample(22.5, 60.0, 150.0, ts))
    registry.set_link_status(True)

    conn = await registry.attach()
    events = await drain(conn)

    assert [e["type"] for e in events] == ["sensor", "initial_state", "link"]
    assert events[0]["temperature"] == 22.5
    assert events[2] == {"type": "link", "status": "connected"}


@pytest.mark.asyncio
async def test_snapshot_falls_back_when_storage_fails(drain):
    registry = ConnectionRegistry(BrokenRepo(), heartbeat_s=3600)
    conn = await registry.attach()
    events = await drain(conn)
    registry.close()

    assert events[0] == {"type": "initial_state", "states": {"led": 0, "fan": 0, "spe": 0}}


@pytest.mark.asyncio
async def test_events_published_while_priming_follow_snapshot(drain):
    repo = GatedRepo()
    registry = ConnectionRegistry(repo, heartbeat_s=3600)

    attaching = asyncio.create_task(registry.attach())
    await asyncio.sleep(0)
    assert len(registry) == 1

    registry.publish(device_update_event(Device.LED, True))
    repo.gate.set()
    conn = await attaching
    events = await drain(conn)
    registry.close()

    assert [e["type"] for e in events] == ["initial_state", "link", "device_update"]
    assert events[0]["states"]["fan"] == 1


@pytest.mark.asyncio
async def test_publish_preserves_order_on_every_connection(registry, drain):
    a = await registry.attach()
    b = await registry.attach()
    await drain(a)
    await drain(b)

    for i in range(5):
        registry.publish({"type": "sensor", "seq": i})

    assert [e["seq"] for e in await drain(a)] == [0, 1, 2, 3, 4]
    assert [e["seq"] for e in await drain(b)] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_slow_viewer_loses_oldest_events_only(repo, drain):
    registry = ConnectionRegistry(repo, heartbeat_s=3600, queue_size=3)
    slow = await registry.attach()
    await drain(slow)

    for i in range(5):
        registry.publish({"type": "sensor", "seq": i})

    assert slow.dropped == 2
    assert [e["seq"] for e in await drain(slow)] == [2, 3, 4]
    registry.close()


@pytest.mark.asyncio
async def test_detach_stops_delivery_and_heartbeat(registry, drain):
    conn = await registry.attach()
    heartbeat = conn._heartbeat
    registry.detach(conn.id)

    await asyncio.wait([heartbeat], timeout=1)
    assert heartbeat.cancelled()
    assert len(registry) == 0

    await drain(conn)
    registry.publish({"type": "sensor"})
    assert await drain(conn) == []

    # detaching twice is harmless
    registry.detach(conn.id)


@pytest.mark.asyncio
async def test_heartbeat_arrives_without_publish_activity(repo, drain):
    registry = ConnectionRegistry(repo, heartbeat_s=0.05)
    conn = await registry.attach()
    await drain(conn)

    event = await asyncio.wait_for(conn.next_event(), timeout=1)
    registry.close()

    assert event["type"] == "heartbeat"
    assert "timestamp" in event


@pytest.mark.asyncio
async def test_link_status_reaches_all_viewers(registry, drain):
    a = await registry.attach()
    b = await registry.attach()
    await drain(a)
    await drain(b)

    registry.set_link_status(False)
    registry.set_link_status(True)

    expected = [{"type": "link", "status": "disconnected"}, {"type": "link", "status": "connected"}]
    assert await drain(a) == expected
    assert await drain(b) == expected
    assert registry.link_connected is True


@pytest.mark.asyncio
async def test_snapshot_survives_a_burst_while_priming(repo, drain):
    ts = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    await repo.insert_sample(SensorSample(22.5, 60.0, 150.0, ts))
    gated = GatedRepo()
    gated.latest_sample = _gate_then(gated.gate, repo.latest_sample)
    registry = ConnectionRegistry(gated, heartbeat_s=3600, queue_size=4)

    attaching = asyncio.create_task(registry.attach())
    await asyncio.sleep(0)
    registry.publish(device_update_event(Device.LED, True))
    registry.publish(device_update_event(Device.FAN, False))
    gated.gate.set()
    conn = await attaching
    events = await drain(conn)
    registry.close()

    assert [e["type"] for e in events] == ["sensor", "initial_state", "link", "device_update"]
    assert events[3]["device"] == "fan"
    assert conn.dropped == 1


@pytest.mark.asyncio
async def test_tiny_queue_still_delivers_whole_snapshot(repo, drain):
    ts = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    await repo.insert_sample(SensorSample(22.5, 60.0, 150.0, ts))
    registry = ConnectionRegistry(repo, heartbeat_s=3600, queue_size=1)

    conn = await registry.attach()
    events = await drain(conn)
    registry.close()

    assert [e["type"] for e in events] == ["sensor", "initial_state", "link"]


@pytest.mark.asyncio
async def test_close_wakes_a_waiting_consumer(registry, drain):
    conn = await registry.attach()
    await drain(conn)

    waiting = asyncio.create_task(conn.next_event())
    await asyncio.sleep(0)
    registry.close()

    assert await asyncio.wait_for(waiting, timeout=1) is None
    assert conn.closed
    # stays ended for later reads
    assert await asyncio.wait_for(conn.next_event(), timeout=1) is None


def _gate_then(gate, read):
    async def _read():
        await gate.wait()
        return await read()

    return _read
