import asyncio
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from room_monitor.drivers.mqtt_bus import MqttBus, MqttConfig


@pytest.fixture
def recorded():
    return {"links": [], "messages": []}


@pytest.fixture
def bus(recorded):
    b = MqttBus(
        MqttConfig(telemetry_topic="sensors", feedback_prefix="esp32"),
        on_message=lambda topic, payload: recorded["messages"].append((topic, payload)),
        on_link_change=recorded["links"].append,
    )
    b._client = MagicMock()
    return b


@pytest.mark.asyncio
async def test_connect_subscribes_and_reports_link(bus, recorded):
    bus._loop = asyncio.get_running_loop()
    client = MagicMock()

    bus._on_connect(client, None, None, MagicMock(is_failure=False))
    await asyncio.sleep(0)

    client.subscribe.assert_any_call("sensors", qos=0)
    client.subscribe.assert_any_call("esp32/+", qos=0)
    assert bus.is_connected
    assert recorded["links"] == [True]


@pytest.mark.asyncio
async def test_reconnect_cycle_resubscribes(bus, recorded):
    bus._loop = asyncio.get_running_loop()
    client = MagicMock()

    bus._on_connect(client, None, None, MagicMock(is_failure=False))
    bus._on_disconnect(client, None, None, MagicMock())
    bus._on_connect(client, None, None, MagicMock(is_failure=False))
    await asyncio.sleep(0)

    assert recorded["links"] == [True, False, True]
    assert client.subscribe.call_count == 4


@pytest.mark.asyncio
async def test_refused_connection_reports_link_down(bus, recorded):
    bus._loop = asyncio.get_running_loop()
    bus._on_connect(MagicMock(), None, None, MagicMock(is_failure=True))
    await asyncio.sleep(0)
    assert recorded["links"] == [False]
    assert not bus.is_connected


@pytest.mark.asyncio
async def test_messages_are_handed_to_the_loop(bus, recorded):
    bus._loop = asyncio.get_running_loop()
    msg = MagicMock(topic="sensors", payload=b"22.5,60.0,150")

    bus._on_message(None, None, msg)
    assert recorded["messages"] == []  # not run on the network thread
    await asyncio.sleep(0)

    assert recorded["messages"] == [("sensors", b"22.5,60.0,150")]


def test_publish_refused_while_disconnected(bus):
    assert bus.publish("fan", "1") is False
    bus._client.publish.assert_not_called()


def test_publish_when_connected(bus):
    bus._connected = True
    bus._client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
    assert bus.publish("fan", "1") is True
    bus._client.publish.assert_called_once_with("fan", "1", qos=0, retain=False)


def test_publish_failure_is_reported(bus):
    bus._connected = True
    bus._client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
    assert bus.publish("fan", "1") is False


def test_messages_after_loop_shutdown_are_ignored(bus, recorded):
    loop = asyncio.new_event_loop()
    loop.close()
    bus._loop = loop

    bus._on_message(None, None, MagicMock(topic="sensors", payload=b"1,2,3"))
    bus._set_link(False)

    assert recorded["messages"] == []
    assert recorded["links"] == []
