from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


@dataclass
class MqttConfig:
    host: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = ""
    keepalive_s: int = 60
    reconnect_s: float = 5.0        # fixed backoff, retried forever
    telemetry_topic: str = "sensors"
    feedback_prefix: str = "esp32"


MessageHandler = Callable[[str, bytes], None]
LinkHandler = Callable[[bool], None]


class MqttBus:
    """
    paho-mqtt transport for the telemetry bus.
    Responsible for: connect/reconnect, (re)subscription, command publish.

    paho callbacks run on its network thread; they only hand work to the
    asyncio loop with ``call_soon_threadsafe`` and return immediately.
    """

    def __init__(
        self,
        cfg: MqttConfig,
        on_message: MessageHandler,
        on_link_change: LinkHandler,
    ) -> None:
        self.cfg = cfg
        self._on_message_cb = on_message
        self._on_link_cb = on_link_change
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False

        client_id = cfg.client_id or f"room-monitor-{uuid.uuid4().hex[:8]}"
        self._client = mqtt.Client(
            client_id=client_id,
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            clean_session=True,
        )
        if cfg.username:
            self._client.username_pw_set(cfg.username, cfg.password or None)
        self._client.reconnect_delay_set(min_delay=cfg.reconnect_s, max_delay=cfg.reconnect_s)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> list[str]:
        return [self.cfg.telemetry_topic, f"{self.cfg.feedback_prefix.rstrip('/')}/+"]

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        logger.info("Connecting to MQTT broker %s:%d", self.cfg.host, self.cfg.port)
        # connect_async: a broker that is down at startup is retried by the network loop
        self._client.connect_async(self.cfg.host, self.cfg.port, keepalive=self.cfg.keepalive_s)
        self._client.loop_start()

    def stop(self) -> None:
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
            self._connected = False
        logger.info("MQTT bus stopped")

    def publish(self, topic: str, payload: str) -> bool:
        if not self._connected:
            return False
        info = self._client.publish(topic, payload, qos=0, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("MQTT publish to %s failed rc=%s", topic, info.rc)
            return False
        logger.debug("Published %s <- %s", topic, payload)
        return True

    # --- paho callbacks (network thread) ---

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            self._set_link(False)
            return
        for topic in self.subscriptions:
            client.subscribe(topic, qos=0)
        logger.info("MQTT connected, subscribed to %s", ", ".join(self.subscriptions))
        self._set_link(True)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        logger.warning("MQTT disconnected (%s), retrying every %.1fs", reason_code, self.cfg.reconnect_s)
        self._set_link(False)

    def _on_message(self, client, userdata, msg) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._on_message_cb, msg.topic, bytes(msg.payload))

    def _set_link(self, connected: bool) -> None:
        self._connected = connected
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._on_link_cb, connected)
