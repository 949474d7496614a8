"""Satellite link over MQTT, encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, List, Mapping, Optional

import paho.mqtt.client as mqtt

from ..config import LinkConfig
from ..core import LinkMessageHandler
from ..errors import LinkConnectionError

LOGGER = logging.getLogger(__name__)


def _reason_value(reason_code: Any) -> int:
    return int(getattr(reason_code, "value", reason_code))


class MQTTSatelliteLink:
    """Async-friendly satellite link over the threaded paho-mqtt client.

    Messages for the satellite are published as JSON on the uplink topic;
    everything received on the downlink topic is handed, undecoded, to the
    registered message handler on the event loop.
    """

    def __init__(
        self,
        config: LinkConfig,
        *,
        client_id: str,
        keepalive: int = 60,
        qos: int = 1,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive
        self.qos = qos

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[LinkMessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []

    @property
    def uplink_topic(self) -> str:
        return self.config.uplink_topic

    @property
    def downlink_topic(self) -> str:
        return self.config.downlink_topic

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to satellite link broker %s:%s",
            self.config.broker_host,
            self.config.broker_port,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise LinkConnectionError(
                    f"Link broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise LinkConnectionError("Timed out connecting to link broker") from exc
        except LinkConnectionError:
            client.loop_stop()
            self._client = None
            raise

        self._subscribe_downlink()

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for link broker disconnect")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def send(self, message: Mapping[str, Any]) -> None:
        """Publish ``message`` to the satellite as JSON."""
        if not self._client:
            raise LinkConnectionError("Satellite link not connected")

        payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
        info = self._client.publish(self.uplink_topic, payload, qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise LinkConnectionError(f"Publish failed with rc={info.rc}")

    def set_message_handler(self, handler: Optional[LinkMessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _subscribe_downlink(self) -> None:
        if not self._client:
            return
        result, _ = self._client.subscribe(self.downlink_topic, qos=self.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise LinkConnectionError(f"Subscribe failed with rc={result}")
        LOGGER.info("Listening for satellite traffic on %s", self.downlink_topic)

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        reconnecting = self._connected_event is not None and self._connected_event.is_set()
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to satellite link broker")
            self._connected = True
            if reconnecting and self._loop:
                # paho drops subscriptions with a clean session
                self._loop.call_soon_threadsafe(self._resubscribe)
            if self._loop:
                for handler in self._connect_handlers:
                    self._loop.call_soon_threadsafe(handler, rc)
        else:
            LOGGER.error("Link broker connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event and self._loop:
            self._loop.call_soon_threadsafe(self._connected_event.set)

    def _resubscribe(self) -> None:
        try:
            self._subscribe_downlink()
        except LinkConnectionError:
            LOGGER.exception("Could not resubscribe to %s", self.downlink_topic)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from satellite link broker (rc=%s)", rc)
        self._connected = False
        if self._loop:
            if self._disconnect_event:
                self._loop.call_soon_threadsafe(self._disconnect_event.set)
            for handler in self._disconnect_handlers:
                self._loop.call_soon_threadsafe(handler, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler = self._message_handler
        loop = self._loop
        if not handler or not loop:
            return

        try:
            result = handler(message.payload)
            if asyncio.iscoroutine(result):
                asyncio.run_coroutine_threadsafe(result, loop)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("Link message handler raised an exception")
