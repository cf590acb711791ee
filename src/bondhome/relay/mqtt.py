"""MQTT broker client used as the relay's message bus.

Wraps paho-mqtt. The paho network loop runs in its own thread; incoming
messages are handed to async handlers on the event loop that called
:meth:`MqttBus.connect`, and acknowledged only when the handler reports
success.
"""

from __future__ import annotations

__all__ = ["MqttBus"]

import asyncio
import socket
from typing import TYPE_CHECKING, Any

import paho.mqtt.client as mqtt
import structlog

if TYPE_CHECKING:
    from concurrent.futures import Future

    from bondhome.relay.relay import MessageHandler

logger = structlog.get_logger(component="mqtt")

CONNECT_TIMEOUT_S = 10.0
PUBLISH_TIMEOUT_S = 10.0


class MqttBus:
    """Publish/subscribe over one MQTT broker connection.

    Args:
        host: Broker host name.
        port: Broker port.
        client_id: MQTT client ID (defaults to the local host name).
        username: Optional broker user name.
        password: Optional broker password.
        qos: QoS level for publishes and subscriptions.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        client_id: str | None = None,
        username: str | None = None,
        password: str | None = None,
        qos: int = 0,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id or socket.gethostname()
        self.qos = qos
        self._handlers: dict[str, MessageHandler] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected: asyncio.Event | None = None

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            manual_ack=True,
        )
        if username:
            self._client.username_pw_set(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def __repr__(self) -> str:
        return f"MqttBus({self.host}:{self.port}, client_id={self.client_id!r})"

    # --- Connection lifecycle -----------------------------------------------

    async def connect(self, timeout_s: float = CONNECT_TIMEOUT_S) -> None:
        """Connect to the broker and start the network loop.

        Raises:
            ConnectionError: If the broker refuses or does not answer in time.
        """
        self._loop = asyncio.get_running_loop()
        self._connected = asyncio.Event()
        logger.info("mqtt_connecting", broker=f"{self.host}:{self.port}", client_id=self.client_id)
        try:
            await asyncio.to_thread(self._client.connect, self.host, self.port, 60)
        except OSError as exc:
            msg = f"unable to connect to MQTT broker at {self.host}:{self.port}: {exc}"
            raise ConnectionError(msg) from exc
        self._client.loop_start()
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout_s)
        except TimeoutError:
            self._client.loop_stop()
            msg = f"timed out after {timeout_s}s waiting for MQTT broker at {self.host}:{self.port}"
            raise ConnectionError(msg) from None
        logger.info("mqtt_connected", broker=f"{self.host}:{self.port}")

    async def disconnect(self) -> None:
        self._client.disconnect()
        await asyncio.to_thread(self._client.loop_stop)
        logger.info("mqtt_disconnected", broker=f"{self.host}:{self.port}")

    # --- MessageBus ---------------------------------------------------------

    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish *payload* and wait for the broker's acknowledgement.

        Raises:
            ConnectionError: If the message could not be queued for sending.
            TimeoutError: If the publish is not acknowledged in time.
        """
        info = self._client.publish(topic, payload, qos=self.qos, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            msg = f"publish to {topic} failed: {mqtt.error_string(info.rc)}"
            raise ConnectionError(msg)
        await asyncio.to_thread(info.wait_for_publish, PUBLISH_TIMEOUT_S)
        if not info.is_published():
            msg = f"publish to {topic} not acknowledged within {PUBLISH_TIMEOUT_S}s"
            raise TimeoutError(msg)

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Route messages on *topic* to *handler*.

        Raises:
            ConnectionError: If the subscribe request could not be sent.
        """
        self._handlers[topic] = handler
        rc, _ = self._client.subscribe(topic, qos=self.qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            del self._handlers[topic]
            msg = f"unable to subscribe to {topic}: {mqtt.error_string(rc)}"
            raise ConnectionError(msg)
        logger.info("mqtt_subscribed", topic=topic)

    # --- paho callbacks (network thread) ------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if reason_code.is_failure:
            logger.error("mqtt_connect_refused", reason=str(reason_code))
            return
        # Re-subscribe after a reconnect; paho does not remember subscriptions.
        for topic in self._handlers:
            client.subscribe(topic, qos=self.qos)
        if self._loop is not None and self._connected is not None:
            self._loop.call_soon_threadsafe(self._connected.set)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if self._loop is not None and self._connected is not None:
            self._loop.call_soon_threadsafe(self._connected.clear)
        logger.warning("mqtt_connection_lost", reason=str(reason_code))

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        logger.debug("mqtt_message", mid=message.mid, topic=message.topic, payload=message.payload)
        handler = self._handlers.get(message.topic)
        if handler is None or self._loop is None:
            logger.warning("mqtt_message_unrouted", topic=message.topic)
            return

        future = asyncio.run_coroutine_threadsafe(handler(message.topic, message.payload), self._loop)

        def _ack_on_success(done: Future[bool]) -> None:
            try:
                handled = done.result()
            except Exception:
                logger.exception("mqtt_handler_failed", topic=message.topic)
                return
            if handled:
                client.ack(message.mid, message.qos)
            else:
                logger.warning("mqtt_message_not_acked", mid=message.mid, topic=message.topic)

        future.add_done_callback(_ack_on_success)
