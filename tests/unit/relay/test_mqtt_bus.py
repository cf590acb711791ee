"""Tests for MqttBus with the paho client replaced by a mock."""

from __future__ import annotations

import asyncio
import socket
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from bondhome.relay.mqtt import MqttBus

SUCCESS = SimpleNamespace(is_failure=False)
REFUSED = SimpleNamespace(is_failure=True)


@pytest.fixture
def paho_client(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    client = MagicMock(name="paho.Client")
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    monkeypatch.setattr(mqtt, "Client", MagicMock(return_value=client))
    return client


def _connect_on_loop_start(bus: MqttBus, client: MagicMock, reason: Any = SUCCESS) -> None:
    client.loop_start.side_effect = lambda: bus._on_connect(client, None, None, reason, None)


def _message(topic: str, payload: bytes, mid: int = 42, qos: int = 1) -> SimpleNamespace:
    return SimpleNamespace(topic=topic, payload=payload, mid=mid, qos=qos)


async def _wait_until(predicate: Any, timeout: float = 1.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestMqttBusSetup:
    """Tests for client construction."""

    def test_client_id_defaults_to_host_name(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")
        assert bus.client_id == socket.gethostname()

    def test_uses_manual_ack(self, paho_client: MagicMock) -> None:
        MqttBus("mqtt.local", client_id="relay-1")
        _, kwargs = mqtt.Client.call_args  # type: ignore[attr-defined]
        assert kwargs["manual_ack"] is True
        assert kwargs["client_id"] == "relay-1"

    def test_credentials(self, paho_client: MagicMock) -> None:
        MqttBus("mqtt.local", username="bond", password="s3cret")
        paho_client.username_pw_set.assert_called_once_with("bond", "s3cret")

    def test_no_credentials(self, paho_client: MagicMock) -> None:
        MqttBus("mqtt.local")
        paho_client.username_pw_set.assert_not_called()


class TestMqttBusConnect:
    """Tests for connect()/disconnect()."""

    async def test_connect(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local", 1884)
        _connect_on_loop_start(bus, paho_client)

        await bus.connect(timeout_s=1.0)

        paho_client.connect.assert_called_once_with("mqtt.local", 1884, 60)
        paho_client.loop_start.assert_called_once()

    async def test_connect_socket_error(self, paho_client: MagicMock) -> None:
        paho_client.connect.side_effect = ConnectionRefusedError(111, "Connection refused")
        bus = MqttBus("mqtt.local")

        with pytest.raises(ConnectionError, match="mqtt.local:1883"):
            await bus.connect(timeout_s=1.0)
        paho_client.loop_start.assert_not_called()

    async def test_connect_refused_by_broker_times_out(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")
        _connect_on_loop_start(bus, paho_client, REFUSED)

        with pytest.raises(ConnectionError, match="timed out"):
            await bus.connect(timeout_s=0.05)
        paho_client.loop_stop.assert_called_once()

    async def test_disconnect(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")
        _connect_on_loop_start(bus, paho_client)
        await bus.connect(timeout_s=1.0)

        await bus.disconnect()

        paho_client.disconnect.assert_called_once()
        paho_client.loop_stop.assert_called_once()


class TestMqttBusPublish:
    """Tests for publish()."""

    async def test_publish_waits_for_ack(self, paho_client: MagicMock) -> None:
        info = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
        info.is_published.return_value = True
        paho_client.publish.return_value = info
        bus = MqttBus("mqtt.local", qos=1)

        await bus.publish("bondhome/devices/aabb/state", b'{"power":1}')

        paho_client.publish.assert_called_once_with(
            "bondhome/devices/aabb/state", b'{"power":1}', qos=1, retain=False
        )
        info.wait_for_publish.assert_called_once()

    async def test_publish_not_queued(self, paho_client: MagicMock) -> None:
        paho_client.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
        bus = MqttBus("mqtt.local")

        with pytest.raises(ConnectionError):
            await bus.publish("bondhome/x", b"{}")

    async def test_publish_not_acknowledged(self, paho_client: MagicMock) -> None:
        info = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
        info.is_published.return_value = False
        paho_client.publish.return_value = info
        bus = MqttBus("mqtt.local")

        with pytest.raises(TimeoutError):
            await bus.publish("bondhome/x", b"{}")


class TestMqttBusSubscribe:
    """Tests for subscribe() and inbound message dispatch."""

    async def test_subscribe(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local", qos=1)

        async def handler(topic: str, payload: bytes) -> bool:
            return True

        await bus.subscribe("bondhome/devices/aabb/TurnOn", handler)

        paho_client.subscribe.assert_called_once_with("bondhome/devices/aabb/TurnOn", qos=1)

    async def test_subscribe_failure_forgets_handler(self, paho_client: MagicMock) -> None:
        paho_client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        bus = MqttBus("mqtt.local")

        async def handler(topic: str, payload: bytes) -> bool:
            return True

        with pytest.raises(ConnectionError):
            await bus.subscribe("bondhome/devices/aabb/TurnOn", handler)
        assert bus._handlers == {}

    async def test_resubscribes_on_reconnect(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")

        async def handler(topic: str, payload: bytes) -> bool:
            return True

        await bus.subscribe("bondhome/devices/aabb/TurnOn", handler)
        paho_client.subscribe.reset_mock()

        bus._on_connect(paho_client, None, None, SUCCESS, None)

        paho_client.subscribe.assert_called_once_with("bondhome/devices/aabb/TurnOn", qos=0)

    async def test_message_acked_when_handled(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")
        _connect_on_loop_start(bus, paho_client)
        await bus.connect(timeout_s=1.0)
        seen: list[tuple[str, bytes]] = []

        async def handler(topic: str, payload: bytes) -> bool:
            seen.append((topic, payload))
            return True

        await bus.subscribe("bondhome/devices/aabb/SetSpeed", handler)
        message = _message("bondhome/devices/aabb/SetSpeed", b"3", mid=42, qos=1)

        await asyncio.to_thread(bus._on_message, paho_client, None, message)  # type: ignore[arg-type]

        assert await _wait_until(lambda: paho_client.ack.called)
        paho_client.ack.assert_called_once_with(42, 1)
        assert seen == [("bondhome/devices/aabb/SetSpeed", b"3")]

    async def test_message_not_acked_when_rejected(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")
        _connect_on_loop_start(bus, paho_client)
        await bus.connect(timeout_s=1.0)
        done = asyncio.Event()

        async def handler(topic: str, payload: bytes) -> bool:
            done.set()
            return False

        await bus.subscribe("bondhome/devices/aabb/TurnOn", handler)

        await asyncio.to_thread(bus._on_message, paho_client, None, _message("bondhome/devices/aabb/TurnOn", b""))  # type: ignore[arg-type]

        await asyncio.wait_for(done.wait(), timeout=1.0)
        await asyncio.sleep(0.05)
        paho_client.ack.assert_not_called()

    async def test_unrouted_message_ignored(self, paho_client: MagicMock) -> None:
        bus = MqttBus("mqtt.local")
        _connect_on_loop_start(bus, paho_client)
        await bus.connect(timeout_s=1.0)

        bus._on_message(paho_client, None, _message("bondhome/unknown", b"{}"))  # type: ignore[arg-type]

        await asyncio.sleep(0.02)
        paho_client.ack.assert_not_called()
