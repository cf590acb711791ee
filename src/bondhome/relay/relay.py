"""Relay between the bridge and the message bus.

State flows bridge -> bus: :func:`relay_state_updates` drains a push
session and publishes each update body under ``<prefix>/<topic>``.

Commands flow bus -> bridge: :func:`setup_action_handlers` subscribes to
``<prefix>/devices/<device_id>/<action_id>`` for every action every
device supports and executes the action when a message arrives.
"""

from __future__ import annotations

__all__ = [
    "DEFAULT_RECEIVE_TIMEOUT_S",
    "DEFAULT_TOPIC_PREFIX",
    "MessageBus",
    "MessageHandler",
    "action_topic",
    "make_action_handler",
    "normalize_action_payload",
    "relay_state_updates",
    "setup_action_handlers",
    "state_topic",
]

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

import structlog

from bondhome.api.client import BondApiError
from bondhome.push.errors import ClosedError, DecodeError, ReceiveTimeoutError

if TYPE_CHECKING:
    from bondhome.api.client import BondApiClient
    from bondhome.push.session import PushSession
    from bondhome.push.types import Update

logger = structlog.get_logger(component="relay")

DEFAULT_RECEIVE_TIMEOUT_S = 10.0
DEFAULT_TOPIC_PREFIX = "bondhome"

MessageHandler = Callable[[str, bytes], Awaitable[bool]]


class MessageBus(Protocol):
    """Publish/subscribe sink and source of byte payloads keyed by topic."""

    async def publish(self, topic: str, payload: bytes) -> None: ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> None: ...


def state_topic(prefix: str, update: Update) -> str:
    return f"{prefix}/{update.topic}"


def action_topic(prefix: str, device_id: str, action_id: str) -> str:
    return f"{prefix}/devices/{device_id}/{action_id}"


# --- bridge -> bus ----------------------------------------------------------


async def relay_state_updates(
    session: PushSession,
    bus: MessageBus,
    *,
    topic_prefix: str = DEFAULT_TOPIC_PREFIX,
    receive_timeout_s: float = DEFAULT_RECEIVE_TIMEOUT_S,
) -> None:
    """Publish updates from *session* until it closes.

    Receive timeouts and malformed datagrams are skipped. Publish failures
    are logged and the update is dropped.

    Raises:
        KeepaliveExhaustedError: If the session closed because its
            keepalive failed.
        PushTransportError: If the push socket reports an error.
    """
    while True:
        try:
            update = await session.receive(receive_timeout_s)
        except ReceiveTimeoutError:
            continue
        except DecodeError as exc:
            logger.warning("push_update_malformed", raw=exc.raw, reason=exc.reason)
            continue
        except ClosedError as exc:
            if exc.reason is not None:
                raise exc.reason from exc
            logger.info("push_relay_stopped")
            return

        if update.topic:
            await _publish_update(bus, topic_prefix, update)
        elif update.error_msg:
            logger.error(
                "bridge_error_update",
                bond_id=update.bond_id,
                error_id=update.error_id,
                error_msg=update.error_msg,
            )


async def _publish_update(bus: MessageBus, prefix: str, update: Update) -> None:
    topic = state_topic(prefix, update)
    body = json.dumps(update.body, separators=(",", ":"))
    logger.debug("state_publish", topic=topic, body=body)
    try:
        await bus.publish(topic, body.encode("utf-8"))
    except (ConnectionError, TimeoutError) as exc:
        logger.error("state_publish_failed", topic=topic, error=str(exc))


# --- bus -> bridge ----------------------------------------------------------


def normalize_action_payload(payload: bytes) -> str:
    """Return the request body for an action message.

    JSON objects pass through unchanged; any other payload is wrapped as
    ``{"body": <payload>}``. Payloads that are not JSON at all are wrapped
    as a JSON string.
    """
    text = payload.decode("utf-8", errors="replace").strip()
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("action_payload_not_json", payload=text)
        return json.dumps({"body": text})
    if isinstance(value, dict):
        return text
    logger.debug("action_payload_wrapped", payload=text)
    return json.dumps({"body": value})


def make_action_handler(
    api: BondApiClient,
    device_id: str,
    action_id: str,
) -> MessageHandler:
    """Return a bus handler that executes *action_id* on *device_id*."""

    async def _handle(topic: str, payload: bytes) -> bool:
        body = normalize_action_payload(payload)
        try:
            await api.execute_action(device_id, action_id, body)
        except BondApiError as exc:
            logger.error(
                "action_failed",
                topic=topic,
                device_id=device_id,
                action_id=action_id,
                error=str(exc),
            )
            return False
        return True

    return _handle


async def setup_action_handlers(
    api: BondApiClient,
    bus: MessageBus,
    *,
    topic_prefix: str = DEFAULT_TOPIC_PREFIX,
) -> list[str]:
    """Subscribe to an action topic for every action of every device.

    Devices are fetched concurrently.

    Returns:
        The subscribed topics.

    Raises:
        BondApiError: If device discovery fails.
        ConnectionError: If a subscription cannot be made.
    """
    device_ids = await api.get_device_ids()
    logger.info("bridge_devices_found", device_ids=device_ids)

    devices = await asyncio.gather(*[api.get_device(device_id) for device_id in device_ids])

    topics: list[str] = []
    for device_id, device in zip(device_ids, devices, strict=True):
        logger.info("bridge_device_discovered", device_id=device_id, name=device.name, actions=device.actions)
        for action_id in device.actions:
            topic = action_topic(topic_prefix, device_id, action_id)
            await bus.subscribe(topic, make_action_handler(api, device_id, action_id))
            topics.append(topic)
    return topics
