"""Relay between the bridge and an MQTT broker."""

from bondhome.relay.mqtt import MqttBus
from bondhome.relay.relay import (
    MessageBus,
    normalize_action_payload,
    relay_state_updates,
    setup_action_handlers,
)

__all__ = [
    "MessageBus",
    "MqttBus",
    "normalize_action_payload",
    "relay_state_updates",
    "setup_action_handlers",
]
