"""bondhome-mqtt configuration management using pydantic-settings.

Loads settings from environment variables (with BONDHOME_ prefix) and .env files.
Nested settings use '__' as delimiter (e.g., BONDHOME_MQTT__PORT=8883).
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bondhome.observability.logging_config import LogFormat


class BridgeSettings(BaseModel):
    """Bond bridge connection settings."""

    host: str = ""
    token: str = ""
    scheme: str = "http"
    push_port: int = 30007
    api_timeout_s: float = 10.0

    @property
    def api_url(self) -> str:
        return f"{self.scheme}://{self.host}"


class PushSettings(BaseModel):
    """Push session timing (BPUP)."""

    handshake_timeout_s: float = 5.0
    keepalive_period_s: float = 60.0
    keepalive_initial_backoff_s: float = 1.0
    keepalive_budget_s: float = 120.0
    receive_timeout_s: float = 10.0


class MqttSettings(BaseModel):
    """MQTT broker settings."""

    host: str = ""
    port: int = 1883
    client_id: str | None = None  # host name when unset
    username: str | None = None
    password: str | None = None
    qos: int = 0
    topic_prefix: str = "bondhome"


class LogSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    format: LogFormat = LogFormat.CONSOLE


class BondSettings(BaseSettings):
    """Root settings for bondhome-mqtt.

    Settings are loaded from environment variables with the BONDHOME_ prefix
    and from .env files. Nested settings use '__' as delimiter.

    Examples:
        BONDHOME_BRIDGE__HOST=192.168.1.20
        BONDHOME_BRIDGE__TOKEN=abcdef0123456789
        BONDHOME_MQTT__HOST=mqtt.local
        BONDHOME_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="BONDHOME_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    push: PushSettings = Field(default_factory=PushSettings)
    mqtt: MqttSettings = Field(default_factory=MqttSettings)
    log: LogSettings = Field(default_factory=LogSettings)


def get_settings(**overrides: object) -> BondSettings:
    """Create a BondSettings instance with optional overrides."""
    return BondSettings(**overrides)
