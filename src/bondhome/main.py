"""bondhome-mqtt launcher.

Relays device state from a Bond bridge's push feed to an MQTT broker and
executes device actions published on the broker.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys

import structlog
from pydantic import ValidationError

from bondhome.api.client import BondApiClient, BondApiError
from bondhome.config.settings import BondSettings
from bondhome.observability.logging_config import LogFormat, LoggingConfig, configure_bondhome_logging
from bondhome.push.errors import HandshakeError, KeepaliveExhaustedError, PushTransportError
from bondhome.push.session import open_session
from bondhome.relay.mqtt import MqttBus
from bondhome.relay.relay import relay_state_updates, setup_action_handlers

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Flags left unset fall back to ``BONDHOME_*`` environment settings.
    """
    try:
        from importlib.metadata import version as _pkg_version

        _version = _pkg_version("bondhome-mqtt")
    except Exception:
        _version = "0.0.0-dev"

    parser = argparse.ArgumentParser(
        prog="bondhome-mqtt",
        description="Relay a Bond Home bridge to an MQTT broker",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version}")
    parser.add_argument("--broker", type=str, default=None, help="MQTT broker host (or host:port)")
    parser.add_argument("--bridge", type=str, default=None, help="Host name or IP address of the Bond bridge")
    parser.add_argument("--token", type=str, default=None, help="Bond bridge local API token")
    parser.add_argument("--push-port", type=int, default=None, help="Bridge BPUP port (default: 30007)")
    parser.add_argument("--topic-prefix", type=str, default=None, help="MQTT topic prefix (default: bondhome)")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=[f.value for f in LogFormat],
        help="Log output format (default: console)",
    )
    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> BondSettings:
    """Merge CLI flags over environment settings."""
    settings = BondSettings(_env_file=args.env_file) if args.env_file else BondSettings()

    if args.broker:
        host, sep, port = args.broker.rpartition(":")
        if sep and port.isdigit():
            settings.mqtt.host, settings.mqtt.port = host, int(port)
        else:
            settings.mqtt.host = args.broker
    if args.bridge:
        settings.bridge.host = args.bridge
    if args.token:
        settings.bridge.token = args.token
    if args.push_port is not None:
        settings.bridge.push_port = args.push_port
    if args.topic_prefix:
        settings.mqtt.topic_prefix = args.topic_prefix
    if args.log_level:
        settings.log.level = args.log_level
    if args.log_format:
        settings.log.format = LogFormat(args.log_format)
    return settings


def _missing_required(settings: BondSettings) -> list[str]:
    missing = []
    if not settings.mqtt.host:
        missing.append("--broker")
    if not settings.bridge.host:
        missing.append("--bridge")
    if not settings.bridge.token:
        missing.append("--token")
    return missing


def _install_shutdown_handler(shutdown_event: asyncio.Event) -> None:
    """Set *shutdown_event* on SIGINT/SIGTERM."""

    def _on_signal() -> None:
        logger.warning("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _on_signal)


async def run(settings: BondSettings, shutdown_event: asyncio.Event) -> int:
    """Wire the broker, the bridge API and the push session, then relay until stopped.

    Returns:
        Process exit code.
    """
    bus = MqttBus(
        settings.mqtt.host,
        settings.mqtt.port,
        client_id=settings.mqtt.client_id,
        username=settings.mqtt.username,
        password=settings.mqtt.password,
        qos=settings.mqtt.qos,
    )
    try:
        await bus.connect()
    except ConnectionError as exc:
        logger.error("mqtt_connect_failed", error=str(exc))
        return EXIT_FAILURE

    api = BondApiClient(settings.bridge.api_url, settings.bridge.token, timeout_s=settings.bridge.api_timeout_s)
    try:
        try:
            await setup_action_handlers(api, bus, topic_prefix=settings.mqtt.topic_prefix)
        except (BondApiError, ConnectionError) as exc:
            logger.error("action_setup_failed", error=str(exc))
            return EXIT_FAILURE

        push = settings.push
        try:
            session = await open_session(
                (settings.bridge.host, settings.bridge.push_port),
                handshake_timeout_s=push.handshake_timeout_s,
                keepalive_period_s=push.keepalive_period_s,
                keepalive_initial_backoff_s=push.keepalive_initial_backoff_s,
                keepalive_budget_s=push.keepalive_budget_s,
            )
        except HandshakeError as exc:
            logger.error("push_handshake_failed", error=str(exc))
            return EXIT_FAILURE

        async with session:
            relay_task = asyncio.create_task(
                relay_state_updates(
                    session,
                    bus,
                    topic_prefix=settings.mqtt.topic_prefix,
                    receive_timeout_s=push.receive_timeout_s,
                ),
                name="bondhome-relay",
            )
            stop_task = asyncio.create_task(shutdown_event.wait())
            await asyncio.wait({relay_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            stop_task.cancel()

            if not relay_task.done():
                await session.close()
            try:
                await relay_task
            except (KeepaliveExhaustedError, PushTransportError) as exc:
                logger.error("push_session_failed", error=str(exc))
                return EXIT_FAILURE
        return EXIT_OK
    finally:
        await api.aclose()
        await bus.disconnect()


async def _async_main(settings: BondSettings) -> int:
    shutdown_event = asyncio.Event()
    _install_shutdown_handler(shutdown_event)
    return await run(settings, shutdown_event)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    try:
        settings = build_settings(args)
    except ValidationError as exc:
        print(f"bondhome-mqtt: invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(2)

    configure_bondhome_logging(
        LoggingConfig(level=settings.log.level.upper(), format=settings.log.format)
    )

    missing = _missing_required(settings)
    if missing:
        print(f"bondhome-mqtt: missing required option(s): {', '.join(missing)}", file=sys.stderr)
        sys.exit(2)

    logger.info(
        "bondhome_starting",
        broker=f"{settings.mqtt.host}:{settings.mqtt.port}",
        bridge=settings.bridge.host,
    )
    sys.exit(asyncio.run(_async_main(settings)))


if __name__ == "__main__":
    main()
