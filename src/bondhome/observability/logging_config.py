"""Structured logging configuration.

structlog renders every event either as one JSON object per line (for log
shippers) or as coloured console text. On top of the renderer the chain
can inject fixed context, apply per-component levels and drop events for
other bridges.

Every module binds a ``component`` key on its logger (``push``,
``keepalive``, ``api``, ``relay``, ``mqtt``); that key is what
:meth:`LoggingConfig.set_level` matches on.
"""

from __future__ import annotations

__all__ = [
    "LogFilter",
    "LogFormat",
    "LoggingConfig",
    "configure_bondhome_logging",
]

import logging
import sys
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

EventDict = dict[str, Any]


def _level_number(name: str) -> int | None:
    number = logging.getLevelName(name.upper())
    return number if isinstance(number, int) else None


class LogFormat(StrEnum):
    """Output renderers."""

    JSON = "json"
    CONSOLE = "console"


class LogFilter:
    """Drop events that do not match every configured criterion.

    Example::

        LogFilter().by_bridge("192.168.1.20:30007").by_level("warning")
    """

    def __init__(self) -> None:
        self._bridges: set[str] = set()
        self._floor: int | None = None

    def by_bridge(self, bridge: str) -> LogFilter:
        """Keep only events whose ``bridge`` key is *bridge*. Repeat to allow more."""
        self._bridges.add(bridge)
        return self

    def by_level(self, min_level: str) -> LogFilter:
        """Keep only events at *min_level* or above.

        Raises:
            ValueError: If *min_level* is not a level name.
        """
        number = _level_number(min_level)
        if number is None:
            msg = f"Unknown log level: {min_level!r}"
            raise ValueError(msg)
        self._floor = number
        return self

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        if self._bridges and event_dict.get("bridge") not in self._bridges:
            raise structlog.DropEvent
        if self._floor is not None and (_level_number(method_name) or logging.DEBUG) < self._floor:
            raise structlog.DropEvent
        return event_dict


class LoggingConfig(BaseModel):
    """What :func:`configure_bondhome_logging` sets up.

    Attributes:
        level: Minimum level for all events.
        format: Renderer to use.
        output: ``"stdout"`` or ``"stderr"``.
        component_levels: Stricter minimum levels keyed by ``component``.
        context: Keys added to every event that does not already carry them.
        log_filter: Extra :class:`LogFilter` applied before rendering.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = "INFO"
    format: LogFormat = LogFormat.CONSOLE
    output: str = "stderr"
    component_levels: dict[str, str] = Field(default_factory=dict)
    context: dict[str, str] = Field(default_factory=dict)
    log_filter: LogFilter | None = None

    def set_level(self, component: str, level: str) -> LoggingConfig:
        self.component_levels[component] = level.upper()
        return self

    def add_context(self, key: str, value: str) -> LoggingConfig:
        self.context[key] = value
        return self


# --- processors -------------------------------------------------------------


def _add_timestamp(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now(tz=UTC).isoformat()
    return event_dict


def _add_log_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = method_name
    return event_dict


def _make_context_injector(context: dict[str, str]) -> structlog.types.Processor:
    fixed = dict(context)

    def _inject(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        return {**fixed, **event_dict}

    return _inject


def _make_component_level_filter(component_levels: dict[str, str]) -> structlog.types.Processor:
    floors = {component: _level_number(level) or logging.DEBUG for component, level in component_levels.items()}

    def _filter(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        floor = floors.get(event_dict.get("component", ""))
        if floor is not None and (_level_number(method_name) or logging.DEBUG) < floor:
            raise structlog.DropEvent
        return event_dict

    return _filter


def _build_processor_chain(config: LoggingConfig) -> list[structlog.types.Processor]:
    chain: list[structlog.types.Processor] = [_add_timestamp, _add_log_level]
    if config.context:
        chain.append(_make_context_injector(config.context))
    if config.component_levels:
        chain.append(_make_component_level_filter(config.component_levels))
    if config.log_filter is not None:
        chain.append(config.log_filter)
    chain.append(structlog.processors.format_exc_info)
    renderer = (
        structlog.processors.JSONRenderer()
        if config.format is LogFormat.JSON
        else structlog.dev.ConsoleRenderer()
    )
    chain.append(renderer)
    return chain


def configure_bondhome_logging(config: LoggingConfig | None = None) -> LoggingConfig:
    """Apply *config* to structlog and to stdlib logging.

    Stdlib loggers (paho, httpx) are routed to the same stream and never
    go below WARNING.

    Returns:
        The configuration that was applied.
    """
    config = config or LoggingConfig()
    level = _level_number(config.level) or logging.INFO
    stream = sys.stdout if config.output == "stdout" else sys.stderr

    logging.basicConfig(
        format="%(levelname)s %(name)s: %(message)s",
        stream=stream,
        level=max(level, logging.WARNING),
        force=True,
    )
    structlog.configure(
        processors=_build_processor_chain(config),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
    return config
