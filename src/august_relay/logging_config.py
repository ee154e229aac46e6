"""Loguru sinks for the relay.

Replies stream to stdout, so logs go to a rotating file unless a stderr sink
is configured. Every record carries a ``conversation`` extra; the relay
binds it with ``logger.contextualize`` for the lifetime of an exchange.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

DEFAULT_LOG_PATH = ".august/august.log"

# stdlib loggers of the HTTP and socket.io stacks log every request at INFO.
LIBRARY_LOGGERS = ("httpx", "httpcore", "socketio", "engineio")

_STDERR_FORMAT = "<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> <cyan>{name}</cyan> {message}"
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <8} [{extra[conversation]}] {name}:{line} {message}"


@dataclass(frozen=True)
class StderrSink:
    level: str

    def attach(self) -> int:
        return logger.add(sys.stderr, level=self.level, format=_STDERR_FORMAT)

    def __str__(self) -> str:
        return f"stderr ({self.level})"


@dataclass(frozen=True)
class FileSink:
    level: str
    path: str = DEFAULT_LOG_PATH
    rotation: str = "5 MB"
    retention: int = 5
    serialize: bool = False

    def attach(self) -> int:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self.path,
            level=self.level,
            format=_FILE_FORMAT,
            rotation=self.rotation,
            retention=self.retention,
            serialize=self.serialize,
        )

    def __str__(self) -> str:
        kind = "json lines" if self.serialize else "text"
        return f"file {self.path} ({kind}, {self.level}, rotates at {self.rotation})"


_SINK_TYPES: dict[str, type] = {"console": StderrSink, "file": FileSink}


def build_sinks(level: str, consumers: list[dict[str, Any]] | None) -> tuple[list, list[str]]:
    """Turn ``LogConsumers`` entries into sinks.

    Returns the sinks and a description of every entry that was rejected.
    """
    sinks: list = []
    rejected: list[str] = []
    for entry in consumers if consumers is not None else [{"type": "file"}]:
        options = dict(entry)
        kind = str(options.pop("type", ""))
        sink_type = _SINK_TYPES.get(kind)
        if sink_type is None:
            rejected.append(f"unknown type {kind!r}")
            continue
        sink_level = str(options.pop("level", level)).upper()
        try:
            sinks.append(sink_type(level=sink_level, **options))
        except TypeError as ex:
            rejected.append(f"{kind}: {ex}")
    return sinks, rejected


def setup_logging(level: str = "INFO", consumers: list[dict[str, Any]] | None = None) -> list[str]:
    """Install the configured sinks and return a description of each one."""
    logger.remove()
    logger.configure(extra={"conversation": "-"})
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    sinks, rejected = build_sinks(level.upper(), consumers)
    for sink in sinks:
        sink.attach()
    for problem in rejected:
        logger.warning(f"Ignoring log consumer: {problem}")
    return [str(sink) for sink in sinks]
