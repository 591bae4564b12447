from __future__ import annotations

import errno
import os
import re
import sys
from dataclasses import dataclass
from typing import IO, Any, TextIO, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_TOKEN_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"bot\d+:[A-Za-z0-9_-]+"), "bot[REDACTED]"),
    (re.compile(r"\b\d+:[A-Za-z0-9_-]{10,}\b"), "[REDACTED_TOKEN]"),
    (re.compile(r"\br8_[A-Za-z0-9]{20,}\b"), "[REDACTED_TOKEN]"),
)

_LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
    "critical": 50,
}

_TRUTHY = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True, slots=True)
class LogOptions:
    level: str = "info"
    json: bool = False
    color: bool = False
    file: str | None = None

    @classmethod
    def from_env(cls, *, debug: bool = False) -> LogOptions:
        level = os.environ.get("BELAYNISH_LOG_LEVEL", "info").strip().lower()
        if debug:
            level = "debug"
        if level not in _LEVELS:
            level = "info"
        color = os.environ.get("BELAYNISH_LOG_COLOR")
        fmt = os.environ.get("BELAYNISH_LOG_FORMAT", "console").strip().lower()
        return cls(
            level=level,
            json=fmt == "json",
            color=sys.stdout.isatty()
            if color is None
            else color.strip().lower() in _TRUTHY,
            file=os.environ.get("BELAYNISH_LOG_FILE") or None,
        )


def redact_text(value: str) -> str:
    for pattern, replacement in _TOKEN_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def _redact(value: Any) -> Any:
    match value:
        case str():
            return redact_text(value)
        case bytes() | bytearray():
            return redact_text(bytes(value).decode("utf-8", errors="replace"))
        case dict():
            return {key: _redact(item) for key, item in value.items()}
        case list():
            return [_redact(item) for item in value]
        case tuple():
            return tuple(_redact(item) for item in value)
        case _:
            return value


def _redact_event_dict(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    _ = logger, method_name
    return _redact(event_dict)


def _add_logger_name(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    name = event_dict.pop("logger_name", None)
    if "logger" not in event_dict and isinstance(name, str) and name:
        event_dict["logger"] = name
    return event_dict


class _JsonLinesFile:
    """Processor that appends each event as one JSON line to a file."""

    def __init__(self, path: str) -> None:
        self._handle: IO[str] = open(path, "a", encoding="utf-8")
        self._render = structlog.processors.JSONRenderer(default=str)

    def __call__(
        self, logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        try:
            line = self._render(logger, method_name, dict(event_dict))
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")
            self._handle.write(line + "\n")
            self._handle.flush()
        except (OSError, ValueError):
            return event_dict
        return event_dict

    def close(self) -> None:
        self._handle.close()


_file_sink: _JsonLinesFile | None = None


class PipeSafeStream:
    """Stdout wrapper that goes quiet once the reading end has gone away."""

    def __init__(self, stream: IO[str]) -> None:
        self._stream = stream
        self._gone = False

    def write(self, message: str) -> int:
        if self._gone:
            return 0
        try:
            return self._stream.write(message)
        except (BrokenPipeError, ValueError):
            self._gone = True
            return 0
        except OSError as exc:
            if exc.errno != errno.EPIPE:
                raise
            self._gone = True
            return 0

    def flush(self) -> None:
        if self._gone:
            return
        try:
            self._stream.flush()
        except (BrokenPipeError, ValueError):
            self._gone = True


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bind_job_context(**fields: Any) -> None:
    structlog.contextvars.bind_contextvars(**fields)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def setup_logging(
    *, debug: bool = False, cache_logger_on_first_use: bool = True
) -> None:
    """Configure structlog from ``BELAYNISH_LOG_*`` environment variables.

    Secrets are redacted before any sink sees an event. ``BELAYNISH_LOG_FILE``
    adds a JSON-lines copy of every event next to the stdout renderer.
    """
    global _file_sink

    options = LogOptions.from_env(debug=debug)
    if _file_sink is not None:
        _file_sink.close()
        _file_sink = None
    if options.file:
        try:
            _file_sink = _JsonLinesFile(options.file)
        except OSError:
            _file_sink = None

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        _add_logger_name,
    ]
    if options.json:
        processors.append(structlog.processors.format_exc_info)
    processors.append(_redact_event_dict)
    if _file_sink is not None:
        processors.append(_file_sink)
    if options.json:
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=options.color))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS[options.level]),
        logger_factory=structlog.PrintLoggerFactory(
            file=cast(TextIO, PipeSafeStream(sys.stdout))
        ),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
