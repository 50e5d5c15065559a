"""Structured logging for pidash.

Builds on Python's standard logging module with:
- Structured data support (key=value pairs attached to every record)
- JSON formatting option for journald/log shippers
- Context management for per-stream and per-request fields

Security Note:
    Filenames, schedule ids and client ids arrive from HTTP requests.
    Pass them as keyword arguments, never interpolated into the message:

    # SAFE - structured data is escaped by the formatter
    logger.info("Image deleted", filename=untrusted_name)

    # UNSAFE - CRLF in the filename could forge a log line
    logger.info(f"Image {untrusted_name} deleted")

Example:
    logger = get_logger(__name__)
    logger.info("Daemon started")
    logger.info("Camera detected", type="csi", device="/dev/video0")

    with LogContext(session_id="a1b2", client_id="192.168.1.20"):
        logger.info("Frame captured", bytes=48213)

    configure_logging(json_format=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, cast

#: Name of the package root logger all pidash loggers hang from.
ROOT_LOGGER_NAME = "pidash"

#: Record attribute the formatters read key/value pairs from.
STRUCTURED_ATTR = "structured_data"

# Context variable for structured logging context
_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger accepting keyword arguments as structured data.

    The stdlib level methods (info, warning, exception, ...) forward their
    keyword arguments to ``_log``. Anything that is not a ``_log`` keyword
    of its own becomes a structured field on the record.

    Usage:
        logger = StructuredLogger("pidash.devices.stream")
        logger.info("Session opened", client_id="10.0.0.4", width=1280)
    """

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: Mapping[str, object] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        extra = dict(extra or {})
        # Explicit fields win over ambient LogContext values.
        extra[STRUCTURED_ATTR] = {**_log_context.get(), **fields}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Fields attached by StructuredLogger; empty for third-party records."""
    return getattr(record, STRUCTURED_ATTR, None) or {}


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter.

    Format: timestamp - name - level - message | key=value key=value
    """

    default_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        super().__init__(fmt or self.default_format, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format the base message and append structured pairs after ' | '.

        Returns:
            Formatted line, e.g.
            ``... - INFO - Schedule added | schedule_id=1718 time=22:00``.
        """
        line = super().format(record)
        fields = structured_fields(record) if self.include_structured else {}
        if not fields:
            return line
        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in fields.items())
        return f"{line} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line (NDJSON), structured fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **structured_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _format_value(value: Any) -> str:
    """Render a structured value for the key=value formatter.

    Example:
        >>> _format_value("22:00")
        '22:00'
        >>> _format_value("two words")
        '"two words"'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        # Quote anything that could split a pair or forge a new line.
        if any(ch in value for ch in " =\n\r\t"):
            return json.dumps(value)
        return value
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


class LogContext:
    """Add key-value pairs to every log record emitted inside the block.

    Backed by contextvars, so each asyncio task (one per stream session)
    sees its own context. Contexts nest; inner values override outer ones.

    Usage:
        with LogContext(session_id=session.session_id):
            logger.info("Capture started")  # includes session_id
    """

    def __init__(self, **fields: Any) -> None:
        self.fields = fields
        self._tokens: list[contextvars.Token[dict[str, Any]]] = []

    def __enter__(self) -> LogContext:
        self._tokens.append(_log_context.set({**_log_context.get(), **self.fields}))
        return self

    def __exit__(self, *exc: object) -> None:
        _log_context.reset(self._tokens.pop())


# =============================================================================
# Configuration
# =============================================================================

_handler: logging.Handler | None = None
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Attach one handler to the ``pidash`` logger root.

    Called once by the server entry point. A second call is ignored unless
    ``force`` is set, which replaces the existing handler.

    Args:
        level: Minimum level, int or name ('DEBUG', 'INFO', ...).
        json_format: Emit NDJSON instead of key=value lines.
        stream: Output stream, default sys.stderr.
        include_structured: Append key=value pairs in text mode.
        force: Replace an existing configuration.

    Example:
        >>> import io
        >>> buffer = io.StringIO()
        >>> configure_logging(level="DEBUG", stream=buffer, force=True)
    """
    with _config_lock:
        if force:
            _uninstall()
        if _handler is None:
            _install(level, json_format, stream, include_structured)


def _install(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    global _handler

    logging.setLoggerClass(StructuredLogger)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        JSONFormatter()
        if json_format
        else StructuredFormatter(include_structured=include_structured)
    )

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.addHandler(handler)
    root.propagate = False
    _handler = handler


def _uninstall() -> None:
    global _handler

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    _handler = None


def reset_logging() -> None:
    """Drop all pidash handlers so the next call reconfigures. For tests."""
    with _config_lock:
        _uninstall()


def get_logger(name: str) -> StructuredLogger:
    """Return a StructuredLogger, installing the default handler on first use.

    Args:
        name: Logger name, normally ``__name__`` (``pidash.data.schedules``).
    """
    with _config_lock:
        if _handler is None:
            _install()

    logger = logging.getLogger(name)
    # Loggers created before setLoggerClass() ran reject keyword fields.
    if not isinstance(logger, StructuredLogger):
        logger.__class__ = StructuredLogger
    return cast(StructuredLogger, logger)
