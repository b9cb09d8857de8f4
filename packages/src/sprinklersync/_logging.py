"""Structured JSON log formatter and logging configuration.

One JSON object per log record (NDJSON), so that container log drivers
and aggregators can filter on fields without a parser.  Each line carries
the ``service`` name and ``version``; records emitted through a
:func:`controller_logger` adapter also carry the ``controller`` host they
concern, which matters once several bridges share one log stream.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from sprinklersync._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Fields: ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
    ``message``, ``service``, plus ``version`` when non-empty,
    ``controller`` when the record was tagged by a
    :class:`ControllerLogAdapter`, and ``exception``/``stack_info``
    when present.

    Args:
        service: Application name included in every log line.
        version: Application version string.  Omitted when empty.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        controller = getattr(record, "controller", None)
        if controller:
            entry["controller"] = controller

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


class ControllerLogAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Tags records with the controller they concern.

    The text format gets a ``[host]`` prefix on the message; the JSON
    format picks the value up as the ``controller`` field.
    """

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra or {})
        kwargs["extra"] = extra
        return f"[{extra.get('controller')}] {msg}", kwargs


def controller_logger(name: str, controller: str | None) -> ControllerLogAdapter:
    """Return a logger adapter for *name* tagged with *controller*."""
    return ControllerLogAdapter(logging.getLogger(name), {"controller": controller})


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Clears existing root handlers, installs a stderr handler and, when
    ``settings.file`` is set, a size-rotated file handler.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MEGABYTE,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
