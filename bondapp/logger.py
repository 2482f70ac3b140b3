"""
Logging for the sync layer: JSON lines under one ``bondapp`` logger tree.

Every component logs through a child of the ``bondapp`` logger
(``bondapp.services``, ``bondapp.database``, ...).  Handlers live on the
``bondapp`` parent only, installed the first time any
:class:`StructuredLogger` is built, so all components share one stdout
stream and one rotating log file.

Each line is a JSON object.  The sync context fields that matter when
reading a trail of conflict overwrites, pending pushes and repairs
(``key``, ``device_id``, ``phase``, ``rule``) are lifted to the top level
when passed through ``extra``; anything else lands under ``"extra"``.
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union

ROOT_LOGGER_NAME: str = "bondapp"

_CONTEXT_FIELDS: tuple[str, ...] = ("key", "device_id", "phase", "rule")

_root_lock: threading.Lock = threading.Lock()


class JSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line.

    Keys: ``timestamp`` (ISO-8601, UTC), ``level``, ``logger_name``,
    ``message``, any of the sync context fields, ``extra`` and
    ``exception`` when present.
    """

    _STANDARD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Union[str, dict[str, str]]] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra_fields: dict[str, str] = {}
        for name, value in record.__dict__.items():
            if name in self._STANDARD_ATTRS:
                continue
            if name in _CONTEXT_FIELDS:
                entry[name] = str(value)
            else:
                extra_fields[name] = str(value)
        if extra_fields:
            entry["extra"] = extra_fields

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


def qualified_name(name: str) -> str:
    """Place *name* under the ``bondapp`` logger hierarchy."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return name
    return f"{ROOT_LOGGER_NAME}.{name}"


def _install_root_handlers(
    stream: Optional[TextIO],
    log_file: str,
    max_bytes: int,
    backup_count: int,
) -> None:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    with _root_lock:
        if root.handlers:
            return
        root.setLevel(logging.DEBUG)
        root.propagate = False
        formatter = JSONFormatter()

        stream_handler = logging.StreamHandler(stream or sys.stdout)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError as exc:
            root.warning(
                "Could not open log file '%s': %s. Logging to console only.",
                log_file,
                exc,
            )
            return
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


class StructuredLogger:
    """Injectable logger for one component.

    The wrapped ``logging.Logger`` is exposed as :attr:`logger`; the usual
    level methods are delegated.  The first instance created configures
    the shared handlers from its arguments (or ``AppConfig``); later
    instances only pick their own level.

    Usage::

        log = StructuredLogger(name="sync")
        log.info("Pushed collection", extra={"key": "members"})
    """

    def __init__(
        self,
        name: str = ROOT_LOGGER_NAME,
        level: int = logging.INFO,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        # Lazy import to avoid circular dependency at module level
        from bondapp.config import get_config
        _cfg = get_config()

        _install_root_handlers(
            stream=stream,
            log_file=log_file or _cfg.LOG_FILE,
            max_bytes=max_bytes if max_bytes is not None else _cfg.LOG_MAX_BYTES,
            backup_count=backup_count if backup_count is not None else _cfg.LOG_BACKUP_COUNT,
        )
        self._logger: logging.Logger = logging.getLogger(qualified_name(name))
        self._logger.setLevel(level)

    @property
    def logger(self) -> logging.Logger:
        """Access the underlying ``logging.Logger`` directly."""
        return self._logger

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = ROOT_LOGGER_NAME) -> StructuredLogger:
    """Return a :class:`StructuredLogger` for the component *name*."""
    return StructuredLogger(name=name)
