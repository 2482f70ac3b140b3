"""Base class for services: holds the injected logger."""

from __future__ import annotations

from bondapp.logger import StructuredLogger


class BaseService:
    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger
