"""
Connectivity Monitor.

Answers "is the remote store reachable right now?" for ``status()`` and
the retry worker.  Reachability is a TCP connect to the Supabase host,
cached for a short window so that the UI can poll ``status()`` freely.

With no remote configured the monitor reports offline without connecting.
"""

from __future__ import annotations

import socket
import time
from typing import Callable, Optional
from urllib.parse import urlparse

from bondapp.logger import StructuredLogger
from bondapp.services.base_service import BaseService


class ConnectivityMonitor(BaseService):
    """Cached TCP reachability check.

    Parameters
    ----------
    check_url:
        URL of the remote store; host and port are derived from it.
        Empty means no remote is configured.
    logger:
        Structured logger.
    check_timeout_s:
        TCP connect timeout.
    cache_s:
        How long a check result is reused.
    monotonic:
        Time source for the cache; replaceable in tests.
    """

    def __init__(
        self,
        check_url: str,
        logger: StructuredLogger,
        check_timeout_s: float = 3.0,
        cache_s: float = 15.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(logger)
        self._check_timeout_s = check_timeout_s
        self._cache_s = cache_s
        self._monotonic = monotonic
        self._check_host: str = ""
        self._check_port: int = 443
        self._last_result: Optional[bool] = None
        self._last_checked: float = 0.0
        self.set_target_from_url(check_url)

    def set_target_from_url(self, url: str) -> None:
        """Extract host:port from the remote store URL."""
        parsed = urlparse(url) if url else None
        if parsed is None or not parsed.hostname:
            self._check_host = ""
            self._check_port = 443
        else:
            self._check_host = parsed.hostname
            try:
                port = parsed.port
            except ValueError:
                port = None
            self._check_port = port or (80 if parsed.scheme == "http" else 443)
        self.invalidate()

    @property
    def is_online(self) -> bool:
        """Cached reachability of the remote host."""
        if not self._check_host:
            return False

        now = self._monotonic()
        if self._last_result is not None and now - self._last_checked < self._cache_s:
            return self._last_result

        online = self._check_reachable()
        if online != self._last_result:
            self._logger.info(
                "Connectivity changed: %s", "online" if online else "offline",
            )
        self._last_result = online
        self._last_checked = now
        return online

    def invalidate(self) -> None:
        """Forget the cached result so the next query checks again."""
        self._last_result = None
        self._last_checked = 0.0

    def _check_reachable(self) -> bool:
        try:
            with socket.create_connection(
                (self._check_host, self._check_port), timeout=self._check_timeout_s,
            ):
                return True
        except OSError as exc:
            self._logger.debug(
                "Connection check to %s:%d failed: %s", self._check_host, self._check_port, exc,
            )
            return False
