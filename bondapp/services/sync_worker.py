"""
Background retry of pending pushes.

A save whose push failed leaves its key in ``pending_pushes``.  This
worker wakes periodically and, while the device is online, asks the
orchestrator to push those collections again.  A cycle that leaves
anything pending counts as a failure, and consecutive failures stretch the
wait between cycles:

    wait = min(base * 2 ** min(failures, 6), max)

The first clean cycle resets the wait to ``base``.
"""

from __future__ import annotations

import threading
from typing import Optional

from bondapp.config import AppConfig
from bondapp.errors import StorageFailure
from bondapp.logger import StructuredLogger
from bondapp.services.base_service import BaseService
from bondapp.services.sync_orchestrator import ConnectivitySignal, SyncOrchestrator


class SyncWorkerService(BaseService):
    """Daemon thread calling :meth:`SyncOrchestrator.retry_pending`.

    Parameters
    ----------
    orchestrator:
        Does the pushing.
    connectivity:
        Cycles are skipped while ``is_online`` is false.
    config:
        ``RETRY_BASE_INTERVAL_S`` and ``RETRY_MAX_INTERVAL_S``.
    logger:
        Structured logger.
    """

    _MAX_BACKOFF_EXPONENT: int = 6
    _JOIN_TIMEOUT_S: float = 10.0

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        connectivity: ConnectivitySignal,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._orchestrator = orchestrator
        self._connectivity = connectivity
        self._base_interval_s: float = config.RETRY_BASE_INTERVAL_S
        self._max_interval_s: float = config.RETRY_MAX_INTERVAL_S
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._consecutive_failures: int = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def start(self) -> None:
        """Start the retry thread.  No-op if it is already running."""
        if self.is_running:
            return
        self._wake.clear()
        self._consecutive_failures = 0
        self._thread = threading.Thread(target=self._run_loop, name="SyncWorker", daemon=True)
        self._thread.start()
        self._logger.info("Pending-push retries every %.1f s.", self._base_interval_s)

    def stop(self) -> None:
        """Stop the retry thread and wait for it.  No-op if not running."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._wake.set()
        thread.join(timeout=self._JOIN_TIMEOUT_S)
        if thread.is_alive():
            self._logger.warning("Sync worker still busy after %.0f s.", self._JOIN_TIMEOUT_S)
        else:
            self._logger.info("Sync worker stopped.")

    def run_cycle(self) -> int:
        """Push every pending collection once; return how many went through."""
        if not self._connectivity.is_online:
            return 0

        try:
            pushed = self._orchestrator.retry_pending()
            still_pending = self._orchestrator.status().pending
        except StorageFailure:
            self._consecutive_failures += 1
            self._logger.warning("Pending pushes could not be read.", exc_info=True)
            return 0

        if still_pending:
            self._consecutive_failures += 1
            self._logger.warning(
                "%d collection(s) still pending after retry: %s",
                len(still_pending), ", ".join(still_pending),
            )
        else:
            self._consecutive_failures = 0
        if pushed:
            self._logger.info("Retried pushes delivered %d collection(s).", pushed)
        return pushed

    def _run_loop(self) -> None:
        try:
            while not self._wake.wait(timeout=self._calculate_backoff_interval()):
                self.run_cycle()
        except Exception:
            self._logger.error("Sync worker died.", exc_info=True)

    def _calculate_backoff_interval(self) -> float:
        exponent = min(self._consecutive_failures, self._MAX_BACKOFF_EXPONENT)
        return min(self._base_interval_s * 2 ** exponent, self._max_interval_s)
