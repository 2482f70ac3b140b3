"""Collection Binding.

The single integration surface for screens.  A binding holds the current
value of one collection and exposes ``set_data`` / ``refresh`` / ``sync``;
screens never touch the local store or the remote mirror themselves.

Remote updates arrive on the subscription thread.  ``on_update`` is called
from that thread, so a GUI toolkit must marshal it onto its own loop.
"""

from __future__ import annotations

from typing import Callable, Optional, Union

from bondapp.errors import StorageFailure
from bondapp.logger import StructuredLogger, get_logger
from bondapp.models.sync_models import Collection
from bondapp.repositories.remote_mirror import Subscription
from bondapp.services.sync_orchestrator import SyncOrchestrator

Updater = Callable[[Collection], Collection]
UpdateCallback = Callable[["CollectionBinding"], None]


class CollectionBinding:
    """Live view of one synchronised collection.

    Parameters
    ----------
    orchestrator:
        The sync façade.
    key:
        Collection key, e.g. ``"members"``.
    default:
        Value shown until the first load completes, and kept if it fails.
    listen:
        Subscribe to peer updates.
    auto_sync:
        ``set_data`` pushes when ``True``; otherwise it only writes locally.
    on_update:
        Called after every change of :attr:`data`, :attr:`loading` or
        :attr:`error`.
    logger:
        Structured logger.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        key: str,
        default: Optional[Collection] = None,
        listen: bool = True,
        auto_sync: bool = True,
        on_update: Optional[UpdateCallback] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._key = key
        self._auto_sync = auto_sync
        self._on_update = on_update
        self._logger = logger or get_logger("ui")
        self._subscription: Optional[Subscription] = None

        self.data: Collection = list(default or [])
        self.loading: bool = True
        self.error: Optional[str] = None

        if listen:
            self._subscription = orchestrator.subscribe(key, self._on_remote_change)

    @property
    def key(self) -> str:
        return self._key

    # ------------------------------------------------------------------
    # Hook API
    # ------------------------------------------------------------------

    def refresh(self) -> None:
        """Reload the collection through the orchestrator."""
        self.loading = True
        self.error = None
        self._notify()
        try:
            self.data = self._orchestrator.load(self._key)
        except StorageFailure as exc:
            self._logger.error("Error loading %s: %s", self._key, exc)
            self.error = f"Error cargando {self._key}"
        finally:
            self.loading = False
            self._notify()

    def set_data(self, value: Union[Collection, Updater]) -> None:
        """Replace the collection, or transform it with a callable."""
        self.error = None
        new_value = value(self.data) if callable(value) else value
        self.data = list(new_value)
        try:
            if self._auto_sync:
                self.data = self._orchestrator.save(self._key, self.data)
            else:
                self.data = self._orchestrator.save_local(self._key, self.data)
        except StorageFailure as exc:
            self._logger.error("Error saving %s: %s", self._key, exc)
            self.error = f"Error guardando {self._key}"
        self._notify()

    def sync(self) -> None:
        """Push the current in-memory value."""
        self.error = None
        try:
            self.data = self._orchestrator.save(self._key, self.data)
        except StorageFailure as exc:
            self._logger.error("Error syncing %s: %s", self._key, exc)
            self.error = f"Error sincronizando {self._key}"
        self._notify()

    def close(self) -> None:
        """Stop listening for remote changes.  Idempotent."""
        if self._subscription is not None:
            self._orchestrator.release(self._subscription)
            self._subscription = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_remote_change(self, data: Collection) -> None:
        self._logger.info("Remote change detected for %s", self._key)
        self.data = list(data)
        self._notify()

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self)


def bind_collection(
    orchestrator: SyncOrchestrator,
    key: str,
    default: Optional[Collection] = None,
    listen: bool = True,
    auto_sync: bool = True,
    on_update: Optional[UpdateCallback] = None,
) -> CollectionBinding:
    """Create a binding for *key* and load its current value."""
    binding = CollectionBinding(
        orchestrator,
        key,
        default=default,
        listen=listen,
        auto_sync=auto_sync,
        on_update=on_update,
    )
    binding.refresh()
    return binding
