"""
Device Identity Service.

Every installation tags its writes with a stable, random device id so that
its own changes can be recognised when the remote mirror echoes them back.
The id is created on first use, persisted in ``app_settings`` and never
rotated::

    device_<epoch-ms>_<9 base-36 chars>

When the settings table cannot be read or written the service still returns
an id (kept in memory for the life of the process) and logs that echo
suppression will not survive a restart.
"""

from __future__ import annotations

import secrets
import string
import time
from typing import Callable, Optional

from bondapp.logger import StructuredLogger
from bondapp.models.sync_models import DeviceId
from bondapp.services.app_settings_service import AppSettingsService
from bondapp.services.base_service import BaseService

_ALPHABET: str = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH: int = 9


def generate_device_id(now_ms: Optional[int] = None) -> DeviceId:
    """Synthesize a new device id from the current time and random entropy."""
    millis = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return DeviceId(f"device_{millis}_{suffix}")


class DeviceIdentityService(BaseService):
    """Get-or-create access to this installation's :data:`DeviceId`.

    Parameters
    ----------
    settings:
        Settings service backing the persisted id.
    logger:
        Structured logger.
    id_factory:
        Generator for new ids; replaceable in tests.
    """

    def __init__(
        self,
        settings: AppSettingsService,
        logger: StructuredLogger,
        id_factory: Callable[[], DeviceId] = generate_device_id,
    ) -> None:
        super().__init__(logger)
        self._settings = settings
        self._id_factory = id_factory
        self._cached: Optional[DeviceId] = None
        self._degraded: bool = False

    @property
    def degraded(self) -> bool:
        """``True`` when the id in use could not be persisted."""
        return self._degraded

    def get_or_create(self) -> DeviceId:
        """Return the persisted device id, creating it on first call.

        Never raises.  Repeated calls return the same id.
        """
        if self._cached is not None:
            return self._cached

        stored = self._settings.get_device_id()
        if stored:
            self._cached = DeviceId(stored)
            return self._cached

        device_id = self._id_factory()
        if self._settings.set_device_id(device_id):
            self._logger.info("New device id created: %s", device_id)
        else:
            self._degraded = True
            self._logger.warning(
                "Device id %s could not be persisted; using an in-memory id. "
                "Own writes echoed after a restart will not be recognised.",
                device_id,
            )
        self._cached = device_id
        return device_id
