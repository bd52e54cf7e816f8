"""
Persisted client settings.

Settings live in the key/value store as one JSON object merged over the
defaults of ``ClientSettings``.
"""

import logging
from typing import Any

from ..storage.kv_store import KeyValueStore
from ..storage.models import ClientSettings

logger = logging.getLogger(__name__)


class SettingsStore:
    """Reads and writes ``ClientSettings`` through the key/value store."""

    def __init__(self, store: KeyValueStore, key: str):
        self.store = store
        self.key = key

    async def get_settings(self) -> ClientSettings:
        """Return persisted settings, or the defaults if none can be read."""
        stored = await self.store.get(self.key)
        if not isinstance(stored, dict):
            return ClientSettings()
        try:
            return ClientSettings.from_dict(stored)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring invalid persisted settings: %s", e)
            return ClientSettings()

    async def update_settings(self, **changes: Any) -> ClientSettings:
        """Apply a partial update and persist the full settings.

        Raises:
            ValueError: If a setting is unknown or invalid
            StorageError: If the settings cannot be saved
        """
        current = await self.get_settings()
        updated = current.merged(**changes)
        await self.store.set(self.key, updated.to_dict())
        logger.info("Client settings updated: %s", sorted(changes))
        return updated

    async def reset_settings(self) -> None:
        """Drop persisted settings so the defaults apply again.

        Raises:
            StorageError: If the settings cannot be removed
        """
        await self.store.remove(self.key)
