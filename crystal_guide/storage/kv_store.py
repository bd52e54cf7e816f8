"""
Persistent key/value store.

Stores JSON-serializable values under string keys in a single SQLite table.
All public operations are coroutines; the blocking SQLite work runs in a
worker thread.

Read contract: reads never raise. ``lookup`` reports whether a key was
found, absent, corrupt or unreadable; ``get`` collapses everything but
``FOUND`` into the caller's default. Writes (``set``, ``remove``, ``clear``)
raise ``StorageError`` and must be handled by the immediate caller.
"""

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from ..core.errors import StorageError
from .db import get_connection

logger = logging.getLogger(__name__)


class LookupStatus(Enum):
    """Outcome of reading a single key."""
    FOUND = "found"
    ABSENT = "absent"
    CORRUPT = "corrupt"        # stored text is not valid JSON
    UNREADABLE = "unreadable"  # the read itself failed


@dataclass(frozen=True)
class Lookup:
    """Result of ``KeyValueStore.lookup``."""
    status: LookupStatus
    value: Any = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class KeyValueStore:
    """SQLite-backed store of JSON values keyed by string."""

    def __init__(self, db_path: str = "crystal_guide.db"):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # -- schema ---------------------------------------------------------

    def _create_table(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    async def initialize_schema(self) -> None:
        """Create the kv_store table if it doesn't exist.

        Raises:
            StorageError: If the database cannot be created
        """
        try:
            await asyncio.to_thread(self._create_table)
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to initialize storage at %s: %s", self.db_path, e)
            raise StorageError(f"Could not initialize storage: {e}") from e

    # -- blocking primitives ----------------------------------------------

    def _read(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def _write(self, key: str, text: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO kv_store (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (key, text))
            conn.commit()
        finally:
            conn.close()

    def _delete(self, key: Optional[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            if key is None:
                conn.execute("DELETE FROM kv_store")
            else:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def _list_keys(self) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT key FROM kv_store ORDER BY key")
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    # -- public API -------------------------------------------------------

    async def lookup(self, key: str) -> Lookup:
        """Read ``key`` and report exactly what was found.

        Args:
            key: Storage key

        Returns:
            Lookup with status and, when FOUND, the decoded value
        """
        try:
            text = await asyncio.to_thread(self._read, key)
        except (sqlite3.Error, OSError) as e:
            logger.warning("Failed to read %s: %s", key, e)
            return Lookup(LookupStatus.UNREADABLE)

        if text is None:
            return Lookup(LookupStatus.ABSENT)

        try:
            return Lookup(LookupStatus.FOUND, json.loads(text))
        except json.JSONDecodeError as e:
            logger.warning("Stored value for %s is not valid JSON: %s", key, e)
            return Lookup(LookupStatus.CORRUPT)

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under ``key`` or ``default``.

        Absent keys, corrupt values and read failures all yield ``default``.
        """
        result = await self.lookup(key)
        return result.value if result.found else default

    async def set(self, key: str, value: Any) -> None:
        """Serialize ``value`` to JSON and store it under ``key``.

        Raises:
            StorageError: If the value is not JSON-serializable or the write fails
        """
        try:
            text = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error("Value for %s is not JSON-serializable: %s", key, e)
            raise StorageError(f"Failed to store {key}: {e}", key=key) from e

        try:
            await asyncio.to_thread(self._write, key, text)
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to store %s: %s", key, e)
            raise StorageError(f"Failed to store {key}: {e}", key=key) from e
        logger.debug("Stored %s", key)

    async def remove(self, key: str) -> None:
        """Delete ``key``. Removing an absent key is not an error.

        Raises:
            StorageError: If the delete fails
        """
        try:
            await asyncio.to_thread(self._delete, key)
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to remove %s: %s", key, e)
            raise StorageError(f"Failed to remove {key}: {e}", key=key) from e
        logger.debug("Removed %s", key)

    async def clear(self) -> None:
        """Delete every key.

        Raises:
            StorageError: If the wipe fails
        """
        try:
            await asyncio.to_thread(self._delete, None)
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to clear storage: %s", e)
            raise StorageError(f"Failed to clear storage: {e}") from e
        logger.debug("Storage cleared")

    async def keys(self) -> List[str]:
        """Return all stored keys, sorted. Degrades to ``[]`` on read failure."""
        try:
            return await asyncio.to_thread(self._list_keys)
        except (sqlite3.Error, OSError) as e:
            logger.warning("Failed to list keys: %s", e)
            return []
