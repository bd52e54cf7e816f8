"""
Unit tests for storage layer.

Tests schema creation, the key/value read/write contract and the persisted
record models.
"""

import os
import sqlite3
import tempfile
from datetime import date
from unittest.mock import patch

import pytest

from crystal_guide.core.errors import StorageError
from crystal_guide.storage.db import get_connection
from crystal_guide.storage.kv_store import KeyValueStore, LookupStatus
from crystal_guide.storage.models import ClientSettings, UsageRecord


class TestStorageSchema:
    """Test database schema creation and structure."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_schema_creation(self):
        """Verify table is created correctly."""
        await KeyValueStore(self.db_path).initialize_schema()

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("PRAGMA table_info(kv_store)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == ["key", "value"]
        finally:
            conn.close()

    @pytest.mark.asyncio
    async def test_schema_creation_is_idempotent(self):
        """Initializing twice keeps existing data."""
        store = KeyValueStore(self.db_path)
        await store.initialize_schema()
        await store.set("k", 1)
        await store.initialize_schema()

        assert await store.get("k") == 1

    @pytest.mark.asyncio
    async def test_creates_missing_parent_directory(self):
        """A fresh data directory is created on first use."""
        nested = os.path.join(self.temp_dir, "data", "app", "test.db")
        store = KeyValueStore(nested)
        await store.initialize_schema()

        assert os.path.exists(nested)


class TestKeyValueStore:
    """Test the get/set/remove/clear contract."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.store = KeyValueStore(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_raw(self, key: str, text: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("INSERT INTO kv_store (key, value) VALUES (?, ?)", (key, text))
            conn.commit()
        finally:
            conn.close()

    @pytest.mark.asyncio
    async def test_set_and_get_values(self):
        """JSON values come back with their types."""
        await self.store.initialize_schema()
        await self.store.set("string", "sk-test")
        await self.store.set("object", {"daily_count": 3, "tags": ["a", "b"]})
        await self.store.set("flag", False)

        assert await self.store.get("string") == "sk-test"
        assert await self.store.get("object") == {"daily_count": 3, "tags": ["a", "b"]}
        assert await self.store.get("flag") is False

    @pytest.mark.asyncio
    async def test_set_overwrites(self):
        """Setting an existing key replaces its value."""
        await self.store.initialize_schema()
        await self.store.set("key", 1)
        await self.store.set("key", 2)

        assert await self.store.get("key") == 2
        assert await self.store.keys() == ["key"]

    @pytest.mark.asyncio
    async def test_get_absent_returns_default(self):
        """Missing keys read as None or the given default."""
        await self.store.initialize_schema()

        assert await self.store.get("missing") is None
        assert await self.store.get("missing", default=[]) == []
        assert (await self.store.lookup("missing")).status is LookupStatus.ABSENT

    @pytest.mark.asyncio
    async def test_corrupt_value_reads_as_absent(self):
        """Invalid JSON never raises to the reader but is reported as corrupt."""
        await self.store.initialize_schema()
        self._write_raw("broken", "{not json")

        assert await self.store.get("broken") is None
        lookup = await self.store.lookup("broken")
        assert lookup.status is LookupStatus.CORRUPT
        assert not lookup.found

    @pytest.mark.asyncio
    async def test_unreadable_store_reads_as_absent(self):
        """A read failure (no table yet) degrades to the default."""
        assert await self.store.get("anything", default="fallback") == "fallback"
        assert (await self.store.lookup("anything")).status is LookupStatus.UNREADABLE
        assert await self.store.keys() == []

    @pytest.mark.asyncio
    async def test_set_unserializable_raises(self):
        """Values that cannot be JSON-encoded raise StorageError."""
        await self.store.initialize_schema()

        with pytest.raises(StorageError) as excinfo:
            await self.store.set("bad", {"when": date(2024, 1, 1)})
        assert excinfo.value.key == "bad"

    @pytest.mark.asyncio
    async def test_write_failure_raises(self):
        """Database errors on write propagate as StorageError."""
        await self.store.initialize_schema()

        with patch.object(self.store, "_write", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(StorageError, match="disk I/O error"):
                await self.store.set("key", 1)

    @pytest.mark.asyncio
    async def test_remove(self):
        """Removed keys read as absent; removing twice is fine."""
        await self.store.initialize_schema()
        await self.store.set("key", "value")

        await self.store.remove("key")
        await self.store.remove("key")

        assert await self.store.get("key") is None

    @pytest.mark.asyncio
    async def test_remove_failure_raises(self):
        """Database errors on remove propagate as StorageError."""
        with pytest.raises(StorageError):
            await self.store.remove("key")

    @pytest.mark.asyncio
    async def test_clear(self):
        """Clear wipes every key."""
        await self.store.initialize_schema()
        await self.store.set("a", 1)
        await self.store.set("b", 2)

        await self.store.clear()

        assert await self.store.keys() == []

    @pytest.mark.asyncio
    async def test_keys_sorted(self):
        """Keys are listed in sorted order."""
        await self.store.initialize_schema()
        for key in ("c", "a", "b"):
            await self.store.set(key, key)

        assert await self.store.keys() == ["a", "b", "c"]


class TestUsageRecord:
    """Test the persisted usage record."""

    def test_zero(self):
        """A fresh record has zero counters and today's date."""
        record = UsageRecord.zero(date(2024, 3, 1))

        assert record.daily_count == 0
        assert record.total_requests == 0
        assert record.last_reset_date == "2024-03-01"

    def test_round_trip_through_dict(self):
        """to_dict output is accepted by from_dict."""
        record = UsageRecord(4, 40, "2024-03-01", 50, 45, 5)

        assert UsageRecord.from_dict(record.to_dict()) == record

    def test_from_dict_rejects_missing_fields(self):
        """Records missing a counter are invalid."""
        with pytest.raises(ValueError, match="missing 'failed_requests'"):
            UsageRecord.from_dict({
                "daily_count": 0, "monthly_count": 0, "last_reset_date": "2024-03-01",
                "total_requests": 0, "successful_requests": 0,
            })

    def test_from_dict_rejects_negative_counts(self):
        """Negative counters are invalid."""
        data = UsageRecord.zero(date(2024, 3, 1)).to_dict()
        data["daily_count"] = -1

        with pytest.raises(ValueError, match="non-negative"):
            UsageRecord.from_dict(data)

    def test_from_dict_rejects_non_object(self):
        """Only JSON objects are accepted."""
        with pytest.raises(ValueError):
            UsageRecord.from_dict([1, 2, 3])

    def test_recorded_keeps_totals_consistent(self):
        """Each recorded outcome bumps exactly one of successful/failed."""
        record = UsageRecord.zero(date(2024, 3, 1))
        for success in (True, False, True, True, False):
            record = record.recorded(success)
            assert record.total_requests == record.successful_requests + record.failed_requests

        assert record.daily_count == 5
        assert record.monthly_count == 5
        assert record.successful_requests == 3
        assert record.failed_requests == 2


class TestClientSettings:
    """Test client settings defaults and validation."""

    def test_defaults(self):
        """Defaults match the documented values."""
        settings = ClientSettings()

        assert settings.auto_retry is True
        assert settings.max_retries == 3
        assert settings.timeout_ms == 30000
        assert settings.enable_offline_queue is True
        assert settings.enable_usage_tracking is True
        assert settings.enable_analytics is True

    def test_merged_partial_update(self):
        """merged changes only the named fields."""
        settings = ClientSettings().merged(max_retries=5, auto_retry=False)

        assert settings.max_retries == 5
        assert settings.auto_retry is False
        assert settings.timeout_ms == 30000

    def test_merged_rejects_unknown_field(self):
        """Unknown settings are rejected."""
        with pytest.raises(ValueError, match="Unknown settings"):
            ClientSettings().merged(retries=5)

    @pytest.mark.parametrize("changes", [
        {"max_retries": 0},
        {"timeout_ms": 0},
        {"timeout_ms": -100},
        {"auto_retry": "yes"},
        {"max_retries": True},
    ])
    def test_invalid_values_rejected(self, changes):
        """Out-of-range or wrongly typed values are rejected."""
        with pytest.raises(ValueError):
            ClientSettings().merged(**changes)

    def test_from_dict_ignores_unknown_fields(self):
        """Persisted blobs from other versions still load."""
        settings = ClientSettings.from_dict({"max_retries": 2, "legacy": True})

        assert settings.max_retries == 2
