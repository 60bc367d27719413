"""Tests for migration bookkeeping storage."""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from plugin_sql.core.exceptions import JournalConflictError
from plugin_sql.migrations.models import SchemaSnapshot
from plugin_sql.migrations.snapshot import generate_snapshot, snapshot_to_json
from plugin_sql.migrations.storage import (
    InMemoryJournalStorage,
    InMemoryMigrationTracker,
    InMemorySnapshotStorage,
    JournalStorage,
    MigrationTracker,
    PostgresJournalStorage,
    PostgresMigrationTracker,
    PostgresSnapshotStorage,
    SnapshotStorage,
    create_storage,
)
from tests.helpers.schemas import items_schema


def mock_connection(result=None):
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=result or MagicMock())
    return conn


def executed_sql(conn) -> str:
    return str(conn.execute.call_args[0][0])


def executed_params(conn) -> dict:
    return conn.execute.call_args[0][1]


class TestCreateStorage:
    """Factory and protocol conformance."""

    def test_in_memory(self):
        tracker, journal, snapshots = create_storage(use_postgres=False)

        assert isinstance(tracker, InMemoryMigrationTracker)
        assert isinstance(journal, InMemoryJournalStorage)
        assert isinstance(snapshots, InMemorySnapshotStorage)

    def test_postgres(self):
        tracker, journal, snapshots = create_storage(use_postgres=True)

        assert isinstance(tracker, MigrationTracker)
        assert isinstance(journal, JournalStorage)
        assert isinstance(snapshots, SnapshotStorage)
        assert isinstance(tracker, PostgresMigrationTracker)


class TestInMemoryStorage:
    """In-memory implementations used by tests and embedded databases."""

    @pytest.mark.asyncio
    async def test_tracker_returns_latest(self, storage):
        tracker, _, _ = storage

        await tracker.record_migration(None, "plugin-a", "hash-1", 1000)
        await tracker.record_migration(None, "plugin-a", "hash-2", 2000)
        await tracker.record_migration(None, "plugin-b", "hash-3", 3000)

        last = await tracker.get_last_migration(None, "plugin-a")
        assert last.hash == "hash-2"
        assert last.applied_at_millis == 2000
        assert len(tracker.records("plugin-a")) == 2

    @pytest.mark.asyncio
    async def test_tracker_unknown_plugin(self, storage):
        tracker, _, _ = storage

        assert await tracker.get_last_migration(None, "missing") is None

    @pytest.mark.asyncio
    async def test_journal_indexes(self, storage):
        _, journal, _ = storage

        assert await journal.get_next_idx(None, "plugin-a") == 0
        await journal.update_journal(None, "plugin-a", 0, "0000_plugin-a_x", True, 10)
        await journal.update_journal(None, "plugin-a", 1, "0001_plugin-a_y", True, 20)

        assert await journal.get_next_idx(None, "plugin-a") == 2
        entries = await journal.load_journal(None, "plugin-a")
        assert [entry.tag for entry in entries] == ["0000_plugin-a_x", "0001_plugin-a_y"]

    @pytest.mark.asyncio
    async def test_journal_entries_are_never_rewritten(self, storage):
        _, journal, _ = storage

        await journal.update_journal(None, "plugin-a", 0, "first", True, 10)
        with pytest.raises(JournalConflictError, match="idx 0"):
            await journal.update_journal(None, "plugin-a", 0, "second", False, 20)

        entries = await journal.load_journal(None, "plugin-a")
        assert len(entries) == 1
        assert entries[0].tag == "first"
        assert entries[0].when_millis == 10

    @pytest.mark.asyncio
    async def test_snapshots_latest_and_all(self, storage):
        _, _, snapshots = storage
        first = generate_snapshot(items_schema())
        second = generate_snapshot(items_schema(with_age=True))

        await snapshots.save_snapshot(None, "plugin-a", 1, second)
        await snapshots.save_snapshot(None, "plugin-a", 0, first)

        assert await snapshots.get_latest_snapshot(None, "plugin-a") == second
        assert await snapshots.get_all_snapshots(None, "plugin-a") == [first, second]
        assert await snapshots.load_snapshot(None, "plugin-a", 0) == first
        assert await snapshots.get_latest_snapshot(None, "plugin-b") is None

    @pytest.mark.asyncio
    async def test_delete_plugin(self, storage):
        tracker, journal, snapshots = storage
        await tracker.record_migration(None, "plugin-a", "hash", 1)
        await journal.update_journal(None, "plugin-a", 0, "tag")
        await snapshots.save_snapshot(None, "plugin-a", 0, SchemaSnapshot())

        for store in storage:
            await store.delete_plugin(None, "plugin-a")

        assert await tracker.get_last_migration(None, "plugin-a") is None
        assert await journal.load_journal(None, "plugin-a") == []
        assert await snapshots.get_all_snapshots(None, "plugin-a") == []


class TestPostgresMigrationTracker:
    """SQL issued by the PostgreSQL tracker."""

    @pytest.mark.asyncio
    async def test_ensure_tables(self):
        conn = mock_connection()

        await PostgresMigrationTracker().ensure_tables(conn)

        statements = [str(call[0][0]) for call in conn.execute.call_args_list]
        assert "CREATE SCHEMA IF NOT EXISTS migrations" in statements[0]
        assert any("migrations._migrations" in sql for sql in statements)
        assert any("migrations._journal" in sql for sql in statements)
        assert any("migrations._snapshots" in sql for sql in statements)
        conn.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_last_migration(self):
        result = MagicMock()
        result.fetchone.return_value = MagicMock(
            plugin_name="plugin-a", hash="abc", created_at=1700000000000
        )
        conn = mock_connection(result)

        record = await PostgresMigrationTracker().get_last_migration(conn, "plugin-a")

        assert record.hash == "abc"
        assert record.applied_at_millis == 1700000000000
        assert "ORDER BY created_at DESC" in executed_sql(conn)
        assert executed_params(conn) == {"plugin_name": "plugin-a"}

    @pytest.mark.asyncio
    async def test_get_last_migration_none(self):
        result = MagicMock()
        result.fetchone.return_value = None
        conn = mock_connection(result)

        assert await PostgresMigrationTracker().get_last_migration(conn, "plugin-a") is None

    @pytest.mark.asyncio
    async def test_record_migration(self):
        conn = mock_connection()

        record = await PostgresMigrationTracker().record_migration(conn, "plugin-a", "abc", 42)

        assert record.applied_at_millis == 42
        assert "INSERT INTO migrations._migrations" in executed_sql(conn)
        assert executed_params(conn) == {"plugin_name": "plugin-a", "hash": "abc", "created_at": 42}


class TestPostgresJournalStorage:
    """SQL issued by the PostgreSQL journal."""

    @pytest.mark.asyncio
    async def test_get_next_idx(self):
        result = MagicMock()
        result.scalar.return_value = 3
        conn = mock_connection(result)

        assert await PostgresJournalStorage().get_next_idx(conn, "plugin-a") == 3
        assert "COALESCE(MAX(idx), -1) + 1" in executed_sql(conn)

    @pytest.mark.asyncio
    async def test_update_journal_appends(self):
        conn = mock_connection()

        entry = await PostgresJournalStorage().update_journal(
            conn, "plugin-a", 1, "0001_plugin-a_abc", True, 99
        )

        assert entry.when_millis == 99
        assert "ON CONFLICT (plugin_name, idx) DO NOTHING" in executed_sql(conn)
        assert "DO UPDATE" not in executed_sql(conn)
        assert executed_params(conn)["tag"] == "0001_plugin-a_abc"

    @pytest.mark.asyncio
    async def test_update_journal_existing_idx_raises(self):
        result = MagicMock()
        # Conflicting insert returns no row
        result.scalar.return_value = None
        conn = mock_connection(result)

        with pytest.raises(JournalConflictError):
            await PostgresJournalStorage().update_journal(conn, "plugin-a", 1, "0001_plugin-a_abc")

    @pytest.mark.asyncio
    async def test_load_journal(self):
        result = MagicMock()
        result.fetchall.return_value = [
            MagicMock(plugin_name="plugin-a", idx=0, tag="t0", breakpoints=True, when=10),
            MagicMock(plugin_name="plugin-a", idx=1, tag="t1", breakpoints=True, when=20),
        ]
        conn = mock_connection(result)

        entries = await PostgresJournalStorage().load_journal(conn, "plugin-a")

        assert [(e.idx, e.tag, e.when_millis) for e in entries] == [(0, "t0", 10), (1, "t1", 20)]


class TestPostgresSnapshotStorage:
    """SQL issued by the PostgreSQL snapshot storage."""

    @pytest.mark.asyncio
    async def test_save_snapshot_as_jsonb(self):
        conn = mock_connection()
        snapshot = generate_snapshot(items_schema())

        await PostgresSnapshotStorage().save_snapshot(conn, "plugin-a", 0, snapshot)

        assert "CAST(:snapshot AS jsonb)" in executed_sql(conn)
        assert executed_params(conn)["snapshot"] == snapshot_to_json(snapshot)

    @pytest.mark.asyncio
    async def test_latest_snapshot_from_text(self):
        snapshot = generate_snapshot(items_schema())
        result = MagicMock()
        result.fetchone.return_value = MagicMock(snapshot=snapshot_to_json(snapshot))
        conn = mock_connection(result)

        loaded = await PostgresSnapshotStorage().get_latest_snapshot(conn, "plugin-a")

        assert loaded == snapshot
        assert "ORDER BY idx DESC" in executed_sql(conn)

    @pytest.mark.asyncio
    async def test_latest_snapshot_from_decoded_json(self):
        snapshot = generate_snapshot(items_schema())
        result = MagicMock()
        result.fetchone.return_value = MagicMock(snapshot=json.loads(snapshot_to_json(snapshot)))
        conn = mock_connection(result)

        assert await PostgresSnapshotStorage().get_latest_snapshot(conn, "plugin-a") == snapshot

    @pytest.mark.asyncio
    async def test_latest_snapshot_missing(self):
        result = MagicMock()
        result.fetchone.return_value = None
        conn = mock_connection(result)

        assert await PostgresSnapshotStorage().get_latest_snapshot(conn, "plugin-a") is None
