"""
PostgreSQL bookkeeping storage.

Tables live in the ``migrations`` schema:
    _migrations  one row per applied migration (plugin_name, hash, created_at)
    _journal     one row per journal entry, keyed by (plugin_name, idx)
    _snapshots   one jsonb snapshot per journal entry

IMPORTANT: Does NOT commit. Caller owns transaction.
"""

import json
import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from plugin_sql.core.exceptions import JournalConflictError
from plugin_sql.migrations.models import (
    JournalEntry,
    MigrationRecord,
    SchemaSnapshot,
    now_millis,
)
from plugin_sql.migrations.snapshot import snapshot_to_json
from plugin_sql.migrations.storage.repositories import (
    InMemoryJournalStorage,
    InMemoryMigrationTracker,
    InMemorySnapshotStorage,
    JournalStorage,
    MigrationTracker,
    SnapshotStorage,
)

logger = logging.getLogger(__name__)

MIGRATIONS_SCHEMA = "migrations"

BOOKKEEPING_TABLES = ("_migrations", "_journal", "_snapshots")

_CREATE_STATEMENTS = (
    f"CREATE SCHEMA IF NOT EXISTS {MIGRATIONS_SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {MIGRATIONS_SCHEMA}._migrations (
        id SERIAL PRIMARY KEY,
        plugin_name TEXT NOT NULL,
        hash TEXT NOT NULL,
        created_at BIGINT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MIGRATIONS_SCHEMA}._journal (
        plugin_name TEXT NOT NULL,
        idx INTEGER NOT NULL,
        tag TEXT NOT NULL,
        "when" BIGINT NOT NULL,
        breakpoints BOOLEAN NOT NULL DEFAULT TRUE,
        PRIMARY KEY (plugin_name, idx)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MIGRATIONS_SCHEMA}._snapshots (
        id SERIAL PRIMARY KEY,
        plugin_name TEXT NOT NULL,
        idx INTEGER NOT NULL,
        snapshot JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (plugin_name, idx)
    )
    """,
)


def _load_snapshot(value: Any) -> SchemaSnapshot:
    # asyncpg hands jsonb back as text unless a codec is registered
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    return SchemaSnapshot.from_dict(value)


class PostgresMigrationTracker:
    """PostgreSQL migration tracker. Does NOT commit internally."""

    async def ensure_tables(self, conn: AsyncConnection) -> None:
        for statement in _CREATE_STATEMENTS:
            await conn.execute(text(statement))

    async def get_last_migration(
        self, conn: AsyncConnection, plugin_name: str
    ) -> Optional[MigrationRecord]:
        result = await conn.execute(
            text("""
                SELECT plugin_name, hash, created_at
                FROM migrations._migrations
                WHERE plugin_name = :plugin_name
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            """),
            {"plugin_name": plugin_name}
        )
        row = result.fetchone()
        if row is None:
            return None
        return MigrationRecord(
            plugin_name=row.plugin_name,
            hash=row.hash,
            applied_at_millis=int(row.created_at),
        )

    async def record_migration(
        self, conn: AsyncConnection, plugin_name: str, hash: str, applied_at_millis: int
    ) -> MigrationRecord:
        await conn.execute(
            text("""
                INSERT INTO migrations._migrations (plugin_name, hash, created_at)
                VALUES (:plugin_name, :hash, :created_at)
            """),
            {"plugin_name": plugin_name, "hash": hash, "created_at": applied_at_millis}
        )
        logger.debug(f"Recorded migration {hash[:12]} for {plugin_name}")
        return MigrationRecord(
            plugin_name=plugin_name, hash=hash, applied_at_millis=applied_at_millis
        )

    async def delete_plugin(self, conn: AsyncConnection, plugin_name: str) -> None:
        await conn.execute(
            text("DELETE FROM migrations._migrations WHERE plugin_name = :plugin_name"),
            {"plugin_name": plugin_name}
        )


class PostgresJournalStorage:
    """PostgreSQL journal storage. Does NOT commit internally."""

    async def load_journal(self, conn: AsyncConnection, plugin_name: str) -> List[JournalEntry]:
        result = await conn.execute(
            text("""
                SELECT plugin_name, idx, tag, "when", breakpoints
                FROM migrations._journal
                WHERE plugin_name = :plugin_name
                ORDER BY idx
            """),
            {"plugin_name": plugin_name}
        )
        return [
            JournalEntry(
                plugin_name=row.plugin_name,
                idx=row.idx,
                tag=row.tag,
                breakpoints=row.breakpoints,
                when_millis=int(row.when),
            )
            for row in result.fetchall()
        ]

    async def get_next_idx(self, conn: AsyncConnection, plugin_name: str) -> int:
        result = await conn.execute(
            text("""
                SELECT COALESCE(MAX(idx), -1) + 1 AS next_idx
                FROM migrations._journal
                WHERE plugin_name = :plugin_name
            """),
            {"plugin_name": plugin_name}
        )
        return int(result.scalar())

    async def update_journal(
        self,
        conn: AsyncConnection,
        plugin_name: str,
        idx: int,
        tag: str,
        breakpoints: bool = True,
        when_millis: Optional[int] = None,
    ) -> JournalEntry:
        when = when_millis if when_millis is not None else now_millis()
        result = await conn.execute(
            text("""
                INSERT INTO migrations._journal (plugin_name, idx, tag, "when", breakpoints)
                VALUES (:plugin_name, :idx, :tag, :when, :breakpoints)
                ON CONFLICT (plugin_name, idx) DO NOTHING
                RETURNING idx
            """),
            {
                "plugin_name": plugin_name,
                "idx": idx,
                "tag": tag,
                "when": when,
                "breakpoints": breakpoints,
            }
        )
        if result.scalar() is None:
            raise JournalConflictError(plugin_name, idx)
        return JournalEntry(
            plugin_name=plugin_name, idx=idx, tag=tag, breakpoints=breakpoints, when_millis=when
        )

    async def delete_plugin(self, conn: AsyncConnection, plugin_name: str) -> None:
        await conn.execute(
            text("DELETE FROM migrations._journal WHERE plugin_name = :plugin_name"),
            {"plugin_name": plugin_name}
        )


class PostgresSnapshotStorage:
    """PostgreSQL snapshot storage. Does NOT commit internally."""

    async def save_snapshot(
        self, conn: AsyncConnection, plugin_name: str, idx: int, snapshot: SchemaSnapshot
    ) -> None:
        await conn.execute(
            text("""
                INSERT INTO migrations._snapshots (plugin_name, idx, snapshot)
                VALUES (:plugin_name, :idx, CAST(:snapshot AS jsonb))
                ON CONFLICT (plugin_name, idx) DO UPDATE
                SET snapshot = EXCLUDED.snapshot,
                    created_at = NOW()
            """),
            {"plugin_name": plugin_name, "idx": idx, "snapshot": snapshot_to_json(snapshot)}
        )

    async def load_snapshot(
        self, conn: AsyncConnection, plugin_name: str, idx: int
    ) -> Optional[SchemaSnapshot]:
        result = await conn.execute(
            text("""
                SELECT snapshot FROM migrations._snapshots
                WHERE plugin_name = :plugin_name AND idx = :idx
            """),
            {"plugin_name": plugin_name, "idx": idx}
        )
        row = result.fetchone()
        return _load_snapshot(row.snapshot) if row else None

    async def get_latest_snapshot(
        self, conn: AsyncConnection, plugin_name: str
    ) -> Optional[SchemaSnapshot]:
        result = await conn.execute(
            text("""
                SELECT snapshot FROM migrations._snapshots
                WHERE plugin_name = :plugin_name
                ORDER BY idx DESC
                LIMIT 1
            """),
            {"plugin_name": plugin_name}
        )
        row = result.fetchone()
        return _load_snapshot(row.snapshot) if row else None

    async def get_all_snapshots(
        self, conn: AsyncConnection, plugin_name: str
    ) -> List[SchemaSnapshot]:
        result = await conn.execute(
            text("""
                SELECT snapshot FROM migrations._snapshots
                WHERE plugin_name = :plugin_name
                ORDER BY idx
            """),
            {"plugin_name": plugin_name}
        )
        return [_load_snapshot(row.snapshot) for row in result.fetchall()]

    async def delete_plugin(self, conn: AsyncConnection, plugin_name: str) -> None:
        await conn.execute(
            text("DELETE FROM migrations._snapshots WHERE plugin_name = :plugin_name"),
            {"plugin_name": plugin_name}
        )


def create_storage(
    use_postgres: bool = True,
) -> Tuple[MigrationTracker, JournalStorage, SnapshotStorage]:
    """
    Create bookkeeping storage instances.

    Args:
        use_postgres: If True, use PostgreSQL; if False, use in-memory

    Returns:
        Tuple of (MigrationTracker, JournalStorage, SnapshotStorage)
    """
    if use_postgres:
        return (
            PostgresMigrationTracker(),
            PostgresJournalStorage(),
            PostgresSnapshotStorage(),
        )

    return (
        InMemoryMigrationTracker(),
        InMemoryJournalStorage(),
        InMemorySnapshotStorage(),
    )
