"""Bookkeeping storage protocols and in-memory implementations."""

from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from plugin_sql.core.exceptions import JournalConflictError
from plugin_sql.migrations.models import (
    JournalEntry,
    MigrationRecord,
    SchemaSnapshot,
    now_millis,
)


@runtime_checkable
class MigrationTracker(Protocol):
    """
    Protocol for the applied-migration log.

    Every method takes the connection the caller is working on, so that
    bookkeeping writes share the migration's transaction. Implementations
    never commit.
    """

    async def ensure_tables(self, conn: Any) -> None:
        """Create the bookkeeping schema and tables if missing."""
        ...

    async def get_last_migration(self, conn: Any, plugin_name: str) -> Optional[MigrationRecord]:
        """Most recent migration of a plugin, or None."""
        ...

    async def record_migration(
        self, conn: Any, plugin_name: str, hash: str, applied_at_millis: int
    ) -> MigrationRecord:
        """Append a migration record."""
        ...

    async def delete_plugin(self, conn: Any, plugin_name: str) -> None:
        """Forget every migration of a plugin."""
        ...


@runtime_checkable
class JournalStorage(Protocol):
    """Protocol for the ordered, append-only migration journal."""

    async def load_journal(self, conn: Any, plugin_name: str) -> List[JournalEntry]:
        """All entries of a plugin, ordered by idx."""
        ...

    async def get_next_idx(self, conn: Any, plugin_name: str) -> int:
        """Index the next entry will get (0 for a fresh plugin)."""
        ...

    async def update_journal(
        self,
        conn: Any,
        plugin_name: str,
        idx: int,
        tag: str,
        breakpoints: bool = True,
        when_millis: Optional[int] = None,
    ) -> JournalEntry:
        """
        Append the entry at ``idx``.

        Raises:
            JournalConflictError: An entry already exists at ``idx``
        """
        ...

    async def delete_plugin(self, conn: Any, plugin_name: str) -> None:
        ...


@runtime_checkable
class SnapshotStorage(Protocol):
    """Protocol for persisted schema snapshots, one per journal index."""

    async def save_snapshot(
        self, conn: Any, plugin_name: str, idx: int, snapshot: SchemaSnapshot
    ) -> None:
        ...

    async def load_snapshot(
        self, conn: Any, plugin_name: str, idx: int
    ) -> Optional[SchemaSnapshot]:
        ...

    async def get_latest_snapshot(self, conn: Any, plugin_name: str) -> Optional[SchemaSnapshot]:
        """Snapshot with the highest idx, or None."""
        ...

    async def get_all_snapshots(self, conn: Any, plugin_name: str) -> List[SchemaSnapshot]:
        """Snapshots ordered by idx."""
        ...

    async def delete_plugin(self, conn: Any, plugin_name: str) -> None:
        ...


class InMemoryMigrationTracker:
    """In-memory migration tracker for testing and embedded use."""

    def __init__(self):
        self._records: Dict[str, List[MigrationRecord]] = {}

    async def ensure_tables(self, conn: Any) -> None:
        return None

    async def get_last_migration(self, conn: Any, plugin_name: str) -> Optional[MigrationRecord]:
        records = self._records.get(plugin_name)
        return records[-1] if records else None

    async def record_migration(
        self, conn: Any, plugin_name: str, hash: str, applied_at_millis: int
    ) -> MigrationRecord:
        record = MigrationRecord(
            plugin_name=plugin_name, hash=hash, applied_at_millis=applied_at_millis
        )
        self._records.setdefault(plugin_name, []).append(record)
        return record

    async def delete_plugin(self, conn: Any, plugin_name: str) -> None:
        self._records.pop(plugin_name, None)

    def records(self, plugin_name: str) -> List[MigrationRecord]:
        """All records of a plugin, oldest first."""
        return list(self._records.get(plugin_name, []))

    def clear(self) -> None:
        """Clear all records (for testing)."""
        self._records.clear()


class InMemoryJournalStorage:
    """In-memory journal for testing and embedded use."""

    def __init__(self):
        self._entries: Dict[str, Dict[int, JournalEntry]] = {}

    async def load_journal(self, conn: Any, plugin_name: str) -> List[JournalEntry]:
        entries = self._entries.get(plugin_name, {})
        return [entries[idx] for idx in sorted(entries)]

    async def get_next_idx(self, conn: Any, plugin_name: str) -> int:
        entries = self._entries.get(plugin_name)
        if not entries:
            return 0
        return max(entries) + 1

    async def update_journal(
        self,
        conn: Any,
        plugin_name: str,
        idx: int,
        tag: str,
        breakpoints: bool = True,
        when_millis: Optional[int] = None,
    ) -> JournalEntry:
        entries = self._entries.setdefault(plugin_name, {})
        if idx in entries:
            raise JournalConflictError(plugin_name, idx)
        entry = JournalEntry(
            plugin_name=plugin_name,
            idx=idx,
            tag=tag,
            breakpoints=breakpoints,
            when_millis=when_millis if when_millis is not None else now_millis(),
        )
        entries[idx] = entry
        return entry

    async def delete_plugin(self, conn: Any, plugin_name: str) -> None:
        self._entries.pop(plugin_name, None)

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        self._entries.clear()


class InMemorySnapshotStorage:
    """In-memory snapshot storage for testing and embedded use."""

    def __init__(self):
        self._snapshots: Dict[Tuple[str, int], SchemaSnapshot] = {}

    async def save_snapshot(
        self, conn: Any, plugin_name: str, idx: int, snapshot: SchemaSnapshot
    ) -> None:
        self._snapshots[(plugin_name, idx)] = snapshot

    async def load_snapshot(
        self, conn: Any, plugin_name: str, idx: int
    ) -> Optional[SchemaSnapshot]:
        return self._snapshots.get((plugin_name, idx))

    async def get_latest_snapshot(self, conn: Any, plugin_name: str) -> Optional[SchemaSnapshot]:
        indexes = [idx for name, idx in self._snapshots if name == plugin_name]
        if not indexes:
            return None
        return self._snapshots[(plugin_name, max(indexes))]

    async def get_all_snapshots(self, conn: Any, plugin_name: str) -> List[SchemaSnapshot]:
        indexes = sorted(idx for name, idx in self._snapshots if name == plugin_name)
        return [self._snapshots[(plugin_name, idx)] for idx in indexes]

    async def delete_plugin(self, conn: Any, plugin_name: str) -> None:
        for key in [key for key in self._snapshots if key[0] == plugin_name]:
            del self._snapshots[key]

    def clear(self) -> None:
        """Clear all snapshots (for testing)."""
        self._snapshots.clear()
