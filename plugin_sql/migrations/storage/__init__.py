"""Migration bookkeeping: tracker, journal and snapshot storage."""

from plugin_sql.migrations.storage.pg_repositories import (
    BOOKKEEPING_TABLES,
    MIGRATIONS_SCHEMA,
    PostgresJournalStorage,
    PostgresMigrationTracker,
    PostgresSnapshotStorage,
    create_storage,
)
from plugin_sql.migrations.storage.repositories import (
    InMemoryJournalStorage,
    InMemoryMigrationTracker,
    InMemorySnapshotStorage,
    JournalStorage,
    MigrationTracker,
    SnapshotStorage,
)

__all__ = [
    'BOOKKEEPING_TABLES',
    'MIGRATIONS_SCHEMA',
    'MigrationTracker',
    'JournalStorage',
    'SnapshotStorage',
    'InMemoryMigrationTracker',
    'InMemoryJournalStorage',
    'InMemorySnapshotStorage',
    'PostgresMigrationTracker',
    'PostgresJournalStorage',
    'PostgresSnapshotStorage',
    'create_storage',
]
