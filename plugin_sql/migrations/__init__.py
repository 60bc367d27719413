"""
Runtime schema migrations for plugins.

Snapshot the declared schema, diff it against recorded history, lower the
diff to DDL and apply it atomically under an advisory lock.
"""

from plugin_sql.migrations.diff import calculate_diff, has_diff_changes
from plugin_sql.migrations.locks import advisory_lock_id
from plugin_sql.migrations.migrator import RuntimeMigrator
from plugin_sql.migrations.models import (
    DataLossCheck,
    JournalEntry,
    MigrationOptions,
    MigrationRecord,
    MigrationStatus,
    SchemaDiff,
    SchemaSnapshot,
)
from plugin_sql.migrations.snapshot import generate_snapshot, hash_snapshot
from plugin_sql.migrations.sql_generator import check_for_data_loss, generate_migration_sql

__all__ = [
    'RuntimeMigrator',
    'MigrationOptions',
    'MigrationStatus',
    'MigrationRecord',
    'JournalEntry',
    'DataLossCheck',
    'SchemaDiff',
    'SchemaSnapshot',
    'generate_snapshot',
    'hash_snapshot',
    'calculate_diff',
    'has_diff_changes',
    'generate_migration_sql',
    'check_for_data_loss',
    'advisory_lock_id',
]
