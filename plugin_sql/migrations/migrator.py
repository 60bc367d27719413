"""
Runtime migrator.

Brings a plugin's tables in line with its declared schema at startup:

    ensure bookkeeping tables -> take the advisory lock -> install extensions
    -> snapshot the declared schema -> ensure schemas -> compare hashes
    -> diff -> data loss check -> generate SQL -> execute in one transaction
    -> release the lock

Every exit path releases the lock. DDL and bookkeeping writes of one
migration commit together or not at all.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from plugin_sql.core.config import Settings
from plugin_sql.core.database import is_real_postgres_url
from plugin_sql.core.environment import Environment
from plugin_sql.core.exceptions import DestructiveMigrationError, MigrationExecutionError
from plugin_sql.core.logging import log_fields
from plugin_sql.migrations.diff import calculate_diff, has_diff_changes, summarize_diff
from plugin_sql.migrations.extensions import ExtensionManager, required_extensions
from plugin_sql.migrations.introspector import DatabaseIntrospector
from plugin_sql.migrations.locks import (
    NoopLock,
    PostgresAdvisoryLock,
    advisory_lock_id,
    validate_bigint,
)
from plugin_sql.migrations.models import (
    DataLossCheck,
    MigrationOptions,
    MigrationStatus,
    SchemaSnapshot,
    TableDef,
    now_millis,
)
from plugin_sql.migrations.naming import (
    CORE_PLUGIN_NAME,
    DEFAULT_SCHEMA,
    expected_schema_name,
    quote_ident,
)
from plugin_sql.migrations.snapshot import generate_snapshot, has_changes, hash_snapshot
from plugin_sql.migrations.sql_generator import check_for_data_loss, generate_migration_sql
from plugin_sql.migrations.storage import (
    JournalStorage,
    MigrationTracker,
    SnapshotStorage,
    create_storage,
)

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_migration_tag(idx: int, plugin_name: str, millis: Optional[int] = None) -> str:
    """Journal tag, e.g. ``0001_plugin-weather_lz3k0a1b``."""
    stamp = to_base36(millis if millis is not None else now_millis())
    return f"{idx:04d}_{plugin_name}_{stamp}"


class RuntimeMigrator:
    """
    Snapshot-diff migrator for plugin schemas.

    Collaborators default to the PostgreSQL implementations; tests inject
    in-memory storage and fake locks.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        tracker: Optional[MigrationTracker] = None,
        journal: Optional[JournalStorage] = None,
        snapshots: Optional[SnapshotStorage] = None,
        extension_manager: Optional[ExtensionManager] = None,
        introspector: Optional[DatabaseIntrospector] = None,
        lock: Any = None,
        database_url: Optional[str] = None,
        core_plugin_name: str = CORE_PLUGIN_NAME,
    ):
        """
        Args:
            engine: Async engine migrations run against
            tracker, journal, snapshots: Bookkeeping storage
            extension_manager: Installs required extensions
            introspector: Reads the live schema for the bootstrap path
            lock: Lock coordinator; chosen from the database URL when omitted
            database_url: URL used to decide whether advisory locks apply;
                read from the environment on every call when omitted
            core_plugin_name: Plugin that owns the public schema
        """
        pg_tracker, pg_journal, pg_snapshots = create_storage(use_postgres=True)
        self.engine = engine
        self.tracker = tracker or pg_tracker
        self.journal = journal or pg_journal
        self.snapshots = snapshots or pg_snapshots
        self.extension_manager = extension_manager or ExtensionManager()
        self.introspector = introspector or DatabaseIntrospector()
        self._lock = lock
        self._database_url = database_url
        self.core_plugin_name = core_plugin_name

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def initialize(self) -> None:
        """Create the bookkeeping schema and tables. Idempotent."""
        logger.info("Initializing migration system")
        async with self.engine.begin() as conn:
            await self.tracker.ensure_tables(conn)
        logger.info("Migration system initialized")

    async def migrate(
        self,
        plugin_name: str,
        schema: Any,
        options: Optional[MigrationOptions] = None,
    ) -> None:
        """
        Migrate a plugin's tables to match ``schema``.

        Args:
            plugin_name: Plugin identifier; also the advisory lock key
            schema: Declarative schema (MetaData, tables, mapping of tables)
            options: verbose / force / dry_run / allow_data_loss

        Raises:
            SchemaDefinitionError: schema cannot be normalized
            InvalidLockIdError: derived lock id is out of range
            DestructiveMigrationError: data loss without an override
            MigrationExecutionError: a statement failed; nothing was applied
        """
        options = options or MigrationOptions()
        settings = Settings()
        validate_bigint(advisory_lock_id(plugin_name))

        real_postgres = is_real_postgres_url(self._database_url or settings.DATABASE_URL)
        lock = self._lock or (PostgresAdvisoryLock() if real_postgres else NoopLock())
        with log_fields(plugin_name=plugin_name):
            logger.info(f"Starting migration for plugin {plugin_name}")
            await self._migrate(plugin_name, schema, options, settings, lock, real_postgres)

    async def _migrate(
        self,
        plugin_name: str,
        schema: Any,
        options: MigrationOptions,
        settings: Settings,
        lock: Any,
        real_postgres: bool,
    ) -> None:
        async with self.engine.connect() as conn:
            lock_acquired = False
            try:
                await self.tracker.ensure_tables(conn)
                await conn.commit()

                lock_acquired = await lock.acquire(conn, plugin_name)
                await conn.commit()

                await self.extension_manager.install_required_extensions(
                    conn, required_extensions(real_postgres)
                )

                current = generate_snapshot(schema)
                await self._ensure_schemas_exist(conn, current)
                self._validate_schema_usage(plugin_name, current)

                current_hash = hash_snapshot(current)

                # Checked after the lock: another process may have applied this
                # exact migration while we waited
                last_migration = await self.tracker.get_last_migration(conn, plugin_name)
                if last_migration and last_migration.hash == current_hash:
                    logger.info(f"No changes detected for {plugin_name}, skipping migration")
                    return

                previous = await self.snapshots.get_latest_snapshot(conn, plugin_name)
                if previous is None and current.tables:
                    previous = await self._bootstrap_from_database(conn, plugin_name, current)

                if not has_changes(previous, current):
                    logger.info(f"No schema changes for {plugin_name}")
                    if previous is None and not current.tables:
                        await self._record_empty_schema(conn, plugin_name, current, current_hash)
                    return

                diff = calculate_diff(previous, current)
                if not has_diff_changes(diff):
                    logger.info(f"No actionable changes for {plugin_name}")
                    return

                data_loss = check_for_data_loss(diff)
                if data_loss.has_data_loss:
                    self._guard_destructive(plugin_name, data_loss, options, settings)

                statements = generate_migration_sql(previous, current, diff)
                if not statements:
                    logger.info(f"No SQL statements to execute for {plugin_name}")
                    return

                logger.info(
                    f"Executing {len(statements)} SQL statements for {plugin_name}",
                    extra=summarize_diff(diff),
                )
                if options.verbose:
                    for i, statement in enumerate(statements, 1):
                        logger.info(f"[{i}/{len(statements)}] {statement}")

                if options.dry_run:
                    logger.info(
                        f"DRY RUN mode for {plugin_name} - not executing statements",
                        extra={"statements": statements},
                    )
                    return

                await self._execute_migration(conn, plugin_name, current, current_hash, statements)
                logger.info(f"Migration completed successfully for {plugin_name}")

            except Exception as e:
                logger.error(f"Migration failed for {plugin_name}: {e}")
                raise
            finally:
                if lock_acquired:
                    # An aborted read transaction would make the unlock fail
                    await conn.rollback()
                    await lock.release(conn, plugin_name)

    async def check_migration(self, plugin_name: str, schema: Any) -> Optional[DataLossCheck]:
        """
        Analyse a migration without applying anything.

        Returns:
            DataLossCheck, or None when the schema is unchanged
        """
        logger.info(f"Checking migration for {plugin_name}")
        try:
            current = generate_snapshot(schema)
            async with self.engine.connect() as conn:
                previous = await self.snapshots.get_latest_snapshot(conn, plugin_name)

            if not has_changes(previous, current):
                logger.info(f"No changes detected for {plugin_name}")
                return None

            diff = calculate_diff(previous, current)
            if not has_diff_changes(diff):
                logger.info(f"No actionable changes for {plugin_name}")
                return None

            data_loss = check_for_data_loss(diff)
            if data_loss.has_data_loss:
                logger.warning(f"Migration for {plugin_name} would cause data loss")
            else:
                logger.info(f"Migration for {plugin_name} is safe (no data loss)")
            return data_loss
        except Exception as e:
            logger.error(f"Failed to check migration for {plugin_name}: {e}")
            raise

    async def get_status(self, plugin_name: str) -> MigrationStatus:
        """Migration history of a plugin. Read-only."""
        async with self.engine.connect() as conn:
            last_migration = await self.tracker.get_last_migration(conn, plugin_name)
            journal = await self.journal.load_journal(conn, plugin_name)
            snapshots = await self.snapshots.get_all_snapshots(conn, plugin_name)

        return MigrationStatus(
            has_run=last_migration is not None,
            last_migration=last_migration,
            journal=journal,
            snapshot_count=len(snapshots),
        )

    async def reset(self, plugin_name: str) -> None:
        """
        Delete all migration history of a plugin.

        Development only: the plugin's tables are left in place, so the next
        migrate() goes through the bootstrap path.
        """
        logger.warning(f"Resetting migrations for {plugin_name}")
        if Environment.is_production():
            logger.warning(f"Resetting migration history of {plugin_name} in production")

        async with self.engine.begin() as conn:
            await self.tracker.delete_plugin(conn, plugin_name)
            await self.journal.delete_plugin(conn, plugin_name)
            await self.snapshots.delete_plugin(conn, plugin_name)

        logger.warning(f"Reset complete for {plugin_name}")

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _ensure_schemas_exist(self, conn: AsyncConnection, snapshot: SchemaSnapshot) -> None:
        schemas = set(snapshot.schemas)
        schemas.update(table.schema for table in snapshot.tables.values())
        schemas.discard(DEFAULT_SCHEMA)

        for schema_name in sorted(schemas):
            logger.debug(f"Ensuring schema {schema_name} exists")
            await conn.exec_driver_sql(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema_name)}")
        await conn.commit()

    def _validate_schema_usage(self, plugin_name: str, snapshot: SchemaSnapshot) -> None:
        """Warn about tables outside the schema a plugin is expected to own."""
        expected = expected_schema_name(plugin_name, self.core_plugin_name)
        is_core = plugin_name == self.core_plugin_name

        for table in snapshot.tables.values():
            if not is_core and table.schema == DEFAULT_SCHEMA:
                logger.warning(
                    f"Plugin {plugin_name} table {table.name} is using the public schema; "
                    f"consider the {expected} schema for better isolation"
                )
            elif is_core and table.schema != DEFAULT_SCHEMA:
                logger.warning(
                    f"Core plugin table {table.name} should use the public schema "
                    f"(found in {table.schema})"
                )

    async def _bootstrap_from_database(
        self,
        conn: AsyncConnection,
        plugin_name: str,
        current: SchemaSnapshot,
    ) -> Optional[SchemaSnapshot]:
        """
        Record the live tables as snapshot 0 when history is missing.

        Only tables the plugin declares are kept: other plugins sharing the
        schema must never look like this plugin's orphans.
        """
        schema_name = expected_schema_name(plugin_name, self.core_plugin_name)
        if not await self.introspector.has_existing_tables(conn, schema_name):
            return None

        logger.info(f"No snapshot found for {plugin_name} but tables exist, introspecting")
        introspected = await self.introspector.introspect_schema(conn, schema_name)

        declared = current.table_names()
        tables: Dict[str, TableDef] = {}
        for key, table in introspected.tables.items():
            if table.name in declared:
                tables[key] = table
            else:
                logger.debug(f"Ignoring table {table.name}, not declared by {plugin_name}")

        if not tables:
            return None

        filtered = SchemaSnapshot(tables=tables, schemas=introspected.schemas)

        await conn.commit()
        async with conn.begin():
            await self.snapshots.save_snapshot(conn, plugin_name, 0, filtered)
            await self.journal.update_journal(
                conn, plugin_name, 0, f"introspected_{now_millis()}", True
            )
            await self.tracker.record_migration(
                conn, plugin_name, hash_snapshot(filtered), now_millis()
            )

        logger.info(f"Created initial snapshot for {plugin_name} from existing database")
        return filtered

    async def _record_empty_schema(
        self,
        conn: AsyncConnection,
        plugin_name: str,
        snapshot: SchemaSnapshot,
        snapshot_hash: str,
    ) -> None:
        logger.info(f"Recording empty schema for {plugin_name}")
        await conn.commit()
        async with conn.begin():
            await self._record(conn, plugin_name, snapshot, snapshot_hash)

    def _guard_destructive(
        self,
        plugin_name: str,
        data_loss: DataLossCheck,
        options: MigrationOptions,
        settings: Settings,
    ) -> None:
        allowed = (
            options.force
            or options.allow_data_loss
            or settings.ALLOW_DESTRUCTIVE_MIGRATIONS
        )
        if allowed:
            if data_loss.requires_confirmation:
                logger.warning(
                    f"Proceeding with destructive migration for {plugin_name}: "
                    f"{'; '.join(data_loss.warnings)}"
                )
            return

        production = Environment.is_production()
        logger.error(
            f"Destructive migration blocked for {plugin_name} "
            f"({'PRODUCTION' if production else 'DEVELOPMENT'}): "
            f"{'; '.join(data_loss.warnings)}"
        )
        if production:
            message = (
                f"Destructive migration blocked in production for {plugin_name}. "
                f"Set ALLOW_DESTRUCTIVE_MIGRATIONS=true or apply the change manually."
            )
        else:
            message = (
                f"Destructive migration blocked for {plugin_name}. "
                f"Set ALLOW_DESTRUCTIVE_MIGRATIONS=true or pass allow_data_loss=True to proceed."
            )
        raise DestructiveMigrationError(message, plugin_name, data_loss, production)

    async def _execute_migration(
        self,
        conn: AsyncConnection,
        plugin_name: str,
        snapshot: SchemaSnapshot,
        snapshot_hash: str,
        statements: List[str],
    ) -> None:
        """Run every statement and the bookkeeping writes in one transaction."""
        await conn.commit()

        statement: Optional[str] = None
        try:
            async with conn.begin():
                for statement in statements:
                    logger.debug(f"Executing SQL statement: {statement}")
                    await conn.exec_driver_sql(statement)
                statement = None
                tag = await self._record(conn, plugin_name, snapshot, snapshot_hash)
        except SQLAlchemyError as e:
            logger.error(f"Migration failed for {plugin_name}, rolled back: {e}")
            raise MigrationExecutionError(plugin_name, statement, e) from e

        logger.info(f"Recorded migration {tag} for {plugin_name}")

    async def _record(
        self,
        conn: AsyncConnection,
        plugin_name: str,
        snapshot: SchemaSnapshot,
        snapshot_hash: str,
    ) -> str:
        """Write migration record, journal entry and snapshot; returns the tag."""
        idx = await self.journal.get_next_idx(conn, plugin_name)
        millis = now_millis()
        tag = generate_migration_tag(idx, plugin_name, millis)

        await self.tracker.record_migration(conn, plugin_name, snapshot_hash, millis)
        await self.journal.update_journal(conn, plugin_name, idx, tag, True, millis)
        await self.snapshots.save_snapshot(conn, plugin_name, idx, snapshot)
        return tag
