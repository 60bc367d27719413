"""
PostgreSQL Row-Level Security for server and entity isolation.

Two independent layers:

1. Server isolation: every eligible table carries a ``server_id`` column
   defaulting to ``current_server_id()``; the ``server_isolation_policy``
   only lets a transaction see and write rows of its own server.

2. Entity isolation: a RESTRICTIVE ``entity_isolation_policy`` (ANDed with
   the server policy) filters rows by the entity in ``app.entity_id``,
   either directly (``entity_id``/``author_id``) or through room membership
   (``room_id``/``channel_id`` looked up in ``participants``).

Both session functions read transaction-local settings, so a pooled
connection never carries one request's context into the next.

RLS does not apply to superusers. Run the application as a regular role.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from plugin_sql.core.exceptions import IsolationContextError
from plugin_sql.core.logging import log_fields
from plugin_sql.migrations.naming import (
    DEFAULT_SCHEMA,
    TENANT_COLUMN,
    qualified,
    quote_ident,
    truncate_identifier,
)
from plugin_sql.migrations.storage import BOOKKEEPING_TABLES

logger = logging.getLogger(__name__)

SERVER_SETTING = "app.server_id"
ENTITY_SETTING = "app.entity_id"

SERVER_POLICY = "server_isolation_policy"
ENTITY_POLICY = "entity_isolation_policy"

SERVERS_TABLE = "servers"
MEMBERSHIP_TABLE = "participants"
ROOMS_TABLE = "rooms"
AGENTS_TABLE = "agents"

# Tables whose rows must be invisible without an entity context
STRICT_TABLES = frozenset({"memories", "logs", "components", "tasks"})

SERVER_EXCLUDED_TABLES = frozenset({SERVERS_TABLE, *BOOKKEEPING_TABLES})
ENTITY_EXCLUDED_TABLES = frozenset({SERVERS_TABLE, "users", "entity_mappings", *BOOKKEEPING_TABLES})

ISOLATION_COLUMNS = ("room_id", "channel_id", "entity_id", "author_id")

ROOM_MEMBERSHIP_SUBQUERY = (
    f"SELECT room_id FROM {MEMBERSHIP_TABLE} WHERE entity_id = current_entity_id()"
)
CHANNEL_MEMBERSHIP_SUBQUERY = (
    f"SELECT channel_id FROM {ROOMS_TABLE} WHERE id IN ({ROOM_MEMBERSHIP_SUBQUERY})"
)

_INDEX_SUFFIX = {
    "room_id": "room",
    "channel_id": "channel",
    "entity_id": "entity",
    "author_id": "entity",
}


class AccessKind(str, Enum):
    """How a row is tied to an entity."""
    SHARED = "shared"  # via membership of a room or channel
    DIRECT = "direct"  # the row names the entity itself


@dataclass(frozen=True)
class IsolationTarget:
    """Column an entity policy filters on."""
    column: str
    access: AccessKind


def classify_table(columns: Iterable[str], table_name: Optional[str] = None) -> Optional[IsolationTarget]:
    """
    Pick the entity isolation column of a table.

    Priority is room_id > channel_id > entity_id > author_id. The two tables
    the membership subqueries read are special: a policy that selects from
    its own table recurses. The membership table filters on its own
    entity_id, and the rooms table on its own id through the membership
    table, never through the channel subquery that reads rooms.

    Returns:
        IsolationTarget, or None if the table has no isolation column
    """
    available = set(columns)

    if table_name == MEMBERSHIP_TABLE and "entity_id" in available:
        return IsolationTarget("entity_id", AccessKind.DIRECT)
    if table_name == ROOMS_TABLE:
        return IsolationTarget("id", AccessKind.SHARED) if "id" in available else None

    for column in ISOLATION_COLUMNS:
        if column in available:
            access = AccessKind.SHARED if column in ("room_id", "channel_id") else AccessKind.DIRECT
            return IsolationTarget(column, access)
    return None


def entity_policy_expression(target: IsolationTarget, strict: bool) -> str:
    """
    Boolean policy expression for one table.

    Strict: no entity context means no rows. Permissive: no entity context
    means every row (server-side and background work).
    """
    column = quote_ident(target.column)
    if target.access is AccessKind.DIRECT:
        match = f"{column} = current_entity_id()"
    elif target.column == "channel_id":
        match = f"{column} IN ({CHANNEL_MEMBERSHIP_SUBQUERY})"
    else:
        match = f"{column} IN ({ROOM_MEMBERSHIP_SUBQUERY})"

    if strict:
        return f"current_entity_id() IS NOT NULL AND {match}"
    return f"current_entity_id() IS NULL OR {match}"


def entity_isolation_sql(
    schema: str,
    table_name: str,
    target: IsolationTarget,
    strict: bool,
) -> List[str]:
    """Statements installing the entity policy on one table."""
    target_table = qualified(schema, table_name)
    expression = entity_policy_expression(target, strict)
    statements = [
        f"ALTER TABLE {target_table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {target_table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {ENTITY_POLICY} ON {target_table}",
        (
            f"CREATE POLICY {ENTITY_POLICY} ON {target_table} AS RESTRICTIVE "
            f"USING ({expression}) WITH CHECK ({expression})"
        ),
    ]
    # rooms.id is the primary key and already indexed
    if target.column in _INDEX_SUFFIX:
        index_name = truncate_identifier(f"idx_{table_name}_{_INDEX_SUFFIX[target.column]}")
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {quote_ident(index_name)} "
            f"ON {target_table} ({quote_ident(target.column)})"
        )
    return statements


def server_isolation_sql(schema: str, table_name: str, has_tenant_column: bool) -> List[str]:
    """
    Statements installing the server policy on one table.

    Rows with a NULL tenant key are claimed by the current server; rows
    already tagged with another server are left alone.
    """
    target_table = qualified(schema, table_name)
    column = quote_ident(TENANT_COLUMN)
    index_name = truncate_identifier(f"idx_{table_name}_{TENANT_COLUMN}")

    if has_tenant_column:
        # Restore the default dropped by uninstall()
        column_sql = f"ALTER TABLE {target_table} ALTER COLUMN {column} SET DEFAULT current_server_id()"
    else:
        column_sql = f"ALTER TABLE {target_table} ADD COLUMN {column} uuid DEFAULT current_server_id()"

    return [
        column_sql,
        f"UPDATE {target_table} SET {column} = current_server_id() WHERE {column} IS NULL",
        f"CREATE INDEX IF NOT EXISTS {quote_ident(index_name)} ON {target_table} ({column})",
        f"ALTER TABLE {target_table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {target_table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {SERVER_POLICY} ON {target_table}",
        (
            f"CREATE POLICY {SERVER_POLICY} ON {target_table} "
            f"USING ({column} = current_server_id()) "
            f"WITH CHECK ({column} = current_server_id())"
        ),
    ]


def _session_uuid_function(name: str, setting: str) -> str:
    # Missing or malformed settings read as NULL instead of raising
    return f"""
        CREATE OR REPLACE FUNCTION {name}() RETURNS uuid AS $$
        DECLARE
            setting_value text;
        BEGIN
            setting_value := NULLIF(current_setting('{setting}', TRUE), '');
            IF setting_value IS NULL THEN
                RETURN NULL;
            END IF;
            BEGIN
                RETURN setting_value::uuid;
            EXCEPTION WHEN OTHERS THEN
                RETURN NULL;
            END;
        END;
        $$ LANGUAGE plpgsql STABLE
    """


INSTALL_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS {SERVERS_TABLE} (
        id UUID PRIMARY KEY,
        created_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT NOW() NOT NULL
    )
    """,
    _session_uuid_function("current_server_id", SERVER_SETTING),
    _session_uuid_function("current_entity_id", ENTITY_SETTING),
)


def coerce_uuid(value: Union[UUID, str], label: str) -> UUID:
    """
    Raises:
        IsolationContextError: value is not a well-formed UUID
    """
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise IsolationContextError(f"Invalid {label} format: {value!r}. Must be a valid UUID.")


class RLSPolicyEngine:
    """
    Installs and removes the isolation policies.

    Methods take a connection inside a transaction owned by the caller and do
    not commit. Per-table failures are logged and skipped inside a savepoint,
    so one odd plugin table cannot block isolation of the rest.
    """

    def __init__(self, strict_tables: Iterable[str] = STRICT_TABLES):
        self.strict_tables = frozenset(strict_tables)

    # =========================================================================
    # INSTALL
    # =========================================================================

    async def install_functions(self, conn: AsyncConnection) -> None:
        """Create the servers registry and the session functions. Idempotent."""
        for statement in INSTALL_STATEMENTS:
            await conn.exec_driver_sql(statement)
        logger.info("RLS PostgreSQL functions installed")

    async def register_server(self, conn: AsyncConnection, server_id: Union[UUID, str]) -> UUID:
        """Add a server to the registry (no-op if present)."""
        server_uuid = coerce_uuid(server_id, "server ID")
        await conn.execute(
            text(f"INSERT INTO {SERVERS_TABLE} (id) VALUES (:id) ON CONFLICT (id) DO NOTHING"),
            {"id": server_uuid}
        )
        logger.info(f"RLS server registered: {str(server_uuid)[:8]}")
        return server_uuid

    async def server_exists(self, conn: AsyncConnection, server_id: Union[UUID, str]) -> bool:
        server_uuid = coerce_uuid(server_id, "server ID")
        result = await conn.execute(
            text(f"SELECT EXISTS (SELECT 1 FROM {SERVERS_TABLE} WHERE id = :id) AS present"),
            {"id": server_uuid}
        )
        return bool(result.scalar())

    async def assign_agent_to_server(
        self,
        conn: AsyncConnection,
        agent_id: Optional[Union[UUID, str]],
        server_id: Optional[Union[UUID, str]],
    ) -> bool:
        """
        Tag an agent row with its server.

        Returns:
            True if the agent row was updated
        """
        if not agent_id or not server_id:
            logger.warning(
                f"Cannot assign agent to server: invalid agent_id ({agent_id}) "
                f"or server_id ({server_id})"
            )
            return False

        agent_uuid = coerce_uuid(agent_id, "agent ID")
        server_uuid = coerce_uuid(server_id, "server ID")

        result = await conn.execute(
            text(f"SELECT id, name, {TENANT_COLUMN} FROM {AGENTS_TABLE} WHERE id = :id"),
            {"id": agent_uuid}
        )
        agent = result.fetchone()
        if agent is None:
            logger.debug(f"Agent {agent_uuid} does not exist yet")
            return False

        current = getattr(agent, TENANT_COLUMN)
        if current is not None and str(current) == str(server_uuid):
            logger.debug(f"Agent {agent.name} already assigned to correct server")
            return False

        await conn.execute(
            text(f"UPDATE {AGENTS_TABLE} SET {TENANT_COLUMN} = :server_id WHERE id = :id"),
            {"server_id": server_uuid, "id": agent_uuid}
        )
        if current is None:
            logger.info(f"Agent {agent.name} assigned to server")
        else:
            logger.warning(f"Agent {agent.name} server changed")
        return True

    async def apply_server_isolation(
        self,
        conn: AsyncConnection,
        server_id: Union[UUID, str],
        schema: str = DEFAULT_SCHEMA,
    ) -> List[str]:
        """
        Install the server policy on every eligible table of ``schema``.

        The server id is set for this transaction so that backfilled rows are
        claimed by it.

        Returns:
            Names of the tables now isolated
        """
        server_uuid = coerce_uuid(server_id, "server ID")
        await conn.execute(
            text("SELECT set_config(:name, :value, true)"),
            {"name": SERVER_SETTING, "value": str(server_uuid)}
        )

        columns = await self._table_columns(conn, schema)
        applied = []
        for table_name in sorted(columns):
            if table_name in SERVER_EXCLUDED_TABLES:
                continue
            statements = server_isolation_sql(
                schema, table_name, TENANT_COLUMN in columns[table_name]
            )
            if await self._apply_table(conn, schema, table_name, statements):
                applied.append(table_name)

        logger.info(f"Server RLS applied to {len(applied)} tables in schema {schema}")
        return applied

    async def apply_entity_isolation(
        self,
        conn: AsyncConnection,
        schema: str = DEFAULT_SCHEMA,
    ) -> List[str]:
        """
        Install the entity policy on every table with an isolation column.

        Returns:
            Names of the tables now isolated
        """
        columns = await self._table_columns(conn, schema)
        applied = []
        for table_name in sorted(columns):
            if table_name in ENTITY_EXCLUDED_TABLES:
                continue
            target = classify_table(columns[table_name], table_name)
            if target is None:
                logger.debug(f"Skipping entity RLS on {schema}.{table_name}: no entity columns")
                continue

            strict = table_name in self.strict_tables
            statements = entity_isolation_sql(schema, table_name, target, strict)
            if await self._apply_table(conn, schema, table_name, statements):
                applied.append(table_name)
                logger.debug(
                    f"Entity RLS on {schema}.{table_name} via {target.column} "
                    f"({'strict' if strict else 'permissive'})"
                )

        logger.info(f"Entity RLS applied to {len(applied)} tables in schema {schema}")
        return applied

    async def install(
        self,
        conn: AsyncConnection,
        server_id: Union[UUID, str],
        schemas: Iterable[str] = (DEFAULT_SCHEMA,),
    ) -> None:
        """Functions, server registration, then both policy layers."""
        await self.install_functions(conn)
        await self.register_server(conn, server_id)
        for schema in schemas:
            await self.apply_server_isolation(conn, server_id, schema)
            await self.apply_entity_isolation(conn, schema)

    # =========================================================================
    # UNINSTALL
    # =========================================================================

    async def uninstall_entity_isolation(
        self,
        conn: AsyncConnection,
        schema: str = DEFAULT_SCHEMA,
    ) -> None:
        """Drop entity policies and current_entity_id(); server RLS stays."""
        logger.info("Removing entity RLS policies and functions")
        for table_name in sorted(await self._table_columns(conn, schema)):
            if table_name in BOOKKEEPING_TABLES:
                continue
            await conn.exec_driver_sql(
                f"DROP POLICY IF EXISTS {ENTITY_POLICY} ON {qualified(schema, table_name)}"
            )
        await conn.exec_driver_sql("DROP FUNCTION IF EXISTS current_entity_id() CASCADE")
        logger.info("Entity RLS removed")

    async def uninstall(self, conn: AsyncConnection, schema: str = DEFAULT_SCHEMA) -> None:
        """
        Disable RLS everywhere in ``schema``.

        ``server_id`` values are kept, so re-enabling isolation only claims
        rows created while it was off, never another server's rows.
        """
        result = await conn.execute(
            text("""
                SELECT EXISTS (
                    SELECT 1 FROM pg_tables
                    WHERE schemaname = :schema AND tablename = :registry
                ) AS installed
            """),
            {"schema": DEFAULT_SCHEMA, "registry": SERVERS_TABLE}
        )
        if not result.scalar():
            logger.debug("RLS not installed, skipping cleanup")
            return

        logger.info("Disabling RLS (keeping server_id columns)")
        await self.uninstall_entity_isolation(conn, schema)

        policies = await self._policies(conn, schema)
        for table_name in sorted(await self._table_columns(conn, schema)):
            if table_name in BOOKKEEPING_TABLES:
                continue
            target_table = qualified(schema, table_name)
            statements = [
                f"DROP POLICY IF EXISTS {quote_ident(policy)} ON {target_table}"
                for policy in policies.get(table_name, [])
            ]
            statements += [
                f"ALTER TABLE {target_table} NO FORCE ROW LEVEL SECURITY",
                f"ALTER TABLE {target_table} DISABLE ROW LEVEL SECURITY",
            ]
            await self._apply_table(conn, schema, table_name, statements)

        await conn.exec_driver_sql(f"TRUNCATE TABLE {SERVERS_TABLE}")
        # CASCADE also drops the server_id column defaults
        await conn.exec_driver_sql("DROP FUNCTION IF EXISTS current_server_id() CASCADE")
        logger.info("RLS disabled successfully (server_id columns preserved)")

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _table_columns(self, conn: AsyncConnection, schema: str) -> Dict[str, List[str]]:
        """Base tables of a schema with their column names."""
        result = await conn.execute(
            text("""
                SELECT t.tablename AS table_name, c.column_name
                FROM pg_tables t
                LEFT JOIN information_schema.columns c
                  ON c.table_schema = t.schemaname AND c.table_name = t.tablename
                WHERE t.schemaname = :schema
                ORDER BY t.tablename, c.ordinal_position
            """),
            {"schema": schema}
        )
        tables: Dict[str, List[str]] = {}
        for row in result.fetchall():
            columns = tables.setdefault(row.table_name, [])
            if row.column_name is not None:
                columns.append(row.column_name)
        return tables

    async def _policies(self, conn: AsyncConnection, schema: str) -> Dict[str, List[str]]:
        result = await conn.execute(
            text("""
                SELECT tablename, policyname FROM pg_policies
                WHERE schemaname = :schema
                ORDER BY tablename, policyname
            """),
            {"schema": schema}
        )
        policies: Dict[str, List[str]] = {}
        for row in result.fetchall():
            policies.setdefault(row.tablename, []).append(row.policyname)
        return policies

    async def _apply_table(
        self,
        conn: AsyncConnection,
        schema: str,
        table_name: str,
        statements: List[str],
    ) -> bool:
        with log_fields(schema=schema, table=table_name):
            try:
                async with conn.begin_nested():
                    for statement in statements:
                        await conn.exec_driver_sql(statement)
                return True
            except SQLAlchemyError as e:
                logger.warning(f"Failed to apply RLS to {schema}.{table_name}: {e}")
                return False
