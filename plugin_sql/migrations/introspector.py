"""
Live schema introspection.

Reads pg_catalog and produces a SchemaSnapshot in the same normalized form
the snapshot generator emits, so the two can be diffed. Used once per plugin,
when tables exist but no snapshot has been recorded yet.
"""

import logging
import re
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from plugin_sql.migrations.models import (
    ColumnDef,
    ForeignKeyDef,
    IndexDef,
    SchemaSnapshot,
    TableDef,
    UniqueConstraintDef,
)
from plugin_sql.migrations.naming import DEFAULT_SCHEMA, canonical_type

logger = logging.getLogger(__name__)

_FK_ACTIONS = {
    "a": None,  # NO ACTION is the default, the generator leaves it unset
    "r": "restrict",
    "c": "cascade",
    "n": "set null",
    "d": "set default",
}

_SERIAL_FOR = {"smallint": "smallserial", "integer": "serial", "bigint": "bigserial"}

_CAST_LITERAL = re.compile(r"^('(?:[^']|'')*')::[a-z ]+(\(\d+(,\d+)?\))?(\[\])?$")


def normalize_type(formatted: str) -> str:
    """Canonical spelling of ``format_type()`` output."""
    return canonical_type(formatted)


def normalize_default(default: Optional[str]) -> Optional[str]:
    """Strip the redundant cast PostgreSQL adds to literal defaults."""
    if default is None:
        return None
    match = _CAST_LITERAL.match(default.strip())
    if match:
        return match.group(1)
    return default.strip()


class DatabaseIntrospector:
    """Builds snapshots from an existing database schema."""

    async def has_existing_tables(self, conn: AsyncConnection, schema_name: str) -> bool:
        """True if the schema already contains base tables."""
        result = await conn.execute(
            text("""
                SELECT COUNT(*) AS table_count
                FROM information_schema.tables
                WHERE table_schema = :schema AND table_type = 'BASE TABLE'
            """),
            {"schema": schema_name}
        )
        return int(result.scalar() or 0) > 0

    async def introspect_schema(
        self, conn: AsyncConnection, schema_name: str = DEFAULT_SCHEMA
    ) -> SchemaSnapshot:
        """
        Snapshot every base table in ``schema_name``.

        Args:
            conn: Connection to read from
            schema_name: Schema to introspect

        Returns:
            SchemaSnapshot in generator-normalized form
        """
        logger.info(f"Introspecting schema {schema_name}")

        columns = await self._fetch_columns(conn, schema_name)
        constraints = await self._fetch_constraints(conn, schema_name)
        indexes = await self._fetch_indexes(conn, schema_name)

        tables: Dict[str, TableDef] = {}
        for table_name, table_columns in columns.items():
            table_constraints = constraints.get(table_name, [])

            primary_key: tuple = ()
            uniques: Dict[str, UniqueConstraintDef] = {}
            foreign_keys: Dict[str, ForeignKeyDef] = {}
            for row in table_constraints:
                cols = tuple(row.columns)
                if row.type == "p":
                    primary_key = cols
                elif row.type == "u":
                    uniques[row.name] = UniqueConstraintDef(name=row.name, columns=cols)
                elif row.type == "f":
                    foreign_keys[row.name] = ForeignKeyDef(
                        name=row.name,
                        columns=cols,
                        ref_schema=row.ref_schema,
                        ref_table=row.ref_table,
                        ref_columns=tuple(row.ref_columns),
                        on_delete=_FK_ACTIONS.get(row.on_delete),
                        on_update=_FK_ACTIONS.get(row.on_update),
                    )

            single_pk = primary_key[0] if len(primary_key) == 1 else None
            column_defs = {
                row.column_name: self._column_from_row(row, row.column_name == single_pk)
                for row in table_columns
            }

            tables[f"{schema_name}.{table_name}"] = TableDef(
                schema=schema_name,
                name=table_name,
                columns=column_defs,
                indexes={index.name: index for index in indexes.get(table_name, [])},
                foreign_keys=foreign_keys,
                unique_constraints=uniques,
                primary_key=primary_key,
            )

        schemas = frozenset() if schema_name == DEFAULT_SCHEMA else frozenset({schema_name})
        logger.info(f"Introspected {len(tables)} tables from schema {schema_name}")
        return SchemaSnapshot(tables=tables, schemas=schemas)

    def _column_from_row(self, row, primary_key: bool) -> ColumnDef:
        col_type = normalize_type(row.data_type)
        default = row.column_default
        if default and default.startswith("nextval(") and col_type in _SERIAL_FOR:
            col_type = _SERIAL_FOR[col_type]
            default = None
        return ColumnDef(
            name=row.column_name,
            type=col_type,
            not_null=bool(row.not_null),
            default=normalize_default(default),
            primary_key=primary_key,
        )

    async def _fetch_columns(self, conn: AsyncConnection, schema_name: str) -> Dict[str, List]:
        result = await conn.execute(
            text("""
                SELECT c.relname AS table_name,
                       a.attname AS column_name,
                       format_type(a.atttypid, a.atttypmod) AS data_type,
                       a.attnotnull AS not_null,
                       pg_get_expr(d.adbin, d.adrelid) AS column_default
                FROM pg_attribute a
                JOIN pg_class c ON c.oid = a.attrelid
                JOIN pg_namespace n ON n.oid = c.relnamespace
                LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
                WHERE n.nspname = :schema
                  AND c.relkind IN ('r', 'p')
                  AND a.attnum > 0
                  AND NOT a.attisdropped
                ORDER BY c.relname, a.attnum
            """),
            {"schema": schema_name}
        )
        by_table: Dict[str, List] = {}
        for row in result.fetchall():
            by_table.setdefault(row.table_name, []).append(row)
        return by_table

    async def _fetch_constraints(self, conn: AsyncConnection, schema_name: str) -> Dict[str, List]:
        result = await conn.execute(
            text("""
                SELECT c.relname AS table_name,
                       con.conname AS name,
                       con.contype AS type,
                       ARRAY(
                           SELECT att.attname
                           FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
                           JOIN pg_attribute att
                             ON att.attrelid = con.conrelid AND att.attnum = k.attnum
                           ORDER BY k.ord
                       ) AS columns,
                       rn.nspname AS ref_schema,
                       rc.relname AS ref_table,
                       ARRAY(
                           SELECT att.attname
                           FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
                           JOIN pg_attribute att
                             ON att.attrelid = con.confrelid AND att.attnum = k.attnum
                           ORDER BY k.ord
                       ) AS ref_columns,
                       con.confdeltype AS on_delete,
                       con.confupdtype AS on_update
                FROM pg_constraint con
                JOIN pg_class c ON c.oid = con.conrelid
                JOIN pg_namespace n ON n.oid = c.relnamespace
                LEFT JOIN pg_class rc ON rc.oid = con.confrelid
                LEFT JOIN pg_namespace rn ON rn.oid = rc.relnamespace
                WHERE n.nspname = :schema AND con.contype IN ('p', 'u', 'f')
                ORDER BY c.relname, con.conname
            """),
            {"schema": schema_name}
        )
        by_table: Dict[str, List] = {}
        for row in result.fetchall():
            by_table.setdefault(row.table_name, []).append(row)
        return by_table

    async def _fetch_indexes(
        self, conn: AsyncConnection, schema_name: str
    ) -> Dict[str, List[IndexDef]]:
        # Indexes backing a constraint are covered by the constraint itself
        result = await conn.execute(
            text("""
                SELECT t.relname AS table_name,
                       i.relname AS index_name,
                       ix.indisunique AS is_unique,
                       am.amname AS method,
                       ARRAY(
                           SELECT pg_get_indexdef(ix.indexrelid, k.ord, true)
                           FROM generate_series(1, ix.indnkeyatts) AS k(ord)
                           ORDER BY k.ord
                       ) AS columns,
                       pg_get_expr(ix.indpred, ix.indrelid) AS predicate
                FROM pg_index ix
                JOIN pg_class i ON i.oid = ix.indexrelid
                JOIN pg_class t ON t.oid = ix.indrelid
                JOIN pg_namespace n ON n.oid = t.relnamespace
                JOIN pg_am am ON am.oid = i.relam
                WHERE n.nspname = :schema
                  AND NOT EXISTS (
                      SELECT 1 FROM pg_constraint con WHERE con.conindid = ix.indexrelid
                  )
                ORDER BY t.relname, i.relname
            """),
            {"schema": schema_name}
        )
        by_table: Dict[str, List[IndexDef]] = {}
        for row in result.fetchall():
            by_table.setdefault(row.table_name, []).append(IndexDef(
                name=row.index_name,
                columns=tuple(column.strip('"') for column in row.columns),
                unique=bool(row.is_unique),
                method=row.method,
                where=row.predicate,
            ))
        return by_table
