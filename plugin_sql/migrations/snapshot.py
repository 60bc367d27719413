"""
Snapshot generation.

Normalizes a plugin's declarative schema (SQLAlchemy ``Table`` objects) into a
SchemaSnapshot. This is the only place that sees SQLAlchemy schema objects;
the diff and SQL layers work on the snapshot types in ``models``.
"""

import hashlib
import json
from collections.abc import Iterable, Mapping
from types import ModuleType
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Column, Index, MetaData, Table, UniqueConstraint
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import DefaultClause
from sqlalchemy.sql.elements import TextClause, conv

from plugin_sql.core.exceptions import SchemaDefinitionError
from plugin_sql.migrations.models import (
    ColumnDef,
    ForeignKeyDef,
    IndexDef,
    SchemaSnapshot,
    TableDef,
    UniqueConstraintDef,
)
from plugin_sql.migrations.naming import (
    DEFAULT_SCHEMA,
    TENANT_COLUMN,
    canonical_type,
    quote_literal,
    truncate_identifier,
)

_DIALECT = postgresql.dialect()

_SERIAL_TYPES = {
    "integer": "serial",
    "bigint": "bigserial",
    "smallint": "smallserial",
}


def _as_table(value: Any) -> Optional[Table]:
    if isinstance(value, Table):
        return value
    table = getattr(value, "__table__", None)
    if isinstance(table, Table):
        return table
    return None


def _collect_tables(schema: Any) -> List[Table]:
    """
    Accepts a MetaData, a declarative base (anything with ``.metadata``),
    a single Table, an iterable of tables/mapped classes, a mapping of
    names to tables, or a module exporting tables.
    """
    if isinstance(schema, MetaData):
        return list(schema.tables.values())

    single = _as_table(schema)
    if single is not None:
        return [single]

    metadata = getattr(schema, "metadata", None)
    if isinstance(metadata, MetaData):
        return list(metadata.tables.values())

    if isinstance(schema, ModuleType):
        schema = vars(schema)

    if isinstance(schema, Mapping):
        # Module-style schema objects export helpers next to their tables
        candidates = [_as_table(value) for value in schema.values()]
        return [table for table in candidates if table is not None]

    if isinstance(schema, Iterable) and not isinstance(schema, (str, bytes)):
        tables = []
        for item in schema:
            table = _as_table(item)
            if table is None:
                raise SchemaDefinitionError(
                    f"Schema iterable contains a non-table value: {item!r}"
                )
            tables.append(table)
        return tables

    raise SchemaDefinitionError(
        f"Unsupported schema description of type {type(schema).__name__}; "
        "expected MetaData, Table, mapping or iterable of tables"
    )


def _render_type(table: Table, column: Column) -> str:
    try:
        rendered = column.type.compile(dialect=_DIALECT)
    except SQLAlchemyError as e:
        raise SchemaDefinitionError(
            f"Column {table.name}.{column.name} has a type PostgreSQL cannot render: {e}"
        ) from e
    return canonical_type(rendered)


def _render_expression(element: Any) -> str:
    compiled = element.compile(
        dialect=_DIALECT,
        compile_kwargs={"literal_binds": True, "include_table": False},
    )
    return str(compiled)


def _render_default(table: Table, column: Column) -> Optional[str]:
    server_default = column.server_default
    if server_default is None:
        return None
    if not isinstance(server_default, DefaultClause):
        raise SchemaDefinitionError(
            f"Column {table.name}.{column.name} uses an unsupported server default "
            f"({type(server_default).__name__})"
        )
    arg = server_default.arg
    if isinstance(arg, str):
        return quote_literal(arg)
    if isinstance(arg, TextClause):
        return arg.text.strip()
    return _render_expression(arg)


def _is_serial(table: Table, column: Column) -> bool:
    if column.server_default is not None:
        return False
    return table.autoincrement_column is column


def _normalize_column(table: Table, column: Column, single_pk: bool) -> ColumnDef:
    if not isinstance(column.name, str) or not column.name:
        raise SchemaDefinitionError(f"Table {table.name} has a column without a name")

    col_type = _render_type(table, column)
    if _is_serial(table, column):
        col_type = _SERIAL_TYPES.get(col_type, col_type)

    if column.name == TENANT_COLUMN and col_type != "uuid":
        raise SchemaDefinitionError(
            f"Column {table.name}.{TENANT_COLUMN} is reserved for tenant isolation "
            f"and must be uuid (declared as {col_type})"
        )

    return ColumnDef(
        name=column.name,
        type=col_type,
        not_null=not column.nullable,
        default=_render_default(table, column),
        primary_key=bool(column.primary_key and single_pk),
    )


def _normalize_index(table: Table, index: Index) -> IndexDef:
    columns = []
    has_expression = False
    for expression in index.expressions:
        if isinstance(expression, Column):
            columns.append(expression.name)
        elif isinstance(expression, str):
            columns.append(expression)
        else:
            has_expression = True
            columns.append(_render_expression(expression))

    # Names filled in by a naming convention are conv instances
    declared = isinstance(index.name, str) and not isinstance(index.name, conv)
    if has_expression and not declared:
        raise SchemaDefinitionError(
            f"Expression index on {table.name} must be given an explicit name"
        )

    name = index.name if isinstance(index.name, str) else None
    if not name:
        name = truncate_identifier(f"{table.name}_{'_'.join(columns)}_idx")

    pg_options = index.dialect_options["postgresql"]
    where = pg_options.get("where")
    return IndexDef(
        name=str(name),
        columns=tuple(columns),
        unique=bool(index.unique),
        method=(pg_options.get("using") or "btree").lower(),
        where=_render_expression(where) if where is not None else None,
    )


def _fk_target(table: Table, element: Any) -> Tuple[str, str, str]:
    try:
        target = element.column
        return target.table.schema or DEFAULT_SCHEMA, target.table.name, target.name
    except SQLAlchemyError:
        parts = element.target_fullname.split(".")
        if len(parts) == 3:
            return parts[0], parts[1], parts[2]
        if len(parts) == 2:
            return table.schema or DEFAULT_SCHEMA, parts[0], parts[1]
        raise SchemaDefinitionError(
            f"Cannot resolve foreign key target {element.target_fullname!r} on {table.name}"
        )


def _normalize_foreign_key(table: Table, constraint: Any) -> ForeignKeyDef:
    columns = tuple(constraint.column_keys)
    targets = [_fk_target(table, element) for element in constraint.elements]
    ref_schema, ref_table = targets[0][0], targets[0][1]
    ref_columns = tuple(target[2] for target in targets)

    name = constraint.name if isinstance(constraint.name, str) else None
    if not name:
        name = truncate_identifier(
            f"{table.name}_{'_'.join(columns)}_{ref_table}_{'_'.join(ref_columns)}_fk"
        )

    return ForeignKeyDef(
        name=str(name),
        columns=columns,
        ref_schema=ref_schema,
        ref_table=ref_table,
        ref_columns=ref_columns,
        on_delete=constraint.ondelete.lower() if constraint.ondelete else None,
        on_update=constraint.onupdate.lower() if constraint.onupdate else None,
    )


def _normalize_table(table: Table) -> TableDef:
    if not isinstance(table.name, str) or not table.name:
        raise SchemaDefinitionError("Encountered a table without a name")

    pk_columns = tuple(column.name for column in table.primary_key.columns)
    single_pk = len(pk_columns) == 1

    columns = {
        column.name: _normalize_column(table, column, single_pk)
        for column in table.columns
    }

    indexes: Dict[str, IndexDef] = {}
    for index in table.indexes:
        index_def = _normalize_index(table, index)
        existing = indexes.get(index_def.name)
        if existing is not None and existing != index_def:
            raise SchemaDefinitionError(
                f"Two indexes on {table.name} resolve to the name {index_def.name}; "
                f"give them distinct names"
            )
        indexes[index_def.name] = index_def

    foreign_keys: Dict[str, ForeignKeyDef] = {}
    for constraint in table.foreign_key_constraints:
        fk_def = _normalize_foreign_key(table, constraint)
        foreign_keys[fk_def.name] = fk_def

    unique_constraints: Dict[str, UniqueConstraintDef] = {}
    for constraint in table.constraints:
        if not isinstance(constraint, UniqueConstraint):
            continue
        cols = tuple(column.name for column in constraint.columns)
        name = constraint.name if isinstance(constraint.name, str) else None
        if not name:
            name = truncate_identifier(f"{table.name}_{'_'.join(cols)}_unique")
        unique_constraints[str(name)] = UniqueConstraintDef(name=str(name), columns=cols)

    return TableDef(
        schema=table.schema or DEFAULT_SCHEMA,
        name=table.name,
        columns=columns,
        indexes=indexes,
        foreign_keys=foreign_keys,
        unique_constraints=unique_constraints,
        primary_key=pk_columns,
    )


def generate_snapshot(schema: Any) -> SchemaSnapshot:
    """
    Build a snapshot from a declarative schema.

    Args:
        schema: MetaData, declarative base, Table, mapping or iterable of tables

    Returns:
        SchemaSnapshot keyed by ``schema.table``

    Raises:
        SchemaDefinitionError: input cannot be normalized; no partial
            snapshot is returned
    """
    tables: Dict[str, TableDef] = {}
    for table in _collect_tables(schema):
        table_def = _normalize_table(table)
        key = table_def.qualified_name
        if key in tables and tables[key] != table_def:
            raise SchemaDefinitionError(f"Table {key} is defined twice with different shapes")
        tables[key] = table_def

    schemas = {t.schema for t in tables.values() if t.schema != DEFAULT_SCHEMA}
    return SchemaSnapshot(tables=tables, schemas=frozenset(schemas))


def snapshot_to_json(snapshot: SchemaSnapshot) -> str:
    """Canonical JSON: sorted keys, no whitespace, no timestamps."""
    return json.dumps(snapshot.to_dict(), sort_keys=True, separators=(",", ":"))


def hash_snapshot(snapshot: SchemaSnapshot) -> str:
    """SHA-256 of the canonical JSON form."""
    return hashlib.sha256(snapshot_to_json(snapshot).encode("utf-8")).hexdigest()


def has_changes(previous: Optional[SchemaSnapshot], current: SchemaSnapshot) -> bool:
    """
    Cheap equality check before any diff work.

    With no previous snapshot, an empty schema counts as unchanged.
    """
    if previous is None:
        return len(current.tables) > 0
    return hash_snapshot(previous) != hash_snapshot(current)
