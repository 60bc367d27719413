"""
DDL generation from a SchemaDiff, plus the destructive-change check.

Both functions are pure: they build statements and reports, execution is the
migrator's job.

Statement order:
    1. CREATE SCHEMA
    2. CREATE TABLE (columns, primary key, unique constraints)
    3. per modified table: drop foreign keys, drop primary key, drop unique
       constraints, drop indexes, drop columns, add columns, alter columns,
       add primary key, add unique constraints
    4. DROP TABLE
    5. CREATE INDEX (new tables and modified tables)
    6. ADD CONSTRAINT ... FOREIGN KEY (last, so every referenced table exists)
"""

import re
from typing import Dict, List, Optional, Tuple

from plugin_sql.migrations.models import (
    ColumnAlteration,
    ColumnDef,
    DataLossCheck,
    ForeignKeyDef,
    IndexDef,
    SchemaDiff,
    SchemaSnapshot,
    TableDef,
    TableDiff,
    UniqueConstraintDef,
)
from plugin_sql.migrations.naming import (
    canonical_type,
    qualified,
    quote_ident,
    truncate_identifier,
)

# serial types are only valid in CREATE TABLE / ADD COLUMN
_SERIAL_BASE_TYPES = {
    "smallserial": "smallint",
    "serial": "integer",
    "bigserial": "bigint",
}

_INTEGER_RANK = {
    "smallint": 1, "int2": 1, "smallserial": 1,
    "integer": 2, "int": 2, "int4": 2, "serial": 2,
    "bigint": 3, "int8": 3, "bigserial": 3,
}

_FLOAT_RANK = {
    "real": 1, "float4": 1,
    "double precision": 2, "float8": 2, "float": 2,
}

_TIMESTAMP_TYPES = {"timestamp", "timestamp without time zone"}
_TIMESTAMPTZ_TYPES = {"timestamptz", "timestamp with time zone"}

_VARCHAR_RE = re.compile(r"^(?:varchar|character varying)(?:\((\d+)\))?$")
_CHAR_RE = re.compile(r"^(?:char|character|bpchar)(?:\((\d+)\))?$")


# =============================================================================
# DATA LOSS CHECK
# =============================================================================

def _normalize_type(type_name: str) -> str:
    return canonical_type(type_name)


def _length(match: "re.Match") -> Optional[int]:
    return int(match.group(1)) if match.group(1) else None


def is_widening_conversion(old_type: str, new_type: str) -> bool:
    """
    True if every value of ``old_type`` survives a cast to ``new_type``.

    Only well-known safe conversions count; anything unrecognized is treated
    as narrowing.
    """
    old, new = _normalize_type(old_type), _normalize_type(new_type)
    if old == new or new == "text":
        return True

    if old in _INTEGER_RANK and new in _INTEGER_RANK:
        return _INTEGER_RANK[new] >= _INTEGER_RANK[old]
    if old in _FLOAT_RANK and new in _FLOAT_RANK:
        return _FLOAT_RANK[new] >= _FLOAT_RANK[old]

    if old == "json" and new == "jsonb":
        return True
    if old in _TIMESTAMP_TYPES and new in _TIMESTAMPTZ_TYPES:
        return True

    new_varchar = _VARCHAR_RE.match(new)
    if new_varchar:
        new_length = _length(new_varchar)
        old_match = _VARCHAR_RE.match(old) or _CHAR_RE.match(old)
        if old_match is None:
            return False
        if new_length is None:
            return True
        old_length = _length(old_match)
        if old_length is None:
            # char without a length is char(1); unbounded varchar is not
            return bool(_CHAR_RE.match(old)) and new_length >= 1
        return new_length >= old_length

    return False


def _column_loss_warnings(table: TableDiff) -> Tuple[List[str], List[str]]:
    """(data loss warnings, informational warnings) for one modified table."""
    losses: List[str] = []
    notes: List[str] = []

    for column in table.removed_columns:
        losses.append(f"Column {table.qualified_name}.{column.name} will be dropped")

    for alteration in table.altered_columns:
        previous, current = alteration.previous, alteration.current
        if alteration.type_changed and not is_widening_conversion(previous.type, current.type):
            losses.append(
                f"Column {table.qualified_name}.{alteration.name} changes type from "
                f"{previous.type} to {current.type}, which may lose data"
            )
        if current.not_null and not previous.not_null and current.default is None:
            notes.append(
                f"Column {table.qualified_name}.{alteration.name} becomes NOT NULL without "
                f"a default; the migration fails if existing rows hold NULL"
            )

    for column in table.added_columns:
        if column.not_null and column.default is None and not _is_serial(column.type):
            notes.append(
                f"Column {table.qualified_name}.{column.name} is added as NOT NULL without "
                f"a default; the migration fails if the table has rows"
            )

    return losses, notes


def check_for_data_loss(diff: SchemaDiff) -> DataLossCheck:
    """
    Scan a diff for operations that would destroy data.

    Dropped tables, dropped columns and narrowing type changes count as data
    loss. NOT NULL without a default is reported as a warning only.

    Returns:
        DataLossCheck; ``requires_confirmation`` is set whenever data would be lost
    """
    losses: List[str] = []
    notes: List[str] = []

    for table in diff.removed_tables:
        losses.append(f"Table {table.qualified_name} will be dropped")

    for table in diff.modified_tables:
        table_losses, table_notes = _column_loss_warnings(table)
        losses.extend(table_losses)
        notes.extend(table_notes)

    has_data_loss = bool(losses)
    return DataLossCheck(
        has_data_loss=has_data_loss,
        warnings=tuple(losses + notes),
        requires_confirmation=has_data_loss,
    )


# =============================================================================
# SQL RENDERING
# =============================================================================

def _is_serial(type_name: str) -> bool:
    return _normalize_type(type_name) in _SERIAL_BASE_TYPES


def _column_list(columns) -> str:
    return ", ".join(quote_ident(column) for column in columns)


def _column_definition(column: ColumnDef, inline_primary_key: bool = False) -> str:
    parts = [quote_ident(column.name), column.type]
    if inline_primary_key and column.primary_key:
        parts.append("PRIMARY KEY")
    if column.default is not None:
        parts.append(f"DEFAULT {column.default}")
    if column.not_null and not (inline_primary_key and column.primary_key):
        parts.append("NOT NULL")
    return " ".join(parts)


def _primary_key_name(table_name: str) -> str:
    # PostgreSQL's own name for an unnamed primary key
    return truncate_identifier(f"{table_name}_pkey")


def create_table_sql(table: TableDef) -> str:
    """CREATE TABLE with columns, primary key and unique constraints."""
    composite_key = len(table.primary_key) > 1
    lines = [
        _column_definition(column, inline_primary_key=not composite_key)
        for column in table.columns.values()
    ]
    if composite_key:
        lines.append(f"PRIMARY KEY ({_column_list(table.primary_key)})")
    for constraint in table.unique_constraints.values():
        lines.append(
            f"CONSTRAINT {quote_ident(constraint.name)} UNIQUE ({_column_list(constraint.columns)})"
        )
    body = ",\n\t".join(lines)
    return f"CREATE TABLE IF NOT EXISTS {qualified(table.schema, table.name)} (\n\t{body}\n)"


def _index_expression(column: str, table: Optional[TableDef]) -> str:
    # Expression indexes store the rendered expression instead of a column name
    if table is None or column in table.columns:
        return quote_ident(column)
    return column


def create_index_sql(schema: str, table_name: str, index: IndexDef,
                     table: Optional[TableDef] = None) -> str:
    unique = "UNIQUE " if index.unique else ""
    columns = ", ".join(_index_expression(column, table) for column in index.columns)
    statement = (
        f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(index.name)} "
        f"ON {qualified(schema, table_name)} USING {index.method} ({columns})"
    )
    if index.where:
        statement += f" WHERE {index.where}"
    return statement


def add_foreign_key_sql(schema: str, table_name: str, fk: ForeignKeyDef) -> str:
    statement = (
        f"ALTER TABLE {qualified(schema, table_name)} ADD CONSTRAINT {quote_ident(fk.name)} "
        f"FOREIGN KEY ({_column_list(fk.columns)}) "
        f"REFERENCES {qualified(fk.ref_schema, fk.ref_table)}({_column_list(fk.ref_columns)})"
    )
    if fk.on_delete:
        statement += f" ON DELETE {fk.on_delete.upper()}"
    if fk.on_update:
        statement += f" ON UPDATE {fk.on_update.upper()}"
    return statement


def _alter_column_sql(target: str, alteration: ColumnAlteration) -> List[str]:
    column = quote_ident(alteration.name)
    current = alteration.current
    statements: List[str] = []

    if alteration.type_changed:
        new_type = _SERIAL_BASE_TYPES.get(_normalize_type(current.type), current.type)
        statements.append(
            f"ALTER TABLE {target} ALTER COLUMN {column} "
            f"SET DATA TYPE {new_type} USING {column}::{new_type}"
        )

    if alteration.default_changed:
        if current.default is None:
            statements.append(f"ALTER TABLE {target} ALTER COLUMN {column} DROP DEFAULT")
        else:
            statements.append(
                f"ALTER TABLE {target} ALTER COLUMN {column} SET DEFAULT {current.default}"
            )

    if alteration.nullability_changed:
        action = "SET NOT NULL" if current.not_null else "DROP NOT NULL"
        statements.append(f"ALTER TABLE {target} ALTER COLUMN {column} {action}")

    return statements


def _add_unique_sql(target: str, constraint: UniqueConstraintDef) -> str:
    return (
        f"ALTER TABLE {target} ADD CONSTRAINT {quote_ident(constraint.name)} "
        f"UNIQUE ({_column_list(constraint.columns)})"
    )


def _modified_table_sql(table: TableDiff) -> List[str]:
    target = qualified(table.schema, table.name)
    statements: List[str] = []

    for fk in table.removed_foreign_keys:
        statements.append(f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {quote_ident(fk.name)}")

    if table.primary_key_change is not None and table.primary_key_change[0]:
        statements.append(
            f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS "
            f"{quote_ident(_primary_key_name(table.name))}"
        )

    for constraint in table.removed_unique_constraints:
        statements.append(
            f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {quote_ident(constraint.name)}"
        )

    for index in table.removed_indexes:
        statements.append(f"DROP INDEX IF EXISTS {qualified(table.schema, index.name)}")

    for column in table.removed_columns:
        statements.append(
            f"ALTER TABLE {target} DROP COLUMN IF EXISTS {quote_ident(column.name)} CASCADE"
        )

    for column in table.added_columns:
        statements.append(f"ALTER TABLE {target} ADD COLUMN {_column_definition(column)}")

    for alteration in table.altered_columns:
        statements.extend(_alter_column_sql(target, alteration))

    if table.primary_key_change is not None and table.primary_key_change[1]:
        statements.append(
            f"ALTER TABLE {target} ADD PRIMARY KEY ({_column_list(table.primary_key_change[1])})"
        )

    for constraint in table.added_unique_constraints:
        statements.append(_add_unique_sql(target, constraint))

    return statements


def generate_migration_sql(
    previous: Optional[SchemaSnapshot],
    current: SchemaSnapshot,
    diff: SchemaDiff,
) -> List[str]:
    """
    Lower a diff to an ordered list of DDL statements.

    Args:
        previous: Snapshot the diff was computed from (None on first migration)
        current: Snapshot the diff leads to
        diff: Output of calculate_diff(previous, current)

    Returns:
        Statements in execution order; empty if the diff is empty
    """
    known_tables: Dict[str, TableDef] = dict(previous.tables) if previous else {}
    known_tables.update(current.tables)

    statements: List[str] = []

    for schema_name in diff.created_schemas:
        statements.append(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema_name)}")

    for table in diff.added_tables:
        statements.append(create_table_sql(table))

    for table in diff.modified_tables:
        statements.extend(_modified_table_sql(table))

    for table in diff.removed_tables:
        statements.append(f"DROP TABLE IF EXISTS {qualified(table.schema, table.name)} CASCADE")

    new_indexes: List[Tuple[str, str, IndexDef]] = []
    for table in diff.added_tables:
        new_indexes.extend((table.schema, table.name, index) for index in table.indexes.values())
    for table in diff.modified_tables:
        new_indexes.extend((table.schema, table.name, index) for index in table.added_indexes)
    for schema_name, table_name, index in new_indexes:
        table_def = known_tables.get(f"{schema_name}.{table_name}")
        statements.append(create_index_sql(schema_name, table_name, index, table_def))

    for table in diff.added_tables:
        for fk in table.foreign_keys.values():
            statements.append(add_foreign_key_sql(table.schema, table.name, fk))
    for table in diff.modified_tables:
        for fk in table.added_foreign_keys:
            statements.append(add_foreign_key_sql(table.schema, table.name, fk))

    return statements

