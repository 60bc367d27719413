"""
Diff calculation between two snapshots.

The diff is conservative: anything not classified as added, removed or
altered is unchanged. A missed change is a bug; an extra no-op entry is not.
"""

import logging
from typing import Dict, List, Mapping, Optional, Tuple, TypeVar

from plugin_sql.migrations.models import (
    ColumnAlteration,
    ColumnDef,
    SchemaDiff,
    SchemaSnapshot,
    TableDef,
    TableDiff,
)
from plugin_sql.migrations.naming import TENANT_COLUMN

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _split(
    previous: Mapping[str, T],
    current: Mapping[str, T],
) -> Tuple[List[T], List[T], List[Tuple[T, T]]]:
    """Added, removed and (previous, current) pairs that differ, sorted by name."""
    added = [current[name] for name in sorted(current.keys() - previous.keys())]
    removed = [previous[name] for name in sorted(previous.keys() - current.keys())]
    changed = [
        (previous[name], current[name])
        for name in sorted(previous.keys() & current.keys())
        if previous[name] != current[name]
    ]
    return added, removed, changed


def _diff_columns(
    previous: TableDef,
    current: TableDef,
) -> Tuple[Tuple[ColumnDef, ...], Tuple[ColumnDef, ...], Tuple[ColumnAlteration, ...]]:
    added, removed, changed = _split(previous.columns, current.columns)

    kept_removed = []
    for column in removed:
        if column.name == TENANT_COLUMN:
            # Owned by the isolation engine; dropping it would orphan tenant data
            logger.warning(
                f"Column {previous.qualified_name}.{TENANT_COLUMN} is managed by row-level "
                f"isolation and is not declared by the plugin; leaving it in place"
            )
            continue
        kept_removed.append(column)

    alterations = tuple(
        ColumnAlteration(name=old.name, previous=old, current=new)
        for old, new in changed
    )
    return tuple(added), tuple(kept_removed), alterations


def diff_tables(previous: TableDef, current: TableDef) -> TableDiff:
    """Diff two versions of the same table."""
    added_columns, removed_columns, altered_columns = _diff_columns(previous, current)

    added_idx, removed_idx, changed_idx = _split(previous.indexes, current.indexes)
    # A changed index is recreated
    removed_idx += [old for old, _ in changed_idx]
    added_idx += [new for _, new in changed_idx]

    added_fk, removed_fk, changed_fk = _split(previous.foreign_keys, current.foreign_keys)
    removed_fk += [old for old, _ in changed_fk]
    added_fk += [new for _, new in changed_fk]

    added_uq, removed_uq, changed_uq = _split(
        previous.unique_constraints, current.unique_constraints
    )
    removed_uq += [old for old, _ in changed_uq]
    added_uq += [new for _, new in changed_uq]

    primary_key_change = None
    if previous.primary_key != current.primary_key:
        primary_key_change = (previous.primary_key, current.primary_key)

    return TableDiff(
        schema=current.schema,
        name=current.name,
        added_columns=added_columns,
        removed_columns=removed_columns,
        altered_columns=altered_columns,
        added_indexes=tuple(added_idx),
        removed_indexes=tuple(removed_idx),
        added_foreign_keys=tuple(added_fk),
        removed_foreign_keys=tuple(removed_fk),
        added_unique_constraints=tuple(added_uq),
        removed_unique_constraints=tuple(removed_uq),
        primary_key_change=primary_key_change,
    )


def calculate_diff(
    previous: Optional[SchemaSnapshot],
    current: SchemaSnapshot,
) -> SchemaDiff:
    """
    Compare two snapshots.

    Args:
        previous: Last applied snapshot, or None on first migration
        current: Snapshot of the declared schema

    Returns:
        SchemaDiff; with no previous snapshot every table is added
    """
    previous_tables: Mapping[str, TableDef] = previous.tables if previous else {}
    previous_schemas = previous.schemas if previous else frozenset()

    added, removed, changed = _split(previous_tables, current.tables)

    modified: List[TableDiff] = []
    for old, new in changed:
        table_diff = diff_tables(old, new)
        if table_diff.has_changes():
            modified.append(table_diff)

    created_schemas = tuple(sorted(current.schemas - previous_schemas))

    return SchemaDiff(
        created_schemas=created_schemas,
        added_tables=tuple(added),
        removed_tables=tuple(removed),
        modified_tables=tuple(modified),
    )


def has_diff_changes(diff: SchemaDiff) -> bool:
    """True if the diff contains anything to apply."""
    return bool(
        diff.created_schemas
        or diff.added_tables
        or diff.removed_tables
        or diff.modified_tables
    )


def summarize_diff(diff: SchemaDiff) -> Dict[str, int]:
    """Counts for log lines."""
    return {
        "tables_added": len(diff.added_tables),
        "tables_removed": len(diff.removed_tables),
        "tables_modified": len(diff.modified_tables),
        "columns_added": sum(len(t.added_columns) for t in diff.modified_tables),
        "columns_removed": sum(len(t.removed_columns) for t in diff.modified_tables),
        "columns_altered": sum(len(t.altered_columns) for t in diff.modified_tables),
    }
