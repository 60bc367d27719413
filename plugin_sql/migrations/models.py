"""
Migration domain models.

Snapshots and diffs are immutable values: tuples instead of lists and
mappings that are only ever rebuilt, never edited. Snapshots serialize to a
canonical dict (sorted keys, no timestamps) so that structurally identical
schemas hash identically.
"""

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


def now_millis() -> int:
    """Milliseconds since the epoch, the unit every bookkeeping timestamp uses."""
    return int(time.time() * 1000)


def _frozen(mapping: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(sorted((mapping or {}).items())))


@dataclass(frozen=True)
class ColumnDef:
    """A column as it exists (or should exist) in the database."""
    name: str
    type: str
    not_null: bool = False
    default: Optional[str] = None
    primary_key: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "notNull": self.not_null,
            "default": self.default,
            "primaryKey": self.primary_key,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ColumnDef":
        return cls(
            name=data["name"],
            type=data["type"],
            not_null=bool(data.get("notNull", False)),
            default=data.get("default"),
            primary_key=bool(data.get("primaryKey", False)),
        )


@dataclass(frozen=True)
class IndexDef:
    """A (possibly unique or partial) index."""
    name: str
    columns: Tuple[str, ...]
    unique: bool = False
    method: str = "btree"
    where: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": list(self.columns),
            "isUnique": self.unique,
            "method": self.method,
            "where": self.where,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexDef":
        return cls(
            name=data["name"],
            columns=tuple(data.get("columns", ())),
            unique=bool(data.get("isUnique", False)),
            method=data.get("method") or "btree",
            where=data.get("where"),
        )


@dataclass(frozen=True)
class ForeignKeyDef:
    """A foreign key constraint."""
    name: str
    columns: Tuple[str, ...]
    ref_schema: str
    ref_table: str
    ref_columns: Tuple[str, ...]
    on_delete: Optional[str] = None
    on_update: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columnsFrom": list(self.columns),
            "schemaTo": self.ref_schema,
            "tableTo": self.ref_table,
            "columnsTo": list(self.ref_columns),
            "onDelete": self.on_delete,
            "onUpdate": self.on_update,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ForeignKeyDef":
        return cls(
            name=data["name"],
            columns=tuple(data.get("columnsFrom", ())),
            ref_schema=data.get("schemaTo") or "public",
            ref_table=data["tableTo"],
            ref_columns=tuple(data.get("columnsTo", ())),
            on_delete=data.get("onDelete"),
            on_update=data.get("onUpdate"),
        )


@dataclass(frozen=True)
class UniqueConstraintDef:
    """A named multi-column unique constraint."""
    name: str
    columns: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "columns": list(self.columns)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UniqueConstraintDef":
        return cls(name=data["name"], columns=tuple(data.get("columns", ())))


@dataclass(frozen=True)
class TableDef:
    """
    Structural description of one table.

    ``primary_key`` lists the primary key columns in key order; a single
    column key is also flagged on the column itself.
    """
    schema: str
    name: str
    columns: Mapping[str, ColumnDef] = field(default_factory=dict)
    indexes: Mapping[str, IndexDef] = field(default_factory=dict)
    foreign_keys: Mapping[str, ForeignKeyDef] = field(default_factory=dict)
    unique_constraints: Mapping[str, UniqueConstraintDef] = field(default_factory=dict)
    primary_key: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "columns", _frozen(self.columns))
        object.__setattr__(self, "indexes", _frozen(self.indexes))
        object.__setattr__(self, "foreign_keys", _frozen(self.foreign_keys))
        object.__setattr__(self, "unique_constraints", _frozen(self.unique_constraints))

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": self.schema,
            "name": self.name,
            "columns": {k: v.to_dict() for k, v in self.columns.items()},
            "indexes": {k: v.to_dict() for k, v in self.indexes.items()},
            "foreignKeys": {k: v.to_dict() for k, v in self.foreign_keys.items()},
            "uniqueConstraints": {k: v.to_dict() for k, v in self.unique_constraints.items()},
            "primaryKey": list(self.primary_key),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TableDef":
        return cls(
            schema=data.get("schema") or "public",
            name=data["name"],
            columns={k: ColumnDef.from_dict(v) for k, v in (data.get("columns") or {}).items()},
            indexes={k: IndexDef.from_dict(v) for k, v in (data.get("indexes") or {}).items()},
            foreign_keys={
                k: ForeignKeyDef.from_dict(v) for k, v in (data.get("foreignKeys") or {}).items()
            },
            unique_constraints={
                k: UniqueConstraintDef.from_dict(v)
                for k, v in (data.get("uniqueConstraints") or {}).items()
            },
            primary_key=tuple(data.get("primaryKey") or ()),
        )


@dataclass(frozen=True)
class SchemaSnapshot:
    """Normalized structural description of a plugin's tables."""
    tables: Mapping[str, TableDef] = field(default_factory=dict)
    schemas: frozenset = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "tables", _frozen(self.tables))
        object.__setattr__(self, "schemas", frozenset(self.schemas))

    def table_names(self) -> frozenset:
        """Bare table names (without schema)."""
        return frozenset(table.name for table in self.tables.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": "1",
            "dialect": "postgresql",
            "tables": {k: v.to_dict() for k, v in self.tables.items()},
            "schemas": sorted(self.schemas),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SchemaSnapshot":
        schemas = data.get("schemas") or []
        if isinstance(schemas, Mapping):
            schemas = list(schemas.keys())
        return cls(
            tables={k: TableDef.from_dict(v) for k, v in (data.get("tables") or {}).items()},
            schemas=frozenset(schemas),
        )


@dataclass(frozen=True)
class ColumnAlteration:
    """A column present in both snapshots whose definition changed."""
    name: str
    previous: ColumnDef
    current: ColumnDef

    @property
    def type_changed(self) -> bool:
        return self.previous.type != self.current.type

    @property
    def nullability_changed(self) -> bool:
        return self.previous.not_null != self.current.not_null

    @property
    def default_changed(self) -> bool:
        return self.previous.default != self.current.default


@dataclass(frozen=True)
class TableDiff:
    """Changes to a table present in both snapshots."""
    schema: str
    name: str
    added_columns: Tuple[ColumnDef, ...] = ()
    removed_columns: Tuple[ColumnDef, ...] = ()
    altered_columns: Tuple[ColumnAlteration, ...] = ()
    added_indexes: Tuple[IndexDef, ...] = ()
    removed_indexes: Tuple[IndexDef, ...] = ()
    added_foreign_keys: Tuple[ForeignKeyDef, ...] = ()
    removed_foreign_keys: Tuple[ForeignKeyDef, ...] = ()
    added_unique_constraints: Tuple[UniqueConstraintDef, ...] = ()
    removed_unique_constraints: Tuple[UniqueConstraintDef, ...] = ()
    # (previous key columns, current key columns) when the primary key changed
    primary_key_change: Optional[Tuple[Tuple[str, ...], Tuple[str, ...]]] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def has_changes(self) -> bool:
        return any((
            self.added_columns, self.removed_columns, self.altered_columns,
            self.added_indexes, self.removed_indexes,
            self.added_foreign_keys, self.removed_foreign_keys,
            self.added_unique_constraints, self.removed_unique_constraints,
            self.primary_key_change,
        ))


@dataclass(frozen=True)
class SchemaDiff:
    """Structural delta between two snapshots."""
    created_schemas: Tuple[str, ...] = ()
    added_tables: Tuple[TableDef, ...] = ()
    removed_tables: Tuple[TableDef, ...] = ()
    modified_tables: Tuple[TableDiff, ...] = ()


@dataclass(frozen=True)
class DataLossCheck:
    """Result of scanning a diff for destructive operations."""
    has_data_loss: bool
    warnings: Tuple[str, ...] = ()
    requires_confirmation: bool = False


@dataclass(frozen=True)
class MigrationRecord:
    """One successful migration of a plugin."""
    plugin_name: str
    hash: str
    applied_at_millis: int


@dataclass(frozen=True)
class JournalEntry:
    """Append-only journal row, one per applied migration."""
    plugin_name: str
    idx: int
    tag: str
    breakpoints: bool = True
    when_millis: Optional[int] = None


@dataclass
class MigrationOptions:
    """Per-call migration options."""
    verbose: bool = False
    force: bool = False
    dry_run: bool = False
    allow_data_loss: bool = False


@dataclass
class MigrationStatus:
    """Read-only view of a plugin's migration history."""
    has_run: bool
    last_migration: Optional[MigrationRecord]
    journal: List[JournalEntry] = field(default_factory=list)
    snapshot_count: int = 0
