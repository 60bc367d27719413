"""Tests for snapshot diffing."""

import logging

from plugin_sql.migrations.diff import calculate_diff, has_diff_changes, summarize_diff
from plugin_sql.migrations.models import (
    ColumnDef,
    ForeignKeyDef,
    IndexDef,
    SchemaSnapshot,
    TableDef,
    UniqueConstraintDef,
)
from plugin_sql.migrations.snapshot import generate_snapshot
from tests.helpers.schemas import items_schema


def make_table(name="items", schema="public", columns=None, indexes=None, **kwargs) -> TableDef:
    columns = columns or [
        ColumnDef("id", "serial", not_null=True, primary_key=True),
        ColumnDef("name", "text"),
    ]
    return TableDef(
        schema=schema,
        name=name,
        columns={column.name: column for column in columns},
        indexes={index.name: index for index in (indexes or [])},
        primary_key=kwargs.pop("primary_key", ("id",)),
        **kwargs,
    )


def snapshot_of(*tables, schemas=()) -> SchemaSnapshot:
    return SchemaSnapshot(tables={t.qualified_name: t for t in tables}, schemas=frozenset(schemas))


class TestTableLevelDiff:
    """Added and removed tables and schemas."""

    def test_no_previous_adds_everything(self):
        current = generate_snapshot(items_schema(schema="plugin_weather"))

        diff = calculate_diff(None, current)

        assert [t.name for t in diff.added_tables] == ["items"]
        assert diff.created_schemas == ("plugin_weather",)
        assert diff.removed_tables == ()
        assert has_diff_changes(diff)

    def test_identical_snapshots_have_no_changes(self):
        snapshot = generate_snapshot(items_schema())

        diff = calculate_diff(snapshot, generate_snapshot(items_schema()))

        assert not has_diff_changes(diff)

    def test_removed_table(self):
        previous = snapshot_of(make_table("items"), make_table("legacy"))
        current = snapshot_of(make_table("items"))

        diff = calculate_diff(previous, current)

        assert [t.name for t in diff.removed_tables] == ["legacy"]
        assert diff.added_tables == ()

    def test_tables_matched_by_qualified_name(self):
        """Moving a table to another schema is a drop plus a create."""
        previous = snapshot_of(make_table("items", schema="public"))
        current = snapshot_of(make_table("items", schema="plugin_weather"), schemas=["plugin_weather"])

        diff = calculate_diff(previous, current)

        assert [t.qualified_name for t in diff.added_tables] == ["plugin_weather.items"]
        assert [t.qualified_name for t in diff.removed_tables] == ["public.items"]


class TestColumnDiff:
    """Column additions, removals and alterations."""

    def test_added_column(self):
        previous = generate_snapshot(items_schema())
        current = generate_snapshot(items_schema(with_age=True))

        diff = calculate_diff(previous, current)

        assert len(diff.modified_tables) == 1
        table_diff = diff.modified_tables[0]
        assert [c.name for c in table_diff.added_columns] == ["age"]
        assert table_diff.removed_columns == ()
        assert summarize_diff(diff)["columns_added"] == 1

    def test_removed_column(self):
        previous = generate_snapshot(items_schema(with_age=True))
        current = generate_snapshot(items_schema())

        table_diff = calculate_diff(previous, current).modified_tables[0]

        assert [c.name for c in table_diff.removed_columns] == ["age"]

    def test_altered_column(self):
        previous = snapshot_of(make_table(columns=[
            ColumnDef("id", "serial", not_null=True, primary_key=True),
            ColumnDef("name", "varchar(50)"),
        ]))
        current = snapshot_of(make_table(columns=[
            ColumnDef("id", "serial", not_null=True, primary_key=True),
            ColumnDef("name", "text", not_null=True, default="''"),
        ]))

        table_diff = calculate_diff(previous, current).modified_tables[0]

        assert len(table_diff.altered_columns) == 1
        alteration = table_diff.altered_columns[0]
        assert alteration.name == "name"
        assert alteration.type_changed
        assert alteration.nullability_changed
        assert alteration.default_changed

    def test_undeclared_tenant_column_is_kept(self, caplog):
        """An introspected server_id column is never scheduled for a drop."""
        previous = snapshot_of(make_table(columns=[
            ColumnDef("id", "serial", not_null=True, primary_key=True),
            ColumnDef("name", "text"),
            ColumnDef("server_id", "uuid"),
        ]))
        current = generate_snapshot(items_schema())

        with caplog.at_level(logging.WARNING):
            diff = calculate_diff(previous, current)

        assert not has_diff_changes(diff)
        assert "server_id is managed by row-level isolation" in caplog.text

    def test_primary_key_change(self):
        previous = snapshot_of(make_table(primary_key=("id",)))
        current = snapshot_of(make_table(
            columns=[
                ColumnDef("id", "serial", not_null=True),
                ColumnDef("name", "text", not_null=True),
            ],
            primary_key=("id", "name"),
        ))

        table_diff = calculate_diff(previous, current).modified_tables[0]

        assert table_diff.primary_key_change == (("id",), ("id", "name"))


class TestConstraintDiff:
    """Indexes, foreign keys and unique constraints."""

    def test_changed_index_is_recreated(self):
        previous = snapshot_of(make_table(indexes=[IndexDef("idx_items_name", ("name",))]))
        current = snapshot_of(make_table(indexes=[IndexDef("idx_items_name", ("name",), unique=True)]))

        table_diff = calculate_diff(previous, current).modified_tables[0]

        assert [i.unique for i in table_diff.removed_indexes] == [False]
        assert [i.unique for i in table_diff.added_indexes] == [True]

    def test_added_and_removed_index(self):
        previous = snapshot_of(make_table(indexes=[IndexDef("idx_old", ("name",))]))
        current = snapshot_of(make_table(indexes=[IndexDef("idx_new", ("name",))]))

        table_diff = calculate_diff(previous, current).modified_tables[0]

        assert [i.name for i in table_diff.added_indexes] == ["idx_new"]
        assert [i.name for i in table_diff.removed_indexes] == ["idx_old"]

    def test_foreign_key_and_unique_changes(self):
        fk = ForeignKeyDef("items_owner_fk", ("owner_id",), "public", "users", ("id",))
        unique = UniqueConstraintDef("items_name_unique", ("name",))
        previous = snapshot_of(make_table(foreign_keys={fk.name: fk}))
        current = snapshot_of(make_table(unique_constraints={unique.name: unique}))

        table_diff = calculate_diff(previous, current).modified_tables[0]

        assert table_diff.removed_foreign_keys == (fk,)
        assert table_diff.added_unique_constraints == (unique,)
