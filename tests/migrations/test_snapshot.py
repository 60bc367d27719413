"""Tests for snapshot generation and hashing."""

import json

import pytest
from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID

from plugin_sql.core.exceptions import SchemaDefinitionError
from plugin_sql.migrations.models import ColumnDef, SchemaSnapshot
from plugin_sql.migrations.snapshot import (
    generate_snapshot,
    has_changes,
    hash_snapshot,
    snapshot_to_json,
)
from tests.helpers.schemas import items_schema, make_items_table, make_users_table


class TestGenerateSnapshot:
    """Normalization of SQLAlchemy tables."""

    def test_columns_are_normalized(self):
        """Integer primary key becomes serial; nullable text stays plain."""
        snapshot = generate_snapshot(items_schema())

        table = snapshot.tables["public.items"]
        assert table.schema == "public"
        assert table.primary_key == ("id",)
        assert table.columns["id"] == ColumnDef(
            name="id", type="serial", not_null=True, default=None, primary_key=True
        )
        assert table.columns["name"] == ColumnDef(name="name", type="text")

    def test_public_schema_is_not_listed(self):
        snapshot = generate_snapshot(items_schema())

        assert snapshot.schemas == frozenset()

    def test_named_schema_is_listed(self):
        snapshot = generate_snapshot(items_schema(schema="plugin_weather"))

        assert "plugin_weather.items" in snapshot.tables
        assert snapshot.schemas == frozenset({"plugin_weather"})

    def test_varchar_length_and_unique_column(self):
        metadata = MetaData()
        make_users_table(metadata)

        table = generate_snapshot(metadata).tables["public.users"]

        assert table.columns["email"].type == "varchar(255)"
        assert table.columns["email"].not_null is True
        assert "users_email_unique" in table.unique_constraints
        assert table.unique_constraints["users_email_unique"].columns == ("email",)

    def test_server_defaults(self):
        metadata = MetaData()
        Table(
            "settings",
            metadata,
            Column("key", Text, primary_key=True),
            Column("status", Text, server_default="active"),
            Column("created_at", Text, server_default=text("now()")),
        )

        columns = generate_snapshot(metadata).tables["public.settings"].columns

        assert columns["status"].default == "'active'"
        assert columns["created_at"].default == "now()"
        # Text keys never autoincrement
        assert columns["key"].type == "text"

    def test_composite_primary_key(self):
        metadata = MetaData()
        Table(
            "participants",
            metadata,
            Column("room_id", UUID, primary_key=True),
            Column("entity_id", UUID, primary_key=True),
        )

        table = generate_snapshot(metadata).tables["public.participants"]

        assert table.primary_key == ("room_id", "entity_id")
        assert not table.columns["room_id"].primary_key
        assert not table.columns["entity_id"].primary_key

    def test_foreign_key(self):
        metadata = MetaData()
        make_users_table(metadata)
        Table(
            "orders",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE")),
        )

        table = generate_snapshot(metadata).tables["public.orders"]

        fk = table.foreign_keys["orders_user_id_users_id_fk"]
        assert fk.columns == ("user_id",)
        assert fk.ref_schema == "public"
        assert fk.ref_table == "users"
        assert fk.ref_columns == ("id",)
        assert fk.on_delete == "cascade"
        assert fk.on_update is None

    def test_indexes(self):
        metadata = MetaData()
        table = Table(
            "memories",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("room_id", UUID, index=True),
            Column("content", JSONB),
        )
        Index("idx_memories_content", table.c.content, postgresql_using="gin")

        indexes = generate_snapshot(metadata).tables["public.memories"].indexes

        assert indexes["ix_memories_room_id"].columns == ("room_id",)
        assert indexes["ix_memories_room_id"].method == "btree"
        assert indexes["idx_memories_content"].method == "gin"

    def test_expression_index_requires_name(self):
        metadata = MetaData()
        table = make_items_table(metadata)
        Index(None, func.lower(table.c.name))

        with pytest.raises(SchemaDefinitionError, match="explicit name"):
            generate_snapshot(metadata)

    def test_unnamed_expression_index_beside_column_index(self):
        """Both would get the convention name ix_items_name."""
        metadata = MetaData()
        table = Table("items", metadata, Column("id", Integer, primary_key=True), Column("name", Text, index=True))
        Index(None, func.lower(table.c.name))

        with pytest.raises(SchemaDefinitionError, match="explicit name"):
            generate_snapshot(metadata)

    def test_named_expression_index_beside_column_index(self):
        metadata = MetaData()
        table = Table("items", metadata, Column("id", Integer, primary_key=True), Column("name", Text, index=True))
        Index("idx_items_lower_name", func.lower(table.c.name))

        indexes = generate_snapshot(metadata).tables["public.items"].indexes

        assert sorted(indexes) == ["idx_items_lower_name", "ix_items_name"]
        assert indexes["ix_items_name"].columns == ("name",)

    def test_conflicting_index_names(self):
        metadata = MetaData()
        table = make_items_table(metadata, with_age=True)
        Index("idx_items_lookup", table.c.name)
        Index("idx_items_lookup", table.c.age)

        with pytest.raises(SchemaDefinitionError, match="distinct names"):
            generate_snapshot(metadata)


class TestSchemaInputShapes:
    """Accepted and rejected schema descriptions."""

    def test_iterable_of_tables(self):
        metadata = MetaData()
        items = make_items_table(metadata)
        users = make_users_table(metadata)

        assert generate_snapshot([items, users]) == generate_snapshot(metadata)

    def test_mapping_ignores_non_table_values(self):
        metadata = MetaData()
        items = make_items_table(metadata)

        snapshot = generate_snapshot({"items": items, "helper": lambda: None, "VERSION": 3})

        assert list(snapshot.tables) == ["public.items"]

    def test_object_with_metadata(self):
        class Base:
            metadata = items_schema()

        assert "public.items" in generate_snapshot(Base).tables

    def test_unsupported_input_raises(self):
        with pytest.raises(SchemaDefinitionError, match="Unsupported schema"):
            generate_snapshot(42)

    def test_iterable_with_non_table_raises(self):
        metadata = MetaData()
        items = make_items_table(metadata)

        with pytest.raises(SchemaDefinitionError, match="non-table"):
            generate_snapshot([items, "users"])

    def test_tenant_column_must_be_uuid(self):
        metadata = MetaData()
        Table(
            "agents",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("server_id", String(36)),
        )

        with pytest.raises(SchemaDefinitionError, match="reserved for tenant isolation"):
            generate_snapshot(metadata)

    def test_tenant_column_as_uuid_is_accepted(self):
        metadata = MetaData()
        Table(
            "agents",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("server_id", UUID),
        )

        columns = generate_snapshot(metadata).tables["public.agents"].columns
        assert columns["server_id"].type == "uuid"


class TestHashing:
    """Canonical form and change detection."""

    def test_hash_is_order_independent(self):
        first = MetaData()
        Table("t", first, Column("id", Integer, primary_key=True), Column("a", Text), Column("b", Text))
        Table("u", first, Column("id", Integer, primary_key=True))

        second = MetaData()
        Table("u", second, Column("id", Integer, primary_key=True))
        Table("t", second, Column("id", Integer, primary_key=True), Column("b", Text), Column("a", Text))

        assert hash_snapshot(generate_snapshot(first)) == hash_snapshot(generate_snapshot(second))

    def test_hash_changes_with_structure(self):
        assert hash_snapshot(generate_snapshot(items_schema())) != hash_snapshot(
            generate_snapshot(items_schema(with_age=True))
        )

    def test_json_round_trip_preserves_hash(self):
        snapshot = generate_snapshot(items_schema(schema="plugin_weather"))

        restored = SchemaSnapshot.from_dict(json.loads(snapshot_to_json(snapshot)))

        assert restored == snapshot
        assert hash_snapshot(restored) == hash_snapshot(snapshot)

    def test_has_changes_without_previous(self):
        assert has_changes(None, generate_snapshot(items_schema())) is True
        assert has_changes(None, generate_snapshot(MetaData())) is False

    def test_has_changes_with_previous(self):
        previous = generate_snapshot(items_schema())

        assert has_changes(previous, generate_snapshot(items_schema())) is False
        assert has_changes(previous, generate_snapshot(items_schema(with_age=True))) is True
