"""Sample declarative schemas shared by snapshot and migrator tests."""

from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text


def make_items_table(metadata: MetaData, with_age: bool = False, schema: Optional[str] = None) -> Table:
    """The items(id, name[, age]) table used across migrator tests."""
    columns = [
        Column("id", Integer, primary_key=True),
        Column("name", Text),
    ]
    if with_age:
        columns.append(Column("age", Integer))
    return Table("items", metadata, *columns, schema=schema)


def make_users_table(metadata: MetaData) -> Table:
    return Table(
        "users",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("email", String(255), nullable=False, unique=True),
    )


def items_schema(with_age: bool = False, schema: Optional[str] = None) -> MetaData:
    metadata = MetaData()
    make_items_table(metadata, with_age=with_age, schema=schema)
    return metadata
