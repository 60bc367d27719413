"""Identifier and type spelling helpers shared by the snapshot, introspection and SQL layers."""

import re

# The core plugin owns the public schema; every other plugin gets its own.
CORE_PLUGIN_NAME = "plugin-sql"
DEFAULT_SCHEMA = "public"

# Tenant key column managed by the row-level isolation engine, never by plugins
TENANT_COLUMN = "server_id"

# PostgreSQL truncates identifiers longer than this (NAMEDATALEN - 1)
MAX_IDENTIFIER_LENGTH = 63


def quote_ident(name: str) -> str:
    """Always double-quote an identifier, escaping embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal for inline DDL (defaults, comments)."""
    return "'" + value.replace("'", "''") + "'"


def qualified(schema: str, name: str) -> str:
    """Quoted ``"schema"."name"``."""
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def truncate_identifier(name: str) -> str:
    return name[:MAX_IDENTIFIER_LENGTH]


_TYPE_ALIASES = (
    (re.compile(r"^character varying"), "varchar"),
    (re.compile(r"^character(?=\(|\[|$)"), "char"),
    (re.compile(r"^decimal(?=\(|\[|$)"), "numeric"),
)

_TYPE_MODIFIERS = re.compile(r"\(([^)]*)\)")

_FLOAT = re.compile(r"^float(?:\((\d+)\))?((?:\[\])*)$")


def canonical_type(type_name: str) -> str:
    """
    One spelling per PostgreSQL type.

    SQLAlchemy renders ``numeric(10, 2)``, ``decimal`` and ``float(24)`` where
    format_type() reports ``numeric(10,2)``, ``numeric`` and ``real``. Declared
    and introspected types both pass through here before they are compared.
    """
    spelled = " ".join(type_name.lower().split())
    spelled = _TYPE_MODIFIERS.sub(lambda m: "(" + m.group(1).replace(" ", "") + ")", spelled)
    for pattern, replacement in _TYPE_ALIASES:
        spelled = pattern.sub(replacement, spelled)

    # float(p) is real up to 24 bits of precision, double precision above
    match = _FLOAT.match(spelled)
    if match:
        precision = int(match.group(1)) if match.group(1) else 53
        base = "real" if precision <= 24 else "double precision"
        spelled = base + match.group(2)
    return spelled


def derive_schema_name(plugin_name: str) -> str:
    """
    Namespaced schema for a plugin.

    "@acme/plugin-weather" -> "plugin_weather"; "My Plugin 2" -> "my_plugin_2".
    """
    name = plugin_name.strip().lower()
    if name.startswith("@") and "/" in name:
        name = name.split("/", 1)[1]
    name = re.sub(r"[^a-z0-9_]+", "_", name)
    name = re.sub(r"_+", "_", name).strip("_")
    if not name:
        return "plugin"
    if name[0].isdigit():
        name = f"p_{name}"
    return truncate_identifier(name)


def expected_schema_name(plugin_name: str, core_plugin_name: str = CORE_PLUGIN_NAME) -> str:
    """Schema a plugin's tables are expected to live in."""
    if plugin_name == core_plugin_name:
        return DEFAULT_SCHEMA
    return derive_schema_name(plugin_name)
