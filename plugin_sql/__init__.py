"""
plugin-sql: runtime schema migrations and row-level isolation for PostgreSQL.
"""

from plugin_sql.isolation import ConnectionManager, IsolationContext, RLSPolicyEngine
from plugin_sql.migrations import MigrationOptions, RuntimeMigrator

__version__ = "0.1.0"

__all__ = [
    'RuntimeMigrator',
    'MigrationOptions',
    'RLSPolicyEngine',
    'ConnectionManager',
    'IsolationContext',
]
