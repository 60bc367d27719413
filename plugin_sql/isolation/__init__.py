"""
Row-level data isolation.

Server isolation keeps tenants apart; entity isolation keeps users apart
within a tenant. Both are PostgreSQL RLS policies driven by
transaction-local settings.
"""

from plugin_sql.isolation.context import ConnectionManager, IsolationContext
from plugin_sql.isolation.rls import (
    AccessKind,
    IsolationTarget,
    RLSPolicyEngine,
    STRICT_TABLES,
    classify_table,
)

__all__ = [
    'ConnectionManager',
    'IsolationContext',
    'RLSPolicyEngine',
    'IsolationTarget',
    'AccessKind',
    'STRICT_TABLES',
    'classify_table',
]
