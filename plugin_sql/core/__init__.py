"""
Core infrastructure for plugin-sql.

Shared components used by the migrator and the isolation engine:
- Configuration management
- Environment detection
- Database engine construction
- Error taxonomy
"""

from plugin_sql.core.config import Settings, validate_isolation_settings
from plugin_sql.core.database import create_engine_from_settings, is_real_postgres_url
from plugin_sql.core.environment import DatabaseBackend, Environment, EnvironmentType
from plugin_sql.core.exceptions import (
    ConfigurationError,
    DestructiveMigrationError,
    InvalidLockIdError,
    IsolationContextError,
    JournalConflictError,
    MigrationExecutionError,
    PluginSQLError,
    SchemaDefinitionError,
)

__all__ = [
    'Settings',
    'validate_isolation_settings',
    'create_engine_from_settings',
    'is_real_postgres_url',
    'Environment',
    'EnvironmentType',
    'DatabaseBackend',
    'PluginSQLError',
    'ConfigurationError',
    'SchemaDefinitionError',
    'InvalidLockIdError',
    'IsolationContextError',
    'DestructiveMigrationError',
    'MigrationExecutionError',
    'JournalConflictError',
]
