"""Error taxonomy for the migrator and the isolation engine."""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from plugin_sql.migrations.models import DataLossCheck


class PluginSQLError(Exception):
    """Base class for all plugin-sql errors."""
    pass


class ConfigurationError(PluginSQLError):
    """Invalid configuration or input. Fatal, never retried."""
    pass


class SchemaDefinitionError(ConfigurationError):
    """Declarative schema input could not be normalized into a snapshot."""
    pass


class InvalidLockIdError(ConfigurationError):
    """Derived advisory lock id is outside the PostgreSQL bigint range."""
    pass


class IsolationContextError(ConfigurationError):
    """Server or entity id for the isolation context is malformed."""
    pass


class DestructiveMigrationError(PluginSQLError):
    """Migration would lose data and no override was given."""

    def __init__(
        self,
        message: str,
        plugin_name: str,
        check: "DataLossCheck",
        production: bool = False,
    ):
        super().__init__(message)
        self.plugin_name = plugin_name
        self.check = check
        self.production = production


class MigrationExecutionError(PluginSQLError):
    """A statement inside the migration transaction failed; nothing was applied."""

    def __init__(self, plugin_name: str, statement: Optional[str], cause: Exception):
        where = f" while executing: {statement}" if statement else ""
        super().__init__(f"Migration failed for {plugin_name}{where}: {cause}")
        self.plugin_name = plugin_name
        self.statement = statement
        self.cause = cause


class JournalConflictError(PluginSQLError):
    """The journal already holds an entry at this index. Entries are never rewritten."""

    def __init__(self, plugin_name: str, idx: int):
        super().__init__(f"Journal of {plugin_name} already has an entry at idx {idx}")
        self.plugin_name = plugin_name
        self.idx = idx
