"""
Environment detection and startup validation for plugin-sql.

The environment decides how a blocked destructive migration is reported
(production asks for a manual change), and validation catches isolation
settings that would otherwise fail on the first isolated transaction.
"""

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID


class EnvironmentType(str, Enum):
    """Deployment environments plugin-sql distinguishes."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class DatabaseBackend(str, Enum):
    """Where migrations run; embedded backends skip advisory locks."""
    POSTGRES = "postgres"
    EMBEDDED = "embedded"
    UNCONFIGURED = "unconfigured"


# Connection strings carry credentials
SENSITIVE_VARS = ("POSTGRES_URL", "DATABASE_URL")


def _flag(name: str) -> bool:
    return os.getenv(name, "false").lower() == "true"


def _mask(value: str) -> str:
    # First and last four characters only
    return f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "****"


@dataclass
class ValidationResult:
    """Outcome of Environment.validate()."""
    valid: bool
    missing_vars: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def raise_if_invalid(self) -> None:
        """Raise ConfigurationError listing every problem found."""
        from plugin_sql.core.exceptions import ConfigurationError

        if not self.valid:
            problems = [f"missing {var}" for var in self.missing_vars] + self.errors
            raise ConfigurationError(
                f"Invalid plugin-sql environment: {'; '.join(problems)}"
            )


# Each check returns (missing, errors, warnings) for one concern
_Check = Callable[[EnvironmentType], Tuple[List[str], List[str], List[str]]]


def _check_database(env: EnvironmentType):
    if os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL"):
        return [], [], []
    return ["DATABASE_URL"], [], []


def _check_isolation(env: EnvironmentType):
    if not _flag("ENABLE_DATA_ISOLATION"):
        return [], [], []
    server_id = os.getenv("RLS_SERVER_ID")
    if not server_id:
        return ["RLS_SERVER_ID"], [], []
    try:
        UUID(server_id)
    except ValueError:
        return [], [f"RLS_SERVER_ID is not a valid UUID: {server_id}"], []
    return [], [], []


def _check_destructive_override(env: EnvironmentType):
    if env == EnvironmentType.PRODUCTION and _flag("ALLOW_DESTRUCTIVE_MIGRATIONS"):
        return [], [], ["ALLOW_DESTRUCTIVE_MIGRATIONS=true in production"]
    return [], [], []


_CHECKS: Tuple[_Check, ...] = (_check_database, _check_isolation, _check_destructive_override)


class Environment:
    """Environment detection and configuration."""

    @classmethod
    def current(cls) -> EnvironmentType:
        """
        Get current environment type.

        Detection order:
        1. ENVIRONMENT env var
        2. pytest detection
        3. Default to development
        """
        env_str = os.getenv("ENVIRONMENT", "").lower()

        if env_str:
            try:
                return EnvironmentType(env_str)
            except ValueError:
                valid = ", ".join(e.value for e in EnvironmentType)
                raise ValueError(
                    f"Invalid ENVIRONMENT value: '{env_str}'. "
                    f"Must be one of: {valid}"
                )

        if "pytest" in sys.modules:
            return EnvironmentType.TEST

        return EnvironmentType.DEVELOPMENT

    @classmethod
    def is_production(cls) -> bool:
        return cls.current() == EnvironmentType.PRODUCTION

    @classmethod
    def is_test(cls) -> bool:
        return cls.current() == EnvironmentType.TEST

    @classmethod
    def database_backend(cls, database_url: Optional[str] = None) -> DatabaseBackend:
        """
        Classify the configured connection string.

        Args:
            database_url: URL to classify; POSTGRES_URL / DATABASE_URL when omitted
        """
        from plugin_sql.core.database import is_real_postgres_url

        url = database_url or os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL")
        if not url:
            return DatabaseBackend.UNCONFIGURED
        if is_real_postgres_url(url):
            return DatabaseBackend.POSTGRES
        return DatabaseBackend.EMBEDDED

    @classmethod
    def validate(cls) -> ValidationResult:
        """
        Validate the database, isolation and migration variables.

        Returns:
            ValidationResult; warnings never make it invalid
        """
        env = cls.current()
        missing: List[str] = []
        errors: List[str] = []
        warnings: List[str] = []

        for check in _CHECKS:
            check_missing, check_errors, check_warnings = check(env)
            missing.extend(check_missing)
            errors.extend(check_errors)
            warnings.extend(check_warnings)

        return ValidationResult(
            valid=not missing and not errors,
            missing_vars=missing,
            errors=errors,
            warnings=warnings,
        )

    @classmethod
    def get_config_summary(cls, sanitize: bool = True) -> Dict[str, Any]:
        """
        Settings snapshot for startup logs.

        Args:
            sanitize: Mask connection strings
        """
        config: Dict[str, Any] = {
            "environment": cls.current().value,
            "database_backend": cls.database_backend().value,
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "log_format": os.getenv("LOG_FORMAT", "text"),
            "enable_data_isolation": _flag("ENABLE_DATA_ISOLATION"),
            "rls_server_id": os.getenv("RLS_SERVER_ID"),
            "allow_destructive_migrations": _flag("ALLOW_DESTRUCTIVE_MIGRATIONS"),
        }

        for var in SENSITIVE_VARS:
            value = os.getenv(var)
            if value and sanitize:
                value = _mask(value)
            config[var.lower()] = value

        return config
