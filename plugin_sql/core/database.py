"""
Database engine construction and backend detection.

PostgreSQL database with SQLAlchemy async engine + asyncpg.

DATABASE_URL is read from plugin_sql.core.config (single resolution path).
"""
import logging
import re
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from plugin_sql.core.config import Settings

logger = logging.getLogger(__name__)

_PG_SCHEMES = (
    "postgres://",
    "postgresql://",
    "postgresql+asyncpg://",
    "postgresql+psycopg://",
    "postgis://",
    "pgbouncer://",
    "cockroachdb://",
    "timescaledb://",
    "yugabyte://",
)

_NON_PG_SCHEMES = ("mysql://", "mariadb://", "mongodb://", "mongodb+srv://")

_EMBEDDED_MARKERS = ("pglite", "sqlite")

_LIBPQ_PARAMS = ("host=", "dbname=", "sslmode=", "user=", "port=", "application_name=")

_CLOUD_HOSTS = (
    "amazonaws.com", ".rds.", "azure.com", "cloudsql", "supabase", "neon.tech",
    "railway.app", "render.com", "heroku", "timescale", "cockroachlabs",
    "digitalocean", "aiven", "crunchydata", "fly.dev",
)

_PG_PORTS = re.compile(r":(5432|5433|5434|6432|25060|26257)\b")


def is_real_postgres_url(connection_url: Optional[str]) -> bool:
    """
    Detect whether a connection string points at a real PostgreSQL server.

    Embedded or in-memory engines (PGlite, SQLite, ``:memory:``) return False;
    they are single-process, so no cross-process locking is needed.
    """
    if not connection_url or not connection_url.strip():
        return False

    url = connection_url.strip().lower()

    if url.startswith(_NON_PG_SCHEMES):
        return False
    if ":memory:" in url:
        return False
    # A postgres:// URL may contain "sqlite" in its database name
    if url.startswith(_PG_SCHEMES):
        return True

    url_base = url.split("?")[0]
    if any(marker in url for marker in _EMBEDDED_MARKERS):
        return False
    if re.search(r"\.(db|sqlite|sqlite3)$", url_base):
        return False

    if "localhost" in url or "127.0.0.1" in url:
        return True
    if any(param in url for param in _LIBPQ_PARAMS):
        return True
    if "@" in url and ("postgres" in url or re.search(r":\d{4,5}", url)):
        return True
    if _PG_PORTS.search(url):
        return True
    if any(host in url for host in _CLOUD_HOSTS):
        return True
    if re.search(r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}:\d{1,5}", url):
        return True

    logger.debug(f"Connection string did not match any PostgreSQL patterns: {url[:50]}")
    return False


def to_async_url(database_url: str) -> str:
    """Convert a plain postgresql:// URL to the asyncpg driver URL."""
    for prefix in ("postgresql://", "postgres://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix):]
    return database_url


def create_engine_from_settings(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Create the async PostgreSQL engine with connection pooling.

    Raises:
        ConfigurationError: no DATABASE_URL configured
    """
    settings = settings or Settings()
    database_url = settings.require_database_url()

    return create_async_engine(
        to_async_url(database_url),
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,     # Verify connections before using
        pool_recycle=3600,      # Recycle connections after 1 hour
        echo=False,
    )


async def check_database_connection(engine: AsyncEngine) -> bool:
    """
    Check if database is accessible.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
