"""
Advisory lock coordination.

Serializes migrations of the same plugin across processes with a PostgreSQL
session-level advisory lock. The lock is taken and released on the same
connection that runs the migration; pooled connections must not be swapped
in between.
"""

import hashlib
import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from plugin_sql.core.exceptions import InvalidLockIdError

logger = logging.getLogger(__name__)

BIGINT_MIN = -(2 ** 63)
BIGINT_MAX = 2 ** 63 - 1

_SIGN_MASK = 0x7FFFFFFFFFFFFFFF


def advisory_lock_id(plugin_name: str) -> int:
    """
    Stable 63-bit lock id for a plugin.

    First 8 bytes of SHA-256(name), big-endian, with the sign bit cleared.
    Zero is mapped to 1.
    """
    digest = hashlib.sha256(plugin_name.encode("utf-8")).digest()
    lock_id = int.from_bytes(digest[:8], "big") & _SIGN_MASK
    return lock_id or 1


def validate_bigint(value: int) -> int:
    """
    Raises:
        InvalidLockIdError: value does not fit a PostgreSQL bigint
    """
    if not isinstance(value, int) or not BIGINT_MIN <= value <= BIGINT_MAX:
        raise InvalidLockIdError(f"Advisory lock id {value!r} is outside the bigint range")
    return value


class PostgresAdvisoryLock:
    """Session-level advisory lock keyed by plugin name."""

    async def acquire(self, conn: AsyncConnection, plugin_name: str) -> bool:
        """
        Take the lock, waiting if another process holds it.

        Returns:
            True if the lock is held. False means the database refused advisory
            locks; the caller proceeds unlocked.

        Raises:
            InvalidLockIdError: derived id is out of range
        """
        lock_id = validate_bigint(advisory_lock_id(plugin_name))
        try:
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(CAST(:lock_id AS bigint)) AS acquired"),
                {"lock_id": lock_id}
            )
            if result.scalar() is True:
                logger.debug(f"Advisory lock {lock_id} acquired for {plugin_name}")
                return True

            logger.info(f"Migration already in progress for {plugin_name}, waiting for lock")
            await conn.execute(
                text("SELECT pg_advisory_lock(CAST(:lock_id AS bigint))"),
                {"lock_id": lock_id}
            )
            logger.info(f"Lock acquired for {plugin_name}")
            return True
        except SQLAlchemyError as e:
            await conn.rollback()
            logger.warning(
                f"Failed to acquire advisory lock for {plugin_name}, continuing without lock: {e}"
            )
            return False

    async def release(self, conn: AsyncConnection, plugin_name: str) -> None:
        """Release the lock; failures are logged, never raised."""
        lock_id = advisory_lock_id(plugin_name)
        try:
            await conn.execute(
                text("SELECT pg_advisory_unlock(CAST(:lock_id AS bigint))"),
                {"lock_id": lock_id}
            )
            logger.debug(f"Advisory lock released for {plugin_name}")
        except SQLAlchemyError as e:
            logger.warning(f"Failed to release advisory lock for {plugin_name}: {e}")


class NoopLock:
    """Lock for embedded databases, where only one process can migrate."""

    async def acquire(self, conn: AsyncConnection, plugin_name: str) -> bool:
        logger.debug("Embedded database detected, skipping advisory locks")
        return False

    async def release(self, conn: AsyncConnection, plugin_name: str) -> None:
        return None
