"""
Transaction-scoped isolation context.

Every unit of work that touches isolated tables runs inside a transaction
that first sets ``app.server_id`` and ``app.entity_id`` with
``set_config(..., true)``. The settings are transaction-local: they vanish at
COMMIT or ROLLBACK, so a pooled connection never leaks one caller's context
to the next.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar, Union
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from plugin_sql.core.config import Settings
from plugin_sql.isolation.rls import ENTITY_SETTING, SERVER_SETTING, coerce_uuid

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class IsolationContext:
    """
    Tenant and entity a unit of work runs as.

    Both ids are optional; string values are coerced to UUID at construction.

    Raises:
        IsolationContextError: an id is not a valid UUID
    """
    server_id: Optional[UUID] = None
    entity_id: Optional[UUID] = None

    def __post_init__(self):
        if self.server_id is not None:
            object.__setattr__(self, "server_id", coerce_uuid(self.server_id, "server ID"))
        if self.entity_id is not None:
            object.__setattr__(self, "entity_id", coerce_uuid(self.entity_id, "entity ID"))

    @classmethod
    def for_entity(cls, entity_id: Optional[Union[UUID, str]]) -> "IsolationContext":
        return cls(entity_id=entity_id or None)


class ConnectionManager:
    """
    Hands out transactions carrying an isolation context.

    Args:
        engine: Async engine bound to the application role (not a superuser)
        server_id: Tenant id of this process; fills contexts that leave it empty
        isolation_enabled: Whether RLS is active. None reads ENABLE_DATA_ISOLATION.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        server_id: Optional[Union[UUID, str]] = None,
        isolation_enabled: Optional[bool] = None,
    ):
        if isolation_enabled is None:
            isolation_enabled = Settings().ENABLE_DATA_ISOLATION
        self.engine = engine
        self.isolation_enabled = isolation_enabled
        self.server_id = coerce_uuid(server_id, "server ID") if server_id else None

    @asynccontextmanager
    async def isolated(
        self, context: Optional[IsolationContext] = None
    ) -> AsyncIterator[AsyncConnection]:
        """
        Open a transaction with the isolation settings applied.

        Commits when the block exits normally, rolls back on exception.

        Usage:
            async with manager.isolated(IsolationContext(entity_id=user_id)) as conn:
                await conn.execute(...)
        """
        context = context or IsolationContext()
        async with self.engine.begin() as conn:
            if self.isolation_enabled:
                await self._apply_context(conn, context)
            yield conn

    async def with_isolation_context(
        self,
        context: Optional[IsolationContext],
        callback: Callable[[AsyncConnection], Awaitable[T]],
    ) -> T:
        """Run ``callback`` inside an isolated transaction and return its result."""
        async with self.isolated(context) as conn:
            return await callback(conn)

    async def test_connection(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Failed to connect to the database: {e}")
            return False

    async def close(self) -> None:
        await self.engine.dispose()

    async def _apply_context(self, conn: AsyncConnection, context: IsolationContext) -> None:
        server_id = context.server_id or self.server_id
        if server_id is not None:
            await self._set_local(conn, SERVER_SETTING, server_id)
        if context.entity_id is not None:
            await self._set_local(conn, ENTITY_SETTING, context.entity_id)

    async def _set_local(self, conn: AsyncConnection, name: str, value: UUID) -> None:
        await conn.execute(
            text("SELECT set_config(:name, :value, true)"),
            {"name": name, "value": str(value)}
        )
