"""PostgreSQL extension installation."""

import logging
from typing import Iterable, List

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from plugin_sql.migrations.naming import quote_ident

logger = logging.getLogger(__name__)

# Required by the core tables (embeddings, fuzzy matching)
DEFAULT_EXTENSIONS = ("vector", "fuzzystrmatch")

# Real servers also need pgcrypto for gen_random_uuid() on older versions
SERVER_EXTENSIONS = DEFAULT_EXTENSIONS + ("pgcrypto",)


def required_extensions(real_postgres: bool) -> List[str]:
    return list(SERVER_EXTENSIONS if real_postgres else DEFAULT_EXTENSIONS)


class ExtensionManager:
    """
    Installs extensions best-effort.

    A missing extension is not fatal here: the statement that actually needs
    it fails later with a clearer error.
    """

    async def install_required_extensions(
        self,
        conn: AsyncConnection,
        extensions: Iterable[str],
    ) -> List[str]:
        """
        Run CREATE EXTENSION IF NOT EXISTS for each extension.

        Each extension is committed on its own so one failure does not abort
        the others.

        Returns:
            Names of the extensions that are now installed
        """
        installed = []
        for extension in extensions:
            try:
                await conn.execute(text(f"CREATE EXTENSION IF NOT EXISTS {quote_ident(extension)}"))
                await conn.commit()
                installed.append(extension)
                logger.debug(f"Extension {extension} is installed")
            except SQLAlchemyError as e:
                await conn.rollback()
                logger.warning(f"Could not install extension {extension}: {e}")
        return installed
