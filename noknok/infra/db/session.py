"""Database session management with connection pooling.

Manages SQLAlchemy async engine and session creation with support
for both SQLite and PostgreSQL databases.

Key features:
- Async session management with context managers
- Connection pooling (PostgreSQL) and appropriate defaults (SQLite)
- Foreign keys enforced on SQLite so cascades match PostgreSQL
- Automatic session commit/rollback
- Idempotent, forward-only schema bootstrap
- Global session manager singleton pattern
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.sql.elements import TextClause

from noknok.config import Settings
from noknok.infra.db.models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseSessionManager:
    """Database session manager with connection pooling.

    Example:
        manager = DatabaseSessionManager(settings)
        await manager.init()

        async with manager.session() as session:
            result = await session.execute(select(User))
            users = result.scalars().all()

        await manager.close()
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize session manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Initialize database engine and session factory.

        Must be called before using session() method.
        """
        if self.settings.is_sqlite:
            connect_args = {
                "check_same_thread": False,  # Required for async
                "timeout": 30.0,  # Lock timeout
            }
            pool_config: dict[str, Any] = {}
        else:
            connect_args = {}
            pool_config = {
                "pool_size": self.settings.database_pool_size,
                "max_overflow": self.settings.database_max_overflow,
                "pool_pre_ping": True,  # Verify connections
                "pool_recycle": 3600,  # Recycle after 1 hour
            }

        self._engine = create_async_engine(
            self.settings.effective_database_url,
            echo=self.settings.database_echo,
            connect_args=connect_args,
            **pool_config,
        )

        if self.settings.is_sqlite:
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def close(self) -> None:
        """Close database engine and cleanup connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get database session context manager.

        Automatically commits on success or rolls back on error.

        Yields:
            AsyncSession instance

        Raises:
            RuntimeError: If session manager not initialized
        """
        if self._session_factory is None:
            raise RuntimeError("SessionManager not initialized. Call init() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @property
    def engine(self) -> AsyncEngine:
        """Get database engine.

        Raises:
            RuntimeError: If not initialized
        """
        if self._engine is None:
            raise RuntimeError("SessionManager not initialized. Call init() first.")
        return self._engine

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None


def _literal_default(column: Any) -> str | None:
    """Render a column's server default for ALTER TABLE, if it is a constant."""
    default = column.server_default
    if default is None:
        return None
    arg = getattr(default, "arg", None)
    if isinstance(arg, str):
        escaped = arg.replace("'", "''")
        return f"'{escaped}'"
    if isinstance(arg, TextClause) and arg.text.lower() in ("true", "false"):
        return arg.text
    return None


def _add_missing_columns(conn: Connection) -> list[str]:
    inspector = inspect(conn)
    added: list[str] = []
    for table in Base.metadata.sorted_tables:
        existing = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            col_type = column.type.compile(dialect=conn.dialect)
            ddl = f"ALTER TABLE {table.name} ADD COLUMN {column.name} {col_type}"
            default = _literal_default(column)
            if default is not None:
                ddl += f" DEFAULT {default}"
                if not column.nullable:
                    ddl += " NOT NULL"
            conn.exec_driver_sql(ddl)
            added.append(f"{table.name}.{column.name}")
    return added


def _add_missing_indexes(conn: Connection) -> list[str]:
    inspector = inspect(conn)
    added: list[str] = []
    for table in Base.metadata.sorted_tables:
        existing = {index["name"] for index in inspector.get_indexes(table.name)}
        for index in table.indexes:
            if index.name in existing:
                continue
            index.create(conn)
            added.append(index.name)
    return added


async def bootstrap_schema(manager: DatabaseSessionManager) -> None:
    """Create absent tables, columns and indexes. Never drops anything.

    Args:
        manager: Initialized session manager
    """
    async with manager.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        added = await conn.run_sync(_add_missing_columns)
        indexes = await conn.run_sync(_add_missing_indexes)

    if added or indexes:
        logger.info(
            "Schema upgraded", extra={"added_columns": added, "added_indexes": indexes}
        )
    else:
        logger.debug("Schema up to date")


# Global session manager instance
_session_manager: DatabaseSessionManager | None = None


def get_session_manager(settings: Settings | None = None) -> DatabaseSessionManager:
    """Get global session manager instance (singleton).

    Args:
        settings: Application settings (defaults to the global settings on first call)

    Returns:
        DatabaseSessionManager instance
    """
    global _session_manager

    if _session_manager is None:
        if settings is None:
            from noknok.config import get_settings

            settings = get_settings()
        _session_manager = DatabaseSessionManager(settings)

    return _session_manager


async def initialize_session_manager(settings: Settings | None = None) -> DatabaseSessionManager:
    """Create (if needed) and initialize the global session manager.

    Args:
        settings: Application settings

    Returns:
        Initialized DatabaseSessionManager
    """
    manager = get_session_manager(settings)
    if not manager.is_initialized:
        await manager.init()
    return manager


def reset_session_manager() -> None:
    """Reset global session manager (mainly for testing).

    This should only be used in test fixtures to ensure clean state.
    """
    global _session_manager
    _session_manager = None
