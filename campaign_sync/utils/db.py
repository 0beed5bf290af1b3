"""
Database utilities for campaign persistence.

Provides the shared, bounded connection pool and schema initialization for the
sync engine. Uses SQLAlchemy 2 async engine; SQLite (aiosqlite) by default,
PostgreSQL (asyncpg) in deployed environments.

The pool is created once per process by Database.connect() and released once
by Database.dispose(). Repositories borrow connections from it per write.
"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from campaign_sync.utils.config import Settings

logger = logging.getLogger(__name__)

metadata = MetaData()

campaigns_table = Table(
    "campaigns",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("status", String, nullable=False),
    Column("budget", Numeric(15, 2)),
    Column("impressions", Integer, nullable=False, server_default=text("0")),
    Column("clicks", Integer, nullable=False, server_default=text("0")),
    Column("conversions", Integer, nullable=False, server_default=text("0")),
    Column("created_at", DateTime(timezone=True), nullable=True),
    Column("synced_at", DateTime(timezone=True), nullable=False),
    Index("idx_campaigns_status", "status"),
)


def _connect_args(database_url: str) -> dict:
    """Driver-level connect arguments; fail fast if the DB is unreachable."""
    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        return {"timeout": 30}
    if backend == "postgresql":
        return {"timeout": 10}
    return {}


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


class Database:
    """Owns the process-wide async engine and its connection pool."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._engine: Optional[AsyncEngine] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> AsyncEngine:
        """Create the bounded pool. Calling it again returns the same engine."""
        if self._engine is not None:
            return self._engine

        _ensure_sqlite_dir(self.settings.DATABASE_URL)
        self._engine = create_async_engine(
            self.settings.DATABASE_URL,
            echo=False,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=self.settings.DB_POOL_SIZE,
            max_overflow=0,
            pool_timeout=self.settings.DB_POOL_TIMEOUT,
            pool_pre_ping=True,
            connect_args=_connect_args(self.settings.DATABASE_URL),
        )
        logger.info(
            "Database connection pool initialized",
            extra={"dialect": self._engine.dialect.name, "pool_size": self.settings.DB_POOL_SIZE},
        )
        return self._engine

    async def init_schema(self) -> None:
        """Create the campaigns table if it doesn't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("DB schema ready")

    async def dispose(self) -> None:
        """Release the pool. Safe to call when not connected."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        logger.info("Database connection pool closed")

    async def check_connection(self) -> bool:
        """Test database connectivity."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database connection failed", extra={"error": str(e)})
            return False
