"""Base storage class: engine lifecycle, sessions, and row conversion."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hookline.exceptions import StorageError, TransientStorageError
from hookline.logging import get_logger

from .tables import Base

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Seconds SQLite waits on a locked database before failing
SQLITE_BUSY_TIMEOUT = 30


class StorageBase:
    """Base class for Hookline storage.

    Provides:
    - Engine creation and lifecycle management
    - Schema creation on initialize()
    - A transactional session helper mapping driver errors to StorageError
    - Row <-> model conversion
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        """Initialize storage.

        Args:
            database_url: SQLAlchemy async URL, e.g. "sqlite+aiosqlite:///hooks.db"
                or "postgresql+asyncpg://user:pw@host/db".
            echo: Log every SQL statement.
        """
        self._database_url = database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Get the engine, raising if not initialized."""
        if self._engine is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _engine_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"echo": self._echo}
        if self._database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
            if ":memory:" in self._database_url:
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        return kwargs

    async def initialize(self) -> None:
        """Create the engine and ensure tables exist."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self._database_url, **self._engine_kwargs())
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            await self.close()
            raise StorageError(f"Failed to initialize database: {e}") from e
        logger.info("storage_initialized", dialect=self._engine.dialect.name)

    async def close(self) -> None:
        """Dispose of the engine and its connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    async def __aenter__(self) -> StorageBase:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session, commit on success, roll back on error.

        IntegrityError is re-raised unchanged so callers can treat unique
        constraint violations as dedupe signals. Other driver errors become
        TransientStorageError (connection-level) or StorageError.
        """
        if self._session_factory is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            except (OperationalError, InterfaceError) as e:
                await session.rollback()
                raise TransientStorageError(str(e)) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise StorageError(str(e)) from e

    @staticmethod
    def _row_to_model(row: Any, model_class: type[ModelT], **overrides: Any) -> ModelT:
        """Convert an ORM row into a pydantic model."""
        data = {column.key: getattr(row, column.key) for column in row.__table__.columns}
        data.update(overrides)
        return model_class.model_validate(data)
