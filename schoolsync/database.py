"""Local store engine, session management, and the transactional unit of work."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from schoolsync.exceptions import LocalStorageError, StoreUnavailableError
from schoolsync.migrations import run_migrations

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from schoolsync.config import Settings

logger = logging.getLogger(__name__)

# SQLite messages meaning "try again later" rather than "the write is broken".
_UNAVAILABLE_MARKERS = ("database is locked", "unable to open database", "database is busy")


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


def _ensure_sqlite_dir(database_url: str) -> None:
    if not database_url.startswith("sqlite"):
        return
    db_path = database_url.split("///", 1)[-1] if "///" in database_url else None
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def _is_unavailable(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _UNAVAILABLE_MARKERS)


class LocalDatabase:
    """Durable local store: owns the engine and hands out transactions.

    Writes are refused with ``StoreUnavailableError`` until ``open()`` has
    applied every declared schema migration.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.engine, self.session_factory = create_engine(settings)
        self._ready = False
        # Serializes queue claims so two workers never take the same item.
        self.dequeue_lock = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    async def open(self) -> None:
        """Create the database file if needed and bring the schema up to date."""
        _ensure_sqlite_dir(self.settings.database_url)
        try:
            applied = await run_migrations(self.engine)
        except OperationalError as exc:
            if _is_unavailable(exc):
                raise StoreUnavailableError(f"Local store cannot be opened: {exc}") from exc
            raise LocalStorageError(f"Schema migration failed: {exc}") from exc
        if applied:
            logger.info("Applied schema migrations: %s", applied)
        self._ready = True

    async def close(self) -> None:
        self._ready = False
        await self.engine.dispose()

    async def __aenter__(self) -> LocalDatabase:
        await self.open()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session whose writes commit together or not at all."""
        if not self._ready:
            raise StoreUnavailableError("Local store is not open (schema upgrade pending)")
        try:
            async with self.session_factory() as session, session.begin():
                yield session
        except OperationalError as exc:
            if _is_unavailable(exc):
                raise StoreUnavailableError(f"Local store unavailable: {exc}") from exc
            raise LocalStorageError(f"Local store write failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise LocalStorageError(f"Local store write failed: {exc}") from exc
