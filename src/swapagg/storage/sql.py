"""SQLAlchemy-backed durable key-value store.

Production backing for the local caches. Survives process crashes, which is
what the pending-transfer records rely on.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import DateTime, String, Text, delete, func, make_url, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from swapagg.storage.base import KeyValueStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class CacheEntry(Base):
    """One cached key/value pair."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<CacheEntry {self.key}>"


class SqlStore(KeyValueStore):
    """Key-value store persisted in a SQL database (SQLite by default)."""

    def __init__(self, database_url: str, echo: bool = False):
        # Convert sqlite:/// to sqlite+aiosqlite:/// if needed
        if database_url.startswith("sqlite:///") and "aiosqlite" not in database_url:
            database_url = database_url.replace("sqlite:///", "sqlite+aiosqlite:///")

        self.database_url = database_url
        self._engine = create_async_engine(database_url, echo=echo, future=True)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if not self._initialized:
            await self.init()
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Create the cache table if it does not exist."""
        async with self._init_lock:
            if self._initialized:
                return
            url = make_url(self.database_url)
            if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._initialized = True
            logger.debug(f"Cache store initialized at {self.database_url}")

    async def close(self) -> None:
        """Dispose of database connections."""
        await self._engine.dispose()

    async def get(self, key: str) -> Optional[Any]:
        async with self._session() as session:
            entry = await session.get(CacheEntry, key)
            return json.loads(entry.value) if entry else None

    async def set(self, key: str, value: Any) -> None:
        """Insert or replace key. Safe when several writers fill the same key at once."""
        payload = json.dumps(value)
        dialect = self._engine.dialect.name
        if dialect in ("sqlite", "postgresql"):
            upsert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = upsert(CacheEntry).values(key=key, value=payload)
            stmt = stmt.on_conflict_do_update(
                index_elements=[CacheEntry.key],
                set_={"value": stmt.excluded.value, "updated_at": func.now()},
            )
            async with self._session() as session:
                await session.execute(stmt)
            return

        try:
            async with self._session() as session:
                entry = await session.get(CacheEntry, key)
                if entry is None:
                    session.add(CacheEntry(key=key, value=payload))
                else:
                    entry.value = payload
        except IntegrityError:
            # Another writer inserted the key first
            async with self._session() as session:
                entry = await session.get(CacheEntry, key)
                entry.value = payload

    async def remove(self, key: str) -> None:
        async with self._session() as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.key == key))

    async def all(self, prefix: str = "") -> dict[str, Any]:
        async with self._session() as session:
            stmt = select(CacheEntry)
            if prefix:
                stmt = stmt.where(CacheEntry.key.startswith(prefix, autoescape=True))
            rows = (await session.execute(stmt)).scalars().all()
            return {row.key: json.loads(row.value) for row in rows}
