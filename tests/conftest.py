"""Pytest configuration and shared fixtures.

Service-level tests run against an in-memory SQLite database through
aiosqlite; the column types are portable, so the same models and queries
run unchanged on PostgreSQL in production.

Environment variables for integration tests:
    TEST_DATABASE_URL: PostgreSQL connection URL (psycopg)
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator
from typing import BinaryIO

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from mailvault.db.models import Base
from mailvault.services.storage import (
    DEFAULT_CHUNK_SIZE,
    ObjectNotFoundError,
    StorageError,
    UploadResult,
)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def database_url() -> str:
    """Get test database URL from environment or use in-memory SQLite."""
    return os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Engine with a freshly created schema.

    SQLite needs the driver's own transaction handling switched off for
    SAVEPOINTs (begin_nested) to work.
    """
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, _record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")
    else:
        engine = create_async_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One session per test; tests commit when they need to."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Storage and search fakes
# ---------------------------------------------------------------------------
class InMemoryStorage:
    """StorageGateway keeping objects in a dict.

    Streams are read on a worker thread, like the S3 gateway does, so the
    export pipeline can block on its pipe without stalling the loop.
    """

    bucket = "test-bucket"

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_on_put: Exception | None = None
        self.fail_on_delete: set[str] = set()

    async def put(
        self,
        path: str,
        data: bytes | BinaryIO,
        *,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        if self.fail_on_put is not None:
            raise self.fail_on_put
        if isinstance(data, bytes | bytearray):
            body = bytes(data)
        else:
            body = await asyncio.to_thread(data.read)
        self.objects[path] = body
        return UploadResult(key=path, bucket=self.bucket, size_bytes=len(body))

    async def get(self, path: str) -> bytes:
        try:
            return self.objects[path]
        except KeyError:
            raise ObjectNotFoundError(f"Object not found: {path}", key=path) from None

    async def iter_chunks(
        self, path: str, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        body = await self.get(path)
        for start in range(0, len(body), chunk_size):
            yield body[start : start + chunk_size]

    async def delete(self, path: str) -> None:
        if path in self.fail_on_delete:
            raise StorageError(f"Delete failed: {path}", key=path, operation="delete")
        self.objects.pop(path, None)
        self.deleted.append(path)

    async def exists(self, path: str) -> bool:
        return path in self.objects


class RecordingSearchIndex:
    """SearchIndex that remembers every request."""

    def __init__(self) -> None:
        self.reindexed: list[list] = []
        self.deleted: list[tuple[str, list]] = []

    async def reindex_by_ids(self, record_ids) -> None:
        self.reindexed.append(list(record_ids))

    async def delete_documents(self, index, document_ids) -> None:
        self.deleted.append((index, list(document_ids)))

    @property
    def reindexed_ids(self) -> set:
        return {record_id for batch in self.reindexed for record_id in batch}


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def search_index() -> RecordingSearchIndex:
    return RecordingSearchIndex()
