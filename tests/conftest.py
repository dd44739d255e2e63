"""Shared pytest fixtures: an in-memory SQLite database and a stub TMDB search."""

import asyncio
import uuid
from contextlib import asynccontextmanager

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cinechrony.models import Base, User


def create_sqlite_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
    )

    # aiosqlite needs explicit BEGIN handling for SAVEPOINT to work.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@asynccontextmanager
async def sqlite_session():
    engine = create_sqlite_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with factory() as session:
            yield session
    finally:
        await engine.dispose()


async def _create_user(db: AsyncSession, username: str = "alice", **kwargs) -> User:
    user = User(
        id=kwargs.pop("id", uuid.uuid4()),
        email=kwargs.pop("email", f"{username}@example.com"),
        username=username,
        password_hash=kwargs.pop("password_hash", "not-a-real-hash"),
        **kwargs,
    )
    db.add(user)
    await db.commit()
    return user


class FakeSearch:
    """Stands in for ``tmdb.search_movie``; results are keyed by lower-cased query."""

    def __init__(self, catalog: dict[str, list[dict]] | None = None, fail_on: tuple[str, ...] = ()):
        self.catalog = {key.lower(): value for key, value in (catalog or {}).items()}
        self.fail_on = {query.lower() for query in fail_on}
        self.calls: list[tuple[str, int | None]] = []

    async def __call__(self, query: str, page: int = 1, year: int | None = None) -> dict:
        self.calls.append((query, year))
        if query.lower() in self.fail_on:
            raise httpx.ConnectError("connection refused")
        return {"page": page, "results": list(self.catalog.get(query.lower(), []))}


def movie_result(tmdb_id: int, title: str, release_date: str = "", **extra) -> dict:
    return {
        "id": tmdb_id,
        "title": title,
        "original_title": extra.pop("original_title", title),
        "release_date": release_date,
        "poster_path": extra.pop("poster_path", f"/poster{tmdb_id}.jpg"),
        "overview": extra.pop("overview", ""),
        **extra,
    }


@pytest.fixture
def run_with_db():
    """Run ``scenario(db)`` against a fresh database inside one event loop."""

    def _run(scenario):
        async def _main():
            async with sqlite_session() as db:
                return await scenario(db)

        return asyncio.run(_main())

    return _run


@pytest.fixture
def create_user():
    return _create_user


@pytest.fixture
def fake_search():
    return FakeSearch


@pytest.fixture
def movie():
    return movie_result
