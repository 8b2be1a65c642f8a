"""
Core pytest configuration for the entire test suite.

This module provides the database setup and the shared utilities needed
across all test packages (repositories, events, cache, logging, ...).

Domain-specific fixtures live in:
- tests/test_fixtures/models.py              (test models)
- tests/test_fixtures/repository_fixtures.py (repositories, sample data)
"""

from __future__ import annotations

import logging
import os
from typing import AsyncGenerator

# Silence noisy third-party loggers before importing them.
NOISY_LOGGERS = (
    "faker",
    "faker.factory",
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.engine.Engine",
    "asyncio",
    "aiosqlite",
)
for _name in NOISY_LOGGERS:
    logging.getLogger(_name).setLevel(logging.WARNING)

import pytest
from aiocache import SimpleMemoryCache
from aiocache.serializers import PickleSerializer
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from entity_repository.cache.store import get_cache_backend
from entity_repository.config import Settings, get_settings
from entity_repository.core.logging.builder import setup_logging
from entity_repository.database.base import Base
from entity_repository.events import EventDispatcher, RepositoryEventListener, get_event_dispatcher

from .test_fixtures import models  # noqa: F401 - registers the test models on Base.metadata

logger = logging.getLogger(__name__)


def make_settings(**overrides) -> Settings:
    """Settings isolated from any local `.env` file."""
    return Settings(_env_file=None, **overrides)


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Install the package logging configuration once for the test session."""
    setup_logging(make_settings(LOG_LEVEL="DEBUG", LOG_FORMAT="text", LOG_TO_STDOUT=True))
    yield


@pytest.fixture(autouse=True)
async def reset_process_state():
    """Fresh cached settings, cache backends and default dispatcher for every test."""
    get_settings.cache_clear()
    get_cache_backend.cache_clear()
    get_event_dispatcher.cache_clear()
    yield
    # memory backends may share storage between instances
    await SimpleMemoryCache(serializer=PickleSerializer()).clear(namespace="repository.")
    get_settings.cache_clear()
    get_cache_backend.cache_clear()
    get_event_dispatcher.cache_clear()


# ------------------------------------------------------------------------------------------------
# Test database
# ------------------------------------------------------------------------------------------------

def get_test_database_url() -> str:
    """
    1. `TEST_DATABASE_URL` environment variable (CI override)
    2. an in-memory SQLite database otherwise
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite+aiosqlite://"


TEST_DATABASE_URL = get_test_database_url()


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy
    emit BEGIN itself (recipe from the SQLAlchemy SQLite dialect docs).
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture()
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """A fresh schema per test."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_savepoints(engine)
    else:
        engine = create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Session used by the repositories under test. Repositories commit their
    own transactions, so isolation comes from the per-test schema.
    """
    async with session_factory() as session:
        yield session


# ------------------------------------------------------------------------------------------------
# Settings and events
# ------------------------------------------------------------------------------------------------

@pytest.fixture()
def test_settings() -> Settings:
    return make_settings(
        REPOSITORY_CACHE_ENABLED=True,
        REPOSITORY_CACHE_LIFETIME=0,
        REPOSITORY_CACHE_CLEAR_ENABLED=True,
        REPOSITORY_CACHE_CLEAR_ON=["create", "update", "delete"],
        REPOSITORY_TRANSACTION_ATTEMPTS=1,
    )


@pytest.fixture()
def dispatcher() -> EventDispatcher:
    """Dispatcher with the cache invalidation listener subscribed."""
    dispatcher = EventDispatcher()
    RepositoryEventListener().subscribe(dispatcher)
    return dispatcher


@pytest.fixture()
def recorded_events(dispatcher: EventDispatcher) -> list[tuple[str, list]]:
    """Every event dispatched on `dispatcher`, as `(event_name, payload)`."""
    events: list[tuple[str, list]] = []
    dispatcher.listen("*", lambda name, payload: events.append((name, payload)))
    return events


# Repository test fixtures
from .test_fixtures.repository_fixtures import (  # noqa: E402
    article_repository,
    author_repository,
    tag_repository,
    note_repository,
    make_repository,
    sample_article_data,
    create_article,
    created_article,
    multiple_articles,
    created_tags,
    created_author,
)
