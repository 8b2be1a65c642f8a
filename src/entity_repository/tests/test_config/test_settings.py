import pytest
from pydantic import ValidationError
from sqlalchemy import text

from entity_repository.config import Settings, get_settings
from entity_repository.database import get_async_session, get_engine, get_sessionmaker


def make(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_repository_defaults():
    settings = make()

    assert settings.REPOSITORY_CACHE_ENABLED is True
    assert settings.REPOSITORY_CACHE_LIFETIME == 600
    assert settings.REPOSITORY_CACHE_CLEAR_ENABLED is True
    assert settings.REPOSITORY_CACHE_CLEAR_ON == ["create", "update", "delete"]
    assert settings.REPOSITORY_TRANSACTION_ATTEMPTS == 1


def test_clear_on_from_comma_separated_env(monkeypatch):
    monkeypatch.setenv("REPOSITORY_CACHE_CLEAR_ON", " Create, delete ,create")

    assert make().REPOSITORY_CACHE_CLEAR_ON == ["create", "delete"]


def test_clear_on_from_json_env(monkeypatch):
    monkeypatch.setenv("REPOSITORY_CACHE_CLEAR_ON", '["update"]')

    assert make().REPOSITORY_CACHE_CLEAR_ON == ["update"]


def test_clear_on_rejects_unknown_kind():
    with pytest.raises(ValidationError):
        make(REPOSITORY_CACHE_CLEAR_ON=["create", "truncate"])


def test_log_level_and_format_are_normalized():
    settings = make(LOG_LEVEL="debug", LOG_FORMAT="TEXT")

    assert settings.LOG_LEVEL == "DEBUG"
    assert settings.LOG_FORMAT == "text"


def test_database_url_from_parts():
    settings = make(POSTGRES_USERNAME="u", POSTGRES_PASSWORD="p", POSTGRES_HOST="db", POSTGRES_PORT=5433, POSTGRES_DB="app")

    assert settings.DATABASE_URL == "postgresql+asyncpg://u:p@db:5433/app"


def test_database_url_uses_test_database_when_testing():
    settings = make(POSTGRES_DB="app", TESTING=True, TEST_POSTGRES_DB="app_test")

    assert settings.DATABASE_URL.endswith("/app_test")


def test_explicit_database_uri_wins():
    settings = make(SQLALCHEMY_DATABASE_URI="sqlite+aiosqlite:///./local.db", TESTING=True, TEST_POSTGRES_DB="x")

    assert settings.DATABASE_URL == "sqlite+aiosqlite:///./local.db"


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("REPOSITORY_CACHE_LIFETIME", "5")
    get_settings.cache_clear()

    first = get_settings()

    assert first is get_settings()
    assert first.REPOSITORY_CACHE_LIFETIME == 5


async def test_session_factory_uses_configured_url(monkeypatch):
    monkeypatch.setenv("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite://")
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()

    try:
        async for session in get_async_session():
            assert session.sync_session.expire_on_commit is False
            assert (await session.execute(text("SELECT 1"))).scalar_one() == 1
    finally:
        await get_engine().dispose()
        get_engine.cache_clear()
        get_sessionmaker.cache_clear()
