"""Fixtures for repository tests."""

import uuid
from datetime import datetime, timezone

import pytest
from faker import Faker
from sqlalchemy.ext.asyncio import AsyncSession

from entity_repository.config import Settings
from entity_repository.events import EventDispatcher
from entity_repository.repositories.base_repository import BaseRepository

from .models import Article, Author, Note, Tag

# NOTE: All fixtures in this file depend on `db_session`, `dispatcher` and
# `test_settings` from conftest.py. Repositories get the test dispatcher
# injected so `recorded_events` sees everything they emit.

fake = Faker()


class ArticleRepository(BaseRepository[Article]):
    model = Article
    repository_id = "repository.articles"


class AuthorRepository(BaseRepository[Author]):
    model = Author


class TagRepository(BaseRepository[Tag]):
    model = Tag


class NoteRepository(BaseRepository[Note]):
    model = Note
    cache_clear_on = ("update", "delete")


@pytest.fixture
def make_repository(db_session: AsyncSession, dispatcher: EventDispatcher, test_settings: Settings):
    """
    Factory for repositories bound to the test session.

    Usage:
        repo = make_repository(ArticleRepository, cache_clear_on=("delete",))

    Keyword arguments become attributes on a throwaway subclass, so tests can
    vary the cache configuration without touching the shared classes.
    """

    def _make(repository_class=ArticleRepository, *, session: AsyncSession | None = None, **attributes):
        if attributes:
            repository_class = type(f"Configured{repository_class.__name__}", (repository_class,), attributes)
        return repository_class(session or db_session, dispatcher=dispatcher, settings=test_settings)

    return _make


@pytest.fixture
def article_repository(make_repository) -> ArticleRepository:
    return make_repository(ArticleRepository)


@pytest.fixture
def author_repository(make_repository) -> AuthorRepository:
    return make_repository(AuthorRepository)


@pytest.fixture
def tag_repository(make_repository) -> TagRepository:
    return make_repository(TagRepository)


@pytest.fixture
def note_repository(make_repository) -> NoteRepository:
    return make_repository(NoteRepository)


@pytest.fixture
def sample_article_data() -> dict:
    """
    Simple sample payload used by many tests.
    Kept synchronous because it does not touch the DB.
    """
    return {
        "title": fake.sentence(nb_words=4),
        "body": fake.paragraph(),
        "status": "draft",
        "views": 0,
    }


@pytest.fixture
async def create_article(article_repository: ArticleRepository):
    """
    A small factory helper that tests can call to create articles with optional overrides.

    Usage:
        article = await create_article(status="published")
    """

    async def _create(**overrides):
        data = {
            "title": f"article {uuid.uuid4().hex[:8]}",
            "body": fake.sentence(),
            "status": "draft",
            "views": 0,
        }
        data.update(overrides)
        return await article_repository.create(data)

    return _create


@pytest.fixture
async def created_article(create_article, sample_article_data) -> Article:
    return await create_article(**sample_article_data)


@pytest.fixture
async def multiple_articles(create_article) -> list[Article]:
    """
    Three articles with distinct status, views and creation time:
        [0] draft, 10 views, oldest
        [1] published, 20 views
        [2] published, 30 views, newest
    """
    specs = [
        ("draft", 10, datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ("published", 20, datetime(2024, 2, 1, tzinfo=timezone.utc)),
        ("published", 30, datetime(2024, 3, 1, tzinfo=timezone.utc)),
    ]
    articles = []
    for idx, (status, views, created_at) in enumerate(specs):
        articles.append(
            await create_article(title=f"article {idx}", status=status, views=views, created_at=created_at)
        )
    return articles


@pytest.fixture
async def created_tags(tag_repository: TagRepository) -> list[Tag]:
    return await tag_repository.create_many([{"name": "python"}, {"name": "sql"}, {"name": "async"}])


@pytest.fixture
async def created_author(author_repository: AuthorRepository) -> Author:
    return await author_repository.create({"name": fake.name(), "email": fake.email()})
