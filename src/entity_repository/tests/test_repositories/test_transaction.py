import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from entity_repository.events import DeferredEvent
from entity_repository.exceptions import TransactionError, TransientPersistenceError
from entity_repository.repositories import TransactionCoordinator

from ..test_fixtures.models import Article
from ..test_fixtures.repository_fixtures import AuthorRepository


def event_names(recorded_events):
    return [name for name, _ in recorded_events]


async def count_articles(session) -> int:
    result = await session.execute(select(func.count()).select_from(Article))
    return result.scalar_one()


@pytest.mark.asyncio
class TestTransactionCoordinatorBasics:
    async def test_one_coordinator_per_session(self, article_repository, make_repository, db_session):
        authors = make_repository(AuthorRepository)

        assert article_repository.transaction is authors.transaction
        assert TransactionCoordinator.for_session(db_session, None) is article_repository.transaction

    async def test_commit_without_transaction_raises(self, article_repository):
        with pytest.raises(TransactionError):
            await article_repository.commit()

    async def test_rollback_without_transaction_raises(self, article_repository):
        with pytest.raises(TransactionError):
            await article_repository.rollback()

    async def test_callbacks_need_open_transaction(self, article_repository):
        with pytest.raises(TransactionError):
            article_repository.transaction.before_commit(lambda: None)
        with pytest.raises(TransactionError):
            article_repository.transaction.after_commit(lambda: None)

    async def test_levels(self, article_repository):
        tx = article_repository.transaction
        assert tx.level == 0
        assert not tx.in_transaction()

        await article_repository.begin_transaction()
        await article_repository.begin_transaction()
        assert tx.level == 2

        await article_repository.commit()
        await article_repository.commit()
        assert tx.level == 0

    async def test_defer_without_transaction_dispatches_now(self, article_repository, recorded_events):
        event = DeferredEvent("repository.articles.entity.custom", "repository.articles", [article_repository, None])

        await article_repository.transaction.defer(event, article_repository.dispatcher)

        assert event_names(recorded_events) == ["repository.articles.entity.custom"]


@pytest.mark.asyncio
class TestDeferredEvents:
    async def test_events_released_after_commit_in_order(self, article_repository, recorded_events, db_session):
        await article_repository.begin_transaction()
        first = await article_repository.create({"title": "a"})
        await article_repository.update(first, {"title": "b"})
        await article_repository.delete(first)

        assert recorded_events == []

        await article_repository.commit()

        assert event_names(recorded_events) == [
            "repository.articles.entity.created",
            "repository.articles.entity.updated",
            "repository.articles.entity.deleted",
        ]

    async def test_rollback_discards_every_event(self, article_repository, recorded_events, db_session):
        await article_repository.begin_transaction()
        for idx in range(3):
            await article_repository.create({"title": f"a{idx}"})

        await article_repository.rollback()

        assert recorded_events == []
        assert await count_articles(db_session) == 0

    async def test_mutations_share_transaction_across_repositories(
        self, article_repository, make_repository, recorded_events, db_session
    ):
        authors = make_repository(AuthorRepository)

        await article_repository.begin_transaction()
        await authors.create({"name": "a"})
        await article_repository.create({"title": "t"})
        await article_repository.rollback()

        assert recorded_events == []
        assert await authors.count() == 0

    async def test_savepoint_rollback_discards_only_inner_events(self, article_repository, recorded_events, db_session):
        await article_repository.begin_transaction()
        outer = await article_repository.create({"title": "outer"})

        await article_repository.begin_transaction()
        await article_repository.create({"title": "inner"})
        await article_repository.rollback()

        await article_repository.commit()

        assert len(recorded_events) == 1
        assert recorded_events[0][1][1] is outer
        assert await count_articles(db_session) == 1

    async def test_savepoint_commit_hands_events_to_parent(self, article_repository, recorded_events, db_session):
        await article_repository.begin_transaction()

        await article_repository.begin_transaction()
        await article_repository.create({"title": "inner"})
        await article_repository.commit()
        assert recorded_events == []

        await article_repository.commit()

        assert event_names(recorded_events) == ["repository.articles.entity.created"]

    async def test_outer_rollback_discards_committed_savepoint_events(self, article_repository, recorded_events, db_session):
        await article_repository.begin_transaction()
        await article_repository.begin_transaction()
        await article_repository.create({"title": "inner"})
        await article_repository.commit()

        await article_repository.rollback()

        assert recorded_events == []
        assert await count_articles(db_session) == 0

    async def test_handler_error_surfaces_after_commit(self, article_repository, dispatcher, db_session):
        def explode(name, payload):
            raise RuntimeError("listener failed")

        dispatcher.listen("repository.articles.entity.created", explode)

        with pytest.raises(RuntimeError):
            await article_repository.create({"title": "kept"})

        assert article_repository.transaction.level == 0
        assert await count_articles(db_session) == 1


@pytest.mark.asyncio
class TestCommitCallbacks:
    async def test_before_and_after_commit_order(self, article_repository, dispatcher, db_session):
        calls = []
        dispatcher.listen("*.entity.created", lambda name, payload: calls.append("event"))

        await article_repository.begin_transaction(before_commit=lambda: calls.append("before"))
        article_repository.transaction.after_commit(lambda: calls.append("after"))
        await article_repository.create({"title": "x"})
        await article_repository.commit()

        assert calls == ["before", "event", "after"]

    async def test_async_callbacks_are_awaited(self, article_repository):
        calls = []

        async def before():
            calls.append("before")

        async def after():
            calls.append("after")

        await article_repository.begin_transaction(before_commit=before)
        article_repository.transaction.after_commit(after)
        await article_repository.commit()

        assert calls == ["before", "after"]

    async def test_before_commit_error_rolls_back(self, article_repository, recorded_events, db_session):
        def refuse():
            raise RuntimeError("not today")

        await article_repository.begin_transaction(before_commit=refuse)
        await article_repository.create({"title": "x"})

        with pytest.raises(RuntimeError):
            await article_repository.commit()

        assert article_repository.transaction.level == 0
        assert recorded_events == []
        assert await count_articles(db_session) == 0

    async def test_after_commit_dropped_on_rollback(self, article_repository):
        calls = []
        await article_repository.begin_transaction()
        article_repository.transaction.after_commit(lambda: calls.append("after"))

        await article_repository.rollback()
        await article_repository.begin_transaction()
        await article_repository.commit()

        assert calls == []


@pytest.mark.asyncio
class TestBeginTransactionCallback:
    async def test_returns_callback_result_and_commits(self, article_repository, recorded_events, db_session):
        async def work():
            return await article_repository.create({"title": "cb"})

        article = await article_repository.begin_transaction(work)

        assert article.title == "cb"
        assert article_repository.transaction.level == 0
        assert event_names(recorded_events) == ["repository.articles.entity.created"]

    async def test_sync_callback(self, article_repository):
        assert await article_repository.begin_transaction(lambda: 42) == 42

    async def test_transient_failure_is_retried(self, article_repository, recorded_events, db_session):
        calls = []

        async def work():
            calls.append(1)
            article = await article_repository.create({"title": f"attempt {len(calls)}"})
            if len(calls) == 1:
                raise TransientPersistenceError()
            return article

        article = await article_repository.begin_transaction(work, max_attempts=3)

        assert len(calls) == 2
        assert article.title == "attempt 2"
        assert await count_articles(db_session) == 1
        # the failed attempt's event was discarded
        assert len(recorded_events) == 1
        assert recorded_events[0][1][1] is article

    async def test_driver_lock_error_is_retried(self, article_repository):
        calls = []

        def work():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("UPDATE articles", {}, Exception("database is locked"))
            return "done"

        assert await article_repository.begin_transaction(work, max_attempts=3) == "done"
        assert len(calls) == 3

    async def test_budget_exhausted_raises_last_error(self, article_repository):
        calls = []

        def work():
            calls.append(1)
            raise TransientPersistenceError(f"attempt {len(calls)}")

        with pytest.raises(TransientPersistenceError) as exc:
            await article_repository.begin_transaction(work, max_attempts=2)

        assert len(calls) == 2
        assert exc.value.message == "attempt 2"
        assert article_repository.transaction.level == 0

    async def test_permanent_failure_is_not_retried(self, article_repository, db_session):
        calls = []

        async def work():
            calls.append(1)
            await article_repository.create({"title": "x"})
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await article_repository.begin_transaction(work, max_attempts=5)

        assert len(calls) == 1
        assert await count_articles(db_session) == 0

    async def test_settings_attempts_used_by_default(self, make_repository, db_session, test_settings):
        test_settings.REPOSITORY_TRANSACTION_ATTEMPTS = 2
        repo = make_repository()
        calls = []

        def work():
            calls.append(1)
            if len(calls) == 1:
                raise TransientPersistenceError()
            return "ok"

        assert await repo.begin_transaction(work) == "ok"
        assert len(calls) == 2

    async def test_nested_callback_is_not_retried(self, article_repository, db_session):
        calls = []

        def inner():
            calls.append(1)
            raise TransientPersistenceError()

        async def outer():
            await article_repository.create({"title": "outer"})
            with pytest.raises(TransientPersistenceError):
                await article_repository.begin_transaction(inner, max_attempts=5)
            return "outer done"

        assert await article_repository.begin_transaction(outer) == "outer done"
        assert len(calls) == 1
        assert await count_articles(db_session) == 1


@pytest.mark.asyncio
class TestSavepointCallbacks:
    async def test_savepoint_rollback_drops_its_callbacks(self, article_repository):
        calls = []
        await article_repository.begin_transaction()
        await article_repository.begin_transaction(before_commit=lambda: calls.append("before-inner"))
        article_repository.transaction.after_commit(lambda: calls.append("after-inner"))

        await article_repository.rollback()
        await article_repository.commit()

        assert calls == []

    async def test_savepoint_rollback_keeps_outer_callbacks(self, article_repository):
        calls = []
        await article_repository.begin_transaction(before_commit=lambda: calls.append("before-outer"))
        await article_repository.begin_transaction(before_commit=lambda: calls.append("before-inner"))

        await article_repository.rollback()
        await article_repository.commit()

        assert calls == ["before-outer"]

    async def test_savepoint_commit_hands_callbacks_to_parent(self, article_repository):
        calls = []
        await article_repository.begin_transaction()
        await article_repository.begin_transaction(before_commit=lambda: calls.append("before-inner"))
        article_repository.transaction.after_commit(lambda: calls.append("after-inner"))

        await article_repository.commit()
        assert calls == []

        await article_repository.commit()

        assert calls == ["before-inner", "after-inner"]

    async def test_outer_rollback_drops_committed_savepoint_callbacks(self, article_repository):
        calls = []
        await article_repository.begin_transaction()
        await article_repository.begin_transaction()
        article_repository.transaction.after_commit(lambda: calls.append("after-inner"))
        await article_repository.commit()

        await article_repository.rollback()
        await article_repository.begin_transaction()
        await article_repository.commit()

        assert calls == []
