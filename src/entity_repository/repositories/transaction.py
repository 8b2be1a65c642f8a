"""
Transaction coordination for repositories sharing an AsyncSession.

One `TransactionCoordinator` lives in `session.info`, so every repository
bound to the same session shares the transaction depth and the queue of
deferred events.

Levels
------
- The outer level is the session transaction (autobegun by SQLAlchemy).
  Committing it runs the `before_commit` callbacks, commits the session,
  dispatches the queued events in order, then runs the `after_commit`
  callbacks.
- Inner levels are SAVEPOINTs (`session.begin_nested()`). Committing one
  releases the savepoint and hands its events to the parent level. Rolling
  one back discards only its own events and commit callbacks.

Commit callbacks are registered on the current level and move with its
events. Rolling back the outer level discards every queued event and
callback, so listeners never see events for data that was not committed.
"""

import inspect
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from entity_repository.events import DeferredEvent, EventDispatcher
from entity_repository.exceptions import TransactionError, is_transient_error

logger = logging.getLogger(__name__)

INFO_KEY = "transaction_coordinator"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class _Level:
    savepoint: AsyncSessionTransaction | None = None
    events: list[tuple[EventDispatcher, DeferredEvent]] = field(default_factory=list)
    before_commit: list[Callable[[], Any]] = field(default_factory=list)
    after_commit: list[Callable[[], Any]] = field(default_factory=list)

    def hand_to(self, parent: "_Level") -> None:
        parent.events.extend(self.events)
        parent.before_commit.extend(self.before_commit)
        parent.after_commit.extend(self.after_commit)


class TransactionCoordinator:
    def __init__(self, session: AsyncSession, dispatcher: EventDispatcher, *, max_attempts: int = 1):
        self.session = session
        self.dispatcher = dispatcher
        self.max_attempts = max(1, max_attempts)
        self._levels: list[_Level] = []

    @classmethod
    def for_session(cls, session: AsyncSession, dispatcher: EventDispatcher, *, max_attempts: int = 1) -> "TransactionCoordinator":
        """Return the coordinator attached to `session`, creating it on first use."""
        coordinator = session.info.get(INFO_KEY)
        if coordinator is None:
            coordinator = cls(session, dispatcher, max_attempts=max_attempts)
            session.info[INFO_KEY] = coordinator
        return coordinator

    @property
    def level(self) -> int:
        """Current nesting depth (0 when no transaction is open)."""
        return len(self._levels)

    def in_transaction(self) -> bool:
        return bool(self._levels)

    # =================================================================================================================
    # Explicit control
    # =================================================================================================================

    async def begin(self) -> None:
        if not self._levels:
            self._levels.append(_Level())
        else:
            savepoint = await self.session.begin_nested()
            self._levels.append(_Level(savepoint=savepoint))
        logger.debug("tx.begin", extra={"level": self.level})

    async def commit(self) -> None:
        released = await self._commit_level()
        if released is not None:
            await self._release(*released)

    async def rollback(self) -> None:
        if not self._levels:
            raise TransactionError("rollback() called without an open transaction")

        level = self._levels.pop()
        if level.savepoint is not None:
            await level.savepoint.rollback()
        else:
            await self.session.rollback()

        logger.debug("tx.rollback", extra={"level": self.level + 1, "discarded_events": len(level.events)})

    def before_commit(self, callback: Callable[[], Any]) -> None:
        """Run `callback` right before the outer commit; an error there rolls back."""
        if not self._levels:
            raise TransactionError("before_commit() needs an open transaction")
        self._levels[-1].before_commit.append(callback)

    def after_commit(self, callback: Callable[[], Any]) -> None:
        """Run `callback` after the outer commit, once the queued events are dispatched."""
        if not self._levels:
            raise TransactionError("after_commit() needs an open transaction")
        self._levels[-1].after_commit.append(callback)

    async def defer(self, event: DeferredEvent, dispatcher: EventDispatcher | None = None) -> None:
        """
        Queue `event` on the current level. With no open transaction the data
        is already committed, so the event is dispatched right away.
        """
        dispatcher = dispatcher or self.dispatcher
        if not self._levels:
            await dispatcher.dispatch(event.event_name, event.payload)
            return
        self._levels[-1].events.append((dispatcher, event))

    # =================================================================================================================
    # Scopes
    # =================================================================================================================

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["TransactionCoordinator"]:
        """
        Join the open transaction, or begin one and commit it when the block
        exits (rolling back if the block raises).
        """
        if self._levels:
            yield self
            return

        await self.begin()
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        await self.commit()

    async def begin_transaction(
        self,
        callback: Callable[[], Any] | None = None,
        before_commit: Callable[[], Any] | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        """
        Without `callback`: open a level (left for the caller to commit or roll back).

        With `callback`: run `begin -> callback() -> commit` and return the
        callback's result. A transient failure (see `is_transient_error`) rolls
        back and runs the whole callback again, up to `max_attempts` times when
        this is the outer transaction. The last failure propagates unchanged.
        """
        if callback is None:
            await self.begin()
            if before_commit is not None:
                self.before_commit(before_commit)
            return None

        attempts = max(1, max_attempts or self.max_attempts)
        outer = not self._levels

        for attempt in range(1, attempts + 1):
            start = time.perf_counter()
            await self.begin()
            if before_commit is not None:
                self.before_commit(before_commit)

            try:
                result = await _maybe_await(callback())
            except BaseException as exc:
                await self.rollback()
                if self._should_retry(exc, attempt, attempts, outer):
                    continue
                raise

            try:
                released = await self._commit_level()
            except Exception as exc:
                if self._should_retry(exc, attempt, attempts, outer):
                    continue
                raise

            if released is not None:
                await self._release(*released)

            logger.debug(
                "tx.callback.success",
                extra={"attempt": attempt, "duration_ms": int((time.perf_counter() - start) * 1000)},
            )
            return result

    # =================================================================================================================
    # Internals
    # =================================================================================================================

    def _should_retry(self, exc: BaseException, attempt: int, attempts: int, outer: bool) -> bool:
        if not outer or attempt >= attempts or not isinstance(exc, Exception):
            return False
        if not is_transient_error(exc):
            return False
        logger.warning(
            "tx.retry",
            extra={"attempt": attempt, "max_attempts": attempts, "error_type": type(exc).__name__},
        )
        return True

    async def _commit_level(self):
        """
        Commit the current level. Returns `(events, after_commit)` for the
        outer level, None for a savepoint. A failing outer commit is rolled
        back before the error propagates.
        """
        if not self._levels:
            raise TransactionError("commit() called without an open transaction")

        level = self._levels[-1]

        if level.savepoint is not None:
            await level.savepoint.commit()
            self._levels.pop()
            level.hand_to(self._levels[-1])
            logger.debug("tx.savepoint.release", extra={"level": self.level + 1})
            return None

        try:
            for callback in list(level.before_commit):
                await _maybe_await(callback())
            await self.session.commit()
        except BaseException:
            await self.rollback()
            raise

        self._levels.pop()
        logger.debug("tx.commit", extra={"events": len(level.events)})
        return level.events, level.after_commit

    async def _release(self, events, after) -> None:
        for dispatcher, event in events:
            await dispatcher.dispatch(event.event_name, event.payload)
        for callback in after:
            await _maybe_await(callback())
