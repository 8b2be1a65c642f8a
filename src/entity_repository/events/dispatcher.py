"""
In-process event dispatcher.

Listeners subscribe to shell-style patterns (`fnmatch`), e.g.
`"repository.articles.entity.*"` or `"*.entity.created"`, and are called with
`(event_name, payload)`. Handlers may be plain functions or coroutines.

Errors raised by a handler are not caught: they reach whoever called
`dispatch()` (for repository events, the caller of the committing operation).
"""

import fnmatch
import inspect
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Any], Any]


@dataclass(frozen=True)
class DeferredEvent:
    """
    An event queued by a repository mutation and released after commit.

    payload is `[repository, entity]`.
    """

    event_name: str
    repository_id: str
    payload: list


class EventDispatcher:
    def __init__(self) -> None:
        self._listeners: list[tuple[str, EventHandler]] = []

    def listen(self, pattern: str, handler: EventHandler) -> None:
        """Register `handler` for every event whose name matches `pattern`."""
        self._listeners.append((pattern, handler))
        logger.debug("events.listen", extra={"pattern": pattern, "handler": getattr(handler, "__qualname__", repr(handler))})

    def forget(self, pattern: str) -> None:
        """Remove all handlers registered for exactly `pattern`."""
        self._listeners = [(p, h) for p, h in self._listeners if p != pattern]

    def has_listeners(self, event_name: str) -> bool:
        return any(fnmatch.fnmatchcase(event_name, p) for p, _ in self._listeners)

    async def dispatch(self, event_name: str, payload: Any = None) -> list:
        """
        Call every matching handler in registration order and return their results.
        Awaitable results are awaited.
        """
        results = []
        for pattern, handler in list(self._listeners):
            if not fnmatch.fnmatchcase(event_name, pattern):
                continue
            result = handler(event_name, payload)
            if inspect.isawaitable(result):
                result = await result
            results.append(result)

        logger.debug("events.dispatch", extra={"event_name": event_name, "handlers": len(results)})
        return results


@lru_cache()
def get_event_dispatcher() -> EventDispatcher:
    """
    Process-wide default dispatcher, with the cache invalidation listener
    already subscribed. Repositories use it unless one is injected.
    """
    from .listeners import RepositoryEventListener

    dispatcher = EventDispatcher()
    RepositoryEventListener().subscribe(dispatcher)
    return dispatcher
