import logging
from typing import Any

from .dispatcher import EventDispatcher

logger = logging.getLogger(__name__)


class RepositoryEventListener:
    """
    Evicts a repository's cached results when one of its entities is created,
    updated or deleted.

    The repository is `payload[0]`. Eviction happens only when clearing is
    enabled for that repository and the mutation kind is in its
    `get_cache_clear_on()` set. The whole repository cache is flushed.
    Restores do not invalidate.
    """

    # event suffix -> mutation kind
    EVENTS = {
        "created": "create",
        "updated": "update",
        "deleted": "delete",
    }

    def subscribe(self, dispatcher: EventDispatcher) -> None:
        for suffix in self.EVENTS:
            dispatcher.listen(f"*.entity.{suffix}", self.handle)

    async def handle(self, event_name: str, payload: Any) -> None:
        kind = self.EVENTS.get(event_name.rsplit(".", 1)[-1])
        if kind is None or not payload:
            return

        repository = payload[0]
        if not repository.is_cache_clear_enabled():
            return
        if kind not in repository.get_cache_clear_on():
            logger.debug("cache.invalidate.skipped", extra={"event_name": event_name, "kind": kind})
            return

        await repository.forget_cache()
        logger.debug(
            "cache.invalidate",
            extra={"event_name": event_name, "repository_id": repository.get_repository_id()},
        )
