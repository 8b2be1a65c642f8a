"""
Per-repository result cache on top of aiocache's in-memory backend.

Each repository identifier gets its own `SimpleMemoryCache` under the
namespace `"{repository_id}:"`, shared by every repository instance with that
identifier in the process. Flushing a repository cache therefore never
touches another repository's entries.

Values are pickled (`PickleSerializer`), so a hit yields a detached copy of
what was stored. `remember(..., restore=...)` lets the caller bind such a
copy to its own session before it is returned.
"""

import hashlib
import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable

from aiocache import SimpleMemoryCache
from aiocache.serializers import PickleSerializer

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def get_cache_backend(repository_id: str) -> SimpleMemoryCache:
    """One backend per repository identifier for the life of the process."""
    return SimpleMemoryCache(serializer=PickleSerializer(), namespace=f"{repository_id}:")


class RepositoryCache:
    """
    Keyed get/put/forget store scoped to one repository identifier.

    - lifetime: seconds; 0 keeps entries until flushed, negative disables caching
    - enabled: master switch; a disabled cache stores nothing and `remember()`
      always runs the callback
    """

    def __init__(
        self,
        repository_id: str,
        *,
        lifetime: int = 0,
        enabled: bool = True,
        backend: SimpleMemoryCache | None = None,
    ) -> None:
        self.repository_id = repository_id
        self.lifetime = lifetime
        self._enabled = enabled
        self.backend = backend if backend is not None else get_cache_backend(repository_id)
        self.namespace = f"{repository_id}:"

    @property
    def enabled(self) -> bool:
        return self._enabled and self.lifetime >= 0

    @property
    def ttl(self) -> int | None:
        return self.lifetime or None

    @staticmethod
    def make_key(method: str, args: Any = (), signature: str = "") -> str:
        digest = hashlib.sha1(repr((args, signature)).encode("utf-8")).hexdigest()
        return f"{method}:{digest}"

    async def has(self, key: str) -> bool:
        return bool(await self.backend.exists(key, namespace=self.namespace))

    async def get(self, key: str, default: Any = None) -> Any:
        return await self.backend.get(key, default=default, namespace=self.namespace)

    async def put(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        await self.backend.set(key, value, ttl=self.ttl, namespace=self.namespace)

    async def forget(self, key: str) -> bool:
        return bool(await self.backend.delete(key, namespace=self.namespace))

    async def flush(self) -> None:
        """Drop every entry of this repository."""
        await self.backend.clear(namespace=self.namespace)
        logger.debug("cache.flush", extra={"repository_id": self.repository_id})

    async def remember(
        self,
        key: str,
        callback: Callable[[], Awaitable[Any]],
        restore: Callable[[Any], Awaitable[Any]] | None = None,
    ) -> Any:
        """
        Return the cached value for `key`, or run `callback`, store and return its result.

        On a hit the stored copy is passed through `restore` when given. A miss
        returns the callback's own result, not a copy.
        """
        if not self.enabled:
            return await callback()

        if await self.has(key):
            logger.debug("cache.hit", extra={"repository_id": self.repository_id, "cache_key": key})
            value = await self.get(key)
            return await restore(value) if restore is not None else value

        value = await callback()
        await self.put(key, value)
        logger.debug("cache.miss", extra={"repository_id": self.repository_id, "cache_key": key})
        return value
