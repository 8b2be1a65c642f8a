from .store import RepositoryCache, get_cache_backend

__all__ = ["RepositoryCache", "get_cache_backend"]
