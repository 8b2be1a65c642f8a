from .dispatcher import DeferredEvent, EventDispatcher, get_event_dispatcher
from .listeners import RepositoryEventListener

__all__ = ["DeferredEvent", "EventDispatcher", "get_event_dispatcher", "RepositoryEventListener"]
