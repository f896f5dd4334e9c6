"""Explicit cache-scope invalidation.

Caches never expire as a side effect of rendering. Something that knows the
remote object set changed (a completed job, an upload, a soft delete) calls
:meth:`InvalidationBus.invalidate` and every subscribed cache drops what the
scope covers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from common.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class CacheScope:
    """An entity type, optionally narrowed to one entity. ``None`` means everything."""

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    def __post_init__(self) -> None:
        # Accept EntityType members; keep plain strings internally.
        object.__setattr__(self, "entity_type", getattr(self.entity_type, "value", self.entity_type))

    def covers(self, entity_type: Optional[str], entity_id: Optional[str] = None) -> bool:
        entity_type = getattr(entity_type, "value", entity_type)
        if self.entity_type is not None and entity_type != self.entity_type:
            return False
        if self.entity_id is None or entity_id is None:
            return True
        return entity_id == self.entity_id

    def __str__(self) -> str:
        if self.entity_type is None:
            return "*"
        if self.entity_id is None:
            return self.entity_type
        return f"{self.entity_type}:{self.entity_id}"


Listener = Callable[[CacheScope], None]


class InvalidationBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def invalidate(self, scope: CacheScope) -> None:
        LOGGER.debug("Invalidating cache scope", scope=str(scope), listeners=len(self._listeners))
        for listener in list(self._listeners):
            listener(scope)


__all__ = ["CacheScope", "InvalidationBus"]
