"""Query facade handed to presentation collaborators.

``MediaStore`` owns the last good object listing per entity type, the
classified references derived from it, the memoized entity binder and the
URL cache. Listings are refetched only after an explicit invalidation
(through the :class:`~mediasync.invalidation.InvalidationBus`) or a forced
refresh, and a failed refetch keeps serving the previous listing with the
error attached.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from common.logging import get_logger

from .binder import EntityBinder, EntityCollections
from .classifier import classify_all
from .clients import MediaApiClient, ObjectListingService, drain_pages
from .errors import TransientFetchError, retry_policy
from .invalidation import CacheScope, InvalidationBus
from .models import ClassifiedReference, EntityType, QueryResult, RemoteObject
from .scenes import Scene, reconstruct
from .urls import UrlResolutionCache, display_keys
from .views import (
    Headshot,
    LocationReferences,
    PropReferences,
    map_headshots,
    map_location_references,
    map_prop_structure,
)

LOGGER = get_logger(__name__)

Fingerprint = Tuple[Tuple[str, bool], ...]


@dataclass
class SceneTreeResult:
    scenes: List[Scene]
    refetch: Callable[[], Awaitable["SceneTreeResult"]] = field(repr=False)
    is_loading: bool = False
    error: Optional[BaseException] = None


@dataclass
class _Listing:
    objects: List[RemoteObject]
    references: List[ClassifiedReference]
    fingerprint: Fingerprint


def _fingerprint(objects: Iterable[RemoteObject]) -> Fingerprint:
    return tuple(sorted((obj.storage_key or "", obj.is_archived) for obj in objects))


def _type_name(entity_type: Optional[str]) -> str:
    return str(getattr(entity_type, "value", entity_type))


class MediaStore:
    def __init__(
        self,
        listing: ObjectListingService,
        scope: str,
        urls: UrlResolutionCache,
        *,
        bus: Optional[InvalidationBus] = None,
        binder: Optional[EntityBinder] = None,
        retry_attempts: Optional[int] = None,
        retry_wait: float = 1.0,
    ) -> None:
        self._listing = listing
        self._scope = scope
        self.urls = urls
        self.bus = bus or InvalidationBus()
        self._binder = binder or EntityBinder()
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._listings: Dict[str, _Listing] = {}
        self._stale: Set[str] = set()
        self._unsubscribe = self.bus.subscribe(self._on_invalidate)

    @classmethod
    def from_client(cls, client: MediaApiClient, scope: str, **kwargs) -> "MediaStore":
        """Wire a store whose listing and URL issuing both go through ``client``."""

        urls = kwargs.pop("urls", None) or UrlResolutionCache(client)
        return cls(client, scope, urls, **kwargs)

    def close(self) -> None:
        self._unsubscribe()

    # -- invalidation -------------------------------------------------

    def _on_invalidate(self, scope: CacheScope) -> None:
        for entity_type in list(self._listings):
            if scope.covers(entity_type):
                self._stale.add(entity_type)

    def invalidate(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> None:
        """Mark cached listings stale after an upload, delete or other external change."""

        self.bus.invalidate(CacheScope(entity_type, entity_id))

    def is_stale(self, entity_type: str) -> bool:
        name = _type_name(entity_type)
        return name not in self._listings or name in self._stale

    # -- listings -----------------------------------------------------

    async def _load(
        self, entity_type: str, *, refresh: bool = False
    ) -> Tuple[List[ClassifiedReference], List[RemoteObject], Optional[BaseException]]:
        name = _type_name(entity_type)
        cached = self._listings.get(name)
        if cached is not None and name not in self._stale and not refresh:
            return cached.references, cached.objects, None

        try:
            async for attempt in retry_policy(self._retry_attempts, min_wait=self._retry_wait):
                with attempt:
                    objects = await drain_pages(self._listing, self._scope, entity_type=name)
        except TransientFetchError as exc:
            LOGGER.warning("Object listing failed, serving last known data", entity_type=name, error=str(exc))
            if cached is None:
                return [], [], exc
            return cached.references, cached.objects, exc

        self._stale.discard(name)
        fingerprint = _fingerprint(objects)
        if cached is not None and cached.fingerprint == fingerprint:
            return cached.references, cached.objects, None

        references = classify_all(objects)
        self._listings[name] = _Listing(objects=objects, references=references, fingerprint=fingerprint)
        self._binder.invalidate(name)
        LOGGER.info(
            "Object listing refreshed",
            entity_type=name,
            objects=len(objects),
            references=len(references),
        )
        return references, objects, None

    # -- queries ------------------------------------------------------

    def snapshot(self, entity_type: str, entity_ids: Iterable[str]) -> QueryResult[EntityCollections]:
        """Last known collections without fetching; ``is_loading`` while a refresh is due."""

        name = _type_name(entity_type)
        cached = self._listings.get(name)
        references = cached.references if cached is not None else []
        return QueryResult(
            data=self._binder.bind(references, entity_ids, name),
            is_loading=self.is_stale(name),
        )

    async def references(
        self, entity_type: str, entity_ids: Iterable[str], *, refresh: bool = False
    ) -> QueryResult[EntityCollections]:
        name = _type_name(entity_type)
        references, _, error = await self._load(name, refresh=refresh)
        return QueryResult(data=self._binder.bind(references, entity_ids, name), error=error)

    async def headshots(self, character_ids: Iterable[str]) -> QueryResult[Dict[str, List[Headshot]]]:
        result = await self.references(EntityType.CHARACTER, character_ids)
        return QueryResult(
            data={entity_id: map_headshots(refs) for entity_id, refs in result.data.items()},
            error=result.error,
        )

    async def location_references(self, location_id: str) -> QueryResult[LocationReferences]:
        result = await self.references(EntityType.LOCATION, [location_id])
        return QueryResult(data=map_location_references(result.data[location_id]), error=result.error)

    async def prop_references(self, prop_ids: Iterable[str]) -> QueryResult[Dict[str, PropReferences]]:
        result = await self.references(EntityType.ASSET, prop_ids)
        return QueryResult(
            data={prop_id: map_prop_structure(prop_id, refs) for prop_id, refs in result.data.items()},
            error=result.error,
        )

    async def scene_tree(self, *, refresh: bool = False) -> SceneTreeResult:
        _, objects, error = await self._load(EntityType.SCENE, refresh=refresh)
        return SceneTreeResult(
            scenes=reconstruct(objects),
            refetch=functools.partial(self.scene_tree, refresh=True),
            error=error,
        )

    async def resolved_urls(self, keys: Iterable[str]) -> QueryResult[Dict[str, str]]:
        return await self.urls.query(keys)

    async def display_urls(self, refs: Sequence[ClassifiedReference]) -> QueryResult[Dict[str, str]]:
        """URLs for a grid: thumbnails first, full-size keys only where no thumbnail exists."""

        return await self.urls.query(display_keys(refs))


__all__ = ["MediaStore", "SceneTreeResult"]
