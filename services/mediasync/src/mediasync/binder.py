"""Group classified references into per-entity collections."""

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from common.logging import get_logger

from .models import ClassifiedReference

LOGGER = get_logger(__name__)

ReferenceList = Tuple[ClassifiedReference, ...]
EntityCollections = Dict[str, ReferenceList]


def _type_name(entity_type: Optional[str]) -> Optional[str]:
    # EntityType members and plain strings must share memo keys.
    return getattr(entity_type, "value", entity_type)


def _eligible(ref: ClassifiedReference, entity_type: Optional[str]) -> bool:
    if ref.obj.is_archived or not ref.category.is_displayable:
        return False
    return entity_type is None or ref.obj.entity_type in (None, entity_type)


def bind_references(
    refs: Sequence[ClassifiedReference],
    entity_ids: Iterable[str],
    entity_type: Optional[str] = None,
) -> EntityCollections:
    """Build ``entity_id -> references`` for the requested ids.

    Archived objects and clothing references never appear. When an entity has
    any production-sourced reference its creation assets are left out; they
    are shown only when production has nothing. Input order is kept and no
    cap is applied. Every requested id gets an entry, possibly empty.
    """

    wanted = list(dict.fromkeys(entity_ids))
    grouped: Dict[str, List[ClassifiedReference]] = {entity_id: [] for entity_id in wanted}
    for ref in refs:
        owner = ref.entity_id
        if owner in grouped and _eligible(ref, entity_type):
            grouped[owner].append(ref)

    result: EntityCollections = {}
    for entity_id, group in grouped.items():
        if any(ref.category.is_production_sourced for ref in group):
            group = [ref for ref in group if ref.category.is_production_sourced]
        result[entity_id] = tuple(group)
    return result


class EntityBinder:
    """Memoized :func:`bind_references` with explicit invalidation.

    The memo key is the entity type, the number of eligible references and
    the sorted id list plus an invalidation generation, never object
    identity. Re-binding an unchanged listing therefore hands back the very
    same mapping, so downstream caches keyed on it stay warm. Callers must
    :meth:`invalidate` when the underlying object set changes.
    """

    def __init__(self, max_entries: int = 64) -> None:
        self._max_entries = max_entries
        self._cache: "OrderedDict[Hashable, EntityCollections]" = OrderedDict()
        self._generations: Dict[Optional[str], int] = {}

    def _generation(self, entity_type: Optional[str]) -> int:
        return self._generations.get(None, 0) + self._generations.get(entity_type, 0)

    def bind(
        self,
        refs: Sequence[ClassifiedReference],
        entity_ids: Iterable[str],
        entity_type: Optional[str] = None,
    ) -> EntityCollections:
        entity_type = _type_name(entity_type)
        ids = sorted(set(entity_ids))
        id_set = set(ids)
        eligible_count = sum(
            1 for ref in refs if ref.entity_id in id_set and _eligible(ref, entity_type)
        )
        key = (entity_type, eligible_count, tuple(ids), self._generation(entity_type))
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        result = bind_references(refs, ids, entity_type)
        self._cache[key] = result
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)
        LOGGER.debug(
            "Bound entity collections",
            entity_type=entity_type,
            entities=len(ids),
            references=eligible_count,
        )
        return result

    def invalidate(self, entity_type: Optional[str] = None) -> None:
        """Drop memoized results for one entity type, or for all when ``None``."""

        entity_type = _type_name(entity_type)
        self._generations[entity_type] = self._generations.get(entity_type, 0) + 1
        if entity_type is None:
            self._cache.clear()
        else:
            for key in [k for k in self._cache if k[0] == entity_type]:
                del self._cache[key]


__all__ = ["EntityBinder", "EntityCollections", "ReferenceList", "bind_references"]
