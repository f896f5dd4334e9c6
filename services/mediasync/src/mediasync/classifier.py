"""Classify remote objects into display categories.

Precedence, first match wins:

1. clothing / virtual try-on markers    -> clothing-reference (never displayed)
2. angle pipeline or explicit ``angle``  -> angle
   (an angle-pipeline object is a background only when it *also* carries
   ``backgroundType``)
3. background markers                    -> background
4. production pipeline markers           -> headshot (pose id) / production-asset
5. creation pipeline markers             -> creation-asset
6. default                               -> production-asset if the owning entity
                                            has production markers elsewhere,
                                            else creation-asset

All functions here are pure. Objects that cannot be displayed (no storage
key, thumbnail renditions, malformed metadata) classify to ``None`` and are
dropped by :func:`classify_all`.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple

from common.logging import get_logger

from .models import Category, ClassifiedReference, RemoteObject

LOGGER = get_logger(__name__)

CLOTHING_MARKERS = ("clothing_reference", "clothing-reference", "clothing reference")

ANGLE_PIPELINE_TAGS = frozenset({"angle-variations", "angle-generation"})
BACKGROUND_PIPELINE_TAG = "background-generation"

PRODUCTION_CREATED_IN = "production-hub"
PRODUCTION_SOURCES = frozenset(
    {"angle-generation", "pose-generation", "background-generation", "image-generation"}
)

CREATION_CREATED_IN = "creation"
CREATION_REFERENCE_TYPE = "base"
CREATION_UPLOAD_METHODS = frozenset(
    {
        "character-creation",
        "character-generation",
        "character-bank",
        "location-creation",
        "location-generation",
        "asset-creation",
    }
)


def _text(value: Any) -> str:
    return value.lower() if isinstance(value, str) else ""


def pose_id(metadata: Mapping[str, Any]) -> Optional[str]:
    """Pose identifier from either ``poseId`` or a nested ``pose.id``."""

    if metadata.get("poseId"):
        return str(metadata["poseId"])
    pose = metadata.get("pose")
    if isinstance(pose, Mapping) and pose.get("id"):
        return str(pose["id"])
    return None


def is_clothing_reference(obj: RemoteObject) -> bool:
    md = obj.metadata
    if md.get("isClothingReference") is True or md.get("referenceType") == "clothing":
        return True
    key = _text(obj.storage_key)
    name = _text(obj.file_name)
    return any(marker in key or marker in name for marker in CLOTHING_MARKERS)


def is_angle_pipeline(obj: RemoteObject) -> bool:
    md = obj.metadata
    return md.get("sourceType") in ANGLE_PIPELINE_TAGS or md.get("source") in ANGLE_PIPELINE_TAGS


def has_background_type(obj: RemoteObject) -> bool:
    return obj.metadata.get("backgroundType") is not None


def is_background(obj: RemoteObject) -> bool:
    """Background check for objects outside the angle pipeline."""

    md = obj.metadata
    if has_background_type(obj):
        return True
    if any(
        md.get(field) == BACKGROUND_PIPELINE_TAG
        for field in ("source", "uploadMethod", "generationMethod")
    ):
        return True
    if "background" in _text(obj.storage_key) or "background" in _text(obj.file_name):
        return True
    return any("background" in _text(part) for part in obj.folder_path)


def has_production_markers(obj: RemoteObject) -> bool:
    md = obj.metadata
    if md.get("createdIn") == PRODUCTION_CREATED_IN:
        return True
    if md.get("source") in PRODUCTION_SOURCES or md.get("uploadMethod") in PRODUCTION_SOURCES:
        return True
    return pose_id(md) is not None or bool(md.get("angleId"))


def has_creation_markers(obj: RemoteObject) -> bool:
    md = obj.metadata
    return (
        md.get("createdIn") == CREATION_CREATED_IN
        or md.get("referenceType") == CREATION_REFERENCE_TYPE
        or md.get("uploadMethod") in CREATION_UPLOAD_METHODS
    )


def is_displayable(obj: RemoteObject) -> bool:
    return bool(obj.storage_key) and not obj.is_thumbnail_rendition


def explicit_category(obj: RemoteObject) -> Optional[Category]:
    """Steps 1-5: the category implied by the object's own markers, if any."""

    if is_clothing_reference(obj):
        return Category.CLOTHING_REFERENCE
    if is_angle_pipeline(obj):
        # Shared pipeline: background only when backgroundType is also present.
        return Category.BACKGROUND if has_background_type(obj) else Category.ANGLE
    if obj.metadata.get("angle") is not None:
        return Category.ANGLE
    if is_background(obj):
        return Category.BACKGROUND
    if has_production_markers(obj):
        return Category.HEADSHOT if pose_id(obj.metadata) else Category.PRODUCTION_ASSET
    if has_creation_markers(obj):
        return Category.CREATION_ASSET
    return None


def classify(obj: RemoteObject, entity_has_production: bool = False) -> Optional[Category]:
    """Return the single category for ``obj``, or ``None`` when it cannot be displayed.

    ``entity_has_production`` feeds the default rule: it should be true when
    any other object of the same entity carries production markers.
    """

    if not is_displayable(obj):
        return None
    try:
        category = explicit_category(obj)
    except (AttributeError, TypeError, ValueError) as exc:
        LOGGER.debug("Dropping object with malformed metadata", storage_key=obj.storage_key, error=str(exc))
        return None
    if category is not None:
        return category
    return Category.PRODUCTION_ASSET if entity_has_production else Category.CREATION_ASSET


def _entity_key(obj: RemoteObject) -> Tuple[Optional[str], Optional[str]]:
    return (obj.entity_type, obj.owner_id)


def classify_all(objects: Iterable[RemoteObject]) -> List[ClassifiedReference]:
    """Classify a whole listing, resolving the per-entity default rule.

    Input order is preserved; undisplayable objects are dropped.
    """

    explicit: List[Tuple[RemoteObject, Optional[Category]]] = []
    producing: Set[Tuple[Optional[str], Optional[str]]] = set()
    dropped = 0
    for obj in objects:
        if not is_displayable(obj):
            dropped += 1
            continue
        try:
            category = explicit_category(obj)
        except (AttributeError, TypeError, ValueError) as exc:
            LOGGER.debug(
                "Dropping object with malformed metadata",
                storage_key=obj.storage_key,
                error=str(exc),
            )
            dropped += 1
            continue
        explicit.append((obj, category))
        if category is not None and category.is_production_sourced:
            producing.add(_entity_key(obj))

    classified: List[ClassifiedReference] = []
    for obj, category in explicit:
        if category is None:
            category = (
                Category.PRODUCTION_ASSET
                if _entity_key(obj) in producing
                else Category.CREATION_ASSET
            )
        classified.append(ClassifiedReference(obj=obj, category=category))

    if dropped:
        LOGGER.debug("Dropped unclassifiable objects", count=dropped)
    return classified


__all__ = [
    "classify",
    "classify_all",
    "explicit_category",
    "has_creation_markers",
    "has_production_markers",
    "is_angle_pipeline",
    "is_background",
    "is_clothing_reference",
    "pose_id",
]
