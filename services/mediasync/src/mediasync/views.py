"""Map bound references to the shapes presentation collaborators render.

URLs are deliberately absent: display URLs come from the URL resolution
cache, keyed by ``thumbnail_key`` (grid) or ``storage_key`` (selected).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .classifier import pose_id
from .models import Category, ClassifiedReference

CREATION_OUTFIT = "Creation"
PROP_FOLDER_ROOTS = ("Assets", "Props")
UNNAMED_PROP = "Unnamed Prop"


@dataclass(frozen=True)
class Headshot:
    pose_id: str
    storage_key: str
    thumbnail_key: Optional[str]
    label: str
    category: Category
    outfit_name: Optional[str] = None
    file_id: Optional[str] = None


@dataclass(frozen=True)
class LocationAngle:
    angle_id: str
    angle: str
    storage_key: str
    thumbnail_key: Optional[str]
    label: Optional[str] = None
    time_of_day: Optional[str] = None
    weather: Optional[str] = None


@dataclass(frozen=True)
class LocationBackground:
    id: str
    storage_key: str
    thumbnail_key: Optional[str]
    background_type: str = "custom"
    source_type: Optional[str] = None
    source_angle_id: Optional[str] = None
    provider_id: Optional[str] = None
    quality: Optional[str] = None
    time_of_day: Optional[str] = None
    weather: Optional[str] = None


@dataclass
class LocationReferences:
    angles: List[LocationAngle] = field(default_factory=list)
    backgrounds: List[LocationBackground] = field(default_factory=list)


@dataclass(frozen=True)
class PropAngleReference:
    id: str
    storage_key: str
    thumbnail_key: Optional[str]
    label: Optional[str] = None


@dataclass(frozen=True)
class PropImage:
    storage_key: str
    thumbnail_key: Optional[str]


@dataclass
class PropReferences:
    prop_id: str
    name: str
    angle_references: List[PropAngleReference] = field(default_factory=list)
    images: List[PropImage] = field(default_factory=list)

    @property
    def base_reference(self) -> Optional[PropImage]:
        return self.images[0] if self.images else None


def thumbnail_key_map(refs: Iterable[ClassifiedReference]) -> Dict[str, str]:
    """``storage_key -> thumbnail_key`` for references that have a thumbnail."""

    return {ref.storage_key: ref.thumbnail_key for ref in refs if ref.thumbnail_key}


def map_headshots(refs: Sequence[ClassifiedReference]) -> List[Headshot]:
    """Character gallery entries. No sorting, no prioritising, no cap."""

    headshots: List[Headshot] = []
    for ref in refs:
        md = ref.obj.metadata
        is_creation = ref.category is Category.CREATION_ASSET
        headshots.append(
            Headshot(
                pose_id=pose_id(md) or ref.storage_key,
                storage_key=ref.storage_key,
                thumbnail_key=ref.thumbnail_key,
                label=md.get("poseName") or md.get("angle") or ref.obj.file_name or "Image",
                category=ref.category,
                outfit_name=CREATION_OUTFIT if is_creation else md.get("outfitName"),
                file_id=ref.obj.file_id,
            )
        )
    return headshots


def map_location_references(refs: Sequence[ClassifiedReference]) -> LocationReferences:
    """Split a location's references into backgrounds and angle variations."""

    result = LocationReferences()
    for ref in refs:
        md = ref.obj.metadata
        if ref.category is Category.BACKGROUND:
            result.backgrounds.append(
                LocationBackground(
                    id=ref.storage_key,
                    storage_key=ref.storage_key,
                    thumbnail_key=ref.thumbnail_key,
                    background_type=md.get("backgroundType") or "custom",
                    source_type=md.get("sourceType"),
                    source_angle_id=md.get("sourceAngleId"),
                    provider_id=md.get("providerId"),
                    quality=md.get("quality"),
                    time_of_day=md.get("timeOfDay"),
                    weather=md.get("weather"),
                )
            )
        else:
            result.angles.append(
                LocationAngle(
                    angle_id=ref.storage_key,
                    angle=md.get("angle") or "unknown",
                    storage_key=ref.storage_key,
                    thumbnail_key=ref.thumbnail_key,
                    label=md.get("angle"),
                    time_of_day=md.get("timeOfDay"),
                    weather=md.get("weather"),
                )
            )
    return result


def prop_display_name(refs: Sequence[ClassifiedReference]) -> str:
    """Best-effort display name for a prop known only through its files."""

    if not refs:
        return UNNAMED_PROP
    obj = refs[0].obj
    for ref in refs:
        if not (ref.obj.file_name or "").startswith("thumb_"):
            obj = ref.obj
            break

    path = list(obj.folder_path)
    for root in PROP_FOLDER_ROOTS:
        if root in path:
            index = path.index(root)
            if index < len(path) - 1:
                return path[index + 1]

    name = obj.metadata.get("assetName") or obj.metadata.get("name")
    if name:
        return str(name)

    if obj.file_name:
        stem = obj.file_name.rsplit(".", 1)[0]
        # Short or thumb_-prefixed stems are generated ids, not names.
        if not stem.startswith("thumb_") and len(stem) > 10:
            return stem
    return UNNAMED_PROP


def map_prop_structure(prop_id: str, refs: Sequence[ClassifiedReference]) -> PropReferences:
    """Production-sourced files become angle references; creation files become images."""

    result = PropReferences(prop_id=prop_id, name=prop_display_name(refs))
    for ref in refs:
        if ref.category.is_production_sourced:
            result.angle_references.append(
                PropAngleReference(
                    id=ref.storage_key,
                    storage_key=ref.storage_key,
                    thumbnail_key=ref.thumbnail_key,
                    label=ref.obj.metadata.get("angle"),
                )
            )
        else:
            result.images.append(PropImage(storage_key=ref.storage_key, thumbnail_key=ref.thumbnail_key))
    return result


__all__ = [
    "Headshot",
    "LocationAngle",
    "LocationBackground",
    "LocationReferences",
    "PropAngleReference",
    "PropImage",
    "PropReferences",
    "map_headshots",
    "map_location_references",
    "map_prop_structure",
    "prop_display_name",
    "thumbnail_key_map",
]
