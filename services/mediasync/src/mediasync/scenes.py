"""Rebuild the scene -> shot -> variation tree from a flat object listing.

Each generation attempt for a shot leaves a first frame (primary) and, once
rendered, a video (secondary) sharing the same ``(sceneId, shotNumber,
timestamp)`` metadata. The tree is a pure function of the listing and is
rebuilt from scratch on every refresh.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from common.logging import get_logger

from .models import RemoteObject

LOGGER = get_logger(__name__)

VariationKey = Tuple[str, int, str]


@dataclass(frozen=True)
class Variation:
    timestamp: str
    primary: Optional[RemoteObject] = None
    secondary: Optional[RemoteObject] = None
    is_current: bool = False

    @property
    def storage_keys(self) -> List[str]:
        return [obj.storage_key for obj in (self.primary, self.secondary) if obj and obj.storage_key]

    @property
    def recency(self) -> str:
        """Secondary ordering field when timestamps tie or are missing."""

        for obj in (self.primary, self.secondary):
            if obj is not None and obj.created_at:
                return str(obj.created_at)
        return ""


@dataclass
class Shot:
    number: int
    scene_id: str
    scene_number: int
    variations: List[Variation] = field(default_factory=list)

    @property
    def current(self) -> Optional[Variation]:
        return self.variations[0] if self.variations else None


@dataclass
class Scene:
    id: str
    number: int
    heading: str
    shots: List[Shot] = field(default_factory=list)


@dataclass(frozen=True)
class _Placement:
    scene_id: str
    scene_number: int
    heading: str
    shot_number: int
    timestamp: str

    @property
    def key(self) -> VariationKey:
        return (self.scene_id, self.shot_number, self.timestamp)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    return int(value)


def _placement(obj: RemoteObject) -> Optional[_Placement]:
    """Where the object sits in the tree, or ``None`` when it does not belong."""

    md = obj.metadata
    entity_type = obj.entity_type or md.get("entityType")
    if entity_type != "scene" or obj.is_archived or not obj.storage_key:
        return None
    if md.get("isMetadata") or md.get("isFullScene"):
        return None
    if md.get("shotNumber") is None or not md.get("sceneId") or md.get("sceneNumber") is None:
        return None
    scene_number = _as_int(md["sceneNumber"])
    timestamp = md.get("timestamp")
    return _Placement(
        scene_id=str(md["sceneId"]),
        scene_number=scene_number,
        heading=str(md.get("sceneName") or f"Scene {scene_number}"),
        shot_number=_as_int(md["shotNumber"]),
        timestamp="" if timestamp is None else str(timestamp),
    )


def _timestamp_key(timestamp: str) -> Tuple[float, str]:
    # Epoch timestamps compare numerically; ISO strings compare lexically.
    try:
        return (float(timestamp), "")
    except ValueError:
        return (float("-inf"), timestamp)


def is_video(obj: RemoteObject) -> bool:
    file_type = (obj.file_type or "").lower()
    return file_type == "video" or file_type.startswith("video/")


def reconstruct(objects: Iterable[RemoteObject]) -> List[Scene]:
    """Build the ordered scene tree.

    Shots ascend by number; variations descend by timestamp (then by
    creation time) and the newest variation of each shot is marked current.
    Objects with malformed placement metadata are dropped.
    """

    # Pass 1: split primaries and secondaries, index secondaries by composite key.
    primaries: List[Tuple[RemoteObject, _Placement]] = []
    secondaries: Dict[VariationKey, Tuple[RemoteObject, _Placement]] = {}
    for obj in objects:
        try:
            placement = _placement(obj)
        except (TypeError, ValueError) as exc:
            LOGGER.debug("Dropping scene object with malformed metadata", storage_key=obj.storage_key, error=str(exc))
            continue
        if placement is None:
            continue
        if obj.metadata.get("isFirstFrame"):
            primaries.append((obj, placement))
        elif is_video(obj):
            previous = secondaries.get(placement.key)
            if previous is not None:
                LOGGER.debug(
                    "Dropping duplicate scene video",
                    storage_key=previous[0].storage_key,
                    kept=obj.storage_key,
                )
            secondaries[placement.key] = (obj, placement)

    grouped: Dict[Tuple[str, int], Dict[str, Any]] = {}

    def _slot(placement: _Placement) -> List[Variation]:
        scene = grouped.setdefault(
            (placement.scene_id, placement.scene_number),
            {"heading": placement.heading, "shots": {}},
        )
        return scene["shots"].setdefault(placement.shot_number, [])

    # Pass 2: primaries, paired with their secondary when one exists.
    matched: Set[VariationKey] = set()
    for obj, placement in primaries:
        partner = secondaries.get(placement.key)
        if partner is not None:
            matched.add(placement.key)
        _slot(placement).append(
            Variation(
                timestamp=placement.timestamp,
                primary=obj,
                secondary=partner[0] if partner else None,
            )
        )

    # Pass 3: secondaries nobody claimed still get a variation of their own.
    for key, (obj, placement) in secondaries.items():
        if key not in matched:
            _slot(placement).append(Variation(timestamp=placement.timestamp, secondary=obj))

    scenes: List[Scene] = []
    for (scene_id, scene_number), data in grouped.items():
        scene = Scene(id=scene_id, number=scene_number, heading=data["heading"])
        for shot_number in sorted(data["shots"]):
            variations = sorted(
                data["shots"][shot_number],
                key=lambda v: (_timestamp_key(v.timestamp), v.recency),
                reverse=True,
            )
            if variations:
                variations[0] = Variation(
                    timestamp=variations[0].timestamp,
                    primary=variations[0].primary,
                    secondary=variations[0].secondary,
                    is_current=True,
                )
            scene.shots.append(
                Shot(
                    number=shot_number,
                    scene_id=scene_id,
                    scene_number=scene_number,
                    variations=variations,
                )
            )
        scenes.append(scene)

    scenes.sort(key=lambda s: (s.number, s.id))
    return scenes


def total_shot_count(scenes: Iterable[Scene]) -> int:
    return sum(len(scene.shots) for scene in scenes)


def total_variation_count(scenes: Iterable[Scene]) -> int:
    return sum(len(shot.variations) for scene in scenes for shot in scene.shots)


def tree_storage_keys(scenes: Iterable[Scene]) -> List[str]:
    """Every primary and secondary key in the tree, for bulk URL resolution."""

    keys: List[str] = []
    for scene in scenes:
        for shot in scene.shots:
            for variation in shot.variations:
                keys.extend(variation.storage_keys)
    return keys


__all__ = [
    "Scene",
    "Shot",
    "Variation",
    "is_video",
    "reconstruct",
    "total_shot_count",
    "total_variation_count",
    "tree_storage_keys",
]
