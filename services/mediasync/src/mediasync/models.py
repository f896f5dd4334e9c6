"""Shared data models for the media sync layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

from common.schemas import SyncModel

T = TypeVar("T")

THUMBNAIL_PREFIX = "thumbnails/"


class EntityType(str, Enum):
    """Domain concepts that own remote objects."""

    CHARACTER = "character"
    LOCATION = "location"
    ASSET = "asset"
    SCENE = "scene"


class Category(str, Enum):
    """Display category of a classified reference. Exactly one applies per object."""

    HEADSHOT = "headshot"
    CLOTHING_REFERENCE = "clothing-reference"
    ANGLE = "angle"
    BACKGROUND = "background"
    PRODUCTION_ASSET = "production-asset"
    CREATION_ASSET = "creation-asset"

    @property
    def is_production_sourced(self) -> bool:
        return self in _PRODUCTION_SOURCED

    @property
    def is_displayable(self) -> bool:
        return self is not Category.CLOTHING_REFERENCE


_PRODUCTION_SOURCED = frozenset(
    {Category.HEADSHOT, Category.ANGLE, Category.BACKGROUND, Category.PRODUCTION_ASSET}
)


@dataclass(frozen=True)
class RemoteObject:
    """A stored file plus its free-form metadata, as listed by the backend.

    Immutable; only ``archived`` ever flips (on soft delete), which arrives as
    a fresh listing rather than an in-place mutation.
    """

    storage_key: Optional[str]
    thumbnail_key: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    archived: bool = False
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    folder_path: Tuple[str, ...] = ()
    created_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RemoteObject":
        """Build from a backend listing entry (camelCase keys, legacy aliases accepted)."""

        metadata = payload.get("metadata")
        if not isinstance(metadata, Mapping):
            metadata = {}
        folder_path = payload.get("folderPath") or ()
        if isinstance(folder_path, str):
            folder_path = (folder_path,)
        return cls(
            storage_key=payload.get("storageKey") or payload.get("s3Key"),
            thumbnail_key=(
                payload.get("thumbnailKey")
                or payload.get("thumbnailS3Key")
                or metadata.get("thumbnailS3Key")
            ),
            entity_type=payload.get("entityType") or metadata.get("entityType"),
            entity_id=payload.get("entityId"),
            metadata=dict(metadata),
            archived=bool(payload.get("archived") or payload.get("isArchived")),
            file_id=payload.get("fileId") or payload.get("id"),
            file_name=payload.get("fileName"),
            file_type=payload.get("fileType") or payload.get("mediaFileType"),
            folder_path=tuple(str(part) for part in folder_path),
            created_at=payload.get("createdAt") or payload.get("uploadedAt"),
        )

    @property
    def owner_id(self) -> Optional[str]:
        """Owning entity id; metadata wins over the top-level index field."""

        return self.metadata.get("entityId") or self.entity_id

    @property
    def is_archived(self) -> bool:
        return self.archived or self.metadata.get("isArchived") is True

    @property
    def is_thumbnail_rendition(self) -> bool:
        return bool(self.storage_key and self.storage_key.startswith(THUMBNAIL_PREFIX))


@dataclass(frozen=True)
class ClassifiedReference:
    """A remote object tagged with its single display category."""

    obj: RemoteObject
    category: Category

    @property
    def storage_key(self) -> str:
        return self.obj.storage_key or ""

    @property
    def thumbnail_key(self) -> Optional[str]:
        return self.obj.thumbnail_key

    @property
    def entity_id(self) -> Optional[str]:
        return self.obj.owner_id

    @property
    def display_key(self) -> str:
        """Key to resolve for grid display: the thumbnail when there is one."""

        return self.obj.thumbnail_key or self.storage_key


class ObjectPage(SyncModel):
    """One page of an object listing."""

    objects: List[Dict[str, Any]] = []
    next_token: Optional[str] = None


@dataclass
class QueryResult(Generic[T]):
    """What presentation collaborators receive: data plus load/error state."""

    data: T
    is_loading: bool = False
    error: Optional[BaseException] = None


__all__ = [
    "Category",
    "ClassifiedReference",
    "EntityType",
    "ObjectPage",
    "QueryResult",
    "RemoteObject",
    "THUMBNAIL_PREFIX",
]
