from typing import Any, Dict, List, Optional

from mediasync.models import ObjectPage, RemoteObject


def make_object(
    key: Optional[str],
    *,
    entity_type: Optional[str] = "character",
    entity_id: Optional[str] = "char-1",
    archived: bool = False,
    thumbnail: Optional[str] = None,
    **metadata: Any,
) -> RemoteObject:
    return RemoteObject(
        storage_key=key,
        thumbnail_key=thumbnail,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata,
        archived=archived,
    )


def payload(key: str, entity_type: str, entity_id: Optional[str] = None, **metadata: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {"s3Key": key, "entityType": entity_type, "metadata": metadata}
    if entity_id:
        data["entityId"] = entity_id
    return data


class DummyListing:
    """Serves one page per call from ``pages[entity_type]``."""

    def __init__(self, objects: Optional[Dict[str, List[Dict[str, Any]]]] = None, page_size: int = 2):
        self.objects = objects or {}
        self.page_size = page_size
        self.calls: List[Dict[str, Any]] = []
        self.failures: List[Exception] = []

    async def list(self, scope, *, entity_type=None, entity_id=None, folder=None, page_token=None):  # noqa: D401
        self.calls.append({"scope": scope, "entity_type": entity_type, "page_token": page_token})
        if self.failures:
            raise self.failures.pop(0)
        items = self.objects.get(entity_type, [])
        start = int(page_token or 0)
        end = start + self.page_size
        next_token = str(end) if end < len(items) else None
        return ObjectPage(objects=items[start:end], next_token=next_token)
