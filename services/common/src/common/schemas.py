"""Pydantic schema helpers shared by services."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SyncModel(BaseModel):
    """Base model for backend payloads.

    The backend speaks camelCase JSON; Python code uses snake_case attributes.
    Unknown keys are kept so nothing the backend sends is silently lost.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def dump_wire(self, **kwargs: Any) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, **kwargs)


__all__ = ["SyncModel"]
