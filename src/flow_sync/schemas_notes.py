from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SyncMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = 0
    content_hash: str = ""
    server_version: int | None = None
    synced_at: int | None = None
    device_id: str | None = None


class Note(BaseModel):
    # Unknown fields from the document store are carried through untouched.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    title: str = ""
    # Editor document (JSON); opaque to the sync engine.
    content: Any = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: int = 0
    updated_at: int = 0
    sync: SyncMetadata | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
