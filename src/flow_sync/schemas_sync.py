from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flow_sync.domain.sync_records import ChangeOperation
from flow_sync.schemas_notes import Note


class _WireModel(BaseModel):
    # JSON on the wire is camelCase; Python code uses snake_case names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PushChange(_WireModel):
    note_id: str = Field(min_length=1)
    operation: ChangeOperation
    version: int
    # Last server version this device saw for the note.
    base_version: int | None = None
    content_hash: str | None = None
    payload: Note | None = None


class PushRequest(_WireModel):
    device_id: str
    changes: list[PushChange] = Field(default_factory=list)


class PushAccepted(_WireModel):
    note_id: str
    server_version: int
    server_sequence: int | None = None


class PushConflict(_WireModel):
    note_id: str
    server_note: Note | None = None
    server_version: int


class PushError(_WireModel):
    note_id: str
    error: str
    retryable: bool = False


class PushResponse(_WireModel):
    accepted: list[PushAccepted] = Field(default_factory=list)
    conflicts: list[PushConflict] = Field(default_factory=list)
    errors: list[PushError] = Field(default_factory=list)


class PullRequest(_WireModel):
    device_id: str
    since_sequence: int = 0
    limit: int | None = None


class RemoteChange(_WireModel):
    note_id: str
    operation: ChangeOperation
    version: int
    server_sequence: int | None = None
    note: Note | None = None
    timestamp: int | None = None


class PullResponse(_WireModel):
    changes: list[RemoteChange] = Field(default_factory=list)
    has_more: bool = False
    latest_sequence: int
    server_time: int | None = None


class StatusResponse(_WireModel):
    ok: bool
    server_time: int | None = None
