from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from flow_sync.schemas_notes import Note


ChangeOperation = Literal["create", "update", "delete"]
# "conflict" is accepted by stores but never written by the engine.
SyncStatus = Literal["pending", "synced", "conflict"]
ResolutionType = Literal["keep_local", "keep_remote", "keep_both"]

CHANGE_OPERATIONS: frozenset[str] = frozenset({"create", "update", "delete"})
RESOLUTION_TYPES: frozenset[str] = frozenset({"keep_local", "keep_remote", "keep_both"})


class ConflictReason(str, Enum):
    # Both sides edited the note.
    EDIT = "edit"
    # Remote deleted a note with a pending local edit.
    DELETE_EDIT = "delete-edit"
    # Remote edited a note that was deleted locally.
    EDIT_DELETE = "edit-delete"


@dataclass(frozen=True)
class SyncState:
    local_version: int
    server_version: int | None
    content_hash: str
    status: SyncStatus
    last_synced_at: int | None = None


@dataclass(frozen=True)
class QueuedChange:
    id: int
    note_id: str
    operation: ChangeOperation
    version: int
    payload: Note | None
    queued_at: int
    attempts: int = 0
    last_attempt_at: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class Conflict:
    note_id: str
    local_note: Note | None
    remote_note: Note | None
    local_version: int
    remote_version: int
    reason: ConflictReason
    detected_at: int


@dataclass(frozen=True)
class ResolvedConflict:
    note_id: str
    resolution: ResolutionType
    # Note to keep under `note_id`; None means the note should be deleted.
    note: Note | None
    # keep_both only: the local side re-homed under a fresh id.
    copy: Note | None = None
