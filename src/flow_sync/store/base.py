from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from flow_sync.domain.sync_records import ChangeOperation, Conflict, QueuedChange, SyncState
from flow_sync.schemas_notes import Note
from flow_sync.sync_utils import now_ms


METADATA_DEVICE_ID = "device_id"
METADATA_LAST_SYNC_AT = "last_sync_at"
METADATA_LAST_SYNC_SEQUENCE = "last_sync_sequence"


def acknowledged_state(
    stored: SyncState | None,
    change: QueuedChange,
    state: SyncState | None,
    *,
    server_version: int,
) -> SyncState | None:
    """State to persist when the server acknowledges `change`.

    A note edited again after `change` was queued keeps its newer local
    fields and stays pending; only the server side moves forward.
    """

    if stored is not None and stored.local_version > change.version:
        return replace(
            stored, server_version=server_version, status="pending", last_synced_at=now_ms()
        )
    return state


class ChangeStore(Protocol):
    """Durable local state the sync engine depends on.

    Queue entries are keyed by note id: `record_local_change` replaces any
    existing entry for the note (with a fresh surrogate id, never reused) and
    upserts the note's sync state in one atomic step. `acknowledge_change` is
    the push-side counterpart: in one atomic step the entry is removed if it
    still holds the acknowledged version, and the state is updated (or
    deleted when `state` is None) unless a newer local edit superseded it.
    """

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def get_queued_changes(self, limit: int | None = None) -> list[QueuedChange]: ...

    async def get_queued_change(self, note_id: str) -> QueuedChange | None: ...

    async def record_local_change(
        self,
        *,
        note_id: str,
        operation: ChangeOperation,
        version: int,
        payload: Note | None,
        state: SyncState,
    ) -> QueuedChange: ...

    async def remove_queued_change(self, change_id: int) -> None: ...

    async def acknowledge_change(
        self, change: QueuedChange, state: SyncState | None, *, server_version: int
    ) -> SyncState | None: ...

    async def mark_change_attempted(self, change_id: int, error: str) -> None: ...

    async def get_queue_size(self) -> int: ...

    async def get_sync_state(self, note_id: str) -> SyncState | None: ...

    async def set_sync_state(self, note_id: str, state: SyncState) -> None: ...

    async def delete_sync_state(self, note_id: str) -> None: ...

    async def get_last_sync_sequence(self) -> int: ...

    async def set_last_sync_sequence(self, sequence: int) -> None: ...

    async def store_conflict(self, conflict: Conflict) -> None: ...

    async def get_conflict(self, note_id: str) -> Conflict | None: ...

    async def get_all_conflicts(self) -> list[Conflict]: ...

    async def remove_conflict(self, note_id: str) -> None: ...

    async def get_conflict_count(self) -> int: ...

    async def get_metadata(self, key: str) -> str | None: ...

    async def set_metadata(self, key: str, value: str) -> None: ...
