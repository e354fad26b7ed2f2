from __future__ import annotations

import itertools
from dataclasses import replace

from flow_sync.domain.sync_records import ChangeOperation, Conflict, QueuedChange, SyncState
from flow_sync.schemas_notes import Note
from flow_sync.store.base import METADATA_LAST_SYNC_SEQUENCE, acknowledged_state
from flow_sync.sync_utils import now_ms


class MemoryChangeStore:
    """In-process ChangeStore.

    Every method completes without awaiting, so each call is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._queue: dict[str, QueuedChange] = {}
        self._states: dict[str, SyncState] = {}
        self._conflicts: dict[str, Conflict] = {}
        self._metadata: dict[str, str] = {}
        self.closed = False

    async def initialize(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    def _note_id_for_change(self, change_id: int) -> str | None:
        for note_id, change in self._queue.items():
            if change.id == change_id:
                return note_id
        return None

    async def get_queued_changes(self, limit: int | None = None) -> list[QueuedChange]:
        changes = sorted(self._queue.values(), key=lambda c: (c.queued_at, c.id))
        if limit is not None:
            changes = changes[:limit]
        return changes

    async def get_queued_change(self, note_id: str) -> QueuedChange | None:
        return self._queue.get(note_id)

    async def record_local_change(
        self,
        *,
        note_id: str,
        operation: ChangeOperation,
        version: int,
        payload: Note | None,
        state: SyncState,
    ) -> QueuedChange:
        change = QueuedChange(
            id=next(self._ids),
            note_id=note_id,
            operation=operation,
            version=version,
            payload=payload.model_copy(deep=True) if payload is not None else None,
            queued_at=now_ms(),
        )
        self._queue[note_id] = change
        self._states[note_id] = state
        return change

    async def remove_queued_change(self, change_id: int) -> None:
        note_id = self._note_id_for_change(change_id)
        if note_id is not None:
            del self._queue[note_id]

    async def acknowledge_change(
        self, change: QueuedChange, state: SyncState | None, *, server_version: int
    ) -> SyncState | None:
        queued = self._queue.get(change.note_id)
        if queued is not None and queued.id == change.id and queued.version == change.version:
            del self._queue[change.note_id]

        new_state = acknowledged_state(
            self._states.get(change.note_id), change, state, server_version=server_version
        )
        if new_state is None:
            self._states.pop(change.note_id, None)
        else:
            self._states[change.note_id] = new_state
        return new_state

    async def mark_change_attempted(self, change_id: int, error: str) -> None:
        note_id = self._note_id_for_change(change_id)
        if note_id is None:
            return
        change = self._queue[note_id]
        self._queue[note_id] = replace(
            change, attempts=change.attempts + 1, last_attempt_at=now_ms(), error=error
        )

    async def get_queue_size(self) -> int:
        return len(self._queue)

    async def get_sync_state(self, note_id: str) -> SyncState | None:
        return self._states.get(note_id)

    async def set_sync_state(self, note_id: str, state: SyncState) -> None:
        self._states[note_id] = state

    async def delete_sync_state(self, note_id: str) -> None:
        self._states.pop(note_id, None)

    async def get_last_sync_sequence(self) -> int:
        return int(self._metadata.get(METADATA_LAST_SYNC_SEQUENCE, "0"))

    async def set_last_sync_sequence(self, sequence: int) -> None:
        self._metadata[METADATA_LAST_SYNC_SEQUENCE] = str(int(sequence))

    async def store_conflict(self, conflict: Conflict) -> None:
        self._conflicts[conflict.note_id] = conflict

    async def get_conflict(self, note_id: str) -> Conflict | None:
        return self._conflicts.get(note_id)

    async def get_all_conflicts(self) -> list[Conflict]:
        return sorted(self._conflicts.values(), key=lambda c: c.detected_at)

    async def remove_conflict(self, note_id: str) -> None:
        self._conflicts.pop(note_id, None)

    async def get_conflict_count(self) -> int:
        return len(self._conflicts)

    async def get_metadata(self, key: str) -> str | None:
        return self._metadata.get(key)

    async def set_metadata(self, key: str, value: str) -> None:
        self._metadata[key] = value
