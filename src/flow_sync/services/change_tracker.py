from __future__ import annotations

import logging
from dataclasses import replace

from flow_sync.domain.content_hash import compute_content_hash
from flow_sync.domain.sync_records import ChangeOperation, QueuedChange, SyncState
from flow_sync.schemas_notes import Note
from flow_sync.store.base import ChangeStore
from flow_sync.sync_utils import now_ms

logger = logging.getLogger(__name__)


class ChangeTracker:
    """Records local note mutations into the change store.

    The queue holds at most one entry per note; `local_version` only moves
    when the note's content actually changed (or it was deleted).
    """

    def __init__(self, store: ChangeStore) -> None:
        self._store = store

    async def track_change(self, note: Note, operation: ChangeOperation) -> QueuedChange | None:
        if operation == "delete":
            return await self.track_delete(note.id)

        new_hash = compute_content_hash(note)
        current = await self._store.get_sync_state(note.id)

        if operation == "update" and current is not None and current.content_hash == new_hash:
            logger.debug("skip redundant update note_id=%s hash=%s", note.id, new_hash)
            return None

        return await self._record(note.id, operation, note, new_hash, current)

    async def track_delete(self, note_id: str) -> QueuedChange:
        current = await self._store.get_sync_state(note_id)
        return await self._record(note_id, "delete", None, "", current)

    async def _record(
        self,
        note_id: str,
        operation: ChangeOperation,
        payload: Note | None,
        content_hash: str,
        current: SyncState | None,
    ) -> QueuedChange:
        local_version = (current.local_version if current is not None else 0) + 1
        state = SyncState(
            local_version=local_version,
            server_version=current.server_version if current is not None else None,
            content_hash=content_hash,
            status="pending",
            last_synced_at=current.last_synced_at if current is not None else None,
        )
        change = await self._store.record_local_change(
            note_id=note_id,
            operation=operation,
            version=local_version,
            payload=payload,
            state=state,
        )
        logger.debug(
            "tracked change note_id=%s op=%s version=%s", note_id, operation, local_version
        )
        return change

    async def has_pending_changes(self) -> bool:
        return await self._store.get_queue_size() > 0

    async def get_pending_change_count(self) -> int:
        return await self._store.get_queue_size()

    async def mark_synced(
        self, note_id: str, server_version: int, *, acknowledged_version: int | None = None
    ) -> SyncState | None:
        """Record a server acknowledgment for `note_id`.

        With `acknowledged_version`, a note edited again after that version
        was sent keeps `status="pending"` so the newer edit is still pushed.
        """

        current = await self._store.get_sync_state(note_id)
        if current is None:
            return None
        state = self.synced_state(current, server_version, acknowledged_version)
        await self._store.set_sync_state(note_id, state)
        return state

    @staticmethod
    def synced_state(
        current: SyncState, server_version: int, acknowledged_version: int | None = None
    ) -> SyncState:
        superseded = (
            acknowledged_version is not None and current.local_version > acknowledged_version
        )
        return replace(
            current,
            server_version=server_version,
            status="pending" if superseded else "synced",
            last_synced_at=now_ms(),
        )
