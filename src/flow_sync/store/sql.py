from __future__ import annotations

import logging
from typing import Any, cast

from flow_sync.db import get_engine, init_db, session_scope
from flow_sync.domain.sync_records import (
    ChangeOperation,
    Conflict,
    ConflictReason,
    QueuedChange,
    SyncState,
    SyncStatus,
)
from flow_sync.models import (
    ChangeQueueEntry,
    NoteSyncState,
    SyncConflictRow,
    SyncMetadataEntry,
    utc_now,
)
from flow_sync.repositories import sync_store_repo
from flow_sync.schemas_notes import Note
from flow_sync.store.base import METADATA_LAST_SYNC_SEQUENCE, acknowledged_state
from flow_sync.sync_utils import now_ms

logger = logging.getLogger(__name__)


def _note_to_json(note: Note | None) -> dict[str, Any] | None:
    return note.to_wire() if note is not None else None


def _note_from_json(data: dict[str, Any] | None) -> Note | None:
    return Note.model_validate(data) if data is not None else None


def _to_queued_change(row: ChangeQueueEntry) -> QueuedChange:
    assert row.id is not None
    return QueuedChange(
        id=int(row.id),
        note_id=row.note_id,
        operation=cast(ChangeOperation, row.operation),
        version=row.version,
        payload=_note_from_json(row.payload),
        queued_at=row.queued_at,
        attempts=row.attempts,
        last_attempt_at=row.last_attempt_at,
        error=row.error,
    )


def _to_sync_state(row: NoteSyncState) -> SyncState:
    return SyncState(
        local_version=row.local_version,
        server_version=row.server_version,
        content_hash=row.content_hash,
        status=cast(SyncStatus, row.status),
        last_synced_at=row.last_synced_at,
    )


def _apply_sync_state(row: NoteSyncState, state: SyncState) -> None:
    row.local_version = state.local_version
    row.server_version = state.server_version
    row.content_hash = state.content_hash
    row.status = state.status
    row.last_synced_at = state.last_synced_at
    row.updated_at = utc_now()


def _to_conflict(row: SyncConflictRow) -> Conflict:
    return Conflict(
        note_id=row.note_id,
        local_note=_note_from_json(row.local_note),
        remote_note=_note_from_json(row.remote_note),
        local_version=row.local_version,
        remote_version=row.remote_version,
        reason=ConflictReason(row.reason),
        detected_at=row.detected_at,
    )


class SqlChangeStore:
    """ChangeStore backed by SQLModel tables (SQLite via aiosqlite by default)."""

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url

    async def initialize(self) -> None:
        await init_db(self._database_url)

    async def close(self) -> None:
        await get_engine(self._database_url).dispose()

    async def get_queued_changes(self, limit: int | None = None) -> list[QueuedChange]:
        async with session_scope(self._database_url) as session:
            rows = await sync_store_repo.list_queue_entries(session, limit)
            return [_to_queued_change(r) for r in rows]

    async def get_queued_change(self, note_id: str) -> QueuedChange | None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_queue_entry_by_note(session, note_id)
            return _to_queued_change(row) if row is not None else None

    async def record_local_change(
        self,
        *,
        note_id: str,
        operation: ChangeOperation,
        version: int,
        payload: Note | None,
        state: SyncState,
    ) -> QueuedChange:
        async with session_scope(self._database_url) as session:
            existing = await sync_store_repo.get_queue_entry_by_note(session, note_id)
            if existing is not None:
                await session.delete(existing)
                # Free the unique note_id before inserting the replacement.
                await session.flush()

            row = ChangeQueueEntry(
                note_id=note_id,
                operation=operation,
                version=version,
                payload=_note_to_json(payload),
                queued_at=now_ms(),
            )
            session.add(row)

            state_row = await sync_store_repo.get_note_sync_state(session, note_id)
            if state_row is None:
                state_row = NoteSyncState(note_id=note_id, local_version=state.local_version)
            _apply_sync_state(state_row, state)
            session.add(state_row)

            await session.commit()
            await session.refresh(row)
            return _to_queued_change(row)

    async def remove_queued_change(self, change_id: int) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_queue_entry(session, change_id)
            if row is None:
                return
            await session.delete(row)
            await session.commit()

    async def acknowledge_change(
        self, change: QueuedChange, state: SyncState | None, *, server_version: int
    ) -> SyncState | None:
        async with session_scope(self._database_url) as session:
            await sync_store_repo.delete_queue_entry_at_version(session, change.id, change.version)

            state_row = await sync_store_repo.get_note_sync_state(session, change.note_id)
            stored = _to_sync_state(state_row) if state_row is not None else None
            new_state = acknowledged_state(stored, change, state, server_version=server_version)
            if new_state is None:
                if state_row is not None:
                    await session.delete(state_row)
            else:
                if state_row is None:
                    state_row = NoteSyncState(
                        note_id=change.note_id, local_version=new_state.local_version
                    )
                _apply_sync_state(state_row, new_state)
                session.add(state_row)
            await session.commit()
            return new_state

    async def mark_change_attempted(self, change_id: int, error: str) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_queue_entry(session, change_id)
            if row is None:
                logger.debug("mark_change_attempted: change_id=%s already gone", change_id)
                return
            row.attempts += 1
            row.last_attempt_at = now_ms()
            row.error = error
            session.add(row)
            await session.commit()

    async def get_queue_size(self) -> int:
        async with session_scope(self._database_url) as session:
            return await sync_store_repo.count_queue_entries(session)

    async def get_sync_state(self, note_id: str) -> SyncState | None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_note_sync_state(session, note_id)
            return _to_sync_state(row) if row is not None else None

    async def set_sync_state(self, note_id: str, state: SyncState) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_note_sync_state(session, note_id)
            if row is None:
                row = NoteSyncState(note_id=note_id, local_version=state.local_version)
            _apply_sync_state(row, state)
            session.add(row)
            await session.commit()

    async def delete_sync_state(self, note_id: str) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_note_sync_state(session, note_id)
            if row is None:
                return
            await session.delete(row)
            await session.commit()

    async def get_last_sync_sequence(self) -> int:
        value = await self.get_metadata(METADATA_LAST_SYNC_SEQUENCE)
        return int(value) if value else 0

    async def set_last_sync_sequence(self, sequence: int) -> None:
        await self.set_metadata(METADATA_LAST_SYNC_SEQUENCE, str(int(sequence)))

    async def store_conflict(self, conflict: Conflict) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_conflict_row(session, conflict.note_id)
            if row is None:
                row = SyncConflictRow(
                    note_id=conflict.note_id,
                    local_version=conflict.local_version,
                    remote_version=conflict.remote_version,
                    reason=conflict.reason.value,
                    detected_at=conflict.detected_at,
                )
            row.local_note = _note_to_json(conflict.local_note)
            row.remote_note = _note_to_json(conflict.remote_note)
            row.local_version = conflict.local_version
            row.remote_version = conflict.remote_version
            row.reason = conflict.reason.value
            row.detected_at = conflict.detected_at
            session.add(row)
            await session.commit()

    async def get_conflict(self, note_id: str) -> Conflict | None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_conflict_row(session, note_id)
            return _to_conflict(row) if row is not None else None

    async def get_all_conflicts(self) -> list[Conflict]:
        async with session_scope(self._database_url) as session:
            rows = await sync_store_repo.list_conflict_rows(session)
            return [_to_conflict(r) for r in rows]

    async def remove_conflict(self, note_id: str) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_conflict_row(session, note_id)
            if row is None:
                return
            await session.delete(row)
            await session.commit()

    async def get_conflict_count(self) -> int:
        async with session_scope(self._database_url) as session:
            return await sync_store_repo.count_conflict_rows(session)

    async def get_metadata(self, key: str) -> str | None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_metadata_entry(session, key)
            return row.value if row is not None else None

    async def set_metadata(self, key: str, value: str) -> None:
        async with session_scope(self._database_url) as session:
            row = await sync_store_repo.get_metadata_entry(session, key)
            if row is None:
                row = SyncMetadataEntry(key=key, value=value)
            else:
                row.value = value
                row.updated_at = utc_now()
            session.add(row)
            await session.commit()
