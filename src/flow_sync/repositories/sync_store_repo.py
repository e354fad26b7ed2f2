from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import func
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models import ChangeQueueEntry, NoteSyncState, SyncConflictRow, SyncMetadataEntry


async def list_queue_entries(
    session: AsyncSession, limit: int | None = None
) -> list[ChangeQueueEntry]:
    stmt = select(ChangeQueueEntry).order_by(
        col(ChangeQueueEntry.queued_at), col(ChangeQueueEntry.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.exec(stmt)
    return list(result.all())


async def get_queue_entry_by_note(session: AsyncSession, note_id: str) -> ChangeQueueEntry | None:
    result = await session.exec(select(ChangeQueueEntry).where(ChangeQueueEntry.note_id == note_id))
    return result.first()


async def get_queue_entry(session: AsyncSession, change_id: int) -> ChangeQueueEntry | None:
    return await session.get(ChangeQueueEntry, change_id)


async def delete_queue_entry_at_version(
    session: AsyncSession, change_id: int, version: int
) -> None:
    # Opens the write transaction, so reads that follow see the latest commits.
    await session.exec(
        sa.delete(ChangeQueueEntry).where(
            col(ChangeQueueEntry.id) == change_id, col(ChangeQueueEntry.version) == version
        )
    )


async def count_queue_entries(session: AsyncSession) -> int:
    result = await session.exec(select(func.count()).select_from(ChangeQueueEntry))
    return int(result.one())


async def get_note_sync_state(session: AsyncSession, note_id: str) -> NoteSyncState | None:
    return await session.get(NoteSyncState, note_id)


async def get_conflict_row(session: AsyncSession, note_id: str) -> SyncConflictRow | None:
    return await session.get(SyncConflictRow, note_id)


async def list_conflict_rows(session: AsyncSession) -> list[SyncConflictRow]:
    result = await session.exec(
        select(SyncConflictRow).order_by(col(SyncConflictRow.detected_at))
    )
    return list(result.all())


async def count_conflict_rows(session: AsyncSession) -> int:
    result = await session.exec(select(func.count()).select_from(SyncConflictRow))
    return int(result.one())


async def get_metadata_entry(session: AsyncSession, key: str) -> SyncMetadataEntry | None:
    return await session.get(SyncMetadataEntry, key)
