# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeQueueEntry(SQLModel, table=True):
    __tablename__ = "change_queue"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    # One pending change per note: replacing an entry is how changes coalesce.
    # AUTOINCREMENT: a replaced entry never gets its predecessor's id back.
    __table_args__ = (
        UniqueConstraint("note_id", name="uq_change_queue_note_id"),
        {"sqlite_autoincrement": True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    note_id: str = Field(index=True, min_length=1, max_length=128)
    operation: str = Field(max_length=16)
    version: int
    # Full note snapshot (camelCase JSON); NULL for deletes.
    payload: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(SAJSON, nullable=True))
    queued_at: int = Field(index=True)
    attempts: int = 0
    last_attempt_at: Optional[int] = None
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))


class NoteSyncState(SQLModel, table=True):
    __tablename__ = "note_sync_state"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    note_id: str = Field(primary_key=True, max_length=128)
    local_version: int
    server_version: Optional[int] = None
    content_hash: str = Field(default="", max_length=64)
    status: str = Field(default="pending", index=True, max_length=16)
    last_synced_at: Optional[int] = None
    updated_at: datetime = Field(default_factory=utc_now)


class SyncConflictRow(SQLModel, table=True):
    __tablename__ = "sync_conflicts"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    note_id: str = Field(primary_key=True, max_length=128)
    local_note: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(SAJSON, nullable=True))
    remote_note: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column(SAJSON, nullable=True)
    )
    local_version: int
    remote_version: int
    reason: str = Field(max_length=32)
    detected_at: int = Field(index=True)


class SyncMetadataEntry(SQLModel, table=True):
    __tablename__ = "sync_metadata"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    key: str = Field(primary_key=True, max_length=64)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(default_factory=utc_now)
