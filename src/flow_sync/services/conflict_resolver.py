from __future__ import annotations

import logging
import uuid

from flow_sync.domain.content_hash import compute_content_hash
from flow_sync.domain.sync_records import (
    RESOLUTION_TYPES,
    Conflict,
    ConflictReason,
    ResolutionType,
    ResolvedConflict,
)
from flow_sync.errors import ConflictNotFoundError
from flow_sync.schemas_notes import Note
from flow_sync.store.base import ChangeStore
from flow_sync.sync_utils import format_local_timestamp, now_ms

logger = logging.getLogger(__name__)

DEFAULT_AUTO_RESOLVE_THRESHOLD_MS = 5000


def _hash_or_empty(note: Note | None) -> str:
    # A missing note hashes like a tracked delete.
    return compute_content_hash(note) if note is not None else ""


def make_conflict_copy(note: Note, *, at_ms: int | None = None) -> Note:
    ts = now_ms() if at_ms is None else at_ms
    return note.model_copy(
        update={
            "id": str(uuid.uuid4()),
            "title": f"{note.title} (conflict copy {format_local_timestamp(ts)})",
            "created_at": ts,
            "updated_at": ts,
            "sync": None,
        },
        deep=True,
    )


class ConflictResolver:
    def __init__(
        self,
        store: ChangeStore,
        *,
        auto_resolve_threshold_ms: int = DEFAULT_AUTO_RESOLVE_THRESHOLD_MS,
    ) -> None:
        self._store = store
        self._auto_resolve_threshold_ms = auto_resolve_threshold_ms

    async def has_conflict(
        self,
        local_note: Note | None,
        remote_note: Note | None,
        local_version: int,
        remote_version: int,
        *,
        note_id: str | None = None,
    ) -> bool:
        """True when a remote change would clobber an unsynced local edit.

        All three must hold: the note has a pending local change, the remote
        version is newer than the last server version this device observed,
        and the two sides' content differs. `local_version` is informational.
        A missing note on either side (deleted) compares as empty content.
        """

        if note_id is None:
            ref = local_note or remote_note
            if ref is None:
                return False
            note_id = ref.id

        state = await self._store.get_sync_state(note_id)
        if state is None or state.status != "pending":
            return False

        last_seen = state.server_version if state.server_version is not None else 0
        if remote_version <= last_seen:
            return False

        if _hash_or_empty(local_note) == _hash_or_empty(remote_note):
            logger.debug(
                "concurrent edits converged note_id=%s local_version=%s remote_version=%s",
                note_id,
                local_version,
                remote_version,
            )
            return False
        return True

    async def detect_conflict(
        self,
        local_note: Note | None,
        remote_note: Note | None,
        local_version: int,
        remote_version: int,
        reason: ConflictReason,
        *,
        note_id: str | None = None,
    ) -> Conflict:
        resolved_id = note_id or (local_note.id if local_note else None)
        if resolved_id is None and remote_note is not None:
            resolved_id = remote_note.id
        if resolved_id is None:
            raise ValueError("detect_conflict needs a note id")

        conflict = Conflict(
            note_id=resolved_id,
            local_note=local_note,
            remote_note=remote_note,
            local_version=local_version,
            remote_version=remote_version,
            reason=reason,
            detected_at=now_ms(),
        )
        await self._store.store_conflict(conflict)
        logger.info(
            "conflict recorded note_id=%s reason=%s local_version=%s remote_version=%s",
            resolved_id,
            reason.value,
            local_version,
            remote_version,
        )
        return conflict

    async def get_conflict_count(self) -> int:
        return await self._store.get_conflict_count()

    async def get_pending_conflicts(self) -> list[Conflict]:
        return await self._store.get_all_conflicts()

    async def has_conflict_for_note(self, note_id: str) -> bool:
        return await self._store.get_conflict(note_id) is not None

    async def clear_conflict(self, note_id: str) -> None:
        await self._store.remove_conflict(note_id)

    async def resolve(self, note_id: str, resolution: ResolutionType) -> ResolvedConflict:
        """Pick the winning side of a recorded conflict and forget the conflict.

        Persisting the returned note(s) is left to the caller.
        """

        if resolution not in RESOLUTION_TYPES:
            raise ValueError(f"unknown resolution: {resolution}")

        conflict = await self._store.get_conflict(note_id)
        if conflict is None:
            raise ConflictNotFoundError(f"no conflict recorded for note {note_id}")

        if resolution == "keep_local":
            result = ResolvedConflict(
                note_id=note_id, resolution=resolution, note=conflict.local_note
            )
        elif resolution == "keep_remote":
            result = ResolvedConflict(
                note_id=note_id, resolution=resolution, note=conflict.remote_note
            )
        else:
            copy = make_conflict_copy(conflict.local_note) if conflict.local_note else None
            result = ResolvedConflict(
                note_id=note_id, resolution=resolution, note=conflict.remote_note, copy=copy
            )

        await self._store.remove_conflict(note_id)
        logger.info("conflict resolved note_id=%s resolution=%s", note_id, resolution)
        return result

    def try_auto_resolve(self, conflict: Conflict) -> ResolvedConflict | None:
        local, remote = conflict.local_note, conflict.remote_note
        if local is None or remote is None:
            return None
        if abs(local.updated_at - remote.updated_at) > self._auto_resolve_threshold_ms:
            return None
        if local.updated_at > remote.updated_at:
            return ResolvedConflict(note_id=conflict.note_id, resolution="keep_local", note=local)
        return ResolvedConflict(note_id=conflict.note_id, resolution="keep_remote", note=remote)
