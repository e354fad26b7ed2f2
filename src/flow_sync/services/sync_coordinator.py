from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from flow_sync.domain.content_hash import compute_content_hash
from flow_sync.domain.sync_records import ConflictReason, QueuedChange, SyncState
from flow_sync.errors import SyncError
from flow_sync.integrations.sync_transport import SyncTransportAPI
from flow_sync.network_monitor import NetworkMonitor
from flow_sync.schemas_notes import Note
from flow_sync.schemas_sync import PullRequest, PushChange, PushRequest, RemoteChange
from flow_sync.services.change_tracker import ChangeTracker
from flow_sync.services.conflict_resolver import ConflictResolver
from flow_sync.store.base import ChangeStore
from flow_sync.sync_utils import now_ms

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS_ERROR = "Sync already in progress"
OFFLINE_ERROR = "Offline"


class SyncPhase(str, Enum):
    IDLE = "idle"
    GATHERING = "gathering"
    PUSHING = "pushing"
    PULLING = "pulling"
    APPLYING = "applying"
    RESOLVING = "resolving"


@dataclass(frozen=True)
class SyncProgress:
    phase: SyncPhase
    total_items: int
    processed_items: int
    conflicts: int


@dataclass(frozen=True)
class SyncResult:
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PhaseResult:
    count: int
    errors: list[str]


@dataclass(frozen=True)
class CoordinatorStatus:
    phase: SyncPhase
    in_progress: bool


@dataclass(frozen=True)
class NoteCallbacks:
    """Hooks into the host application's document store."""

    on_save_note: Callable[[Note], Awaitable[None]]
    on_delete_note: Callable[[str], Awaitable[None]]
    on_read_note: Callable[[str], Awaitable[Note | None]]


# May be sync or async.
ProgressCallback = Callable[[SyncProgress], object]


class SyncCoordinator:
    def __init__(
        self,
        *,
        store: ChangeStore,
        transport: SyncTransportAPI,
        device_id: str,
        callbacks: NoteCallbacks,
        resolver: ConflictResolver | None = None,
        tracker: ChangeTracker | None = None,
        network: NetworkMonitor | None = None,
        pull_limit: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._device_id = device_id
        self._callbacks = callbacks
        self._resolver = resolver or ConflictResolver(store)
        self._tracker = tracker or ChangeTracker(store)
        self._network = network
        self._pull_limit = pull_limit
        self._on_progress = on_progress

        self._in_progress = False
        self._phase = SyncPhase.IDLE
        self._total_items = 0
        self._processed_items = 0

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def tracker(self) -> ChangeTracker:
        return self._tracker

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def get_status(self) -> CoordinatorStatus:
        return CoordinatorStatus(phase=self._phase, in_progress=self._in_progress)

    async def _emit(self, phase: SyncPhase, total: int = 0, processed: int = 0) -> None:
        self._phase = phase
        self._total_items = total
        self._processed_items = processed
        if self._on_progress is None:
            return
        progress = SyncProgress(
            phase=phase,
            total_items=total,
            processed_items=processed,
            conflicts=await self._resolver.get_conflict_count(),
        )
        try:
            result = self._on_progress(progress)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("progress callback failed phase=%s", phase.value, exc_info=True)

    async def _enter_resolving(self) -> None:
        phase, total, processed = self._phase, self._total_items, self._processed_items
        await self._emit(SyncPhase.RESOLVING, total, processed)
        await self._emit(phase, total, processed)

    async def run_sync_cycle(self) -> SyncResult:
        if self._in_progress:
            return SyncResult(errors=[SYNC_IN_PROGRESS_ERROR])
        if self._network is not None and not self._network.is_online():
            return SyncResult(errors=[OFFLINE_ERROR])

        self._in_progress = True
        pushed = pulled = 0
        errors: list[str] = []
        try:
            push = await self.push_changes()
            pushed = push.count
            errors.extend(push.errors)

            pull = await self.pull_changes()
            pulled = pull.count
            errors.extend(pull.errors)
        except Exception as e:
            logger.exception("sync cycle failed device_id=%s", self._device_id)
            errors.append(f"Sync failed: {e}")
        finally:
            self._in_progress = False
            await self._emit(SyncPhase.IDLE)

        conflicts = await self._resolver.get_conflict_count()
        logger.info(
            "sync cycle done pushed=%s pulled=%s conflicts=%s errors=%s",
            pushed,
            pulled,
            conflicts,
            len(errors),
        )
        return SyncResult(pushed=pushed, pulled=pulled, conflicts=conflicts, errors=errors)

    async def _build_push_change(self, change: QueuedChange) -> PushChange:
        state = await self._store.get_sync_state(change.note_id)
        base_version = state.server_version if state is not None else None
        if change.operation == "delete" or change.payload is None:
            return PushChange(
                note_id=change.note_id,
                operation=change.operation,
                version=change.version,
                base_version=base_version,
            )
        return PushChange(
            note_id=change.note_id,
            operation=change.operation,
            version=change.version,
            base_version=base_version,
            content_hash=compute_content_hash(change.payload),
            payload=change.payload,
        )

    async def _acknowledge(self, change: QueuedChange, server_version: int) -> None:
        state: SyncState | None = None
        if change.operation != "delete":
            current = await self._store.get_sync_state(change.note_id)
            if current is not None:
                state = ChangeTracker.synced_state(current, server_version)
        # The store keeps the note pending if it was edited after `change`.
        await self._store.acknowledge_change(change, state, server_version=server_version)

    async def push_changes(self) -> PhaseResult:
        await self._emit(SyncPhase.GATHERING)
        changes = await self._store.get_queued_changes()
        if not changes:
            return PhaseResult(count=0, errors=[])

        request = PushRequest(
            device_id=self._device_id,
            changes=[await self._build_push_change(c) for c in changes],
        )
        await self._emit(SyncPhase.PUSHING, total=len(changes))

        try:
            response = await self._transport.push(request)
        except SyncError as e:
            logger.warning("push failed code=%s queued=%s", e.code.value, len(changes))
            return PhaseResult(count=0, errors=[f"Push failed: {e}"])

        by_note = {c.note_id: c for c in changes}
        errors: list[str] = []
        pushed = 0

        for accepted in response.accepted:
            change = by_note.get(accepted.note_id)
            if change is None:
                logger.warning("push accepted unknown note_id=%s", accepted.note_id)
                continue
            await self._acknowledge(change, accepted.server_version)
            pushed += 1
            self._processed_items += 1

        for conflict in response.conflicts:
            change = by_note.get(conflict.note_id)
            local = await self._callbacks.on_read_note(conflict.note_id)
            local_version = change.version if change is not None else 0
            await self._resolver.detect_conflict(
                local,
                conflict.server_note,
                local_version,
                conflict.server_version,
                ConflictReason.EDIT if local is not None else ConflictReason.EDIT_DELETE,
                note_id=conflict.note_id,
            )
            errors.append(f"Conflict detected for note {conflict.note_id}")
            self._processed_items += 1
            await self._enter_resolving()

        for item in response.errors:
            errors.append(f"Error syncing {item.note_id}: {item.error}")
            change = by_note.get(item.note_id)
            if item.retryable and change is not None:
                await self._store.mark_change_attempted(change.id, item.error)
            self._processed_items += 1

        return PhaseResult(count=pushed, errors=errors)

    async def _apply_remote_change(self, change: RemoteChange, errors: list[str]) -> bool:
        state = await self._store.get_sync_state(change.note_id)
        remote = change.note if change.operation != "delete" else None

        if state is not None and state.status == "pending":
            local = await self._callbacks.on_read_note(change.note_id)
            if await self._resolver.has_conflict(
                local, remote, state.local_version, change.version, note_id=change.note_id
            ):
                if change.operation == "delete":
                    reason = ConflictReason.DELETE_EDIT
                elif local is None:
                    reason = ConflictReason.EDIT_DELETE
                else:
                    reason = ConflictReason.EDIT
                await self._resolver.detect_conflict(
                    local,
                    remote,
                    state.local_version,
                    change.version,
                    reason,
                    note_id=change.note_id,
                )
                errors.append(f"Conflict detected for note {change.note_id}")
                await self._enter_resolving()
                return False

            last_seen = state.server_version if state.server_version is not None else 0
            if change.version <= last_seen:
                # Already observed; the pending local edit supersedes it.
                logger.debug(
                    "skip stale remote change note_id=%s version=%s", change.note_id, change.version
                )
                return False

        # Pending here means both sides converged on the same content; the
        # queued change has nothing left to push.
        queued = None
        if state is not None and state.status == "pending":
            queued = await self._store.get_queued_change(change.note_id)

        if change.operation == "delete":
            await self._callbacks.on_delete_note(change.note_id)
            if queued is not None:
                await self._store.acknowledge_change(
                    queued, None, server_version=change.version
                )
            else:
                await self._store.delete_sync_state(change.note_id)
            return True

        if change.note is None:
            raise ValueError(f"remote {change.operation} has no note body")

        await self._callbacks.on_save_note(change.note)
        local_version = change.version
        if state is not None:
            local_version = max(state.local_version, change.version)
        new_state = SyncState(
            local_version=local_version,
            server_version=change.version,
            content_hash=compute_content_hash(change.note),
            status="synced",
            last_synced_at=now_ms(),
        )
        if queued is not None:
            await self._store.acknowledge_change(queued, new_state, server_version=change.version)
        else:
            await self._store.set_sync_state(change.note_id, new_state)
        return True

    async def pull_changes(self) -> PhaseResult:
        """Pull remote changes page by page until the server has no more.

        `latest_sequence` is the server-wide head, so it only becomes the
        cursor once the last page is in. Intermediate pages advance the
        cursor to the highest `server_sequence` they carried.
        """

        await self._emit(SyncPhase.PULLING)
        cursor = await self._store.get_last_sync_sequence()
        errors: list[str] = []
        pulled = 0

        while True:
            try:
                response = await self._transport.pull(
                    PullRequest(
                        device_id=self._device_id, since_sequence=cursor, limit=self._pull_limit
                    )
                )
            except SyncError as e:
                logger.warning("pull failed code=%s cursor=%s", e.code.value, cursor)
                errors.append(f"Pull failed: {e}")
                break

            await self._emit(SyncPhase.APPLYING, total=len(response.changes))
            for change in response.changes:
                try:
                    if await self._apply_remote_change(change, errors):
                        pulled += 1
                except Exception as e:
                    logger.warning(
                        "failed to apply remote change note_id=%s op=%s",
                        change.note_id,
                        change.operation,
                        exc_info=True,
                    )
                    errors.append(f"Failed to apply change for {change.note_id}: {e}")
                self._processed_items += 1

            if response.has_more:
                next_cursor = max(
                    (c.server_sequence for c in response.changes if c.server_sequence is not None),
                    default=cursor,
                )
            else:
                next_cursor = response.latest_sequence

            advanced = next_cursor > cursor
            if advanced:
                await self._store.set_last_sync_sequence(next_cursor)
                cursor = next_cursor
            if not response.has_more:
                break
            if not advanced:
                logger.warning("pull page made no progress cursor=%s", cursor)
                break
            await self._emit(SyncPhase.PULLING)

        return PhaseResult(count=pulled, errors=errors)
