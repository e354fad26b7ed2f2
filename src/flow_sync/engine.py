from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, Literal

from flow_sync.config import settings
from flow_sync.db_urls import sqlite_url_for_path
from flow_sync.domain.content_hash import compute_content_hash
from flow_sync.domain.sync_records import ChangeOperation, Conflict, ResolutionType, ResolvedConflict
from flow_sync.integrations.sync_transport import SyncTransport, SyncTransportAPI
from flow_sync.network_monitor import DisabledNetworkMonitor, NetworkMonitor
from flow_sync.schemas_notes import Note, SyncMetadata
from flow_sync.services.change_tracker import ChangeTracker
from flow_sync.services.conflict_resolver import ConflictResolver
from flow_sync.services.sync_coordinator import (
    NoteCallbacks,
    SyncCoordinator,
    SyncProgress,
    SyncResult,
)
from flow_sync.store.base import METADATA_DEVICE_ID, METADATA_LAST_SYNC_AT, ChangeStore
from flow_sync.store.sql import SqlChangeStore
from flow_sync.sync_config import SyncConfig
from flow_sync.sync_utils import now_ms

logger = logging.getLogger(__name__)

SYNC_DISABLED_ERROR = "Sync disabled"

EngineState = Literal["idle", "syncing", "offline", "error", "disabled"]


@dataclass(frozen=True)
class SyncEngineStatus:
    state: EngineState
    pending_changes: int
    conflict_count: int
    last_sync_at: int | None = None
    error: str | None = None
    next_sync_at: int | None = None


# May be sync or async.
StatusListener = Callable[[SyncEngineStatus], object]


def default_store_path(vault_path: str | Path) -> Path:
    return Path(vault_path) / "derived" / "sync.sqlite3"


class SyncEngine:
    """Public entry point: wires store, tracker, transport and coordinator.

    Polling and debounced syncs run as asyncio tasks owned by the engine;
    `shutdown()` cancels them.
    """

    def __init__(
        self,
        *,
        config: SyncConfig,
        api_key: str,
        callbacks: NoteCallbacks,
        vault_path: str | Path | None = None,
        store: ChangeStore | None = None,
        transport: SyncTransportAPI | None = None,
        network: NetworkMonitor | None = None,
        debounce_seconds: float | None = None,
    ) -> None:
        self._config = config
        self._callbacks = callbacks

        if store is None:
            database_url = (
                sqlite_url_for_path(default_store_path(vault_path)) if vault_path else None
            )
            store = SqlChangeStore(database_url)
        self._store = store

        self._transport = transport or SyncTransport(
            server_url=config.server_url,
            api_key=api_key,
            timeout_seconds=settings.request_timeout_seconds,
            retry=settings.retry_config(),
        )
        self._network: NetworkMonitor = network or DisabledNetworkMonitor()
        self._debounce_seconds = (
            settings.sync_debounce_seconds if debounce_seconds is None else debounce_seconds
        )

        self._tracker = ChangeTracker(self._store)
        self._resolver = ConflictResolver(
            self._store, auto_resolve_threshold_ms=settings.conflict_auto_resolve_threshold_ms
        )
        self._device_id = config.device_id
        self._coordinator = self._build_coordinator()

        self._listeners: list[StatusListener] = []
        self._unsubscribe_network: Callable[[], None] | None = None
        self._poll_task: asyncio.Task[Any] | None = None
        self._debounce_task: asyncio.Task[Any] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._next_sync_at: int | None = None
        self._last_errors: list[str] = []
        self._initialized = False

    def _build_coordinator(self) -> SyncCoordinator:
        return SyncCoordinator(
            store=self._store,
            transport=self._transport,
            device_id=self._device_id,
            callbacks=self._callbacks,
            resolver=self._resolver,
            tracker=self._tracker,
            network=self._network,
            pull_limit=settings.sync_pull_limit,
            on_progress=self._on_progress,
        )

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._coordinator

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return

        await self._store.initialize()

        stored_device_id = await self._store.get_metadata(METADATA_DEVICE_ID)
        if stored_device_id is None:
            await self._store.set_metadata(METADATA_DEVICE_ID, self._config.device_id)
        elif stored_device_id != self._device_id:
            # The store outlives sync.json edits; its device id wins.
            self._device_id = stored_device_id
            self._coordinator = self._build_coordinator()

        self._unsubscribe_network = self._network.on_status_change(self._on_network_change)
        if self._network.is_online():
            self._start_polling()

        self._initialized = True
        logger.info(
            "sync engine initialized device_id=%s enabled=%s online=%s",
            self._device_id,
            self._config.enabled,
            self._network.is_online(),
        )

    async def shutdown(self) -> None:
        await self._stop_polling()
        await self._cancel(self._debounce_task)
        self._debounce_task = None
        for task in list(self._background):
            await self._cancel(task)

        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        self._listeners.clear()

        await self._store.close()
        self._initialized = False
        logger.info("sync engine shut down device_id=%s", self._device_id)

    def get_device_id(self) -> str:
        return self._device_id

    def add_sync_metadata(self, note: Note) -> Note:
        previous = note.sync
        sync = SyncMetadata(
            version=(previous.version if previous else 0) + 1,
            content_hash=compute_content_hash(note),
            server_version=previous.server_version if previous else None,
            synced_at=previous.synced_at if previous else None,
            device_id=self._device_id,
        )
        return note.model_copy(update={"sync": sync})

    async def queue_change(self, note: Note, operation: ChangeOperation = "update") -> None:
        await self._tracker.track_change(note, operation)
        await self._notify_status()
        self._schedule_debounced_sync()

    async def queue_delete(self, note_id: str) -> None:
        await self._tracker.track_delete(note_id)
        await self._notify_status()
        self._schedule_debounced_sync()

    async def trigger_sync(self) -> SyncResult:
        if not self._config.enabled:
            return SyncResult(errors=[SYNC_DISABLED_ERROR])

        await self._notify_status()
        result = await self._coordinator.run_sync_cycle()
        self._last_errors = list(result.errors)

        if result.pushed > 0 or result.pulled > 0:
            await self._store.set_metadata(METADATA_LAST_SYNC_AT, str(now_ms()))

        await self._notify_status()
        return result

    async def get_conflicts(self) -> list[Conflict]:
        return await self._resolver.get_pending_conflicts()

    async def resolve_conflict(self, note_id: str, resolution: ResolutionType) -> ResolvedConflict:
        result = await self._resolver.resolve(note_id, resolution)
        await self._notify_status()
        return result

    async def get_status(self) -> SyncEngineStatus:
        conflict_count = await self._resolver.get_conflict_count()

        state: EngineState
        if not self._config.enabled:
            state = "disabled"
        elif not self._network.is_online():
            state = "offline"
        elif self._coordinator.in_progress:
            state = "syncing"
        elif conflict_count > 0:
            # Conflicts need the user's attention.
            state = "error"
        else:
            state = "idle"

        last_sync_at = await self._store.get_metadata(METADATA_LAST_SYNC_AT)
        return SyncEngineStatus(
            state=state,
            pending_changes=await self._store.get_queue_size(),
            conflict_count=conflict_count,
            last_sync_at=int(last_sync_at) if last_sync_at else None,
            error="; ".join(self._last_errors) if self._last_errors else None,
            next_sync_at=self._next_sync_at if self._poll_task is not None else None,
        )

    async def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)
        await self._call_listener(listener, await self.get_status())

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _call_listener(self, listener: StatusListener, status: SyncEngineStatus) -> None:
        try:
            result = listener(status)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("status listener failed state=%s", status.state, exc_info=True)

    async def _notify_status(self) -> None:
        if not self._listeners:
            return
        status = await self.get_status()
        for listener in list(self._listeners):
            await self._call_listener(listener, status)

    async def _on_progress(self, progress: SyncProgress) -> None:
        logger.debug(
            "sync progress phase=%s processed=%s/%s conflicts=%s",
            progress.phase.value,
            progress.processed_items,
            progress.total_items,
            progress.conflicts,
        )
        await self._notify_status()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("no running event loop; background sync not scheduled")
            coro.close()
            return None
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_network_change(self, online: bool) -> None:
        logger.info("network status changed online=%s", online)
        if online:
            self._spawn(self._sync_in_background())
            self._start_polling()
        else:
            self._spawn(self._stop_polling())
        self._spawn(self._notify_status())

    async def _sync_in_background(self) -> None:
        try:
            await self.trigger_sync()
        except Exception:
            logger.warning("background sync failed device_id=%s", self._device_id, exc_info=True)

    def _schedule_debounced_sync(self) -> None:
        if not self._config.enabled or not self._network.is_online():
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = self._spawn(self._debounced_sync())

    async def _debounced_sync(self) -> None:
        await asyncio.sleep(self._debounce_seconds)
        # Run the cycle outside this task so a newer debounce cannot cancel it.
        self._spawn(self._sync_in_background())

    def _start_polling(self) -> None:
        if not self._config.enabled:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._next_sync_at = now_ms() + self._config.sync_interval_ms
        self._poll_task = self._spawn(self._poll_loop())

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        self._next_sync_at = None
        await self._cancel(task)

    async def _poll_loop(self) -> None:
        interval_ms = self._config.sync_interval_ms
        while True:
            self._next_sync_at = now_ms() + interval_ms
            await asyncio.sleep(interval_ms / 1000)
            await self._sync_in_background()

    @staticmethod
    async def _cancel(task: asyncio.Task[Any] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def create_sync_engine(
    *,
    config: SyncConfig,
    api_key: str,
    callbacks: NoteCallbacks,
    vault_path: str | Path | None = None,
    store: ChangeStore | None = None,
    transport: SyncTransportAPI | None = None,
    network: NetworkMonitor | None = None,
) -> SyncEngine:
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    for msg in settings.security_warnings():
        logger.warning("SECURITY WARNING: %s", msg)

    engine = SyncEngine(
        config=config,
        api_key=api_key,
        callbacks=callbacks,
        vault_path=vault_path,
        store=store,
        transport=transport,
        network=network,
    )
    await engine.initialize()
    return engine
