from __future__ import annotations

from pathlib import Path

import pytest

from flow_sync.db_urls import sqlite_url_for_path
from flow_sync.domain.sync_records import Conflict, ConflictReason, SyncState
from flow_sync.services.change_tracker import ChangeTracker
from flow_sync.store.base import METADATA_DEVICE_ID
from flow_sync.store.sql import SqlChangeStore
from sync_fakes import make_note


async def _store(tmp_path: Path, name: str = "sync.sqlite3") -> SqlChangeStore:
    # Per-test sqlite DB in a not-yet-existing directory.
    store = SqlChangeStore(sqlite_url_for_path(tmp_path / "derived" / name))
    await store.initialize()
    return store


@pytest.mark.anyio
async def test_record_local_change_replaces_entry_and_upserts_state(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    tracker = ChangeTracker(store)

    first = await tracker.track_change(make_note("a", body="v1", pinned=True), "create")
    second = await tracker.track_change(make_note("a", body="v2"), "update")

    assert first is not None and second is not None
    assert second.id != first.id
    assert await store.get_queue_size() == 1
    queued = await store.get_queued_changes()
    assert [(c.note_id, c.operation, c.version) for c in queued] == [("a", "update", 2)]
    assert queued[0].payload == make_note("a", body="v2")

    state = await store.get_sync_state("a")
    assert state is not None
    assert state.local_version == 2
    assert state.status == "pending"
    assert (tmp_path / "derived" / "sync.sqlite3").exists()


@pytest.mark.anyio
async def test_payload_round_trip_keeps_extra_fields(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await ChangeTracker(store).track_change(make_note("a", pinned=True), "create")

    queued = await store.get_queued_change("a")

    assert queued is not None and queued.payload is not None
    assert queued.payload.model_extra == {"pinned": True}


@pytest.mark.anyio
async def test_acknowledge_and_attempts(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    tracker = ChangeTracker(store)
    change = await tracker.track_change(make_note("a"), "create")
    doomed = await tracker.track_delete("b")
    assert change is not None

    await store.mark_change_attempted(doomed.id, "timeout")
    await store.mark_change_attempted(doomed.id, "timeout again")
    retried = await store.get_queued_change("b")
    assert retried is not None
    assert retried.attempts == 2
    assert retried.error == "timeout again"
    assert retried.last_attempt_at is not None

    synced = SyncState(local_version=1, server_version=1, content_hash="h", status="synced")
    assert await store.acknowledge_change(change, synced, server_version=1) == synced
    assert await store.acknowledge_change(doomed, None, server_version=4) is None

    assert await store.get_queue_size() == 0
    assert await store.get_sync_state("a") == synced
    assert await store.get_sync_state("b") is None

    # Unknown ids are ignored.
    await store.remove_queued_change(999)
    await store.mark_change_attempted(999, "x")


@pytest.mark.anyio
async def test_sync_state_and_cursor(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    assert await store.get_last_sync_sequence() == 0

    await store.set_last_sync_sequence(41)
    assert await store.get_last_sync_sequence() == 41

    state = SyncState(
        local_version=3, server_version=None, content_hash="", status="pending", last_synced_at=5
    )
    await store.set_sync_state("n", state)
    assert await store.get_sync_state("n") == state
    await store.delete_sync_state("n")
    assert await store.get_sync_state("n") is None
    await store.delete_sync_state("n")


@pytest.mark.anyio
async def test_conflicts_upsert_per_note(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    conflict = Conflict(
        note_id="b",
        local_note=make_note("b", body="local"),
        remote_note=None,
        local_version=2,
        remote_version=3,
        reason=ConflictReason.DELETE_EDIT,
        detected_at=100,
    )
    await store.store_conflict(conflict)
    await store.store_conflict(
        Conflict(
            note_id="b",
            local_note=make_note("b", body="local"),
            remote_note=make_note("b", body="remote"),
            local_version=2,
            remote_version=4,
            reason=ConflictReason.EDIT,
            detected_at=200,
        )
    )

    assert await store.get_conflict_count() == 1
    stored = await store.get_conflict("b")
    assert stored is not None
    assert stored.reason == ConflictReason.EDIT
    assert stored.remote_version == 4
    assert stored.remote_note == make_note("b", body="remote")
    assert [c.note_id for c in await store.get_all_conflicts()] == ["b"]

    await store.remove_conflict("b")
    assert await store.get_conflict_count() == 0
    assert await store.get_conflict("b") is None


@pytest.mark.anyio
async def test_state_survives_reopen(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.set_metadata(METADATA_DEVICE_ID, "dev-1")
    await ChangeTracker(store).track_change(make_note("a"), "create")
    await store.close()

    reopened = await _store(tmp_path)
    assert await reopened.get_metadata(METADATA_DEVICE_ID) == "dev-1"
    assert await reopened.get_queue_size() == 1

    await reopened.set_metadata(METADATA_DEVICE_ID, "dev-2")
    assert await reopened.get_metadata(METADATA_DEVICE_ID) == "dev-2"
    assert await reopened.get_metadata("missing") is None


@pytest.mark.anyio
async def test_acknowledging_replaced_entry_keeps_newer_edit_queued(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    tracker = ChangeTracker(store)
    sent = await tracker.track_change(make_note("a", body="v1"), "create")
    newer = await tracker.track_change(make_note("a", body="v2"), "update")
    assert sent is not None and newer is not None

    synced = SyncState(local_version=1, server_version=1, content_hash="h", status="synced")
    state = await store.acknowledge_change(sent, synced, server_version=1)

    assert state is not None
    assert (state.local_version, state.server_version, state.status) == (2, 1, "pending")
    assert await store.get_sync_state("a") == state
    queued = await store.get_queued_change("a")
    assert queued is not None
    assert (queued.id, queued.version) == (newer.id, 2)
