from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from flow_sync.db_urls import sqlite_url_for_path
from flow_sync.errors import SyncErrorCode
from flow_sync.integrations.sync_transport import RetryConfig, SyncTransport
from flow_sync.services.change_tracker import ChangeTracker
from flow_sync.services.sync_coordinator import SyncCoordinator
from flow_sync.store.base import ChangeStore
from flow_sync.store.memory import MemoryChangeStore
from flow_sync.store.sql import SqlChangeStore
from sync_fakes import FakeSyncServer, FakeVault, make_note


class _Device:
    def __init__(
        self, device_id: str, store: ChangeStore, client: httpx.AsyncClient, api_key: str
    ) -> None:
        self.vault = FakeVault()
        self.store = store
        self.tracker = ChangeTracker(store)
        self.coordinator = SyncCoordinator(
            store=store,
            transport=SyncTransport(
                server_url="https://sync.example.com",
                api_key=api_key,
                client=client,
                retry=RetryConfig(max_retries=0),
            ),
            device_id=device_id,
            callbacks=self.vault.callbacks(),
        )

    async def edit(self, note_id: str, body: str, operation: str = "update") -> None:
        note = make_note(note_id, body=body)
        self.vault.notes[note_id] = note
        await self.tracker.track_change(note, operation)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_create_push_then_other_device_pulls(tmp_path: Path) -> None:
    server = FakeSyncServer()
    async with httpx.AsyncClient(transport=server.transport()) as client:
        store1 = SqlChangeStore(sqlite_url_for_path(tmp_path / "device1.sqlite3"))
        await store1.initialize()
        d1 = _Device("dev-1", store1, client, server.api_key)
        d2 = _Device("dev-2", MemoryChangeStore(), client, server.api_key)

        await d1.edit("a", "hello", "create")
        r1 = await d1.coordinator.run_sync_cycle()

        assert r1.pushed == 1
        assert r1.errors == []
        state = await store1.get_sync_state("a")
        assert state is not None
        assert (state.local_version, state.server_version, state.status) == (1, 1, "synced")
        assert await store1.get_queue_size() == 0

        r2 = await d2.coordinator.run_sync_cycle()

        assert r2.pulled == 1
        assert d2.vault.notes["a"] == make_note("a", body="hello")
        assert await d2.store.get_last_sync_sequence() == 1
        synced = await d2.store.get_sync_state("a")
        assert synced is not None and synced.status == "synced"


@pytest.mark.anyio
async def test_concurrent_offline_edits_produce_single_conflict() -> None:
    server = FakeSyncServer()
    async with httpx.AsyncClient(transport=server.transport()) as client:
        d1 = _Device("dev-1", MemoryChangeStore(), client, server.api_key)
        d2 = _Device("dev-2", MemoryChangeStore(), client, server.api_key)

        await d1.edit("b", "original", "create")
        await d1.coordinator.run_sync_cycle()
        await d2.coordinator.run_sync_cycle()
        assert d2.vault.notes["b"] == make_note("b", body="original")

        # Both devices edit while offline.
        await d1.edit("b", "device one")
        await d2.edit("b", "device two")

        r1 = await d1.coordinator.run_sync_cycle()
        assert r1.pushed == 1
        assert r1.conflicts == 0

        r2 = await d2.coordinator.run_sync_cycle()

        assert r2.pushed == 0
        assert r2.conflicts == 1
        assert "Conflict detected for note b" in r2.errors
        # Remote edit is not applied over the local one.
        assert d2.vault.notes["b"] == make_note("b", body="device two")
        assert await d2.store.get_queue_size() == 1
        conflicts = await d2.coordinator.resolver.get_pending_conflicts()
        assert len(conflicts) == 1
        assert conflicts[0].remote_note == make_note("b", body="device one")


@pytest.mark.anyio
async def test_delete_propagates_between_devices() -> None:
    server = FakeSyncServer()
    async with httpx.AsyncClient(transport=server.transport()) as client:
        d1 = _Device("dev-1", MemoryChangeStore(), client, server.api_key)
        d2 = _Device("dev-2", MemoryChangeStore(), client, server.api_key)

        await d1.edit("x", "temp", "create")
        await d1.coordinator.run_sync_cycle()
        await d2.coordinator.run_sync_cycle()
        assert "x" in d2.vault.notes

        d1.vault.notes.pop("x")
        await d1.tracker.track_delete("x")
        r1 = await d1.coordinator.run_sync_cycle()
        assert r1.pushed == 1
        assert await d1.store.get_sync_state("x") is None

        r2 = await d2.coordinator.run_sync_cycle()
        assert r2.pulled == 1
        assert "x" not in d2.vault.notes
        assert await d2.store.get_sync_state("x") is None


@pytest.mark.anyio
async def test_bad_api_key_surfaces_auth_failure_without_losing_queue() -> None:
    server = FakeSyncServer(api_key="right")
    async with httpx.AsyncClient(transport=server.transport()) as client:
        d1 = _Device("dev-1", MemoryChangeStore(), client, "wrong")
        await d1.edit("a", "hello", "create")

        result = await d1.coordinator.run_sync_cycle()

    assert result.pushed == 0
    assert len(result.errors) == 2
    assert all(SyncErrorCode.AUTH_FAILED.value in e for e in result.errors)
    assert await d1.store.get_queue_size() == 1
    assert server.requests == [("POST", "/v1/sync/push"), ("POST", "/v1/sync/pull")]


@pytest.mark.anyio
async def test_backlog_larger_than_one_page_is_pulled_completely() -> None:
    server = FakeSyncServer(page_size=2)
    async with httpx.AsyncClient(transport=server.transport()) as client:
        d1 = _Device("dev-1", MemoryChangeStore(), client, server.api_key)
        d2 = _Device("dev-2", MemoryChangeStore(), client, server.api_key)

        for i in range(1, 6):
            await d1.edit(f"n{i}", f"body {i}", "create")
        assert (await d1.coordinator.run_sync_cycle()).pushed == 5

        result = await d2.coordinator.run_sync_cycle()

        assert result.pulled == 5
        assert sorted(d2.vault.notes) == ["n1", "n2", "n3", "n4", "n5"]
        assert await d2.store.get_last_sync_sequence() == 5
        pulls = [r for r in server.requests if r[1] == "/v1/sync/pull"]
        # d1's own pull plus three pages for d2.
        assert len(pulls) == 4
