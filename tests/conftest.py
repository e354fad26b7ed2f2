from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from flow_sync.db import dispose_engine_cache, dispose_engines


@pytest.fixture
def anyio_backend() -> str:
    # The code under test is asyncio-only (aiosqlite, asyncio tasks).
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engines_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose cached AsyncEngines (aiosqlite worker threads) while the
    # per-test event loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engines()


def pytest_sessionfinish(session: object, exitstatus: int) -> None:  # noqa: ARG001
    # Safety net: close cached engines so CI can exit cleanly.
    _ = session, exitstatus
    dispose_engine_cache()
