from __future__ import annotations

from collections.abc import AsyncIterator

import pytest_asyncio

from ledgermirror.state.store import MirrorStore


@pytest_asyncio.fixture
async def store() -> AsyncIterator[MirrorStore]:
    mirror_store = MirrorStore("sqlite+aiosqlite://")
    await mirror_store.connect()
    try:
        yield mirror_store
    finally:
        await mirror_store.close()
