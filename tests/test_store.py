from __future__ import annotations

import pytest
from fakes import BOB
from sqlalchemy import inspect

from ledgermirror.exceptions import MirrorConfigError, StoreError
from ledgermirror.state.store import MirrorStore


@pytest.mark.asyncio
async def test_connect_creates_tables_and_indexes(store: MirrorStore) -> None:
    async with store.transaction() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        transfer_indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("transfers"))
        asset_indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("assets"))

    assert {"assets", "transfers", "dead_letters"} <= set(names)
    assert {"ix_transfers_asset_id", "ix_transfers_block_number_desc"} <= {ix["name"] for ix in transfer_indexes}
    assert "ix_assets_current_owner" in {ix["name"] for ix in asset_indexes}


@pytest.mark.asyncio
async def test_empty_store_has_no_max_block(store: MirrorStore) -> None:
    assert await store.max_transfer_block() is None
    assert await store.asset_ids() == []


@pytest.mark.asyncio
async def test_overwrite_asset_creates_and_updates(store: MirrorStore) -> None:
    assert await store.overwrite_asset("4", "0x" + "A1" * 20, 10)
    assert await store.overwrite_asset("4", BOB, 12)

    asset = await store.get_asset("4")
    assert asset is not None
    assert asset.current_owner == BOB
    assert asset.last_applied_block == 12
    assert asset.updated_at is not None and asset.updated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_overwrite_asset_skips_records_at_a_later_block(store: MirrorStore) -> None:
    await store.overwrite_asset("4", "0x" + "a1" * 20, 10)

    assert not await store.overwrite_asset("4", BOB, 5)

    asset = await store.get_asset("4")
    assert asset is not None
    assert asset.current_owner == "0x" + "a1" * 20
    assert asset.last_applied_block == 10


@pytest.mark.asyncio
async def test_queries_require_connection() -> None:
    with pytest.raises(StoreError):
        await MirrorStore("sqlite+aiosqlite://").get_asset("1")


@pytest.mark.asyncio
async def test_unsupported_dialect_is_a_config_error() -> None:
    store = MirrorStore("mysql+aiomysql://user@localhost/mirror")

    with pytest.raises(MirrorConfigError):
        await store.connect()
