from __future__ import annotations

from typing import Any

import pytest
from fakes import ALICE, BOB, CAROL, FakeGateway, transfer

from ledgermirror.exceptions import LedgerTimeoutError
from ledgermirror.ingestion.apply import TransferApplier
from ledgermirror.maintenance.reconcile import Reconciler
from ledgermirror.state.store import MirrorStore


@pytest.mark.asyncio
async def test_mismatch_is_overwritten_with_onchain_owner(store: MirrorStore) -> None:
    await TransferApplier(store).apply_raw(transfer("7", block=100, tx=1, to_address=ALICE))
    gateway = FakeGateway(head=500)
    gateway.owners["7"] = BOB

    report = await Reconciler(gateway, store).run()

    assert (report.checked, report.repaired, report.failed) == (1, 1, 0)
    asset = await store.get_asset("7")
    assert asset is not None
    assert asset.current_owner == BOB
    assert asset.last_applied_block == 500


@pytest.mark.asyncio
async def test_second_pass_finds_nothing_to_repair(store: MirrorStore) -> None:
    await TransferApplier(store).apply_raw(transfer("7", block=100, tx=1, to_address=ALICE))
    gateway = FakeGateway(head=500)
    gateway.owners["7"] = BOB
    reconciler = Reconciler(gateway, store)

    await reconciler.run()
    report = await reconciler.run()

    assert report.repaired == 0


@pytest.mark.asyncio
async def test_record_newer_than_reconcile_height_is_left_untouched(store: MirrorStore) -> None:
    await TransferApplier(store).apply_raw(transfer("7", block=100, tx=1, to_address=ALICE))
    gateway = FakeGateway(head=50)
    gateway.owners["7"] = BOB

    report = await Reconciler(gateway, store).run()

    assert (report.repaired, report.skipped) == (0, 1)
    asset = await store.get_asset("7")
    assert asset is not None
    assert asset.current_owner == ALICE
    assert asset.last_applied_block == 100


class _RacingGateway(FakeGateway):
    """Applies a newer transfer while ``ownerOf`` is in flight, then answers with the stale owner."""

    def __init__(self, applier: TransferApplier, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._applier = applier

    async def current_owner_of(self, asset_id: str, *, block: int | None = None) -> str:
        await self._applier.apply_raw(transfer(asset_id, block=600, tx=9, from_address=BOB, to_address=CAROL))
        return await super().current_owner_of(asset_id, block=block)


@pytest.mark.asyncio
async def test_transfer_applied_during_reconcile_is_not_overwritten(store: MirrorStore) -> None:
    applier = TransferApplier(store)
    await applier.apply_raw(transfer("7", block=100, tx=1, to_address=ALICE))
    gateway = _RacingGateway(applier, head=500)
    gateway.owners["7"] = BOB

    report = await Reconciler(gateway, store).run()

    assert report.repaired == 0
    asset = await store.get_asset("7")
    assert asset is not None
    assert asset.current_owner == CAROL
    assert asset.last_applied_block == 600


@pytest.mark.asyncio
async def test_owner_is_read_at_the_reconcile_height(store: MirrorStore) -> None:
    await TransferApplier(store).apply_raw(transfer("7", block=100, tx=1, to_address=ALICE))
    gateway = FakeGateway(head=500)
    gateway.owners["7"] = ALICE

    await Reconciler(gateway, store).run()

    assert gateway.owner_calls == [("7", 500)]


@pytest.mark.asyncio
async def test_one_failing_asset_does_not_abort_the_pass(store: MirrorStore) -> None:
    applier = TransferApplier(store)
    await applier.apply_raw(transfer("1", block=10, tx=1, to_address=ALICE))
    await applier.apply_raw(transfer("2", block=11, tx=2, to_address=ALICE))
    await applier.apply_raw(transfer("3", block=12, tx=3, to_address=ALICE))
    gateway = FakeGateway(head=20)
    gateway.owners.update({"1": CAROL, "3": CAROL})
    gateway.owner_errors["2"] = LedgerTimeoutError("eth_call timed out", method="eth_call")

    report = await Reconciler(gateway, store).run()

    assert (report.checked, report.repaired, report.failed) == (3, 2, 1)
    assert await store.tokens_owned_by(CAROL) == ["1", "3"]
    assert await store.tokens_owned_by(ALICE) == ["2"]


@pytest.mark.asyncio
async def test_asset_without_onchain_owner_is_left_alone(store: MirrorStore) -> None:
    await TransferApplier(store).apply_raw(transfer("7", block=100, tx=1, to_address=ALICE))
    gateway = FakeGateway(head=200)

    report = await Reconciler(gateway, store).run()

    assert report.missing == 1
    assert report.repaired == 0
    asset = await store.get_asset("7")
    assert asset is not None
    assert asset.current_owner == ALICE


@pytest.mark.asyncio
async def test_index_policy_creates_missing_records(store: MirrorStore) -> None:
    gateway = FakeGateway(head=300)
    gateway.owners.update({"0": ALICE, "1": BOB})

    report = await Reconciler(gateway, store, policy="index").run()

    assert report.checked == 2
    assert report.repaired == 2
    assert await store.tokens_owned_by(ALICE) == ["0"]
    record = await store.get_asset("1")
    assert record is not None
    assert record.current_owner == BOB
    assert record.last_applied_block == 300


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        Reconciler(FakeGateway(), MirrorStore("sqlite+aiosqlite://"), policy="everything")
