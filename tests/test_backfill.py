from __future__ import annotations

import pytest
from fakes import ALICE, BOB, FakeGateway, transfer, tx_hash

from ledgermirror.exceptions import BackfillError
from ledgermirror.ingestion.apply import ApplyOutcome, ApplyResult, TransferApplier
from ledgermirror.ingestion.backfill import BackfillDriver
from ledgermirror.ingestion.dead_letter import DeadLetterQueue
from ledgermirror.state.events import EventSource, RawTransferEvent
from ledgermirror.state.store import MirrorStore


def _driver(gateway: FakeGateway, store: MirrorStore, **kwargs: object) -> BackfillDriver:
    applier = TransferApplier(store)
    dead_letters = DeadLetterQueue(store, retry_ceiling=3)
    options: dict = {"chunk_size": 10, "attempts": 3, "backoff": 0.0}
    options.update(kwargs)
    return BackfillDriver(gateway, store, applier, dead_letters, **options)


@pytest.mark.asyncio
async def test_backfill_applies_every_event_in_range(store: MirrorStore) -> None:
    events = [transfer(str(n), block=n * 7, tx=n) for n in range(1, 8)]
    gateway = FakeGateway(events, head=50)

    report = await _driver(gateway, store).run()

    assert report.applied == 7
    assert report.chunks == 6
    assert await store.count_transfers() == 7
    assert gateway.range_calls[0] == (0, 9)
    assert gateway.range_calls[-1] == (50, 50)


@pytest.mark.asyncio
async def test_chunks_are_contiguous_and_ascending(store: MirrorStore) -> None:
    gateway = FakeGateway(head=35)

    await _driver(gateway, store).run()

    assert gateway.range_calls == [(0, 9), (10, 19), (20, 29), (30, 35)]


@pytest.mark.asyncio
async def test_failed_chunk_is_retried_then_succeeds(store: MirrorStore) -> None:
    gateway = FakeGateway([transfer("1", block=12, tx=1)], head=19)
    gateway.range_failures[(10, 19)] = 2

    report = await _driver(gateway, store).run()

    assert report.applied == 1
    assert gateway.range_calls.count((10, 19)) == 3


@pytest.mark.asyncio
async def test_exhausted_chunk_raises_backfill_error(store: MirrorStore) -> None:
    gateway = FakeGateway([transfer("1", block=3, tx=1), transfer("2", block=25, tx=2)], head=29)
    gateway.range_failures[(10, 19)] = 5

    with pytest.raises(BackfillError) as exc_info:
        await _driver(gateway, store).run()

    assert exc_info.value.from_block == 10
    assert exc_info.value.to_block == 19
    # Later chunks are never attempted, so no gap can be papered over.
    assert (20, 29) not in gateway.range_calls
    assert await store.get_asset("2") is None


@pytest.mark.asyncio
async def test_resume_rescans_last_stored_block(store: MirrorStore) -> None:
    gateway = FakeGateway([transfer("1", block=5, tx=1)], head=9)
    await _driver(gateway, store).run()

    gateway.events.append(transfer("1", block=14, tx=2, from_address=ALICE, to_address=BOB))
    gateway.head = 20
    gateway.range_calls.clear()
    driver = _driver(gateway, store)

    assert await driver.resume_block() == 5
    await driver.run()
    assert gateway.range_calls[0] == (5, 14)
    asset = await store.get_asset("1")
    assert asset is not None
    assert asset.current_owner == BOB


@pytest.mark.asyncio
async def test_start_block_bounds_resume(store: MirrorStore) -> None:
    gateway = FakeGateway(head=120)

    driver = _driver(gateway, store, start_block=100)

    assert await driver.resume_block() == 100
    await driver.run()
    assert gateway.range_calls == [(100, 109), (110, 119), (120, 120)]


@pytest.mark.asyncio
async def test_rerun_over_applied_range_is_harmless(store: MirrorStore) -> None:
    events = [transfer("1", block=2, tx=1), transfer("1", block=4, tx=2, from_address=ALICE, to_address=BOB)]
    gateway = FakeGateway(events, head=9)
    driver = _driver(gateway, store)
    await driver.run()

    report = await driver.run_range(0, 9)

    assert report.duplicates == 2
    assert report.applied == 0
    assert await store.count_transfers() == 2


@pytest.mark.asyncio
async def test_malformed_event_is_dead_lettered_and_chunk_completes(store: MirrorStore) -> None:
    bad = transfer("1", block=3, tx=1, to_address="0xnothex")
    good = transfer("2", block=4, tx=2)
    gateway = FakeGateway([bad, good], head=9)
    dead_letters = DeadLetterQueue(store, retry_ceiling=3)
    driver = BackfillDriver(gateway, store, TransferApplier(store), dead_letters, chunk_size=10, backoff=0.0)

    report = await driver.run()

    assert report.rejected == 1
    assert report.applied == 1
    entry = await dead_letters.get(bad.key)
    assert entry is not None
    assert entry.retry_count == 3


@pytest.mark.asyncio
async def test_head_advancing_during_backfill_is_chased(store: MirrorStore) -> None:
    class _MovingHead(FakeGateway):
        def __init__(self) -> None:
            super().__init__([transfer("1", block=15, tx=1)], head=9)
            self.reads = 0

        async def current_height(self) -> int:
            self.reads += 1
            if self.reads >= 2:
                self.head = 19
            return self.head

    gateway = _MovingHead()

    report = await _driver(gateway, store).run()

    assert report.to_block == 19
    assert report.applied == 1
    assert gateway.range_calls == [(0, 9), (10, 19)]


class _FailingTxApplier(TransferApplier):
    """Conflicts on one transaction hash, applies everything else."""

    def __init__(self, store: MirrorStore, failing_tx: str) -> None:
        super().__init__(store)
        self._failing_tx = failing_tx

    async def apply_raw(self, raw: RawTransferEvent, *, source: EventSource = EventSource.LIVE) -> ApplyResult:
        if raw.tx_hash == self._failing_tx:
            return ApplyResult(outcome=ApplyOutcome.CONFLICT, key=raw.key, error="OperationalError: database is locked")
        return await super().apply_raw(raw, source=source)


@pytest.mark.asyncio
async def test_partially_applied_block_is_completed_on_resume(store: MirrorStore) -> None:
    events = [transfer("1", block=100, tx=1), transfer("2", block=100, tx=2, to_address=BOB)]
    gateway = FakeGateway(events, head=109)
    dead_letters = DeadLetterQueue(store, retry_ceiling=3)
    failing = BackfillDriver(
        gateway,
        store,
        _FailingTxApplier(store, tx_hash(2)),
        dead_letters,
        chunk_size=10,
        backoff=0.0,
        start_block=100,
    )

    with pytest.raises(BackfillError):
        await failing.run()
    assert await store.get_asset("1") is not None
    assert await store.get_asset("2") is None

    report = await _driver(gateway, store).run()

    assert report.from_block == 100
    assert (report.applied, report.duplicates) == (1, 1)
    asset = await store.get_asset("2")
    assert asset is not None
    assert asset.current_owner == BOB
