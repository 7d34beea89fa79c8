from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

from ledgermirror.exceptions import AssetNotFoundError, LedgerError, MirrorError
from ledgermirror.state.events import RawTransferEvent

ZERO = "0x" + "0" * 40
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def transfer(
    asset_id: str = "7",
    *,
    block: int = 100,
    tx: int = 1,
    from_address: str = ZERO,
    to_address: str = ALICE,
) -> RawTransferEvent:
    return RawTransferEvent(
        asset_id=asset_id,
        from_address=from_address,
        to_address=to_address,
        block_number=block,
        tx_hash=tx_hash(tx),
    )


class FakeGateway:
    """In-memory ledger: a list of transfers plus an ``ownerOf`` table."""

    def __init__(self, events: list[RawTransferEvent] | None = None, *, head: int = 0) -> None:
        self.events = list(events or [])
        self.head = head
        self.owners: dict[str, str] = {}
        self.owner_errors: dict[str, LedgerError] = {}
        self.range_failures: dict[tuple[int, int], int] = {}
        self.range_calls: list[tuple[int, int]] = []
        self.live_events: list[RawTransferEvent] = []
        self.live_error: LedgerError | None = None
        self.live_hold = asyncio.Event()
        self.subscribed_from: int | None = None
        self.owner_calls: list[tuple[str, int | None]] = []
        self.connect_error: MirrorError | None = None
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def current_height(self) -> int:
        return self.head

    async def range_events(self, from_block: int, to_block: int) -> list[RawTransferEvent]:
        self.range_calls.append((from_block, to_block))
        remaining = self.range_failures.get((from_block, to_block), 0)
        if remaining:
            self.range_failures[(from_block, to_block)] = remaining - 1
            raise LedgerError("range request failed", method="eth_getLogs")
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    async def subscribe_events(self, *, from_block: int | None = None) -> AsyncGenerator[RawTransferEvent, None]:
        self.subscribed_from = from_block
        for event in self.live_events:
            yield event
        if self.live_error is not None:
            raise self.live_error
        await self.live_hold.wait()

    async def current_owner_of(self, asset_id: str, *, block: int | None = None) -> str:
        self.owner_calls.append((asset_id, block))
        if asset_id in self.owner_errors:
            raise self.owner_errors[asset_id]
        if asset_id not in self.owners:
            raise AssetNotFoundError(f"ownerOf({asset_id}) reverted", method="eth_call", code=3)
        return self.owners[asset_id]

    async def total_asset_count(self, *, block: int | None = None) -> int:
        return len(self.owners)
