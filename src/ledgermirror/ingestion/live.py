"""Live event tailing.

A reader task pulls events from the gateway stream into a bounded queue and
an apply task drains it through the applier. Events that fail to apply, or
that arrive while the queue is full, go to the dead-letter table. A lost
stream is never healed here: it is raised to the supervisor, whose restart
re-runs backfill over the disconnection window.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ledgermirror.exceptions import LedgerUnavailableError, MirrorError
from ledgermirror.gateway import Gateway
from ledgermirror.ingestion.apply import ApplyOutcome, TransferApplier
from ledgermirror.ingestion.dead_letter import DeadLetterQueue
from ledgermirror.state.events import EventSource, RawTransferEvent

_logger = logging.getLogger(__name__)

OVERFLOW_ERROR = "live queue overflow"
STREAM_LOST_ERROR = "stream lost before apply"


@dataclass
class LiveStats:
    delivered: int = 0
    applied: int = 0
    duplicates: int = 0
    dead_lettered: int = 0
    overflowed: int = 0


class LiveSubscriber:
    def __init__(
        self,
        gateway: Gateway,
        applier: TransferApplier,
        dead_letters: DeadLetterQueue,
        *,
        queue_size: int = 1000,
        drain_timeout: float = 10.0,
    ) -> None:
        self._gateway = gateway
        self._applier = applier
        self._dead_letters = dead_letters
        self._queue_size = queue_size
        self._drain_timeout = drain_timeout
        self.stats = LiveStats()
        self._in_flight: RawTransferEvent | None = None

    async def run(self, *, from_block: int | None = None) -> None:
        """Consume the stream from ``from_block`` until it fails; always ends by raising.

        Cancellation stops the reader and gives queued events the same bounded
        drain as a lost stream before the cancellation propagates.
        """
        queue: asyncio.Queue[RawTransferEvent] = asyncio.Queue(maxsize=self._queue_size)
        reader = asyncio.create_task(self._read_stream(queue, from_block), name="ledgermirror-live-reader")
        applier = asyncio.create_task(self._apply_loop(queue), name="ledgermirror-live-apply")
        try:
            done, _pending = await asyncio.wait({reader, applier}, return_when=asyncio.FIRST_COMPLETED)
            if applier in done:
                reader.cancel()
                applier.result()
                raise MirrorError("Live apply loop stopped unexpectedly")

            await self._drain(queue, applier)
            reader.result()
            raise LedgerUnavailableError("Live event stream ended", method="subscribe")
        except asyncio.CancelledError:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            if not applier.done():
                await asyncio.shield(self._drain(queue, applier))
            raise
        finally:
            for task in (reader, applier):
                if not task.done():
                    task.cancel()
            await asyncio.gather(reader, applier, return_exceptions=True)

    async def _read_stream(self, queue: asyncio.Queue[RawTransferEvent], from_block: int | None) -> None:
        stream = self._gateway.subscribe_events(from_block=from_block)
        _logger.info("Live subscription started from block %s", from_block if from_block is not None else "head")
        try:
            async for event in stream:
                self.stats.delivered += 1
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    self.stats.overflowed += 1
                    _logger.warning("Live queue full (%s); dead-lettering %s", self._queue_size, event.key)
                    await self._dead_letters.record(event, OVERFLOW_ERROR)
        finally:
            await stream.aclose()
            _logger.info("Live subscription stopped")

    async def _apply_loop(self, queue: asyncio.Queue[RawTransferEvent]) -> None:
        while True:
            event = await queue.get()
            self._in_flight = event
            try:
                await self.handle(event)
            finally:
                self._in_flight = None
                queue.task_done()

    async def handle(self, event: RawTransferEvent) -> None:
        """Apply one delivered event, dead-lettering it on failure."""
        result = await self._applier.apply_raw(event, source=EventSource.LIVE)
        if result.outcome == ApplyOutcome.DUPLICATE:
            self.stats.duplicates += 1
            return
        if result.ok:
            self.stats.applied += 1
            return
        self.stats.dead_lettered += 1
        await self._dead_letters.record(
            event,
            result.error or result.outcome.value,
            terminal=result.outcome == ApplyOutcome.REJECTED,
        )

    async def _drain(self, queue: asyncio.Queue[RawTransferEvent], applier: asyncio.Task[None]) -> None:
        """Give queued events a bounded chance to apply; dead-letter the rest."""
        if queue.empty() and self._in_flight is None:
            return
        _logger.info("Draining %s queued live events", queue.qsize())
        try:
            await asyncio.wait_for(queue.join(), self._drain_timeout)
            return
        except TimeoutError:
            _logger.warning("Drain timed out with %s events queued", queue.qsize())

        # A cancelled apply rolls back, so the interrupted event is dead-lettered too.
        interrupted = self._in_flight
        applier.cancel()
        await asyncio.gather(applier, return_exceptions=True)
        leftovers = [interrupted] if interrupted is not None else []
        while not queue.empty():
            leftovers.append(queue.get_nowait())
            queue.task_done()
        for event in leftovers:
            self.stats.dead_lettered += 1
            await self._dead_letters.record(event, STREAM_LOST_ERROR)
