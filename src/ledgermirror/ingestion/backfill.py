"""Historical backfill in fixed-size block chunks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ledgermirror.exceptions import BackfillError, LedgerError
from ledgermirror.gateway import Gateway
from ledgermirror.ingestion.apply import ApplyOutcome, TransferApplier
from ledgermirror.ingestion.dead_letter import DeadLetterQueue
from ledgermirror.state.events import EventSource
from ledgermirror.state.store import MirrorStore

_logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    from_block: int
    to_block: int
    chunks: int = 0
    events: int = 0
    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    passes: int = 0


@dataclass
class _ChunkOutcome:
    events: int = 0
    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> _ChunkOutcome:
        return cls(error=error)


@dataclass
class _Cursor:
    next_block: int
    head: int
    passes: int = 0


class BackfillDriver:
    """Catches the store up to the chain head.

    Chunks run strictly in ascending block order. A chunk is retried as a
    whole; re-delivered events are absorbed by the applier's idempotence.
    When a chunk exhausts its attempts a :class:`BackfillError` is raised,
    since silently skipping it would leave a hole in the history.
    """

    def __init__(
        self,
        gateway: Gateway,
        store: MirrorStore,
        applier: TransferApplier,
        dead_letters: DeadLetterQueue,
        *,
        chunk_size: int = 2000,
        attempts: int = 3,
        backoff: float = 2.0,
        start_block: int = 0,
        max_catchup_passes: int = 3,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._applier = applier
        self._dead_letters = dead_letters
        self._chunk_size = chunk_size
        self._attempts = attempts
        self._backoff = backoff
        self._start_block = start_block
        self._max_catchup_passes = max_catchup_passes

    async def resume_block(self) -> int:
        """The newest stored transfer's block, or the configured start block.

        That block is scanned again: a failed run may have committed only
        part of it, and the transfers already stored resolve as duplicates.
        """
        last = await self._store.max_transfer_block()
        resume = last if last is not None else 0
        return max(resume, self._start_block)

    async def run(self) -> BackfillReport:
        """Backfill to the head observed at start, then chase the head while it moves."""
        cursor = _Cursor(next_block=await self.resume_block(), head=await self._head())
        report = BackfillReport(from_block=cursor.next_block, to_block=cursor.head)
        _logger.info("Backfill starting from block %s to %s", cursor.next_block, cursor.head)

        while True:
            if cursor.next_block <= cursor.head:
                await self.run_range(cursor.next_block, cursor.head, report)
                cursor.next_block = cursor.head + 1
            cursor.passes += 1
            if cursor.passes > self._max_catchup_passes:
                break
            head = await self._head()
            if head <= cursor.head:
                break
            _logger.debug("Chain head moved %s -> %s during backfill", cursor.head, head)
            cursor.head = head

        report.to_block = cursor.head
        report.passes = cursor.passes
        _logger.info(
            "Backfill complete blocks=%s..%s chunks=%s events=%s applied=%s duplicates=%s rejected=%s",
            report.from_block,
            report.to_block,
            report.chunks,
            report.events,
            report.applied,
            report.duplicates,
            report.rejected,
        )
        return report

    async def run_range(self, from_block: int, to_block: int, report: BackfillReport | None = None) -> BackfillReport:
        """Process ``[from_block, to_block]`` chunk by chunk."""
        if report is None:
            report = BackfillReport(from_block=from_block, to_block=to_block)
        for chunk_from in range(from_block, to_block + 1, self._chunk_size):
            chunk_to = min(chunk_from + self._chunk_size - 1, to_block)
            outcome = await self._run_chunk(chunk_from, chunk_to)
            report.chunks += 1
            report.events += outcome.events
            report.applied += outcome.applied
            report.duplicates += outcome.duplicates
            report.rejected += outcome.rejected
        return report

    async def _head(self) -> int:
        last_error = ""
        for attempt in range(1, self._attempts + 1):
            try:
                return await self._gateway.current_height()
            except LedgerError as exc:
                last_error = str(exc)
                _logger.warning("Reading chain head failed (attempt %s/%s): %s", attempt, self._attempts, exc)
            if attempt < self._attempts:
                await asyncio.sleep(self._delay(attempt))
        raise BackfillError(f"Could not read chain head: {last_error}", from_block=-1, to_block=-1)

    async def _run_chunk(self, from_block: int, to_block: int) -> _ChunkOutcome:
        outcome = _ChunkOutcome()
        for attempt in range(1, self._attempts + 1):
            outcome = await self._attempt_chunk(from_block, to_block)
            if outcome.error is None:
                _logger.info("Indexed blocks %s to %s (%s events)", from_block, to_block, outcome.events)
                return outcome
            _logger.warning(
                "Error in attempt %s for blocks %s-%s: %s",
                attempt,
                from_block,
                to_block,
                outcome.error,
            )
            if attempt < self._attempts:
                await asyncio.sleep(self._delay(attempt))

        raise BackfillError(
            f"Blocks {from_block}-{to_block} failed after {self._attempts} attempts: {outcome.error}",
            from_block=from_block,
            to_block=to_block,
        )

    async def _attempt_chunk(self, from_block: int, to_block: int) -> _ChunkOutcome:
        try:
            events = await self._gateway.range_events(from_block, to_block)
        except LedgerError as exc:
            return _ChunkOutcome.failed(f"{type(exc).__name__}: {exc}")

        outcome = _ChunkOutcome(events=len(events))
        for event in events:
            result = await self._applier.apply_raw(event, source=EventSource.BACKFILL)
            if result.outcome == ApplyOutcome.REJECTED:
                try:
                    await self._dead_letters.record(event, result.error or "rejected", terminal=True)
                except SQLAlchemyError as exc:
                    return _ChunkOutcome.failed(f"dead-letter write failed: {exc}")
                outcome.rejected += 1
            elif result.outcome == ApplyOutcome.DUPLICATE:
                outcome.duplicates += 1
            elif result.ok:
                outcome.applied += 1
            else:
                return _ChunkOutcome.failed(result.error or result.outcome.value)
        return outcome

    def _delay(self, attempt: int) -> float:
        return self._backoff * (2 ** (attempt - 1))
