"""Dead-letter table for events the applier could not apply."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select

from ledgermirror.state.events import EventKey, RawTransferEvent
from ledgermirror.state.records import DeadLetterEntry
from ledgermirror.state.schema import EVENT_KEY_COLUMNS, dead_letters
from ledgermirror.state.store import MirrorStore

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeadLetterQueue:
    """Persists failed events with a bounded retry budget.

    Entries are never silently dropped: once ``retry_count`` reaches the
    ceiling they stay in the table as terminal records for an operator.
    """

    def __init__(
        self,
        store: MirrorStore,
        *,
        retry_ceiling: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._retry_ceiling = retry_ceiling
        self._clock = clock

    @property
    def retry_ceiling(self) -> int:
        return self._retry_ceiling

    async def record(self, event: RawTransferEvent, error: str, *, terminal: bool = False) -> DeadLetterEntry:
        """Insert an entry, or bump ``retry_count`` and replace ``last_error`` on an existing one.

        ``terminal`` pins the count at the ceiling so the sweeper never selects it.
        """
        now = self._clock()
        initial_count = self._retry_ceiling if terminal else 0
        async with self._store.transaction() as conn:
            stmt = self._store.insert(dead_letters).values(
                asset_id=event.asset_id,
                from_address=event.from_address,
                to_address=event.to_address,
                block_number=event.block_number,
                tx_hash=event.tx_hash,
                last_error=error,
                retry_count=initial_count,
                first_failed_at=now,
                last_attempt_at=now,
            )
            next_count = (
                stmt.excluded.retry_count if terminal else dead_letters.c.retry_count + 1
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=list(EVENT_KEY_COLUMNS),
                set_={
                    "last_error": stmt.excluded.last_error,
                    "retry_count": next_count,
                    "last_attempt_at": stmt.excluded.last_attempt_at,
                },
            )
            await conn.execute(stmt)
            result = await conn.execute(select(dead_letters).where(*self._key_clause(event.key)))
            entry = DeadLetterEntry.from_row(result.mappings().one())

        if entry.retry_count >= self._retry_ceiling:
            _logger.error(
                "Dead-letter entry %s is terminal after %s retries: %s",
                entry.key,
                entry.retry_count,
                entry.last_error,
            )
        else:
            _logger.warning(
                "Dead-lettered transfer %s (retry_count=%s): %s",
                entry.key,
                entry.retry_count,
                error,
            )
        return entry

    async def due_for_retry(
        self,
        quiet_period: timedelta | float,
        retry_ceiling: int | None = None,
    ) -> list[DeadLetterEntry]:
        """Entries below the ceiling whose last attempt is older than ``quiet_period``."""
        if not isinstance(quiet_period, timedelta):
            quiet_period = timedelta(seconds=quiet_period)
        ceiling = self._retry_ceiling if retry_ceiling is None else retry_ceiling
        cutoff = self._clock() - quiet_period
        async with self._store.transaction() as conn:
            result = await conn.execute(
                select(dead_letters)
                .where(dead_letters.c.retry_count < ceiling, dead_letters.c.last_attempt_at <= cutoff)
                .order_by(dead_letters.c.first_failed_at, dead_letters.c.id)
            )
            return [DeadLetterEntry.from_row(row) for row in result.mappings()]

    async def resolve(self, key: EventKey) -> bool:
        """Delete the entry after a successful re-application."""
        async with self._store.transaction() as conn:
            result = await conn.execute(delete(dead_letters).where(*self._key_clause(key)))
        resolved = result.rowcount > 0
        if resolved:
            _logger.info("Resolved dead-letter entry %s", key)
        return resolved

    async def get(self, key: EventKey) -> DeadLetterEntry | None:
        async with self._store.transaction() as conn:
            result = await conn.execute(select(dead_letters).where(*self._key_clause(key)))
            row = result.mappings().first()
        return DeadLetterEntry.from_row(row) if row is not None else None

    async def terminal_entries(self) -> list[DeadLetterEntry]:
        """Entries that exhausted their retries and need operator attention."""
        async with self._store.transaction() as conn:
            result = await conn.execute(
                select(dead_letters)
                .where(dead_letters.c.retry_count >= self._retry_ceiling)
                .order_by(dead_letters.c.first_failed_at, dead_letters.c.id)
            )
            return [DeadLetterEntry.from_row(row) for row in result.mappings()]

    @staticmethod
    def _key_clause(key: EventKey) -> tuple[object, ...]:
        asset_id, block_number, tx_hash = key
        return (
            dead_letters.c.asset_id == asset_id,
            dead_letters.c.block_number == block_number,
            dead_letters.c.tx_hash == tx_hash,
        )
