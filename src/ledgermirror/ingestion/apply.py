"""Idempotent, transactional application of transfer events.

Each call to :meth:`TransferApplier.apply` is one atomic unit:

- insert the transfer row keyed by ``(asset_id, block_number, tx_hash)``;
  an existing row turns the whole call into a no-op
- upsert the asset's owner, guarded so an older block never overwrites a
  newer one

Failures are returned as :class:`ApplyResult` values rather than raised,
so every caller decides itself between retry, dead-lettering and escalation.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from ledgermirror.exceptions import PermanentApplyError
from ledgermirror.ingestion.normalize import normalize_transfer
from ledgermirror.state.events import EventKey, EventSource, RawTransferEvent, TransferEvent
from ledgermirror.state.schema import EVENT_KEY_COLUMNS, assets, transfers
from ledgermirror.state.store import MirrorStore

_logger = logging.getLogger(__name__)


class ApplyOutcome(StrEnum):
    APPLIED = "applied"
    HISTORICAL = "historical"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    REJECTED = "rejected"


class ApplyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: ApplyOutcome
    key: EventKey
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (ApplyOutcome.APPLIED, ApplyOutcome.HISTORICAL, ApplyOutcome.DUPLICATE)

    @property
    def retryable(self) -> bool:
        """Only store-level aborts are worth retrying; rejected events never are."""
        return self.outcome == ApplyOutcome.CONFLICT


class TransferApplier:
    """Applies transfers to a :class:`MirrorStore`. Makes no external calls."""

    def __init__(self, store: MirrorStore) -> None:
        self._store = store

    async def apply_raw(self, raw: RawTransferEvent, *, source: EventSource = EventSource.LIVE) -> ApplyResult:
        """Normalize and apply a raw event; malformed events come back ``REJECTED``."""
        try:
            event = normalize_transfer(raw, source=source)
        except PermanentApplyError as exc:
            _logger.warning("Rejected transfer %s: %s", raw.key, exc)
            return ApplyResult(outcome=ApplyOutcome.REJECTED, key=raw.key, error=str(exc))
        return await self.apply(event)

    async def apply(self, event: TransferEvent) -> ApplyResult:
        try:
            async with self._store.transaction() as conn:
                insert_transfer = (
                    self._store.insert(transfers)
                    .values(
                        asset_id=event.asset_id,
                        from_address=event.from_address,
                        to_address=event.to_address,
                        block_number=event.block_number,
                        tx_hash=event.tx_hash,
                        observed_at=event.observed_at,
                    )
                    .on_conflict_do_nothing(index_elements=list(EVENT_KEY_COLUMNS))
                )
                inserted = await conn.execute(insert_transfer)
                if inserted.rowcount == 0:
                    _logger.debug("Transfer %s already applied", event.key)
                    return ApplyResult(outcome=ApplyOutcome.DUPLICATE, key=event.key)

                upsert_asset = self._store.insert(assets).values(
                    asset_id=event.asset_id,
                    current_owner=event.to_address,
                    last_applied_block=event.block_number,
                    updated_at=event.observed_at,
                )
                upsert_asset = upsert_asset.on_conflict_do_update(
                    index_elements=["asset_id"],
                    set_={
                        "current_owner": upsert_asset.excluded.current_owner,
                        "last_applied_block": upsert_asset.excluded.last_applied_block,
                        "updated_at": upsert_asset.excluded.updated_at,
                    },
                    # Older blocks never move the owner; equal blocks may (same-block transfers).
                    where=assets.c.last_applied_block <= upsert_asset.excluded.last_applied_block,
                )
                advanced = await conn.execute(upsert_asset)
        except SQLAlchemyError as exc:
            _logger.warning("Apply of %s aborted: %s", event.key, exc)
            return ApplyResult(outcome=ApplyOutcome.CONFLICT, key=event.key, error=f"{type(exc).__name__}: {exc}")

        if advanced.rowcount == 0:
            _logger.debug(
                "Transfer %s recorded without moving owner (older than last applied block)",
                event.key,
            )
            return ApplyResult(outcome=ApplyOutcome.HISTORICAL, key=event.key)

        _logger.info(
            "Indexed transfer of asset %s from %s to %s at block %s",
            event.asset_id,
            event.from_address,
            event.to_address,
            event.block_number,
        )
        return ApplyResult(outcome=ApplyOutcome.APPLIED, key=event.key)
