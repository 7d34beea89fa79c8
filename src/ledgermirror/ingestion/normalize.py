"""Normalization helpers for ingestion payloads.

Every path into the applier goes through :func:`normalize_transfer`, so
addresses, hashes and ids are canonical before they reach the store.
"""

from __future__ import annotations

from pydantic import ValidationError

from ledgermirror.exceptions import PermanentApplyError
from ledgermirror.state.events import EventSource, RawTransferEvent, TransferEvent


def normalize_transfer(raw: RawTransferEvent, *, source: EventSource = EventSource.LIVE) -> TransferEvent:
    """Validate a raw transfer, raising :class:`PermanentApplyError` if it cannot be applied."""
    try:
        return TransferEvent(
            asset_id=str(raw.asset_id),
            from_address=raw.from_address,
            to_address=raw.to_address,
            block_number=raw.block_number,
            tx_hash=raw.tx_hash,
            source=source,
        )
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = first.get("loc") or ("event",)
        raise PermanentApplyError(
            f"Malformed transfer {raw.key}: {loc[0]}: {first.get('msg', exc)}",
            field=str(loc[0]),
        ) from exc
