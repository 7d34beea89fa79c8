"""Transfer events as they move from the ledger into the store.

The gateway produces :class:`RawTransferEvent` values. Every ingestion path
(backfill, live, dead-letter retry) converts them into a validated
:class:`TransferEvent` before anything touches the store.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")

EventKey = tuple[str, int, str]
"""Logical identity of a transfer: ``(asset_id, block_number, tx_hash)``."""


class EventSource(StrEnum):
    BACKFILL = "backfill"
    LIVE = "live"
    RETRY = "retry"


@dataclass(frozen=True)
class RawTransferEvent:
    """Decoded but unvalidated ``Transfer`` log."""

    asset_id: str
    from_address: str
    to_address: str
    block_number: int
    tx_hash: str
    log_index: int | None = None

    @property
    def key(self) -> EventKey:
        return (self.asset_id, self.block_number, self.tx_hash)


class TransferEvent(BaseModel):
    """A normalized ownership transfer ready to be applied."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    asset_id: str = Field(..., description="Decimal asset id")
    from_address: str
    to_address: str
    block_number: int = Field(..., ge=0)
    tx_hash: str
    source: EventSource = EventSource.LIVE
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("asset_id")
    @classmethod
    def _normalize_asset_id(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("asset_id must be a non-negative decimal integer")
        return str(int(value))

    @field_validator("from_address", "to_address")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        address = value.lower()
        if not _ADDRESS_RE.match(address):
            raise ValueError(f"not a 20-byte hex address: {value!r}")
        return address

    @field_validator("tx_hash")
    @classmethod
    def _normalize_tx_hash(cls, value: str) -> str:
        tx_hash = value.lower()
        if not _TX_HASH_RE.match(tx_hash):
            raise ValueError(f"not a 32-byte transaction hash: {value!r}")
        return tx_hash

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def key(self) -> EventKey:
        return (self.asset_id, self.block_number, self.tx_hash)

    def to_raw(self) -> RawTransferEvent:
        return RawTransferEvent(
            asset_id=self.asset_id,
            from_address=self.from_address,
            to_address=self.to_address,
            block_number=self.block_number,
            tx_hash=self.tx_hash,
        )
