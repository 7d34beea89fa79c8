"""Persisted record shapes returned by the store."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from ledgermirror.state.events import EventKey, RawTransferEvent


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class _RecordModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Any:
        data = dict(row)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = _aware(value)
        return cls.model_validate(data)


class AssetRecord(_RecordModel):
    asset_id: str
    current_owner: str
    last_applied_block: int
    updated_at: datetime | None = None


class TransferRecord(_RecordModel):
    asset_id: str
    from_address: str
    to_address: str
    block_number: int
    tx_hash: str
    observed_at: datetime

    @property
    def key(self) -> EventKey:
        return (self.asset_id, self.block_number, self.tx_hash)


class DeadLetterEntry(_RecordModel):
    """An event the applier could not apply.

    ``retry_count`` counts failed *retries*; the first failure records 0.
    """

    asset_id: str
    from_address: str
    to_address: str
    block_number: int
    tx_hash: str
    last_error: str
    retry_count: int
    first_failed_at: datetime
    last_attempt_at: datetime

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
