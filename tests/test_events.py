from __future__ import annotations

import dataclasses

import pytest
from fakes import ALICE, transfer, tx_hash

from ledgermirror.exceptions import PermanentApplyError
from ledgermirror.ingestion.normalize import normalize_transfer
from ledgermirror.state.events import EventSource


def test_normalize_canonicalizes_fields() -> None:
    raw = dataclasses.replace(
        transfer("007", block=12, tx=255, to_address="0x" + "A1" * 20),
        tx_hash="0x" + format(255, "064X"),
    )

    event = normalize_transfer(raw, source=EventSource.BACKFILL)

    assert event.asset_id == "7"
    assert event.to_address == ALICE
    assert event.tx_hash == tx_hash(255)
    assert event.source == EventSource.BACKFILL
    assert event.observed_at.tzinfo is not None
    assert event.key == ("7", 12, tx_hash(255))


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("asset_id", "-1"),
        ("asset_id", "abc"),
        ("from_address", "0x123"),
        ("tx_hash", "0xdeadbeef"),
        ("block_number", -5),
    ],
)
def test_malformed_fields_raise_permanent_error(field: str, value: object) -> None:
    raw = dataclasses.replace(transfer(), **{field: value})

    with pytest.raises(PermanentApplyError) as exc_info:
        normalize_transfer(raw)

    assert exc_info.value.field == field
