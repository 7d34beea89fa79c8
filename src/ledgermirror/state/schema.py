"""Table definitions for the mirror store."""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

#: Unique identity of a transfer (and of its dead-letter entry).
EVENT_KEY_COLUMNS = ("asset_id", "block_number", "tx_hash")

assets = Table(
    "assets",
    metadata,
    Column("asset_id", String(78), primary_key=True),
    Column("current_owner", String(42), nullable=False),
    Column("last_applied_block", BigInteger, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_assets_current_owner", "current_owner"),
)

transfers = Table(
    "transfers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset_id", String(78), nullable=False),
    Column("from_address", String(42), nullable=False),
    Column("to_address", String(42), nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("tx_hash", String(66), nullable=False),
    Column("observed_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint(*EVENT_KEY_COLUMNS, name="uq_transfers_event"),
    Index("ix_transfers_asset_id", "asset_id"),
)
Index("ix_transfers_block_number_desc", transfers.c.block_number.desc())

dead_letters = Table(
    "dead_letters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Raw fields: entries may hold events that failed validation.
    Column("asset_id", Text, nullable=False),
    Column("from_address", Text, nullable=False),
    Column("to_address", Text, nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("tx_hash", Text, nullable=False),
    Column("last_error", Text, nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("first_failed_at", DateTime(timezone=True), nullable=False),
    Column("last_attempt_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint(*EVENT_KEY_COLUMNS, name="uq_dead_letters_event"),
    Index("ix_dead_letters_first_failed_at", "first_failed_at"),
)
