"""Durable mirror store.

This is the only component that owns persisted state. Components receive a
connected :class:`MirrorStore` from the supervisor and run their mutations
inside :meth:`MirrorStore.transaction`, so a cancelled or failed unit is
always rolled back rather than left open.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Table, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from ledgermirror.exceptions import FatalConnectionError, MirrorConfigError, StoreError
from ledgermirror.state.records import AssetRecord, TransferRecord
from ledgermirror.state.schema import assets, metadata, transfers

_logger = logging.getLogger(__name__)

_SUPPORTED_DIALECTS = frozenset({"sqlite", "postgresql"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":"))


class MirrorStore:
    """Async SQLAlchemy-backed store for assets, transfers and dead letters.

    Usage::

        store = MirrorStore("sqlite+aiosqlite:///mirror.db")
        await store.connect()
        try:
            owned = await store.tokens_owned_by("0xabc...")
        finally:
            await store.close()
    """

    def __init__(self, url: str, *, engine: AsyncEngine | None = None, echo: bool = False) -> None:
        self._url = url
        self._echo = echo
        self._engine = engine
        self._external_engine = engine is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def dialect_name(self) -> str:
        return self._require_engine().dialect.name

    async def connect(self) -> None:
        """Create the engine and ensure tables and indexes exist."""
        if self._engine is None:
            kwargs: dict[str, Any] = {"echo": self._echo}
            if _is_memory_sqlite(self._url):
                # One shared connection, otherwise every checkout sees an empty database.
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"] = {"check_same_thread": False}
            try:
                self._engine = create_async_engine(self._url, **kwargs)
            except (SQLAlchemyError, ImportError, ValueError) as exc:
                raise MirrorConfigError(f"Invalid store URL {self._url!r}: {exc}") from exc

        if self._engine.dialect.name not in _SUPPORTED_DIALECTS:
            raise MirrorConfigError(f"Unsupported store dialect: {self._engine.dialect.name}")

        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            await self.close()
            raise FatalConnectionError(f"Store connection failed: {exc}") from exc
        _logger.debug("Store connected dialect=%s", self._engine.dialect.name)

    async def close(self) -> None:
        engine = self._engine
        if engine is None:
            return
        if not self._external_engine:
            self._engine = None
            await engine.dispose()
        _logger.debug("Store closed")

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreError("Store not connected. Call 'await store.connect()' first.")
        return self._engine

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Yield a connection inside one transaction; commit on exit, roll back on error."""
        async with self._require_engine().begin() as conn:
            yield conn

    def insert(self, table: Table) -> Any:
        """Dialect-specific ``INSERT`` supporting ``ON CONFLICT`` clauses."""
        if self.dialect_name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def max_transfer_block(self) -> int | None:
        """Highest block number of any stored transfer, or ``None`` when empty."""
        async with self._require_engine().connect() as conn:
            result = await conn.execute(select(func.max(transfers.c.block_number)))
            value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def get_asset(self, asset_id: str) -> AssetRecord | None:
        async with self._require_engine().connect() as conn:
            result = await conn.execute(select(assets).where(assets.c.asset_id == asset_id))
            row = result.mappings().first()
        return AssetRecord.from_row(row) if row is not None else None

    async def asset_ids(self) -> list[str]:
        """Every asset id known to the store."""
        async with self._require_engine().connect() as conn:
            result = await conn.execute(select(assets.c.asset_id).order_by(assets.c.asset_id))
            return [str(value) for value in result.scalars()]

    async def tokens_owned_by(self, address: str) -> list[str]:
        """Asset ids currently owned by ``address`` (case-insensitive)."""
        owner = address.strip().lower()
        async with self._require_engine().connect() as conn:
            result = await conn.execute(
                select(assets.c.asset_id).where(assets.c.current_owner == owner).order_by(assets.c.asset_id)
            )
            return [str(value) for value in result.scalars()]

    async def transfers_for(self, asset_id: str) -> list[TransferRecord]:
        """Transfer history of one asset, oldest first."""
        async with self._require_engine().connect() as conn:
            result = await conn.execute(
                select(transfers)
                .where(transfers.c.asset_id == asset_id)
                .order_by(transfers.c.block_number, transfers.c.id)
            )
            return [TransferRecord.from_row(row) for row in result.mappings()]

    async def count_transfers(self) -> int:
        async with self._require_engine().connect() as conn:
            result = await conn.execute(select(func.count()).select_from(transfers))
            return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Mutations outside the applier
    # ------------------------------------------------------------------

    async def overwrite_asset(self, asset_id: str, owner: str, block_number: int) -> bool:
        """Force an asset's owner as of ``block_number`` (reconciliation).

        The write is skipped when the stored record already reflects a later
        block, so a repair never undoes a transfer applied meanwhile. Returns
        ``True`` when the row was written.
        """
        values = {
            "asset_id": asset_id,
            "current_owner": owner.lower(),
            "last_applied_block": block_number,
            "updated_at": _utcnow(),
        }
        async with self.transaction() as conn:
            stmt = self.insert(assets).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["asset_id"],
                set_={
                    "current_owner": stmt.excluded.current_owner,
                    "last_applied_block": stmt.excluded.last_applied_block,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=assets.c.last_applied_block <= stmt.excluded.last_applied_block,
            )
            result = await conn.execute(stmt)
            return result.rowcount > 0
