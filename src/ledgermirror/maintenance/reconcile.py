"""Drift repair against the ledger's authoritative ``ownerOf``.

Reconciliation compensates for events the live path lost without leaving a
dead-letter entry (for example a crash between delivery and apply).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ledgermirror.exceptions import AssetNotFoundError, LedgerError
from ledgermirror.gateway import Gateway
from ledgermirror.state.store import MirrorStore

_logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    height: int
    checked: int = 0
    repaired: int = 0
    missing: int = 0
    skipped: int = 0
    failed: int = 0


class Reconciler:
    """Compares stored owners with ``ownerOf`` and overwrites mismatches.

    ``policy="store"`` checks every asset the store knows about;
    ``policy="index"`` checks ids ``0..totalSupply-1`` and also creates
    records the store never saw.
    """

    def __init__(self, gateway: Gateway, store: MirrorStore, *, policy: str = "store") -> None:
        if policy not in ("store", "index"):
            raise ValueError(f"unknown reconcile policy {policy!r}")
        self._gateway = gateway
        self._store = store
        self._policy = policy

    async def _asset_ids(self, height: int) -> list[str]:
        if self._policy == "index":
            total = await self._gateway.total_asset_count(block=height)
            return [str(index) for index in range(total)]
        return await self._store.asset_ids()

    async def run(self) -> ReconcileReport:
        height = await self._gateway.current_height()
        asset_ids = await self._asset_ids(height)
        report = ReconcileReport(height=height)
        _logger.info("Reconciling %s assets at height %s (policy=%s)", len(asset_ids), height, self._policy)

        for asset_id in asset_ids:
            report.checked += 1
            try:
                await self._reconcile_one(asset_id, height, report)
            except AssetNotFoundError:
                report.missing += 1
                _logger.debug("Asset %s has no on-chain owner", asset_id)
            except (LedgerError, SQLAlchemyError) as exc:
                report.failed += 1
                _logger.warning("Reconciliation of asset %s failed: %s", asset_id, exc)

        _logger.info(
            "Reconciliation done checked=%s repaired=%s skipped=%s missing=%s failed=%s",
            report.checked,
            report.repaired,
            report.skipped,
            report.missing,
            report.failed,
        )
        return report

    async def _reconcile_one(self, asset_id: str, height: int, report: ReconcileReport) -> None:
        onchain_owner = (await self._gateway.current_owner_of(asset_id, block=height)).lower()
        record = await self._store.get_asset(asset_id)
        if record is not None and record.current_owner == onchain_owner:
            return
        _logger.info(
            "Repairing data for asset %s: stored=%s on-chain=%s",
            asset_id,
            record.current_owner if record is not None else None,
            onchain_owner,
        )
        if not await self._store.overwrite_asset(asset_id, onchain_owner, height):
            report.skipped += 1
            _logger.debug("Asset %s advanced past height %s; repair skipped", asset_id, height)
            return
        report.repaired += 1
