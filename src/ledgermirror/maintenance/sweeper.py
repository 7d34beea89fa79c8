"""Periodic re-application of dead-lettered events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from ledgermirror.ingestion.apply import ApplyOutcome, TransferApplier
from ledgermirror.ingestion.dead_letter import DeadLetterQueue
from ledgermirror.state.events import EventSource

_logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    attempted: int = 0
    resolved: int = 0
    failed: int = 0
    terminal: int = 0


class RetrySweeper:
    """Retries due dead-letter entries; never deletes entries that keep failing."""

    def __init__(
        self,
        applier: TransferApplier,
        dead_letters: DeadLetterQueue,
        *,
        quiet_period: timedelta | float,
    ) -> None:
        self._applier = applier
        self._dead_letters = dead_letters
        self._quiet_period = quiet_period

    async def run(self) -> SweepReport:
        report = SweepReport()
        entries = await self._dead_letters.due_for_retry(self._quiet_period)
        if not entries:
            return report
        _logger.info("Retrying %s dead-letter entries", len(entries))

        for entry in entries:
            report.attempted += 1
            raw = entry.to_raw()
            try:
                result = await self._applier.apply_raw(raw, source=EventSource.RETRY)
                if result.ok:
                    await self._dead_letters.resolve(entry.key)
                    report.resolved += 1
                    continue
                updated = await self._dead_letters.record(
                    raw,
                    result.error or result.outcome.value,
                    terminal=result.outcome == ApplyOutcome.REJECTED,
                )
            except SQLAlchemyError as exc:
                report.failed += 1
                _logger.warning("Dead-letter retry of %s could not be recorded: %s", entry.key, exc)
                continue
            report.failed += 1
            if updated.retry_count >= self._dead_letters.retry_ceiling:
                report.terminal += 1

        _logger.info(
            "Sweep done attempted=%s resolved=%s failed=%s terminal=%s",
            report.attempted,
            report.resolved,
            report.failed,
            report.terminal,
        )
        return report
