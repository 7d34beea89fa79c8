"""ledgermirror - Async mirror of on-chain asset ownership into a SQL store."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ledgermirror")
except PackageNotFoundError:
    __version__ = "0+local"
from ledgermirror.config import MirrorConfig
from ledgermirror.exceptions import (
    ApplyConflictError,
    AssetNotFoundError,
    BackfillError,
    FatalConnectionError,
    LedgerError,
    LedgerRpcError,
    LedgerTimeoutError,
    LedgerTransportError,
    LedgerUnavailableError,
    MirrorConfigError,
    MirrorError,
    PermanentApplyError,
    StoreError,
)
from ledgermirror.gateway import Gateway, LedgerGateway
from ledgermirror.ingestion.apply import ApplyOutcome, ApplyResult, TransferApplier
from ledgermirror.ingestion.backfill import BackfillDriver, BackfillReport
from ledgermirror.ingestion.dead_letter import DeadLetterQueue
from ledgermirror.ingestion.live import LiveSubscriber
from ledgermirror.maintenance.periodic import PeriodicTask
from ledgermirror.maintenance.reconcile import ReconcileReport, Reconciler
from ledgermirror.maintenance.sweeper import RetrySweeper, SweepReport
from ledgermirror.state.events import EventSource, RawTransferEvent, TransferEvent
from ledgermirror.state.records import AssetRecord, DeadLetterEntry, TransferRecord
from ledgermirror.state.store import MirrorStore
from ledgermirror.supervisor import SessionSupervisor, SupervisorState

__all__ = [
    "__version__",
    "ApplyConflictError",
    "ApplyOutcome",
    "ApplyResult",
    "AssetNotFoundError",
    "AssetRecord",
    "BackfillDriver",
    "BackfillError",
    "BackfillReport",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "EventSource",
    "FatalConnectionError",
    "Gateway",
    "LedgerError",
    "LedgerGateway",
    "LedgerRpcError",
    "LedgerTimeoutError",
    "LedgerTransportError",
    "LedgerUnavailableError",
    "LiveSubscriber",
    "MirrorConfig",
    "MirrorConfigError",
    "MirrorError",
    "MirrorStore",
    "PeriodicTask",
    "PermanentApplyError",
    "RawTransferEvent",
    "ReconcileReport",
    "Reconciler",
    "RetrySweeper",
    "SessionSupervisor",
    "StoreError",
    "SupervisorState",
    "SweepReport",
    "TransferApplier",
    "TransferEvent",
    "TransferRecord",
]
