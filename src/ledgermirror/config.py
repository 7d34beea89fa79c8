"""Pipeline configuration for ledgermirror."""

from __future__ import annotations

import dataclasses
import os
import re
from typing import Any

from ledgermirror._constants import (
    DEFAULT_BACKFILL_ATTEMPTS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_RECONCILE_INTERVAL,
    DEFAULT_RETRY_CEILING,
    DEFAULT_SWEEP_INTERVAL,
)
from ledgermirror.exceptions import MirrorConfigError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

RECONCILE_POLICIES = frozenset({"store", "index"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MirrorConfig:
    """Pipeline configuration.

    Parameters
    ----------
    rpc_url : str
        HTTP JSON-RPC endpoint of the ledger node.
    contract_address : str
        Address of the asset contract whose ``Transfer`` events are mirrored.
    store_url : str
        SQLAlchemy async database URL (e.g. ``sqlite+aiosqlite:///mirror.db``
        or ``postgresql+asyncpg://...``).
    ws_url : str or None
        Optional websocket JSON-RPC endpoint. When set, live events are
        received via ``eth_subscribe``; otherwise the node is polled.
    start_block : int
        Lowest block backfill will ever scan (typically the deployment block).
    chunk_size : int
        Number of blocks fetched per ``eth_getLogs`` backfill request.
    backfill_attempts : int
        Attempts per chunk before backfill gives up and escalates.
    backfill_backoff : float
        Base delay in seconds; attempt ``n`` waits ``backoff * 2 ** (n - 1)``.
    max_catchup_passes : int
        Extra backfill passes run when the chain head moved during backfill.
    reconcile_interval : float
        Seconds between reconciliation passes.
    reconcile_policy : str
        ``"store"`` reconciles every asset known to the store, ``"index"``
        walks ids ``0..totalSupply-1``.
    reconcile_after_backfill : bool
        Run one reconciliation pass as soon as backfill completes.
    sweep_interval : float
        Seconds between dead-letter retry sweeps.
    sweep_quiet_period : float
        Minimum seconds since the last attempt before an entry is retried.
    retry_ceiling : int
        Dead-letter retry count at which an entry becomes terminal.
    live_queue_size : int
        Bound of the live delivery queue; overflow goes to the dead-letter table.
    live_drain_timeout : float
        Seconds allowed for draining queued live events after a stream failure.
    poll_interval : float
        Seconds between ``eth_getLogs`` polls when no websocket is configured.
    rpc_timeout : float
        Per-request timeout for every RPC call.
    connect_retry_delay : float
        Delay between failed connection attempts.
    restart_delay : float
        Delay after tearing down a degraded pipeline before reconnecting.
    """

    rpc_url: str
    contract_address: str
    store_url: str = "sqlite+aiosqlite:///ledgermirror.db"
    ws_url: str | None = None
    start_block: int = 0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    backfill_attempts: int = DEFAULT_BACKFILL_ATTEMPTS
    backfill_backoff: float = 2.0
    max_catchup_passes: int = 3
    reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL
    reconcile_policy: str = "store"
    reconcile_after_backfill: bool = False
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    sweep_quiet_period: float = DEFAULT_SWEEP_INTERVAL
    retry_ceiling: int = DEFAULT_RETRY_CEILING
    live_queue_size: int = 1000
    live_drain_timeout: float = 10.0
    poll_interval: float = 4.0
    rpc_timeout: float = 30.0
    connect_retry_delay: float = 10.0
    restart_delay: float = 5.0

    def validate(self) -> MirrorConfig:
        """Check invariants, raising :class:`MirrorConfigError` on the first violation."""
        if not self.rpc_url:
            raise MirrorConfigError("rpc_url is required")
        if not _ADDRESS_RE.match(self.contract_address or ""):
            raise MirrorConfigError(f"contract_address is not a 20-byte hex address: {self.contract_address!r}")
        if not self.store_url:
            raise MirrorConfigError("store_url is required")
        if self.chunk_size < 1:
            raise MirrorConfigError("chunk_size must be >= 1")
        if self.backfill_attempts < 1:
            raise MirrorConfigError("backfill_attempts must be >= 1")
        if self.retry_ceiling < 1:
            raise MirrorConfigError("retry_ceiling must be >= 1")
        if self.live_queue_size < 1:
            raise MirrorConfigError("live_queue_size must be >= 1")
        if self.start_block < 0:
            raise MirrorConfigError("start_block must be >= 0")
        if self.reconcile_policy not in RECONCILE_POLICIES:
            raise MirrorConfigError(
                f"reconcile_policy must be one of {sorted(RECONCILE_POLICIES)}, got {self.reconcile_policy!r}"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> MirrorConfig:
        """Create configuration from environment variables.

        Reads ``LEDGERMIRROR_*`` variables. ``RPC_URL``, ``WS_URL``,
        ``STORE_URL`` and ``CONTRACT_ADDRESS`` are accepted as fallbacks
        for the four connection settings. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        MirrorConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "rpc_url": ("LEDGERMIRROR_RPC_URL", "RPC_URL"),
            "ws_url": ("LEDGERMIRROR_WS_URL", "WS_URL"),
            "store_url": ("LEDGERMIRROR_STORE_URL", "STORE_URL"),
            "contract_address": ("LEDGERMIRROR_CONTRACT_ADDRESS", "CONTRACT_ADDRESS"),
            "reconcile_policy": ("LEDGERMIRROR_RECONCILE_POLICY",),
        }
        _ENV_INT_MAP = {
            "LEDGERMIRROR_START_BLOCK": "start_block",
            "LEDGERMIRROR_CHUNK_SIZE": "chunk_size",
            "LEDGERMIRROR_BACKFILL_ATTEMPTS": "backfill_attempts",
            "LEDGERMIRROR_MAX_CATCHUP_PASSES": "max_catchup_passes",
            "LEDGERMIRROR_RETRY_CEILING": "retry_ceiling",
            "LEDGERMIRROR_LIVE_QUEUE_SIZE": "live_queue_size",
        }
        _ENV_FLOAT_MAP = {
            "LEDGERMIRROR_BACKFILL_BACKOFF": "backfill_backoff",
            "LEDGERMIRROR_RECONCILE_INTERVAL": "reconcile_interval",
            "LEDGERMIRROR_SWEEP_INTERVAL": "sweep_interval",
            "LEDGERMIRROR_SWEEP_QUIET_PERIOD": "sweep_quiet_period",
            "LEDGERMIRROR_LIVE_DRAIN_TIMEOUT": "live_drain_timeout",
            "LEDGERMIRROR_POLL_INTERVAL": "poll_interval",
            "LEDGERMIRROR_RPC_TIMEOUT": "rpc_timeout",
            "LEDGERMIRROR_CONNECT_RETRY_DELAY": "connect_retry_delay",
            "LEDGERMIRROR_RESTART_DELAY": "restart_delay",
        }

        config_kwargs: dict[str, Any] = {}
        for field_name, env_keys in _ENV_STR_MAP.items():
            for env_key in env_keys:
                val = env.get(env_key)
                if val:
                    config_kwargs[field_name] = val.strip()
                    break

        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise MirrorConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "reconcile_after_backfill" not in overrides:
            config_kwargs["reconcile_after_backfill"] = _env_bool(
                env.get("LEDGERMIRROR_RECONCILE_AFTER_BACKFILL"),
                False,
            )

        config_kwargs.update(overrides)

        for required in ("rpc_url", "contract_address"):
            if not config_kwargs.get(required):
                raise MirrorConfigError(f"Missing required setting: {required}")

        return cls(**config_kwargs)
