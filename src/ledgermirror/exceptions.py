"""Custom exception hierarchy for ledgermirror.

Every error carries a ``retryable`` flag so callers can decide between
local retry and escalation without inspecting concrete types.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base exception for all ledgermirror errors."""

    retryable: bool = False


class MirrorConfigError(MirrorError):
    """Invalid or missing configuration."""


class LedgerError(MirrorError):
    """Failure reported by (or while talking to) the ledger node."""

    def __init__(self, message: str, *, method: str = "") -> None:
        self.method = method
        super().__init__(message)


class LedgerTransportError(LedgerError):
    """Transient transport failure (network, non-200, malformed JSON-RPC)."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        method: str = "",
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, method=method)


class LedgerUnavailableError(LedgerTransportError):
    """The node could not be reached or dropped the connection."""


class LedgerTimeoutError(LedgerTransportError):
    """The node did not answer within the configured RPC timeout."""


class LedgerRpcError(LedgerError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, *, method: str = "", code: int | None = None) -> None:
        self.code = code
        super().__init__(message, method=method)


class AssetNotFoundError(LedgerRpcError):
    """``ownerOf`` reverted: the asset does not exist (or was burned)."""


class StoreError(MirrorError):
    """Store-level failure."""


class ApplyConflictError(StoreError):
    """The atomic apply unit could not be committed (transaction abort)."""

    retryable = True

    def __init__(self, message: str, *, key: tuple[str, int, str] | None = None) -> None:
        self.key = key
        super().__init__(message)


class PermanentApplyError(MirrorError):
    """The event is logically inapplicable (e.g. malformed fields).

    Such events are routed to the dead-letter table and are never retried
    by the live path.
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class FatalConnectionError(MirrorError):
    """Store or gateway connection could not be established at all."""


class BackfillError(MirrorError):
    """A backfill chunk exhausted its retries; history would have a gap."""

    def __init__(self, message: str, *, from_block: int, to_block: int) -> None:
        self.from_block = from_block
        self.to_block = to_block
        super().__init__(message)
