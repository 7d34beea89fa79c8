"""Typed access to the ledger node.

The gateway has no logic beyond translating between web3 calls and the
mirror's event types. It assumes nothing about idempotence; callers own that.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, Protocol

import aiohttp
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, MismatchedABI, Web3Exception, Web3RPCError
from websockets.exceptions import ConnectionClosed

from ledgermirror._constants import ERC721_ABI, TRANSFER_SIGNATURE, USER_AGENT
from ledgermirror.config import MirrorConfig
from ledgermirror.exceptions import (
    AssetNotFoundError,
    FatalConnectionError,
    LedgerError,
    LedgerRpcError,
    LedgerTimeoutError,
    LedgerTransportError,
    LedgerUnavailableError,
    MirrorError,
)
from ledgermirror.state.events import RawTransferEvent

_logger = logging.getLogger(__name__)

TRANSFER_TOPIC = AsyncWeb3.to_hex(AsyncWeb3.keccak(text=TRANSFER_SIGNATURE))


class Gateway(Protocol):
    """What the pipeline needs from the ledger. Every call may raise a ``LedgerError``."""

    async def current_height(self) -> int: ...

    async def range_events(self, from_block: int, to_block: int) -> list[RawTransferEvent]: ...

    def subscribe_events(self, *, from_block: int | None = None) -> AsyncGenerator[RawTransferEvent, None]: ...

    async def current_owner_of(self, asset_id: str, *, block: int | None = None) -> str: ...

    async def total_asset_count(self, *, block: int | None = None) -> int: ...


class ManagedGateway(Gateway, Protocol):
    """A :class:`Gateway` whose connection lifecycle the supervisor owns."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...


def _rpc_error_code(exc: Web3RPCError) -> int | None:
    response = getattr(exc, "rpc_response", None)
    error = response.get("error") if isinstance(response, Mapping) else None
    code = error.get("code") if isinstance(error, Mapping) else None
    return code if isinstance(code, int) else None


@contextmanager
def _ledger_errors(method: str) -> Iterator[None]:
    """Map web3 and network failures onto the ``LedgerError`` hierarchy."""
    try:
        yield
    except TimeoutError as exc:
        raise LedgerTimeoutError(f"{method} timed out", method=method) from exc
    except Web3RPCError as exc:
        raise LedgerRpcError(f"{method} failed: {exc}", method=method, code=_rpc_error_code(exc)) from exc
    except Web3Exception as exc:
        raise LedgerTransportError(f"{method} failed: {exc}", method=method) from exc
    except aiohttp.ClientResponseError as exc:
        raise LedgerUnavailableError(f"{method} HTTP {exc.status}", method=method, status_code=exc.status) from exc
    except (aiohttp.ClientError, OSError) as exc:
        raise LedgerUnavailableError(f"{method} failed: {exc}", method=method) from exc


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class LedgerGateway:
    """web3 gateway for one ERC-721 contract.

    Usage::

        async with LedgerGateway(config) as gateway:
            head = await gateway.current_height()

    Live events come from an ``eth_subscribe`` websocket when ``ws_url`` is
    configured, otherwise from polling ``eth_getLogs`` every ``poll_interval``.
    """

    def __init__(
        self,
        config: MirrorConfig,
        *,
        w3: AsyncWeb3 | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._address = AsyncWeb3.to_checksum_address(config.contract_address)
        self._w3 = w3
        self._contract: Any = None
        self._external_session = session is not None
        self._http_session = session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LedgerGateway:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Build the web3 client and check the node answers."""
        if self._w3 is None:
            provider = AsyncHTTPProvider(
                self._config.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._config.rpc_timeout)},
                exception_retry_configuration=None,
            )
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession(headers={"user-agent": USER_AGENT})
            await provider.cache_async_session(self._http_session)
            self._w3 = AsyncWeb3(provider)
        self._contract = self._w3.eth.contract(address=self._address, abi=ERC721_ABI)
        try:
            head = await self.current_height()
        except LedgerError as exc:
            await self.close()
            raise FatalConnectionError(f"Ledger node unreachable at {self._config.rpc_url}: {exc}") from exc
        _logger.debug("Gateway connected head=%s", head)

    async def close(self) -> None:
        self._contract = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._w3 = None

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None or self._contract is None:
            raise MirrorError("Gateway not connected. Use 'async with LedgerGateway(...) as gateway:'")
        return self._w3

    def _log_filter(self) -> dict[str, Any]:
        return {"address": self._address, "topics": [TRANSFER_TOPIC]}

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode(self, log: Mapping[str, Any] | None) -> RawTransferEvent | None:
        """Decode one ``Transfer`` log, or ``None`` for reorged or non-ERC-721 logs."""
        if not log or log.get("removed"):
            return None
        entry = dict(log)
        entry["topics"] = [HexBytes(topic) for topic in entry.get("topics") or []]
        entry["data"] = HexBytes(entry.get("data") or b"")
        try:
            event = self._contract.events.Transfer().process_log(entry)
        except MismatchedABI:
            # ERC-20 style Transfer: tokenId is not indexed.
            return None
        log_index = event.get("logIndex")
        return RawTransferEvent(
            asset_id=str(event["args"]["tokenId"]),
            from_address=event["args"]["from"].lower(),
            to_address=event["args"]["to"].lower(),
            block_number=_as_int(event["blockNumber"]),
            tx_hash=AsyncWeb3.to_hex(HexBytes(event["transactionHash"])),
            log_index=_as_int(log_index) if log_index is not None else None,
        )

    # ------------------------------------------------------------------
    # Contract surface
    # ------------------------------------------------------------------

    async def current_height(self) -> int:
        w3 = self._require_w3()
        with _ledger_errors("eth_blockNumber"):
            return int(await w3.eth.block_number)

    async def range_events(self, from_block: int, to_block: int) -> list[RawTransferEvent]:
        """All decoded ``Transfer`` events in ``[from_block, to_block]``."""
        w3 = self._require_w3()
        query = {**self._log_filter(), "fromBlock": from_block, "toBlock": to_block}
        with _ledger_errors("eth_getLogs"):
            logs = await w3.eth.get_logs(query)
        events: list[RawTransferEvent] = []
        for log in logs:
            event = self._decode(log)
            if event is not None:
                events.append(event)
        return events

    async def current_owner_of(self, asset_id: str, *, block: int | None = None) -> str:
        self._require_w3()
        call = self._contract.functions.ownerOf(int(asset_id))
        with _ledger_errors("eth_call"):
            try:
                owner = await call.call(block_identifier=block if block is not None else "latest")
            except (ContractLogicError, BadFunctionCallOutput) as exc:
                raise AssetNotFoundError(f"ownerOf({asset_id}) reverted", method="eth_call") from exc
        return str(owner).lower()

    async def total_asset_count(self, *, block: int | None = None) -> int:
        self._require_w3()
        call = self._contract.functions.totalSupply()
        with _ledger_errors("eth_call"):
            return int(await call.call(block_identifier=block if block is not None else "latest"))

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    async def subscribe_events(self, *, from_block: int | None = None) -> AsyncGenerator[RawTransferEvent, None]:
        """Live ``Transfer`` events starting at ``from_block`` (or the next block when omitted).

        Never ends normally: transport loss raises ``LedgerUnavailableError``.
        """
        self._require_w3()
        if self._config.ws_url:
            events = self._websocket_events(self._config.ws_url, from_block)
        else:
            events = self._polled_events(from_block)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def _catch_up(self, from_block: int, to_block: int) -> AsyncGenerator[RawTransferEvent, None]:
        step = max(1, self._config.chunk_size)
        for start in range(from_block, to_block + 1, step):
            for event in await self.range_events(start, min(start + step - 1, to_block)):
                yield event

    async def _polled_events(self, from_block: int | None) -> AsyncGenerator[RawTransferEvent, None]:
        try:
            next_block = from_block if from_block is not None else await self.current_height() + 1
            while True:
                head = await self.current_height()
                if head >= next_block:
                    async for event in self._catch_up(next_block, head):
                        yield event
                    next_block = head + 1
                await asyncio.sleep(self._config.poll_interval)
        except LedgerError as exc:
            raise LedgerUnavailableError(f"Log polling stopped: {exc}", method="eth_getLogs") from exc

    async def _websocket_events(
        self, ws_url: str, from_block: int | None
    ) -> AsyncGenerator[RawTransferEvent, None]:
        provider = WebSocketProvider(ws_url, request_timeout=self._config.rpc_timeout)
        try:
            async with AsyncWeb3(provider) as ws_w3:
                subscription_id = await ws_w3.eth.subscribe("logs", self._log_filter())
                _logger.debug("Subscribed to Transfer logs id=%s", subscription_id)
                try:
                    if from_block is not None:
                        # Logs between from_block and the head predate the subscription.
                        async for event in self._catch_up(from_block, await self.current_height()):
                            yield event
                    async for message in ws_w3.socket.process_subscriptions():
                        payload = message.get("params", message)
                        if payload.get("subscription") not in (None, subscription_id):
                            continue
                        event = self._decode(payload.get("result"))
                        if event is not None:
                            yield event
                finally:
                    try:
                        await ws_w3.eth.unsubscribe(subscription_id)
                    except (ConnectionClosed, Web3Exception, OSError):
                        _logger.debug("eth_unsubscribe failed for %s", subscription_id, exc_info=True)
        except (ConnectionClosed, Web3Exception, OSError) as exc:
            raise LedgerUnavailableError(f"Websocket subscription lost: {exc}", method="eth_subscribe") from exc
        raise LedgerUnavailableError("Websocket subscription ended", method="eth_subscribe")
