"""Session lifecycle: connect, backfill, go live, degrade and restart.

The supervisor owns every resource (store, gateway, periodic tasks) and
hands them to the pipeline components explicitly. A session that fails
for any reason is torn down completely and rebuilt from scratch; the
restarted backfill covers whatever the lost session missed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ledgermirror.config import MirrorConfig
from ledgermirror.exceptions import MirrorConfigError, MirrorError
from ledgermirror.gateway import LedgerGateway, ManagedGateway
from ledgermirror.ingestion.apply import TransferApplier
from ledgermirror.ingestion.backfill import BackfillDriver
from ledgermirror.ingestion.dead_letter import DeadLetterQueue
from ledgermirror.ingestion.live import LiveSubscriber
from ledgermirror.maintenance.periodic import PeriodicTask
from ledgermirror.maintenance.reconcile import Reconciler
from ledgermirror.maintenance.sweeper import RetrySweeper
from ledgermirror.state.store import MirrorStore

_logger = logging.getLogger(__name__)

T = TypeVar("T")

GatewayFactory = Callable[[MirrorConfig], ManagedGateway]
StoreFactory = Callable[[MirrorConfig], MirrorStore]


class SupervisorState(StrEnum):
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    LIVE = "live"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"


def _default_gateway(config: MirrorConfig) -> ManagedGateway:
    return LedgerGateway(config)


def _default_store(config: MirrorConfig) -> MirrorStore:
    return MirrorStore(config.store_url)


def log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Event loop exception handler: log unhandled async failures instead of dropping them."""
    exc = context.get("exception")
    _logger.error(
        "Unhandled asynchronous failure: %s",
        context.get("message", "unknown error"),
        exc_info=exc if isinstance(exc, BaseException) else None,
    )


def install_exception_logger(loop: asyncio.AbstractEventLoop) -> None:
    loop.set_exception_handler(log_loop_exception)


class SessionSupervisor:
    """Runs the mirror pipeline until :meth:`request_shutdown` is called.

    State machine::

        CONNECTING -> BACKFILLING -> LIVE -> DEGRADED -> CONNECTING ...
        (any state) -> SHUTTING_DOWN

    Connecting retries forever with ``connect_retry_delay`` between
    attempts. Only a :class:`MirrorConfigError` escapes :meth:`run`; every
    other failure degrades the session and triggers a restart after
    ``restart_delay``.
    """

    def __init__(
        self,
        config: MirrorConfig,
        *,
        gateway_factory: GatewayFactory | None = None,
        store_factory: StoreFactory | None = None,
        on_state_change: Callable[[SupervisorState], None] | None = None,
    ) -> None:
        self._config = config
        self._gateway_factory = gateway_factory or _default_gateway
        self._store_factory = store_factory or _default_store
        self._on_state_change = on_state_change
        self._shutdown = asyncio.Event()
        self._store: MirrorStore | None = None
        self._gateway: ManagedGateway | None = None
        self._periodic: list[PeriodicTask] = []
        self.state = SupervisorState.CONNECTING
        self.history: list[SupervisorState] = []
        self.sessions = 0
        self.last_error: BaseException | None = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        if not self._shutdown.is_set():
            _logger.info("Shutdown requested")
        self._shutdown.set()

    def _set_state(self, state: SupervisorState) -> None:
        if self.history and self.state == state:
            return
        _logger.info("Supervisor state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)
        if self._on_state_change is not None:
            self._on_state_change(state)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        try:
            while not self._shutdown.is_set():
                await self._run_session()
        finally:
            self._set_state(SupervisorState.SHUTTING_DOWN)
            await self._teardown()
            _logger.info("Supervisor stopped after %s sessions", self.sessions)

    async def _run_session(self) -> None:
        self._set_state(SupervisorState.CONNECTING)
        connected = await self._connect()
        if connected is None:
            return
        self.sessions += 1
        store, gateway = connected
        config = self._config

        applier = TransferApplier(store)
        dead_letters = DeadLetterQueue(store, retry_ceiling=config.retry_ceiling)
        backfill = BackfillDriver(
            gateway,
            store,
            applier,
            dead_letters,
            chunk_size=config.chunk_size,
            attempts=config.backfill_attempts,
            backoff=config.backfill_backoff,
            start_block=config.start_block,
            max_catchup_passes=config.max_catchup_passes,
        )
        reconciler = Reconciler(gateway, store, policy=config.reconcile_policy)
        sweeper = RetrySweeper(applier, dead_letters, quiet_period=config.sweep_quiet_period)
        subscriber = LiveSubscriber(
            gateway,
            applier,
            dead_letters,
            queue_size=config.live_queue_size,
            drain_timeout=config.live_drain_timeout,
        )

        try:
            self._set_state(SupervisorState.BACKFILLING)
            backfilled = await self._until_shutdown(backfill.run())
            if config.reconcile_after_backfill and not self._shutdown.is_set():
                await self._until_shutdown(reconciler.run())
            if self._shutdown.is_set():
                return

            self._set_state(SupervisorState.LIVE)
            self._periodic = [
                PeriodicTask("reconcile", config.reconcile_interval, reconciler.run),
                PeriodicTask("sweep", config.sweep_interval, sweeper.run),
            ]
            for task in self._periodic:
                task.start()
            # Live picks up exactly where backfill stopped.
            live_from = backfilled.to_block + 1 if backfilled is not None else None
            await self._until_shutdown(subscriber.run(from_block=live_from))
        except MirrorConfigError:
            raise
        except (MirrorError, SQLAlchemyError) as exc:
            self.last_error = exc
            _logger.warning("Session failed: %s: %s", type(exc).__name__, exc)
        except Exception as exc:
            self.last_error = exc
            _logger.exception("Session failed unexpectedly")

        if self._shutdown.is_set():
            return
        self._set_state(SupervisorState.DEGRADED)
        await self._teardown()
        await self._wait_for_shutdown(self._config.restart_delay)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def _connect(self) -> tuple[MirrorStore, ManagedGateway] | None:
        """Open store and gateway, retrying until success; ``None`` on shutdown."""
        attempt = 0
        while not self._shutdown.is_set():
            attempt += 1
            store = self._store_factory(self._config)
            gateway = self._gateway_factory(self._config)
            try:
                await store.connect()
                await gateway.connect()
            except MirrorConfigError:
                await store.close()
                raise
            except (MirrorError, SQLAlchemyError, OSError) as exc:
                _logger.warning("Connection attempt %s failed: %s", attempt, exc)
                await gateway.close()
                await store.close()
                if await self._wait_for_shutdown(self._config.connect_retry_delay):
                    return None
                continue
            self._store, self._gateway = store, gateway
            _logger.info("Connected (attempt %s)", attempt)
            return store, gateway
        return None

    async def _teardown(self) -> None:
        """Release resources: periodic tasks first, then gateway, then store."""
        periodic, self._periodic = self._periodic, []
        for task in periodic:
            await task.stop()

        gateway, self._gateway = self._gateway, None
        if gateway is not None:
            await gateway.close()

        store, self._store = self._store, None
        if store is not None:
            await store.close()

    # ------------------------------------------------------------------
    # Shutdown helpers
    # ------------------------------------------------------------------

    async def _wait_for_shutdown(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; ``True`` if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), delay)
        except TimeoutError:
            return False
        return True

    async def _until_shutdown(self, work: Awaitable[T]) -> T | None:
        """Run ``work`` until it finishes or shutdown is requested, cancelling it in the latter case."""
        task = asyncio.ensure_future(work)
        waiter = asyncio.create_task(self._shutdown.wait())
        try:
            done, _pending = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task in done:
                return task.result()
            return None
        finally:
            for pending in (task, waiter):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
