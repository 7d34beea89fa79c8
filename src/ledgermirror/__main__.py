"""Command line entry point: ``python -m ledgermirror`` / ``ledgermirror``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from ledgermirror.config import MirrorConfig
from ledgermirror.exceptions import MirrorConfigError
from ledgermirror.supervisor import SessionSupervisor, install_exception_logger

_logger = logging.getLogger("ledgermirror")


async def run(config: MirrorConfig) -> None:
    loop = asyncio.get_running_loop()
    install_exception_logger(loop)
    supervisor = SessionSupervisor(config)
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, supervisor.request_shutdown)
    await supervisor.run()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ledgermirror",
        description="Mirror ERC-721 ownership from a ledger node into a SQL store",
    )
    parser.add_argument("--store-url", help="SQLAlchemy async URL (overrides LEDGERMIRROR_STORE_URL)")
    parser.add_argument("--start-block", type=int, help="Lowest block to backfill from")
    parser.add_argument(
        "--reconcile-policy",
        choices=["store", "index"],
        help="Asset set checked by reconciliation",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {
        "store_url": args.store_url,
        "start_block": args.start_block,
        "reconcile_policy": args.reconcile_policy,
    }
    try:
        config = MirrorConfig.from_env(**{k: v for k, v in overrides.items() if v is not None}).validate()
    except MirrorConfigError as exc:
        _logger.error("Configuration error: %s", exc)
        return 2

    try:
        asyncio.run(run(config))
    except MirrorConfigError as exc:
        _logger.error("Configuration error: %s", exc)
        return 2
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
