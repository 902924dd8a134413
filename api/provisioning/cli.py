"""
Command-line database check: connect, ensure extensions, print a JSON report.

    db-bootstrap --extension postgis --extension vector

Reads the same environment as the API (a local `.env` is loaded first).
SIGINT/SIGTERM during the run close the pool before exiting.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Sequence

from dotenv import load_dotenv

from core.config import ConfigError, PoolConfig
from core.logs import setup_logging
from core.pool import ResourcePool
from core.shutdown import ShutdownSignal, install_signal_handlers, remove_signal_handlers

from .service import BootstrapReport, ConnectivityError, EnvironmentBootstrapper

logger = logging.getLogger(__name__)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check database connectivity and required extensions.")
    parser.add_argument(
        "--extension",
        action="append",
        default=None,
        help="Extension to ensure; repeatable (default: DB_EXTENSIONS)",
    )
    parser.add_argument(
        "--grace-ms",
        type=int,
        default=None,
        help="Shutdown grace period in milliseconds (default: DB_SHUTDOWN_GRACE_MS)",
    )
    parser.add_argument(
        "--log-format",
        choices=("json", "text"),
        default=None,
        help="Log output format (default: LOG_FORMAT or json)",
    )
    return parser.parse_args(argv)


def _report_to_dict(report: BootstrapReport) -> dict:
    return {
        "server_time": report.server_time.isoformat() if report.server_time else None,
        "capabilities": [
            {"name": c.name, "outcome": c.outcome.value, "error": c.error} for c in report.capabilities
        ],
        "missing": report.missing,
    }


async def run(config: PoolConfig, *, pool: ResourcePool | None = None) -> BootstrapReport:
    pool = pool or ResourcePool(config)
    bootstrapper = EnvironmentBootstrapper(pool)
    shutdown = ShutdownSignal()
    bootstrapper.register_shutdown_hooks(shutdown)
    installed = install_signal_handlers(shutdown)
    try:
        return await bootstrapper.verify()
    finally:
        remove_signal_handlers(signals=installed)
        shutdown.trigger("cli_done")
        await shutdown.wait()


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    setup_logging(fmt=args.log_format)

    overrides: dict = {}
    if args.extension is not None:
        overrides["capabilities"] = tuple(args.extension)
    if args.grace_ms is not None:
        overrides["shutdown_grace"] = max(0, args.grace_ms) / 1000

    try:
        config = PoolConfig.from_env()
        if overrides:
            config = dataclasses.replace(config, **overrides)
        report = asyncio.run(run(config))
    except (ConfigError, ConnectivityError) as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 1

    print(json.dumps(_report_to_dict(report), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
