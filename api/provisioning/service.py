"""
Startup and shutdown of the database environment.

- verify(): one liveness round trip; failure is fatal to startup
- ensure_capabilities(): best-effort `CREATE EXTENSION` for each requested name
- register_shutdown_hooks(): close the pool once when the process is asked to stop

Extensions usually need elevated privileges that a deployment may not have, so
a failed extension is logged and reported, never raised.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

import asyncpg

from core.pool import PoolError, ResourcePool
from core.shutdown import ShutdownSignal

from . import repository

logger = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    pass


class ConnectivityError(BootstrapError):
    pass


class CapabilityError(BootstrapError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Extension {name!r} is not available: {reason}")
        self.name = name
        self.reason = reason


class CapabilityOutcome(str, enum.Enum):
    ALREADY_PRESENT = "already_present"
    ENABLED = "enabled"
    FAILED = "failed"


@dataclass(frozen=True)
class CapabilityResult:
    name: str
    outcome: CapabilityOutcome
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.outcome is not CapabilityOutcome.FAILED


@dataclass(frozen=True)
class BootstrapReport:
    server_time: datetime | None
    capabilities: list[CapabilityResult] = field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        return [c.name for c in self.capabilities if not c.available]


def _dedupe(names: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        name = (name or "").strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


class EnvironmentBootstrapper:
    def __init__(self, pool: ResourcePool) -> None:
        self.pool = pool
        self.report: BootstrapReport | None = None

    async def verify(self) -> BootstrapReport:
        """
        Check connectivity, then ensure the configured extensions.

        Raises ConnectivityError if the store cannot be reached; this is not retried.
        """
        try:
            row = await repository.server_time(self.pool)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, PoolError) as exc:
            logger.error("database_connect_failed error=%s", exc)
            raise ConnectivityError(str(exc) or exc.__class__.__name__) from exc

        current_time = (row or {}).get("current_time")
        logger.info("database_connected current_time=%s", current_time)

        results = await self.ensure_capabilities(self.pool.config.capabilities)
        self.report = BootstrapReport(server_time=current_time, capabilities=results)
        return self.report

    async def ensure_capabilities(self, names: Iterable[str]) -> list[CapabilityResult]:
        """
        Enable each named extension if it is not already present.

        Each name gets its own connection and its own outcome; one failure does
        not stop the rest.
        """
        results: list[CapabilityResult] = []
        for name in _dedupe(names):
            try:
                outcome = await self._ensure_one(name)
            except CapabilityError as exc:
                logger.warning(
                    "capability_failed name=%s error=%s (may need manual installation)",
                    name,
                    exc.reason,
                    extra={"capability": name},
                )
                results.append(CapabilityResult(name=name, outcome=CapabilityOutcome.FAILED, error=exc.reason))
                continue
            results.append(CapabilityResult(name=name, outcome=outcome))

        if results and all(r.available for r in results):
            logger.info("capabilities_ready names=%s", ",".join(r.name for r in results))
        return results

    async def _ensure_one(self, name: str) -> CapabilityOutcome:
        try:
            async with self.pool.lease() as conn:
                if await repository.extension_enabled(conn, name):
                    logger.info("capability_already_present name=%s", name, extra={"capability": name})
                    return CapabilityOutcome.ALREADY_PRESENT
                logger.info("capability_installing name=%s", name, extra={"capability": name})
                await repository.enable_extension(conn, name)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, PoolError, ValueError) as exc:
            raise CapabilityError(name, str(exc) or exc.__class__.__name__) from exc

        logger.info("capability_enabled name=%s", name, extra={"capability": name})
        return CapabilityOutcome.ENABLED

    def register_shutdown_hooks(self, shutdown: ShutdownSignal) -> None:
        shutdown.add_handler(self.shutdown)

    async def shutdown(self) -> None:
        """
        Drain and close the pool. Never raises.
        """
        try:
            await self.pool.shutdown(self.pool.config.shutdown_grace)
        except Exception as exc:
            logger.error("database_pool_close_failed error=%s", exc)
            return
        stats = self.pool.stats()
        logger.info(
            "database_pool_closed",
            extra={"pool_idle": stats.idle, "pool_leased": stats.leased},
        )
