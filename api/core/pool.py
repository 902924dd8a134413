"""
Bounded connection pool over asyncpg.

Nothing is opened at construction. Connections are created on demand (up to
`max_size`), reused most-recently-released first, closed after sitting idle for
`idle_timeout`, and reclaimed on shutdown.

Every change to the bookkeeping (idle list, leased set, pending reservations)
happens under one asyncio.Condition. Opening and closing connections happens
outside it, so a slow connect never blocks unrelated acquire()/release() calls.

Usage:

    async with pool.lease() as conn:
        row = await conn.fetchrow("SELECT now()")
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import asyncpg

from .config import PoolConfig

logger = logging.getLogger(__name__)

Connector = Callable[[PoolConfig], Awaitable[Any]]


class PoolError(RuntimeError):
    pass


# Recoverable: the caller decides whether to retry or report "busy".
class AcquisitionTimeout(PoolError):
    pass


class PoolClosed(PoolError):
    pass


# Programmer error: releasing or using a handle that is not currently leased.
class InvalidHandle(PoolError):
    pass


class HandleState(str, enum.Enum):
    IDLE = "idle"
    LEASED = "leased"
    CLOSED = "closed"


@dataclass(frozen=True)
class PoolStats:
    idle: int
    leased: int
    pending: int
    max_size: int
    closing: bool
    closed: bool


async def connect(config: PoolConfig) -> asyncpg.Connection:
    return await asyncpg.connect(dsn=config.dsn, ssl=config.ssl_option())


class ConnectionHandle:
    """
    A pooled connection on loan to one caller.

    The pool owns the underlying connection; query helpers only work while the
    handle is leased.
    """

    def __init__(self, pool: ResourcePool, connection: Any, handle_id: int) -> None:
        self._pool = pool
        self.connection = connection
        self.id = handle_id
        self.state = HandleState.LEASED
        self.idle_since: float | None = None

    def __repr__(self) -> str:
        return f"<ConnectionHandle id={self.id} state={self.state.value}>"

    def _leased_connection(self) -> Any:
        if self.state is not HandleState.LEASED:
            raise InvalidHandle(f"Connection handle {self.id} is {self.state.value}, not leased.")
        return self.connection

    async def fetch(self, sql: str, *args: Any) -> list[asyncpg.Record]:
        return await self._leased_connection().fetch(sql, *args)

    async def fetchrow(self, sql: str, *args: Any) -> asyncpg.Record | None:
        return await self._leased_connection().fetchrow(sql, *args)

    async def fetchval(self, sql: str, *args: Any) -> Any:
        return await self._leased_connection().fetchval(sql, *args)

    async def execute(self, sql: str, *args: Any) -> str:
        return await self._leased_connection().execute(sql, *args)


class ResourcePool:
    def __init__(self, config: PoolConfig, *, connector: Connector = connect) -> None:
        self.config = config
        self._connector = connector
        self._cond = asyncio.Condition()
        # Stack: the most recently released handle is at the end.
        self._idle: list[ConnectionHandle] = []
        self._leased: set[ConnectionHandle] = set()
        self._pending = 0
        self._ids = itertools.count(1)
        self._closing = False
        self._closed = False
        self._reaper: asyncio.Task | None = None
        # Evicted handles whose connections are still being closed.
        self._evicting: set[ConnectionHandle] = set()

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def leased_count(self) -> int:
        return len(self._leased)

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._leased)

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> PoolStats:
        return PoolStats(
            idle=len(self._idle),
            leased=len(self._leased),
            pending=self._pending,
            max_size=self.config.max_size,
            closing=self._closing,
            closed=self._closed,
        )

    def _drained(self) -> bool:
        return not self._leased and self._pending == 0

    async def acquire(self) -> ConnectionHandle:
        """
        Lease a connection, opening a new one if there is room.

        Raises AcquisitionTimeout when no connection becomes available (or a
        new one cannot be opened) within `acquire_timeout`, and PoolClosed once
        shutdown has started. Driver errors from connecting propagate as-is.
        """
        if self._closing:
            raise PoolClosed("Connection pool is shut down.")
        self._start_reaper()

        loop = asyncio.get_running_loop()
        timeout = self.config.acquire_timeout
        deadline = loop.time() + timeout

        async with self._cond:
            while True:
                if self._closing:
                    raise PoolClosed("Connection pool is shut down.")
                handle = self._pop_live_idle()
                if handle is not None:
                    handle.state = HandleState.LEASED
                    handle.idle_since = None
                    self._leased.add(handle)
                    return handle
                if self.size + self._pending < self.config.max_size:
                    self._pending += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AcquisitionTimeout(f"No connection available within {timeout}s.")
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    raise AcquisitionTimeout(f"No connection available within {timeout}s.") from None

        try:
            connection = await asyncio.wait_for(
                self._connector(self.config),
                max(deadline - loop.time(), 0),
            )
        except asyncio.TimeoutError:
            await self._drop_reservation()
            logger.warning("connect_timeout timeout_s=%s", timeout)
            raise AcquisitionTimeout(f"Could not open a connection within {timeout}s.") from None
        except BaseException:
            await self._drop_reservation()
            raise

        # Synchronous from here to the lease: the reservation becomes a handle atomically.
        self._pending -= 1
        if self._closed:
            await self._close(connection)
            raise PoolClosed("Connection pool is shut down.")
        handle = ConnectionHandle(self, connection, next(self._ids))
        self._leased.add(handle)
        logger.debug("connection_opened handle=%s size=%s", handle.id, self.size)
        return handle

    def _pop_live_idle(self) -> ConnectionHandle | None:
        # Caller holds the lock. Connections that died while idle (server
        # restart, server-side idle kill) are dropped, freeing their slots.
        dropped = 0
        handle = None
        while self._idle:
            candidate = self._idle.pop()
            if not candidate.connection.is_closed():
                handle = candidate
                break
            candidate.state = HandleState.CLOSED
            dropped += 1
        if dropped:
            logger.info("dead_idle_dropped count=%s", dropped)
            self._cond.notify_all()
        return handle

    async def _drop_reservation(self) -> None:
        # Decrement first so a second cancellation cannot strand the slot.
        self._pending -= 1
        async with self._cond:
            self._cond.notify_all()

    async def release(self, handle: ConnectionHandle) -> None:
        """
        Return a leased handle to the pool.

        The session is reset first (open transaction aborted, listeners and
        session state cleared) so the next borrower starts clean. Connections
        that are broken, fail to reset, or come back during shutdown are closed
        instead of being made idle.
        """
        if handle._pool is not self:
            raise InvalidHandle(f"Connection handle {handle.id} does not belong to this pool.")
        if handle.state is not HandleState.LEASED:
            raise InvalidHandle(f"Connection handle {handle.id} is {handle.state.value}, not leased.")

        reset_ok = await self._reset(handle)

        discard = False
        async with self._cond:
            if handle.state is not HandleState.LEASED:
                if self._closing and handle.state is HandleState.CLOSED:
                    # Reclaimed by shutdown while the session was being reset.
                    return
                raise InvalidHandle(f"Connection handle {handle.id} is {handle.state.value}, not leased.")
            self._leased.discard(handle)
            if self._closing or not reset_ok or handle.connection.is_closed():
                handle.state = HandleState.CLOSED
                discard = True
            else:
                handle.state = HandleState.IDLE
                handle.idle_since = asyncio.get_running_loop().time()
                self._idle.append(handle)
            self._cond.notify_all()

        if discard:
            await self._close(handle.connection)

    async def _reset(self, handle: ConnectionHandle) -> bool:
        connection = handle.connection
        if self._closing or connection.is_closed():
            return True
        try:
            await connection.reset(timeout=self.config.acquire_timeout)
        except Exception as exc:
            logger.warning("connection_reset_failed handle=%s error=%s", handle.id, exc)
            return False
        return True

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[ConnectionHandle]:
        handle = await self.acquire()
        try:
            yield handle
        finally:
            # Shutdown may already have force-closed it.
            if handle.state is HandleState.LEASED:
                await self.release(handle)

    async def evict_idle(self) -> int:
        """
        Close handles idle for longer than `idle_timeout`. Returns how many were closed.
        """
        idle_timeout = self.config.idle_timeout
        if idle_timeout <= 0:
            return 0

        now = asyncio.get_running_loop().time()
        async with self._cond:
            expired = [h for h in self._idle if now - h.idle_since > idle_timeout]
            if not expired:
                return 0
            expired_ids = {h.id for h in expired}
            self._idle = [h for h in self._idle if h.id not in expired_ids]
            for handle in expired:
                handle.state = HandleState.CLOSED
            self._evicting.update(expired)
            self._cond.notify_all()

        for handle in expired:
            await self._close(handle.connection)
            self._evicting.discard(handle)
        logger.debug("idle_evicted count=%s size=%s", len(expired), self.size)
        return len(expired)

    def _start_reaper(self) -> None:
        if self._reaper is not None or self.config.idle_timeout <= 0:
            return
        self._reaper = asyncio.get_running_loop().create_task(self._reap_idle())

    async def _reap_idle(self) -> None:
        interval = max(min(self.config.idle_timeout / 2, 1.0), 0.01)
        while not self._closing:
            await asyncio.sleep(interval)
            await self.evict_idle()

    async def shutdown(self, grace_period: float | None = None) -> None:
        """
        Close the pool. Safe to call more than once; later calls return immediately.

        New acquires fail right away. Idle connections are closed, leased ones get
        `grace_period` seconds (default: config.shutdown_grace) to come back, and
        whatever is still out after that is terminated. Never raises.
        """
        if self._closing:
            return
        self._closing = True
        grace = self.config.shutdown_grace if grace_period is None else max(0.0, grace_period)

        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)

        # Evictions the reaper was interrupted in the middle of.
        unfinished, self._evicting = list(self._evicting), set()
        for handle in unfinished:
            await self._close(handle.connection)

        async with self._cond:
            idle, self._idle = self._idle, []
            for handle in idle:
                handle.state = HandleState.CLOSED
            # Waiters wake up and see PoolClosed.
            self._cond.notify_all()

        for handle in idle:
            await self._close(handle.connection)

        async with self._cond:
            if not self._drained():
                try:
                    await asyncio.wait_for(self._cond.wait_for(self._drained), grace)
                except asyncio.TimeoutError:
                    logger.debug("pool_grace_expired grace_s=%s", grace)
            stragglers = list(self._leased)
            self._leased.clear()
            for handle in stragglers:
                handle.state = HandleState.CLOSED
            self._closed = True

        if stragglers:
            logger.warning(
                "pool_force_closed count=%s grace_s=%s",
                len(stragglers),
                grace,
                extra={"pool_leased": len(stragglers)},
            )
        for handle in stragglers:
            await self._close(handle.connection, force=True)

        logger.info("pool_closed closed_idle=%s force_closed=%s", len(idle), len(stragglers))

    async def _close(self, connection: Any, *, force: bool = False) -> None:
        try:
            if connection.is_closed():
                return
            if force:
                connection.terminate()
            else:
                await connection.close(timeout=self.config.acquire_timeout)
        except Exception as exc:
            logger.error("pool_close_failed error=%s", exc)
