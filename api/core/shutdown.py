"""
Process shutdown token.

The entry point owns one `ShutdownSignal`; components register async handlers
on it, and OS signals (or a server's lifespan) trigger it. Handlers run once,
no matter how many times or from where the token is triggered.
"""

from __future__ import annotations

import asyncio
import logging
import signal as _signal
from typing import Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

Handler = Callable[[], Awaitable[None]]

DEFAULT_SIGNALS = (_signal.SIGINT, _signal.SIGTERM)


class ShutdownSignal:
    def __init__(self) -> None:
        self._handlers: list[Handler] = []
        self._reason: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def triggered(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_handler(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def trigger(self, reason: str = "manual") -> None:
        """
        Start running the handlers. Must be called from the event loop thread.
        """
        if self._reason is not None:
            logger.info("shutdown_already_requested reason=%s ignored=%s", self._reason, reason)
            return
        self._reason = reason
        logger.info("shutdown_requested reason=%s", reason)
        self._task = asyncio.get_running_loop().create_task(self._run_handlers())

    async def wait(self) -> None:
        """
        Wait until the handlers have finished. Returns immediately if never triggered.
        """
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run_handlers(self) -> None:
        for handler in self._handlers:
            try:
                await handler()
            except Exception:
                logger.exception("shutdown_handler_failed handler=%r", handler)


def install_signal_handlers(
    shutdown: ShutdownSignal,
    loop: asyncio.AbstractEventLoop | None = None,
    signals: Iterable[int] = DEFAULT_SIGNALS,
) -> list[int]:
    """
    Route OS termination signals to `shutdown.trigger`. Returns the signals installed.
    """
    loop = loop or asyncio.get_running_loop()
    installed: list[int] = []
    for sig in signals:
        name = _signal.Signals(sig).name
        try:
            loop.add_signal_handler(sig, shutdown.trigger, name)
        except (NotImplementedError, RuntimeError):
            # Windows, or not on the main thread.
            logger.warning("signal_handler_unavailable signal=%s", name)
            continue
        installed.append(sig)
    return installed


def remove_signal_handlers(
    loop: asyncio.AbstractEventLoop | None = None,
    signals: Iterable[int] = DEFAULT_SIGNALS,
) -> None:
    loop = loop or asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)
