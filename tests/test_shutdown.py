"""ShutdownSignal — handlers run once; OS signals route to trigger()."""

import asyncio
import signal

import pytest

from core.shutdown import ShutdownSignal, install_signal_handlers, remove_signal_handlers


class RecordingLoop:
    def __init__(self, unsupported=()):
        self.handlers = {}
        self.unsupported = set(unsupported)

    def add_signal_handler(self, sig, callback, *args):
        if sig in self.unsupported:
            raise NotImplementedError
        self.handlers[sig] = (callback, args)

    def remove_signal_handler(self, sig):
        return self.handlers.pop(sig, None) is not None

    def deliver(self, sig):
        callback, args = self.handlers[sig]
        callback(*args)


@pytest.mark.asyncio
async def test_handlers_run_once_for_repeated_triggers():
    calls = []

    async def handler():
        calls.append("closed")

    shutdown = ShutdownSignal()
    shutdown.add_handler(handler)
    shutdown.trigger("SIGINT")
    shutdown.trigger("SIGTERM")
    await shutdown.wait()

    assert calls == ["closed"]
    assert shutdown.triggered
    assert shutdown.reason == "SIGINT"


@pytest.mark.asyncio
async def test_wait_without_trigger_returns_immediately():
    shutdown = ShutdownSignal()
    await asyncio.wait_for(shutdown.wait(), 0.1)
    assert not shutdown.triggered


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_rest():
    calls = []

    async def broken():
        raise RuntimeError("nope")

    async def ok():
        calls.append("ok")

    shutdown = ShutdownSignal()
    shutdown.add_handler(broken)
    shutdown.add_handler(ok)
    shutdown.trigger()
    await shutdown.wait()

    assert calls == ["ok"]


@pytest.mark.asyncio
async def test_both_signals_trigger_handlers_exactly_once():
    calls = []

    async def handler():
        calls.append(1)

    shutdown = ShutdownSignal()
    shutdown.add_handler(handler)
    loop = RecordingLoop()

    installed = install_signal_handlers(shutdown, loop=loop)
    assert set(installed) == {signal.SIGINT, signal.SIGTERM}

    loop.deliver(signal.SIGTERM)
    loop.deliver(signal.SIGINT)
    await shutdown.wait()

    assert calls == [1]
    assert shutdown.reason == "SIGTERM"


@pytest.mark.asyncio
async def test_unsupported_signal_is_skipped():
    loop = RecordingLoop(unsupported={signal.SIGTERM})
    installed = install_signal_handlers(ShutdownSignal(), loop=loop)
    assert installed == [signal.SIGINT]


@pytest.mark.asyncio
async def test_remove_signal_handlers():
    loop = RecordingLoop()
    installed = install_signal_handlers(ShutdownSignal(), loop=loop)
    remove_signal_handlers(loop=loop, signals=installed)
    assert loop.handlers == {}
