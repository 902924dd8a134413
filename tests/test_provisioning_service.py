"""EnvironmentBootstrapper — connectivity check, extensions, shutdown hooks.

Tests cover:
    - verify() probes, releases, then ensures configured extensions
    - connectivity failures become ConnectivityError
    - extension provisioning is idempotent and best-effort
    - shutdown hooks close the pool exactly once
"""

import asyncio
import logging

import pytest

from core.pool import ResourcePool
from core.shutdown import ShutdownSignal
from fakes import make_config
from provisioning.service import (
    CapabilityOutcome,
    ConnectivityError,
    EnvironmentBootstrapper,
)


def _bootstrapper(store, **overrides):
    pool = ResourcePool(make_config(**overrides), connector=store.connect)
    return EnvironmentBootstrapper(pool)


@pytest.mark.asyncio
async def test_verify_reports_server_time_and_releases_handle(store):
    boot = _bootstrapper(store, capabilities=())
    report = await boot.verify()

    assert report.server_time == store.now
    assert report.capabilities == []
    assert boot.pool.leased_count == 0
    assert boot.pool.idle_count == 1
    assert "SELECT now() AS current_time" in store.connections[0].queries
    await boot.shutdown()


@pytest.mark.asyncio
async def test_verify_runs_capability_provisioning(store):
    store.extensions.add("postgis")
    boot = _bootstrapper(store)
    report = await boot.verify()

    outcomes = {c.name: c.outcome for c in report.capabilities}
    assert outcomes == {
        "postgis": CapabilityOutcome.ALREADY_PRESENT,
        "vector": CapabilityOutcome.ENABLED,
    }
    assert store.enable_commands == ["vector"]
    assert report.missing == []
    assert boot.report is report
    await boot.shutdown()


@pytest.mark.asyncio
async def test_verify_wraps_connect_failure(store, caplog):
    store.connect_error = ConnectionRefusedError("connection refused")
    boot = _bootstrapper(store)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ConnectivityError, match="connection refused"):
            await boot.verify()

    assert "database_connect_failed" in caplog.text
    assert boot.pool.stats().pending == 0
    await boot.shutdown()


@pytest.mark.asyncio
async def test_verify_wraps_acquisition_timeout(store):
    store.connect_delay = 0.5
    boot = _bootstrapper(store, acquire_timeout=0.05)

    with pytest.raises(ConnectivityError):
        await boot.verify()
    await boot.shutdown()


@pytest.mark.asyncio
async def test_ensure_capabilities_is_idempotent(store):
    boot = _bootstrapper(store)

    first = await boot.ensure_capabilities({"A"})
    second = await boot.ensure_capabilities({"A"})

    assert store.enable_commands == ["A"]
    assert first[0].outcome is CapabilityOutcome.ENABLED
    assert second[0].outcome is CapabilityOutcome.ALREADY_PRESENT
    await boot.shutdown()


@pytest.mark.asyncio
async def test_partial_failure_is_not_fatal(store, caplog):
    store.fail_enable.add("A")
    boot = _bootstrapper(store)

    with caplog.at_level(logging.WARNING):
        results = await boot.ensure_capabilities(["A", "B"])

    by_name = {r.name: r for r in results}
    assert by_name["A"].outcome is CapabilityOutcome.FAILED
    assert "permission denied" in by_name["A"].error
    assert by_name["B"].outcome is CapabilityOutcome.ENABLED
    assert "B" in store.extensions
    assert "capability_failed" in caplog.text
    assert boot.pool.leased_count == 0
    await boot.shutdown()


@pytest.mark.asyncio
async def test_invalid_extension_name_fails_without_sql(store):
    boot = _bootstrapper(store)
    results = await boot.ensure_capabilities(["vector; DROP TABLE users"])

    assert results[0].outcome is CapabilityOutcome.FAILED
    assert store.enable_commands == []
    await boot.shutdown()


@pytest.mark.asyncio
async def test_names_are_deduplicated_in_order(store):
    boot = _bootstrapper(store)
    results = await boot.ensure_capabilities(["vector", "postgis", "vector", " "])

    assert [r.name for r in results] == ["vector", "postgis"]
    await boot.shutdown()


@pytest.mark.asyncio
async def test_each_capability_uses_its_own_lease(store):
    boot = _bootstrapper(store, max_size=1)
    results = await boot.ensure_capabilities(["a", "b", "c"])

    assert all(r.available for r in results)
    assert len(store.connections) == 1
    assert boot.pool.leased_count == 0
    await boot.shutdown()


@pytest.mark.asyncio
async def test_capability_failure_after_pool_closed_is_reported(store):
    boot = _bootstrapper(store)
    await boot.pool.shutdown(0)

    results = await boot.ensure_capabilities(["vector"])
    assert results[0].outcome is CapabilityOutcome.FAILED


@pytest.mark.asyncio
async def test_shutdown_hook_closes_pool_once(store):
    boot = _bootstrapper(store, shutdown_grace=0.05)
    handle = await boot.pool.acquire()

    shutdown = ShutdownSignal()
    boot.register_shutdown_hooks(shutdown)
    shutdown.trigger("SIGINT")
    shutdown.trigger("SIGTERM")
    await shutdown.wait()

    assert boot.pool.closed
    assert handle.connection.terminated
    assert len(store.connections) == 1


@pytest.mark.asyncio
async def test_shutdown_never_raises_when_called_twice(store):
    boot = _bootstrapper(store)
    await boot.verify()
    await boot.shutdown()
    await asyncio.wait_for(boot.shutdown(), 0.5)
    assert boot.pool.closed
