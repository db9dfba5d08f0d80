from __future__ import annotations

import asyncio
import logging

import pytest

from cosmobridge.config_loader import BLEConfig, WatchdogConfig
from cosmobridge.device_session import DeviceState
from cosmobridge.registry import DeviceRegistry
from cosmobridge.watchdog import Watchdog
from fakes import DEVICE_ID, FakeAdapter


def make_watchdog(adapter: FakeAdapter, policy: str = "continuous") -> Watchdog:
    registry = DeviceRegistry(adapter, BLEConfig(auto_connect=False))
    return Watchdog(registry, WatchdogConfig(scan_interval=0.01, liveness_interval=0.01, scan_policy=policy))


def test_scan_tick_skips_when_radio_is_off(adapter: FakeAdapter) -> None:
    watchdog = make_watchdog(adapter)

    asyncio.run(watchdog.scan_tick())

    assert adapter.scan_calls == 0
    assert not adapter.is_scanning


def test_continuous_policy_restarts_scan(adapter: FakeAdapter) -> None:
    watchdog = make_watchdog(adapter)

    async def scenario():
        await watchdog.registry.start()
        await watchdog.scan_tick()
        await watchdog.scan_tick()
        adapter.discover()
        await watchdog.registry.connect(DEVICE_ID)
        await adapter.stop_scan()
        await watchdog.scan_tick()

    asyncio.run(scenario())

    assert adapter.scan_calls == 2
    assert adapter.is_scanning


def test_when_idle_policy_pauses_scan_while_ready(adapter: FakeAdapter) -> None:
    watchdog = make_watchdog(adapter, policy="when_idle")

    async def scenario():
        await watchdog.registry.start()
        await watchdog.scan_tick()
        adapter.discover()
        await watchdog.registry.connect(DEVICE_ID)
        await watchdog.scan_tick()
        scanning_while_ready = adapter.is_scanning
        await watchdog.registry.handle_disconnect(DEVICE_ID)
        await watchdog.scan_tick()
        return scanning_while_ready

    scanning_while_ready = asyncio.run(scenario())

    assert scanning_while_ready is False
    assert adapter.scan_calls == 2
    assert adapter.is_scanning


def test_liveness_tick_tears_down_lost_connections(adapter: FakeAdapter) -> None:
    watchdog = make_watchdog(adapter)

    async def scenario():
        await watchdog.registry.start()
        adapter.discover()
        await watchdog.registry.connect(DEVICE_ID)
        adapter.connected.clear()
        await watchdog.liveness_tick()

    asyncio.run(scenario())

    assert watchdog.registry.get(DEVICE_ID).state == DeviceState.DISCONNECTED


def test_loops_start_and_stop(adapter: FakeAdapter) -> None:
    watchdog = make_watchdog(adapter)

    async def scenario():
        await watchdog.registry.start()
        watchdog.start()
        await asyncio.sleep(0.05)
        await watchdog.stop()

    asyncio.run(scenario())

    assert adapter.is_scanning
    assert adapter.scan_calls == 1


def test_loops_survive_failing_ticks(adapter: FakeAdapter, caplog: pytest.LogCaptureFixture) -> None:
    watchdog = make_watchdog(adapter)
    calls = {"scan": 0, "liveness": 0}

    def flaky(name: str):
        async def tick() -> None:
            calls[name] += 1
            if calls[name] == 1:
                raise RuntimeError(f"{name} exploded")
        return tick

    watchdog.scan_tick = flaky("scan")
    watchdog.liveness_tick = flaky("liveness")

    async def scenario():
        watchdog.start()
        await asyncio.sleep(0.1)
        tasks_alive = all(not t.done() for t in watchdog._tasks)
        await watchdog.stop()
        return tasks_alive

    with caplog.at_level(logging.WARNING, logger="cosmobridge.watchdog"):
        tasks_alive = asyncio.run(scenario())

    assert tasks_alive
    assert calls["scan"] >= 2
    assert calls["liveness"] >= 2
    assert "scan tick failed" in caplog.text
    assert "liveness tick failed" in caplog.text
