from __future__ import annotations

import asyncio

import pytest

from cosmobridge.ble_adapter import PowerState
from cosmobridge.ble_protocol import SetColor
from cosmobridge.config_loader import BLEConfig
from cosmobridge.device_session import DeviceState
from cosmobridge.errors import AdapterNotReady, DeviceNotFound
from cosmobridge.events import DeviceConnected, DeviceDisconnected, DeviceDiscovered, DeviceUpdated, Error
from cosmobridge.registry import DeviceRegistry
from fakes import DEVICE_ID, FakeAdapter, drain, settle


def make_registry(adapter: FakeAdapter, **overrides) -> DeviceRegistry:
    config = BLEConfig(mode="disabled", auto_connect=overrides.pop("auto_connect", False), **overrides)
    return DeviceRegistry(adapter, config)


def test_discovery_filters_by_name_prefix(adapter: FakeAdapter) -> None:
    async def scenario():
        registry = make_registry(adapter)
        adapter.discover("11:22:33:44:55:66", name="Headphones")
        adapter.discover("11:22:33:44:55:77", name=None)
        adapter.discover(DEVICE_ID, name="Cosmo 1")
        return registry

    registry = asyncio.run(scenario())

    devices = registry.list_devices()
    assert [d["id"] for d in devices] == [DEVICE_ID]
    events = drain(registry.events)
    assert len(events) == 1
    assert isinstance(events[0], DeviceDiscovered)
    assert events[0].device["name"] == "Cosmo 1"
    assert events[0].device["state"] == "discovered"


def test_rediscovery_updates_rssi_only_past_threshold(adapter: FakeAdapter) -> None:
    async def scenario():
        registry = make_registry(adapter)
        adapter.discover(rssi=-60)
        adapter.discover(rssi=-62)
        adapter.discover(rssi=-75)
        return registry

    registry = asyncio.run(scenario())

    assert len(registry) == 1
    events = drain(registry.events)
    assert [type(e) for e in events] == [DeviceDiscovered, DeviceUpdated]
    assert events[1].device["rssi"] == -75


def test_auto_connect_runs_a_single_attempt(adapter: FakeAdapter) -> None:
    async def scenario():
        registry = make_registry(adapter, auto_connect=True)
        adapter.discover()
        adapter.discover(rssi=-90)
        state = await registry.connect(DEVICE_ID)
        await settle()
        await registry.stop()
        return registry, state

    registry, state = asyncio.run(scenario())

    assert state == DeviceState.READY
    assert adapter.connect_calls == 1
    events = drain(registry.events)
    assert [type(e) for e in events].count(DeviceConnected) == 1


def test_auto_connect_disabled(adapter: FakeAdapter) -> None:
    async def scenario():
        registry = make_registry(adapter)
        adapter.discover()
        await settle()
        return registry

    registry = asyncio.run(scenario())

    assert adapter.connect_calls == 0
    assert registry.get(DEVICE_ID).state == DeviceState.DISCOVERED


def test_unknown_device_is_not_found(adapter: FakeAdapter) -> None:
    registry = make_registry(adapter)

    with pytest.raises(DeviceNotFound):
        asyncio.run(registry.connect("00:00:00:00:00:00"))
    with pytest.raises(DeviceNotFound):
        asyncio.run(registry.send_command("00:00:00:00:00:00", SetColor(1, 1, 1)))
    with pytest.raises(DeviceNotFound):
        asyncio.run(registry.write_characteristic("00:00:00:00:00:00", "1528", b"\x01"))


def test_adapter_disconnect_callback_tears_down_session(adapter: FakeAdapter) -> None:
    async def scenario():
        registry = make_registry(adapter)
        adapter.discover()
        await registry.connect(DEVICE_ID)
        drain(registry.events)
        adapter.drop_link()
        await settle()
        return registry

    registry = asyncio.run(scenario())

    assert registry.get(DEVICE_ID).state == DeviceState.DISCONNECTED
    assert registry.ready_sessions() == []
    assert [type(e) for e in drain(registry.events)] == [DeviceDisconnected]
    assert registry.list_devices()[0]["connected"] is False


def test_power_off_tears_down_and_reports(adapter: FakeAdapter) -> None:
    async def scenario():
        registry = make_registry(adapter)
        await registry.start()
        adapter.discover()
        await registry.connect(DEVICE_ID)
        drain(registry.events)
        adapter.power(PowerState.OFF)
        await settle()
        return registry

    registry = asyncio.run(scenario())

    assert registry.get(DEVICE_ID).state == DeviceState.DISCONNECTED
    events = drain(registry.events)
    errors = [e for e in events if isinstance(e, Error)]
    assert len(errors) == 1
    assert "off" in errors[0].message
    assert any(isinstance(e, DeviceDisconnected) for e in events)


def test_start_scan_requires_power(adapter: FakeAdapter) -> None:
    registry = make_registry(adapter)

    with pytest.raises(AdapterNotReady):
        asyncio.run(registry.start_scan())

    asyncio.run(registry.start())
    asyncio.run(registry.start_scan())
    assert adapter.is_scanning
