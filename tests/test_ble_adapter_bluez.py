from __future__ import annotations

import asyncio

from dbus_next import Variant

from cosmobridge.ble_adapter import DiscoveredPeripheral
from cosmobridge.ble_adapter_bluez import DEVICE_INTERFACE, BlueZAdapter, _Peripheral
from fakes import DEVICE_ID, settle

COSMO_PATH = "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_01"
PHONE_PATH = "/org/bluez/hci0/dev_11_22_33_44_55_66"


def device_props(address: str, name: str | None, rssi: int = -50) -> dict[str, Variant]:
    props = {"Address": Variant("s", address), "RSSI": Variant("n", rssi)}
    if name is not None:
        props["Name"] = Variant("s", name)
    return props


class FakeProps:
    def __init__(self) -> None:
        self.removed: list = []

    def off_properties_changed(self, handler) -> None:
        self.removed.append(handler)


def make_adapter(monkeypatch) -> tuple[BlueZAdapter, list[str], list[DiscoveredPeripheral], list[str]]:
    adapter = BlueZAdapter("hci0", name_prefix="Cosmo")
    watched: list[str] = []
    discovered: list[DiscoveredPeripheral] = []
    dropped: list[str] = []

    async def watch(address: str) -> None:
        watched.append(address)

    monkeypatch.setattr(adapter, "_watch_device", watch)
    adapter.set_callbacks(on_discover=discovered.append, on_disconnect=dropped.append)
    return adapter, watched, discovered, dropped


def test_only_prefixed_advertisers_are_watched(monkeypatch) -> None:
    adapter, watched, discovered, _ = make_adapter(monkeypatch)

    async def scenario():
        adapter._on_interfaces_added(COSMO_PATH, {DEVICE_INTERFACE: device_props(DEVICE_ID, "Cosmo 1")})
        adapter._on_interfaces_added(PHONE_PATH, {DEVICE_INTERFACE: device_props("11:22:33:44:55:66", "Pixel")})
        adapter._on_interfaces_added(
            "/org/bluez/hci0/dev_11_22_33_44_55_77",
            {DEVICE_INTERFACE: device_props("11:22:33:44:55:77", None)},
        )
        await settle()

    asyncio.run(scenario())

    assert [p.id for p in discovered] == [DEVICE_ID, "11:22:33:44:55:66", "11:22:33:44:55:77"]
    assert watched == [DEVICE_ID]
    assert adapter._names == {DEVICE_ID: "Cosmo 1"}


def test_interfaces_removed_forgets_device(monkeypatch) -> None:
    adapter, _, _, dropped = make_adapter(monkeypatch)
    props = FakeProps()

    def handler(iface, changed, invalidated) -> None:
        pass

    adapter._names[DEVICE_ID] = "Cosmo 1"
    adapter._peripherals[DEVICE_ID] = _Peripheral(
        address=DEVICE_ID, path=COSMO_PATH, props_iface=props, props_handler=handler
    )

    adapter._on_interfaces_removed(PHONE_PATH, [DEVICE_INTERFACE])
    assert DEVICE_ID in adapter._peripherals

    adapter._on_interfaces_removed(COSMO_PATH, ["org.bluez.GattService1"])
    assert DEVICE_ID in adapter._peripherals

    adapter._on_interfaces_removed(COSMO_PATH, [DEVICE_INTERFACE])

    assert adapter._peripherals == {}
    assert adapter._names == {}
    assert props.removed == [handler]
    assert dropped == []


def test_removing_subscribed_device_reports_disconnect(monkeypatch) -> None:
    adapter, _, _, dropped = make_adapter(monkeypatch)
    peripheral = _Peripheral(address=DEVICE_ID, path=COSMO_PATH, props_iface=FakeProps())
    peripheral.notify_handlers["1524"] = lambda *args: None
    adapter._peripherals[DEVICE_ID] = peripheral

    adapter._on_interfaces_removed(COSMO_PATH, [DEVICE_INTERFACE])

    assert dropped == [DEVICE_ID]
    assert peripheral.notify_handlers == {}
