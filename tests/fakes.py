from __future__ import annotations

import asyncio
import json
from typing import Any

from cosmobridge.ble_adapter import BLEAdapterBase, DataCallback, DiscoveredPeripheral, PowerState
from cosmobridge.ble_protocol import (
    BATTERY_LEVEL_CHAR_UUID,
    BATTERY_SERVICE_UUID,
    BUTTON_STATUS_CHAR_UUID,
    COMMAND_CHAR_UUID,
    COSMO_SERVICE_UUID,
    DEVICE_INFO_SERVICE_UUID,
    FIRMWARE_REVISION_CHAR_UUID,
    HARDWARE_REVISION_CHAR_UUID,
    SENSOR_CHAR_UUID,
    SERIAL_NUMBER_CHAR_UUID,
)
from cosmobridge.errors import AdapterNotReady, CharacteristicNotFound, ConnectFailed, GattIOError

DEVICE_ID = "AA:BB:CC:DD:EE:01"


def default_gatt() -> dict[str, dict[str, str]]:
    return {
        COSMO_SERVICE_UUID: {
            SENSOR_CHAR_UUID: "char0010",
            BUTTON_STATUS_CHAR_UUID: "char0013",
            COMMAND_CHAR_UUID: "char0016",
        },
        DEVICE_INFO_SERVICE_UUID: {
            SERIAL_NUMBER_CHAR_UUID: "char0020",
            FIRMWARE_REVISION_CHAR_UUID: "char0022",
            HARDWARE_REVISION_CHAR_UUID: "char0024",
        },
        BATTERY_SERVICE_UUID: {
            BATTERY_LEVEL_CHAR_UUID: "char0030",
        },
    }


class FakeAdapter(BLEAdapterBase):
    """In-memory radio: one GATT database shared by every peripheral."""

    def __init__(self, gatt: dict[str, dict[str, str]] | None = None) -> None:
        super().__init__()
        self.gatt = default_gatt() if gatt is None else gatt
        self.values: dict[str, bytes] = {
            SERIAL_NUMBER_CHAR_UUID: b"CSM-0042",
            FIRMWARE_REVISION_CHAR_UUID: b"2.1.0\x00",
            HARDWARE_REVISION_CHAR_UUID: b"B",
            BATTERY_LEVEL_CHAR_UUID: bytes([87]),
        }
        self.connected: set[str] = set()
        self.subscriptions: dict[tuple[str, str], DataCallback] = {}
        self.writes: list[tuple[str, str, bytes, bool]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.scan_calls = 0
        self.connect_error: Exception | None = None
        self.connect_hangs = False
        self.write_error: Exception | None = None
        self.read_error: Exception | None = None
        self.failing_subscriptions: set[str] = set()
        self.failing_writes: set[str] = set()

    # --- test helpers ---

    def discover(self, device_id: str = DEVICE_ID, name: str = "Cosmo 1", rssi: int | None = -60) -> None:
        self._notify_discover(DiscoveredPeripheral(id=device_id, name=name, rssi=rssi))

    def notify(self, char_uuid: str, data: bytes, device_id: str = DEVICE_ID) -> None:
        self.subscriptions[(device_id, char_uuid)](data)

    def drop_link(self, device_id: str = DEVICE_ID) -> None:
        self.connected.discard(device_id)
        self._notify_disconnect(device_id)

    def power(self, state: PowerState) -> None:
        self._set_power_state(state)

    # --- BLEAdapterBase ---

    async def start(self) -> None:
        self._set_power_state(PowerState.ON)

    async def stop(self) -> None:
        self._scanning = False
        self.connected.clear()

    async def start_scan(self) -> None:
        if self.power_state != PowerState.ON:
            raise AdapterNotReady(f"Bluetooth adapter is {self.power_state.value}")
        self.scan_calls += 1
        self._scanning = True

    async def stop_scan(self) -> None:
        self._scanning = False

    async def connect(self, device_id: str) -> None:
        self.connect_calls += 1
        if self.connect_hangs:
            await asyncio.Event().wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected.add(device_id)

    async def disconnect(self, device_id: str) -> None:
        self.disconnect_calls += 1
        self.connected.discard(device_id)
        for key in [k for k in self.subscriptions if k[0] == device_id]:
            del self.subscriptions[key]

    async def is_connected(self, device_id: str) -> bool:
        return device_id in self.connected

    async def discover_services(self, device_id: str) -> list[str]:
        return list(self.gatt)

    async def discover_characteristics(self, device_id: str, service_uuid: str) -> dict[str, str]:
        return dict(self.gatt.get(service_uuid, {}))

    async def subscribe(self, device_id: str, char_uuid: str, on_data: DataCallback) -> None:
        if char_uuid in self.failing_subscriptions:
            raise GattIOError(f"StartNotify failed for {char_uuid}", device_id)
        if not any(char_uuid in chars for chars in self.gatt.values()):
            raise CharacteristicNotFound(f"Characteristic {char_uuid} not found", device_id)
        self.subscriptions[(device_id, char_uuid)] = on_data

    async def read(self, device_id: str, char_uuid: str) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        return self.values[char_uuid]

    async def write(self, device_id: str, char_uuid: str, data: bytes, ack_required: bool = True) -> None:
        if self.write_error is not None:
            raise self.write_error
        if device_id in self.failing_writes:
            raise GattIOError("WriteValue failed", device_id)
        if device_id not in self.connected:
            raise ConnectFailed("not connected", device_id)
        self.writes.append((device_id, char_uuid, bytes(data), ack_required))


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None
        self.fail = fail
        self.gate: asyncio.Event | None = None

    async def send_text(self, data: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        if self.closed_with is not None:
            raise RuntimeError("already closed")
        self.closed_with = code

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
