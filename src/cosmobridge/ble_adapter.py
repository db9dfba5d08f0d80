"""
BLE Adapter Abstraction Layer

This module provides a unified interface over the platform BLE radio,
supporting multiple backends:
- bluez: BlueZ over D-Bus (dbus_next), for Linux hosts
- disabled: No-op stub (for running the bridge without Bluetooth)

Every UUID passed into or out of an adapter is normalized with
`ble_protocol.normalize_uuid`, so the rest of the bridge compares only
canonical forms.

Usage:
    adapter = create_adapter(cfg.ble)
    adapter.set_callbacks(on_discover=..., on_disconnect=..., on_power_state=...)
    await adapter.start()
    await adapter.start_scan()
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config_loader import BLEConfig

logger = logging.getLogger(__name__)


class PowerState(Enum):
    """Radio power states"""
    UNKNOWN = "unknown"
    ON = "on"
    OFF = "off"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"


@dataclass
class DiscoveredPeripheral:
    """Advertisement seen during a scan"""
    id: str
    name: str
    rssi: int | None = None


DiscoverCallback = Callable[[DiscoveredPeripheral], None]
DisconnectCallback = Callable[[str], None]
PowerStateCallback = Callable[[PowerState], None]
DataCallback = Callable[[bytes], None]


class BLEAdapterBase(ABC):
    """
    Abstract base class for BLE radio backends.

    Operations are coroutines so each one can be cancelled or bounded with
    asyncio.wait_for by the caller. GATT failures raise GattIOError, radio
    state failures raise AdapterError.
    """

    def __init__(self) -> None:
        self._power_state = PowerState.UNKNOWN
        self._scanning = False
        self._on_discover: DiscoverCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None
        self._on_power_state: PowerStateCallback | None = None

    @property
    def power_state(self) -> PowerState:
        return self._power_state

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def set_callbacks(
        self,
        on_discover: DiscoverCallback | None = None,
        on_disconnect: DisconnectCallback | None = None,
        on_power_state: PowerStateCallback | None = None,
    ) -> None:
        """Register the (synchronous) callbacks driven by radio events."""
        self._on_discover = on_discover
        self._on_disconnect = on_disconnect
        self._on_power_state = on_power_state

    # --- Callback helpers for subclasses ---

    def _notify_discover(self, peripheral: DiscoveredPeripheral) -> None:
        if self._on_discover:
            self._on_discover(peripheral)

    def _notify_disconnect(self, device_id: str) -> None:
        if self._on_disconnect:
            self._on_disconnect(device_id)

    def _set_power_state(self, state: PowerState) -> None:
        if state == self._power_state:
            return
        logger.info("Bluetooth adapter state: %s -> %s", self._power_state.value, state.value)
        self._power_state = state
        if state != PowerState.ON:
            self._scanning = False
        if self._on_power_state:
            self._on_power_state(state)

    # --- Lifecycle ---

    @abstractmethod
    async def start(self) -> None:
        """Acquire the radio handle and read its power state."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop scanning, drop all connections and release the radio handle."""

    # --- Scanning ---

    @abstractmethod
    async def start_scan(self) -> None:
        """
        Start discovery. Idempotent: a no-op while already scanning.

        Raises:
            AdapterNotReady: radio power state is not ON
        """

    @abstractmethod
    async def stop_scan(self) -> None:
        """Stop discovery."""

    # --- Per-peripheral operations ---

    @abstractmethod
    async def connect(self, device_id: str) -> None:
        """Connect the radio link to a discovered peripheral."""

    @abstractmethod
    async def disconnect(self, device_id: str) -> None:
        """Disconnect a peripheral and forget its GATT handles."""

    @abstractmethod
    async def is_connected(self, device_id: str) -> bool:
        """Poll the radio link state."""

    @abstractmethod
    async def discover_services(self, device_id: str) -> list[str]:
        """Return the normalized UUIDs of all primary services."""

    @abstractmethod
    async def discover_characteristics(self, device_id: str, service_uuid: str) -> dict[str, str]:
        """Return normalized characteristic UUID -> opaque handle for one service."""

    @abstractmethod
    async def subscribe(self, device_id: str, char_uuid: str, on_data: DataCallback) -> None:
        """Enable notifications; on_data receives each raw payload."""

    @abstractmethod
    async def read(self, device_id: str, char_uuid: str) -> bytes:
        """Read a characteristic value."""

    @abstractmethod
    async def write(
        self, device_id: str, char_uuid: str, data: bytes, ack_required: bool = True
    ) -> None:
        """Write a characteristic value, with or without response."""


def create_adapter(config: BLEConfig) -> BLEAdapterBase:
    """
    Factory function to create the adapter for the configured BLE mode.

    Args:
        config: BLE configuration section

    Returns:
        Adapter instance (not yet started)
    """
    if config.mode == "bluez":
        from .ble_adapter_bluez import BlueZAdapter
        adapter = BlueZAdapter(adapter_name=config.adapter, name_prefix=config.name_prefix)
        logger.info("Created BlueZ adapter (D-Bus) on %s", config.adapter)
    else:
        from .ble_adapter_disabled import DisabledAdapter
        adapter = DisabledAdapter()
        logger.info("Created disabled BLE adapter (no-op)")

    return adapter
