"""
Disabled BLE Adapter - No-op stub implementation.

Useful for exercising the WebSocket side of the bridge on hosts without
Bluetooth hardware. The radio reports UNSUPPORTED, so scanning is refused
and no device is ever discovered.
"""

import logging

from .ble_adapter import BLEAdapterBase, DataCallback, PowerState
from .errors import AdapterNotReady

logger = logging.getLogger(__name__)


class DisabledAdapter(BLEAdapterBase):
    """
    Disabled adapter - every radio operation raises AdapterNotReady.

    Use this when:
    - Developing or testing client applications without a peripheral
    - Running on hardware without Bluetooth
    """

    async def start(self) -> None:
        logger.info("BLE disabled - radio not started")
        self._set_power_state(PowerState.UNSUPPORTED)

    async def stop(self) -> None:
        logger.debug("BLE disabled - nothing to stop")

    async def start_scan(self) -> None:
        raise AdapterNotReady("BLE disabled - scan not available")

    async def stop_scan(self) -> None:
        return None

    async def connect(self, device_id: str) -> None:
        raise AdapterNotReady(f"BLE disabled - cannot connect to {device_id}")

    async def disconnect(self, device_id: str) -> None:
        return None

    async def is_connected(self, device_id: str) -> bool:
        return False

    async def discover_services(self, device_id: str) -> list[str]:
        raise AdapterNotReady("BLE disabled")

    async def discover_characteristics(self, device_id: str, service_uuid: str) -> dict[str, str]:
        raise AdapterNotReady("BLE disabled")

    async def subscribe(self, device_id: str, char_uuid: str, on_data: DataCallback) -> None:
        raise AdapterNotReady("BLE disabled")

    async def read(self, device_id: str, char_uuid: str) -> bytes:
        raise AdapterNotReady("BLE disabled")

    async def write(
        self, device_id: str, char_uuid: str, data: bytes, ack_required: bool = True
    ) -> None:
        raise AdapterNotReady("BLE disabled")
