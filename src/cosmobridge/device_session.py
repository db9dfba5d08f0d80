#!/usr/bin/env python3
"""
Device Session - connection state machine for one Cosmo peripheral

States:

    Discovered ──connect()──▶ Connecting ──▶ ResolvingServices ──▶ Subscribing ──▶ Ready
        ▲                        │                  │                   │            │
        └──── connect failed ────┘                  └──── Disconnected ◀┴────────────┘

- Connecting is bounded by connect_timeout; expiry or radio failure returns
  the device to Discovered and emits Error(ConnectFailed).
- A missing primary service or mandatory characteristic, or a failed
  subscription, ends in Disconnected (cleanup, Error, DeviceDisconnected).
- In Ready, any GATT I/O failure, an adapter disconnect callback or a failed
  liveness poll ends in Disconnected.
- Disconnected devices are retained and can be connected again.

The session is the only writer of its Device record. Every transition runs
under the session lock, so transitions of one device never interleave while
independent devices progress concurrently.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable

from .ble_adapter import BLEAdapterBase
from .ble_protocol import (
    BATTERY_LEVEL_CHAR_UUID,
    BATTERY_SERVICE_UUID,
    BUTTON_STATUS_CHAR_UUID,
    COMMAND_CHAR_UUID,
    COSMO_SERVICE_UUID,
    DEVICE_INFO_SERVICE_UUID,
    FIRMWARE_REVISION_CHAR_UUID,
    HARDWARE_REVISION_CHAR_UUID,
    MANDATORY_NOTIFY_UUIDS,
    SENSOR_CHAR_UUID,
    SERIAL_NUMBER_CHAR_UUID,
    Command,
    decode_battery,
    decode_button,
    decode_sensor,
    decode_text,
    normalize_uuid,
)
from .errors import (
    AdapterError,
    CharacteristicNotFound,
    ConnectTimeout,
    DeviceError,
    DeviceNotReady,
    GattIOError,
    MalformedNotification,
    ServiceNotFound,
)
from .events import (
    ButtonEvent,
    CharacteristicChanged,
    DeviceConnected,
    DeviceDisconnected,
    DeviceUpdated,
    Error,
    Event,
    SensorEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds
RSSI_THRESHOLD = 5              # dBm change required before rssi is updated

DEVICE_INFO_FIELDS = (
    (SERIAL_NUMBER_CHAR_UUID, "serial_number"),
    (FIRMWARE_REVISION_CHAR_UUID, "firmware_version"),
    (HARDWARE_REVISION_CHAR_UUID, "hardware_version"),
)


class DeviceState(Enum):
    """Connection states of a device session"""
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    RESOLVING_SERVICES = "resolvingServices"
    SUBSCRIBING = "subscribing"
    READY = "ready"
    DISCONNECTED = "disconnected"


CONNECT_IN_PROGRESS = frozenset({
    DeviceState.CONNECTING,
    DeviceState.RESOLVING_SERVICES,
    DeviceState.SUBSCRIBING,
})


@dataclass
class Device:
    """Identity and live status of one peripheral"""
    id: str
    name: str
    state: DeviceState = DeviceState.DISCOVERED
    serial_number: str | None = None
    firmware_version: str | None = None
    hardware_version: str | None = None
    battery_level: int | None = None
    sensor_value: int | None = None
    button_state: bool = False
    press_value: int = 0
    rssi: int | None = None
    characteristic_handles: dict[str, str] = field(default_factory=dict)

    @property
    def connected(self) -> bool:
        return self.state == DeviceState.READY

    def snapshot(self) -> dict[str, Any]:
        """Wire representation used in devicesList and device events."""
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "connected": self.connected,
            "serialNumber": self.serial_number,
            "firmwareRevision": self.firmware_version,
            "hardwareRevision": self.hardware_version,
            "batteryLevel": self.battery_level,
            "sensorValue": self.sensor_value,
            "pressValue": self.press_value,
            "buttonState": self.button_state,
            "rssi": self.rssi,
        }


class DeviceSession:
    def __init__(
        self,
        device_id: str,
        name: str,
        adapter: BLEAdapterBase,
        emit: Callable[[Event], None],
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        rssi: int | None = None,
    ) -> None:
        """
        Initialize a session for one discovered device.

        Args:
            device_id: Platform address of the peripheral
            name: Advertised name
            adapter: Radio backend shared by all sessions
            emit: Callback receiving every event this session produces
            connect_timeout: Hard bound on the radio connect, in seconds
            rssi: Signal strength from the discovering advertisement
        """
        self.device = Device(id=device_id, name=name, rssi=rssi)
        self.adapter = adapter
        self.connect_timeout = connect_timeout
        self._emit = emit
        self._lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self.device.id

    @property
    def state(self) -> DeviceState:
        return self.device.state

    def snapshot(self) -> dict[str, Any]:
        return self.device.snapshot()

    def _set_state(self, state: DeviceState) -> None:
        if state != self.device.state:
            logger.debug("%s: %s -> %s", self.id, self.device.state.value, state.value)
        self.device.state = state

    def update_rssi(self, rssi: int | None) -> bool:
        """Store rssi if it moved by more than RSSI_THRESHOLD; True when stored."""
        if rssi is None:
            return False
        current = self.device.rssi
        if current is not None and abs(current - rssi) <= RSSI_THRESHOLD:
            return False
        self.device.rssi = rssi
        return True

    # --- Connect path ---

    async def connect(self) -> DeviceState:
        """
        Run one connect attempt through to Ready.

        A no-op returning the current state while an attempt is running or
        the device is already Ready. Never raises for BLE failures: they
        end as a state transition plus events.
        """
        if self.state in CONNECT_IN_PROGRESS or self.state == DeviceState.READY:
            logger.debug("%s: connect ignored, state is %s", self.id, self.state.value)
            return self.state

        # No suspension between the check above and this transition
        self._set_state(DeviceState.CONNECTING)
        try:
            async with self._lock:
                await self._run_connect()
        except asyncio.CancelledError:
            # Also reached while still waiting for the lock
            self.device.characteristic_handles = {}
            self._set_state(DeviceState.DISCONNECTED)
            raise
        return self.state

    async def settled_state(self) -> DeviceState:
        """Wait for any running transition to finish and return the resulting state."""
        async with self._lock:
            return self.state

    async def _run_connect(self) -> None:
        self._set_state(DeviceState.CONNECTING)
        logger.info("🔄 Connecting to %s (%s)", self.device.name, self.id)

        try:
            await asyncio.wait_for(self.adapter.connect(self.id), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self._connect_failed(ConnectTimeout(
                f"Connection timeout after {self.connect_timeout:g} seconds", self.id
            ))
            return
        except (DeviceError, AdapterError) as e:
            await self._connect_failed(e)
            return

        try:
            self._set_state(DeviceState.RESOLVING_SERVICES)
            handles = await self._resolve_services()

            self._set_state(DeviceState.SUBSCRIBING)
            await self._subscribe(handles)
        except (DeviceError, AdapterError) as e:
            logger.warning("Setup of %s failed: %s", self.id, e)
            await self._teardown(error=e)
            return

        self.device.characteristic_handles = handles
        self._set_state(DeviceState.READY)
        logger.info("✅ %s ready (serial=%s, firmware=%s)",
                    self.id, self.device.serial_number, self.device.firmware_version)
        self._emit(DeviceConnected(self.snapshot()))

    async def _connect_failed(self, error: Exception) -> None:
        logger.warning("Connect to %s failed: %s", self.id, error)
        await self._safe_adapter_disconnect()
        self.device.characteristic_handles = {}
        self._set_state(DeviceState.DISCOVERED)
        self._emit(Error(
            message=f"Connect failed: {error}", device_id=self.id, code="ConnectFailed"
        ))

    async def _resolve_services(self) -> dict[str, str]:
        services = set(await self.adapter.discover_services(self.id))
        if COSMO_SERVICE_UUID not in services:
            raise ServiceNotFound(f"Primary service {COSMO_SERVICE_UUID} not found", self.id)

        handles = dict(await self.adapter.discover_characteristics(self.id, COSMO_SERVICE_UUID))
        await self._read_device_information(services, handles)
        return handles

    async def _read_device_information(self, services: set[str], handles: dict[str, str]) -> None:
        """Read serial/firmware/hardware and battery; partial information is acceptable."""
        if DEVICE_INFO_SERVICE_UUID in services:
            try:
                info_chars = await self.adapter.discover_characteristics(
                    self.id, DEVICE_INFO_SERVICE_UUID
                )
            except (DeviceError, AdapterError) as e:
                logger.warning("%s: device information unavailable: %s", self.id, e)
                info_chars = {}

            for char_uuid, attr in DEVICE_INFO_FIELDS:
                if char_uuid not in info_chars:
                    continue
                try:
                    setattr(self.device, attr, decode_text(await self.adapter.read(self.id, char_uuid)))
                except (DeviceError, AdapterError) as e:
                    logger.warning("%s: reading %s failed: %s", self.id, attr, e)

        if BATTERY_SERVICE_UUID in services:
            try:
                battery_chars = await self.adapter.discover_characteristics(
                    self.id, BATTERY_SERVICE_UUID
                )
                if BATTERY_LEVEL_CHAR_UUID in battery_chars:
                    handles[BATTERY_LEVEL_CHAR_UUID] = battery_chars[BATTERY_LEVEL_CHAR_UUID]
                    payload = await self.adapter.read(self.id, BATTERY_LEVEL_CHAR_UUID)
                    self.device.battery_level = decode_battery(payload)
            except (DeviceError, AdapterError, MalformedNotification) as e:
                logger.warning("%s: reading battery level failed: %s", self.id, e)

    async def _subscribe(self, handles: dict[str, str]) -> None:
        for char_uuid in MANDATORY_NOTIFY_UUIDS:
            if char_uuid not in handles:
                raise CharacteristicNotFound(f"Characteristic {char_uuid} not found", self.id)
            await self.adapter.subscribe(self.id, char_uuid, partial(self._on_notification, char_uuid))

        if BATTERY_LEVEL_CHAR_UUID in handles:
            try:
                await self.adapter.subscribe(
                    self.id, BATTERY_LEVEL_CHAR_UUID,
                    partial(self._on_notification, BATTERY_LEVEL_CHAR_UUID),
                )
            except (DeviceError, AdapterError) as e:
                logger.warning("%s: battery notifications unavailable: %s", self.id, e)
                del handles[BATTERY_LEVEL_CHAR_UUID]

        if COMMAND_CHAR_UUID not in handles:
            logger.warning("%s: command characteristic missing, commands disabled", self.id)

    # --- Notifications ---

    def _on_notification(self, char_uuid: str, data: bytes) -> None:
        if self.state not in (DeviceState.SUBSCRIBING, DeviceState.READY):
            logger.debug("%s: notification on %s ignored in %s", self.id, char_uuid, self.state.value)
            return

        payload = bytes(data)
        self._emit(CharacteristicChanged(self.id, char_uuid, list(payload)))

        try:
            if char_uuid == SENSOR_CHAR_UUID:
                self.device.sensor_value = decode_sensor(payload)
                self._emit(SensorEvent(self.id, list(payload)))

            elif char_uuid == BUTTON_STATUS_CHAR_UUID:
                pressed, force = decode_button(payload)
                self.device.button_state = pressed
                self.device.press_value = force
                self._emit(ButtonEvent(self.id, pressed, force))

            elif char_uuid == BATTERY_LEVEL_CHAR_UUID:
                self.device.battery_level = decode_battery(payload)
                self._emit(DeviceUpdated(self.snapshot()))

        except MalformedNotification as e:
            logger.warning("%s: discarding notification %s: %s", self.id, payload.hex(), e)

    # --- Commands ---

    async def send_command(self, command: Command) -> None:
        """
        Frame and write a command to the command characteristic.

        Raises:
            DeviceNotReady: not Ready, or command characteristic unresolved
            GattIOError: the write failed; the session is already Disconnected
        """
        async with self._lock:
            if (
                self.state != DeviceState.READY
                or COMMAND_CHAR_UUID not in self.device.characteristic_handles
            ):
                raise DeviceNotReady(f"Device {self.id} is not ready", self.id)

            await self._write(COMMAND_CHAR_UUID, command.encode(), command.ack_required)

    async def write_characteristic(self, char_uuid: str, data: bytes) -> None:
        """
        Write raw bytes (with response) to a characteristic resolved at connect.

        Raises:
            DeviceNotReady: not Ready
            CharacteristicNotFound: uuid is not among the resolved characteristics
            GattIOError: the write failed; the session is already Disconnected
        """
        char_uuid = normalize_uuid(char_uuid)
        async with self._lock:
            if self.state != DeviceState.READY:
                raise DeviceNotReady(f"Device {self.id} is not ready", self.id)
            if char_uuid not in self.device.characteristic_handles:
                raise CharacteristicNotFound(
                    f"Characteristic {char_uuid} not resolved on {self.id}", self.id
                )

            await self._write(char_uuid, bytes(data), ack_required=True)

    async def _write(self, char_uuid: str, data: bytes, ack_required: bool) -> None:
        # Caller holds the session lock
        try:
            await self.adapter.write(self.id, char_uuid, data, ack_required=ack_required)
        except (DeviceError, AdapterError) as e:
            logger.warning("%s: write to %s failed: %s", self.id, char_uuid, e)
            await self._teardown()
            if isinstance(e, GattIOError):
                raise
            raise GattIOError(str(e), self.id) from e

        logger.debug("%s: wrote %s to %s", self.id, data.hex(), char_uuid)

    # --- Disconnect / liveness ---

    async def handle_disconnect(self) -> None:
        """Cleanup path for a link reported lost by the adapter."""
        async with self._lock:
            if self.state != DeviceState.READY:
                return
            logger.info("%s disconnected", self.id)
            await self._teardown()

    async def check_connection(self) -> bool:
        """Poll the radio link of a Ready device; tear down if it is gone."""
        if self.state != DeviceState.READY:
            return False

        async with self._lock:
            if self.state != DeviceState.READY:
                return False
            try:
                alive = await self.adapter.is_connected(self.id)
            except (DeviceError, AdapterError) as e:
                logger.debug("%s: liveness poll failed: %s", self.id, e)
                alive = False

            if not alive:
                logger.warning("Connection to %s lost", self.id)
                await self._teardown()
            return alive

    async def _teardown(self, error: Exception | None = None) -> None:
        self.device.characteristic_handles = {}
        self._set_state(DeviceState.DISCONNECTED)
        await self._safe_adapter_disconnect()
        if error is not None:
            self._emit(Error(
                message=str(error), device_id=self.id, code=type(error).__name__
            ))
        self._emit(DeviceDisconnected(self.snapshot()))

    async def _safe_adapter_disconnect(self) -> None:
        try:
            await self.adapter.disconnect(self.id)
        except (DeviceError, AdapterError) as e:
            logger.debug("%s: adapter disconnect failed: %s", self.id, e)
