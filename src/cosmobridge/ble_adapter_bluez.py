"""
BlueZ Adapter - D-Bus Bluetooth Low Energy interface

Implements BLEAdapterBase on top of the BlueZ D-Bus API:

- org.bluez.Adapter1: Powered state, StartDiscovery / StopDiscovery
- org.freedesktop.DBus.ObjectManager: InterfacesAdded for discoveries,
  GetManagedObjects for the GATT service/characteristic tree
- org.bluez.Device1: Connect / Disconnect, Connected, ServicesResolved, RSSI
- org.bluez.GattCharacteristic1: StartNotify, ReadValue, WriteValue

Device ids are the BlueZ "Address" property (AA:BB:CC:DD:EE:FF). GATT
handles are D-Bus object paths.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from dbus_next import Variant
from dbus_next.aio import MessageBus
from dbus_next.constants import BusType
from dbus_next.errors import DBusError, InterfaceNotFoundError

from .ble_adapter import BLEAdapterBase, DataCallback, DiscoveredPeripheral, PowerState
from .ble_protocol import normalize_uuid
from .errors import (
    AdapterError,
    AdapterNotReady,
    CharacteristicNotFound,
    ConnectFailed,
    GattIOError,
    ServiceNotFound,
)

logger = logging.getLogger(__name__)

# DBus constants
BLUEZ_SERVICE_NAME = "org.bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
GATT_SERVICE_INTERFACE = "org.bluez.GattService1"
GATT_CHARACTERISTIC_INTERFACE = "org.bluez.GattCharacteristic1"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"

# Timing Constants (seconds)
SERVICES_CHECK_INTERVAL = 0.5   # ServicesResolved polling interval
DISCONNECT_TIMEOUT = 3.0        # Bound on Disconnect during cleanup


@dataclass
class _Peripheral:
    """D-Bus proxies and GATT object paths for one device"""
    address: str
    path: str
    name: str = ""
    device_iface: Any = None
    props_iface: Any = None
    props_handler: Callable | None = None
    services: dict[str, str] = field(default_factory=dict)
    characteristics: dict[str, str] = field(default_factory=dict)
    char_ifaces: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    notify_handlers: dict[str, Callable] = field(default_factory=dict)

    def clear_gatt(self) -> None:
        for uuid, handler in self.notify_handlers.items():
            _, props = self.char_ifaces.get(uuid, (None, None))
            if props is not None:
                try:
                    props.off_properties_changed(handler)
                except Exception:
                    logger.debug("Could not remove notify handler for %s", uuid)
        self.notify_handlers.clear()
        self.char_ifaces.clear()
        self.characteristics.clear()
        self.services.clear()


class BlueZAdapter(BLEAdapterBase):
    """BLE radio access through BlueZ on the system D-Bus."""

    def __init__(self, adapter_name: str = "hci0", name_prefix: str = "") -> None:
        super().__init__()
        self.name_prefix = name_prefix
        self.adapter_path = f"/org/bluez/{adapter_name}"
        self.bus: MessageBus | None = None
        self.adapter_iface = None
        self.adapter_props = None
        self.obj_mgr_iface = None
        self._peripherals: dict[str, _Peripheral] = {}
        self._names: dict[str, str] = {}
        self._peripheral_lock = asyncio.Lock()
        self._watch_tasks: set[asyncio.Task] = set()

    def _device_path(self, address: str) -> str:
        """Convert MAC address to D-Bus device path"""
        return f"{self.adapter_path}/dev_{address.upper().replace(':', '_')}"

    # --- Lifecycle ---

    async def start(self) -> None:
        try:
            if self.bus is None:
                self.bus = await MessageBus(bus_type=BusType.SYSTEM).connect()

            introspection = await self.bus.introspect(BLUEZ_SERVICE_NAME, self.adapter_path)
            adapter_obj = self.bus.get_proxy_object(
                BLUEZ_SERVICE_NAME, self.adapter_path, introspection
            )
            self.adapter_iface = adapter_obj.get_interface(ADAPTER_INTERFACE)
            self.adapter_props = adapter_obj.get_interface(PROPERTIES_INTERFACE)

            root_introspection = await self.bus.introspect(BLUEZ_SERVICE_NAME, "/")
            obj_mgr = self.bus.get_proxy_object(BLUEZ_SERVICE_NAME, "/", root_introspection)
            self.obj_mgr_iface = obj_mgr.get_interface(OBJECT_MANAGER_INTERFACE)

            powered = (await self.adapter_props.call_get(ADAPTER_INTERFACE, "Powered")).value
        except InterfaceNotFoundError as e:
            self._set_power_state(PowerState.UNSUPPORTED)
            raise AdapterError(f"No BLE adapter at {self.adapter_path}: {e}") from e
        except DBusError as e:
            state = (
                PowerState.UNAUTHORIZED
                if "AccessDenied" in (e.type or "") else PowerState.UNSUPPORTED
            )
            self._set_power_state(state)
            raise AdapterError(f"BlueZ unavailable: {e}") from e
        except OSError as e:
            self._set_power_state(PowerState.UNSUPPORTED)
            raise AdapterError(f"System D-Bus unavailable: {e}") from e

        self.adapter_props.on_properties_changed(self._on_adapter_props_changed)
        self.obj_mgr_iface.on_interfaces_added(self._on_interfaces_added)
        self.obj_mgr_iface.on_interfaces_removed(self._on_interfaces_removed)

        self._set_power_state(PowerState.ON if powered else PowerState.OFF)
        logger.info("📡 BlueZ adapter %s ready (powered=%s)", self.adapter_path, powered)

    async def stop(self) -> None:
        if self.bus is None:
            return

        try:
            await self.stop_scan()
        except AdapterError as e:
            logger.debug("Stop scan during shutdown: %s", e)

        for task in list(self._watch_tasks):
            task.cancel()

        for address in list(self._peripherals):
            await self.disconnect(address)

        try:
            self.obj_mgr_iface.off_interfaces_added(self._on_interfaces_added)
            self.obj_mgr_iface.off_interfaces_removed(self._on_interfaces_removed)
            self.adapter_props.off_properties_changed(self._on_adapter_props_changed)
        except Exception:
            logger.debug("Signal handlers already removed")

        self.bus.disconnect()
        self.bus = None
        self._peripherals.clear()
        self._names.clear()
        self._scanning = False
        logger.info("BlueZ adapter stopped")

    # --- Signal handlers ---

    def _on_adapter_props_changed(
        self, iface: str, changed: dict[str, Any], invalidated: list[str]
    ) -> None:
        if iface != ADAPTER_INTERFACE:
            return
        if "Powered" in changed:
            self._set_power_state(PowerState.ON if changed["Powered"].value else PowerState.OFF)
        if "Discovering" in changed:
            self._scanning = bool(changed["Discovering"].value)

    def _on_interfaces_added(self, path: str, interfaces: dict[str, Any]) -> None:
        if DEVICE_INTERFACE not in interfaces:
            return
        if not path.startswith(self.adapter_path + "/"):
            return
        self._handle_device_props(path, interfaces[DEVICE_INTERFACE])

    def _handle_device_props(self, path: str, props: dict[str, Variant]) -> None:
        address = props.get("Address", Variant("s", "")).value
        if not address:
            return
        name = props.get("Name", props.get("Alias", Variant("s", ""))).value
        rssi = props["RSSI"].value if "RSSI" in props else None

        self._notify_discover(DiscoveredPeripheral(id=address, name=name, rssi=rssi))

        # Proxies and signal subscriptions only for our own peripherals
        if not name or not name.startswith(self.name_prefix):
            return
        self._names[address] = name
        if address not in self._peripherals:
            task = asyncio.get_running_loop().create_task(self._watch_device(address))
            self._watch_tasks.add(task)
            task.add_done_callback(self._watch_tasks.discard)

    def _on_interfaces_removed(self, path: str, interfaces: list[str]) -> None:
        if DEVICE_INTERFACE not in interfaces:
            return
        if not path.startswith(self.adapter_path + "/dev_"):
            return
        address = path.rsplit("/dev_", 1)[-1].replace("_", ":")
        self._forget(address)

    def _forget(self, address: str) -> None:
        """Drop proxies and signal handlers of a device BlueZ no longer knows."""
        self._names.pop(address, None)
        peripheral = self._peripherals.pop(address, None)
        if peripheral is None:
            return

        had_gatt = bool(peripheral.notify_handlers)
        peripheral.clear_gatt()
        if peripheral.props_handler is not None:
            try:
                peripheral.props_iface.off_properties_changed(peripheral.props_handler)
            except Exception:
                logger.debug("Could not remove property handler for %s", address)
        logger.debug("BlueZ removed %s", address)
        if had_gatt:
            self._notify_disconnect(address)

    async def _watch_device(self, address: str) -> None:
        try:
            await self._peripheral(address)
        except (DBusError, AdapterError) as e:
            logger.debug("Could not watch %s: %s", address, e)

    def _on_device_props_changed(
        self, address: str, iface: str, changed: dict[str, Any], invalidated: list[str]
    ) -> None:
        if iface != DEVICE_INTERFACE:
            return

        if "Name" in changed:
            self._names[address] = changed["Name"].value

        if "RSSI" in changed:
            self._notify_discover(DiscoveredPeripheral(
                id=address, name=self._names.get(address, ""), rssi=changed["RSSI"].value
            ))

        if "Connected" in changed and not changed["Connected"].value:
            logger.info("BLE link to %s dropped", address)
            peripheral = self._peripherals.get(address)
            if peripheral:
                peripheral.clear_gatt()
            self._notify_disconnect(address)

    # --- Proxy helpers ---

    def _require_bus(self) -> MessageBus:
        if self.bus is None:
            raise AdapterNotReady("BlueZ adapter not started")
        return self.bus

    async def _peripheral(self, device_id: str) -> _Peripheral:
        peripheral = self._peripherals.get(device_id)
        if peripheral is not None:
            return peripheral

        bus = self._require_bus()
        async with self._peripheral_lock:
            peripheral = self._peripherals.get(device_id)
            if peripheral is not None:
                return peripheral

            path = self._device_path(device_id)
            try:
                introspection = await bus.introspect(BLUEZ_SERVICE_NAME, path)
                device_obj = bus.get_proxy_object(BLUEZ_SERVICE_NAME, path, introspection)
                device_iface = device_obj.get_interface(DEVICE_INTERFACE)
                props_iface = device_obj.get_interface(PROPERTIES_INTERFACE)
            except (DBusError, InterfaceNotFoundError) as e:
                raise ConnectFailed(f"Device {device_id} unknown to BlueZ: {e}", device_id) from e

            def _on_props_changed(iface: str, changed: dict[str, Any], invalidated: list[str]) -> None:
                self._on_device_props_changed(device_id, iface, changed, invalidated)

            peripheral = _Peripheral(
                address=device_id,
                path=path,
                name=self._names.get(device_id, ""),
                device_iface=device_iface,
                props_iface=props_iface,
                props_handler=_on_props_changed,
            )
            props_iface.on_properties_changed(_on_props_changed)
            self._peripherals[device_id] = peripheral
            return peripheral

    async def _managed_objects(self) -> dict[str, dict[str, dict[str, Variant]]]:
        self._require_bus()
        return await self.obj_mgr_iface.call_get_managed_objects()

    async def _char(self, peripheral: _Peripheral, char_uuid: str) -> tuple[Any, Any]:
        cached = peripheral.char_ifaces.get(char_uuid)
        if cached:
            return cached

        path = peripheral.characteristics.get(char_uuid)
        if path is None:
            raise CharacteristicNotFound(
                f"Characteristic {char_uuid} not resolved", peripheral.address
            )

        bus = self._require_bus()
        try:
            introspection = await bus.introspect(BLUEZ_SERVICE_NAME, path)
            char_obj = bus.get_proxy_object(BLUEZ_SERVICE_NAME, path, introspection)
            ifaces = (
                char_obj.get_interface(GATT_CHARACTERISTIC_INTERFACE),
                char_obj.get_interface(PROPERTIES_INTERFACE),
            )
        except (DBusError, InterfaceNotFoundError) as e:
            raise GattIOError(f"Characteristic {char_uuid} unavailable: {e}", peripheral.address) from e
        peripheral.char_ifaces[char_uuid] = ifaces
        return ifaces

    # --- Scanning ---

    async def start_scan(self) -> None:
        if self._power_state != PowerState.ON:
            raise AdapterNotReady(f"Bluetooth adapter is {self._power_state.value}")
        if self._scanning:
            return

        try:
            await self.adapter_iface.call_set_discovery_filter({
                "Transport": Variant("s", "le"),
                "DuplicateData": Variant("b", False),
            })
            await self.adapter_iface.call_start_discovery()
        except DBusError as e:
            if "InProgress" not in (e.type or ""):
                raise AdapterError(f"StartDiscovery failed: {e}") from e

        self._scanning = True
        logger.info("🔍 Scanning for BLE devices on %s", self.adapter_path)

        # Devices BlueZ already knows and currently hears carry an RSSI
        try:
            objects = await self._managed_objects()
        except DBusError as e:
            logger.warning("Could not list known devices: %s", e)
            return
        for path, interfaces in objects.items():
            props = interfaces.get(DEVICE_INTERFACE)
            if props and path.startswith(self.adapter_path + "/") and "RSSI" in props:
                self._handle_device_props(path, props)

    async def stop_scan(self) -> None:
        if not self._scanning or self.adapter_iface is None:
            self._scanning = False
            return
        try:
            await self.adapter_iface.call_stop_discovery()
        except DBusError as e:
            logger.debug("StopDiscovery: %s", e)
        self._scanning = False

    # --- Per-peripheral operations ---

    async def connect(self, device_id: str) -> None:
        peripheral = await self._peripheral(device_id)
        try:
            connected = (await peripheral.props_iface.call_get(DEVICE_INTERFACE, "Connected")).value
            if not connected:
                await peripheral.device_iface.call_connect()
        except DBusError as e:
            raise ConnectFailed(f"Connect failed: {e}", device_id) from e

        # GATT objects only exist once BlueZ has resolved the services
        while True:
            try:
                resolved = (
                    await peripheral.props_iface.call_get(DEVICE_INTERFACE, "ServicesResolved")
                ).value
            except DBusError as e:
                raise ConnectFailed(f"Lost device during service resolution: {e}", device_id) from e
            if resolved:
                return
            await asyncio.sleep(SERVICES_CHECK_INTERVAL)

    async def disconnect(self, device_id: str) -> None:
        peripheral = self._peripherals.get(device_id)
        if peripheral is None:
            return
        peripheral.clear_gatt()
        try:
            await asyncio.wait_for(peripheral.device_iface.call_disconnect(), DISCONNECT_TIMEOUT)
        except (asyncio.TimeoutError, DBusError) as e:
            logger.debug("Disconnect %s: %s", device_id, e)

    async def is_connected(self, device_id: str) -> bool:
        peripheral = self._peripherals.get(device_id)
        if peripheral is None:
            return False
        try:
            return bool(
                (await peripheral.props_iface.call_get(DEVICE_INTERFACE, "Connected")).value
            )
        except DBusError:
            return False

    async def discover_services(self, device_id: str) -> list[str]:
        peripheral = await self._peripheral(device_id)
        try:
            objects = await self._managed_objects()
        except DBusError as e:
            raise GattIOError(f"Service discovery failed: {e}", device_id) from e

        peripheral.services.clear()
        for path, interfaces in objects.items():
            props = interfaces.get(GATT_SERVICE_INTERFACE)
            if props and path.startswith(peripheral.path + "/"):
                peripheral.services[normalize_uuid(props["UUID"].value)] = path
        return list(peripheral.services)

    async def discover_characteristics(self, device_id: str, service_uuid: str) -> dict[str, str]:
        peripheral = await self._peripheral(device_id)
        service_uuid = normalize_uuid(service_uuid)
        service_path = peripheral.services.get(service_uuid)
        if service_path is None:
            await self.discover_services(device_id)
            service_path = peripheral.services.get(service_uuid)
        if service_path is None:
            raise ServiceNotFound(f"Service {service_uuid} not found", device_id)

        try:
            objects = await self._managed_objects()
        except DBusError as e:
            raise GattIOError(f"Characteristic discovery failed: {e}", device_id) from e

        found = {}
        for path, interfaces in objects.items():
            props = interfaces.get(GATT_CHARACTERISTIC_INTERFACE)
            if props and props["Service"].value == service_path:
                found[normalize_uuid(props["UUID"].value)] = path
        peripheral.characteristics.update(found)
        return found

    async def subscribe(self, device_id: str, char_uuid: str, on_data: DataCallback) -> None:
        peripheral = await self._peripheral(device_id)
        char_uuid = normalize_uuid(char_uuid)
        char_iface, props_iface = await self._char(peripheral, char_uuid)

        def _on_props_changed(iface: str, changed: dict[str, Any], invalidated: list[str]) -> None:
            if iface == GATT_CHARACTERISTIC_INTERFACE and "Value" in changed:
                on_data(bytes(changed["Value"].value))

        old = peripheral.notify_handlers.pop(char_uuid, None)
        if old is not None:
            props_iface.off_properties_changed(old)
        props_iface.on_properties_changed(_on_props_changed)
        peripheral.notify_handlers[char_uuid] = _on_props_changed

        try:
            await char_iface.call_start_notify()
        except DBusError as e:
            raise GattIOError(f"StartNotify on {char_uuid} failed: {e}", device_id) from e

    async def read(self, device_id: str, char_uuid: str) -> bytes:
        peripheral = await self._peripheral(device_id)
        char_iface, _ = await self._char(peripheral, normalize_uuid(char_uuid))
        try:
            return bytes(await char_iface.call_read_value({}))
        except DBusError as e:
            raise GattIOError(f"ReadValue on {char_uuid} failed: {e}", device_id) from e

    async def write(
        self, device_id: str, char_uuid: str, data: bytes, ack_required: bool = True
    ) -> None:
        peripheral = await self._peripheral(device_id)
        char_iface, _ = await self._char(peripheral, normalize_uuid(char_uuid))
        options = {"type": Variant("s", "request" if ack_required else "command")}
        try:
            await char_iface.call_write_value(bytes(data), options)
        except DBusError as e:
            raise GattIOError(f"WriteValue on {char_uuid} failed: {e}", device_id) from e
