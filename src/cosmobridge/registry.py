#!/usr/bin/env python3
"""
Device Registry - id -> DeviceSession map and the bridge event queue.

The registry wires the adapter callbacks, filters discoveries by advertised
name, creates one session per device id and funnels every event any session
produces into a single asyncio.Queue consumed by the broadcast hub.
"""
import asyncio
import logging
from typing import Any, Coroutine

from .ble_adapter import BLEAdapterBase, DiscoveredPeripheral, PowerState
from .ble_protocol import Command
from .config_loader import BLEConfig
from .device_session import CONNECT_IN_PROGRESS, DeviceSession, DeviceState
from .errors import AdapterError, DeviceNotFound
from .events import DeviceDiscovered, DeviceUpdated, Error, Event

logger = logging.getLogger(__name__)

RECONNECTABLE = (DeviceState.DISCOVERED, DeviceState.DISCONNECTED)


class DeviceRegistry:
    def __init__(self, adapter: BLEAdapterBase, config: BLEConfig | None = None) -> None:
        self.adapter = adapter
        self.config = config or BLEConfig()
        self.events: asyncio.Queue[Event] = asyncio.Queue()

        self._sessions: dict[str, DeviceSession] = {}
        self._tasks: set[asyncio.Task] = set()

        adapter.set_callbacks(
            on_discover=self._on_discover,
            on_disconnect=self._on_disconnect,
            on_power_state=self._on_power_state,
        )

    def emit(self, event: Event) -> None:
        self.events.put_nowait(event)

    # --- Lookup ---

    def get(self, device_id: str) -> DeviceSession | None:
        return self._sessions.get(device_id)

    def get_or_create(self, device_id: str, name: str, rssi: int | None = None) -> DeviceSession:
        session = self._sessions.get(device_id)
        if session is None:
            session = DeviceSession(
                device_id,
                name,
                self.adapter,
                self.emit,
                connect_timeout=self.config.connect_timeout,
                rssi=rssi,
            )
            self._sessions[device_id] = session
        return session

    def _require(self, device_id: str) -> DeviceSession:
        session = self._sessions.get(device_id)
        if session is None:
            raise DeviceNotFound(f"Device {device_id} not found", device_id)
        return session

    def list_devices(self) -> list[dict[str, Any]]:
        return [session.snapshot() for session in self._sessions.values()]

    def ready_sessions(self) -> list[DeviceSession]:
        return [s for s in self._sessions.values() if s.state == DeviceState.READY]

    def __len__(self) -> int:
        return len(self._sessions)

    # --- Operations ---

    async def connect(self, device_id: str) -> DeviceState:
        """
        Connect a known device and return its settled state.

        If an attempt is already running, waits for that attempt instead of
        starting another one.

        Raises:
            DeviceNotFound: id was never discovered
        """
        session = self._require(device_id)
        state = await session.connect()
        if state in CONNECT_IN_PROGRESS:
            state = await session.settled_state()
        return state

    async def handle_disconnect(self, device_id: str) -> None:
        session = self._sessions.get(device_id)
        if session is not None:
            await session.handle_disconnect()

    async def send_command(self, device_id: str, command: Command) -> None:
        await self._require(device_id).send_command(command)

    async def write_characteristic(self, device_id: str, char_uuid: str, data: bytes) -> None:
        await self._require(device_id).write_characteristic(char_uuid, data)

    async def start_scan(self) -> None:
        await self.adapter.start_scan()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the radio; AdapterError propagates to the caller."""
        await self.adapter.start()
        logger.info("Device registry started, adapter %s", self.adapter.power_state.value)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        try:
            await self.adapter.stop()
        except AdapterError as e:
            logger.warning("Adapter stop failed: %s", e)
        logger.info("Device registry stopped (%d devices known)", len(self._sessions))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed: %s", task.get_name(), exc, exc_info=exc)

    # --- Adapter callbacks ---

    def _on_discover(self, peripheral: DiscoveredPeripheral) -> None:
        if not peripheral.name or not peripheral.name.startswith(self.config.name_prefix):
            return

        session = self._sessions.get(peripheral.id)
        if session is None:
            session = self.get_or_create(peripheral.id, peripheral.name, peripheral.rssi)
            logger.info("📡 Discovered %s (%s) rssi=%s",
                        peripheral.name, peripheral.id, peripheral.rssi)
            self.emit(DeviceDiscovered(session.snapshot()))
        elif session.update_rssi(peripheral.rssi):
            self.emit(DeviceUpdated(session.snapshot()))

        if self.config.auto_connect and session.state in RECONNECTABLE:
            self._spawn(session.connect(), name=f"connect-{session.id}")

    def _on_disconnect(self, device_id: str) -> None:
        if device_id in self._sessions:
            self._spawn(self.handle_disconnect(device_id), name=f"disconnect-{device_id}")

    def _on_power_state(self, state: PowerState) -> None:
        if state == PowerState.ON:
            logger.info("Bluetooth powered on, scanning will resume")
            return

        for session in self.ready_sessions():
            self._spawn(session.handle_disconnect(), name=f"disconnect-{session.id}")
        self.emit(Error(message=f"Bluetooth adapter is {state.value}", code="AdapterNotReady"))
