#!/usr/bin/env python3
"""
WebSocket broadcast hub for the Cosmo bridge using FastAPI.

Every event from the device registry is fanned out to all connected clients.
Inbound client messages are decoded into the closed message union and
dispatched to the registry; replies go to the originating client only.
"""
import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config_loader import HeartbeatConfig, ServerConfig
from .device_session import DeviceState
from .errors import AdapterError, DeviceError, MalformedMessage
from .events import Error
from .logging_setup import get_logger
from .messages import (
    ClientMessage,
    Connect,
    GetDevices,
    Scan,
    SendEventMessage,
    SetColorMessage,
    SetLuminosityMessage,
    WriteMessage,
    parse_client_message,
)
from .registry import DeviceRegistry

logger = get_logger(__name__)

WS_CLOSE_GOING_AWAY = 1001


def _now_ms() -> int:
    return int(time.time() * 1000)


class ClientConnection:
    """One connected WebSocket client with its own bounded send queue."""

    def __init__(self, websocket: WebSocket, client_id: str, queue_size: int = 256):
        self.websocket = websocket
        self.client_id = client_id
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.alive = True
        self.last_seen = time.time()
        self.connected_at = time.time()
        self.dropped = 0
        self._sender_task: asyncio.Task | None = None

    def start(self) -> None:
        self._sender_task = asyncio.create_task(self._sender(), name=f"ws-send-{self.client_id}")

    def send(self, data: dict[str, Any]) -> bool:
        """Queue a message; drops it when the queue is full. True when queued."""
        if not self.alive:
            return False
        try:
            self.queue.put_nowait(data)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Client %s send queue full, %d messages dropped",
                               self.client_id, self.dropped)
            return False

    async def _sender(self) -> None:
        while True:
            data = await self.queue.get()
            try:
                await self.websocket.send_text(json.dumps(data))
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("Client %s send failed: %s", self.client_id, e)
                self.alive = False
                return
            finally:
                self.queue.task_done()

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until queued messages have been written."""
        if self._sender_task is None or self._sender_task.done():
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("Client %s flush timeout", self.client_id)

    def touch(self) -> None:
        self.last_seen = time.time()

    async def close(self, code: int = 1000) -> None:
        self.alive = False
        if self._sender_task and not self._sender_task.done():
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass  # Expected when we cancel
        try:
            await self.websocket.close(code=code)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            # Already closed by the peer
            logger.debug("Client %s close: %s", self.client_id, e)


class BroadcastHub:
    """
    Manages WebSocket clients, event fan-out and inbound command dispatch.

    While the app is up a background task drains the registry queue into
    every client's send queue. Client liveness is left to uvicorn's
    WebSocket ping/pong (see server_settings).
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        server: ServerConfig | None = None,
        heartbeat: HeartbeatConfig | None = None,
    ):
        self.registry = registry
        self.server_config = server or ServerConfig()
        self.heartbeat = heartbeat or HeartbeatConfig()
        self.clients: dict[str, ClientConnection] = {}
        self.clients_lock = asyncio.Lock()
        self.app: FastAPI | None = None
        self.server: Any = None
        self._server_task: asyncio.Task | None = None
        self._background: list[asyncio.Task] = []
        self._request_tasks: set[asyncio.Task] = set()

        logger.info("BroadcastHub initialized for %s:%d",
                    self.server_config.host, self.server_config.port)

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            """Handle startup and shutdown."""
            logger.info("WebSocket server starting up")
            self.start_background()
            yield
            logger.info("WebSocket server shutting down")
            await self.stop_background()
            await self._disconnect_all_clients()

        app = FastAPI(
            title="Cosmo Bridge",
            version=__version__,
            description="WebSocket bridge for Cosmo BLE devices",
            lifespan=lifespan,
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["*"],
        )

        @app.websocket("/")
        async def websocket_endpoint(websocket: WebSocket):
            await websocket.accept()
            client = await self.register(websocket)

            try:
                client.send({"type": "connected"})
                client.send(self._devices_list())

                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    raw = message.get("text")
                    if raw is None:
                        raw = message.get("bytes") or b""
                    await self.handle_message(client, raw)

            except WebSocketDisconnect:
                pass
            finally:
                await self.unregister(client)

        @app.get("/health")
        async def health_check():
            """Health check endpoint for supervisors."""
            return {
                "status": "healthy",
                "clients": len(self.clients),
                "devices": len(self.registry),
                "timestamp": _now_ms(),
            }

        return app

    # --- Client bookkeeping ---

    async def register(self, websocket: WebSocket) -> ClientConnection:
        client = ClientConnection(
            websocket, str(uuid.uuid4())[:8], queue_size=self.heartbeat.send_queue_size
        )
        client.start()
        async with self.clients_lock:
            self.clients[client.client_id] = client
        logger.info("WebSocket client connected: %s (%d total)", client.client_id, len(self.clients))
        return client

    async def unregister(self, client: ClientConnection, code: int = 1000) -> None:
        async with self.clients_lock:
            removed = self.clients.pop(client.client_id, None)
        await client.close(code)
        if removed is not None:
            logger.info("WebSocket client disconnected: %s", client.client_id)

    async def _disconnect_all_clients(self) -> None:
        async with self.clients_lock:
            clients = list(self.clients.values())
            self.clients.clear()
        for client in clients:
            await client.close(WS_CLOSE_GOING_AWAY)

    def get_client_count(self) -> int:
        return len(self.clients)

    # --- Fan-out ---

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Queue message for every live client."""
        async with self.clients_lock:
            clients = list(self.clients.values())

        for client in clients:
            try:
                client.send(message)
            except Exception as e:
                logger.warning("Failed to queue message for client %s: %s", client.client_id, e)

    async def _event_pump(self) -> None:
        while True:
            event = await self.registry.events.get()
            message = event.to_message()
            if logger.isEnabledFor(10):  # DEBUG level
                logger.debug("Broadcast %s: %s", event.type, str(message)[:120])
            await self.broadcast(message)

    def start_background(self) -> None:
        self._background = [
            asyncio.create_task(self._event_pump(), name="hub-event-pump"),
        ]

    async def stop_background(self) -> None:
        tasks = self._background + list(self._request_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background = []
        self._request_tasks.clear()

    # --- Inbound dispatch ---

    def _devices_list(self) -> dict[str, Any]:
        return {"type": "devicesList", "devices": self.registry.list_devices()}

    async def handle_message(self, client: ClientConnection, raw: str | bytes) -> None:
        """Decode and dispatch one client message; failures answer the sender only."""
        client.touch()
        try:
            message = parse_client_message(raw)
        except MalformedMessage as e:
            logger.debug("Client %s sent malformed message: %s", client.client_id, e)
            client.send(Error(message=str(e), code="MalformedMessage").to_message())
            return

        try:
            await self._dispatch(client, message)
        except Exception as e:
            logger.error("Error handling %s from %s: %s",
                         message.type, client.client_id, e, exc_info=True)
            client.send(Error(message=f"Internal error: {e}").to_message())

    async def _dispatch(self, client: ClientConnection, message: ClientMessage) -> None:
        if isinstance(message, GetDevices):
            client.send(self._devices_list())

        elif isinstance(message, Scan):
            try:
                await self.registry.start_scan()
                logger.info("Scan requested by %s", client.client_id)
            except AdapterError as e:
                client.send(Error(message=str(e), code=type(e).__name__).to_message())

        elif isinstance(message, Connect):
            task = asyncio.create_task(
                self._connect_request(client, message.deviceId),
                name=f"connect-request-{message.deviceId}",
            )
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)

        elif isinstance(message, (SetColorMessage, SetLuminosityMessage)):
            success = True
            try:
                await self.registry.send_command(message.deviceId, message.to_command())
            except DeviceError as e:
                logger.info("%s for %s failed: %s", message.type, message.deviceId, e)
                success = False
            client.send({
                "type": "eventResult",
                "success": success,
                "originalEvent": message.model_dump(),
            })

        elif isinstance(message, SendEventMessage):
            command = message.to_command()
            success = command is not None
            if command is None:
                logger.info("Unknown command type '%s' from %s", message.eventType, client.client_id)
            else:
                try:
                    await self.registry.send_command(message.deviceId, command)
                except DeviceError as e:
                    logger.info("%s for %s failed: %s", message.eventType, message.deviceId, e)
                    success = False
            client.send({
                "type": "eventResult",
                "success": success,
                "originalEvent": message.model_dump(),
            })

        elif isinstance(message, WriteMessage):
            success = True
            try:
                await self.registry.write_characteristic(
                    message.deviceId, message.characteristicUUID, bytes(message.value)
                )
            except DeviceError as e:
                logger.info("Write to %s on %s failed: %s",
                            message.characteristicUUID, message.deviceId, e)
                success = False
            client.send({"type": "writeResult", "deviceId": message.deviceId, "success": success})

    async def _connect_request(self, client: ClientConnection, device_id: str) -> None:
        try:
            state = await self.registry.connect(device_id)
            success = state == DeviceState.READY
        except DeviceError as e:
            logger.info("Connect request for %s failed: %s", device_id, e)
            success = False
        except Exception as e:
            logger.error("Connect request for %s crashed: %s", device_id, e, exc_info=True)
            success = False
        client.send({"type": "connectResult", "deviceId": device_id, "success": success})

    # --- Server lifecycle ---

    def server_settings(self, app: FastAPI) -> uvicorn.Config:
        """
        uvicorn settings, including the protocol-level WebSocket heartbeat.

        uvicorn pings every client each ping_interval and drops a client
        whose pong has not arrived within the timeout. Browsers answer
        these pings on their own, so clients need no heartbeat code.
        """
        return uvicorn.Config(
            app,
            host=self.server_config.host,
            port=self.server_config.port,
            log_level="warning",  # Reduce uvicorn logging noise
            access_log=False,
            ws_ping_interval=self.heartbeat.ping_interval,
            ws_ping_timeout=(
                self.heartbeat.ping_interval * max(self.heartbeat.max_missed_pongs - 1, 1)
            ),
        )

    async def start_server(self) -> None:
        """Start the FastAPI server."""
        self.app = self.create_app()
        self.server = uvicorn.Server(self.server_settings(self.app))

        self._server_task = asyncio.create_task(self._run_server())
        logger.info("WebSocket server started on ws://%s:%d/",
                    self.server_config.host, self.server_config.port)

    async def _run_server(self) -> None:
        """Run the uvicorn server."""
        try:
            await self.server.serve()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("WebSocket server error: %s", e)

    async def stop_server(self) -> None:
        """Stop the FastAPI server."""
        if self.server:
            self.server.should_exit = True

            if self._server_task:
                try:
                    await asyncio.wait_for(self._server_task, timeout=5.0)
                except asyncio.TimeoutError:
                    self._server_task.cancel()
                    try:
                        await self._server_task
                    except asyncio.CancelledError:
                        pass

        await self.stop_background()
        await self._disconnect_all_clients()
        logger.info("WebSocket server stopped")
