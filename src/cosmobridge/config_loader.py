#!/usr/bin/env python3
"""
Centralized configuration for the Cosmo bridge.

Provides dataclass-based configuration with defaults and validation.
Supports environment variable overrides for deployment flexibility.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

# ── Protocol constants (fixed by clients / hardware) ─────────────────

WS_DEFAULT_HOST = "0.0.0.0"
WS_DEFAULT_PORT = 8080                 # Clients hardcode ws://<host>:8080
DEFAULT_NAME_PREFIX = "Cosmo"          # Advertised local name of the peripheral

SCAN_POLICIES = ("continuous", "when_idle")
BLE_MODES = ("bluez", "disabled")


@dataclass
class ServerConfig:
    """WebSocket server configuration."""

    host: str = WS_DEFAULT_HOST
    port: int = WS_DEFAULT_PORT


@dataclass
class BLEConfig:
    """Bluetooth Low Energy configuration."""

    mode: str = "bluez"         # "bluez" | "disabled"
    adapter: str = "hci0"       # BlueZ controller name
    name_prefix: str = DEFAULT_NAME_PREFIX
    auto_connect: bool = True   # connect as soon as a device is discovered
    connect_timeout: float = 10.0


@dataclass
class WatchdogConfig:
    """Periodic scan and liveness checks."""

    scan_interval: float = 5.0
    liveness_interval: float = 5.0
    scan_policy: str = "continuous"  # "continuous" | "when_idle"


@dataclass
class HeartbeatConfig:
    """WebSocket client heartbeat and send buffering."""

    ping_interval: float = 30.0
    max_missed_pongs: int = 2
    send_queue_size: int = 256


@dataclass
class LoggingConfig:
    """Logging output."""

    verbose: bool = False
    log_file: str | None = None


@dataclass
class Config:
    """Main bridge configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    ble: BLEConfig = field(default_factory=BLEConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses environment-based default.

        Returns:
            Config instance with loaded values.
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path)

        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.info("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path based on environment."""
        if os.getenv("COSMOBRIDGE_ENV") == "dev":
            logger.debug("DEV environment detected")
            return Path("/etc/cosmobridge/config.dev.json")
        return Path("/etc/cosmobridge/config.json")

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data), applying env overrides."""
        server = ServerConfig(
            host=os.getenv("COSMOBRIDGE_HOST", data.get("WS_HOST", WS_DEFAULT_HOST)),
            port=int(os.getenv("COSMOBRIDGE_PORT", data.get("WS_PORT", WS_DEFAULT_PORT))),
        )

        ble_mode = os.getenv("COSMOBRIDGE_BLE_MODE", data.get("BLE_MODE", "bluez"))
        if ble_mode not in BLE_MODES:
            logger.warning("Unknown BLE mode '%s', falling back to 'bluez'", ble_mode)
            ble_mode = "bluez"

        ble = BLEConfig(
            mode=ble_mode,
            adapter=os.getenv("COSMOBRIDGE_BLE_ADAPTER", data.get("BLE_ADAPTER", "hci0")),
            name_prefix=data.get("DEVICE_NAME_PREFIX", DEFAULT_NAME_PREFIX),
            auto_connect=_as_bool(
                os.getenv("COSMOBRIDGE_AUTO_CONNECT", data.get("AUTO_CONNECT", True))
            ),
            connect_timeout=float(data.get("CONNECT_TIMEOUT", 10.0)),
        )

        scan_policy = data.get("SCAN_POLICY", "continuous")
        if scan_policy not in SCAN_POLICIES:
            logger.warning("Unknown scan policy '%s', using 'continuous'", scan_policy)
            scan_policy = "continuous"

        watchdog = WatchdogConfig(
            scan_interval=float(data.get("SCAN_INTERVAL", 5.0)),
            liveness_interval=float(data.get("LIVENESS_INTERVAL", 5.0)),
            scan_policy=scan_policy,
        )

        heartbeat = HeartbeatConfig(
            ping_interval=float(data.get("PING_INTERVAL", 30.0)),
            max_missed_pongs=int(data.get("MAX_MISSED_PONGS", 2)),
            send_queue_size=int(data.get("SEND_QUEUE_SIZE", 256)),
        )

        log_cfg = LoggingConfig(
            verbose=_as_bool(data.get("VERBOSE", False)),
            log_file=os.getenv("COSMOBRIDGE_LOG_FILE", data.get("LOG_FILE")),
        )

        return cls(
            server=server,
            ble=ble,
            watchdog=watchdog,
            heartbeat=heartbeat,
            logging=log_cfg,
        )


def _as_bool(value: Any) -> bool:
    """JSON booleans pass through; strings from env or hand-edited files are parsed."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
