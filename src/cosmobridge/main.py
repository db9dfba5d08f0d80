#!/usr/bin/env python3
import argparse
import asyncio
import os
import signal
import time

from . import __version__
from .ble_adapter import create_adapter
from .config_loader import Config
from .errors import AdapterError
from .logging_setup import get_logger, has_console, setup_logging
from .registry import DeviceRegistry
from .watchdog import Watchdog
from .ws_handler import BroadcastHub

VERSION = f"v{__version__}"

logger = get_logger(__name__)


async def main(cfg: Config) -> None:
    adapter = create_adapter(cfg.ble)
    registry = DeviceRegistry(adapter, cfg.ble)
    hub = BroadcastHub(registry, cfg.server, cfg.heartbeat)
    watchdog = Watchdog(registry, cfg.watchdog)

    try:
        await registry.start()
    except AdapterError as e:
        # Keep serving clients; the watchdog retries scanning once the radio is usable
        logger.error("Bluetooth adapter unavailable: %s", e)

    watchdog.start()
    await hub.start_server()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    _first_signal_time = None

    def handle_shutdown(signum=None, frame=None):
        nonlocal _first_signal_time
        logger.info("Signal %s received, stopping bridge ..", signum or 'SIGINT')
        if stop_event.is_set():
            now = time.monotonic()
            # asyncio can double-fire; only a deliberate second signal forces exit
            if _first_signal_time and (now - _first_signal_time) < 5.0:
                logger.debug("Ignoring duplicate signal (%.1fs after first)",
                             now - _first_signal_time)
                return
            logger.warning("Force shutdown - second signal received")
            os._exit(1)
        _first_signal_time = time.monotonic()
        stop_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, handle_shutdown)
        loop.add_signal_handler(signal.SIGTERM, handle_shutdown)
        signal_method = "asyncio"
    except (NotImplementedError, RuntimeError) as e:
        logger.warning("Could not set asyncio signal handlers: %s", e)
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)
        signal_method = "traditional"

    logger.debug("Signal handling: %s", signal_method)
    logger.info("Cosmo bridge %s listening on ws://%s:%d/ (BLE %s, prefix '%s')",
                VERSION, cfg.server.host, cfg.server.port, cfg.ble.mode, cfg.ble.name_prefix)

    await stop_event.wait()

    logger.info("Stopping bridge ..")

    try:
        logger.info("Stopping watchdog...")
        await asyncio.wait_for(watchdog.stop(), timeout=3.0)
    except asyncio.TimeoutError:
        logger.warning("Watchdog stop timeout")

    try:
        logger.info("Stopping WebSocket server...")
        await asyncio.wait_for(hub.stop_server(), timeout=8.0)
    except asyncio.TimeoutError:
        logger.warning("WebSocket server stop timeout")

    try:
        logger.info("Stopping BLE adapter...")
        await asyncio.wait_for(registry.stop(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("BLE stop timeout")

    logger.info("Shutdown complete")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bridge Cosmo BLE devices to WebSocket clients",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to JSON config file (default: /etc/cosmobridge/config.json)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument("--version", action="version", version=VERSION)
    return parser.parse_args(argv)


def run():
    """Entry point for the cosmobridge CLI."""
    args = _parse_args()

    is_dev = os.getenv("COSMOBRIDGE_ENV") == "dev"
    setup_logging(verbose=args.verbose or is_dev, simple_format=not has_console())

    cfg = Config.load(args.config)

    if cfg.logging.verbose or cfg.logging.log_file:
        setup_logging(
            verbose=args.verbose or is_dev or cfg.logging.verbose,
            log_file=cfg.logging.log_file,
            simple_format=not has_console(),
        )
        if cfg.logging.log_file:
            logger.info("Debug log: %s", cfg.logging.log_file)

    try:
        asyncio.run(main(cfg))
    except KeyboardInterrupt:
        logger.info("Manually stopped with Ctrl+C")
    except Exception as e:
        logger.exception("Unexpected error: %s", e)


if __name__ == "__main__":
    run()
