#!/usr/bin/env python3
"""
Watchdog - periodic scan supervision and connection liveness polling.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from .config_loader import WatchdogConfig
from .errors import AdapterError, AdapterNotReady
from .registry import DeviceRegistry

logger = logging.getLogger(__name__)

MAX_LOGGED_FAILURES = 3  # consecutive tick failures logged before going quiet


class Watchdog:
    def __init__(self, registry: DeviceRegistry, config: WatchdogConfig | None = None) -> None:
        self.registry = registry
        self.config = config or WatchdogConfig()
        self._tasks: list[asyncio.Task] = []
        self._failures = {"scan": 0, "liveness": 0}

    async def scan_tick(self) -> None:
        """
        Keep discovery running according to the scan policy.

        continuous: scanning stays on regardless of connections and is
        restarted whenever it stopped.
        when_idle: scanning runs only while no device is Ready.
        """
        adapter = self.registry.adapter

        if self.config.scan_policy == "when_idle" and self.registry.ready_sessions():
            if adapter.is_scanning:
                logger.debug("Device ready, pausing scan")
                await adapter.stop_scan()
            return

        if adapter.is_scanning:
            return

        try:
            await self.registry.start_scan()
            logger.debug("Scan (re)started")
        except AdapterNotReady as e:
            logger.debug("Scan skipped: %s", e)
        except AdapterError as e:
            logger.warning("Starting scan failed: %s", e)

    async def liveness_tick(self) -> None:
        sessions = self.registry.ready_sessions()
        if sessions:
            await asyncio.gather(*(s.check_connection() for s in sessions))

    async def _guarded(self, name: str, tick: Callable[[], Awaitable[None]]) -> None:
        """Run one tick; failures are logged and the loop carries on."""
        try:
            await tick()
        except Exception as e:
            self._failures[name] += 1
            if self._failures[name] <= MAX_LOGGED_FAILURES:
                logger.warning("Watchdog %s tick failed: %s", name, e, exc_info=True)
        else:
            if self._failures[name] > MAX_LOGGED_FAILURES:
                logger.info("Watchdog %s tick recovered after %d failures",
                            name, self._failures[name])
            self._failures[name] = 0

    async def _scan_loop(self) -> None:
        while True:
            await self._guarded("scan", self.scan_tick)
            await asyncio.sleep(self.config.scan_interval)

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.liveness_interval)
            await self._guarded("liveness", self.liveness_tick)

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._scan_loop(), name="watchdog-scan"),
            asyncio.create_task(self._liveness_loop(), name="watchdog-liveness"),
        ]
        logger.info("Watchdog started (scan every %.0fs, %s; liveness every %.0fs)",
                    self.config.scan_interval, self.config.scan_policy,
                    self.config.liveness_interval)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when we cancel
        self._tasks = []
