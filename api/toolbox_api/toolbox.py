"""
Service container: one instance of every toolbox subsystem sharing a task
registry, port leases and snapshot store.
"""

from __future__ import annotations

from typing import Optional

import httpx
from loguru import logger

from toolbox_api.config import ToolboxSettings
from toolbox_api.core.ports import PortLeases
from toolbox_api.core.registry import TaskRegistry
from toolbox_api.core.snapshot import SnapshotStore
from toolbox_api.services.downloader import DownloadManager
from toolbox_api.services.forwarder import PortForwarder
from toolbox_api.services.netcat import NetcatManager
from toolbox_api.services.processes import ProcessInspector
from toolbox_api.services.scanner import PortScanner
from toolbox_api.services.static_server import StaticServerManager


class Toolbox:
    def __init__(self, settings: ToolboxSettings, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.registry = TaskRegistry()
        self.leases = PortLeases()
        self.snapshots = SnapshotStore(settings.data_path, enabled=settings.persist)

        self.scanner = PortScanner(
            self.registry,
            default_timeout_ms=settings.scan_timeout_ms,
            default_concurrency=settings.scan_concurrency,
        )
        self.downloads = DownloadManager(
            self.registry,
            self.snapshots,
            default_dir=settings.default_download_dir(),
            max_retries=settings.download_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            transport=http_transport,
        )
        self.forwarder = PortForwarder(self.registry, self.leases, self.snapshots)
        self.servers = StaticServerManager(self.registry, self.leases, self.snapshots)
        self.processes = ProcessInspector()
        self.netcat = NetcatManager(self.registry, self.leases, self.snapshots, http_transport=http_transport)

    async def startup(self) -> None:
        await self.downloads.load()
        await self.forwarder.load()
        await self.servers.load()
        await self.netcat.init()
        logger.info(f"Toolbox ready (data dir {self.settings.data_path})")

    async def shutdown(self) -> None:
        self.scanner.stop_scan()
        await self.downloads.shutdown()
        await self.forwarder.shutdown()
        await self.servers.shutdown()
        await self.netcat.shutdown()
        logger.info("Toolbox stopped")
