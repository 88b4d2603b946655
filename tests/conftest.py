"""
Shared fixtures for toolbox tests.
"""

import asyncio
import socket
import time

import pytest

from toolbox_api.config import ToolboxSettings
from toolbox_api.core.ports import PortLeases
from toolbox_api.core.registry import TaskRegistry
from toolbox_api.core.snapshot import SnapshotStore


def free_port() -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll ``predicate`` until it is truthy or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met before timeout")


@pytest.fixture
def settings(tmp_path):
    return ToolboxSettings(
        data_dir=str(tmp_path / "data"),
        download_dir=str(tmp_path / "downloads"),
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        persist=True,
    )


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def leases():
    return PortLeases()


@pytest.fixture
def snapshots(tmp_path):
    return SnapshotStore(tmp_path / "state")
