"""
Process inspector tests against the live process table.
"""

import os
import socket
import subprocess
import sys

import psutil
import pytest

from toolbox_api.core.errors import NotFound, ValidationError
from toolbox_api.schemas.processes import ProcessFilter
from toolbox_api.services.processes import ProcessInspector


@pytest.fixture
def inspector():
    return ProcessInspector()


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock
    sock.close()


@pytest.fixture
def sleeper():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
        proc.wait()


class TestListing:
    """Tests for process and socket listings."""

    def test_filter_by_pid(self, inspector):
        rows = inspector.list(ProcessFilter(pid=os.getpid()))
        assert [r.pid for r in rows] == [os.getpid()]
        assert rows[0].memory > 0

    def test_filter_by_name_is_case_insensitive(self, inspector):
        name = psutil.Process().name()
        rows = inspector.list(ProcessFilter(name=name.upper()))
        assert os.getpid() in {r.pid for r in rows}
        assert all(name.lower() in r.name.lower() for r in rows)

    def test_rows_sorted_by_pid(self, inspector):
        pids = [r.pid for r in inspector.list()]
        assert pids == sorted(pids)

    def test_get_by_port_finds_listener(self, inspector, listener):
        port = listener.getsockname()[1]
        rows = inspector.get_by_port(port)

        own = [r for r in rows if r.pid == os.getpid()]
        assert len(own) == 1
        assert own[0].port == port
        assert own[0].protocol == "tcp"
        assert own[0].local_addr == f"127.0.0.1:{port}"

    def test_get_by_port_out_of_range(self, inspector):
        with pytest.raises(ValidationError):
            inspector.get_by_port(0)

    def test_port_occupation_sorted(self, inspector, listener):
        port = listener.getsockname()[1]
        rows = inspector.port_occupation()

        keys = [(r.port, r.protocol, r.pid) for r in rows]
        assert keys == sorted(keys)
        assert len(keys) == len(set(keys))
        mine = [r for r in rows if r.port == port and r.pid == os.getpid()]
        assert mine and mine[0].state == psutil.CONN_LISTEN

    def test_system_stats(self, inspector):
        stats = inspector.system_stats()
        assert stats.total_memory >= stats.used_memory > 0
        assert stats.cpu_count >= 1
        assert stats.process_count > 0
        assert "totalMemory" in stats.wire()


class TestKill:
    """Tests for process termination."""

    def test_unknown_pid(self, inspector):
        with pytest.raises(NotFound):
            inspector.kill(99999999)

    def test_refuses_own_process(self, inspector):
        with pytest.raises(ValidationError):
            inspector.kill(os.getpid())

    def test_terminates_child(self, inspector, sleeper):
        inspector.kill(sleeper.pid)
        sleeper.wait(timeout=10)
        assert not psutil.pid_exists(sleeper.pid)

    def test_force_kill_child(self, inspector, sleeper):
        inspector.kill(sleeper.pid, force=True)
        assert sleeper.wait(timeout=10) != 0
