"""
Port forwarder tests using loopback echo servers.
"""

import asyncio
import socket

import pytest

from conftest import free_port, wait_until
from toolbox_api.core.errors import NotFound, ResourceConflict, ValidationError
from toolbox_api.schemas.forwarder import ForwardRuleInput
from toolbox_api.services.forwarder import PortForwarder


async def _echo(reader, writer):
    try:
        while True:
            data = await reader.read(4096)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()


async def echo_server():
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


def rule_input(local_port, remote_port, name="web"):
    return ForwardRuleInput(name=name, local_port=local_port, remote_host="127.0.0.1", remote_port=remote_port)


@pytest.fixture
def forwarder(registry, leases, snapshots):
    return PortForwarder(registry, leases, snapshots, listen_host="127.0.0.1", dial_timeout=2.0)


async def round_trip(port, payload):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    await writer.drain()
    writer.write_eof()
    received = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return received


class TestRuleCrud:
    """Tests for rule validation and bookkeeping."""

    @pytest.mark.asyncio
    async def test_add_list_remove(self, forwarder):
        rule = await forwarder.add_rule(rule_input(18080, 80))
        assert rule.status == "stopped"
        assert [r.id for r in forwarder.list_rules()] == [rule.id]

        await forwarder.remove_rule(rule.id)
        with pytest.raises(NotFound):
            forwarder.get_rule(rule.id)

    @pytest.mark.asyncio
    async def test_invalid_ports_and_host(self, forwarder):
        with pytest.raises(ValidationError):
            await forwarder.add_rule(rule_input(0, 80))
        with pytest.raises(ValidationError):
            await forwarder.add_rule(rule_input(8080, 70000))
        with pytest.raises(ValidationError):
            await forwarder.add_rule(ForwardRuleInput(name="x", local_port=8080, remote_host="  ", remote_port=80))

    @pytest.mark.asyncio
    async def test_reload_resets_runtime_state(self, registry, leases, snapshots, forwarder):
        rule = await forwarder.add_rule(rule_input(18081, 80))
        rule.status = "running"
        rule.bytes_in = 42
        await forwarder.save()

        fresh = PortForwarder(registry, leases, snapshots)
        await fresh.load()

        loaded = fresh.get_rule(rule.id)
        assert loaded.status == "stopped"
        assert loaded.bytes_in == 0
        assert loaded.remote_port == 80


class TestRelaying:
    """Tests for running rules."""

    @pytest.mark.asyncio
    async def test_bytes_relayed_and_counted(self, forwarder):
        upstream, upstream_port = await echo_server()
        payload = bytes(range(256)) * 200
        try:
            rule = await forwarder.add_rule(rule_input(free_port(), upstream_port))
            await forwarder.start(rule.id)

            assert await round_trip(rule.local_port, payload) == payload
            await wait_until(lambda: forwarder.get_rule(rule.id).active_connections == 0)

            stats = forwarder.get_stats(rule.id)
            assert stats.connections == 1
            assert stats.bytes_out == len(payload)
            assert stats.bytes_in == len(payload)
            assert stats.failed_connections == 0
        finally:
            await forwarder.shutdown()
            upstream.close()

    @pytest.mark.asyncio
    async def test_same_port_conflicts_and_first_keeps_working(self, forwarder):
        upstream, upstream_port = await echo_server()
        port = free_port()
        try:
            first = await forwarder.add_rule(rule_input(port, upstream_port, name="first"))
            second = await forwarder.add_rule(rule_input(port, upstream_port, name="second"))
            await forwarder.start(first.id)

            with pytest.raises(ResourceConflict):
                await forwarder.start(second.id)

            assert forwarder.get_rule(second.id).status == "stopped"
            assert await round_trip(port, b"still here") == b"still here"
        finally:
            await forwarder.shutdown()
            upstream.close()

    @pytest.mark.asyncio
    async def test_port_bound_elsewhere_conflicts(self, forwarder, leases):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        try:
            rule = await forwarder.add_rule(rule_input(port, 80))
            with pytest.raises(ResourceConflict):
                await forwarder.start(rule.id)
            assert forwarder.get_rule(rule.id).status == "stopped"
            assert leases.holder(port) is None
        finally:
            blocker.close()

    @pytest.mark.asyncio
    async def test_unreachable_remote_counts_failure(self, forwarder):
        rule = await forwarder.add_rule(rule_input(free_port(), free_port()))
        await forwarder.start(rule.id)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", rule.local_port)
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            writer.close()

            await wait_until(lambda: forwarder.get_rule(rule.id).failed_connections == 1)
            assert forwarder.get_rule(rule.id).active_connections == 0
        finally:
            await forwarder.shutdown()

    @pytest.mark.asyncio
    async def test_stop_closes_open_relays(self, forwarder, registry, leases):
        upstream, upstream_port = await echo_server()
        try:
            rule = await forwarder.add_rule(rule_input(free_port(), upstream_port))
            await forwarder.start(rule.id)
            reader, writer = await asyncio.open_connection("127.0.0.1", rule.local_port)
            await wait_until(lambda: forwarder.get_rule(rule.id).active_connections == 1)

            await asyncio.wait_for(forwarder.stop(rule.id), timeout=5)

            try:
                tail = await asyncio.wait_for(reader.read(), timeout=5)
            except ConnectionResetError:
                tail = b""
            assert tail == b""
            writer.close()
            assert forwarder.get_rule(rule.id).status == "stopped"
            assert not registry.is_active(f"forward:{rule.id}")
            assert leases.holder(rule.local_port) is None
        finally:
            upstream.close()

    @pytest.mark.asyncio
    async def test_update_restarts_running_rule(self, forwarder):
        upstream, upstream_port = await echo_server()
        old_port, new_port = free_port(), free_port()
        try:
            rule = await forwarder.add_rule(rule_input(old_port, upstream_port))
            await forwarder.start(rule.id)

            updated = await forwarder.update_rule(rule.id, rule_input(new_port, upstream_port))

            assert updated.status == "running"
            assert updated.local_port == new_port
            assert await round_trip(new_port, b"moved") == b"moved"
            with pytest.raises(OSError):
                await round_trip(old_port, b"gone")
        finally:
            await forwarder.shutdown()
            upstream.close()
