"""
Socket runtimes for netcat sessions: TCP/UDP in client or server mode.

A runtime owns the sockets and reader tasks of one started session and
reports everything that happens through a ``SessionEvents`` sink.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from loguru import logger

from toolbox_api.core.errors import NotFound, ResourceConflict, TransientIOError, ValidationError
from toolbox_api.core.ports import PortLeases, bind_error, bind_tcp
from toolbox_api.schemas.common import now_ms
from toolbox_api.schemas.netcat import ConnectedClient, NetcatSession

READ_SIZE = 65536
RECONNECT_MAX_DELAY = 30.0


class SessionEvents:
    """Callbacks a runtime uses to report status, traffic and clients."""

    def set_status(self, session: NetcatSession, status: str, error: Optional[str] = None) -> None:
        raise NotImplementedError

    def received(self, session: NetcatSession, data: bytes, client: Optional[ConnectedClient]) -> None:
        raise NotImplementedError

    def client_connected(self, session: NetcatSession, client: ConnectedClient) -> None:
        raise NotImplementedError

    def client_disconnected(self, session: NetcatSession, client: ConnectedClient) -> None:
        raise NotImplementedError


def udp_client_id(addr: str) -> str:
    return "udp-" + addr.replace(":", "-").replace(".", "-")


class SessionRuntime:
    def __init__(self, session: NetcatSession, events: SessionEvents, leases: PortLeases, new_id: Callable[[], str]):
        self.session = session
        self.events = events
        self.leases = leases
        self.new_id = new_id

    @property
    def holder(self) -> str:
        return f"netcat session '{self.session.name}'"

    def _lease(self, protocol: str) -> None:
        try:
            self.leases.acquire(self.session.port, self.holder, protocol)
        except ResourceConflict as e:
            self.events.set_status(self.session, "error", e.message)
            raise

    async def start(self) -> None:
        raise NotImplementedError

    def abort(self) -> None:
        """Close sockets and cancel reader tasks without waiting."""
        raise NotImplementedError

    async def wait_closed(self) -> None:
        pass

    async def send(self, payload: bytes, target: Optional[str], broadcast: bool) -> List[Optional[ConnectedClient]]:
        raise NotImplementedError

    def clients(self) -> List[ConnectedClient]:
        return []

    async def disconnect_client(self, client_id: str) -> None:
        raise ValidationError("client sessions have no connected clients")


# ── TCP client ─────────────────────────────────────────────────────────────────
class TcpClientRuntime(SessionRuntime):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self._connect()
        self._task = asyncio.create_task(self._run())

    async def _connect(self) -> None:
        s = self.session
        self.events.set_status(s, "connecting")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(s.host, s.port), s.timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            message = f"connect to {s.host}:{s.port} timed out after {s.timeout_ms} ms"
            self.events.set_status(s, "error", message)
            raise TransientIOError(message) from e
        except OSError as e:
            message = f"connect to {s.host}:{s.port} failed: {e.strerror or e}"
            self.events.set_status(s, "error", message)
            raise TransientIOError(message) from e
        self.events.set_status(s, "connected")

    async def _run(self) -> None:
        attempt = 0
        while True:
            error = await self._read_until_closed()
            if not self.session.auto_reconnect:
                self.events.set_status(self.session, "error" if error else "disconnected", error)
                return
            while True:
                attempt += 1
                delay = min(2 ** (attempt - 1), RECONNECT_MAX_DELAY)
                logger.info(f"Netcat {self.session.id}: reconnecting in {delay:.0f}s (attempt {attempt})")
                await asyncio.sleep(delay)
                try:
                    await self._connect()
                except TransientIOError:
                    continue
                attempt = 0
                break

    async def _read_until_closed(self) -> Optional[str]:
        try:
            while True:
                data = await self._reader.read(READ_SIZE)
                if not data:
                    return None
                self.events.received(self.session, data, None)
        except OSError as e:
            return str(e)
        finally:
            if self._writer is not None:
                self._writer.close()
            self._writer = None

    async def send(self, payload: bytes, target: Optional[str], broadcast: bool) -> List[Optional[ConnectedClient]]:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise ValidationError("session is not connected")
        try:
            writer.write(payload)
            await writer.drain()
        except OSError as e:
            raise TransientIOError(f"send failed: {e}") from e
        return [None]

    def abort(self) -> None:
        if self._task is not None:
            self._task.cancel()
        if self._writer is not None:
            self._writer.close()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.wait({self._task})


# ── TCP server ─────────────────────────────────────────────────────────────────
@dataclass
class _Peer:
    client: ConnectedClient
    writer: asyncio.StreamWriter
    task: asyncio.Task


class TcpServerRuntime(SessionRuntime):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._server: Optional[asyncio.AbstractServer] = None
        self._peers: Dict[str, _Peer] = {}

    async def start(self) -> None:
        s = self.session
        self._lease("tcp")
        try:
            sock = bind_tcp(s.host, s.port)
            self._server = await asyncio.start_server(self._serve_client, sock=sock)
        except BaseException as e:
            self.leases.release(s.port, self.holder, "tcp")
            self.events.set_status(s, "error", str(e))
            raise
        self.events.set_status(s, "listening")

    async def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        stamp = now_ms()
        client = ConnectedClient(
            id=self.new_id(),
            addr=f"{peer[0]}:{peer[1]}" if peer else "unknown",
            connected_at=stamp,
            last_activity=stamp,
        )
        self._peers[client.id] = _Peer(client, writer, asyncio.current_task())
        self.events.client_connected(self.session, client)
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                client.bytes_received += len(data)
                client.last_activity = now_ms()
                self.events.received(self.session, data, client)
        except OSError as e:
            logger.debug(f"Netcat {self.session.id}: client {client.addr} dropped: {e!r}")
        finally:
            self._peers.pop(client.id, None)
            writer.close()
            self.events.client_disconnected(self.session, client)

    def _find(self, target: str) -> _Peer:
        peer = self._peers.get(target)
        if peer is None:
            peer = next((p for p in self._peers.values() if p.client.addr == target), None)
        if peer is None:
            raise NotFound(f"client {target} is not connected")
        return peer

    async def send(self, payload: bytes, target: Optional[str], broadcast: bool) -> List[Optional[ConnectedClient]]:
        if broadcast:
            peers = list(self._peers.values())
        elif target:
            peers = [self._find(target)]
        else:
            raise ValidationError("server sessions need a target client or broadcast")

        delivered = []
        for peer in peers:
            try:
                peer.writer.write(payload)
                await peer.writer.drain()
            except OSError as e:
                logger.warning(f"Netcat {self.session.id}: send to {peer.client.addr} failed: {e!r}")
                continue
            peer.client.bytes_sent += len(payload)
            peer.client.last_activity = now_ms()
            delivered.append(peer.client)
        if not broadcast and not delivered:
            raise TransientIOError(f"send to client {target} failed")
        return delivered

    def clients(self) -> List[ConnectedClient]:
        return [p.client for p in self._peers.values()]

    async def disconnect_client(self, client_id: str) -> None:
        peer = self._find(client_id)
        peer.task.cancel()
        await asyncio.wait({peer.task})

    def abort(self) -> None:
        if self._server is not None:
            self._server.close()
        for peer in list(self._peers.values()):
            peer.task.cancel()

    async def wait_closed(self) -> None:
        tasks = {p.task for p in self._peers.values()}
        if tasks:
            await asyncio.wait(tasks)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        self.leases.release(self.session.port, self.holder, "tcp")


# ── UDP ────────────────────────────────────────────────────────────────────────
class _DatagramBridge(asyncio.DatagramProtocol):
    def __init__(self, runtime: "_UdpRuntime"):
        self.runtime = runtime

    def datagram_received(self, data: bytes, addr) -> None:
        self.runtime.on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Netcat {self.runtime.session.id}: UDP error: {exc!r}")
        self.runtime.session.error_message = str(exc)


class _UdpRuntime(SessionRuntime):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._transport: Optional[asyncio.DatagramTransport] = None

    def on_datagram(self, data: bytes, addr) -> None:
        raise NotImplementedError

    def abort(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None


class UdpClientRuntime(_UdpRuntime):
    async def start(self) -> None:
        s = self.session
        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramBridge(self), remote_addr=(s.host, s.port)
            )
        except OSError as e:
            message = f"cannot open UDP socket to {s.host}:{s.port}: {e}"
            self.events.set_status(s, "error", message)
            raise TransientIOError(message) from e
        self.events.set_status(s, "connected")

    def on_datagram(self, data: bytes, addr) -> None:
        self.events.received(self.session, data, None)

    async def send(self, payload: bytes, target: Optional[str], broadcast: bool) -> List[Optional[ConnectedClient]]:
        if self._transport is None:
            raise ValidationError("session is not connected")
        self._transport.sendto(payload)
        return [None]


class UdpServerRuntime(_UdpRuntime):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._clients: Dict[str, ConnectedClient] = {}

    async def start(self) -> None:
        s = self.session
        self._lease("udp")
        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramBridge(self), local_addr=(s.host, s.port)
            )
        except OSError as e:
            self.leases.release(s.port, self.holder, "udp")
            error = bind_error(e, s.host, s.port)
            self.events.set_status(s, "error", error.message)
            raise error from e
        self.events.set_status(s, "listening")

    def on_datagram(self, data: bytes, addr) -> None:
        key = f"{addr[0]}:{addr[1]}"
        stamp = now_ms()
        client = self._clients.get(key)
        if client is None:
            client = ConnectedClient(id=udp_client_id(key), addr=key, connected_at=stamp, last_activity=stamp)
            self._clients[key] = client
            self.events.client_connected(self.session, client)
        client.bytes_received += len(data)
        client.last_activity = stamp
        self.events.received(self.session, data, client)

    def _find(self, target: str) -> ConnectedClient:
        for client in self._clients.values():
            if target in (client.id, client.addr):
                return client
        raise NotFound(f"client {target} is not known")

    async def send(self, payload: bytes, target: Optional[str], broadcast: bool) -> List[Optional[ConnectedClient]]:
        if self._transport is None:
            raise ValidationError("session is not listening")
        if broadcast:
            clients = list(self._clients.values())
        elif target:
            clients = [self._find(target)]
        else:
            raise ValidationError("UDP server sessions need a target client or broadcast")
        for client in clients:
            host, _, port = client.addr.rpartition(":")
            self._transport.sendto(payload, (host, int(port)))
            client.bytes_sent += len(payload)
            client.last_activity = now_ms()
        return clients

    def clients(self) -> List[ConnectedClient]:
        return list(self._clients.values())

    async def disconnect_client(self, client_id: str) -> None:
        client = self._find(client_id)
        del self._clients[client.addr]
        self.events.client_disconnected(self.session, client)

    def abort(self) -> None:
        super().abort()
        self._clients.clear()

    async def wait_closed(self) -> None:
        self.leases.release(self.session.port, self.holder, "udp")


RUNTIMES = {
    ("tcp", "client"): TcpClientRuntime,
    ("tcp", "server"): TcpServerRuntime,
    ("udp", "client"): UdpClientRuntime,
    ("udp", "server"): UdpServerRuntime,
}
