"""
Netcat Lab

Ad-hoc TCP/UDP sessions in client or server mode. Each session keeps an
append-only message history (capped, oldest dropped), per-client stats in
server mode, and an optional auto-send loop.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Dict, List, Optional, Set

import httpx
from loguru import logger

from toolbox_api.core.errors import NotFound, ToolboxError, ValidationError
from toolbox_api.core.ports import PortLeases
from toolbox_api.core.registry import TaskRegistry
from toolbox_api.core.snapshot import SnapshotStore
from toolbox_api.core.socket import publish
from toolbox_api.metrics import NETCAT_MESSAGES
from toolbox_api.schemas.common import now_ms
from toolbox_api.schemas.netcat import (
    AutoSendConfig,
    ConnectedClient,
    CreateSessionInput,
    HttpFetchConfig,
    NetcatEvent,
    NetcatMessage,
    NetcatSession,
    SendMessageInput,
)
from toolbox_api.services.netcat.autosend import PayloadGenerator, validate_auto_send
from toolbox_api.services.netcat.codec import describe_received, encode_payload
from toolbox_api.services.netcat.http_fetch import fetch_http
from toolbox_api.services.netcat.transports import RUNTIMES, SessionEvents, SessionRuntime

MAX_MESSAGES = 1000
ACTIVE_STATUSES = ("connecting", "connected", "listening")


class NetcatManager(SessionEvents):
    SNAPSHOT = "netcat_sessions"

    def __init__(
        self,
        registry: TaskRegistry,
        leases: PortLeases,
        snapshots: SnapshotStore,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.leases = leases
        self.snapshots = snapshots
        self._http_transport = http_transport

        self.sessions: Dict[str, NetcatSession] = {}
        self._messages: Dict[str, Deque[NetcatMessage]] = {}
        self._runtimes: Dict[str, SessionRuntime] = {}
        self._auto_senders: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._initialized = False

    # ── Persistence ────────────────────────────────────────────────────────────
    async def init(self) -> List[NetcatSession]:
        """Load persisted sessions once; later calls just return the current list."""
        if self._initialized:
            return self.list_sessions()
        self._initialized = True
        data = await self.snapshots.load(self.SNAPSHOT)
        for raw in (data or {}).get("sessions", []):
            try:
                session = NetcatSession.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping unreadable netcat session: {e}")
                continue
            session = session.model_copy(update={
                "status": "disconnected", "connected_at": None, "error_message": None,
                "client_count": 0, "message_count": 0,
            })
            self.sessions[session.id] = session
            self._messages[session.id] = deque(maxlen=MAX_MESSAGES)
        logger.info(f"Netcat lab initialised with {len(self.sessions)} sessions")
        return self.list_sessions()

    async def save(self) -> None:
        await self.snapshots.save(self.SNAPSHOT, {"sessions": [s.wire() for s in self.sessions.values()]})

    # ── Sessions ───────────────────────────────────────────────────────────────
    async def create_session(self, data: CreateSessionInput) -> NetcatSession:
        host = data.host.strip()
        if not host:
            raise ValidationError("host must not be empty")
        if not 1 <= data.port <= 65535:
            raise ValidationError(f"port {data.port} out of range 1-65535")
        name = (data.name or "").strip() or f"{data.protocol.upper()} {data.mode.capitalize()} {host}:{data.port}"

        session = NetcatSession(
            id=self.registry.new_id(),
            name=name,
            protocol=data.protocol,
            mode=data.mode,
            host=host,
            port=data.port,
            auto_reconnect=data.auto_reconnect,
            timeout_ms=data.timeout_ms,
            created_at=now_ms(),
        )
        self.sessions[session.id] = session
        self._messages[session.id] = deque(maxlen=MAX_MESSAGES)
        await self.save()
        logger.info(f"Netcat session {session.id} created: {session.name}")
        return session

    def get_session(self, session_id: str) -> NetcatSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound(f"netcat session {session_id} not found")
        return session

    def list_sessions(self) -> List[NetcatSession]:
        return sorted(self.sessions.values(), key=lambda s: s.created_at)

    async def start(self, session_id: str) -> NetcatSession:
        session = self.get_session(session_id)
        if session.id in self._runtimes:
            if session.status in ACTIVE_STATUSES:
                return session
            await self._dispose(session.id)

        session.client_count = 0
        runtime = RUNTIMES[(session.protocol, session.mode)](session, self, self.leases, self._client_id)
        token = self.registry.register(self._key(session.id))
        try:
            await runtime.start()
        except BaseException:
            self.registry.release(self._key(session.id), token)
            raise
        token.add_callback(runtime.abort)
        self._runtimes[session.id] = runtime

        if session.auto_send.enabled:
            self._start_auto_send(session)
        return session

    async def stop(self, session_id: str) -> NetcatSession:
        session = self.get_session(session_id)
        self._stop_auto_send(session.id)
        await self._dispose(session.id)
        if session.status != "disconnected":
            self.set_status(session, "disconnected")
        session.client_count = 0
        return session

    async def remove(self, session_id: str) -> None:
        await self.stop(session_id)
        del self.sessions[session_id]
        self._messages.pop(session_id, None)
        await self.save()
        logger.info(f"Netcat session {session_id} removed")

    async def shutdown(self) -> None:
        for session_id in list(self._runtimes):
            await self.stop(session_id)
        if self._background:
            await asyncio.wait(set(self._background), timeout=2)
        if self._initialized:
            await self.save()

    async def _dispose(self, session_id: str) -> None:
        runtime = self._runtimes.pop(session_id, None)
        if runtime is None:
            return
        key = self._key(session_id)
        if self.registry.is_active(key):
            self.registry.cancel(key)
        else:
            runtime.abort()
        await runtime.wait_closed()

    def _key(self, session_id: str) -> str:
        return f"netcat:{session_id}"

    def _client_id(self) -> str:
        return self.registry.new_id()[:12]

    # ── Messages ───────────────────────────────────────────────────────────────
    async def send_message(self, data: SendMessageInput) -> NetcatMessage:
        session = self.get_session(data.session_id)
        runtime = self._runtimes.get(session.id)
        if runtime is None or session.status not in ("connected", "listening"):
            raise ValidationError(f"session {session.name} is not connected")

        payload = encode_payload(data.data, data.format)
        targets = await runtime.send(payload, data.target_client, data.broadcast)
        sent = len(payload) * len(targets)
        session.bytes_sent += sent

        client: Optional[ConnectedClient] = targets[0] if len(targets) == 1 else None
        message = self._record(
            session,
            "sent",
            data.data,
            data.format,
            len(payload),
            client_id=client.id if client else None,
            client_addr=client.addr if client else ("broadcast" if data.broadcast else None),
        )
        return message

    def get_messages(self, session_id: str, limit: int = 100, offset: int = 0) -> List[NetcatMessage]:
        self.get_session(session_id)
        history = list(self._messages.get(session_id, ()))
        return history[offset:offset + limit]

    async def clear_messages(self, session_id: str) -> None:
        session = self.get_session(session_id)
        self._messages[session_id] = deque(maxlen=MAX_MESSAGES)
        session.message_count = 0

    def _record(
        self,
        session: NetcatSession,
        direction: str,
        text: str,
        fmt: str,
        size: int,
        client_id: Optional[str] = None,
        client_addr: Optional[str] = None,
    ) -> NetcatMessage:
        stamp = now_ms()
        message = NetcatMessage(
            id=self.registry.new_id(),
            session_id=session.id,
            direction=direction,
            data=text,
            format=fmt,
            size=size,
            timestamp=stamp,
            client_id=client_id,
            client_addr=client_addr,
        )
        history = self._messages.setdefault(session.id, deque(maxlen=MAX_MESSAGES))
        history.append(message)
        session.message_count = len(history)
        session.last_activity = stamp
        NETCAT_MESSAGES.labels(direction=direction).inc()
        return message

    # ── Clients ────────────────────────────────────────────────────────────────
    def get_clients(self, session_id: str) -> List[ConnectedClient]:
        self.get_session(session_id)
        runtime = self._runtimes.get(session_id)
        return runtime.clients() if runtime is not None else []

    async def disconnect_client(self, session_id: str, client_id: str) -> None:
        session = self.get_session(session_id)
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            raise NotFound(f"client {client_id} is not connected to {session.name}")
        await runtime.disconnect_client(client_id)

    # ── Auto-send ──────────────────────────────────────────────────────────────
    async def update_auto_send(self, session_id: str, config: AutoSendConfig) -> NetcatSession:
        session = self.get_session(session_id)
        validate_auto_send(config)
        self._stop_auto_send(session.id)
        session.auto_send = config
        if config.enabled and session.id in self._runtimes and session.status in ("connected", "listening"):
            self._start_auto_send(session)
        await self.save()
        return session

    async def fetch_http(self, config: HttpFetchConfig) -> str:
        return await fetch_http(config, self._http_transport)

    def _start_auto_send(self, session: NetcatSession) -> None:
        self._stop_auto_send(session.id)
        task = asyncio.create_task(self._auto_send_loop(session))
        self._auto_senders[session.id] = task
        logger.info(f"Netcat {session.id}: auto-send every {session.auto_send.interval_ms} ms ({session.auto_send.mode})")

    def _stop_auto_send(self, session_id: str) -> None:
        task = self._auto_senders.pop(session_id, None)
        if task is not None:
            task.cancel()

    async def _auto_send_loop(self, session: NetcatSession) -> None:
        config = session.auto_send
        generator = PayloadGenerator(config, self.fetch_http)
        interval = config.interval_ms / 1000
        while True:
            try:
                payload = await generator.next()
                await self.send_message(SendMessageInput(
                    session_id=session.id,
                    data=payload,
                    format=config.format,
                    broadcast=session.mode == "server",
                ))
            except ToolboxError as e:
                logger.warning(f"Netcat {session.id}: auto-send skipped: {e.message}")
            await asyncio.sleep(interval)

    # ── SessionEvents ──────────────────────────────────────────────────────────
    def set_status(self, session: NetcatSession, status: str, error: Optional[str] = None) -> None:
        session.status = status
        if status == "error":
            session.error_message = error
        elif status in ("connected", "listening"):
            session.error_message = None
            session.connected_at = now_ms()
        if status not in ACTIVE_STATUSES:
            self._stop_auto_send(session.id)
        elif (
            status in ("connected", "listening")
            and session.auto_send.enabled
            and session.id in self._runtimes
            and session.id not in self._auto_senders
        ):
            # back up after a failed reconnect attempt
            self._start_auto_send(session)
        logger.debug(f"Netcat {session.id} -> {status}" + (f" ({error})" if error else ""))
        self._emit(NetcatEvent(type="statusChanged", session_id=session.id, status=status, error=error))

    def received(self, session: NetcatSession, data: bytes, client: Optional[ConnectedClient]) -> None:
        session.bytes_received += len(data)
        text, fmt = describe_received(data)
        message = self._record(
            session,
            "received",
            text,
            fmt,
            len(data),
            client_id=client.id if client else None,
            client_addr=client.addr if client else None,
        )
        self._emit(NetcatEvent(type="messageReceived", session_id=session.id, message=message))

    def client_connected(self, session: NetcatSession, client: ConnectedClient) -> None:
        session.client_count += 1
        logger.info(f"Netcat {session.id}: client {client.addr} connected")
        self._emit(NetcatEvent(type="clientConnected", session_id=session.id, client=client))

    def client_disconnected(self, session: NetcatSession, client: ConnectedClient) -> None:
        session.client_count = max(0, session.client_count - 1)
        logger.info(f"Netcat {session.id}: client {client.addr} disconnected")
        self._emit(NetcatEvent(type="clientDisconnected", session_id=session.id, client_id=client.id))

    def _emit(self, event: NetcatEvent) -> None:
        try:
            task = asyncio.get_running_loop().create_task(publish("netcat:event", event.wire()))
        except RuntimeError:
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)
