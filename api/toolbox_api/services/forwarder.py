"""
Port Forwarder

Relays TCP byte streams between a local listening port and a remote
endpoint. Each accepted connection gets its own relay task; counters live
on the rule and are only touched from the event loop.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Dict, List, Optional, Set

from loguru import logger

from toolbox_api.core.errors import NotFound, ValidationError
from toolbox_api.core.ports import PortLeases, bind_tcp
from toolbox_api.core.registry import TaskRegistry
from toolbox_api.core.snapshot import SnapshotStore
from toolbox_api.core.socket import publish
from toolbox_api.metrics import FORWARD_BYTES, FORWARD_CONNECTIONS
from toolbox_api.schemas.common import now_ms
from toolbox_api.schemas.forwarder import ForwardRule, ForwardRuleInput, ForwardStats

BUFFER_SIZE = 8192


def validate_rule_input(data: ForwardRuleInput) -> ForwardRuleInput:
    for label, port in (("local port", data.local_port), ("remote port", data.remote_port)):
        if not 1 <= port <= 65535:
            raise ValidationError(f"{label} {port} out of range 1-65535")
    host = data.remote_host.strip()
    if not host:
        raise ValidationError("remote host must not be empty")
    return data.model_copy(update={"remote_host": host, "name": data.name.strip()})


class PortForwarder:
    SNAPSHOT = "forward_rules"

    def __init__(
        self,
        registry: TaskRegistry,
        leases: PortLeases,
        snapshots: SnapshotStore,
        listen_host: str = "0.0.0.0",
        dial_timeout: float = 10.0,
        max_connections: int = 100,
    ):
        self.registry = registry
        self.leases = leases
        self.snapshots = snapshots
        self.listen_host = listen_host
        self.dial_timeout = dial_timeout
        self.max_connections = max_connections

        self.rules: Dict[str, ForwardRule] = {}
        self._servers: Dict[str, asyncio.AbstractServer] = {}
        self._relays: Dict[str, Set[asyncio.Task]] = {}

    async def load(self) -> None:
        data = await self.snapshots.load(self.SNAPSHOT)
        if not data:
            return
        for raw in data.get("rules", []):
            try:
                rule = ForwardRule.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping unreadable forward rule: {e}")
                continue
            self.rules[rule.id] = rule.model_copy(update={
                "status": "stopped", "connections": 0, "active_connections": 0,
                "failed_connections": 0, "bytes_in": 0, "bytes_out": 0,
            })
        logger.info(f"Loaded {len(self.rules)} forward rules")

    async def save(self) -> None:
        await self.snapshots.save(self.SNAPSHOT, {"rules": [r.wire() for r in self.rules.values()]})

    # ── Rule CRUD ──────────────────────────────────────────────────────────────
    async def add_rule(self, data: ForwardRuleInput) -> ForwardRule:
        data = validate_rule_input(data)
        rule = ForwardRule(id=self.registry.new_id(), created_at=now_ms(), **data.model_dump())
        self.rules[rule.id] = rule
        await self.save()
        logger.info(f"Forward rule {rule.id} added: :{rule.local_port} -> {rule.remote_host}:{rule.remote_port}")
        return rule

    async def update_rule(self, rule_id: str, data: ForwardRuleInput) -> ForwardRule:
        rule = self.get_rule(rule_id)
        data = validate_rule_input(data)
        was_running = rule.status == "running"
        if was_running:
            await self.stop(rule_id)
        for field, value in data.model_dump().items():
            setattr(rule, field, value)
        await self.save()
        if was_running:
            await self.start(rule_id)
        return rule

    async def remove_rule(self, rule_id: str) -> None:
        rule = self.get_rule(rule_id)
        if rule.status == "running":
            await self.stop(rule_id)
        del self.rules[rule_id]
        await self.save()
        logger.info(f"Forward rule {rule_id} removed")

    def get_rule(self, rule_id: str) -> ForwardRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise NotFound(f"forward rule {rule_id} not found")
        return rule

    def list_rules(self) -> List[ForwardRule]:
        return sorted(self.rules.values(), key=lambda r: r.created_at)

    def get_stats(self, rule_id: str) -> ForwardStats:
        rule = self.get_rule(rule_id)
        return ForwardStats(
            rule_id=rule.id,
            connections=rule.connections,
            active_connections=rule.active_connections,
            failed_connections=rule.failed_connections,
            bytes_in=rule.bytes_in,
            bytes_out=rule.bytes_out,
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────────
    async def start(self, rule_id: str) -> ForwardRule:
        rule = self.get_rule(rule_id)
        if rule.status == "running":
            return rule

        holder = f"forward rule '{rule.name}'"
        self.leases.acquire(rule.local_port, holder)
        try:
            sock = bind_tcp(self.listen_host, rule.local_port)
            server = await asyncio.start_server(partial(self._handle, rule), sock=sock)
        except BaseException:
            self.leases.release(rule.local_port, holder)
            raise

        relays: Set[asyncio.Task] = set()
        self._servers[rule.id] = server
        self._relays[rule.id] = relays
        token = self.registry.register(self._key(rule.id))

        def _shutdown():
            # accept loop first, then live relays
            server.close()
            for relay in list(relays):
                relay.cancel()

        token.add_callback(_shutdown)
        rule.status = "running"
        logger.info(f"Forwarding :{rule.local_port} -> {rule.remote_host}:{rule.remote_port} ({rule.name})")
        return rule

    async def stop(self, rule_id: str) -> ForwardRule:
        rule = self.get_rule(rule_id)
        if rule.status != "running":
            return rule

        key = self._key(rule.id)
        if self.registry.is_active(key):
            self.registry.cancel(key)
        relays = self._relays.pop(rule.id, set())
        if relays:
            await asyncio.wait(relays)
        server = self._servers.pop(rule.id, None)
        if server is not None:
            await server.wait_closed()

        self.leases.release(rule.local_port, f"forward rule '{rule.name}'")
        rule.status = "stopped"
        rule.active_connections = 0
        logger.info(f"Forward rule {rule.id} stopped ({rule.connections} connections, in={rule.bytes_in} out={rule.bytes_out})")
        await publish("forward:stats", self.get_stats(rule.id).wire())
        return rule

    async def shutdown(self) -> None:
        for rule in list(self.rules.values()):
            if rule.status == "running":
                await self.stop(rule.id)

    def _key(self, rule_id: str) -> str:
        return f"forward:{rule_id}"

    # ── Relaying ───────────────────────────────────────────────────────────────
    async def _handle(self, rule: ForwardRule, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        relays = self._relays.get(rule.id)
        task = asyncio.current_task()
        peer = writer.get_extra_info("peername")

        if relays is None or len(relays) >= self.max_connections:
            logger.warning(f"Forward rule {rule.id}: rejecting {peer}, connection limit reached")
            rule.failed_connections += 1
            FORWARD_CONNECTIONS.labels(result="rejected").inc()
            writer.close()
            return

        relays.add(task)
        rule.connections += 1
        rule.active_connections += 1
        remote_writer: Optional[asyncio.StreamWriter] = None
        try:
            try:
                remote_reader, remote_writer = await asyncio.wait_for(
                    asyncio.open_connection(rule.remote_host, rule.remote_port), self.dial_timeout
                )
            except (OSError, asyncio.TimeoutError) as e:
                rule.failed_connections += 1
                FORWARD_CONNECTIONS.labels(result="failed").inc()
                logger.warning(f"Forward rule {rule.id}: cannot reach {rule.remote_host}:{rule.remote_port}: {e!r}")
                return

            FORWARD_CONNECTIONS.labels(result="accepted").inc()
            logger.debug(f"Forward rule {rule.id}: relaying {peer}")
            await asyncio.gather(
                self._pipe(rule, reader, remote_writer, writer, "out"),
                self._pipe(rule, remote_reader, writer, remote_writer, "in"),
            )
        finally:
            rule.active_connections = max(0, rule.active_connections - 1)
            relays.discard(task)
            writer.close()
            if remote_writer is not None:
                remote_writer.close()

    async def _pipe(
        self,
        rule: ForwardRule,
        source: asyncio.StreamReader,
        sink: asyncio.StreamWriter,
        source_writer: asyncio.StreamWriter,
        direction: str,
    ) -> None:
        """Copy one direction until EOF, then half-close the sink."""
        try:
            while True:
                data = await source.read(BUFFER_SIZE)
                if not data:
                    break
                if direction == "out":
                    rule.bytes_out += len(data)
                else:
                    rule.bytes_in += len(data)
                FORWARD_BYTES.labels(direction=direction).inc(len(data))
                sink.write(data)
                await sink.drain()
            if sink.can_write_eof() and not sink.is_closing():
                sink.write_eof()
        except OSError as e:
            logger.debug(f"Forward rule {rule.id}: {direction} pipe closed: {e!r}")
            sink.close()
            source_writer.close()
