"""
Process Inspector

Snapshots of the process and socket tables via psutil, plus termination.
Processes that vanish while being enumerated are skipped.
"""

from __future__ import annotations

import os
import socket
from typing import Dict, List, Optional

import psutil
from loguru import logger

from toolbox_api.core.errors import AccessDenied, NotFound, ValidationError
from toolbox_api.schemas.processes import PortOccupation, ProcessFilter, ProcessInfo, SystemStats

PROCESS_ATTRS = ["pid", "name", "status", "memory_info", "cpu_percent", "cwd", "cmdline"]


def _addr(address) -> Optional[str]:
    if not address:
        return None
    return f"{address.ip}:{address.port}"


def _protocol(conn) -> str:
    return "tcp" if conn.type == socket.SOCK_STREAM else "udp"


class ProcessInspector:
    def __init__(self, own_pid: Optional[int] = None):
        self.own_pid = own_pid or os.getpid()

    def _socket_table(self) -> Dict[int, list]:
        table: Dict[int, list] = {}
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            logger.warning("Socket table needs elevated privileges; port details limited to own processes")
            connections = []
            for proc in psutil.process_iter():
                try:
                    for conn in proc.net_connections(kind="inet"):
                        table.setdefault(proc.pid, []).append(conn)
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
        for conn in connections:
            if conn.pid:
                table.setdefault(conn.pid, []).append(conn)
        return table

    def list(self, flt: Optional[ProcessFilter] = None) -> List[ProcessInfo]:
        flt = flt or ProcessFilter()
        needle = flt.name.lower() if flt.name else None
        table = self._socket_table()
        rows: List[ProcessInfo] = []

        for proc in psutil.process_iter(PROCESS_ATTRS):
            info = proc.info
            pid = info["pid"]
            name = info.get("name") or ""
            if flt.pid is not None and pid != flt.pid:
                continue
            if needle and needle not in name.lower():
                continue

            conns = table.get(pid, [])
            if flt.port is not None:
                conns = [c for c in conns if c.laddr and c.laddr.port == flt.port]
                if not conns:
                    continue

            # listening sockets first
            conns = sorted(conns, key=lambda c: c.status != psutil.CONN_LISTEN)
            rows.append(self._row(info, conns[0] if conns else None))

        return sorted(rows, key=lambda r: r.pid)

    def get_by_port(self, port: int) -> List[ProcessInfo]:
        if not 1 <= port <= 65535:
            raise ValidationError(f"port {port} out of range 1-65535")
        return self.list(ProcessFilter(port=port))

    def kill(self, pid: int, force: bool = False) -> None:
        if pid == self.own_pid:
            raise ValidationError("refusing to kill the toolbox process itself")
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            if force:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess as e:
            raise NotFound(f"process {pid} not found") from e
        except psutil.AccessDenied as e:
            raise AccessDenied(f"not permitted to signal process {pid}") from e
        logger.info(f"Sent {'SIGKILL' if force else 'SIGTERM'} to {name} ({pid})")

    def system_stats(self) -> SystemStats:
        memory = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return SystemStats(
            total_memory=memory.total,
            used_memory=memory.used,
            total_swap=swap.total,
            used_swap=swap.used,
            cpu_count=psutil.cpu_count() or 1,
            cpu_percent=psutil.cpu_percent(interval=None),
            process_count=len(psutil.pids()),
        )

    def port_occupation(self) -> List[PortOccupation]:
        names: Dict[int, str] = {}
        rows: Dict[tuple, PortOccupation] = {}

        for pid, conns in self._socket_table().items():
            if pid not in names:
                try:
                    names[pid] = psutil.Process(pid).name()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    names[pid] = "unknown"
            for conn in conns:
                if not conn.laddr:
                    continue
                key = (conn.laddr.port, _protocol(conn), pid)
                existing = rows.get(key)
                if existing is not None and existing.state == psutil.CONN_LISTEN:
                    continue
                rows[key] = PortOccupation(
                    port=conn.laddr.port,
                    protocol=_protocol(conn),
                    pid=pid,
                    process_name=names[pid],
                    local_addr=_addr(conn.laddr),
                    state=conn.status,
                )

        return sorted(rows.values(), key=lambda r: (r.port, r.protocol, r.pid))

    @staticmethod
    def _row(info: dict, conn) -> ProcessInfo:
        memory = info.get("memory_info")
        return ProcessInfo(
            pid=info["pid"],
            name=info.get("name") or "",
            port=conn.laddr.port if conn is not None and conn.laddr else None,
            protocol=_protocol(conn) if conn is not None else None,
            local_addr=_addr(conn.laddr) if conn is not None else None,
            remote_addr=_addr(conn.raddr) if conn is not None else None,
            status=info.get("status") or "unknown",
            memory=memory.rss if memory is not None else 0,
            cpu=info.get("cpu_percent") or 0.0,
            working_dir=info.get("cwd"),
            cmd=info.get("cmdline") or None,
        )
