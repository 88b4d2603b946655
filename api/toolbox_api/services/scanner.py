"""
Port Scanner

TCP connect probes over a port set with a bounded worker pool.
Only one scan runs at a time; ``stop_scan`` cancels the outstanding probes
and the running ``scan`` returns whatever was probed so far.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Dict, Iterable, List, Optional

from loguru import logger

from toolbox_api.core.errors import ResourceConflict, ValidationError
from toolbox_api.core.registry import CancelToken, TaskRegistry
from toolbox_api.core.socket import publish
from toolbox_api.metrics import PROBES_RUN, SCANS_STARTED
from toolbox_api.schemas.common import now_ms
from toolbox_api.schemas.scanner import ScanConfig, ScanReport, ScanResult

COMMON_PORTS = [
    # Web
    80, 443, 8080, 8443, 8000, 8888, 3000, 3001, 5000, 5173, 4200,
    # Databases
    3306, 5432, 27017, 6379, 9200, 5984,
    # Remote access
    21, 22, 23, 2222,
    # Mail
    25, 110, 143, 465, 587, 993, 995,
    # Desktop sharing
    3389, 5900, 5901,
    # Messaging
    5672, 15672, 9092, 2181,
    # Infrastructure
    53, 67, 68, 69, 161, 162, 389, 636, 1433, 1521, 11211,
]

LOCAL_DEV_PORTS = [3000, 3001, 4200, 5000, 5173, 5174, 8000, 8080, 8081, 8888, 9000]

SERVICE_NAMES = {
    21: "FTP", 22: "SSH", 23: "Telnet", 25: "SMTP", 53: "DNS",
    67: "DHCP", 68: "DHCP", 69: "TFTP", 80: "HTTP", 110: "POP3",
    143: "IMAP", 161: "SNMP", 162: "SNMP-Trap", 389: "LDAP", 443: "HTTPS",
    465: "SMTPS", 587: "SMTP-Submission", 636: "LDAPS", 993: "IMAPS", 995: "POP3S",
    1433: "MSSQL", 1521: "Oracle", 2181: "ZooKeeper", 2222: "SSH-Alt", 3000: "Dev Server",
    3001: "Dev Server", 3306: "MySQL", 3389: "RDP", 4200: "Angular", 5000: "Flask",
    5173: "Vite", 5174: "Vite", 5432: "PostgreSQL", 5672: "RabbitMQ", 5900: "VNC",
    5901: "VNC", 5984: "CouchDB", 6379: "Redis", 8000: "HTTP-Alt", 8080: "HTTP-Proxy",
    8081: "HTTP-Alt", 8443: "HTTPS-Alt", 8888: "Jupyter", 9000: "PHP-FPM", 9092: "Kafka",
    9200: "Elasticsearch", 11211: "Memcached", 15672: "RabbitMQ-Mgmt", 27017: "MongoDB",
}


def service_name(port: int) -> Optional[str]:
    return SERVICE_NAMES.get(port)


def validate_port(port: int) -> None:
    if not 1 <= port <= 65535:
        raise ValidationError(f"port {port} out of range 1-65535")


def expand_ports(config: ScanConfig) -> List[int]:
    """Resolve the concrete, de-duplicated port list for a scan."""
    if config.ports:
        ports: Iterable[int] = config.ports
    elif config.port_start is not None or config.port_end is not None:
        start = config.port_start if config.port_start is not None else config.port_end
        end = config.port_end if config.port_end is not None else config.port_start
        validate_port(start)
        validate_port(end)
        if start > end:
            raise ValidationError(f"port range start {start} is greater than end {end}")
        ports = range(start, end + 1)
    else:
        ports = COMMON_PORTS

    for port in ports:
        validate_port(port)
    return list(dict.fromkeys(ports))


class PortScanner:
    SCAN_KEY = "scan"

    def __init__(self, registry: TaskRegistry, default_timeout_ms: int = 3000, default_concurrency: int = 100):
        self.registry = registry
        self.default_timeout_ms = default_timeout_ms
        self.default_concurrency = default_concurrency

    def common_ports(self) -> List[int]:
        return list(COMMON_PORTS)

    @property
    def is_scanning(self) -> bool:
        return self.registry.is_active(self.SCAN_KEY)

    async def scan(self, config: ScanConfig) -> ScanReport:
        ports = expand_ports(config)
        if self.is_scanning:
            raise ResourceConflict("a port scan is already running")
        token = self.registry.register(self.SCAN_KEY)
        scan_id = self.registry.new_id()
        started = now_ms()
        timeout_ms = config.timeout_ms or self.default_timeout_ms
        concurrency = config.concurrency or self.default_concurrency
        SCANS_STARTED.inc()
        logger.info(f"Scan {scan_id}: {config.target} over {len(ports)} ports (concurrency={concurrency}, timeout={timeout_ms}ms)")

        try:
            ip = await self._resolve(config.target)
            results = await self._run(ip, ports, timeout_ms, concurrency, token)
        finally:
            self.registry.release(self.SCAN_KEY, token)

        report = ScanReport(
            scan_id=scan_id,
            target=config.target,
            status="cancelled" if token.cancelled else "completed",
            total=len(ports),
            scanned=len(results),
            results=results,
            started_at=started,
            finished_at=now_ms(),
        )
        open_count = sum(1 for r in results if r.status == "open")
        logger.info(f"Scan {scan_id} {report.status}: {report.scanned}/{report.total} probed, {open_count} open")
        await publish("scan:complete", report.wire())
        return report

    def stop_scan(self) -> bool:
        if not self.is_scanning:
            return False
        self.registry.cancel(self.SCAN_KEY)
        logger.info("Scan stop requested")
        return True

    async def check_port(self, target: str, port: int, timeout_ms: Optional[int] = None) -> ScanResult:
        validate_port(port)
        ip = await self._resolve(target)
        return await self._probe(ip, port, (timeout_ms or self.default_timeout_ms) / 1000)

    async def scan_local_dev_ports(self) -> List[ScanResult]:
        """Probe the usual local dev-server ports on 127.0.0.1.

        Runs outside the single-scan slot so it stays usable during a long scan.
        """
        return await self._run("127.0.0.1", LOCAL_DEV_PORTS, 1000, 50, CancelToken())

    async def _resolve(self, target: str) -> str:
        target = target.strip()
        try:
            return str(ipaddress.ip_address(target))
        except ValueError:
            pass
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(target, None, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise ValidationError(f"cannot resolve host {target}: {e}") from e
        if not infos:
            raise ValidationError(f"cannot resolve host {target}")
        return infos[0][4][0]

    async def _run(
        self,
        ip: str,
        ports: List[int],
        timeout_ms: int,
        concurrency: int,
        token: CancelToken,
    ) -> List[ScanResult]:
        results: Dict[int, ScanResult] = {}
        pending = iter(ports)
        timeout = timeout_ms / 1000

        async def worker():
            for port in pending:
                if token.cancelled:
                    return
                results[port] = await self._probe(ip, port, timeout)

        workers = [asyncio.create_task(worker()) for _ in range(max(1, min(concurrency, len(ports))))]

        def _cancel_workers():
            for w in workers:
                w.cancel()

        token.add_callback(_cancel_workers)
        outcomes = await asyncio.gather(*workers, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error(f"Scan worker failed: {outcome}")

        return [results[p] for p in sorted(results)]

    async def _probe(self, ip: str, port: int, timeout: float) -> ScanResult:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout)
        except asyncio.TimeoutError:
            status = "filtered"
        except ConnectionRefusedError:
            status = "closed"
        except OSError:
            # unreachable network/host, no route
            status = "filtered"
        else:
            status = "open"
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        PROBES_RUN.labels(status=status).inc()
        return ScanResult(ip=ip, port=port, status=status, service=service_name(port))
