"""
Local port leases shared by every listening subsystem.

A port is held by at most one listener (forward rule, static server or
netcat server) at a time. Leases are checked before the OS bind so that
conflicts between toolbox components are reported with the holder's name.
"""

from __future__ import annotations

import errno
import socket
import sys
from typing import Dict, Optional, Tuple

from loguru import logger

from toolbox_api.core.errors import AccessDenied, ResourceConflict, ToolboxError, TransientIOError


class PortLeases:
    def __init__(self):
        self._held: Dict[Tuple[str, int], str] = {}

    def acquire(self, port: int, holder: str, protocol: str = "tcp") -> None:
        owner = self._held.get((protocol, port))
        if owner is not None:
            raise ResourceConflict(f"{protocol} port {port} is already in use by {owner}")
        self._held[(protocol, port)] = holder

    def release(self, port: int, holder: Optional[str] = None, protocol: str = "tcp") -> None:
        if holder is not None and self._held.get((protocol, port)) != holder:
            return
        self._held.pop((protocol, port), None)

    def holder(self, port: int, protocol: str = "tcp") -> Optional[str]:
        return self._held.get((protocol, port))


def bind_error(exc: OSError, host: str, port: int) -> ToolboxError:
    """Translate an OS bind failure into a toolbox error."""
    if exc.errno in (errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", -1)):
        return ResourceConflict(f"port {port} is already in use")
    if exc.errno in (errno.EACCES, errno.EPERM):
        return AccessDenied(f"not permitted to bind {host}:{port}")
    return TransientIOError(f"failed to bind {host}:{port}: {exc}")


def bind_tcp(host: str, port: int, backlog: int = 128) -> socket.socket:
    """Create a listening TCP socket, raising toolbox errors on failure."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        # SO_REUSEADDR on Windows allows stealing a bound port
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        logger.warning(f"Bind {host}:{port} failed: {e}")
        raise bind_error(e, host, port) from e
    return sock
