"""
Netcat lab: TCP/UDP sessions, message history and auto-send.
"""

from .manager import NetcatManager
from .http_fetch import fetch_http

__all__ = [
    "NetcatManager",
    "fetch_http",
]
