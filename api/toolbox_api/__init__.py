"""
Shelf Toolbox

Local network toolbox service: port scanner, download manager,
port forwarder, static/proxy servers, process inspector and netcat lab.
"""

__version__ = "0.1.0"
