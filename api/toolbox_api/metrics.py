"""
Prometheus metrics for the toolbox service.
"""

from prometheus_client import Counter

SCANS_STARTED = Counter("toolbox_scans_started_total", "Port scans started")
PROBES_RUN = Counter("toolbox_probes_total", "Port probes completed", ["status"])
DOWNLOADS_FINISHED = Counter("toolbox_downloads_finished_total", "Downloads reaching a terminal state", ["status"])
DOWNLOAD_BYTES = Counter("toolbox_download_bytes_total", "Bytes downloaded")
FORWARD_BYTES = Counter("toolbox_forward_bytes_total", "Bytes relayed by the port forwarder", ["direction"])
FORWARD_CONNECTIONS = Counter("toolbox_forward_connections_total", "Connections accepted by forward rules", ["result"])
NETCAT_MESSAGES = Counter("toolbox_netcat_messages_total", "Netcat messages logged", ["direction"])
