from typing import Dict, List, Literal, Optional, Union

from pydantic import Field

from toolbox_api.schemas.common import CamelModel

Protocol = Literal["tcp", "udp"]
SessionMode = Literal["client", "server"]
DataFormat = Literal["text", "hex", "base64"]
SessionStatus = Literal["disconnected", "connecting", "connected", "listening", "error"]
Direction = Literal["sent", "received"]
AutoSendMode = Literal["fixed", "csv", "template", "http"]


class AutoSendConfig(CamelModel):
    enabled: bool = False
    interval_ms: int = Field(default=1000, ge=50)
    mode: AutoSendMode = "fixed"
    format: DataFormat = "text"
    fixed_data: str = ""
    csv_data: str = ""
    template: str = ""
    http_url: str = ""
    http_method: str = "GET"
    http_headers: str = ""     # "Key: value" per line
    http_body: str = ""
    http_json_path: str = ""


class CreateSessionInput(CamelModel):
    name: Optional[str] = None
    protocol: Protocol = "tcp"
    mode: SessionMode = "client"
    host: str = "127.0.0.1"
    port: int
    timeout_ms: int = Field(default=5000, ge=100, le=120000)
    auto_reconnect: bool = False


class NetcatSession(CamelModel):
    id: str
    name: str
    protocol: Protocol
    mode: SessionMode
    host: str
    port: int
    status: SessionStatus = "disconnected"
    auto_reconnect: bool = False
    timeout_ms: int = 5000
    created_at: int
    connected_at: Optional[int] = None
    last_activity: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0
    message_count: int = 0
    error_message: Optional[str] = None
    client_count: int = 0
    auto_send: AutoSendConfig = Field(default_factory=AutoSendConfig)


class NetcatMessage(CamelModel):
    id: str
    session_id: str
    direction: Direction
    data: str
    format: DataFormat
    size: int
    timestamp: int
    client_id: Optional[str] = None
    client_addr: Optional[str] = None


class ConnectedClient(CamelModel):
    id: str
    addr: str
    connected_at: int
    last_activity: int
    bytes_sent: int = 0
    bytes_received: int = 0


class SendMessageInput(CamelModel):
    session_id: str
    data: str
    format: DataFormat = "text"
    target_client: Optional[str] = None
    broadcast: bool = False


class HttpFetchConfig(CamelModel):
    url: str = Field(..., min_length=1)
    method: str = "GET"
    headers: Union[Dict[str, str], str, None] = None
    body: Optional[str] = None
    json_path: Optional[str] = None
    timeout_ms: int = Field(default=10000, ge=100, le=120000)


class HttpFetchResult(CamelModel):
    value: str


class NetcatEvent(CamelModel):
    type: Literal["statusChanged", "messageReceived", "clientConnected", "clientDisconnected"]
    session_id: str
    status: Optional[SessionStatus] = None
    error: Optional[str] = None
    message: Optional[NetcatMessage] = None
    client: Optional[ConnectedClient] = None
    client_id: Optional[str] = None


class MessagePage(CamelModel):
    messages: List[NetcatMessage]
    total: int
