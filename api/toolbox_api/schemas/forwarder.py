from typing import Literal, Optional

from pydantic import Field

from toolbox_api.schemas.common import CamelModel

ForwardStatus = Literal["stopped", "running"]


class ForwardRuleInput(CamelModel):
    name: str = Field(..., min_length=1)
    local_port: int
    remote_host: str
    remote_port: int
    doc_path: Optional[str] = None


class ForwardRule(CamelModel):
    id: str
    name: str
    local_port: int
    remote_host: str
    remote_port: int
    doc_path: Optional[str] = None
    status: ForwardStatus = "stopped"
    connections: int = 0
    active_connections: int = 0
    failed_connections: int = 0
    bytes_in: int = 0          # remote -> client
    bytes_out: int = 0         # client -> remote
    created_at: int


class ForwardStats(CamelModel):
    rule_id: str
    connections: int
    active_connections: int
    failed_connections: int
    bytes_in: int
    bytes_out: int
