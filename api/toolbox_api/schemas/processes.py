from typing import List, Optional

from pydantic import Field

from toolbox_api.schemas.common import CamelModel


class ProcessFilter(CamelModel):
    port: Optional[int] = None
    name: Optional[str] = None
    pid: Optional[int] = None


class ProcessInfo(CamelModel):
    pid: int
    name: str
    port: Optional[int] = None
    protocol: Optional[str] = None
    local_addr: Optional[str] = None
    remote_addr: Optional[str] = None
    status: str
    memory: int = 0            # RSS bytes
    cpu: float = 0.0
    working_dir: Optional[str] = None
    cmd: Optional[List[str]] = None


class KillRequest(CamelModel):
    pid: int = Field(..., ge=1)
    force: bool = False


class SystemStats(CamelModel):
    total_memory: int
    used_memory: int
    total_swap: int
    used_swap: int
    cpu_count: int
    cpu_percent: float
    process_count: int


class PortOccupation(CamelModel):
    port: int
    protocol: str
    pid: int
    process_name: str
    local_addr: str
    state: str
