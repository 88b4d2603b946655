from typing import List, Literal, Optional

from pydantic import Field

from toolbox_api.schemas.common import CamelModel

PortStatus = Literal["open", "closed", "filtered"]


class ScanConfig(CamelModel):
    target: str = Field(..., min_length=1, description="Target IP or hostname", examples=["127.0.0.1"])
    ports: List[int] = Field(default_factory=list, description="Explicit ports; wins over the range when non-empty")
    port_start: Optional[int] = Field(default=None, description="Inclusive range start")
    port_end: Optional[int] = Field(default=None, description="Inclusive range end")
    timeout_ms: Optional[int] = Field(default=None, ge=10, le=60000, description="Defaults to the server setting")
    concurrency: Optional[int] = Field(default=None, ge=1, le=1000, description="Defaults to the server setting")


class ScanResult(CamelModel):
    ip: str
    port: int
    status: PortStatus
    service: Optional[str] = None


class ScanReport(CamelModel):
    scan_id: str
    target: str
    status: Literal["completed", "cancelled"]
    total: int
    scanned: int
    results: List[ScanResult]
    started_at: int
    finished_at: int


class CheckPortRequest(CamelModel):
    target: str = Field(..., min_length=1)
    port: int
    timeout_ms: Optional[int] = Field(default=None, ge=10, le=60000)


class StopScanResponse(CamelModel):
    stopped: bool
