"""
Port Scanner (/api/v1/scanner)
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends

from toolbox_api.routes.deps import get_toolbox
from toolbox_api.schemas.scanner import CheckPortRequest, ScanConfig, ScanReport, ScanResult, StopScanResponse
from toolbox_api.toolbox import Toolbox

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/scanner", tags=["scanner"])


@router.post("/scan", response_model=ScanReport, name="scan_ports")
async def scan_ports(config: ScanConfig, toolbox: Toolbox = Depends(get_toolbox)):
    """Probe a target; blocks until the scan completes or is stopped."""
    log.info(f"scan_ports target={config.target}")
    return await toolbox.scanner.scan(config)


@router.post("/stop", response_model=StopScanResponse, name="stop_scan")
async def stop_scan(toolbox: Toolbox = Depends(get_toolbox)):
    return StopScanResponse(stopped=toolbox.scanner.stop_scan())


@router.get("/common-ports", response_model=List[int], name="get_common_ports")
async def get_common_ports(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.scanner.common_ports()


@router.post("/check", response_model=ScanResult, name="check_port")
async def check_port(request: CheckPortRequest, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.scanner.check_port(request.target, request.port, request.timeout_ms)


@router.get("/local-dev", response_model=List[ScanResult], name="scan_local_dev_ports")
async def scan_local_dev_ports(toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.scanner.scan_local_dev_ports()
