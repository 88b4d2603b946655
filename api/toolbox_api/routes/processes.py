"""
Process Inspector (/api/v1/processes)

psutil calls block, so these endpoints are plain ``def`` and run in the
threadpool.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from toolbox_api.routes.deps import get_toolbox
from toolbox_api.schemas.common import OkResponse
from toolbox_api.schemas.processes import KillRequest, PortOccupation, ProcessFilter, ProcessInfo, SystemStats
from toolbox_api.toolbox import Toolbox

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/processes", tags=["processes"])


@router.get("", response_model=List[ProcessInfo], name="get_processes")
def get_processes(
    port: Optional[int] = Query(None, ge=1, le=65535),
    name: Optional[str] = Query(None),
    pid: Optional[int] = Query(None, ge=0),
    toolbox: Toolbox = Depends(get_toolbox),
):
    return toolbox.processes.list(ProcessFilter(port=port, name=name, pid=pid))


@router.get("/by-port/{port}", response_model=List[ProcessInfo], name="get_port_processes")
def get_port_processes(port: int, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.processes.get_by_port(port)


@router.post("/kill", response_model=OkResponse, name="kill_process")
def kill_process(request: KillRequest, toolbox: Toolbox = Depends(get_toolbox)):
    log.info(f"kill_process pid={request.pid} force={request.force}")
    toolbox.processes.kill(request.pid, force=request.force)
    return OkResponse()


@router.get("/system-stats", response_model=SystemStats, name="get_system_stats")
def get_system_stats(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.processes.system_stats()


@router.get("/port-occupation", response_model=List[PortOccupation], name="get_local_port_occupation")
def get_local_port_occupation(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.processes.port_occupation()
