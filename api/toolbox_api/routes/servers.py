"""
Static/Proxy Servers (/api/v1/servers)
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends

from toolbox_api.routes.deps import get_toolbox
from toolbox_api.schemas.common import OkResponse
from toolbox_api.schemas.servers import ServerConfig, ServerConfigInput, StartServerResponse
from toolbox_api.toolbox import Toolbox

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/servers", tags=["servers"])


@router.post("", response_model=ServerConfig, name="create_server")
async def create_server(data: ServerConfigInput, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.servers.create(data)


@router.get("", response_model=List[ServerConfig], name="get_servers")
async def get_servers(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.servers.list()


@router.get("/{server_id}", response_model=ServerConfig, name="get_server")
async def get_server(server_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.servers.get(server_id)


@router.put("/{server_id}", response_model=ServerConfig, name="update_server")
async def update_server(server_id: str, data: ServerConfigInput, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.servers.update(server_id, data)


@router.delete("/{server_id}", response_model=OkResponse, name="remove_server")
async def remove_server(server_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    await toolbox.servers.remove(server_id)
    return OkResponse()


@router.post("/{server_id}/start", response_model=StartServerResponse, name="start_server")
async def start_server(server_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    url = await toolbox.servers.start(server_id)
    log.info(f"Server {server_id} started at {url}")
    return StartServerResponse(url=url)


@router.post("/{server_id}/stop", response_model=ServerConfig, name="stop_server")
async def stop_server(server_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.servers.stop(server_id)
