"""
Netcat Lab (/api/v1/netcat)
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from toolbox_api.routes.deps import get_toolbox
from toolbox_api.schemas.common import OkResponse
from toolbox_api.schemas.netcat import (
    AutoSendConfig,
    ConnectedClient,
    CreateSessionInput,
    HttpFetchConfig,
    HttpFetchResult,
    NetcatMessage,
    NetcatSession,
    SendMessageInput,
)
from toolbox_api.toolbox import Toolbox

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/netcat", tags=["netcat"])


# ── Sessions ───────────────────────────────────────────────────────────────────
@router.post("/init", response_model=List[NetcatSession], name="netcat_init")
async def netcat_init(toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.netcat.init()


@router.post("/sessions", response_model=NetcatSession, name="netcat_create_session")
async def netcat_create_session(data: CreateSessionInput, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.netcat.create_session(data)


@router.get("/sessions", response_model=List[NetcatSession], name="netcat_get_sessions")
async def netcat_get_sessions(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.netcat.list_sessions()


@router.get("/sessions/{session_id}", response_model=NetcatSession, name="netcat_get_session")
async def netcat_get_session(session_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.netcat.get_session(session_id)


@router.post("/sessions/{session_id}/start", response_model=NetcatSession, name="netcat_start_session")
async def netcat_start_session(session_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.netcat.start(session_id)


@router.post("/sessions/{session_id}/stop", response_model=NetcatSession, name="netcat_stop_session")
async def netcat_stop_session(session_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.netcat.stop(session_id)


@router.delete("/sessions/{session_id}", response_model=OkResponse, name="netcat_remove_session")
async def netcat_remove_session(session_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    await toolbox.netcat.remove(session_id)
    return OkResponse()


# ── Messages & clients ─────────────────────────────────────────────────────────
@router.post("/send", response_model=NetcatMessage, name="netcat_send_message")
async def netcat_send_message(data: SendMessageInput, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.netcat.send_message(data)


@router.get("/sessions/{session_id}/messages", response_model=List[NetcatMessage], name="netcat_get_messages")
async def netcat_get_messages(
    session_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    toolbox: Toolbox = Depends(get_toolbox),
):
    return toolbox.netcat.get_messages(session_id, limit=limit, offset=offset)


@router.delete("/sessions/{session_id}/messages", response_model=OkResponse, name="netcat_clear_messages")
async def netcat_clear_messages(session_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    await toolbox.netcat.clear_messages(session_id)
    return OkResponse()


@router.get("/sessions/{session_id}/clients", response_model=List[ConnectedClient], name="netcat_get_clients")
async def netcat_get_clients(session_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.netcat.get_clients(session_id)


@router.delete(
    "/sessions/{session_id}/clients/{client_id}",
    response_model=OkResponse,
    name="netcat_disconnect_client",
)
async def netcat_disconnect_client(session_id: str, client_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    await toolbox.netcat.disconnect_client(session_id, client_id)
    return OkResponse()


# ── Auto-send ──────────────────────────────────────────────────────────────────
@router.put("/sessions/{session_id}/auto-send", response_model=NetcatSession, name="netcat_update_auto_send")
async def netcat_update_auto_send(session_id: str, config: AutoSendConfig, toolbox: Toolbox = Depends(get_toolbox)):
    log.info(f"Auto-send for {session_id}: enabled={config.enabled} mode={config.mode}")
    return await toolbox.netcat.update_auto_send(session_id, config)


@router.post("/fetch-http", response_model=HttpFetchResult, name="netcat_fetch_http")
async def netcat_fetch_http(config: HttpFetchConfig, toolbox: Toolbox = Depends(get_toolbox)):
    return HttpFetchResult(value=await toolbox.netcat.fetch_http(config))
