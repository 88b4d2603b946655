"""
Download Manager (/api/v1/downloads)
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from toolbox_api.routes.deps import get_toolbox
from toolbox_api.schemas.common import OkResponse
from toolbox_api.schemas.downloads import (
    ClearCompletedResponse,
    DownloadConfig,
    DownloadTask,
    OpenFolderResponse,
    StartDownloadResponse,
)
from toolbox_api.toolbox import Toolbox

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/downloads", tags=["downloads"])


# ── Endpoints ──────────────────────────────────────────────────────────────────
@router.post("", response_model=StartDownloadResponse, name="start_download")
async def start_download(config: DownloadConfig, toolbox: Toolbox = Depends(get_toolbox)):
    task_id = await toolbox.downloads.start(config)
    log.info(f"Download {task_id} started for {config.url}")
    return StartDownloadResponse(task_id=task_id)


@router.get("", response_model=List[DownloadTask], name="get_download_tasks")
async def get_download_tasks(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.downloads.list()


@router.post("/clear-completed", response_model=ClearCompletedResponse, name="clear_completed_downloads")
async def clear_completed_downloads(toolbox: Toolbox = Depends(get_toolbox)):
    return ClearCompletedResponse(removed=await toolbox.downloads.clear_completed())


@router.get("/{task_id}", response_model=DownloadTask, name="get_download_task")
async def get_download_task(task_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.downloads.get(task_id)


@router.post("/{task_id}/pause", response_model=DownloadTask, name="pause_download")
async def pause_download(task_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.downloads.pause(task_id)


@router.post("/{task_id}/resume", response_model=DownloadTask, name="resume_download")
async def resume_download(task_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.downloads.resume(task_id)


@router.post("/{task_id}/cancel", response_model=DownloadTask, name="cancel_download")
async def cancel_download(task_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.downloads.cancel(task_id)


@router.delete("/{task_id}", response_model=OkResponse, name="remove_download_task")
async def remove_download_task(
    task_id: str,
    delete_file: bool = Query(False, alias="deleteFile"),
    toolbox: Toolbox = Depends(get_toolbox),
):
    await toolbox.downloads.remove(task_id, delete_file=delete_file)
    return OkResponse()


@router.post("/{task_id}/open-folder", response_model=OpenFolderResponse, name="open_download_folder")
async def open_download_folder(task_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return OpenFolderResponse(path=await toolbox.downloads.open_folder(task_id))
