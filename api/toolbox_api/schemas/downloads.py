from typing import List, Literal, Optional

from pydantic import Field

from toolbox_api.schemas.common import CamelModel

DownloadStatus = Literal["pending", "downloading", "paused", "completed", "failed", "cancelled"]


class DownloadConfig(CamelModel):
    url: str = Field(..., min_length=1)
    save_dir: Optional[str] = None
    file_name: Optional[str] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)


class DownloadTask(CamelModel):
    id: str
    url: str
    save_path: str
    file_name: str
    total_size: int = 0        # 0 until the server reports a length
    downloaded_size: int = 0
    status: DownloadStatus = "pending"
    speed: float = 0.0         # bytes/s over a sliding window
    error: Optional[str] = None
    retries: int = 0
    max_retries: int = 3
    supports_range: Optional[bool] = None
    created_at: int
    updated_at: int


class StartDownloadResponse(CamelModel):
    task_id: str


class ClearCompletedResponse(CamelModel):
    removed: int


class OpenFolderResponse(CamelModel):
    path: str


class DownloadTaskList(CamelModel):
    tasks: List[DownloadTask]
