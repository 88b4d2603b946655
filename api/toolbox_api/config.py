"""
Toolbox configuration.

Settings come from TOOLBOX_* environment variables with defaults that
suit a single-user desktop install.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _default_data_dir() -> str:
    return str(Path.home() / ".shelf-toolbox" / "data")


@dataclass
class ToolboxSettings:
    """Runtime settings for the toolbox service."""

    data_dir: str = field(default_factory=lambda: os.getenv("TOOLBOX_DATA_DIR", _default_data_dir()))
    host: str = field(default_factory=lambda: os.getenv("TOOLBOX_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("TOOLBOX_PORT", "8765")))
    log_level: str = field(default_factory=lambda: os.getenv("TOOLBOX_LOG_LEVEL", "INFO"))

    scan_concurrency: int = field(default_factory=lambda: int(os.getenv("TOOLBOX_SCAN_CONCURRENCY", "100")))
    scan_timeout_ms: int = field(default_factory=lambda: int(os.getenv("TOOLBOX_SCAN_TIMEOUT_MS", "3000")))

    download_retries: int = field(default_factory=lambda: int(os.getenv("TOOLBOX_DOWNLOAD_RETRIES", "3")))
    download_dir: Optional[str] = field(default_factory=lambda: os.getenv("TOOLBOX_DOWNLOAD_DIR"))
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    persist: bool = field(default_factory=lambda: _env_bool("TOOLBOX_PERSIST", True))

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def default_download_dir(self) -> Path:
        if self.download_dir:
            return Path(self.download_dir).expanduser()
        downloads = Path.home() / "Downloads"
        if downloads.is_dir():
            return downloads
        return self.data_path / "downloads"
