"""
Durable snapshots for toolbox state.

Each subsystem keeps its configuration in memory and mirrors it to a
versioned JSON document under the data directory::

    {"version": 1, "last_updated": "...", "data": {...}}
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import aiofiles.os
from loguru import logger


class SnapshotStore:
    """Versioned JSON documents written atomically with aiofiles."""

    VERSION = 1

    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    async def save(self, name: str, data: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        document = {
            "version": self.VERSION,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        path = self.path_for(name)
        tmp = path.with_suffix(".json.tmp")
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document, indent=2))
        await aiofiles.os.replace(tmp, path)
        logger.debug(f"Saved snapshot {path}")

    async def load(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the ``data`` section of a snapshot, or None if absent or unreadable."""
        if not self.enabled:
            return None
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                document = json.loads(await f.read())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read snapshot {path}: {e}")
            return None

        version = document.get("version")
        if version != self.VERSION:
            logger.warning(f"Snapshot {path} has unsupported version {version}, ignoring")
            return None
        data = document.get("data")
        return data if isinstance(data, dict) else None
