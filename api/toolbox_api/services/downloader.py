"""
Download Manager

HTTP(S) downloads with pause/resume/cancel and retry.

State machine::

    pending -> downloading -> paused | completed | failed | cancelled
    paused  -> downloading (resume) | cancelled
    failed  -> downloading (resume)

Transient failures (transport errors, 5xx, 429) are retried with capped
exponential backoff before the task fails. Resume sends a ``Range`` header
for the bytes already on disk; a server that answers 200 instead of 206 is
treated as not range-capable and the file restarts from zero. Bodies are
requested with identity encoding and written as received, so sizes and
Range offsets always count the same bytes.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import sys
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple
from urllib.parse import unquote

import aiofiles
import httpx
from loguru import logger

from toolbox_api.core.errors import AccessDenied, Fatal, NotFound, ResourceConflict, ValidationError
from toolbox_api.core.registry import CancelToken, TaskRegistry
from toolbox_api.core.snapshot import SnapshotStore
from toolbox_api.core.socket import publish
from toolbox_api.metrics import DOWNLOAD_BYTES, DOWNLOADS_FINISHED
from toolbox_api.schemas.common import now_ms
from toolbox_api.schemas.downloads import DownloadConfig, DownloadTask

ACTIVE = ("pending", "downloading")
TERMINAL = ("completed", "failed", "cancelled")
PROGRESS_INTERVAL = 0.25


class _RetryableStatus(Exception):
    """Server answered with a status worth retrying (5xx, 429)."""


class _PermanentFailure(Exception):
    """Failure that retrying cannot fix (4xx, bad range)."""


class SpeedMeter:
    """Bytes/s averaged over a sliding time window."""

    def __init__(self, window: float = 3.0):
        self.window = window
        self._samples: Deque[Tuple[float, int]] = deque()

    def add(self, nbytes: int, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        self._samples.append((now, nbytes))
        self._trim(now)

    def rate(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        self._trim(now)
        if not self._samples:
            return 0.0
        span = max(now - self._samples[0][0], 0.5)
        return sum(n for _, n in self._samples) / span

    def _trim(self, now: float) -> None:
        while self._samples and now - self._samples[0][0] > self.window:
            self._samples.popleft()


def resolve_file_name(url: str, explicit: Optional[str] = None) -> str:
    """Pick a file name: explicit, else the last URL path segment, else a timestamped default."""
    if explicit and explicit.strip():
        candidate = explicit.strip()
    else:
        path = httpx.URL(url).path
        candidate = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    candidate = Path(candidate.replace("\\", "/")).name
    if candidate in ("", ".", ".."):
        candidate = f"download_{datetime.now():%Y%m%d_%H%M%S}"
    return candidate


def parse_content_range(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Return (start, total) from ``bytes start-end/total``."""
    if not value or not value.startswith("bytes "):
        return None, None
    body = value[len("bytes "):]
    span, _, total = body.partition("/")
    start = None
    if "-" in span:
        try:
            start = int(span.split("-", 1)[0])
        except ValueError:
            start = None
    try:
        total_size = int(total) if total and total != "*" else None
    except ValueError:
        total_size = None
    return start, total_size


class DownloadManager:
    SNAPSHOT = "download_tasks"

    def __init__(
        self,
        registry: TaskRegistry,
        snapshots: SnapshotStore,
        default_dir: Path,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.snapshots = snapshots
        self.default_dir = Path(default_dir)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._transport = transport

        self.tasks: Dict[str, DownloadTask] = {}
        self._runners: Dict[str, asyncio.Task] = {}
        self._intents: Dict[str, str] = {}
        self._meters: Dict[str, SpeedMeter] = {}
        self._last_emit: Dict[str, float] = {}

    # ── Persistence ────────────────────────────────────────────────────────────
    async def load(self) -> None:
        data = await self.snapshots.load(self.SNAPSHOT)
        if not data:
            return
        for raw in data.get("tasks", []):
            try:
                task = DownloadTask.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping unreadable download task: {e}")
                continue
            if task.status in ACTIVE:
                task.status = "paused"
            task.speed = 0.0
            self.tasks[task.id] = task
        logger.info(f"Loaded {len(self.tasks)} download tasks")

    async def save(self) -> None:
        await self.snapshots.save(self.SNAPSHOT, {"tasks": [t.wire() for t in self.tasks.values()]})

    # ── Commands ───────────────────────────────────────────────────────────────
    async def start(self, config: DownloadConfig) -> str:
        url = self._validate_url(config.url)
        save_dir = Path(config.save_dir).expanduser() if config.save_dir else self.default_dir
        try:
            save_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise AccessDenied(f"cannot create {save_dir}: {e}") from e
        except OSError as e:
            raise ValidationError(f"invalid save directory {save_dir}: {e}") from e

        save_path = save_dir / resolve_file_name(url, config.file_name)
        for other in self.tasks.values():
            if other.save_path == str(save_path) and other.status in ACTIVE:
                raise ResourceConflict(f"{save_path} is already being downloaded by task {other.id}")

        stamp = now_ms()
        task = DownloadTask(
            id=self.registry.new_id(),
            url=url,
            save_path=str(save_path),
            file_name=save_path.name,
            max_retries=config.max_retries if config.max_retries is not None else self.max_retries,
            created_at=stamp,
            updated_at=stamp,
        )
        self.tasks[task.id] = task
        logger.info(f"Download {task.id} queued: {url} -> {save_path}")
        self._launch(task)
        await self.save()
        return task.id

    async def pause(self, task_id: str) -> DownloadTask:
        task = self.get(task_id)
        if task.status == "paused":
            return task
        if task.status not in ACTIVE:
            raise ValidationError(f"cannot pause a {task.status} download")
        await self._interrupt(task, "paused")
        if task.status in ACTIVE:
            self._set_status(task, "paused")
        await self.save()
        return task

    async def resume(self, task_id: str) -> DownloadTask:
        task = self.get(task_id)
        if task.status in ACTIVE:
            return task
        if task.status not in ("paused", "failed"):
            raise ValidationError(f"cannot resume a {task.status} download")
        task.error = None
        task.retries = 0
        self._set_status(task, "pending")
        self._launch(task)
        await self.save()
        return task

    async def cancel(self, task_id: str) -> DownloadTask:
        task = self.get(task_id)
        if task.status in ("completed", "cancelled"):
            raise ValidationError(f"cannot cancel a {task.status} download")
        await self._interrupt(task, "cancelled")
        if task.status != "cancelled":
            self._set_status(task, "cancelled")
            self._discard_partial(task)
        await self.save()
        return task

    async def remove(self, task_id: str, delete_file: bool = False) -> None:
        task = self.get(task_id)
        await self._interrupt(task, "removed")
        if delete_file:
            self._discard_partial(task)
        self.tasks.pop(task_id, None)
        self._meters.pop(task_id, None)
        self._last_emit.pop(task_id, None)
        logger.info(f"Download {task_id} removed (delete_file={delete_file})")
        await self.save()

    def list(self) -> List[DownloadTask]:
        return sorted(self.tasks.values(), key=lambda t: t.created_at)

    def get(self, task_id: str) -> DownloadTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound(f"download task {task_id} not found")
        return task

    async def clear_completed(self) -> int:
        finished = [t.id for t in self.tasks.values() if t.status in TERMINAL]
        for task_id in finished:
            del self.tasks[task_id]
            self._meters.pop(task_id, None)
            self._last_emit.pop(task_id, None)
        if finished:
            await self.save()
        return len(finished)

    async def open_folder(self, task_id: str) -> str:
        task = self.get(task_id)
        folder = Path(task.save_path).parent
        if not folder.is_dir():
            raise NotFound(f"folder {folder} does not exist")
        if sys.platform == "win32":
            command = ["explorer", str(folder)]
        elif sys.platform == "darwin":
            command = ["open", str(folder)]
        else:
            command = ["xdg-open", str(folder)]
        try:
            subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise Fatal(f"cannot open file browser: {e}") from e
        return str(folder)

    async def shutdown(self) -> None:
        """Pause everything in flight and persist."""
        for task_id in list(self._runners):
            task = self.tasks.get(task_id)
            if task is not None:
                await self._interrupt(task, "paused")
                if task.status in ACTIVE:
                    self._set_status(task, "paused")
        await self.save()

    # ── Runner ─────────────────────────────────────────────────────────────────
    def _key(self, task_id: str) -> str:
        return f"download:{task_id}"

    def _launch(self, task: DownloadTask) -> None:
        token = self.registry.register(self._key(task.id))
        runner = asyncio.create_task(self._run(task, token))
        token.add_callback(runner.cancel)
        self._runners[task.id] = runner

    async def _interrupt(self, task: DownloadTask, intent: str) -> None:
        runner = self._runners.get(task.id)
        if runner is None or runner.done():
            return
        self._intents[task.id] = intent
        if self.registry.is_active(self._key(task.id)):
            self.registry.cancel(self._key(task.id))
        await asyncio.wait({runner})
        self._intents.pop(task.id, None)
        if self._runners.get(task.id) is runner:
            del self._runners[task.id]

    async def _run(self, task: DownloadTask, token: CancelToken) -> None:
        try:
            self._set_status(task, "downloading")
            await self._download(task)
        except asyncio.CancelledError:
            intent = self._intents.pop(task.id, "paused")
            if intent == "cancelled":
                self._set_status(task, "cancelled")
                self._discard_partial(task)
            elif task.status in ACTIVE:
                self._set_status(task, "paused")
            logger.info(f"Download {task.id} {intent} at {task.downloaded_size} bytes")
            raise
        except Exception as e:
            logger.exception(f"Download {task.id} crashed")
            self._fail(task, str(e) or type(e).__name__)
        finally:
            self.registry.release(self._key(task.id), token)
            self._runners.pop(task.id, None)
        await self.save()
        await publish("download:progress", task.wire())

    async def _download(self, task: DownloadTask) -> None:
        while True:
            try:
                await self._fetch(task)
                return
            except _PermanentFailure as e:
                self._fail(task, str(e))
                return
            except (httpx.TransportError, _RetryableStatus) as e:
                reason = str(e) or type(e).__name__
                if task.retries >= task.max_retries:
                    self._fail(task, f"{reason} (gave up after {task.retries} retries)")
                    return
                task.retries += 1
                delay = min(self.base_delay * (2 ** (task.retries - 1)), self.max_delay)
                task.error = reason
                task.speed = 0.0
                task.updated_at = now_ms()
                logger.warning(f"Download {task.id} attempt failed: {reason}; retry {task.retries}/{task.max_retries} in {delay:.1f}s")
                await asyncio.sleep(delay)
            except httpx.HTTPError as e:
                self._fail(task, str(e) or type(e).__name__)
                return
            except OSError as e:
                self._fail(task, f"cannot write {task.save_path}: {e}")
                return

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=True,
            headers={"Accept-Encoding": "identity"},
            timeout=httpx.Timeout(30.0, connect=10.0),
        )

    async def _fetch(self, task: DownloadTask) -> None:
        path = Path(task.save_path)
        on_disk = path.stat().st_size if path.exists() else 0
        offset = min(on_disk, task.downloaded_size)
        task.downloaded_size = offset
        if on_disk > offset:
            os.truncate(path, offset)

        async with self._client() as client:
            if task.supports_range is None:
                await self._probe_head(client, task)

            headers = {"Range": f"bytes={offset}-"} if offset > 0 else {}
            async with client.stream("GET", task.url, headers=headers) as response:
                status = response.status_code
                if status == 416 and offset > 0 and task.total_size and offset >= task.total_size:
                    self._complete(task)
                    return
                if status >= 500 or status == 429:
                    raise _RetryableStatus(f"HTTP {status}")
                if status >= 400:
                    raise _PermanentFailure(f"HTTP {status}")

                if status == 206:
                    start, total = parse_content_range(response.headers.get("content-range"))
                    if start is not None and start != offset:
                        raise _PermanentFailure(f"server resumed at byte {start}, expected {offset}")
                    task.supports_range = True
                    if total:
                        task.total_size = total
                    mode = "ab"
                else:
                    if offset > 0:
                        logger.info(f"Download {task.id}: range ignored by server, restarting from zero")
                        task.supports_range = False
                    task.downloaded_size = 0
                    length = response.headers.get("content-length")
                    if length and length.isdigit():
                        task.total_size = int(length)
                    mode = "wb"

                meter = self._meters.setdefault(task.id, SpeedMeter())
                async with aiofiles.open(path, mode) as f:
                    async for chunk in response.aiter_raw():
                        await self._write_chunk(f, task, meter, chunk)
                        await self._maybe_emit(task)

        if task.total_size and task.downloaded_size < task.total_size:
            raise _RetryableStatus(f"connection closed at {task.downloaded_size}/{task.total_size} bytes")
        self._complete(task)

    async def _probe_head(self, client: httpx.AsyncClient, task: DownloadTask) -> None:
        try:
            response = await client.head(task.url)
        except httpx.HTTPError as e:
            logger.debug(f"HEAD {task.url} failed: {e}")
            return
        if response.status_code >= 400:
            return
        length = response.headers.get("content-length")
        if length and length.isdigit() and not task.total_size:
            task.total_size = int(length)
        task.supports_range = response.headers.get("accept-ranges", "").lower() == "bytes"

    async def _write_chunk(self, f, task: DownloadTask, meter: SpeedMeter, chunk: bytes) -> None:
        """Write one chunk; a pause arriving mid-write lets the chunk land first."""
        pending = asyncio.ensure_future(f.write(chunk))
        try:
            await asyncio.shield(pending)
        except asyncio.CancelledError:
            await pending
            self._advance(task, meter, len(chunk))
            raise
        self._advance(task, meter, len(chunk))

    # ── State helpers ──────────────────────────────────────────────────────────
    def _advance(self, task: DownloadTask, meter: SpeedMeter, nbytes: int) -> None:
        task.downloaded_size += nbytes
        meter.add(nbytes)
        task.speed = meter.rate()
        task.updated_at = now_ms()
        DOWNLOAD_BYTES.inc(nbytes)

    async def _maybe_emit(self, task: DownloadTask) -> None:
        now = time.monotonic()
        if now - self._last_emit.get(task.id, 0.0) >= PROGRESS_INTERVAL:
            self._last_emit[task.id] = now
            await publish("download:progress", task.wire())

    def _set_status(self, task: DownloadTask, status: str) -> None:
        task.status = status
        task.updated_at = now_ms()
        if status != "downloading":
            task.speed = 0.0
        if status in TERMINAL:
            DOWNLOADS_FINISHED.labels(status=status).inc()

    def _complete(self, task: DownloadTask) -> None:
        if not task.total_size:
            task.total_size = task.downloaded_size
        task.error = None
        self._set_status(task, "completed")
        logger.info(f"Download {task.id} completed: {task.downloaded_size} bytes")

    def _fail(self, task: DownloadTask, reason: str) -> None:
        task.error = reason
        self._set_status(task, "failed")
        logger.error(f"Download {task.id} failed: {reason}")

    def _discard_partial(self, task: DownloadTask) -> None:
        try:
            Path(task.save_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete {task.save_path}: {e}")

    @staticmethod
    def _validate_url(url: str) -> str:
        url = url.strip()
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise ValidationError(f"invalid URL {url}: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValidationError(f"unsupported URL {url}: only http(s) is allowed")
        return url
