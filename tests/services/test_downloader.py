"""
Download manager tests against an in-process HTTP source.
"""

import asyncio
import gzip
import hashlib
import random

import httpx
import pytest

from conftest import wait_until
from toolbox_api.core.errors import NotFound, ValidationError
from toolbox_api.schemas.downloads import DownloadConfig, DownloadTask
from toolbox_api.services.downloader import DownloadManager, SpeedMeter, parse_content_range, resolve_file_name

DATA = bytes(range(256)) * 1024  # 256 KiB
URL = "http://files.test/releases/blob.bin"


class FileSource:
    """Serves a payload in small delayed chunks, optionally honouring Range."""

    def __init__(self, honor_range=True, fail_first=0, fail_status=503, delay=0.005, chunk=8192,
                 payload=DATA, content_encoding=None):
        self.payload = payload
        self.content_encoding = content_encoding
        self.honor_range = honor_range
        self.fail_first = fail_first
        self.fail_status = fail_status
        self.delay = delay
        self.chunk = chunk
        self.requests = []

    @property
    def gets(self):
        return [r for r in self.requests if r.method == "GET"]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            return httpx.Response(200, headers={
                "content-length": str(len(self.payload)),
                "accept-ranges": "bytes" if self.honor_range else "none",
            })
        if len(self.gets) <= self.fail_first:
            return httpx.Response(self.fail_status)

        start, status, headers = 0, 200, {}
        requested = request.headers.get("range")
        if requested and self.honor_range:
            start = int(requested.split("=", 1)[1].split("-", 1)[0])
            status = 206
            headers["content-range"] = f"bytes {start}-{len(self.payload) - 1}/{len(self.payload)}"
        body = self.payload[start:]
        headers["content-length"] = str(len(body))
        if self.content_encoding:
            headers["content-encoding"] = self.content_encoding

        async def stream():
            for i in range(0, len(body), self.chunk):
                await asyncio.sleep(self.delay)
                yield body[i:i + self.chunk]

        return httpx.Response(status, headers=headers, content=stream())


def make_manager(tmp_path, registry, snapshots, source, **kwargs):
    return DownloadManager(
        registry,
        snapshots,
        default_dir=tmp_path / "downloads",
        base_delay=0.01,
        max_delay=0.05,
        transport=httpx.MockTransport(source),
        **kwargs,
    )


def sha256(path):
    with open(path, "rb") as f:
        return hashlib.sha256(f.read()).hexdigest()


class TestHelpers:
    """Tests for file naming and header parsing."""

    def test_file_name_from_url(self):
        assert resolve_file_name("http://x.test/a/b/My%20File.zip?sig=1") == "My File.zip"

    def test_explicit_file_name_strips_directories(self):
        assert resolve_file_name("http://x.test/a", "../../etc/passwd") == "passwd"

    def test_fallback_file_name(self):
        assert resolve_file_name("http://x.test/").startswith("download_")

    def test_content_range(self):
        assert parse_content_range("bytes 100-199/1000") == (100, 1000)
        assert parse_content_range("bytes 0-9/*") == (0, None)
        assert parse_content_range(None) == (None, None)

    def test_speed_is_windowed(self):
        meter = SpeedMeter(window=3.0)
        meter.add(3000, now=0.0)
        meter.add(3000, now=1.0)
        assert meter.rate(now=2.0) == pytest.approx(3000.0)
        assert meter.rate(now=10.0) == 0.0


class TestDownloads:
    """Tests for the download lifecycle."""

    @pytest.mark.asyncio
    async def test_download_completes(self, tmp_path, registry, snapshots):
        source = FileSource(delay=0)
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).status == "completed")

        task = manager.get(task_id)
        assert task.file_name == "blob.bin"
        assert task.total_size == task.downloaded_size == len(DATA)
        assert task.supports_range is True
        assert sha256(task.save_path) == hashlib.sha256(DATA).hexdigest()
        assert not registry.is_active(f"download:{task_id}")

    @pytest.mark.asyncio
    async def test_pause_resume_with_range(self, tmp_path, registry, snapshots):
        source = FileSource()
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).downloaded_size >= 64 * 1024)
        task = await manager.pause(task_id)
        paused_at = task.downloaded_size

        assert task.status == "paused"
        assert 0 < paused_at < len(DATA)
        assert task.speed == 0.0

        sizes = []
        await manager.resume(task_id)

        def progressed():
            sizes.append(manager.get(task_id).downloaded_size)
            return manager.get(task_id).status == "completed"

        await wait_until(progressed)

        assert sizes == sorted(sizes)
        assert sizes[0] >= paused_at
        assert source.gets[-1].headers["range"] == f"bytes={paused_at}-"
        assert sha256(task.save_path) == hashlib.sha256(DATA).hexdigest()

    @pytest.mark.asyncio
    async def test_resume_without_range_restarts_from_zero(self, tmp_path, registry, snapshots):
        source = FileSource(honor_range=False)
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).downloaded_size >= 64 * 1024)
        await manager.pause(task_id)
        await manager.resume(task_id)
        await wait_until(lambda: manager.get(task_id).status == "completed")

        task = manager.get(task_id)
        assert task.supports_range is False
        assert task.downloaded_size == len(DATA)
        assert sha256(task.save_path) == hashlib.sha256(DATA).hexdigest()

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, tmp_path, registry, snapshots):
        source = FileSource(fail_first=2, delay=0)
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL, max_retries=3))
        await wait_until(lambda: manager.get(task_id).status == "completed")

        assert manager.get(task_id).retries == 2
        assert len(source.gets) == 3

    @pytest.mark.asyncio
    async def test_fails_after_max_retries(self, tmp_path, registry, snapshots):
        source = FileSource(fail_first=100, delay=0)
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL, max_retries=2))
        await wait_until(lambda: manager.get(task_id).status == "failed")

        task = manager.get(task_id)
        assert task.retries == 2
        assert "HTTP 503" in task.error
        assert len(source.gets) == 3

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self, tmp_path, registry, snapshots):
        source = FileSource(fail_first=100, fail_status=404, delay=0)
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).status == "failed")

        assert manager.get(task_id).retries == 0
        assert manager.get(task_id).error == "HTTP 404"

    @pytest.mark.asyncio
    async def test_cancel_deletes_partial_file(self, tmp_path, registry, snapshots):
        manager = make_manager(tmp_path, registry, snapshots, FileSource())

        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).downloaded_size > 0)
        task = await manager.cancel(task_id)

        assert task.status == "cancelled"
        assert not (tmp_path / "downloads" / "blob.bin").exists()
        with pytest.raises(ValidationError):
            await manager.resume(task_id)

    @pytest.mark.asyncio
    async def test_clear_completed_and_remove(self, tmp_path, registry, snapshots):
        manager = make_manager(tmp_path, registry, snapshots, FileSource(delay=0))

        done_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(done_id).status == "completed")
        paused_id = await manager.start(DownloadConfig(url="http://files.test/other.bin"))
        await manager.pause(paused_id)

        assert await manager.clear_completed() == 1
        assert [t.id for t in manager.list()] == [paused_id]
        assert (tmp_path / "downloads" / "blob.bin").exists()
        assert done_id not in manager._meters
        assert done_id not in manager._last_emit

        await manager.remove(paused_id, delete_file=True)
        with pytest.raises(NotFound):
            manager.get(paused_id)

    @pytest.mark.asyncio
    async def test_invalid_url_rejected(self, tmp_path, registry, snapshots):
        manager = make_manager(tmp_path, registry, snapshots, FileSource())
        with pytest.raises(ValidationError):
            await manager.start(DownloadConfig(url="ftp://files.test/a.bin"))
        with pytest.raises(ValidationError):
            await manager.start(DownloadConfig(url="not a url"))

    @pytest.mark.asyncio
    async def test_open_folder(self, tmp_path, registry, snapshots, monkeypatch):
        launched = []
        monkeypatch.setattr(
            "toolbox_api.services.downloader.subprocess.Popen",
            lambda cmd, **kwargs: launched.append(cmd),
        )
        manager = make_manager(tmp_path, registry, snapshots, FileSource(delay=0))
        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).status == "completed")

        folder = await manager.open_folder(task_id)

        assert folder == str(tmp_path / "downloads")
        assert launched[0][-1] == folder

    @pytest.mark.asyncio
    async def test_snapshot_reload_pauses_in_flight_tasks(self, tmp_path, registry, snapshots):
        in_flight = DownloadTask(
            id="t1", url=URL, save_path=str(tmp_path / "blob.bin"), file_name="blob.bin",
            downloaded_size=4096, status="downloading", speed=1234.0, created_at=1, updated_at=1,
        )
        await snapshots.save(DownloadManager.SNAPSHOT, {"tasks": [in_flight.wire(), {"id": "broken"}]})

        manager = make_manager(tmp_path, registry, snapshots, FileSource())
        await manager.load()

        task = manager.get("t1")
        assert task.status == "paused"
        assert task.speed == 0.0
        assert task.downloaded_size == 4096
        assert len(manager.list()) == 1

    @pytest.mark.asyncio
    async def test_shutdown_pauses_running_downloads(self, tmp_path, registry, snapshots):
        manager = make_manager(tmp_path, registry, snapshots, FileSource())
        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).downloaded_size > 0)

        await manager.shutdown()

        assert manager.get(task_id).status == "paused"
        assert registry.active_ids() == []

    @pytest.mark.asyncio
    async def test_encoded_body_resumes_on_encoded_offsets(self, tmp_path, registry, snapshots):
        plain = random.Random(7).randbytes(256 * 1024)
        encoded = gzip.compress(plain)
        source = FileSource(payload=encoded, content_encoding="gzip")
        manager = make_manager(tmp_path, registry, snapshots, source)

        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).downloaded_size >= 64 * 1024)
        paused_at = (await manager.pause(task_id)).downloaded_size
        await manager.resume(task_id)
        await wait_until(lambda: manager.get(task_id).status == "completed")

        task = manager.get(task_id)
        assert task.total_size == task.downloaded_size == len(encoded)
        assert source.gets[-1].headers["range"] == f"bytes={paused_at}-"
        assert all(r.headers["accept-encoding"] == "identity" for r in source.requests)
        assert sha256(task.save_path) == hashlib.sha256(encoded).hexdigest()

    @pytest.mark.asyncio
    async def test_redirect_loop_fails_the_task(self, tmp_path, registry, snapshots):
        def loop(request):
            return httpx.Response(302, headers={"location": str(request.url)})

        manager = make_manager(tmp_path, registry, snapshots, loop)
        task_id = await manager.start(DownloadConfig(url=URL))
        await wait_until(lambda: manager.get(task_id).status == "failed")

        task = manager.get(task_id)
        assert task.error
        assert task.retries == 0
        assert not registry.is_active(f"download:{task_id}")
