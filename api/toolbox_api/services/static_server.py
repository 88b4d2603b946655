"""
Static/Proxy Server Manager

Each server config runs its own Starlette site on an embedded uvicorn
server bound to a pre-leased socket. Proxy rules are checked in stored
order; the first prefix that matches on a path-segment boundary wins and
the prefix is stripped before forwarding (``/api/x`` -> ``<target>/x``).
Everything else is served from the root directory under ``urlPrefix``.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx
import uvicorn
from loguru import logger
from starlette.background import BackgroundTask
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import FileResponse, PlainTextResponse, RedirectResponse, Response, StreamingResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from toolbox_api.core.errors import NotFound, ValidationError
from toolbox_api.core.ports import PortLeases, bind_tcp
from toolbox_api.core.registry import TaskRegistry
from toolbox_api.core.snapshot import SnapshotStore
from toolbox_api.schemas.common import now_ms
from toolbox_api.schemas.servers import ProxyConfig, ServerConfig, ServerConfigInput

HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}
MAX_PROXY_BODY = 10 * 1024 * 1024


def normalize_prefix(prefix: Optional[str]) -> str:
    cleaned = (prefix or "").strip().strip("/")
    return "/" + cleaned if cleaned else "/"


def match_proxy(proxies: List[ProxyConfig], path: str) -> Optional[Tuple[ProxyConfig, str]]:
    """First proxy whose prefix matches ``path`` on a segment boundary, plus the remaining path."""
    for proxy in proxies:
        prefix = proxy.prefix.rstrip("/")
        if not prefix:
            return proxy, path
        if path == prefix or path.startswith(prefix + "/"):
            return proxy, path[len(prefix):] or "/"
    return None


def upstream_url(target: str, rest: str, query: str = "") -> str:
    url = target.rstrip("/") + rest
    return f"{url}?{query}" if query else url


def validate_server_input(data: ServerConfigInput) -> dict:
    if not 1 <= data.port <= 65535:
        raise ValidationError(f"port {data.port} out of range 1-65535")
    root = Path(data.root_dir).expanduser()
    if not root.is_dir():
        raise ValidationError(f"root directory {data.root_dir} does not exist")

    proxies = []
    for proxy in data.proxies:
        if not proxy.prefix.startswith("/"):
            raise ValidationError(f"proxy prefix {proxy.prefix!r} must start with '/'")
        try:
            target = httpx.URL(proxy.target)
        except httpx.InvalidURL as e:
            raise ValidationError(f"invalid proxy target {proxy.target}: {e}") from e
        if target.scheme not in ("http", "https") or not target.host:
            raise ValidationError(f"proxy target {proxy.target} must be an absolute http(s) URL")
        proxies.append(ProxyConfig(prefix="/" + proxy.prefix.strip("/"), target=proxy.target))

    index_page = (data.index_page or "index.html").strip() or "index.html"
    return {
        "name": data.name.strip(),
        "port": data.port,
        "root_dir": str(root.resolve()),
        "cors": data.cors,
        "gzip": data.gzip,
        "cache_control": data.cache_control or None,
        "url_prefix": normalize_prefix(data.url_prefix),
        "index_page": index_page,
        "proxies": proxies,
    }


class SiteApp:
    """ASGI app for one server config: proxy rules, then files under the URL prefix."""

    def __init__(self, config: ServerConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.root = Path(config.root_dir).resolve()
        self.client = httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(30.0, connect=10.0))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return
        request = Request(scope, receive)
        response = await self.dispatch(request)
        await response(scope, receive, send)

    async def dispatch(self, request: Request) -> Response:
        path = request.url.path
        matched = match_proxy(self.config.proxies, path)
        if matched is not None:
            return await self.proxy(request, *matched)

        prefix = self.config.url_prefix
        if prefix != "/":
            if path == "/":
                return RedirectResponse(prefix + "/")
            if path == prefix:
                return RedirectResponse(prefix + "/")
            if not path.startswith(prefix + "/"):
                return PlainTextResponse("Not Found", status_code=404)
            path = path[len(prefix):]

        if request.method not in ("GET", "HEAD"):
            return PlainTextResponse("Method Not Allowed", status_code=405)
        return self.serve_file(request, path)

    def serve_file(self, request: Request, rel_path: str) -> Response:
        candidate = (self.root / rel_path.lstrip("/")).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            return PlainTextResponse("Not Found", status_code=404)

        if candidate.is_dir():
            if not request.url.path.endswith("/"):
                return RedirectResponse(request.url.path + "/")
            candidate = candidate / self.config.index_page
        if not candidate.is_file():
            return PlainTextResponse("Not Found", status_code=404)

        headers = {"Cache-Control": self.config.cache_control} if self.config.cache_control else None
        return FileResponse(candidate, headers=headers)

    async def proxy(self, request: Request, rule: ProxyConfig, rest: str) -> Response:
        url = upstream_url(rule.target, rest, request.url.query)
        body = await request.body()
        if len(body) > MAX_PROXY_BODY:
            return PlainTextResponse("Payload Too Large", status_code=413)

        headers = [
            (k, v) for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() != "host"
        ]
        headers.append(("host", httpx.URL(rule.target).netloc.decode("ascii")))
        upstream_request = self.client.build_request(request.method, url, headers=headers, content=body)
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.warning(f"Server {self.config.name}: proxy to {url} failed: {e!r}")
            return PlainTextResponse(f"Bad Gateway: {e}", status_code=502)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in upstream.headers.multi_items()
            if k.lower() not in HOP_BY_HOP
        ]
        return response

    async def aclose(self) -> None:
        await self.client.aclose()


def build_site(config: ServerConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> Tuple[ASGIApp, SiteApp]:
    site = SiteApp(config, transport)
    app: ASGIApp = site
    if config.gzip:
        app = GZipMiddleware(app, minimum_size=1024)
    if config.cors:
        app = CORSMiddleware(app, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    return app, site


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self):
        yield


class _Running:
    def __init__(self, server: EmbeddedServer, task: asyncio.Task, site: SiteApp, holder: str):
        self.server = server
        self.task = task
        self.site = site
        self.holder = holder


class StaticServerManager:
    SNAPSHOT = "server_configs"

    def __init__(
        self,
        registry: TaskRegistry,
        leases: PortLeases,
        snapshots: SnapshotStore,
        listen_host: str = "0.0.0.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.leases = leases
        self.snapshots = snapshots
        self.listen_host = listen_host
        self._transport = transport
        self.servers: Dict[str, ServerConfig] = {}
        self._running: Dict[str, _Running] = {}

    async def load(self) -> None:
        data = await self.snapshots.load(self.SNAPSHOT)
        if not data:
            return
        for raw in data.get("servers", []):
            try:
                config = ServerConfig.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping unreadable server config: {e}")
                continue
            self.servers[config.id] = config.model_copy(update={"status": "stopped", "url": None})
        logger.info(f"Loaded {len(self.servers)} server configs")

    async def save(self) -> None:
        await self.snapshots.save(self.SNAPSHOT, {"servers": [s.wire() for s in self.servers.values()]})

    async def create(self, data: ServerConfigInput) -> ServerConfig:
        fields = validate_server_input(data)
        config = ServerConfig(id=self.registry.new_id(), created_at=now_ms(), **fields)
        self.servers[config.id] = config
        await self.save()
        logger.info(f"Server {config.id} created: {config.name} on :{config.port} serving {config.root_dir}")
        return config

    async def update(self, server_id: str, data: ServerConfigInput) -> ServerConfig:
        config = self.get(server_id)
        fields = validate_server_input(data)
        was_running = config.status == "running"
        if was_running:
            await self.stop(server_id)
        for field, value in fields.items():
            setattr(config, field, value)
        await self.save()
        if was_running:
            await self.start(server_id)
        return config

    async def remove(self, server_id: str) -> None:
        config = self.get(server_id)
        if config.status == "running":
            await self.stop(server_id)
        del self.servers[server_id]
        await self.save()

    def get(self, server_id: str) -> ServerConfig:
        config = self.servers.get(server_id)
        if config is None:
            raise NotFound(f"server {server_id} not found")
        return config

    def list(self) -> List[ServerConfig]:
        return sorted(self.servers.values(), key=lambda s: s.created_at)

    async def start(self, server_id: str) -> str:
        config = self.get(server_id)
        if config.status == "running" and config.url:
            return config.url
        if not Path(config.root_dir).is_dir():
            raise ValidationError(f"root directory {config.root_dir} does not exist")

        holder = f"server '{config.name}'"
        self.leases.acquire(config.port, holder)
        try:
            sock = bind_tcp(self.listen_host, config.port)
        except BaseException:
            self.leases.release(config.port, holder)
            raise

        app, site = build_site(config, self._transport)
        uv_config = uvicorn.Config(
            app,
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=2,
        )
        server = EmbeddedServer(uv_config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        running = _Running(server, task, site, holder)
        self._running[config.id] = running

        while not server.started and not task.done():
            await asyncio.sleep(0.01)
        if task.done():
            await self._teardown(config.id, running)
            sock.close()
            error = task.exception() if not task.cancelled() else None
            raise ValidationError(f"server {config.name} failed to start: {error!r}")

        token = self.registry.register(self._key(config.id))
        token.add_callback(lambda: setattr(server, "should_exit", True))

        prefix = config.url_prefix
        config.url = f"http://127.0.0.1:{config.port}" + (f"{prefix}/" if prefix != "/" else "")
        config.status = "running"
        logger.info(f"Server {config.name} listening at {config.url}")
        return config.url

    async def stop(self, server_id: str) -> ServerConfig:
        config = self.get(server_id)
        running = self._running.get(server_id)
        if running is None:
            config.status = "stopped"
            config.url = None
            return config

        key = self._key(server_id)
        if self.registry.is_active(key):
            self.registry.cancel(key)
        running.server.should_exit = True
        _, pending = await asyncio.wait({running.task}, timeout=5)
        if pending:
            running.server.force_exit = True
            await asyncio.wait(pending)
        if not running.task.cancelled() and running.task.exception() is not None:
            logger.error(f"Server {config.name} exited with error: {running.task.exception()!r}")
        await self._teardown(server_id, running)

        config.status = "stopped"
        config.url = None
        logger.info(f"Server {config.name} stopped")
        return config

    async def shutdown(self) -> None:
        for server_id in list(self._running):
            await self.stop(server_id)

    async def _teardown(self, server_id: str, running: _Running) -> None:
        self._running.pop(server_id, None)
        config = self.servers.get(server_id)
        if config is not None:
            self.leases.release(config.port, running.holder)
        await running.site.aclose()

    def _key(self, server_id: str) -> str:
        return f"server:{server_id}"
