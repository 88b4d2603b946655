"""
Shelf Toolbox API

FastAPI service behind the desktop app's network toolbox: port scanner,
download manager, port forwarder, static/proxy servers, process inspector
and netcat lab.
"""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import Optional

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from loguru import logger
from prometheus_client import generate_latest

from toolbox_api import __version__
from toolbox_api.config import ToolboxSettings
from toolbox_api.core.errors import install_error_handlers
from toolbox_api.core.socket import sio, subscriber_count
from toolbox_api.routes.downloads import router as downloads_router
from toolbox_api.routes.forwarder import router as forwarder_router
from toolbox_api.routes.netcat import router as netcat_router
from toolbox_api.routes.processes import router as processes_router
from toolbox_api.routes.scanner import router as scanner_router
from toolbox_api.routes.servers import router as servers_router
from toolbox_api.toolbox import Toolbox


def create_app(settings: Optional[ToolboxSettings] = None, toolbox: Optional[Toolbox] = None) -> FastAPI:
    settings = settings or ToolboxSettings()

    # ============ Lifespan ============

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Shelf Toolbox starting up...")
        app.state.toolbox = toolbox or Toolbox(settings)
        await app.state.toolbox.startup()

        yield

        await app.state.toolbox.shutdown()
        logger.info("Shelf Toolbox shutting down...")

    # ============ App Creation ============

    app = FastAPI(
        title="Shelf Toolbox API",
        description="Local network toolbox: scanning, downloads, forwarding, static servers, processes, netcat.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ============ Middleware ============

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    # ============ Routers ============

    app.include_router(scanner_router)
    app.include_router(downloads_router)
    app.include_router(forwarder_router)
    app.include_router(servers_router)
    app.include_router(processes_router)
    app.include_router(netcat_router)

    # ============ Health Endpoints ============

    @app.get("/", tags=["Health"])
    async def root():
        """Root endpoint - health check."""
        return {"name": "Shelf Toolbox", "version": __version__, "status": "operational"}

    @app.get("/health", tags=["Health"])
    async def health_check():
        tb: Toolbox = app.state.toolbox
        return {
            "status": "healthy",
            "scanning": tb.scanner.is_scanning,
            "active_tasks": len(tb.registry.active_ids()),
            "subscribers": subscriber_count(),
        }

    @app.get("/metrics", response_class=PlainTextResponse, tags=["Monitoring"])
    async def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return generate_latest()

    return app


app = create_app()
socket_app = socketio.ASGIApp(sio, app)


def main():
    """Run the API server."""
    import uvicorn

    settings = ToolboxSettings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    uvicorn.run(
        "toolbox_api.main:socket_app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
