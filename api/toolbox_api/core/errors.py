"""
Toolbox error taxonomy.

Every command failure is one of these kinds; the API layer renders them as
``{"kind": ..., "message": ...}`` with a matching HTTP status.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class ToolboxError(Exception):
    """Base class for toolbox command failures."""

    kind = "Fatal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(ToolboxError):
    kind = "ValidationError"
    status_code = 400


class NotFound(ToolboxError):
    kind = "NotFound"
    status_code = 404


class ResourceConflict(ToolboxError):
    """Port already bound, id already registered, scan already running."""

    kind = "ResourceConflict"
    status_code = 409


class AccessDenied(ToolboxError):
    kind = "PermissionError"
    status_code = 403


class TransientIOError(ToolboxError):
    kind = "TransientIOError"
    status_code = 502


class Fatal(ToolboxError):
    kind = "Fatal"
    status_code = 500


def install_error_handlers(app: FastAPI) -> None:
    """Register JSON renderers for toolbox errors and request validation."""

    @app.exception_handler(ToolboxError)
    async def _toolbox_error(request: Request, exc: ToolboxError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
        else:
            message = "invalid request"
        return JSONResponse(status_code=400, content={"kind": "ValidationError", "message": message})
