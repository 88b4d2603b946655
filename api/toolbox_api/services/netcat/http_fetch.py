"""
HTTP fetch used by the netcat lab's "http" auto-send mode and the
standalone fetch command.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional, Union

import httpx
from loguru import logger

from toolbox_api.core.errors import TransientIOError, ValidationError
from toolbox_api.schemas.netcat import HttpFetchConfig

_PATH_TOKEN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")


def parse_headers(headers: Union[Dict[str, str], str, None]) -> Dict[str, str]:
    if not headers:
        return {}
    if isinstance(headers, dict):
        return dict(headers)
    parsed = {}
    for line in headers.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def extract_json_path(document: Any, path: str) -> Any:
    """Walk ``a.b[0].c`` (optionally prefixed with ``$.``) through parsed JSON."""
    path = path.strip()
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    current = document
    for index, key in _PATH_TOKEN.findall(path):
        if index:
            if not isinstance(current, list) or int(index) >= len(current):
                raise ValidationError(f"json path {path!r}: index [{index}] not found")
            current = current[int(index)]
        else:
            if isinstance(current, list) and key.isdigit() and int(key) < len(current):
                current = current[int(key)]
            elif isinstance(current, dict) and key in current:
                current = current[key]
            else:
                raise ValidationError(f"json path {path!r}: key {key!r} not found")
    return current


async def fetch_http(config: HttpFetchConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    try:
        url = httpx.URL(config.url)
    except httpx.InvalidURL as e:
        raise ValidationError(f"invalid URL {config.url}: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ValidationError(f"unsupported URL {config.url}")

    method = (config.method or "GET").upper()
    async with httpx.AsyncClient(
        transport=transport,
        timeout=config.timeout_ms / 1000,
        follow_redirects=True,
    ) as client:
        try:
            response = await client.request(
                method,
                url,
                headers=parse_headers(config.headers),
                content=config.body.encode("utf-8") if config.body else None,
            )
        except httpx.HTTPError as e:
            raise TransientIOError(f"{method} {config.url} failed: {e!r}") from e

    if not response.is_success:
        raise TransientIOError(f"{method} {config.url} returned HTTP {response.status_code}")
    if not config.json_path:
        return response.text

    try:
        document = response.json()
    except ValueError as e:
        raise ValidationError(f"response from {config.url} is not JSON") from e
    value = extract_json_path(document, config.json_path)
    logger.debug(f"fetch_http {config.url} [{config.json_path}] -> {value!r}")
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
