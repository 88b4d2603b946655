"""
Auto-send payload generation.

Modes: fixed text, cycling CSV lines, templates with placeholders, or the
result of an HTTP fetch. Template placeholders::

    {{random:1-100}}  {{float:0-1}}  {{choice:a,b,c}}  {{seq}}
    {{uuid}}  {{timestamp}}  {{datetime}}  {{date}}  {{time}}
"""

from __future__ import annotations

import random
import re
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable, List

from toolbox_api.core.errors import ValidationError
from toolbox_api.schemas.netcat import AutoSendConfig, HttpFetchConfig

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*(?::([^}]*))?\}\}")


def _bounds(arg: str, cast):
    low, sep, high = (arg or "").partition("-")
    if not sep:
        raise ValueError(arg)
    low, high = cast(low.strip()), cast(high.strip())
    return (low, high) if low <= high else (high, low)


def render_template(template: str, seq: int) -> str:
    def replace(match: re.Match) -> str:
        name, arg = match.group(1).lower(), match.group(2)
        try:
            if name == "random":
                return str(random.randint(*_bounds(arg, int)))
            if name == "float":
                return f"{random.uniform(*_bounds(arg, float)):.2f}"
            if name == "choice":
                options = [o.strip() for o in (arg or "").split(",") if o.strip()]
                return random.choice(options) if options else ""
        except ValueError:
            return match.group(0)
        if name == "uuid":
            return str(uuid.uuid4())
        if name == "timestamp":
            return str(int(time.time() * 1000))
        if name == "datetime":
            return datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        if name == "date":
            return datetime.now().strftime("%Y-%m-%d")
        if name == "time":
            return datetime.now().strftime("%H:%M:%S")
        if name == "seq":
            return str(seq)
        return match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def csv_lines(data: str) -> List[str]:
    return [line.strip() for line in data.splitlines() if line.strip()]


def validate_auto_send(config: AutoSendConfig) -> None:
    if not config.enabled:
        return
    if config.mode == "csv" and not csv_lines(config.csv_data):
        raise ValidationError("csv auto-send needs at least one non-empty line")
    if config.mode == "template" and not config.template:
        raise ValidationError("template auto-send needs a template")
    if config.mode == "http" and not config.http_url:
        raise ValidationError("http auto-send needs a URL")


class PayloadGenerator:
    """Produces the next auto-send payload for one session."""

    def __init__(self, config: AutoSendConfig, fetch: Callable[[HttpFetchConfig], Awaitable[str]]):
        self.config = config
        self._fetch = fetch
        self._seq = 0
        self._cursor = 0
        self._lines = csv_lines(config.csv_data)

    async def next(self) -> str:
        mode = self.config.mode
        if mode == "csv":
            line = self._lines[self._cursor % len(self._lines)]
            self._cursor += 1
            return line
        if mode == "template":
            self._seq += 1
            return render_template(self.config.template, self._seq)
        if mode == "http":
            return await self._fetch(HttpFetchConfig(
                url=self.config.http_url,
                method=self.config.http_method or "GET",
                headers=self.config.http_headers,
                body=self.config.http_body or None,
                json_path=self.config.http_json_path or None,
            ))
        return self.config.fixed_data
