"""
Task registry.

Keyed store of cancellation tokens for long-lived work (scans, downloads,
relays, listeners, netcat sessions). The registry never owns the work
itself; owners register a token, watch it, and release it when the work
reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from toolbox_api.core.errors import NotFound, ResourceConflict


class CancelToken:
    """Cooperative cancellation signal.

    Owners attach callbacks (usually ``task.cancel``) so that blocked I/O
    is interrupted as soon as the token fires.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], object]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], object]) -> None:
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancel callback raised: {e}")

    async def wait(self) -> None:
        await self._event.wait()


class TaskRegistry:
    """Registry of active cancellation tokens keyed by task id."""

    def __init__(self):
        self._tokens: Dict[str, CancelToken] = {}
        self._issued: Set[str] = set()

    def new_id(self) -> str:
        """Issue an id that has never been handed out by this registry."""
        while True:
            task_id = uuid.uuid4().hex
            if task_id not in self._issued:
                self._issued.add(task_id)
                return task_id

    def register(self, task_id: str, token: Optional[CancelToken] = None) -> CancelToken:
        if task_id in self._tokens:
            raise ResourceConflict(f"task {task_id} is already active")
        token = token or CancelToken()
        self._tokens[task_id] = token
        return token

    def cancel(self, task_id: str) -> None:
        token = self._tokens.pop(task_id, None)
        if token is None:
            raise NotFound(f"no active task {task_id}")
        token.cancel()

    def release(self, task_id: str, token: Optional[CancelToken] = None) -> None:
        """Drop the token for a finished task.

        When ``token`` is given the entry is only removed if it is still the
        registered one, so a late release never evicts a newer registration.
        """
        current = self._tokens.get(task_id)
        if current is None:
            return
        if token is not None and current is not token:
            return
        del self._tokens[task_id]

    def is_active(self, task_id: str) -> bool:
        return task_id in self._tokens

    def active_ids(self) -> List[str]:
        return list(self._tokens)

    def cancel_all(self, prefix: str = "") -> int:
        ids = [k for k in self._tokens if k.startswith(prefix)]
        for task_id in ids:
            self.cancel(task_id)
        return len(ids)
