from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class InFlightDeduplicator:
    """Coalesces concurrent calls for the same key onto one pending task.

    The pending map is only touched under ``_lock``; ``fn`` itself runs
    outside of it. The entry is removed when the task settles, before any
    waiter resumes, so the next call after settlement starts a fresh fetch.
    Waiters are shielded: a caller that is cancelled detaches from the task
    without cancelling it for the others. A failure is always retrieved on
    settlement, even when every waiter has already detached.
    """

    def __init__(self) -> None:
        self._pending: Dict[Hashable, "asyncio.Task[Any]"] = {}
        self._lock = threading.Lock()
        self.started = 0
        self.joined = 0
        self.failed = 0

    async def coalesce(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        with self._lock:
            task = self._pending.get(key)
            if task is None:
                task = asyncio.ensure_future(self._run(key, fn))
                task.add_done_callback(self._settled)
                self._pending[key] = task
                self.started += 1
            else:
                self.joined += 1
                logger.info(f"[INFLIGHT] joined pending fetch for {key}")
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fn()
        finally:
            with self._lock:
                self._pending.pop(key, None)

    def _settled(self, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.debug(f"[INFLIGHT] shared fetch failed: {exc!r}")

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._pending

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
