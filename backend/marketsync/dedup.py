from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retrieve_exception(task: asyncio.Task) -> None:
    # Waiters may all be cancelled before the shared task fails.
    if not task.cancelled():
        task.exception()


class RequestDeduplicator:
    """Coalesces concurrent operations sharing a key into one in-flight task."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._pending

    def pending_keys(self) -> list[str]:
        return list(self._pending)

    async def execute(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is not None:
            logger.debug("Joining in-flight request for %s", key)
        else:
            task = asyncio.ensure_future(self._run(key, operation))
            task.add_done_callback(_retrieve_exception)
            self._pending[key] = task
        # Shielded so a cancelled waiter does not cancel the shared task.
        return await asyncio.shield(task)

    async def _run(self, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await operation()
        finally:
            self._pending.pop(key, None)
