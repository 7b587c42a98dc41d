# nocturne/utils/async_helpers.py
"""
Async utilities for safe task management and cooperative cancellation.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log_errors: bool = True
) -> asyncio.Task:
    """
    Create an asyncio task with automatic error handling.

    This prevents fire-and-forget tasks from silently swallowing exceptions.

    Args:
        coro: The coroutine to run as a task
        name: Optional name for the task (for logging)
        log_errors: Whether to log errors (default True)

    Returns:
        The created asyncio.Task
    """
    task = asyncio.create_task(coro, name=name)

    def _handle_exception(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc and log_errors:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task


class CancellationToken:
    """
    Cooperative cancellation handle shared between a run and whoever may stop it.

    Long-running stages poll ``cancelled`` at their checkpoints; nothing is
    interrupted preemptively. The first reason given wins.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug(f"[CancellationToken] Cancelled: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def checkpoint(token: Optional[CancellationToken] = None) -> bool:
    """
    Yield control to the event loop once.

    Returns True when the given token has been cancelled, so callers can
    write ``if await checkpoint(token): ...``.
    """
    await asyncio.sleep(0)
    return token is not None and token.cancelled
