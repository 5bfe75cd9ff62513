"""Detached background tasks whose failures are logged, never raised."""

import asyncio
import logging
from functools import partial
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected
_background_tasks: Set[asyncio.Task] = set()


def _on_done(description: str, task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.info(f"Background task cancelled: {description}")
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"Background task failed: {description}: {error}")


def spawn_detached(coro: Awaitable, description: str) -> asyncio.Task:
    """
    Run a coroutine without awaiting it.

    Args:
        coro: Work to run
        description: Label used when logging a failure

    Returns:
        The scheduled task
    """
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(partial(_on_done, description))
    return task


async def drain_background_tasks(timeout: Optional[float] = None) -> int:
    """
    Wait for pending detached tasks (shutdown and tests).

    Args:
        timeout: Maximum seconds to wait

    Returns:
        Number of tasks that were pending
    """
    pending = [t for t in _background_tasks if not t.done()]
    if pending:
        await asyncio.wait(pending, timeout=timeout)
    return len(pending)
