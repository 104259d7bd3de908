"""
Fire-and-forget task helper.

Detached work (embeddings, post-save label syncs) must never fail the
request that started it, so every task gets its own log-and-discard
boundary. References are held until completion so tasks aren't collected
mid-flight.
"""

import asyncio
from collections.abc import Awaitable

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_pending: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(
            "Background task failed",
            task=task.get_name(),
            error=str(error),
            error_type=type(error).__name__,
        )


def spawn(coro: Awaitable, name: str | None = None) -> asyncio.Task:
    """Schedule coro on the running loop without awaiting it."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain(timeout: float | None = None) -> None:
    """Wait for outstanding tasks (shutdown and tests)."""
    if _pending:
        await asyncio.wait(set(_pending), timeout=timeout)


def pending_count() -> int:
    return len(_pending)
