"""Timeout-bounded execution of engine calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Coroutine, Optional, Sequence, Set, TypeVar

from ..config.settings import Settings
from .errors import ConnectionTimeoutError, QueryTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _to_ms(timeout: float) -> int:
    return int(round(timeout * 1000))


async def run_with_timeout(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    On expiry the awaiting side is cancelled and ``QueryTimeoutError`` is
    raised. A statement already handed to the engine may still finish in the
    background, so the caller must treat its effect as unknown.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise QueryTimeoutError(_to_ms(timeout)) from None


async def connect_with_timeout(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """Like ``run_with_timeout`` but for establishing connections."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise ConnectionTimeoutError(_to_ms(timeout)) from None


async def timed_statement(
    awaitable: Awaitable[T], sql: str, params: Sequence[Any] = ()
) -> T:
    """Await a statement, logging it with its elapsed time when DBCORE_DEBUG_SQL is set."""
    if not Settings.DBCORE_DEBUG_SQL:
        return await awaitable
    start_time = time.time()
    try:
        return await awaitable
    finally:
        elapsed = (time.time() - start_time) * 1000  # ms
        params_str = str(tuple(params))[:100] if params else "None"
        logger.debug(f"SQL [{elapsed:.2f}ms]: {sql[:100]}... params={params_str}")


# Strong references to fire-and-forget cleanup tasks so they are not
# collected before they finish.
_background_tasks: Set["asyncio.Task[Any]"] = set()


def spawn_background(coro: Coroutine[Any, Any, Any]) -> Optional["asyncio.Task[Any]"]:
    """Schedule ``coro`` on the running loop without awaiting it.

    Returns ``None`` (and closes the coroutine) when no loop is running.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        return None
    return track_background(loop.create_task(coro))


def track_background(task: "asyncio.Task[T]") -> "asyncio.Task[T]":
    """Hold a strong reference to ``task`` until it finishes."""
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
