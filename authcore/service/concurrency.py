from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from authcore.service.errors import DependencyTimeoutError

T = TypeVar("T")


def spawn(coro: Awaitable[T], *, name: Optional[str] = None) -> "asyncio.Task[T]":
    """Start ``coro`` as an independent task on the running loop."""
    return asyncio.create_task(coro, name=name)


async def join(task: "asyncio.Task[T]", timeout: float) -> T:
    """Await ``task`` for at most ``timeout`` seconds.

    A timed out task is cancelled and reported as ``DependencyTimeoutError``;
    it is never retried. Exceptions raised by the task propagate unchanged.
    """
    try:
        return await asyncio.wait_for(task, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise DependencyTimeoutError(
            "dependency did not respond in time",
            detail={"task": task.get_name()},
        ) from exc


def cancel(*tasks: "asyncio.Task[Any]") -> None:
    """Cancel tasks whose result is no longer needed and retrieve their outcome."""
    for task in tasks:
        if task.done():
            # mark the exception retrieved so the loop does not log it
            if not task.cancelled():
                task.exception()
            continue
        task.cancel()


async def run_blocking(fn: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a synchronous store call in a worker thread, bounded by ``timeout``."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise DependencyTimeoutError(
            "store did not respond in time",
            detail={"operation": getattr(fn, "__name__", "call")},
        ) from exc
