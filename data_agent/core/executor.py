"""
Process-wide worker pool.

Blocking collaborator calls (SQL drivers, file reads) run on one bounded
``ThreadPoolExecutor`` shared by every workflow instance. Coroutine fan-out
inside a node goes through ``gather_bounded``, which joins all sub-work
before returning and cancels the unfinished siblings when the caller is
cancelled or one of them fails.
"""

import asyncio
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from .config import settings

T = TypeVar("T")

_pool: Optional[ThreadPoolExecutor] = None
_pool_lock = threading.Lock()


def get_worker_pool() -> ThreadPoolExecutor:
    """Return the shared pool, creating it on first use."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ThreadPoolExecutor(
                max_workers=settings.worker_pool_size,
                thread_name_prefix="data-agent-worker",
            )
        return _pool


def shutdown_worker_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.shutdown(wait=False, cancel_futures=True)
            _pool = None


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking callable on the shared pool without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(get_worker_pool(), functools.partial(func, *args, **kwargs))


async def gather_bounded(aws: Iterable[Awaitable[T]], limit: Optional[int] = None) -> List[T]:
    """
    Await every coroutine with at most ``limit`` running at once.

    Results keep the input order. If the caller is cancelled, or any child
    raises, the remaining children are cancelled before the error propagates.
    """
    semaphore = asyncio.Semaphore(limit or settings.worker_pool_size)

    async def _guarded(aw: Awaitable[T]) -> T:
        async with semaphore:
            return await aw

    tasks = [asyncio.ensure_future(_guarded(aw)) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
