"""
Async helpers.
"""

import asyncio
from collections.abc import Awaitable, Iterable
from typing import TypeVar

T = TypeVar('T')


async def bounded_gather(awaitables: Iterable[Awaitable[T]], limit: int = 10) -> list[T]:
    """
    Await all ``awaitables`` with at most ``limit`` running at once.

    Results keep input order. The first exception propagates after the
    remaining tasks are cancelled.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(aw: Awaitable[T]) -> T:
        async with semaphore:
            return await aw

    tasks = [asyncio.ensure_future(_run(aw)) for aw in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
