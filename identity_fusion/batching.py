from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def gather_batches(
    batches: Iterable[List[T]],
    fn: Callable[[T], Awaitable[R]],
) -> List[R]:
    """Run ``fn`` concurrently within each batch, one batch at a time.

    ``batches`` is consumed lazily so a draining generator releases items as
    they are submitted.
    """
    results: List[R] = []
    for index, batch in enumerate(batches, start=1):
        results.extend(await asyncio.gather(*(fn(item) for item in batch)))
        logger.debug("Batch %d: %d item(s) processed", index, len(batch))
    return results


@asynccontextmanager
async def keepalive(
    interval: float,
    send: Optional[Callable[[str], object]] = None,
    *,
    message: str = "still processing",
) -> AsyncIterator[None]:
    """Call ``send(message)`` every ``interval`` seconds while the block runs."""
    if send is None or interval <= 0:
        yield
        return

    async def _beat() -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = send(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning("Keep-alive failed: %s", exc)

    task = asyncio.create_task(_beat())
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
