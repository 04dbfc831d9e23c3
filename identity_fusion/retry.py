from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetrySettings
from .errors import ApiError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, ApiError):
        return exc.transient
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError))


def retry_delay(
    attempt: int,
    settings: RetrySettings,
    exc: Optional[BaseException] = None,
    random_fn: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    if isinstance(exc, ApiError) and exc.status == 429 and exc.retry_after is not None:
        return max(0.0, min(float(exc.retry_after), settings.max_delay_seconds))
    delay = min(settings.base_delay_seconds * (2 ** (attempt - 1)), settings.max_delay_seconds)
    spread = delay * settings.jitter
    return max(0.0, delay + spread * (2 * random_fn() - 1))


async def run_with_retries(
    fn: Callable[[], Awaitable[T]],
    settings: RetrySettings,
    *,
    label: str,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    random_fn: Callable[[], float] = random.random,
) -> T:
    """Await ``fn`` until it succeeds, retrying transient failures with backoff.

    Non-transient errors (4xx other than 429 included) propagate on the first
    failure. When the retry budget runs out a RetryExhaustedError is raised.
    """
    attempts = max(1, 1 + settings.max_retries)
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            last_exc = exc
            if attempt >= attempts:
                break
            delay = retry_delay(attempt, settings, exc, random_fn)
            logger.debug("%s failed (attempt %d/%d): %s; retrying in %.2fs", label, attempt, attempts, exc, delay)
            await sleep(delay)
    assert last_exc is not None
    logger.warning("%s failed after %d attempt(s): %s", label, attempts, last_exc)
    raise RetryExhaustedError(
        f"{label} failed after {attempts} attempt(s): {last_exc}",
        attempts=attempts,
        last_error=last_exc,
    ) from last_exc
