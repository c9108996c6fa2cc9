from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from storyweave.modules.llm.runtime.errors import ERROR_UNKNOWN, GenerationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000


def retry_delay_s(attempt: int, base_delay_ms: int) -> float:
    """Exponential backoff without jitter: base, base*2, base*4..."""
    return (base_delay_ms * (2**attempt)) / 1000.0


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    last_error: BaseException | None = None
    attempts = max(1, int(max_retries))

    for attempt in range(attempts):
        try:
            return await fn()
        except GenerationError as exc:
            if not exc.retryable:
                raise
            last_error = exc
        except Exception as exc:  # noqa: BLE001
            last_error = exc

        if attempt < attempts - 1:
            delay_s = retry_delay_s(attempt, base_delay_ms)
            logger.warning(
                "generation attempt %s/%s failed, retrying in %.2fs: %s",
                attempt + 1,
                attempts,
                delay_s,
                last_error,
            )
            if on_retry is not None:
                on_retry(attempt + 1, last_error)
            await asyncio.sleep(delay_s)

    if isinstance(last_error, Exception):
        raise last_error
    raise GenerationError("Unknown error after retries", code=ERROR_UNKNOWN, retryable=False)


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_BASE_DELAY_MS",
    "retry_delay_s",
    "with_retry",
]
