from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import openai

from turnkernel.logging import get_logger
from turnkernel.service.errors import UpstreamProviderError

logger = get_logger(__name__)

T = TypeVar("T")

RETRY_BACKOFF_SECONDS = 0.25


def is_retryable(exc: BaseException) -> bool:
    """Server faults and transport failures are worth one more try; 4xx are not."""
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code >= 500
    return isinstance(exc, (openai.APIConnectionError, ConnectionError, asyncio.TimeoutError))


async def call_with_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    *,
    retries: int = 1,
    backoff_seconds: float = RETRY_BACKOFF_SECONDS,
) -> T:
    """Run an idempotent upstream read, retrying retryable failures.

    Non-retryable provider errors and exhausted retries surface as
    ``UpstreamProviderError``.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except (openai.OpenAIError, ConnectionError, asyncio.TimeoutError) as exc:
            if attempt < retries and is_retryable(exc):
                attempt += 1
                logger.warning(
                    "upstream_retry",
                    operation=operation,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                await asyncio.sleep(backoff_seconds * attempt)
                continue
            status = getattr(exc, "status_code", None)
            logger.error(
                "upstream_failed",
                operation=operation,
                attempts=attempt + 1,
                status_code=status,
                error_type=type(exc).__name__,
            )
            raise UpstreamProviderError(
                f"{operation} failed",
                detail={"attempts": attempt + 1, "upstream_status": status},
            ) from exc
