"""
Retry with exponential backoff for outbound calls.

The policy is independent of any fetcher: pass it the operation, the
request context and (optionally) a rate limiter that is consulted before
every attempt.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from aidigest.services.ingestion.errors import CrawlerError, MalformedResponseError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """Network errors, 5xx and 429 are transient; other 4xx and bad payloads are not."""
    if isinstance(error, MalformedResponseError):
        return False
    if isinstance(error, CrawlerError):
        return error.retryable
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    return False


@dataclass
class RetryPolicy:
    """How many attempts, how long to back off, and what counts as transient."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    should_retry: Callable[[BaseException], bool] = is_retryable_error
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def backoff(self, attempt: int) -> float:
        """Delay after a failed ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


def _status_detail(error: httpx.HTTPStatusError) -> str:
    response = error.response
    detail = f"HTTP {response.status_code}"
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        detail += " rate limited"
        if retry_after:
            detail += f" (retry after {retry_after}s)"
    try:
        body = response.text[:200].strip()
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        body = ""
    if body:
        detail += f": {body}"
    return detail


def to_crawler_error(error: BaseException, context: dict[str, Any], attempts: int) -> CrawlerError:
    """Wrap a low-level failure with the request context."""
    ctx = {**context, "attempts": attempts}
    if isinstance(error, CrawlerError):
        error.context = {**ctx, **error.context}
        return error
    if isinstance(error, httpx.HTTPStatusError):
        return CrawlerError(
            _status_detail(error),
            context=ctx,
            status_code=error.response.status_code,
            retryable=is_retryable_error(error),
        )
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return CrawlerError(f"Request timed out: {error!r}", context=ctx, retryable=True)
    if isinstance(error, httpx.TransportError):
        return CrawlerError(f"Network error: {error!r}", context=ctx, retryable=True)
    return CrawlerError(f"{type(error).__name__}: {error}", context=ctx)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    context: Optional[dict[str, Any]] = None,
    limiter=None,
    source: Optional[str] = None,
) -> T:
    """
    Run ``operation`` with retries.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Attempts, backoff and retry predicate
        context: Request details attached to the final error
        limiter: RateLimiter consulted before every attempt
        source: Rate limiter key (defaults to ``context["source"]``)

    Returns:
        The operation's result

    Raises:
        CrawlerError: after the last attempt, or immediately for non-retryable errors
        MalformedResponseError: unparseable upstream payloads (never retried)
    """
    policy = policy or RetryPolicy()
    context = context or {}
    limiter_key = source or context.get("source", "default")

    def log_retry(state: RetryCallState):
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"Attempt {state.attempt_number}/{policy.max_retries} failed for "
            f"{limiter_key}: {error!r}; retrying in {state.upcoming_sleep:.1f}s"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(policy.max_retries, 1)),
        wait=wait_exponential(multiplier=policy.base_delay, min=0, max=policy.max_delay),
        retry=retry_if_exception(policy.should_retry),
        before_sleep=log_retry,
        sleep=policy.sleep,
        reraise=True,
    )

    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                if limiter is not None:
                    await limiter.wait_if_needed(limiter_key)
                return await operation()
    except MalformedResponseError:
        raise
    except Exception as e:
        raise to_crawler_error(e, context, attempts) from e

    # AsyncRetrying always returns or raises inside the loop
    raise CrawlerError("Retry loop exited without a result", context=context)
