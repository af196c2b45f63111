"""
Rate limiting for outbound requests.

Keeps every source under its upstream ceilings.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


@dataclass(frozen=True)
class RateLimit:
    """Ceilings for one source."""
    requests_per_minute: int
    requests_per_hour: Optional[int] = None
    min_interval: float = 0.0  # seconds between consecutive requests


class RateLimiter:
    """
    Sliding-window rate limiter with per-source tracking.

    Features:
    - Per-minute and per-hour windows per source
    - Minimum spacing between consecutive requests
    - Async-safe with per-source locks
    """

    DEFAULT_LIMITS = {
        "arxiv": RateLimit(20, 1000, min_interval=1.0),
        "github": RateLimit(10, 60),            # unauthenticated
        "github_token": RateLimit(60, 5000),    # with GITHUB_TOKEN
        "rss": RateLimit(60, None, min_interval=1.0),
        "stackoverflow": RateLimit(30, 300),
        "papers_with_code": RateLimit(30, None),
        "social": RateLimit(15, 450),
        "video": RateLimit(60, None),
        "web": RateLimit(30, None),
        "default": RateLimit(60, None),
    }

    def __init__(self, clock=time.monotonic, sleep=asyncio.sleep):
        self._request_times: dict[str, list[float]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._custom_limits: dict[str, RateLimit] = {}
        self._clock = clock
        self._sleep = sleep

    def set_limit(self, source: str, limit: RateLimit):
        """Set custom rate limit for a source."""
        self._custom_limits[source] = limit

    def get_limit(self, source: str) -> RateLimit:
        if source in self._custom_limits:
            return self._custom_limits[source]
        return self.DEFAULT_LIMITS.get(source, self.DEFAULT_LIMITS["default"])

    def _wait_time(self, source: str, now: float) -> float:
        """Seconds until a request for ``source`` would be allowed (0 if now)."""
        limit = self.get_limit(source)
        times = self._request_times[source] = [
            t for t in self._request_times[source] if t > now - HOUR
        ]

        waits = [0.0]
        if times and limit.min_interval > 0:
            waits.append(times[-1] + limit.min_interval - now)

        recent_minute = [t for t in times if t > now - MINUTE]
        if len(recent_minute) >= limit.requests_per_minute:
            waits.append(recent_minute[-limit.requests_per_minute] + MINUTE - now)

        if limit.requests_per_hour is not None and len(times) >= limit.requests_per_hour:
            waits.append(times[-limit.requests_per_hour] + HOUR - now)

        return max(waits)

    async def acquire(self, source: str, timeout: Optional[float] = 30.0) -> bool:
        """
        Acquire permission to make a request.

        Args:
            source: Source name for rate limiting
            timeout: Max seconds to wait (None = wait forever)

        Returns:
            True if acquired, False if timed out
        """
        start = self._clock()

        async with self._locks[source]:
            while True:
                now = self._clock()
                wait_seconds = self._wait_time(source, now)

                if wait_seconds <= 0:
                    self._request_times[source].append(now)
                    return True

                if timeout is not None and (now - start) + wait_seconds > timeout:
                    logger.warning(
                        f"Rate limit timeout for {source}: "
                        f"would need to wait {wait_seconds:.1f}s"
                    )
                    return False

                logger.debug(f"Rate limited for {source}, waiting {wait_seconds:.1f}s")
                await self._sleep(wait_seconds)

    async def wait_if_needed(self, source: str):
        """Wait until we can make a request (no timeout)."""
        await self.acquire(source, timeout=None)

    def get_status(self, source: str) -> dict:
        """Get current rate limit status for a source."""
        limit = self.get_limit(source)
        now = self._clock()
        times = [t for t in self._request_times[source] if t > now - HOUR]
        minute_count = len([t for t in times if t > now - MINUTE])

        return {
            "source": source,
            "requests_per_minute": limit.requests_per_minute,
            "requests_per_hour": limit.requests_per_hour,
            "current_minute": minute_count,
            "current_hour": len(times),
            "available": limit.requests_per_minute - minute_count,
        }

    def get_all_status(self) -> list[dict]:
        """Get status for all tracked sources."""
        sources = set(self._request_times.keys()) | set(self._custom_limits.keys())
        return [self.get_status(s) for s in sorted(sources)]


# Global rate limiter instance
_global_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    global _global_limiter
    if _global_limiter is None:
        _global_limiter = RateLimiter()
    return _global_limiter
