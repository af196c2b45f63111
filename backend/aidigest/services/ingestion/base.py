"""
Base classes and data models for content ingestion.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.errors import (  # noqa: F401
    ConfigurationError,
    CrawlerError,
    IngestionError,
    MalformedResponseError,
    SourceFailure,
    ValidationError,
)
from aidigest.services.ingestion.rate_limiter import RateLimiter, get_rate_limiter
from aidigest.services.ingestion.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)


# =============================================================================
# Data carriers
# =============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RawItem:
    """
    One fetched entry before normalization.

    ``fields`` holds the source payload as the API/feed/page yielded it
    (for GitHub, the repository JSON object).
    """
    source_type: SourceType
    url: str
    fields: dict[str, Any] = field(default_factory=dict)
    published_at: Optional[datetime] = None
    is_mock_data: bool = False
    fetched_at: datetime = field(default_factory=_now)


@dataclass
class FetchRequest:
    """Parameters for a single fetch."""
    max_results: int = 10
    timeout_seconds: float = 10.0
    query: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


@dataclass
class FetchResult:
    """Outcome of a fetch; fetchers report failure here instead of raising."""
    source_type: SourceType
    success: bool
    items: list[RawItem] = field(default_factory=list)
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, source_type: SourceType, items: list[RawItem], **metadata) -> "FetchResult":
        return cls(source_type=source_type, success=True, items=items, metadata=metadata)

    @classmethod
    def failed(cls, source_type: SourceType, error: str, **metadata) -> "FetchResult":
        return cls(source_type=source_type, success=False, error=error, metadata=metadata)

    @property
    def mock_count(self) -> int:
        return sum(1 for item in self.items if item.is_mock_data)

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        text = f"{status} {self.source_type.value}: items={len(self.items)}"
        if self.mock_count:
            text += f" (mock={self.mock_count})"
        if self.error:
            text += f", error={self.error}"
        return text


@dataclass
class FetcherOptions:
    """Transport and pacing knobs shared by every fetcher."""
    delay_seconds: float = 1.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    timeout_seconds: float = 30.0
    transport: Optional[httpx.AsyncBaseTransport] = None


# =============================================================================
# Fetcher base
# =============================================================================

class BaseFetcher(ABC):
    """
    Abstract base class for source fetchers.

    Each fetcher handles:
    - Calling its specific API/feed/page
    - Turning the response into RawItems
    - Rate limiting and retries through the shared helpers

    ``fetch`` never raises; failures become ``FetchResult(success=False)``.
    """

    source_type: SourceType
    user_agent = "AIDigest/1.0 (+content aggregator)"

    def __init__(
        self,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.options = options or FetcherOptions()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.retry_policy = RetryPolicy(
            max_retries=self.options.max_retries,
            base_delay=self.options.retry_base_delay,
        )

    @property
    def name(self) -> str:
        return self.source_type.value

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Fetch items for ``request``, reporting errors in the result."""
        try:
            return await self._fetch(request)
        except IngestionError as e:
            logger.error(f"{self.name} fetch failed: {e}")
            return FetchResult.failed(self.source_type, str(e))
        except httpx.HTTPError as e:
            logger.error(f"{self.name} HTTP error: {e}")
            return FetchResult.failed(self.source_type, f"HTTP error: {e}")
        except Exception as e:
            logger.exception(f"{self.name} unexpected error")
            return FetchResult.failed(self.source_type, f"Unexpected error: {e}")

    @abstractmethod
    async def _fetch(self, request: FetchRequest) -> FetchResult:
        """Source-specific fetch; may raise."""

    def _client(self, timeout: Optional[float] = None, **kwargs) -> httpx.AsyncClient:
        headers = {"User-Agent": self.user_agent}
        headers.update(kwargs.pop("headers", {}))
        return httpx.AsyncClient(
            timeout=timeout or self.options.timeout_seconds,
            follow_redirects=True,
            headers=headers,
            transport=self.options.transport,
            **kwargs,
        )

    async def _get(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """GET with rate limiting before every attempt and retry on transient errors."""

        async def operation() -> httpx.Response:
            async with self._client(timeout=timeout, headers=headers or {}) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response

        ctx = {"source": self.name, "url": url}
        ctx.update(context or {})
        return await execute_with_retry(
            operation,
            policy=self.retry_policy,
            context=ctx,
            limiter=self.rate_limiter,
            source=self.name,
        )

    async def _pause(self):
        """Inter-request delay for sequential batches."""
        if self.options.delay_seconds > 0:
            await asyncio.sleep(self.options.delay_seconds)
