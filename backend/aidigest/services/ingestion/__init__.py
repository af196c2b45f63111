"""
Content ingestion services for AI Digest.

This package provides:
- Fetchers for arXiv, GitHub, RSS, Stack Overflow, Papers with Code,
  social media, video and web sources
- Rate limiting, retries and mock fallback
- Normalization, content identity and idempotent persistence
- The collection runner that ties them together
"""

from aidigest.services.ingestion.base import (
    BaseFetcher,
    CrawlerError,
    FetcherOptions,
    FetchRequest,
    FetchResult,
    RawItem,
)
from aidigest.services.ingestion.rate_limiter import RateLimiter
from aidigest.services.ingestion.normalizer import normalize
from aidigest.services.ingestion.upserter import Upserter, UpsertResult
from aidigest.services.ingestion.orchestrator import (
    CollectionRunner,
    CollectionStats,
    RunOptions,
    SourceStats,
)

__all__ = [
    "BaseFetcher",
    "CrawlerError",
    "FetcherOptions",
    "FetchRequest",
    "FetchResult",
    "RawItem",
    "RateLimiter",
    "normalize",
    "Upserter",
    "UpsertResult",
    "CollectionRunner",
    "CollectionStats",
    "RunOptions",
    "SourceStats",
]
