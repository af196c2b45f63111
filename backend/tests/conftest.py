"""
Shared fixtures: stubbed HTTP, a permissive rate limiter, an in-memory store.
"""

import asyncio
from typing import Callable

import httpx
import pytest

from aidigest.config import Settings
from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import FetcherOptions
from aidigest.services.ingestion.rate_limiter import RateLimit, RateLimiter
from aidigest.services.ingestion.stores import SQLAlchemyArticleStore

MEMORY_DB = "sqlite+aiosqlite:///:memory:"


def fast_options(handler: Callable[[httpx.Request], httpx.Response]) -> FetcherOptions:
    """No delays, no backoff, HTTP answered by ``handler``."""
    return FetcherOptions(
        delay_seconds=0,
        retry_base_delay=0,
        transport=httpx.MockTransport(handler),
    )


def unlimited_limiter() -> RateLimiter:
    limiter = RateLimiter()
    for source in SourceType:
        limiter.set_limit(source.value, RateLimit(requests_per_minute=10_000))
    return limiter


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def limiter() -> RateLimiter:
    return unlimited_limiter()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        supabase_url=None,
        supabase_anon_key=None,
        supabase_service_role_key=None,
        database_url=MEMORY_DB,
    )


async def memory_store() -> SQLAlchemyArticleStore:
    return await SQLAlchemyArticleStore.connect(MEMORY_DB)
