"""
Mock fallback for sources whose live data is unreliable.

Scraped and key-gated sources (Papers with Code, social, video, web) try the
live path first; when it raises or yields nothing they produce exactly the
requested number of synthetic items, flagged ``is_mock_data``.
"""

import hashlib
import logging
import random
from abc import abstractmethod
from datetime import datetime, timedelta, timezone

from aidigest.services.ingestion.base import BaseFetcher, FetchRequest, FetchResult, RawItem

logger = logging.getLogger(__name__)


def seeded_random(*parts: object) -> random.Random:
    """Random generator whose sequence depends only on ``parts``."""
    key = ":".join(str(p) for p in parts)
    seed = int(hashlib.sha256(key.encode("utf-8")).hexdigest()[:16], 16)
    return random.Random(seed)


def slugify(text: str) -> str:
    return "-".join("".join(c if c.isalnum() else " " for c in text.lower()).split()) or "all"


class FallbackFetcher(BaseFetcher):
    """
    Fetcher composed of a live attempt and a deterministic mock generator.

    Subclasses implement ``try_live`` and ``build_mock_item``.
    """

    default_query = "machine learning"

    @abstractmethod
    async def try_live(self, request: FetchRequest) -> list[RawItem]:
        """Fetch real items; may raise."""

    @abstractmethod
    def build_mock_item(self, index: int, rng: random.Random, query: str, now: datetime) -> RawItem:
        """One synthetic item; must only depend on its arguments."""

    def fallback(self, count: int, query: str = None) -> list[RawItem]:
        """Exactly ``count`` synthetic items for ``query``."""
        query = query or self.default_query
        rng = seeded_random(self.name, query)
        now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        items = []
        for i in range(count):
            item = self.build_mock_item(i, rng, query, now)
            item.is_mock_data = True
            items.append(item)
        return items

    async def _fetch(self, request: FetchRequest) -> FetchResult:
        query = request.query or self.default_query
        live_error = None
        try:
            items = await self.try_live(request)
        except Exception as e:
            live_error = str(e)
            logger.warning(f"{self.name} live fetch failed, using mock data: {e}")
            items = []

        if items:
            return FetchResult.ok(self.source_type, items[: request.max_results], live=True)

        if live_error is None:
            logger.info(f"{self.name} live fetch returned nothing, using mock data")

        mock_items = self.fallback(request.max_results, query)
        return FetchResult.ok(
            self.source_type,
            mock_items,
            live=False,
            live_error=live_error,
        )

    @staticmethod
    def mock_time(rng: random.Random, now: datetime, max_hours: int = 72) -> datetime:
        return now - timedelta(hours=rng.randint(1, max_hours), minutes=rng.randint(0, 59))
