"""
Article scraping from AI blogs and tech news sites.

Each site is described by CSS selectors; layouts change often, so
empty or failing scrapes fall back to mock articles.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import (
    FetcherOptions,
    FetchRequest,
    IngestionError,
    RawItem,
)
from aidigest.services.ingestion.fallback import FallbackFetcher, slugify
from aidigest.services.ingestion.normalizer import parse_datetime
from aidigest.services.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MAX_ARTICLES_PER_SITE = 10


@dataclass(frozen=True)
class SiteConfig:
    """Where and how to scrape one site."""
    name: str
    url: str
    category: str
    item_selector: str
    title_selector: str = "h2, h3"
    link_selector: str = "a[href]"
    summary_selector: Optional[str] = "p"
    date_selector: Optional[str] = "time"


DEFAULT_SITES = [
    SiteConfig("OpenAI Blog", "https://openai.com/blog", "技术博客", ".post-preview"),
    SiteConfig("Google AI Blog", "https://blog.research.google/", "技术博客", ".post"),
    SiteConfig("DeepMind", "https://deepmind.google/discover/blog/", "技术博客", ".article-card"),
    SiteConfig("VentureBeat AI", "https://venturebeat.com/category/ai/", "行业资讯", ".ArticleListing__item"),
    SiteConfig("TechCrunch AI", "https://techcrunch.com/category/artificial-intelligence/", "行业资讯", ".post-block"),
    SiteConfig("MIT Technology Review", "https://www.technologyreview.com/topic/artificial-intelligence/", "学术资讯", ".contentCard"),
]

MOCK_HEADLINES = [
    "How {company} is rethinking {topic}",
    "{topic}: what changed this week",
    "Inside the race to scale {topic}",
    "Researchers at {company} publish new {topic} benchmark",
    "Why {topic} matters for enterprise AI",
]
MOCK_COMPANIES = ["OpenAI", "Google DeepMind", "Meta AI", "Anthropic", "Microsoft Research", "Mistral"]
MOCK_TOPICS = ["AI agents", "foundation models", "AI regulation", "on-device inference", "synthetic data", "AI chips"]


class WebFetcher(FallbackFetcher):
    """Selector-driven scraping across configured sites."""

    source_type = SourceType.WEB
    default_query = "ai news"

    def __init__(
        self,
        sites: Optional[list[SiteConfig]] = None,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(options, rate_limiter)
        self.sites = list(sites) if sites else list(DEFAULT_SITES)

    async def try_live(self, request: FetchRequest) -> list[RawItem]:
        items: list[RawItem] = []
        last_error: Optional[IngestionError] = None

        for i, site in enumerate(self.sites):
            if len(items) >= request.max_results:
                break
            if i > 0:
                await self._pause()
            try:
                response = await self._get(site.url, timeout=request.timeout_seconds, context={"site": site.name})
            except IngestionError as e:
                logger.warning(f"Scraping {site.name} failed: {e}")
                last_error = e
                continue
            site_items = self.parse_site(response.text, site)
            logger.debug(f"Scraped {len(site_items)} articles from {site.name}")
            items.extend(site_items)

        if not items and last_error is not None:
            raise last_error
        return items[: request.max_results]

    def parse_site(self, html: str, site: SiteConfig) -> list[RawItem]:
        soup = BeautifulSoup(html, "html.parser")
        items = []
        for node in soup.select(site.item_selector)[:MAX_ARTICLES_PER_SITE]:
            title_node = node.select_one(site.title_selector)
            link_node = node.select_one(site.link_selector)
            if title_node is None or link_node is None:
                continue
            title = title_node.get_text(" ", strip=True)
            if not title:
                continue

            summary_node = node.select_one(site.summary_selector) if site.summary_selector else None
            date_node = node.select_one(site.date_selector) if site.date_selector else None
            published = None
            if date_node is not None:
                published = date_node.get("datetime") or date_node.get_text(strip=True)

            items.append(RawItem(
                source_type=self.source_type,
                # Relative links resolve against the listing page
                url=urljoin(site.url, link_node["href"]),
                published_at=parse_datetime(published),
                fields={
                    "title": title,
                    "summary": summary_node.get_text(" ", strip=True) if summary_node else "",
                    "published": published,
                    "site": site.name,
                    "site_category": site.category,
                },
            ))
        return items

    def build_mock_item(self, index: int, rng: random.Random, query: str, now: datetime) -> RawItem:
        site = self.sites[index % len(self.sites)]
        company = rng.choice(MOCK_COMPANIES)
        topic = rng.choice(MOCK_TOPICS)
        title = rng.choice(MOCK_HEADLINES).format(company=company, topic=topic)
        title = title[0].upper() + title[1:]

        return RawItem(
            source_type=self.source_type,
            url=f"https://example.com/{slugify(site.name)}/article-{index + 1}",
            published_at=self.mock_time(rng, now, max_hours=48),
            fields={
                "title": title,
                "summary": f"{site.name} reports on {topic} and what it means for {query}.",
                "site": site.name,
                "site_category": site.category,
                "tags": [topic],
            },
        )
