"""
RSS/Atom feed aggregation for AI blogs and news outlets.

Feeds are read one after another; each feed's health is reported back so
the collector can deactivate broken feeds in the registry.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional
from xml.etree import ElementTree

from aidigest.models.domain import SourceType, StructuredTag
from aidigest.services.ingestion.base import (
    BaseFetcher,
    FetcherOptions,
    FetchRequest,
    FetchResult,
    IngestionError,
    MalformedResponseError,
    RawItem,
)
from aidigest.services.ingestion.normalizer import parse_datetime
from aidigest.services.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"
CONTENT_NS = "{http://purl.org/rss/1.0/modules/content/}"
DC_NS = "{http://purl.org/dc/elements/1.1/}"

FEED_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class FeedSource:
    """One feed in the registry."""
    name: str
    url: str
    category: str = "技术博客"


DEFAULT_FEEDS = [
    FeedSource("Google AI Blog", "http://googleaiblog.blogspot.com/atom.xml", "AI研究"),
    FeedSource("OpenAI Blog", "https://openai.com/blog/rss.xml", "AI研究"),
    FeedSource("Microsoft Research", "https://www.microsoft.com/en-us/research/feed/", "AI研究"),
    FeedSource("KDnuggets", "https://www.kdnuggets.com/feed", "数据科学"),
    FeedSource("Analytics Vidhya", "https://www.analyticsvidhya.com/blog/feed/", "数据科学"),
    FeedSource("AI News", "https://artificialintelligence-news.com/feed/", "行业资讯"),
    FeedSource("Synced", "https://syncedreview.com/feed/", "行业资讯"),
    FeedSource("VentureBeat AI", "https://venturebeat.com/ai/feed/", "行业资讯"),
]


class RSSFetcher(BaseFetcher):
    """
    Multi-feed RSS 2.0 / Atom fetcher.

    ``FetchResult.metadata["feed_status"]`` maps feed URL to whether the
    feed could be read this run.
    """

    source_type = SourceType.RSS

    def __init__(
        self,
        feeds: Optional[list[FeedSource]] = None,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(options, rate_limiter)
        self.feeds = list(feeds) if feeds else list(DEFAULT_FEEDS)

    def set_feeds(self, feeds: list[FeedSource]):
        """Replace the feed list; an empty registry keeps the defaults."""
        if feeds:
            self.feeds = list(feeds)

    async def _fetch(self, request: FetchRequest) -> FetchResult:
        per_feed = max(1, math.ceil(request.max_results / max(len(self.feeds), 1)))
        items: list[RawItem] = []
        feed_status: dict[str, bool] = {}
        errors: dict[str, str] = {}

        for i, feed in enumerate(self.feeds):
            if i > 0:
                await self._pause()
            try:
                feed_items = await self.fetch_feed(feed)
            except IngestionError as e:
                logger.warning(f"RSS feed {feed.name} failed: {e}")
                feed_status[feed.url] = False
                errors[feed.name] = str(e)
                continue

            feed_status[feed.url] = True
            items.extend(feed_items[:per_feed])
            logger.debug(f"Fetched {len(feed_items)} items from {feed.name}")

        if not items and errors:
            return FetchResult.failed(
                self.source_type,
                f"All {len(errors)} feeds failed",
                feed_status=feed_status,
                feed_errors=errors,
            )

        return FetchResult.ok(
            self.source_type,
            items,
            feed_status=feed_status,
            feed_errors=errors,
        )

    async def fetch_feed(self, feed: FeedSource) -> list[RawItem]:
        """Fetch and parse a single feed (retried on transient errors)."""
        response = await self._get(
            feed.url,
            timeout=FEED_TIMEOUT_SECONDS,
            context={"feed": feed.name},
        )
        return self.parse_feed(response.text, feed)

    def parse_feed(self, xml_content: str, feed: FeedSource) -> list[RawItem]:
        """Detect RSS vs Atom and parse."""
        try:
            root = ElementTree.fromstring(xml_content.strip())
        except ElementTree.ParseError as e:
            raise MalformedResponseError(f"Failed to parse feed {feed.name}: {e}") from e

        if root.tag == f"{ATOM_NS}feed":
            entries = root.findall(f"{ATOM_NS}entry")
            parse = self._parse_atom_entry
        elif root.tag in ("rss", "rdf", "{http://www.w3.org/1999/02/22-rdf-syntax-ns#}RDF"):
            entries = root.findall(".//item") or root.findall(".//{http://purl.org/rss/1.0/}item")
            parse = self._parse_rss_item
        else:
            raise MalformedResponseError(f"{feed.name} is not an RSS or Atom feed (root {root.tag})")

        items = []
        for entry in entries:
            item = parse(entry, feed)
            if item:
                items.append(item)
        return items

    def _parse_rss_item(self, item: ElementTree.Element, feed: FeedSource) -> Optional[RawItem]:
        """Parse a single RSS item."""
        title = (item.findtext("title") or "").strip()
        link = (item.findtext("link") or "").strip()
        guid = (item.findtext("guid") or "").strip()
        url = link or (guid if guid.startswith("http") else "")
        if not title or not url:
            return None

        description = item.findtext(f"{CONTENT_NS}encoded") or item.findtext("description") or ""
        author = item.findtext("author") or item.findtext(f"{DC_NS}creator")
        pub_date = item.findtext("pubDate") or item.findtext(f"{DC_NS}date")

        return RawItem(
            source_type=self.source_type,
            url=url,
            published_at=parse_datetime(pub_date),
            fields={
                "title": title,
                "link": url,
                "guid": guid or None,
                "description": description,
                "author": author.strip() if author else None,
                "pub_date": pub_date,
                "categories": [c.text.strip() for c in item.findall("category") if c.text],
                "feed_name": feed.name,
                "feed_url": feed.url,
                "feed_category": feed.category,
            },
        )

    def _parse_atom_entry(self, entry: ElementTree.Element, feed: FeedSource) -> Optional[RawItem]:
        """Parse a single Atom entry."""
        title = (entry.findtext(f"{ATOM_NS}title") or "").strip()
        if not title:
            return None

        link = None
        for link_elem in entry.findall(f"{ATOM_NS}link"):
            if link_elem.get("rel", "alternate") == "alternate":
                link = link_elem.get("href")
                break
        entry_id = entry.findtext(f"{ATOM_NS}id")
        url = link or (entry_id if entry_id and entry_id.startswith("http") else None)
        if not url:
            return None

        summary = entry.findtext(f"{ATOM_NS}content") or entry.findtext(f"{ATOM_NS}summary") or ""
        authors = [
            name for name in (a.findtext(f"{ATOM_NS}name") for a in entry.findall(f"{ATOM_NS}author"))
            if name
        ]
        published = entry.findtext(f"{ATOM_NS}published") or entry.findtext(f"{ATOM_NS}updated")

        categories = []
        for cat in entry.findall(f"{ATOM_NS}category"):
            term = cat.get("term") or cat.get("label")
            if term:
                categories.append(StructuredTag(term=term, scheme=cat.get("scheme")))

        return RawItem(
            source_type=self.source_type,
            url=url,
            published_at=parse_datetime(published),
            fields={
                "title": title,
                "link": url,
                "guid": entry_id,
                "description": summary,
                "author": ", ".join(authors) or None,
                "pub_date": published,
                "categories": categories,
                "feed_name": feed.name,
                "feed_url": feed.url,
                "feed_category": feed.category,
            },
        )
