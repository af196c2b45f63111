"""
Papers with Code scraper.

The site has no stable public API, so search result cards are scraped.
When the page cannot be read, deterministic mock papers stand in.
"""

import logging
import random
import re
from datetime import datetime
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import FetchRequest, MalformedResponseError, RawItem
from aidigest.services.ingestion.fallback import FallbackFetcher, slugify
from aidigest.services.ingestion.normalizer import parse_datetime

logger = logging.getLogger(__name__)

PWC_BASE_URL = "https://paperswithcode.com"

MOCK_TOPICS = [
    "Transformer", "BERT", "GPT", "ResNet", "Vision Transformer",
    "LSTM", "GAN", "Diffusion", "CLIP", "T5",
]
MOCK_VENUES = [
    "NeurIPS", "ICLR", "ICML", "AAAI", "IJCAI",
    "ACL", "EMNLP", "CVPR", "ICCV", "ECCV",
]
MOCK_AUTHORS = [
    "Wei Zhang", "Maria Garcia", "Yuki Tanaka", "Ahmed Hassan", "Emma Johnson",
    "Li Wang", "Carlos Silva", "Priya Patel", "Lucas Müller", "Sofia Rossi",
]
MOCK_TASKS = [
    "Image Classification", "Language Modelling", "Question Answering",
    "Object Detection", "Machine Translation", "Text Generation",
    "Semantic Segmentation", "Representation Learning",
]


def is_html(text: str) -> bool:
    head = text[:1000].lower()
    return "<html" in head or "<!doctype" in head


class PapersWithCodeFetcher(FallbackFetcher):
    """Latest / searched papers with linked code."""

    source_type = SourceType.PAPERS_WITH_CODE
    default_query = "machine learning"

    async def try_live(self, request: FetchRequest) -> list[RawItem]:
        if request.query:
            url = f"{PWC_BASE_URL}/search"
            params = {"q": request.query, "page": 1}
        else:
            url = f"{PWC_BASE_URL}/latest"
            params = None

        response = await self._get(url, params=params, timeout=request.timeout_seconds)
        return self.parse_page(response.text)[: request.max_results]

    def parse_page(self, html: str) -> list[RawItem]:
        """Parse ``.paper-card`` elements from a listing page."""
        if not is_html(html):
            raise MalformedResponseError("Papers with Code returned a non-HTML body")

        soup = BeautifulSoup(html, "html.parser")
        items = []
        for card in soup.select(".paper-card"):
            item = self._parse_card(card)
            if item:
                items.append(item)
        return items

    def _parse_card(self, card) -> Optional[RawItem]:
        link = card.select_one(".paper-title a") or card.select_one("h1 a")
        if link is None or not link.get("href"):
            return None

        title = link.get_text(" ", strip=True)
        url = urljoin(PWC_BASE_URL, link["href"])
        abstract_node = card.select_one(".item-strip-abstract")
        date_node = card.select_one(".item-date") or card.select_one(".author-name-text")
        tasks = [b.get_text(strip=True) for b in card.select(".item-strip-tasks .badge")]
        code_links = [a["href"] for a in card.select(".code-table tr a[href]")]

        stars = 0
        stars_node = card.select_one(".entity-stars")
        if stars_node:
            digits = re.sub(r"[^\d]", "", stars_node.get_text())
            stars = int(digits) if digits else 0

        published = date_node.get_text(strip=True) if date_node else None
        return RawItem(
            source_type=self.source_type,
            url=url,
            published_at=self._parse_date(published),
            fields={
                "title": title,
                "abstract": abstract_node.get_text(" ", strip=True) if abstract_node else "",
                "authors": [a.get_text(strip=True) for a in card.select(".author-span")],
                "published": published,
                "tasks": tasks,
                "code_links": code_links,
                "stars": stars,
            },
        )

    @staticmethod
    def _parse_date(text: Optional[str]) -> Optional[datetime]:
        if not text:
            return None
        for fmt in ("%d %b %Y", "%b %d, %Y", "%Y-%m-%d"):
            try:
                return parse_datetime(datetime.strptime(text, fmt))
            except ValueError:
                continue
        return parse_datetime(text)

    def build_mock_item(self, index: int, rng: random.Random, query: str, now: datetime) -> RawItem:
        topic = rng.choice(MOCK_TOPICS)
        venue = rng.choice(MOCK_VENUES)
        authors = rng.sample(MOCK_AUTHORS, k=rng.randint(2, 4))
        tasks = rng.sample(MOCK_TASKS, k=2)
        slug = f"{slugify(topic)}-{slugify(query)}-{index + 1}"
        published = self.mock_time(rng, now, max_hours=24 * 14)

        return RawItem(
            source_type=self.source_type,
            url=f"{PWC_BASE_URL}/paper/{slug}",
            published_at=published,
            fields={
                "title": f"Improving {topic} for {query.title()}: {venue} Study #{index + 1}",
                "abstract": (
                    f"We revisit {topic} in the context of {query} and propose a simple "
                    f"modification that improves {tasks[0].lower()} and {tasks[1].lower()} "
                    f"benchmarks. Code and pretrained models are released."
                ),
                "authors": authors,
                "published": published.isoformat(),
                "tasks": tasks,
                "venue": f"{venue} {published.year}",
                "code_links": [f"https://github.com/example/{slug}"],
                "stars": rng.randint(10, 5000),
            },
        )
