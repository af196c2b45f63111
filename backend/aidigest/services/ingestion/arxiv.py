"""
arXiv API integration.

arXiv provides free access to preprints; we pull the AI-related
computer science categories.

API Documentation: https://info.arxiv.org/help/api/basics.html
"""

import logging
import math
import re
from typing import Optional
from xml.etree import ElementTree

from aidigest.models.domain import SourceType, StructuredTag
from aidigest.services.ingestion.base import (
    BaseFetcher,
    FetchRequest,
    FetchResult,
    IngestionError,
    MalformedResponseError,
    RawItem,
)
from aidigest.services.ingestion.normalizer import parse_datetime

logger = logging.getLogger(__name__)

ARXIV_API_URL = "http://export.arxiv.org/api/query"

# arXiv category to display label
ARXIV_CATEGORIES = {
    "cs.AI": "人工智能",
    "cs.LG": "机器学习",
    "cs.CL": "自然语言处理",
    "cs.CV": "计算机视觉",
    "cs.NE": "神经网络",
}

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"
ARXIV_NS = "{http://arxiv.org/schemas/atom}"


class ArxivFetcher(BaseFetcher):
    """
    arXiv API fetcher.

    With a query, runs that single search. Without one, walks the AI
    categories one after another, ``ceil(max_results / 5)`` papers each.
    """

    source_type = SourceType.ARXIV

    async def _fetch(self, request: FetchRequest) -> FetchResult:
        if request.query:
            items = await self.search(request.query, request.max_results, timeout=request.timeout_seconds)
            return FetchResult.ok(self.source_type, items, query=request.query)

        return await self.fetch_categories(
            list(ARXIV_CATEGORIES),
            request.max_results,
            timeout=request.timeout_seconds,
        )

    async def fetch_categories(
        self,
        categories: list[str],
        max_results: int,
        timeout: Optional[float] = None,
    ) -> FetchResult:
        """Fetch each category sequentially; one failing category does not sink the rest."""
        per_category = max(1, math.ceil(max_results / max(len(categories), 1)))
        items: list[RawItem] = []
        seen: set[str] = set()
        per_category_counts: dict[str, int] = {}
        errors: dict[str, str] = {}

        for i, category in enumerate(categories):
            if i > 0:
                await self._pause()
            try:
                batch = await self.search(
                    f"cat:{category}",
                    per_category,
                    timeout=timeout,
                    category_label=ARXIV_CATEGORIES.get(category),
                )
            except IngestionError as e:
                logger.warning(f"arXiv category {category} failed: {e}")
                errors[category] = str(e)
                continue

            fresh = [item for item in batch if item.url not in seen]
            seen.update(item.url for item in fresh)
            per_category_counts[category] = len(fresh)
            items.extend(fresh)
            logger.debug(f"arXiv {category}: {len(fresh)} papers")

        if not items and errors:
            return FetchResult.failed(
                self.source_type,
                "; ".join(f"{cat}: {err}" for cat, err in errors.items()),
                categories=per_category_counts,
            )

        return FetchResult.ok(
            self.source_type,
            items,
            categories=per_category_counts,
            category_errors=errors,
        )

    async def search(
        self,
        query: str,
        max_results: int = 10,
        start: int = 0,
        timeout: Optional[float] = None,
        category_label: Optional[str] = None,
    ) -> list[RawItem]:
        """Run one arXiv query, newest submissions first."""
        params = {
            "search_query": query,
            "start": start,
            "max_results": max_results,
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }
        response = await self._get(
            ARXIV_API_URL,
            params=params,
            timeout=timeout,
            context={"query": query},
        )
        items = self.parse_feed(response.text, category_label=category_label)
        return items[:max_results]

    async def search_by_keyword(self, keyword: str, max_results: int = 10) -> list[RawItem]:
        return await self.search(f"all:{keyword}", max_results)

    async def search_by_author(self, author: str, max_results: int = 10) -> list[RawItem]:
        return await self.search(f'au:"{author}"', max_results)

    def parse_feed(self, xml_content: str, category_label: Optional[str] = None) -> list[RawItem]:
        """Parse arXiv Atom feed into RawItems."""
        try:
            root = ElementTree.fromstring(xml_content)
        except ElementTree.ParseError as e:
            raise MalformedResponseError(f"Failed to parse arXiv XML: {e}") from e

        if root.tag != f"{ATOM_NS}feed":
            raise MalformedResponseError(f"Unexpected arXiv root element: {root.tag}")

        items = []
        for entry in root.findall(f"{ATOM_NS}entry"):
            item = self._parse_entry(entry, category_label)
            if item:
                items.append(item)
            else:
                logger.debug("Skipping arXiv entry without an id")
        return items

    def _parse_entry(
        self,
        entry: ElementTree.Element,
        category_label: Optional[str] = None,
    ) -> Optional[RawItem]:
        """Parse a single Atom entry into a RawItem."""
        entry_id = entry.findtext(f"{ATOM_NS}id", "")
        arxiv_id = self.extract_arxiv_id(entry_id)
        if not arxiv_id:
            return None

        title = " ".join(entry.findtext(f"{ATOM_NS}title", "").split())
        summary = " ".join(entry.findtext(f"{ATOM_NS}summary", "").split())

        authors = []
        for author in entry.findall(f"{ATOM_NS}author"):
            name = author.findtext(f"{ATOM_NS}name")
            if name:
                authors.append(name.strip())

        categories = []
        for category in entry.findall(f"{ATOM_NS}category"):
            term = category.get("term")
            if term:
                categories.append(StructuredTag(term=term, scheme=category.get("scheme")))

        primary = entry.find(f"{ARXIV_NS}primary_category")
        primary_category = primary.get("term") if primary is not None else None
        if primary_category is None and categories:
            primary_category = categories[0].term

        pdf_url = None
        for link in entry.findall(f"{ATOM_NS}link"):
            if link.get("title") == "pdf":
                pdf_url = link.get("href")
                break

        published = entry.findtext(f"{ATOM_NS}published", "")
        abs_url = f"https://arxiv.org/abs/{arxiv_id}"

        return RawItem(
            source_type=self.source_type,
            url=abs_url,
            published_at=parse_datetime(published),
            fields={
                "arxiv_id": arxiv_id,
                "title": title,
                "summary": summary,
                "authors": authors,
                "published": published,
                "updated": entry.findtext(f"{ATOM_NS}updated"),
                "categories": categories,
                "primary_category": primary_category,
                "category_label": category_label or ARXIV_CATEGORIES.get(primary_category or ""),
                "pdf_url": pdf_url or f"https://arxiv.org/pdf/{arxiv_id}",
                "doi": entry.findtext(f"{ARXIV_NS}doi"),
                "journal_ref": entry.findtext(f"{ARXIV_NS}journal_ref"),
                "comment": entry.findtext(f"{ARXIV_NS}comment"),
            },
        )

    @staticmethod
    def extract_arxiv_id(entry_id: str) -> Optional[str]:
        """Extract arXiv ID (without version) from the entry ID URL."""
        # Entry ID format: http://arxiv.org/abs/2401.12345v1
        match = re.search(r"arxiv\.org/abs/(.+?)(?:v\d+)?$", entry_id)
        if match:
            return match.group(1)

        match = re.search(r"(\d{4}\.\d{4,5})", entry_id)
        if match:
            return match.group(1)

        return None
