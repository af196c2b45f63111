"""
Stack Exchange API integration for Stack Overflow questions.

API Documentation: https://api.stackexchange.com/docs
"""

import gzip
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import (
    BaseFetcher,
    FetcherOptions,
    FetchRequest,
    FetchResult,
    MalformedResponseError,
    RawItem,
)
from aidigest.services.ingestion.normalizer import parse_datetime
from aidigest.services.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

STACKEXCHANGE_API_URL = "https://api.stackexchange.com/2.3"

AI_TAGS = [
    "machine-learning",
    "tensorflow",
    "pytorch",
    "artificial-intelligence",
    "deep-learning",
]

GZIP_MAGIC = b"\x1f\x8b"


def initial_tag_index(now: Optional[datetime] = None) -> int:
    """Index into AI_TAGS for the hour of ``now``."""
    now = now or datetime.now(timezone.utc)
    return now.hour % len(AI_TAGS)


def decode_body(response: httpx.Response) -> Any:
    """
    JSON body of a Stack Exchange response.

    The API always gzips; httpx usually decodes it, but a missing
    Content-Encoding header leaves raw gzip bytes behind.
    """
    content = response.content
    if content[:2] == GZIP_MAGIC:
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError) as e:
            raise MalformedResponseError(f"Corrupt gzip body: {e}") from e
    try:
        return json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedResponseError(f"Stack Exchange returned invalid JSON: {e}") from e


class StackOverflowFetcher(BaseFetcher):
    """
    Recent AI questions from Stack Overflow.

    Each fresh fetcher starts on the tag for the current hour and rotates
    across AI_TAGS on later calls; quota is tight without a key.
    """

    source_type = SourceType.STACKOVERFLOW

    def __init__(
        self,
        api_key: Optional[str] = None,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
        tag_index: Optional[int] = None,
    ):
        super().__init__(options, rate_limiter)
        self.api_key = api_key
        self._tag_index = initial_tag_index() if tag_index is None else tag_index

    def next_tag(self) -> str:
        tag = AI_TAGS[self._tag_index % len(AI_TAGS)]
        self._tag_index += 1
        return tag

    async def _fetch(self, request: FetchRequest) -> FetchResult:
        tag = request.query or self.next_tag()
        questions, quota = await self.get_questions(
            tagged=tag,
            page_size=request.max_results,
            from_date=request.since,
            timeout=request.timeout_seconds,
        )
        return FetchResult.ok(self.source_type, questions, tag=tag, quota_remaining=quota)

    def _params(self, **params) -> dict[str, Any]:
        params = {k: v for k, v in params.items() if v is not None}
        params["site"] = "stackoverflow"
        if self.api_key:
            params["key"] = self.api_key
        return params

    async def _call(self, path: str, params: dict[str, Any], timeout: Optional[float] = None) -> dict:
        response = await self._get(
            f"{STACKEXCHANGE_API_URL}{path}",
            params=params,
            headers={"Accept-Encoding": "gzip"},
            timeout=timeout,
            context={"path": path},
        )
        payload = decode_body(response)
        if not isinstance(payload, dict):
            raise MalformedResponseError("Stack Exchange response is not an object")
        if payload.get("error_id"):
            raise MalformedResponseError(
                f"Stack Exchange error {payload.get('error_id')}: {payload.get('error_message')}"
            )
        if payload.get("quota_remaining") is not None and payload["quota_remaining"] < 10:
            logger.warning(f"Stack Exchange quota low: {payload['quota_remaining']} left")
        return payload

    async def get_questions(
        self,
        tagged: str,
        page_size: int = 10,
        sort: str = "activity",
        order: str = "desc",
        from_date=None,
        timeout: Optional[float] = None,
    ) -> tuple[list[RawItem], Optional[int]]:
        params = self._params(
            tagged=tagged,
            sort=sort,
            order=order,
            pagesize=min(page_size, 100),
            filter="withbody",
            fromdate=int(from_date.timestamp()) if from_date else None,
        )
        payload = await self._call("/questions", params, timeout=timeout)
        return self._to_items(payload), payload.get("quota_remaining")

    async def search(
        self,
        query: str,
        tagged: Optional[str] = None,
        page_size: int = 10,
    ) -> list[RawItem]:
        """Full-text question search."""
        params = self._params(
            q=query,
            tagged=tagged,
            sort="relevance",
            order="desc",
            pagesize=min(page_size, 100),
            filter="withbody",
        )
        payload = await self._call("/search/advanced", params)
        return self._to_items(payload)

    async def get_answers(self, question_id: int, page_size: int = 10) -> list[dict[str, Any]]:
        params = self._params(sort="votes", order="desc", pagesize=page_size, filter="withbody")
        payload = await self._call(f"/questions/{question_id}/answers", params)
        return payload.get("items", [])

    async def get_quota(self) -> Optional[int]:
        payload = await self._call("/info", self._params())
        return payload.get("quota_remaining")

    def _to_items(self, payload: dict[str, Any]) -> list[RawItem]:
        questions = payload.get("items")
        if not isinstance(questions, list):
            raise MalformedResponseError("Stack Exchange response has no 'items' list")
        return [
            RawItem(
                source_type=self.source_type,
                url=q.get("link") or f"https://stackoverflow.com/questions/{q.get('question_id')}",
                fields=q,
                published_at=parse_datetime(q.get("creation_date")),
            )
            for q in questions
        ]
