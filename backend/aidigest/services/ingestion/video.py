"""
AI videos from the YouTube Data API v3.

API Documentation: https://developers.google.com/youtube/v3/docs/search/list
"""

import logging
import random
import re
from datetime import datetime
from typing import Any, Optional

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import (
    FetcherOptions,
    FetchRequest,
    MalformedResponseError,
    RawItem,
)
from aidigest.services.ingestion.fallback import FallbackFetcher
from aidigest.services.ingestion.normalizer import parse_datetime
from aidigest.services.ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

YOUTUBE_API_URL = "https://www.googleapis.com/youtube/v3"
EDUCATION_CATEGORY_ID = "27"

MOCK_CHANNELS = [
    "Two Minute Papers", "Yannic Kilcher", "3Blue1Brown", "Lex Fridman",
    "StatQuest", "DeepLearningAI", "sentdex", "AI Explained",
]
MOCK_FORMATS = [
    "{topic} Explained in {minutes} Minutes",
    "Paper Walkthrough: {topic}",
    "Building {topic} from Scratch",
    "The State of {topic} in {year}",
    "{topic}: Lecture {n}",
]
MOCK_TOPICS = [
    "Transformers", "Diffusion Models", "Reinforcement Learning", "Mixture of Experts",
    "Large Language Models", "Graph Neural Networks", "Vision Transformers", "RLHF",
]

_DURATION_RE = re.compile(r"^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")


def parse_duration(value: Optional[str]) -> Optional[int]:
    """ISO-8601 duration (``PT1H2M3S``) to seconds."""
    if not value:
        return None
    match = _DURATION_RE.match(value)
    if not match:
        return None
    days, hours, minutes, seconds = (int(g or 0) for g in match.groups())
    return ((days * 24 + hours) * 60 + minutes) * 60 + seconds


class VideoFetcher(FallbackFetcher):
    """YouTube search plus statistics; mocked without an API key."""

    source_type = SourceType.VIDEO
    default_query = "machine learning tutorial"

    def __init__(
        self,
        api_key: Optional[str] = None,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(options, rate_limiter)
        self.api_key = api_key

    async def try_live(self, request: FetchRequest) -> list[RawItem]:
        if not self.api_key:
            logger.info("YOUTUBE_API_KEY not set, videos will be mocked")
            return []

        params = {
            "part": "snippet",
            "q": request.query or self.default_query,
            "maxResults": min(request.max_results, 50),
            "order": "relevance",
            "type": "video",
            "videoCategoryId": EDUCATION_CATEGORY_ID,
            "key": self.api_key,
        }
        if request.since:
            params["publishedAfter"] = request.since.strftime("%Y-%m-%dT%H:%M:%SZ")

        search = await self._get(f"{YOUTUBE_API_URL}/search", params=params, timeout=request.timeout_seconds)
        video_ids = [
            (item.get("id") or {}).get("videoId")
            for item in search.json().get("items", [])
        ]
        video_ids = [v for v in video_ids if v]
        if not video_ids:
            return []

        details = await self._get(
            f"{YOUTUBE_API_URL}/videos",
            params={
                "part": "snippet,contentDetails,statistics",
                "id": ",".join(video_ids),
                "key": self.api_key,
            },
            timeout=request.timeout_seconds,
        )
        return self.parse_videos(details.json())

    def parse_videos(self, payload: Any) -> list[RawItem]:
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise MalformedResponseError("YouTube videos response has no 'items' list")

        items = []
        for video in payload["items"]:
            snippet = video.get("snippet") or {}
            stats = video.get("statistics") or {}
            video_id = video.get("id")
            thumbnails = snippet.get("thumbnails") or {}
            items.append(RawItem(
                source_type=self.source_type,
                url=f"https://www.youtube.com/watch?v={video_id}",
                published_at=parse_datetime(snippet.get("publishedAt")),
                fields={
                    "video_id": video_id,
                    "platform": "youtube",
                    "title": snippet.get("title", ""),
                    "description": snippet.get("description", ""),
                    "channel": snippet.get("channelTitle"),
                    "published_at": snippet.get("publishedAt"),
                    "tags": snippet.get("tags") or [],
                    "duration_seconds": parse_duration((video.get("contentDetails") or {}).get("duration")),
                    "view_count": stats.get("viewCount", 0),
                    "like_count": stats.get("likeCount", 0),
                    "thumbnail": (thumbnails.get("high") or thumbnails.get("default") or {}).get("url"),
                },
            ))
        return items

    def build_mock_item(self, index: int, rng: random.Random, query: str, now: datetime) -> RawItem:
        topic = rng.choice(MOCK_TOPICS)
        channel = rng.choice(MOCK_CHANNELS)
        title = rng.choice(MOCK_FORMATS).format(
            topic=topic, minutes=rng.randint(5, 20), year=now.year, n=index + 1
        )
        video_id = "".join(rng.choice("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-") for _ in range(11))

        return RawItem(
            source_type=self.source_type,
            url=f"https://www.youtube.com/watch?v={video_id}",
            published_at=self.mock_time(rng, now, max_hours=24 * 7),
            fields={
                "video_id": video_id,
                "platform": "youtube",
                "title": title,
                "description": f"{channel} covers {topic.lower()} with a focus on {query}.",
                "channel": channel,
                "tags": [topic, "AI", "machine learning"],
                "duration_seconds": rng.randint(300, 3600),
                "view_count": rng.randint(1000, 500000),
                "like_count": rng.randint(50, 20000),
            },
        )
