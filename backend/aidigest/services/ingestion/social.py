"""
Social media posts about AI (X/Twitter API v2).

Without a bearer token, or when the API refuses us, mock posts from
well-known AI accounts are generated instead.
"""

import logging
import random
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

TWITTER_API_URL = "https://api.twitter.com/2"

AI_ACCOUNTS = [
    ("OpenAI", "OpenAI"),
    ("DeepMind", "Google DeepMind"),
    ("AndrewYNg", "Andrew Ng"),
    ("ylecun", "Yann LeCun"),
    ("karpathy", "Andrej Karpathy"),
    ("goodfellow_ian", "Ian Goodfellow"),
    ("hardmaru", "hardmaru"),
    ("huggingface", "Hugging Face"),
    ("AnthropicAI", "Anthropic"),
    ("GoogleAI", "Google AI"),
]

MOCK_SUBJECTS = [
    "scaling laws", "instruction tuning", "multimodal models", "open-source LLMs",
    "AI safety research", "diffusion models", "reinforcement learning from feedback",
    "efficient inference", "retrieval-augmented generation", "agent benchmarks",
]
MOCK_TEMPLATES = [
    "New results on {subject}: the gains hold up across every eval we tried.",
    "Thread: what we learned shipping {subject} to production this quarter.",
    "Excited to share our latest paper on {subject}. Feedback welcome!",
    "Hot take: {subject} is still underrated by most practitioners.",
    "We just open-sourced tooling for {subject}. Link in replies.",
]


class SocialFetcher(FallbackFetcher):
    """Recent AI posts; ``is_mock_data`` marks generated ones."""

    source_type = SourceType.SOCIAL
    default_query = "artificial intelligence"

    def __init__(
        self,
        bearer_token: Optional[str] = None,
        options: Optional[FetcherOptions] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(options, rate_limiter)
        self.bearer_token = bearer_token

    async def try_live(self, request: FetchRequest) -> list[RawItem]:
        if not self.bearer_token:
            logger.info("TWITTER_BEARER_TOKEN not set, social posts will be mocked")
            return []

        query = request.query or self.default_query
        params = {
            "query": f"({query}) -is:retweet lang:en",
            # API accepts 10..100
            "max_results": max(10, min(request.max_results, 100)),
            "tweet.fields": "created_at,public_metrics,entities,author_id",
            "expansions": "author_id",
            "user.fields": "username,name",
        }
        if request.since:
            params["start_time"] = request.since.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._get(
            f"{TWITTER_API_URL}/tweets/search/recent",
            params=params,
            headers={"Authorization": f"Bearer {self.bearer_token}"},
            timeout=request.timeout_seconds,
        )
        return self.parse_search(response.json())

    def parse_search(self, payload: Any) -> list[RawItem]:
        if not isinstance(payload, dict):
            raise MalformedResponseError("Twitter search response is not an object")

        users = {
            u.get("id"): u
            for u in (payload.get("includes") or {}).get("users", [])
        }
        items = []
        for tweet in payload.get("data") or []:
            user = users.get(tweet.get("author_id"), {})
            username = user.get("username") or "i"
            metrics = tweet.get("public_metrics") or {}
            hashtags = [h.get("tag") for h in (tweet.get("entities") or {}).get("hashtags", [])]
            items.append(RawItem(
                source_type=self.source_type,
                url=f"https://twitter.com/{username}/status/{tweet.get('id')}",
                published_at=parse_datetime(tweet.get("created_at")),
                fields={
                    "id": tweet.get("id"),
                    "platform": "twitter",
                    "text": tweet.get("text", ""),
                    "author": username,
                    "author_name": user.get("name"),
                    "created_at": tweet.get("created_at"),
                    "hashtags": [h for h in hashtags if h],
                    "likes": metrics.get("like_count", 0),
                    "retweets": metrics.get("retweet_count", 0),
                    "replies": metrics.get("reply_count", 0),
                },
            ))
        return items

    def build_mock_item(self, index: int, rng: random.Random, query: str, now: datetime) -> RawItem:
        username, display_name = rng.choice(AI_ACCOUNTS)
        subject = rng.choice(MOCK_SUBJECTS)
        text = rng.choice(MOCK_TEMPLATES).format(subject=subject)
        post_id = str(10**17 + rng.randint(0, 10**17))
        hashtags = ["AI", "MachineLearning", subject.title().replace(" ", "").replace("-", "")]

        return RawItem(
            source_type=self.source_type,
            url=f"https://twitter.com/{username}/status/{post_id}",
            published_at=self.mock_time(rng, now, max_hours=48),
            fields={
                "id": post_id,
                "platform": "twitter",
                "text": f"{text} #{' #'.join(hashtags)}",
                "author": username,
                "author_name": display_name,
                "hashtags": hashtags,
                "likes": rng.randint(50, 20000),
                "retweets": rng.randint(5, 3000),
                "replies": rng.randint(0, 800),
            },
        )
