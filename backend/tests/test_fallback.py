"""
Tests for the scraped and key-gated sources and their mock fallback.
"""

import httpx

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import FetchRequest
from aidigest.services.ingestion.normalizer import normalize
from aidigest.services.ingestion.papers_with_code import PapersWithCodeFetcher
from aidigest.services.ingestion.social import SocialFetcher
from aidigest.services.ingestion.video import VideoFetcher, parse_duration
from aidigest.services.ingestion.web import SiteConfig, WebFetcher

from conftest import fast_options, run


SAMPLE_PWC_PAGE = """<!DOCTYPE html>
<html><body>
  <div class="paper-card">
    <h1 class="paper-title"><a href="/paper/sparse-mixture-of-experts">Sparse Mixture of Experts</a></h1>
    <div class="author-span">Ada Lovelace</div>
    <div class="author-span">Alan Turing</div>
    <p class="item-strip-abstract">We route tokens to experts.</p>
    <span class="item-date">15 Jan 2024</span>
    <div class="item-strip-tasks"><span class="badge">Language Modelling</span></div>
    <table class="code-table"><tr><td><a href="https://github.com/example/moe">code</a></td></tr></table>
    <span class="entity-stars">1,234</span>
  </div>
  <div class="paper-card"><p>card without a title link</p></div>
</body></html>
"""

SAMPLE_BLOG_PAGE = """<html><body>
  <article class="post">
    <h2>Agents in Production</h2>
    <a href="/blog/agents-in-production">Read more</a>
    <p>Lessons from a year of agents.</p>
    <time datetime="2024-02-01T10:00:00Z">Feb 1</time>
  </article>
  <article class="post">
    <h2></h2>
    <a href="/blog/untitled">Read more</a>
  </article>
</body></html>
"""


def failing(status: int = 500):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, text="upstream down")

    return handler, calls


class TestPapersWithCode:
    """Scraping and fallback for Papers with Code."""

    def test_upstream_error_yields_mock_items(self, limiter):
        handler, calls = failing(500)
        fetcher = PapersWithCodeFetcher(fast_options(handler), limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=5)))

        assert result.success
        assert len(result.items) == 5
        assert all(item.is_mock_data for item in result.items)
        assert result.metadata["live"] is False
        assert "500" in result.metadata["live_error"]
        # 5xx is retried up to the attempt limit
        assert len(calls) == 3

        articles = [normalize(item) for item in result.items]
        assert all(a.is_mock_data for a in articles)
        assert all(a.source_type == SourceType.PAPERS_WITH_CODE for a in articles)
        assert len({a.content_id for a in articles}) == 5

    def test_parse_page(self, limiter):
        fetcher = PapersWithCodeFetcher(fast_options(lambda r: httpx.Response(200, text=SAMPLE_PWC_PAGE)), limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=5, query="mixture of experts")))

        assert result.metadata["live"] is True
        assert len(result.items) == 1
        item = result.items[0]
        assert not item.is_mock_data
        assert item.url == "https://paperswithcode.com/paper/sparse-mixture-of-experts"

        article = normalize(item)
        assert article.author == "Ada Lovelace, Alan Turing"
        assert article.likes == 1234
        assert article.tag_names == ["Language Modelling"]
        assert article.metadata["code_links"] == ["https://github.com/example/moe"]
        assert article.publish_time.date().isoformat() == "2024-01-15"

    def test_json_instead_of_html_falls_back(self, limiter):
        fetcher = PapersWithCodeFetcher(fast_options(lambda r: httpx.Response(200, json={"detail": "moved"})), limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=3)))

        assert result.mock_count == 3
        assert "non-HTML" in result.metadata["live_error"]

    def test_mock_items_are_deterministic(self):
        fetcher = PapersWithCodeFetcher()
        first = fetcher.fallback(4, "graph neural networks")
        second = fetcher.fallback(4, "graph neural networks")
        other = fetcher.fallback(4, "speech recognition")

        assert [i.url for i in first] == [i.url for i in second]
        assert [i.fields["title"] for i in first] == [i.fields["title"] for i in second]
        assert [i.url for i in first] != [i.url for i in other]


class TestSocial:
    """Social posts."""

    def test_without_token_uses_mock_data(self, limiter):
        handler, calls = failing()
        fetcher = SocialFetcher(options=fast_options(handler), rate_limiter=limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=4)))

        assert calls == []
        assert result.success
        assert result.mock_count == 4
        assert result.metadata["live_error"] is None

        article = normalize(result.items[0])
        assert article.category == "社交媒体"
        assert "AI" in article.tag_names
        assert article.source_url.startswith("https://twitter.com/")

    def test_parse_search(self, limiter):
        payload = {
            "data": [
                {
                    "id": "1750000000000000000",
                    "text": "Our new model is out #LLM",
                    "author_id": "u1",
                    "created_at": "2024-01-20T12:00:00.000Z",
                    "public_metrics": {"like_count": 42, "retweet_count": 7, "reply_count": 3},
                    "entities": {"hashtags": [{"tag": "LLM"}]},
                }
            ],
            "includes": {"users": [{"id": "u1", "username": "lab", "name": "Research Lab"}]},
        }
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=payload)

        fetcher = SocialFetcher(bearer_token="tok", options=fast_options(handler), rate_limiter=limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=5)))

        assert seen["auth"] == "Bearer tok"
        assert result.metadata["live"] is True
        article = normalize(result.items[0])
        assert article.source_url == "https://twitter.com/lab/status/1750000000000000000"
        assert article.author == "Research Lab"
        assert article.likes == 42
        assert article.metadata["retweets"] == 7
        assert article.tag_names == ["LLM"]


class TestVideo:
    """YouTube videos."""

    def test_parse_duration(self):
        assert parse_duration("PT1H2M3S") == 3723
        assert parse_duration("PT15M") == 900
        assert parse_duration("P1DT1S") == 86401
        assert parse_duration("garbage") is None
        assert parse_duration(None) is None

    def test_parse_videos(self):
        payload = {
            "items": [
                {
                    "id": "abc123",
                    "snippet": {
                        "title": "Transformers from Scratch",
                        "description": "Step by step.",
                        "channelTitle": "ML Channel",
                        "publishedAt": "2024-01-05T00:00:00Z",
                        "tags": ["transformers"],
                    },
                    "contentDetails": {"duration": "PT20M"},
                    "statistics": {"viewCount": "1000", "likeCount": "50"},
                }
            ]
        }
        items = VideoFetcher().parse_videos(payload)
        article = normalize(items[0])

        assert article.source_url == "https://www.youtube.com/watch?v=abc123"
        assert article.author == "ML Channel"
        assert article.views == 1000
        assert article.likes == 50
        assert article.metadata["duration_seconds"] == 1200

    def test_search_then_details(self, limiter):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path.endswith("/search"):
                return httpx.Response(200, json={"items": [{"id": {"videoId": "v1"}}]})
            assert request.url.params["id"] == "v1"
            return httpx.Response(200, json={"items": [{"id": "v1", "snippet": {"title": "Video"}}]})

        fetcher = VideoFetcher(api_key="key", options=fast_options(handler), rate_limiter=limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=5)))

        assert paths == ["/youtube/v3/search", "/youtube/v3/videos"]
        assert [item.url for item in result.items] == ["https://www.youtube.com/watch?v=v1"]

    def test_without_key_uses_mock_data(self):
        result = run(VideoFetcher().fetch(FetchRequest(max_results=3)))
        assert result.mock_count == 3
        assert all("watch?v=" in item.url for item in result.items)


class TestWeb:
    """Selector-driven scraping."""

    SITE = SiteConfig("Example Blog", "https://blog.example.com/news/", "技术博客", "article.post")

    def test_relative_links_resolve(self, limiter):
        fetcher = WebFetcher([self.SITE], fast_options(lambda r: httpx.Response(200, text=SAMPLE_BLOG_PAGE)), limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=10)))

        assert result.metadata["live"] is True
        assert len(result.items) == 1
        item = result.items[0]
        assert item.url == "https://blog.example.com/blog/agents-in-production"

        article = normalize(item)
        assert article.title == "Agents in Production"
        assert article.summary == "Lessons from a year of agents."
        assert article.author == "Example Blog"
        assert article.category == "技术博客"
        assert article.publish_time.isoformat() == "2024-02-01T10:00:00+00:00"

    def test_all_sites_failing_falls_back(self, limiter):
        handler, _ = failing(503)
        sites = [self.SITE, SiteConfig("Other", "https://other.example.com/", "行业资讯", ".card")]
        fetcher = WebFetcher(sites, fast_options(handler), limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=4)))

        assert result.success
        assert result.mock_count == 4
        assert "503" in result.metadata["live_error"]
        assert result.items[0].url == "https://example.com/example-blog/article-1"
        assert result.items[1].url == "https://example.com/other/article-2"

    def test_empty_page_falls_back(self, limiter):
        fetcher = WebFetcher([self.SITE], fast_options(lambda r: httpx.Response(200, text="<html></html>")), limiter)
        result = run(fetcher.fetch(FetchRequest(max_results=2)))

        assert result.mock_count == 2
        assert result.metadata["live_error"] is None
