"""
Tests for the collection runner: fan-out, failure modes, deadline and summary.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from aidigest.models.domain import SourceType
from aidigest.services.ingestion.base import (
    BaseFetcher,
    ConfigurationError,
    FetcherOptions,
    FetchRequest,
    FetchResult,
    RawItem,
)
from aidigest.services.ingestion.orchestrator import (
    CollectionRunner,
    CollectionStats,
    RunOptions,
    SourceStats,
    render_summary,
    resolve_sources,
)
from aidigest.services.ingestion.papers_with_code import PapersWithCodeFetcher
from aidigest.services.ingestion.rss import RSSFetcher

from conftest import fast_options, memory_store, run, unlimited_limiter
from test_fetchers import SAMPLE_RSS_RESPONSE


def raw_items(source: SourceType, count: int, published_at=None, prefix: str = "item") -> list[RawItem]:
    return [
        RawItem(
            source_type=source,
            url=f"https://{source.value}.example.com/{prefix}-{i}",
            fields={"title": f"{source.value} {prefix} {i}", "summary": "body"},
            published_at=published_at,
        )
        for i in range(count)
    ]


class StaticFetcher(BaseFetcher):
    """Answers every fetch with the same canned result."""

    def __init__(self, source_type: SourceType, items=None, error=None, delay=0.0, **metadata):
        super().__init__(FetcherOptions(delay_seconds=0), unlimited_limiter())
        self.source_type = source_type
        self.items = items or []
        self.error = error
        self.delay = delay
        self.metadata = metadata
        self.requests: list[FetchRequest] = []

    async def _fetch(self, request: FetchRequest) -> FetchResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            return FetchResult.failed(self.source_type, self.error)
        return FetchResult.ok(self.source_type, list(self.items), **self.metadata)


class RejectingStore:
    """Store whose every insert violates a constraint."""

    def __init__(self):
        self.inserts = 0

    async def find_by_content_id(self, content_id):
        return None

    async def insert(self, record):
        self.inserts += 1
        raise Exception("duplicate key value violates unique constraint")

    async def update(self, content_id, record):
        raise AssertionError("update not expected")

    async def list_active_feeds(self):
        return []

    async def set_feed_active(self, url, is_active):
        pass


def three_sources():
    return {
        SourceType.ARXIV: StaticFetcher(SourceType.ARXIV, raw_items(SourceType.ARXIV, 3)),
        SourceType.GITHUB: StaticFetcher(SourceType.GITHUB, error="HTTP 503 (attempts=3)"),
        SourceType.WEB: StaticFetcher(SourceType.WEB, raw_items(SourceType.WEB, 2)),
    }


class StepClock:
    """Each reading is ``step`` seconds after the previous one."""

    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


SOURCES = ["arxiv,github,web"]


class TestResolveSources:
    """Source selection."""

    def test_all(self):
        assert resolve_sources(["all"]) == list(SourceType)
        assert resolve_sources([]) == list(SourceType)

    def test_csv_and_aliases(self):
        assert resolve_sources(["papers-with-code,arxiv", "arxiv"]) == [
            SourceType.PAPERS_WITH_CODE,
            SourceType.ARXIV,
        ]

    def test_unknown_source(self):
        with pytest.raises(ConfigurationError, match="nope"):
            resolve_sources(["arxiv,nope"])


class TestContinueOnError:
    """Default mode: partial failures do not fail the run."""

    def test_one_source_failing(self, settings):
        async def scenario():
            store = await memory_store()
            try:
                runner = CollectionRunner(RunOptions(sources=SOURCES), settings, store, three_sources())
                stats = await runner.run()
                return stats, await store.count()
            finally:
                await store.close()

        stats, stored = run(scenario())

        assert stats.exit_code() == 0
        assert stats.crawler_success == 5
        assert stats.crawler_errors == 1
        assert stats.inserted == 5
        assert stats.errors == 1
        assert stored == 5
        github = next(s for s in stats.sources if s.source == SourceType.GITHUB)
        assert "503" in github.crawler_error

    def test_second_run_updates(self, settings):
        async def scenario():
            store = await memory_store()
            try:
                options = RunOptions(sources=SOURCES)
                await CollectionRunner(options, settings, store, three_sources()).run()
                stats = await CollectionRunner(options, settings, store, three_sources()).run()
                return stats, await store.count()
            finally:
                await store.close()

        stats, stored = run(scenario())

        assert stats.inserted == 0
        assert stats.updated == 5
        assert stored == 5

    def test_concurrent_sources_share_memory_store(self, settings):
        async def scenario():
            store = await memory_store()
            try:
                fetchers = {
                    source: StaticFetcher(source, raw_items(source, 20))
                    for source in (SourceType.ARXIV, SourceType.PAPERS_WITH_CODE, SourceType.WEB)
                }
                options = RunOptions(sources=["arxiv,papers_with_code,web"])
                stats = await CollectionRunner(options, settings, store, fetchers).run()
                return stats, await store.count()
            finally:
                await store.close()

        stats, stored = run(scenario())

        assert stats.save_errors == 0
        assert stats.inserted == 60
        assert stored == 60

    def test_everything_failing(self, settings):
        fetchers = {
            SourceType.ARXIV: StaticFetcher(SourceType.ARXIV, error="down"),
            SourceType.GITHUB: StaticFetcher(SourceType.GITHUB, error="down"),
        }
        options = RunOptions(sources=["arxiv,github"], dry_run=True)
        stats = run(CollectionRunner(options, settings, None, fetchers).run())

        assert stats.crawler_success == 0
        assert stats.exit_code() == 1

    def test_save_errors_do_not_fail_run(self, settings):
        store = RejectingStore()
        fetchers = {SourceType.WEB: StaticFetcher(SourceType.WEB, raw_items(SourceType.WEB, 5))}
        stats = run(CollectionRunner(RunOptions(sources=["web"]), settings, store, fetchers).run())

        assert store.inserts == 5
        assert stats.save_errors == 5
        assert stats.sources[0].error_kinds == {"unique_violation": 5}
        assert stats.exit_code() == 0

    def test_invalid_items_counted(self, settings):
        items = raw_items(SourceType.WEB, 2)
        items.append(RawItem(source_type=SourceType.WEB, url="https://web.example.com/x", fields={}))
        fetchers = {SourceType.WEB: StaticFetcher(SourceType.WEB, items)}
        stats = run(CollectionRunner(RunOptions(sources=["web"], dry_run=True), settings, None, fetchers).run())

        web = stats.sources[0]
        assert web.simulated == 2
        assert web.invalid == 1
        assert stats.save_errors == 1


class TestFailFast:
    """Fail-fast mode."""

    def test_failure_exits_non_zero(self, settings):
        options = RunOptions(sources=SOURCES, fail_fast=True, dry_run=True)
        stats = run(CollectionRunner(options, settings, None, three_sources()).run())

        assert stats.exit_code() == 1
        github = next(s for s in stats.sources if s.source == SourceType.GITHUB)
        assert github.crawler_error
        assert github.aborted

    def test_pending_sources_are_cancelled(self, settings):
        fetchers = {
            SourceType.ARXIV: StaticFetcher(SourceType.ARXIV, raw_items(SourceType.ARXIV, 1), delay=30),
            SourceType.GITHUB: StaticFetcher(SourceType.GITHUB, error="HTTP 401"),
        }
        options = RunOptions(sources=["arxiv,github"], fail_fast=True, dry_run=True)
        stats = run(asyncio.wait_for(CollectionRunner(options, settings, None, fetchers).run(), timeout=5))

        arxiv = next(s for s in stats.sources if s.source == SourceType.ARXIV)
        assert arxiv.aborted
        assert arxiv.saved == 0
        assert "[已取消]" in render_summary(stats, options, settings)

    def test_save_error_streak_aborts(self, settings):
        store = RejectingStore()
        fetchers = {SourceType.WEB: StaticFetcher(SourceType.WEB, raw_items(SourceType.WEB, 5))}
        options = RunOptions(sources=["web"], fail_fast=True, save_error_streak_threshold=2)
        stats = run(CollectionRunner(options, settings, store, fetchers).run())

        web = stats.sources[0]
        assert store.inserts == 3
        assert web.save_errors == 3
        assert web.aborted
        assert stats.exit_code() == 1

    def test_clean_run_exits_zero(self, settings):
        fetchers = {SourceType.ARXIV: StaticFetcher(SourceType.ARXIV, raw_items(SourceType.ARXIV, 2))}
        options = RunOptions(sources=["arxiv"], fail_fast=True, dry_run=True)
        stats = run(CollectionRunner(options, settings, None, fetchers).run())
        assert stats.exit_code() == 0


class TestDeadline:
    """Global run budget."""

    def test_remaining_items_count_as_timeouts(self, settings):
        fetchers = {SourceType.WEB: StaticFetcher(SourceType.WEB, raw_items(SourceType.WEB, 3))}
        options = RunOptions(sources=["web"], timeout=25, dry_run=True)
        runner = CollectionRunner(options, settings, None, fetchers, clock=StepClock(10))

        stats = run(runner.run())

        web = stats.sources[0]
        assert web.timed_out
        assert web.simulated == 1
        assert web.save_errors == 2
        assert web.error_kinds == {"timeout": 2}
        assert "[超时]" in render_summary(stats, options, settings)

    def test_fail_fast_timeout(self, settings):
        fetchers = {SourceType.WEB: StaticFetcher(SourceType.WEB, raw_items(SourceType.WEB, 3))}
        options = RunOptions(sources=["web"], timeout=25, dry_run=True, fail_fast=True)
        runner = CollectionRunner(options, settings, None, fetchers, clock=StepClock(10))

        stats = run(runner.run())

        assert stats.sources[0].timed_out
        assert stats.exit_code() == 1


class TestQuotasAndWindow:
    """Per-source quotas and the time window."""

    def test_source_config_quota(self, settings):
        fetcher = StaticFetcher(SourceType.ARXIV)
        runner = CollectionRunner(RunOptions(sources=["arxiv"], dry_run=True), settings, None, {SourceType.ARXIV: fetcher})
        run(runner.run())

        assert fetcher.requests[0].max_results == 20
        assert fetcher.requests[0].timeout_seconds == 10

    def test_uniform_quota(self, settings):
        fetcher = StaticFetcher(SourceType.ARXIV)
        options = RunOptions(sources=["arxiv"], max_results=7, dry_run=True)
        run(CollectionRunner(options, settings, None, {SourceType.ARXIV: fetcher}).run())
        assert fetcher.requests[0].max_results == 7

        fetcher = StaticFetcher(SourceType.ARXIV)
        options = RunOptions(sources=["arxiv"], uniform_config=True, dry_run=True)
        run(CollectionRunner(options, settings, None, {SourceType.ARXIV: fetcher}).run())
        assert fetcher.requests[0].max_results == 10

    def test_time_window_filters(self, settings):
        now = datetime.now(timezone.utc)
        items = (
            raw_items(SourceType.WEB, 1, published_at=now - timedelta(hours=1), prefix="fresh")
            + raw_items(SourceType.WEB, 1, published_at=now - timedelta(hours=48), prefix="stale")
            + raw_items(SourceType.WEB, 1, prefix="undated")
        )
        fetcher = StaticFetcher(SourceType.WEB, items)
        options = RunOptions(sources=["web"], hours_back=12, dry_run=True)

        stats = run(CollectionRunner(options, settings, None, {SourceType.WEB: fetcher}).run())

        request = fetcher.requests[0]
        assert request.until - request.since == timedelta(hours=12)
        web = stats.sources[0]
        assert web.fetched == 3
        assert web.filtered_out == 1
        assert web.simulated == 2
        assert stats.total == 2

    def test_time_window_upper_bound(self, settings):
        now = datetime.now(timezone.utc)
        items = raw_items(SourceType.WEB, 1, published_at=now + timedelta(days=2), prefix="future")
        fetcher = StaticFetcher(SourceType.WEB, items)
        options = RunOptions(sources=["web"], hours_back=12, dry_run=True)

        stats = run(CollectionRunner(options, settings, None, {SourceType.WEB: fetcher}).run())

        assert stats.sources[0].filtered_out == 1
        assert stats.sources[0].simulated == 0

    def test_mock_fallback_kept_in_time_window(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        fetcher = PapersWithCodeFetcher(fast_options(handler), unlimited_limiter())
        options = RunOptions(sources=["papers_with_code"], max_results=10, hours_back=1, dry_run=True)

        stats = run(CollectionRunner(options, settings, None, {SourceType.PAPERS_WITH_CODE: fetcher}).run())

        pwc = stats.sources[0]
        assert pwc.fetched == 10
        assert pwc.mock_items == 10
        assert pwc.filtered_out == 0
        assert pwc.simulated == 10

    def test_missing_fetcher(self, settings):
        runner = CollectionRunner(RunOptions(sources=["video"]), settings, None, {})
        with pytest.raises(ConfigurationError):
            run(runner.run())


class TestFeedRegistry:
    """RSS feeds come from the registry and failing feeds get deactivated."""

    def test_failing_feed_deactivated(self, settings):
        good = "https://good.example.com/feed"
        bad = "https://bad.example.com/feed"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "bad.example.com":
                return httpx.Response(503)
            return httpx.Response(200, text=SAMPLE_RSS_RESPONSE)

        async def scenario():
            store = await memory_store()
            try:
                await store.add_feed("Good", good, "AI研究")
                await store.add_feed("Bad", bad)
                rss = RSSFetcher(options=fast_options(handler), rate_limiter=unlimited_limiter())
                runner = CollectionRunner(RunOptions(sources=["rss"]), settings, store, {SourceType.RSS: rss})
                stats = await runner.run()
                return stats, rss, await store.list_active_feeds()
            finally:
                await store.close()

        stats, rss, active = run(scenario())

        assert {f.url for f in rss.feeds} == {good, bad}
        assert stats.inserted == 2
        assert [f["url"] for f in active] == [good]

    def test_dry_run_leaves_registry_alone(self, settings):
        fetcher = StaticFetcher(SourceType.RSS, raw_items(SourceType.RSS, 1), feed_status={"https://x/feed": False})
        store = RejectingStore()
        options = RunOptions(sources=["rss"], dry_run=True)
        stats = run(CollectionRunner(options, settings, store, {SourceType.RSS: fetcher}).run())

        assert stats.sources[0].simulated == 1
        assert store.inserts == 0


class TestStats:
    """Exit codes and the summary report."""

    def test_exit_codes(self):
        ok = SourceStats(source=SourceType.ARXIV, configured_max=20, fetched=3, inserted=3)
        failed = SourceStats(source=SourceType.GITHUB, configured_max=15, crawler_error="boom")

        assert CollectionStats.fold([ok, failed]).exit_code() == 0
        assert CollectionStats.fold([ok, failed], fail_fast=True).exit_code() == 1
        assert CollectionStats.fold([failed]).exit_code() == 1
        assert CollectionStats.fold([ok], fail_fast=True).exit_code() == 0

    def test_render_summary(self, settings):
        stats = CollectionStats.fold([
            SourceStats(source=SourceType.ARXIV, configured_max=20, fetched=3, inserted=2, updated=1),
            SourceStats(source=SourceType.GITHUB, configured_max=15, crawler_error="HTTP 403"),
            SourceStats(source=SourceType.SOCIAL, configured_max=10, fetched=10, simulated=10, mock_items=10),
        ])
        text = render_summary(stats, RunOptions(), settings)

        assert "COLLECTION SUMMARY" in text
        assert "Crawler success: 13" in text
        assert "✓ arxiv: 3/3 (配置:20) [high/working]" in text
        assert "✗ github: 0/0 (配置:15) [high/working] [爬虫错误: HTTP 403]" in text
        assert "[模拟数据:10]" in text
        assert "Mode: continue-on-error, config: per-source" in text
