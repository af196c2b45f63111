"""
Collection runner - fans out over all selected sources and persists results.

Each source runs as its own task: fetch, filter to the time window,
normalize, upsert. Tasks return their own SourceStats, which are folded
into a CollectionStats at the end.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import structlog

from aidigest.config import Settings, get_settings
from aidigest.models.domain import SourceType
from aidigest.services.ingestion.arxiv import ArxivFetcher
from aidigest.services.ingestion.base import (
    BaseFetcher,
    ConfigurationError,
    FetcherOptions,
    FetchRequest,
    FetchResult,
    RawItem,
    SourceFailure,
    ValidationError,
)
from aidigest.services.ingestion.github import GitHubFetcher
from aidigest.services.ingestion.normalizer import normalize
from aidigest.services.ingestion.papers_with_code import PapersWithCodeFetcher
from aidigest.services.ingestion.rss import FeedSource, RSSFetcher
from aidigest.services.ingestion.social import SocialFetcher
from aidigest.services.ingestion.stackoverflow import StackOverflowFetcher
from aidigest.services.ingestion.upserter import ArticleStore, PersistenceErrorKind, Upserter
from aidigest.services.ingestion.video import VideoFetcher
from aidigest.services.ingestion.web import WebFetcher

logger = structlog.get_logger()

ALL_SOURCES = list(SourceType)


# =============================================================================
# Options & statistics
# =============================================================================

@dataclass
class RunOptions:
    """One collection run, as requested on the command line."""
    sources: list[str] = field(default_factory=lambda: ["all"])
    max_results: Optional[int] = None
    uniform_config: bool = False
    timeout: float = 25.0
    verbose: bool = False
    fail_fast: bool = False
    hours_back: Optional[int] = None
    dry_run: bool = False
    save_error_streak_threshold: int = 5
    default_max_results: int = 10

    @property
    def use_source_config(self) -> bool:
        """Tuned per-source quotas unless a uniform quota was asked for."""
        return not self.uniform_config and self.max_results is None

    @property
    def continue_on_error(self) -> bool:
        return not self.fail_fast


@dataclass
class SourceStats:
    """What happened to one source during a run."""
    source: SourceType
    configured_max: int
    fetched: int = 0
    filtered_out: int = 0
    inserted: int = 0
    updated: int = 0
    changed: int = 0
    simulated: int = 0
    invalid: int = 0
    save_errors: int = 0
    mock_items: int = 0
    crawler_error: Optional[str] = None
    timed_out: bool = False
    aborted: bool = False
    error_kinds: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def saved(self) -> int:
        return self.inserted + self.updated + self.simulated

    @property
    def errors(self) -> int:
        return (1 if self.crawler_error else 0) + self.invalid + self.save_errors

    def record_error(self, kind: str):
        self.error_kinds[kind] = self.error_kinds.get(kind, 0) + 1

    def __str__(self) -> str:
        status = "✓" if not self.crawler_error and not self.save_errors else "✗"
        return (
            f"{status} {self.source.value}: fetched={self.fetched}, saved={self.saved}, "
            f"inserted={self.inserted}, updated={self.updated}, "
            f"errors={self.errors}, time={self.duration_seconds:.1f}s"
        )


@dataclass
class CollectionStats:
    """Fold of all SourceStats for one run."""
    sources: list[SourceStats] = field(default_factory=list)
    fail_fast: bool = False
    duration_seconds: float = 0.0

    @classmethod
    def fold(cls, stats: list[SourceStats], fail_fast: bool = False, duration: float = 0.0) -> "CollectionStats":
        return cls(sources=list(stats), fail_fast=fail_fast, duration_seconds=duration)

    @property
    def total(self) -> int:
        return sum(s.fetched - s.filtered_out for s in self.sources)

    @property
    def success(self) -> int:
        return sum(s.saved for s in self.sources)

    @property
    def inserted(self) -> int:
        return sum(s.inserted for s in self.sources)

    @property
    def updated(self) -> int:
        return sum(s.updated for s in self.sources)

    @property
    def crawler_success(self) -> int:
        """Items fetched by crawlers that succeeded."""
        return sum(s.fetched for s in self.sources if not s.crawler_error)

    @property
    def crawler_errors(self) -> int:
        return sum(1 for s in self.sources if s.crawler_error)

    @property
    def save_errors(self) -> int:
        return sum(s.save_errors + s.invalid for s in self.sources)

    @property
    def errors(self) -> int:
        return self.crawler_errors + self.save_errors

    def exit_code(self) -> int:
        """Continue-on-error fails only when nothing was fetched; fail-fast fails on any error."""
        if self.fail_fast:
            return 1 if self.errors > 0 else 0
        return 1 if self.crawler_success == 0 else 0


# =============================================================================
# Runner
# =============================================================================

def resolve_sources(names: list[str]) -> list[SourceType]:
    """
    ``all`` or a list of source names (CSV pieces allowed).

    Raises:
        ConfigurationError: an unknown source name
    """
    requested = [n.strip() for name in names for n in name.split(",") if n.strip()]
    if not requested or "all" in (n.lower() for n in requested):
        return list(ALL_SOURCES)

    resolved: list[SourceType] = []
    for name in requested:
        try:
            source = SourceType.parse(name)
        except ValueError:
            valid = ", ".join(s.value for s in ALL_SOURCES)
            raise ConfigurationError(f"Unknown source '{name}'. Valid sources: all, {valid}") from None
        if source not in resolved:
            resolved.append(source)
    return resolved


def in_window(item: RawItem, since: datetime, until: datetime) -> bool:
    """
    Whether an item falls inside the collection window.

    Mock fallback items are always kept so a fallback batch stays complete.
    Undated items are judged by their fetch time, which only has a lower bound.
    """
    if item.is_mock_data:
        return True
    if item.published_at is None:
        return item.fetched_at >= since
    return since <= item.published_at <= until


def build_default_fetchers(settings: Settings, options: Optional[FetcherOptions] = None) -> dict[SourceType, BaseFetcher]:
    """One fetcher per source, wired with credentials from settings."""
    return {
        SourceType.ARXIV: ArxivFetcher(options),
        SourceType.GITHUB: GitHubFetcher(token=settings.github_token, options=options),
        SourceType.RSS: RSSFetcher(options=options),
        SourceType.STACKOVERFLOW: StackOverflowFetcher(options=options),
        SourceType.PAPERS_WITH_CODE: PapersWithCodeFetcher(options),
        SourceType.SOCIAL: SocialFetcher(bearer_token=settings.twitter_bearer_token, options=options),
        SourceType.VIDEO: VideoFetcher(api_key=settings.youtube_api_key, options=options),
        SourceType.WEB: WebFetcher(options=options),
    }


class CollectionRunner:
    """
    Runs one collection across the selected sources.

    Features:
    - Concurrent source tasks, partial-failure tolerant by default
    - Fail-fast mode that cancels the remaining sources on the first failure
    - Optional time window and a global deadline for persistence
    - RSS feed registry kept in sync with feed health
    """

    def __init__(
        self,
        options: RunOptions,
        settings: Optional[Settings] = None,
        store: Optional[ArticleStore] = None,
        fetchers: Optional[dict[SourceType, BaseFetcher]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options
        self.settings = settings or get_settings()
        self.store = store
        self.fetchers = fetchers if fetchers is not None else build_default_fetchers(self.settings)
        self.upserter = Upserter(store) if store is not None else None
        self.clock = clock
        self._deadline: float = 0.0

    @property
    def simulate(self) -> bool:
        return self.options.dry_run or self.store is None

    def quota_for(self, source: SourceType) -> int:
        if self.options.use_source_config:
            return self.settings.source_settings(source.value).max_results
        return self.options.max_results or self.options.default_max_results

    def time_window(self) -> tuple[Optional[datetime], Optional[datetime]]:
        if not self.options.hours_back:
            return None, None
        until = datetime.now(timezone.utc)
        return until - timedelta(hours=self.options.hours_back), until

    async def run(self) -> CollectionStats:
        sources = resolve_sources(self.options.sources)
        missing = [s.value for s in sources if s not in self.fetchers]
        if missing:
            raise ConfigurationError(f"No fetcher configured for: {', '.join(missing)}")

        start = self.clock()
        self._deadline = start + self.options.timeout

        logger.info(
            "Starting collection",
            sources=[s.value for s in sources],
            mode="fail-fast" if self.options.fail_fast else "continue-on-error",
            per_source_config=self.options.use_source_config,
            hours_back=self.options.hours_back,
            dry_run=self.simulate,
        )

        if SourceType.RSS in sources:
            await self._load_feed_registry()

        if self.options.fail_fast:
            source_stats = await self._run_fail_fast(sources)
        else:
            source_stats = await self._run_all(sources)

        stats = CollectionStats.fold(
            source_stats,
            fail_fast=self.options.fail_fast,
            duration=self.clock() - start,
        )
        logger.info(
            "Collection finished",
            total=stats.total,
            success=stats.success,
            errors=stats.errors,
            crawler_success=stats.crawler_success,
            save_errors=stats.save_errors,
        )
        return stats

    async def _run_all(self, sources: list[SourceType]) -> list[SourceStats]:
        """Continue-on-error: every source runs to completion."""
        results = await asyncio.gather(
            *(self.run_source(s) for s in sources),
            return_exceptions=True,
        )
        stats = []
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                logger.error("Source task crashed", source=source.value, error=str(result))
                stats.append(SourceStats(
                    source=source,
                    configured_max=self.quota_for(source),
                    crawler_error=f"{type(result).__name__}: {result}",
                ))
            else:
                stats.append(result)
        return stats

    async def _run_fail_fast(self, sources: list[SourceType]) -> list[SourceStats]:
        """Fail-fast: the first failing source cancels the others."""
        tasks = {asyncio.ensure_future(self.run_source(s)): s for s in sources}
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        stats = []
        for task, source in tasks.items():
            quota = self.quota_for(source)
            if task.cancelled():
                stats.append(SourceStats(source=source, configured_max=quota, aborted=True))
                continue
            error = task.exception()
            if isinstance(error, SourceFailure):
                logger.error("Source failed, aborting run", source=source.value, error=error.reason)
                failed = error.stats or SourceStats(source=source, configured_max=quota, crawler_error=error.reason)
                failed.aborted = True
                stats.append(failed)
            elif error is not None:
                logger.error("Source task crashed", source=source.value, error=str(error))
                stats.append(SourceStats(
                    source=source,
                    configured_max=quota,
                    crawler_error=f"{type(error).__name__}: {error}",
                    aborted=True,
                ))
            else:
                stats.append(task.result())
        return stats

    async def run_source(self, source: SourceType) -> SourceStats:
        """Fetch, filter, normalize and persist one source."""
        started = self.clock()
        fetcher = self.fetchers[source]
        source_settings = self.settings.source_settings(source.value)
        since, until = self.time_window()
        stats = SourceStats(source=source, configured_max=self.quota_for(source))
        log = logger.bind(source=source.value)

        request = FetchRequest(
            max_results=stats.configured_max,
            timeout_seconds=source_settings.timeout_seconds,
            since=since,
            until=until,
        )
        result = await fetcher.fetch(request)
        stats.fetched = len(result.items)
        stats.mock_items = result.mock_count

        await self._sync_feed_health(result)

        if not result.success:
            stats.crawler_error = result.error or "fetch failed"
            stats.duration_seconds = self.clock() - started
            log.warning("Fetch failed", error=stats.crawler_error)
            if self.options.fail_fast:
                raise self._failure(source, stats.crawler_error, stats)
            return stats

        log.info("Fetched items", count=stats.fetched, mock=stats.mock_items)

        items = result.items
        if since is not None:
            items = [i for i in items if in_window(i, since, until)]
            stats.filtered_out = stats.fetched - len(items)

        streak = 0
        for index, raw in enumerate(items):
            if self.clock() > self._deadline:
                remaining = len(items) - index
                stats.timed_out = True
                stats.save_errors += remaining
                stats.error_kinds[PersistenceErrorKind.TIMEOUT.value] = (
                    stats.error_kinds.get(PersistenceErrorKind.TIMEOUT.value, 0) + remaining
                )
                log.warning("Global timeout reached, skipping remaining items", remaining=remaining)
                if self.options.fail_fast:
                    raise self._failure(source, f"timed out with {remaining} items unsaved", stats)
                break

            try:
                article = normalize(raw, source)
            except ValidationError as e:
                stats.invalid += 1
                stats.record_error(PersistenceErrorKind.VALIDATION.value)
                log.warning("Skipping invalid item", error=str(e))
                continue

            if self.simulate:
                stats.simulated += 1
                if self.options.verbose:
                    log.debug("Would save", content_id=article.content_id, title=article.title[:80])
                continue

            saved = await self.upserter.upsert(article)
            if saved.success:
                streak = 0
                if saved.action == "inserted":
                    stats.inserted += 1
                else:
                    stats.updated += 1
                if saved.content_changed:
                    stats.changed += 1
                if self.options.verbose:
                    log.debug("Saved", action=saved.action, content_id=article.content_id, title=article.title[:80])
                continue

            streak += 1
            stats.save_errors += 1
            stats.record_error(saved.error_kind.value)
            log.warning(
                "Save failed",
                content_id=article.content_id,
                kind=saved.error_kind.value,
                error=saved.error,
                hint=saved.hint,
            )
            if self.options.fail_fast and streak > self.options.save_error_streak_threshold:
                stats.aborted = True
                raise self._failure(source, f"{streak} consecutive save errors ({saved.hint})", stats)

        stats.duration_seconds = self.clock() - started
        log.info("Source done", saved=stats.saved, errors=stats.errors)
        return stats

    @staticmethod
    def _failure(source: SourceType, message: str, stats: SourceStats) -> SourceFailure:
        return SourceFailure(source.value, message, stats)

    async def _load_feed_registry(self):
        fetcher = self.fetchers.get(SourceType.RSS)
        if self.store is None or not isinstance(fetcher, RSSFetcher):
            return
        try:
            rows = await self.store.list_active_feeds()
        except Exception as e:
            logger.warning("Feed registry unavailable, using default feeds", error=str(e))
            return
        feeds = [
            FeedSource(name=row.get("name") or row["url"], url=row["url"], category=row.get("category") or "技术博客")
            for row in rows
            if row.get("url")
        ]
        fetcher.set_feeds(feeds)
        logger.info("Loaded feed registry", feeds=len(fetcher.feeds))

    async def _sync_feed_health(self, result: FetchResult):
        """Deactivate failing feeds, reactivate recovered ones."""
        feed_status = result.metadata.get("feed_status")
        if not feed_status or self.simulate:
            return
        for url, healthy in feed_status.items():
            try:
                await self.store.set_feed_active(url, healthy)
            except Exception as e:
                logger.warning("Could not update feed status", url=url, error=str(e))


# =============================================================================
# Summary
# =============================================================================

def render_summary(stats: CollectionStats, options: RunOptions, settings: Optional[Settings] = None) -> str:
    """Human-readable run report, also written to the log file."""
    settings = settings or get_settings()
    mode = "fail-fast" if stats.fail_fast else "continue-on-error"
    config = "per-source" if options.use_source_config else f"uniform ({options.max_results or options.default_max_results})"

    lines = [
        "=" * 60,
        "COLLECTION SUMMARY",
        "=" * 60,
        f"Finished at: {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
        f"Mode: {mode}, config: {config}" + (", dry run" if options.dry_run else ""),
        f"Duration: {stats.duration_seconds:.1f}s",
        f"Total items: {stats.total}",
        f"Crawler success: {stats.crawler_success}",
        f"Saved: {stats.success} (inserted {stats.inserted}, updated {stats.updated})",
        f"Errors: {stats.errors} (crawler failures {stats.crawler_errors}, save errors {stats.save_errors})",
        "-" * 60,
    ]

    for s in stats.sources:
        cfg = settings.source_settings(s.source.value)
        line = (
            f"{'✓' if not s.crawler_error else '✗'} {s.source.value}: "
            f"{s.saved}/{s.fetched - s.filtered_out} (配置:{s.configured_max}) "
            f"[{cfg.priority}/{cfg.status}]"
        )
        if s.mock_items:
            line += f" [模拟数据:{s.mock_items}]"
        if s.crawler_error:
            line += f" [爬虫错误: {s.crawler_error}]"
        if s.save_errors or s.invalid:
            kinds = ", ".join(f"{k}={v}" for k, v in sorted(s.error_kinds.items()))
            line += f" [保存错误:{s.save_errors + s.invalid} {kinds}]"
        if s.timed_out:
            line += " [超时]"
        if s.aborted and not s.crawler_error:
            line += " [已取消]"
        lines.append(line)

    lines.append("=" * 60)
    return "\n".join(lines)


def write_summary(path: str, text: str):
    """Replace the log file contents with the final summary."""
    Path(path).write_text(text + "\n", encoding="utf-8")
