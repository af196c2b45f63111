"""
Tests for the collect command line.
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from aidigest import cli
from aidigest.models.domain import SourceType
from aidigest.services.ingestion.errors import ConfigurationError
from aidigest.services.ingestion.orchestrator import CollectionStats, RunOptions, SourceStats
from aidigest.services.ingestion.stores import SQLAlchemyArticleStore, create_store

from conftest import run


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def parse(settings, *argv):
    args = cli.build_parser(settings).parse_args(list(argv))
    return args, cli.options_from_args(args, settings)


def healthy_stats(fail_fast: bool = False) -> CollectionStats:
    return CollectionStats.fold(
        [SourceStats(source=SourceType.ARXIV, configured_max=20, fetched=2, inserted=2)],
        fail_fast=fail_fast,
    )


class TestArguments:
    """Flags to RunOptions."""

    def test_defaults(self, settings):
        _, options = parse(settings)
        assert options.sources == ["all"]
        assert options.use_source_config
        assert options.continue_on_error
        assert options.timeout == 25
        assert options.hours_back is None

    def test_last_12h(self, settings):
        _, options = parse(settings, "--last-12h")
        assert options.hours_back == 12

    def test_window_flags_exclusive(self, settings):
        with pytest.raises(SystemExit):
            parse(settings, "--last-12h", "--hours-back=6")

    def test_max_results_disables_source_config(self, settings):
        _, options = parse(settings, "--sources=arxiv,github", "--max-results=5", "--fail-fast")
        assert options.sources == ["arxiv,github"]
        assert options.max_results == 5
        assert not options.use_source_config
        assert options.fail_fast

    def test_uniform_config(self, settings):
        _, options = parse(settings, "--uniform-config")
        assert not options.use_source_config
        assert options.default_max_results == settings.default_max_results

    def test_rejects_non_positive(self, settings):
        with pytest.raises(ConfigurationError):
            parse(settings, "--max-results=0")
        with pytest.raises(ConfigurationError):
            parse(settings, "--hours-back=0")


class TestCollect:
    """Store handling around a run."""

    def test_dry_run_opens_no_store(self, settings):
        options = RunOptions(sources=["arxiv"], dry_run=True)
        with patch.object(cli, "create_store", new=AsyncMock()) as create_store, \
                patch.object(cli.CollectionRunner, "run", new=AsyncMock(return_value=healthy_stats())):
            stats = run(cli.collect(options, settings))

        create_store.assert_not_called()
        assert stats.inserted == 2

    def test_store_closed_after_run(self, settings):
        store = AsyncMock()
        options = RunOptions(sources=["arxiv"])
        with patch.object(cli, "create_store", new=AsyncMock(return_value=store)), \
                patch.object(cli.CollectionRunner, "run", new=AsyncMock(return_value=healthy_stats())):
            run(cli.collect(options, settings))

        store.close.assert_awaited_once()

    def test_store_failure_simulates_in_continue_mode(self, settings):
        options = RunOptions(sources=["arxiv"])
        with patch.object(cli, "create_store", new=AsyncMock(side_effect=OSError("disk full"))), \
                patch.object(cli.CollectionRunner, "run", new=AsyncMock(return_value=healthy_stats())):
            stats = run(cli.collect(options, settings))
        assert stats.crawler_success == 2

    def test_store_failure_is_fatal_in_fail_fast(self, settings):
        options = RunOptions(sources=["arxiv"], fail_fast=True)
        with patch.object(cli, "create_store", new=AsyncMock(side_effect=OSError("disk full"))):
            with pytest.raises(ConfigurationError, match="disk full"):
                run(cli.collect(options, settings))


class TestStoreSelection:
    """Which store a run writes to."""

    def keyless(self, settings):
        return settings.model_copy(update={"supabase_url": "https://proj.supabase.co"})

    def test_supabase_url_without_keys_is_fatal_in_fail_fast(self, settings):
        options = RunOptions(sources=["arxiv"], fail_fast=True)
        with pytest.raises(ConfigurationError, match="SUPABASE_SERVICE_ROLE_KEY"):
            run(cli.collect(options, self.keyless(settings)))

    def test_supabase_url_without_keys_uses_local_store(self, settings):
        async def scenario():
            store = await create_store(self.keyless(settings))
            await store.close()
            return store

        assert isinstance(run(scenario()), SQLAlchemyArticleStore)


class TestMain:
    """End-to-end entry point with the run stubbed out."""

    def test_summary_written_to_log_file(self, settings, tmp_path, capsys):
        log_file = tmp_path / "collection_log.txt"
        with patch.object(cli, "get_settings", return_value=settings), \
                patch.object(cli, "collect", new=AsyncMock(return_value=healthy_stats())):
            code = cli.main(["--sources=arxiv", f"--log-file={log_file}"])

        assert code == 0
        text = log_file.read_text(encoding="utf-8")
        assert text.startswith("=" * 60)
        assert "COLLECTION SUMMARY" in text
        assert "✓ arxiv: 2/2" in text
        assert "COLLECTION SUMMARY" in capsys.readouterr().out

    def test_unknown_source_exits_one(self, settings, tmp_path, capsys):
        with patch.object(cli, "get_settings", return_value=settings):
            code = cli.main(["--sources=arxiv,bogus", f"--log-file={tmp_path / 'log.txt'}"])

        assert code == 1
        assert "bogus" in capsys.readouterr().err

    def test_fail_fast_exit_code(self, settings, tmp_path):
        stats = CollectionStats.fold(
            [SourceStats(source=SourceType.GITHUB, configured_max=15, crawler_error="HTTP 401", aborted=True)],
            fail_fast=True,
        )
        with patch.object(cli, "get_settings", return_value=settings), \
                patch.object(cli, "collect", new=AsyncMock(return_value=stats)):
            code = cli.main(["--fail-fast", f"--log-file={tmp_path / 'log.txt'}"])
        assert code == 1
