"""
Command-line entry point for a collection run.

Usage:
    # All sources with their tuned quotas
    aidigest-collect

    # Two sources, 5 items each, last 12 hours only
    aidigest-collect --sources=arxiv,github --max-results=5 --last-12h

    # Stop at the first failure
    aidigest-collect --fail-fast
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

import structlog

from aidigest.config import Settings, get_settings
from aidigest.services.ingestion.errors import ConfigurationError
from aidigest.services.ingestion.orchestrator import (
    CollectionRunner,
    CollectionStats,
    RunOptions,
    render_summary,
    write_summary,
)
from aidigest.services.ingestion.stores import create_store

logger = structlog.get_logger()


def configure_logging(verbose: bool = False, log_file: Optional[str] = None, level: str = "INFO") -> list[logging.Handler]:
    """structlog on top of stdlib logging, to the console and the run log."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )
    # Quiet third-party request logs unless asked
    for noisy in ("httpx", "httpcore", "hpack"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    return handlers


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aidigest-collect",
        description="AI Digest - collect AI content from all sources",
    )
    parser.add_argument(
        "--sources",
        default="all",
        help="Comma-separated sources or 'all' "
             "(arxiv, github, rss, stackoverflow, papers-with-code, social, video, web)",
    )
    parser.add_argument(
        "--max-results",
        type=int,
        default=None,
        help="Uniform per-source quota (disables tuned per-source quotas)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.default_timeout_seconds,
        help=f"Global run budget in seconds (default: {settings.default_timeout_seconds:g})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Per-item logging")
    parser.add_argument(
        "--uniform-config",
        action="store_true",
        help=f"Same quota for every source (default: {settings.default_max_results})",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Abort on the first source failure (default: continue on error)",
    )
    window = parser.add_mutually_exclusive_group()
    window.add_argument("--hours-back", type=int, default=None, help="Only keep items from the last N hours")
    window.add_argument("--last-12h", action="store_true", help="Shorthand for --hours-back=12")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and normalize, but do not save")
    parser.add_argument(
        "--log-file",
        default=settings.log_file,
        help=f"Run log, replaced by the final summary (default: {settings.log_file})",
    )
    return parser


def options_from_args(args: argparse.Namespace, settings: Settings) -> RunOptions:
    if args.max_results is not None and args.max_results < 1:
        raise ConfigurationError("--max-results must be at least 1")
    if args.hours_back is not None and args.hours_back < 1:
        raise ConfigurationError("--hours-back must be at least 1")

    return RunOptions(
        sources=[args.sources],
        max_results=args.max_results,
        uniform_config=args.uniform_config,
        timeout=args.timeout,
        verbose=args.verbose,
        fail_fast=args.fail_fast,
        hours_back=12 if args.last_12h else args.hours_back,
        dry_run=args.dry_run,
        save_error_streak_threshold=settings.save_error_streak_threshold,
        default_max_results=settings.default_max_results,
    )


async def collect(options: RunOptions, settings: Settings, store=None) -> CollectionStats:
    """Open the store (unless dry run), run the collection, close the store."""
    owns_store = False
    if store is None and not options.dry_run:
        try:
            store = await create_store(settings, fail_fast=options.fail_fast)
            owns_store = True
        except ConfigurationError:
            raise
        except Exception as e:
            if options.fail_fast:
                raise ConfigurationError(f"Could not open article store: {e}") from e
            logger.warning("Article store unavailable, simulating saves", error=str(e))
            store = None

    try:
        runner = CollectionRunner(options, settings=settings, store=store)
        return await runner.run()
    finally:
        if owns_store:
            await store.close()


def main(argv: Optional[list[str]] = None) -> int:
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    handlers = configure_logging(args.verbose, args.log_file, settings.log_level)

    try:
        options = options_from_args(args, settings)
        stats = asyncio.run(collect(options, settings))
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    summary = render_summary(stats, options, settings)
    print("\n" + summary)

    for handler in handlers:
        if isinstance(handler, logging.FileHandler):
            logging.getLogger().removeHandler(handler)
            handler.close()
    if args.log_file:
        write_summary(args.log_file, summary)

    return stats.exit_code()


if __name__ == "__main__":
    sys.exit(main())
