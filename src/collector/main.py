"""Main application entry point."""

import argparse
import asyncio
import sys
from typing import List, Optional, TextIO

from .api_clients import ArchiveAPIClient, RetryPolicy
from .config import ConfigurationError, describe_settings, get_or_create_collector_id, load_settings
from .config.settings import CollectorSettings
from .core import SyncEngine, SyncSummary
from .scanners import GitScanner, SessionScanner, ToolResultLoader
from .utils.hostname import get_effective_hostname, get_os_info
from .utils.logging import get_logger, setup_logging


DESCRIPTION = "Sync Claude Code sessions and git repository history to the archive server"

EPILOG = """\
environment variables:
  SERVER_URL        (required) archive server base URL
  API_KEY           (required) API key for authentication
  COLLECTOR_NAME    collector name (default: hostname)
  LOG_LEVEL         debug, info, warn or error (default: info)

examples:
  archive-collector                            sync Claude sessions only
  archive-collector -s ~/code -s ~/work        also sync git repos under these dirs
  archive-collector --dry-run -v               preview without sending anything
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archive-collector",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-s", "--source-dir",
        dest="source_dirs",
        action="append",
        default=[],
        metavar="PATH",
        help="directory to search for git repositories (can be repeated)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="enable debug output and upload run logs to the server",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be synced without sending anything",
    )
    return parser


def print_summary(summary: SyncSummary, out: Optional[TextIO] = None):
    """Print the run summary."""
    rule = "=" * 50
    lines = [
        "",
        rule,
        "Sync Summary",
        rule,
        f"Sync Run ID: {summary.sync_run_id}",
        f"Dry Run: {'Yes' if summary.dry_run else 'No'}",
        "",
        "Git Repositories:",
        f"  Processed: {summary.git_repos_processed}",
        f"  With Changes: {summary.git_repos_synced}",
        f"  New Commits: {summary.commits_found}",
        "",
        "Claude Sessions:",
        f"  Workspaces Processed: {summary.workspaces_processed}",
        f"  Workspaces With Changes: {summary.workspaces_synced}",
        f"  Sessions: {summary.sessions_found}",
        f"  New Entries: {summary.entries_found}",
    ]

    if summary.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in summary.errors)
    else:
        lines.append("")
        lines.append("Dry run complete." if summary.dry_run else "Sync complete.")

    print("\n".join(lines), file=out or sys.stdout)


async def run_sync(settings: CollectorSettings, source_dirs: List[str], dry_run: bool, verbose: bool) -> SyncSummary:
    """Wire the collector components from settings and run one sync."""
    logger = get_logger("main")
    host = get_effective_hostname()
    collector_id = get_or_create_collector_id(settings.collector_id_path)

    logger.info("Collector configured", collector_id=collector_id, host=host, **describe_settings(settings))

    retry_policy = RetryPolicy(
        max_retries=settings.retry.max_retries,
        base_delay=settings.retry.base_delay,
        max_delay=settings.retry.max_delay,
    )

    async with ArchiveAPIClient(
        settings.server_url,
        settings.api_key,
        retry_policy=retry_policy,
        timeout=settings.retry.request_timeout,
    ) as client:
        engine = SyncEngine(
            client=client,
            git_scanner=GitScanner(
                host,
                max_depth=settings.scan.max_search_depth,
                commit_limit=settings.scan.commit_limit,
            ),
            session_scanner=SessionScanner(
                host, ToolResultLoader(max_bytes=settings.scan.tool_result_max_bytes)
            ),
            collector_id=collector_id,
            collector_name=settings.collector_name,
            host=host,
            os_info=get_os_info(),
            version=settings.version,
        )
        return await engine.run(
            source_dirs=source_dirs,
            projects_dirs=[settings.scan.projects_dir],
            dry_run=dry_run,
            verbose=verbose,
        )


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, verbose=args.verbose)
    logger = get_logger("main")

    print("Starting sync...")

    try:
        summary = asyncio.run(run_sync(settings, args.source_dirs, args.dry_run, args.verbose))
    except KeyboardInterrupt:
        print("\nSync interrupted by user", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error("Sync failed", error=str(e), exc_info=args.verbose)
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1

    print_summary(summary)
    return 0 if summary.success else 1


def run():
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
