"""commit-mirror command line.

Usage:
    commit-mirror backfill                      # last 6 months, all owner repos
    commit-mirror backfill --months 12          # fixed window
    commit-mirror backfill --last               # incremental from stored state
    commit-mirror backfill --last --repo acme/widgets --identifier-only
    commit-mirror dedupe --repo acme/widgets --dry-run  # report duplicate rows
    commit-mirror check                         # verify GitHub and Notion access
    commit-mirror serve --port 3000             # webhook server
"""

import argparse
import asyncio
import json
import sys

from pydantic import ValidationError

from .config import MONTHS_MAX, MONTHS_MIN, MirrorConfig, get_config
from .connectors.github import GitHubClientError
from .errors import ConfigurationError
from .metrics import push_sync_metrics
from .models import SweepResult, SyncMode, SyncStats
from .service import MirrorService


def _months(value: str) -> int:
    try:
        months = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid month count: {value!r}") from None
    if not MONTHS_MIN <= months <= MONTHS_MAX:
        raise argparse.ArgumentTypeError(
            f"months must be between {MONTHS_MIN} and {MONTHS_MAX}"
        )
    return months


def print_summary(stats: SyncStats, mode: SyncMode) -> None:
    print()
    print("Backfill Summary")
    print("=" * 50)
    print(f"Mode: {mode.describe()}")
    print(f"Repositories: {stats.repositories} ({stats.failed_repositories} failed)")
    print(f"Commits fetched: {stats.commits_fetched}")
    print(f"  Processed: {stats.processed}")
    print(f"  Skipped (already stored): {stats.skipped}")
    print(f"  Errors: {stats.errors}")
    print(f"Rate limit delays: {stats.delays} ({stats.delay_seconds:.1f}s)")
    print(f"Duration: {stats.duration_seconds:.1f}s")
    for result in stats.results:
        if result.failed:
            print(f"  FAILED {result.repository}: {result.error}")


def print_sweep_summary(results: list[SweepResult], dry_run: bool) -> None:
    print()
    print("Duplicate Sweep Summary" + (" (dry run)" if dry_run else ""))
    print("=" * 50)
    for result in results:
        if result.failed:
            print(f"  FAILED {result.repository}: {result.error}")
            continue
        line = (
            f"  {result.repository}: {result.scanned} rows, "
            f"{result.duplicates} duplicates"
        )
        if not dry_run:
            line += f", {result.archived} archived, {result.errors} errors"
        print(line)
    print(f"Duplicates found: {sum(r.duplicates for r in results)}")
    if not dry_run:
        print(f"Archived: {sum(r.archived for r in results)}")


def select_mode(config: MirrorConfig, args: argparse.Namespace) -> SyncMode:
    if args.last:
        return SyncMode.incremental(identifier_only=args.identifier_only)
    return SyncMode.fixed_window(
        args.months or config.default_months,
        identifier_only=args.identifier_only,
    )


async def run_backfill(
    config: MirrorConfig, args: argparse.Namespace, mode: SyncMode
) -> SyncStats:
    async with MirrorService.from_config(config) as service:
        repositories = await service.resolve_repositories(args.repo, owner=args.owner)
        print(f"Backfilling {len(repositories)} repositories ({mode.describe()})...")
        stats = await service.backfill(repositories, mode)

    if config.pushgateway_enabled:
        push_sync_metrics(stats, config.pushgateway_url)
    return stats


async def run_dedupe(
    config: MirrorConfig, args: argparse.Namespace
) -> list[SweepResult]:
    async with MirrorService.from_config(config) as service:
        repositories = await service.resolve_repositories(args.repo, owner=args.owner)
        verb = "Scanning" if args.dry_run else "Cleaning"
        print(f"{verb} {len(repositories)} repositories for duplicate rows...")
        return await service.dedupe(repositories, dry_run=args.dry_run)


async def run_check(config: MirrorConfig) -> bool:
    async with MirrorService.from_config(config) as service:
        ok = True
        notion = await service.store.client.test_connection()
        print(f"Notion: {json.dumps(notion)}")
        ok = ok and notion["success"]
        capability = await service.cache.identifier_capability()
        print(f"Identifier column: {capability.value}")
        if service.source is not None:
            github = await service.source.client.test_connection()
            print(f"GitHub: {json.dumps(github)}")
            ok = ok and github["success"]
        else:
            print("GitHub: not configured (GITHUB_TOKEN unset)")
    return ok


def serve(config: MirrorConfig, host: str | None, port: int | None) -> None:
    import uvicorn

    from .app import create_app

    config.require_server()
    uvicorn.run(
        create_app(),
        host=host or config.server_host,
        port=port or config.server_port,
        log_config=None,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commit-mirror",
        description="Mirror GitHub commits into a Notion database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration (.env or environment):
  GITHUB_TOKEN, GITHUB_OWNER, NOTION_API_KEY, NOTION_DATABASE_ID
  WEBHOOK_SECRET (serve), COMMIT_API_KEY (optional, enables /api/commits)
  LEGACY_TIMEZONE (zone of date-only rows, default America/New_York)
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backfill = sub.add_parser("backfill", help="Fetch commit history and mirror it")
    window = backfill.add_mutually_exclusive_group()
    window.add_argument(
        "-m",
        "--months",
        type=_months,
        help=f"Fixed window in months ({MONTHS_MIN}-{MONTHS_MAX}, default from config)",
    )
    window.add_argument(
        "-l",
        "--last",
        action="store_true",
        help="Incremental: only commits newer than the latest stored one",
    )
    backfill.add_argument(
        "-s",
        "--identifier-only",
        action="store_true",
        help="Deduplicate by SHA only, skipping the legacy message|date scan",
    )
    backfill.add_argument("--owner", help="Owner whose repositories to process")
    backfill.add_argument(
        "--repo",
        action="append",
        default=[],
        help="owner/name to process (repeatable); default: all owner repositories",
    )

    dedupe = sub.add_parser(
        "dedupe", help="Archive duplicate rows already in the record store"
    )
    dedupe.add_argument("--owner", help="Owner whose repositories to process")
    dedupe.add_argument(
        "--repo",
        action="append",
        default=[],
        help="owner/name to clean (repeatable); default: all owner repositories",
    )
    dedupe.add_argument(
        "--dry-run",
        action="store_true",
        help="Report duplicates without archiving them",
    )

    sub.add_parser("check", help="Verify GitHub and Notion credentials")

    server = sub.add_parser("serve", help="Run the webhook server")
    server.add_argument("--host", help="Bind address")
    server.add_argument("--port", type=int, help="Bind port")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = get_config()
        if args.command == "backfill":
            need_owner = not (args.repo or args.owner or config.repository_list)
            config.require_backfill(need_owner=need_owner)
            mode = select_mode(config, args)
            stats = asyncio.run(run_backfill(config, args, mode))
            print_summary(stats, mode)
            return 0
        if args.command == "dedupe":
            if args.repo or config.repository_list:
                config.require_store()
            else:
                config.require_backfill(need_owner=not args.owner)
            results = asyncio.run(run_dedupe(config, args))
            print_sweep_summary(results, args.dry_run)
            return 0
        if args.command == "check":
            return 0 if asyncio.run(run_check(config)) else 1
        serve(config, args.host, args.port)
        return 0
    except (ConfigurationError, GitHubClientError, ValidationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
