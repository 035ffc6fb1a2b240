"""Process-wide service object.

MirrorService owns the HTTP clients, the dedup cache (the only shared
mutable state) and every component built on them. One instance is created
at startup, passed explicitly to the web app or CLI, and closed at shutdown.
"""

import logging
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from .batch_writer import BatchWriter
from .config import MirrorConfig
from .connectors.github import BackfillSource, GitHubClient
from .connectors.notion import NotionClient, NotionRecordStore
from .coordinator import SyncCoordinator
from .dedup_cache import DedupCache
from .errors import ConfigurationError, InvalidCommitError
from .models import BatchResult, CommitRecord, SweepResult, SyncMode, SyncStats
from .receiver import EventReceiver
from .store import RecordStore
from .sweeper import DuplicateSweeper

logger = logging.getLogger("commit_mirror.service")


class MirrorService:
    """Wires the ingestion pipeline together.

    Components can be injected for tests; ``from_config`` builds the
    production set. ``source`` and ``coordinator`` are None when no GitHub
    token is configured, which is enough for the webhook server.
    """

    def __init__(
        self,
        config: MirrorConfig,
        store: RecordStore,
        cache: DedupCache,
        writer: BatchWriter,
        receiver: EventReceiver,
        source: BackfillSource | None = None,
        coordinator: SyncCoordinator | None = None,
        sweeper: DuplicateSweeper | None = None,
        clients: Sequence[Any] = (),
    ) -> None:
        self.config = config
        self.store = store
        self.cache = cache
        self.writer = writer
        self.receiver = receiver
        self.source = source
        self.coordinator = coordinator
        self.sweeper = sweeper or DuplicateSweeper(store, cache=cache)
        self._clients = list(clients)

    @classmethod
    def from_config(cls, config: MirrorConfig) -> "MirrorService":
        notion = NotionClient(
            config.notion_api_key.get_secret_value(),
            config.notion_database_id,
            base_url=config.notion_api_url,
        )
        store = NotionRecordStore(
            notion,
            project_name_style=config.project_name_style,
            message_limit=config.message_max_length,
            page_delay_ms=config.notion_page_delay_ms,
            legacy_timezone=config.legacy_tzinfo,
        )
        cache = DedupCache(
            store,
            ttl_seconds=config.dedup_cache_ttl_seconds,
            max_repos=config.dedup_cache_max_repos,
            max_pages=config.dedup_scan_max_pages,
            scan_timeout=config.dedup_scan_timeout_seconds,
            message_limit=config.message_max_length,
        )
        writer = BatchWriter(
            store,
            cache,
            batch_size=config.write_batch_size,
            concurrency=config.write_concurrency,
            batch_delay_ms=config.write_batch_delay_ms,
            write_timeout=config.write_timeout_seconds,
            force_refresh_threshold=config.dedup_force_refresh_threshold,
            identifier_only_large_batches=config.identifier_only_large_batches,
            message_limit=config.message_max_length,
            legacy_timezone=config.legacy_tzinfo,
        )
        receiver = EventReceiver(
            config.webhook_secret.get_secret_value(),
            writer,
            timeout_seconds=config.webhook_timeout_seconds,
        )

        sweeper = DuplicateSweeper(
            store,
            cache=cache,
            batch_size=config.dedupe_batch_size,
            concurrency=config.dedupe_concurrency,
            batch_delay_ms=config.dedupe_batch_delay_ms,
        )

        clients: list[Any] = [notion]
        source = coordinator = None
        token = config.github_token.get_secret_value()
        if token:
            github = GitHubClient(token, base_url=config.github_api_url)
            clients.append(github)
            source = BackfillSource(
                github,
                page_delay_ms=config.github_page_delay_ms,
                max_pages=config.github_max_pages,
            )
            coordinator = SyncCoordinator(
                source,
                store,
                writer,
                repo_concurrency=config.repo_concurrency,
                repo_delay_ms=config.repo_delay_ms,
                batch_size=config.backfill_batch_size,
                batch_delay_ms=config.backfill_batch_delay_ms,
                overlap_days=config.overlap_days,
                fallback_days=config.fallback_days,
                rate_limit_retries=config.rate_limit_retries,
                rate_limit_max_wait=config.rate_limit_max_wait_seconds,
            )

        return cls(
            config,
            store,
            cache,
            writer,
            receiver,
            source=source,
            coordinator=coordinator,
            sweeper=sweeper,
            clients=clients,
        )

    async def __aenter__(self) -> "MirrorService":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close every owned HTTP client and drop cached state."""
        for client in self._clients:
            await client.close()
        self._clients.clear()
        self.cache.clear()

    # --- Backfill ---

    async def resolve_repositories(
        self, repositories: Sequence[str] = (), owner: str | None = None
    ) -> list[str]:
        """Pick the repositories for a backfill run.

        Explicit names win, then GITHUB_REPOS, then every non-fork repository
        of ``owner`` (default GITHUB_OWNER).
        """
        if repositories:
            return list(repositories)
        if self.config.repository_list:
            return self.config.repository_list
        owner = owner or self.config.github_owner
        if not owner:
            raise ConfigurationError(
                "No repositories given and GITHUB_OWNER is not set"
            )
        if self.source is None:
            raise ConfigurationError("GITHUB_TOKEN is required to list repositories")
        return await self.source.list_repositories(owner)

    async def backfill(
        self, repositories: Sequence[str], mode: SyncMode
    ) -> SyncStats:
        if self.coordinator is None:
            raise ConfigurationError("GITHUB_TOKEN is required for backfill")
        return await self.coordinator.sync_repositories(repositories, mode)

    # --- Direct submission ---

    async def ingest_submissions(
        self, items: Sequence[dict[str, Any]]
    ) -> tuple[dict[str, BatchResult], int]:
        """Write commits posted to /api/commits, grouped by repository.

        Returns:
            (per-repository results, number of invalid entries dropped)
        """
        grouped: dict[str, list[CommitRecord]] = defaultdict(list)
        invalid = 0
        for item in items:
            try:
                record = CommitRecord.from_submission(item)
            except InvalidCommitError as e:
                invalid += 1
                logger.warning("submitted_commit_invalid", extra={"error": str(e)})
                continue
            grouped[record.repository].append(record)

        results = {}
        for repository, records in grouped.items():
            results[repository] = await self.writer.write(
                records, repository, source="api"
            )
        return results, invalid

    # --- Duplicate cleanup ---

    async def dedupe(
        self, repositories: Sequence[str], dry_run: bool = False
    ) -> list[SweepResult]:
        return await self.sweeper.sweep(repositories, dry_run=dry_run)
