"""Backfill orchestration across many repositories.

Repositories are synced in chunks; within a chunk they run concurrently and
are joined with ``gather(return_exceptions=True)`` so one failing repository
never cancels its neighbours. Every delay and chunk size comes from
configuration.
"""

import asyncio
import calendar
import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from . import metrics
from .batch_writer import BatchWriter
from .connectors.github.backfill import BackfillSource
from .connectors.github.client import RateLimitExceeded
from .models import CommitRecord, RepoSyncResult, SyncMode, SyncStats
from .store import RecordStore
from .timing import timed_operation

logger = logging.getLogger("commit_mirror.coordinator")


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar-month subtraction; the day is clamped to the target month."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """Runs backfill for a list of repositories.

    Args:
        source: Commit history source
        store: Record store, for the incremental sync cursor
        writer: Batch writer shared with the webhook path
        repo_concurrency: Repositories per chunk
        repo_delay_ms: Pause between chunks
        batch_size: Commits per writer call
        batch_delay_ms: Pause between writer calls for one repository
        overlap_days: Backward pad on the incremental cursor
        fallback_days: Look-back when a repository has no stored commits
        rate_limit_retries: Fetch retries after RateLimitExceeded
        rate_limit_max_wait: Longest wait for a rate limit reset (seconds)
        now: Clock returning an aware datetime, injectable for tests
    """

    def __init__(
        self,
        source: BackfillSource,
        store: RecordStore,
        writer: BatchWriter,
        repo_concurrency: int = 3,
        repo_delay_ms: int = 300,
        batch_size: int = 150,
        batch_delay_ms: int = 100,
        overlap_days: int = 1,
        fallback_days: int = 7,
        rate_limit_retries: int = 2,
        rate_limit_max_wait: float = 60.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.store = store
        self.writer = writer
        self.repo_concurrency = repo_concurrency
        self.repo_delay_ms = repo_delay_ms
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self.overlap_days = overlap_days
        self.fallback_days = fallback_days
        self.rate_limit_retries = rate_limit_retries
        self.rate_limit_max_wait = rate_limit_max_wait
        self._now = now

    async def sync_repositories(
        self, repositories: Sequence[str], mode: SyncMode
    ) -> SyncStats:
        """Sync every repository and aggregate the outcome.

        Never raises for repository-level failures; each failure is logged
        and reported in the returned stats.
        """
        repos = list(dict.fromkeys(repositories))
        stats = SyncStats()
        start = time.perf_counter()
        logger.info(
            "sync_run_started",
            extra={
                "repositories": len(repos),
                "mode": mode.describe(),
                "identifier_only": mode.identifier_only,
                "chunk_size": self.repo_concurrency,
            },
        )

        for offset in range(0, len(repos), self.repo_concurrency):
            chunk = repos[offset : offset + self.repo_concurrency]
            outcomes = await asyncio.gather(
                *(self.sync_repository(repo, mode, stats) for repo in chunk),
                return_exceptions=True,
            )
            for repo, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "repository_sync_crashed",
                        extra={
                            "repository": repo,
                            "error": str(outcome),
                            "error_type": type(outcome).__name__,
                        },
                    )
                    metrics.repository_syncs_total.labels(status="failed").inc()
                    outcome = RepoSyncResult(
                        repository=repo, error=str(outcome) or type(outcome).__name__
                    )
                stats.add(outcome)

            if offset + self.repo_concurrency < len(repos):
                await self._pause(self.repo_delay_ms, stats)

        stats.duration_seconds = time.perf_counter() - start
        logger.info(
            "sync_run_completed",
            extra={k: v for k, v in stats.to_dict().items() if k != "results"},
        )
        return stats

    async def sync_repository(
        self,
        repository: str,
        mode: SyncMode,
        stats: SyncStats | None = None,
    ) -> RepoSyncResult:
        """Fetch and write one repository's commits for ``mode``'s window.

        A fetch failure is recorded on the result and contributes zero
        commits; it is not raised.
        """
        result = RepoSyncResult(repository=repository)
        start = time.perf_counter()

        try:
            with timed_operation(
                "repository_fetch", logger, extra={"repository": repository}
            ):
                result.since = await self.window_start(repository, mode)
                commits = await self._fetch_with_retry(repository, result.since)
        except Exception as e:
            result.error = str(e) or type(e).__name__
            result.duration_seconds = time.perf_counter() - start
            metrics.repository_syncs_total.labels(status="failed").inc()
            return result

        result.commits_fetched = len(commits)
        for offset in range(0, len(commits), self.batch_size):
            batch = commits[offset : offset + self.batch_size]
            result.batch.merge(
                await self.writer.write(
                    batch, repository, identifier_only=mode.identifier_only
                )
            )
            if offset + self.batch_size < len(commits):
                await self._pause(self.batch_delay_ms, stats)

        result.duration_seconds = time.perf_counter() - start
        metrics.repository_syncs_total.labels(status="success").inc()
        metrics.sync_duration_seconds.observe(result.duration_seconds)
        logger.info("repository_synced", extra=result.to_dict())
        return result

    async def window_start(self, repository: str, mode: SyncMode) -> datetime:
        """Start of the fetch window for ``repository``.

        Incremental: newest stored commit minus the overlap, or the fallback
        look-back when nothing is stored. Fixed window: now minus N months.
        """
        now = self._now()
        if not mode.is_incremental:
            return subtract_months(now, mode.months)

        cursor = await self.store.latest_commit_timestamp(
            self.store.project_name(repository)
        )
        if cursor is None:
            logger.info(
                "sync_cursor_missing",
                extra={"repository": repository, "fallback_days": self.fallback_days},
            )
            return now - timedelta(days=self.fallback_days)
        return cursor - timedelta(days=self.overlap_days)

    async def _fetch_with_retry(
        self, repository: str, since: datetime
    ) -> list[CommitRecord]:
        for attempt in range(self.rate_limit_retries + 1):
            try:
                return await self.source.fetch_commits(repository, since)
            except RateLimitExceeded as e:
                if attempt >= self.rate_limit_retries:
                    raise
                wait = (e.reset_at - self._now()).total_seconds()
                wait = min(max(wait, 1.0), self.rate_limit_max_wait)
                logger.warning(
                    "repository_rate_limited",
                    extra={
                        "repository": repository,
                        "wait_seconds": round(wait, 1),
                        "attempt": attempt + 1,
                        "max_retries": self.rate_limit_retries,
                    },
                )
                await asyncio.sleep(wait)
        return []

    async def _pause(self, delay_ms: int, stats: SyncStats | None) -> None:
        if not delay_ms:
            return
        if stats is not None:
            stats.delays += 1
            stats.delay_seconds += delay_ms / 1000
        await asyncio.sleep(delay_ms / 1000)
