"""Removal of duplicate rows already in the record store.

Rows written before the SHA column existed, or by concurrent writers in
separate processes, can repeat a commit. The sweep scans one project at a
time, keeps the oldest row of each group and archives the rest in batches
with a bounded number of requests in flight.
"""

import asyncio
import logging
import time
from collections.abc import Sequence

from . import metrics
from .dedup_cache import DedupCache
from .models import StoredCommit, SweepResult
from .store import RecordStore

logger = logging.getLogger("commit_mirror.sweeper")


class DuplicateSweeper:
    """Archives duplicate commit rows per repository.

    Args:
        store: Record store to clean
        cache: Dedup cache whose entries are dropped after archiving
        batch_size: Rows archived per batch
        concurrency: Archive requests in flight
        batch_delay_ms: Pause between batches
    """

    def __init__(
        self,
        store: RecordStore,
        cache: DedupCache | None = None,
        batch_size: int = 50,
        concurrency: int = 10,
        batch_delay_ms: int = 100,
    ) -> None:
        self.store = store
        self.cache = cache
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.batch_delay_ms = batch_delay_ms

    async def sweep(
        self, repositories: Sequence[str], dry_run: bool = False
    ) -> list[SweepResult]:
        """Sweep each repository in turn; failures are reported, not raised."""
        return [
            await self.sweep_repository(repo, dry_run=dry_run)
            for repo in dict.fromkeys(repositories)
        ]

    async def sweep_repository(
        self, repository: str, dry_run: bool = False
    ) -> SweepResult:
        """Find and (unless ``dry_run``) archive duplicate rows of ``repository``."""
        result = SweepResult(repository=repository, dry_run=dry_run)
        project = self.store.project_name(repository)
        start = time.perf_counter()

        try:
            result.scanned, extras = await self.store.find_duplicates(project)
        except Exception as e:
            result.error = str(e) or type(e).__name__
            logger.error(
                "duplicate_scan_failed",
                extra={"repository": repository, "error": result.error},
            )
            return result

        result.duplicates = len(extras)
        if extras:
            metrics.duplicate_rows_total.labels(result="found").inc(len(extras))
        if extras and not dry_run:
            await self._archive(extras, result)
            if self.cache is not None:
                self.cache.invalidate(repository)

        logger.info(
            "duplicate_sweep_completed",
            extra={
                **result.to_dict(),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return result

    async def _archive(self, rows: list[StoredCommit], result: SweepResult) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def archive_one(row: StoredCommit) -> bool:
            async with semaphore:
                try:
                    await self.store.archive_record(row.page_id)
                except Exception as e:
                    logger.warning(
                        "duplicate_archive_failed",
                        extra={"page_id": row.page_id, "error": str(e)},
                    )
                    return False
                return True

        for offset in range(0, len(rows), self.batch_size):
            batch = rows[offset : offset + self.batch_size]
            outcomes = await asyncio.gather(*(archive_one(row) for row in batch))
            archived = sum(outcomes)
            result.archived += archived
            result.errors += len(outcomes) - archived
            if archived:
                metrics.duplicate_rows_total.labels(result="archived").inc(archived)
            if len(outcomes) > archived:
                metrics.duplicate_rows_total.labels(result="failed").inc(
                    len(outcomes) - archived
                )

            if offset + self.batch_size < len(rows) and self.batch_delay_ms:
                await asyncio.sleep(self.batch_delay_ms / 1000)
