"""Writes commit records that are not yet in the record store.

Write path for one call:

1. Look up the repository's KnownState (refreshed for large batches).
2. Skip records the state already knows and duplicates inside the input.
3. Write the rest in sub-batches, a bounded number in flight at a time.
4. Right before each create, query the store for that commit again.

Step 4 is the correctness backstop. The store offers no conditional create,
so check and create are two calls; an in-process claim per (repository,
identifier) serializes writers of the same commit inside this process,
which covers a push event and a backfill slice racing on one commit.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import tzinfo
from zoneinfo import ZoneInfo

from . import metrics
from .config import DEFAULT_LEGACY_TIMEZONE
from .dedup_cache import DedupCache
from .errors import DuplicateRecordError
from .models import MESSAGE_LIMIT, BatchResult, CommitRecord
from .store import RecordStore

logger = logging.getLogger("commit_mirror.batch_writer")

PROCESSED = "processed"
SKIPPED = "skipped"
ERROR = "error"


class BatchWriter:
    """Deduplicating, concurrency-bounded commit writer.

    Args:
        store: Record store receiving new rows
        cache: Dedup cache for the same store
        batch_size: Candidates per sub-batch
        concurrency: Maximum writes in flight within one call
        batch_delay_ms: Pause between sub-batches
        write_timeout: Timeout in seconds for each existence check and create
        force_refresh_threshold: Batches at least this large refresh the cache
        identifier_only_large_batches: Skip the legacy scan for large batches
            when the store has the identifier column
        message_limit: Stored message limit, for fingerprints
        legacy_timezone: Zone of the calendar date on date-only rows
        claim_recheck_delay: Pause before a waiter re-checks after the
            claim holder failed; a create that timed out may still land
    """

    def __init__(
        self,
        store: RecordStore,
        cache: DedupCache,
        batch_size: int = 10,
        concurrency: int = 10,
        batch_delay_ms: int = 200,
        write_timeout: float = 10.0,
        force_refresh_threshold: int = 100,
        identifier_only_large_batches: bool = False,
        message_limit: int = MESSAGE_LIMIT,
        legacy_timezone: tzinfo | None = None,
        claim_recheck_delay: float = 0.5,
    ) -> None:
        self.store = store
        self.cache = cache
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.batch_delay_ms = batch_delay_ms
        self.write_timeout = write_timeout
        self.force_refresh_threshold = force_refresh_threshold
        self.identifier_only_large_batches = identifier_only_large_batches
        self.message_limit = message_limit
        self.legacy_timezone = legacy_timezone or ZoneInfo(DEFAULT_LEGACY_TIMEZONE)
        self.claim_recheck_delay = claim_recheck_delay
        # (repository, identifier) -> future resolved with "commit now exists"
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}

    async def write(
        self,
        commits: Sequence[CommitRecord],
        repository: str,
        identifier_only: bool = False,
        source: str = "backfill",
    ) -> BatchResult:
        """Store every commit of ``commits`` that is not stored yet.

        Args:
            commits: Candidate records, any order, may contain duplicates
            repository: owner/name the records belong to
            identifier_only: skip the legacy fingerprint scan entirely
            source: metrics label (webhook, backfill, api)

        Returns:
            BatchResult; a failed write is counted, never raised.
        """
        result = BatchResult()
        if not commits:
            return result

        large = len(commits) >= self.force_refresh_threshold
        supported = await self.cache.identifiers_supported()
        skip_legacy = supported and (
            identifier_only or (large and self.identifier_only_large_batches)
        )
        state = await self.cache.get_known_state(
            repository, force_legacy_scan=not skip_legacy, force_refresh=large
        )

        candidates: list[CommitRecord] = []
        seen: set[str] = set()
        for record in commits:
            if record.identifier in seen or state.contains(
                record, self.message_limit, self.legacy_timezone
            ):
                result.skipped += 1
                continue
            seen.add(record.identifier)
            candidates.append(record)

        logger.info(
            "batch_partitioned",
            extra={
                "repository": repository,
                "source": source,
                "received": len(commits),
                "candidates": len(candidates),
                "known_skipped": result.skipped,
                "cache_complete": state.complete,
            },
        )

        project = self.store.project_name(repository)
        semaphore = asyncio.Semaphore(self.concurrency)
        for start in range(0, len(candidates), self.batch_size):
            sub_batch = candidates[start : start + self.batch_size]
            outcomes = await asyncio.gather(
                *(
                    self._write_one(record, repository, project, supported, semaphore)
                    for record in sub_batch
                )
            )
            for outcome in outcomes:
                if outcome == PROCESSED:
                    result.processed += 1
                elif outcome == SKIPPED:
                    result.skipped += 1
                else:
                    result.errors += 1

            if start + self.batch_size < len(candidates) and self.batch_delay_ms:
                await asyncio.sleep(self.batch_delay_ms / 1000)

        metrics.record_batch(source, result.processed, result.skipped, result.errors)
        logger.info(
            "batch_written",
            extra={"repository": repository, "source": source, **result.to_dict()},
        )
        return result

    async def _write_one(
        self,
        record: CommitRecord,
        repository: str,
        project: str,
        use_identifier: bool,
        semaphore: asyncio.Semaphore,
    ) -> str:
        key = (repository, record.identifier)
        async with semaphore:
            while (holder := self._inflight.get(key)) is not None:
                if await asyncio.shield(holder):
                    logger.debug(
                        "commit_claimed_elsewhere",
                        extra={"repository": repository, "identifier": record.identifier},
                    )
                    return SKIPPED
                if self.claim_recheck_delay:
                    await asyncio.sleep(self.claim_recheck_delay)

            claim = asyncio.get_running_loop().create_future()
            self._inflight[key] = claim
            outcome = ERROR
            try:
                outcome = await self._check_and_create(
                    record, repository, project, use_identifier
                )
            finally:
                del self._inflight[key]
                if not claim.done():
                    claim.set_result(outcome != ERROR)
            return outcome

    async def _check_and_create(
        self,
        record: CommitRecord,
        repository: str,
        project: str,
        use_identifier: bool,
    ) -> str:
        log_extra = {"repository": repository, "identifier": record.identifier}

        try:
            exists = await asyncio.wait_for(
                self.store.find_commit(record, project, use_identifier),
                timeout=self.write_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("race_guard_timeout", extra=log_extra)
            exists = False
        except Exception as e:
            # Fall through to the create
            logger.warning("race_guard_failed", extra={**log_extra, "error": str(e)})
            exists = False

        if exists:
            logger.debug("race_guard_skipped", extra=log_extra)
            self.cache.remember(repository, record)
            return SKIPPED

        try:
            await asyncio.wait_for(
                self.store.create_commit(record, project, use_identifier),
                timeout=self.write_timeout,
            )
        except DuplicateRecordError:
            self.cache.remember(repository, record)
            return SKIPPED
        except asyncio.TimeoutError:
            logger.error(
                "commit_write_timeout",
                extra={**log_extra, "timeout_seconds": self.write_timeout},
            )
            return ERROR
        except Exception as e:
            logger.error(
                "commit_write_failed",
                extra={**log_extra, "error": str(e), "error_type": type(e).__name__},
            )
            return ERROR

        self.cache.remember(repository, record)
        return PROCESSED
