"""Per-repository index of commits already present in the record store.

The cache is advisory. A stale or empty entry only costs extra existence
checks in the batch writer. Lookups never raise and no lock guards the
entries; concurrent callers may refresh the same repository twice.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from contextlib import aclosing

from . import metrics
from .models import MESSAGE_LIMIT, Capability, CommitRecord, KnownState
from .store import RecordStore

logger = logging.getLogger("commit_mirror.dedup_cache")


class DedupCache:
    """TTL and capacity bounded cache of KnownState per repository.

    Args:
        store: Record store used to rebuild entries
        ttl_seconds: Entry age after which it is re-fetched
        max_repos: Entry count cap; the oldest entry is evicted first
        max_pages: Safety page limit per scan
        scan_timeout: Upper bound in seconds for one scan
        message_limit: Stored message limit, for fingerprints
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        store: RecordStore,
        ttl_seconds: float = 1800,
        max_repos: int = 100,
        max_pages: int = 50,
        scan_timeout: float = 30.0,
        message_limit: int = MESSAGE_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_repos = max_repos
        self.max_pages = max_pages
        self.scan_timeout = scan_timeout
        self.message_limit = message_limit
        self._clock = clock
        self._entries: OrderedDict[str, KnownState] = OrderedDict()
        self._capability: Capability | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, repository: str) -> bool:
        return repository in self._entries

    # --- Schema capability ---

    async def identifier_capability(self) -> Capability:
        """Detect once per process whether the store has the identifier column.

        PRESENT and ABSENT are cached. When the column is missing an attempt
        is made to add it. UNKNOWN (the store could not be reached) is not
        cached, so the next call probes again.
        """
        if self._capability is not None:
            return self._capability

        capability = await self.store.probe_identifier_column()
        if capability is Capability.ABSENT:
            if await self.store.add_identifier_column():
                capability = Capability.PRESENT
            else:
                logger.warning(
                    "identifier_column_unavailable",
                    extra={"fallback": "legacy message|timestamp dedup"},
                )

        if capability is Capability.UNKNOWN:
            return capability

        self._capability = capability
        logger.info("identifier_capability_detected", extra={"capability": capability.value})
        return capability

    async def identifiers_supported(self) -> bool:
        return await self.identifier_capability() is Capability.PRESENT

    # --- Lookup ---

    def _is_fresh(self, state: KnownState) -> bool:
        return self._clock() - state.fetched_at < self.ttl_seconds

    async def get_known_state(
        self,
        repository: str,
        force_legacy_scan: bool = True,
        force_refresh: bool = False,
    ) -> KnownState:
        """Return what is known to be stored for ``repository``.

        Args:
            repository: owner/name
            force_legacy_scan: include legacy fingerprints of rows without a
                SHA. Ignored (always on) when the store has no SHA column.
            force_refresh: re-fetch even if the entry is fresh

        Returns:
            The cached or freshly scanned state. On any scan failure an empty
            state is returned and nothing is cached.
        """
        supported = await self.identifiers_supported()
        legacy = force_legacy_scan or not supported

        entry = self._entries.get(repository)
        if (
            entry is not None
            and not force_refresh
            and self._is_fresh(entry)
            and entry.identifiers_supported == supported
            and (entry.legacy_scanned or not legacy)
        ):
            metrics.dedup_refresh_total.labels(result="hit").inc()
            return entry

        try:
            state = await asyncio.wait_for(
                self._scan(repository, supported, legacy), timeout=self.scan_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "dedup_scan_timeout",
                extra={"repository": repository, "timeout_seconds": self.scan_timeout},
            )
            metrics.dedup_refresh_total.labels(result="failed").inc()
            return KnownState.empty(identifiers_supported=supported)
        except Exception as e:
            logger.warning(
                "dedup_scan_failed",
                extra={"repository": repository, "error": str(e)},
            )
            metrics.dedup_refresh_total.labels(result="failed").inc()
            return KnownState.empty(identifiers_supported=supported)

        self._put(repository, state)
        metrics.dedup_refresh_total.labels(
            result="refreshed" if state.complete else "incomplete"
        ).inc()
        return state

    async def _scan(
        self, repository: str, supported: bool, legacy: bool
    ) -> KnownState:
        state = KnownState(identifiers_supported=supported, legacy_scanned=legacy)
        project = self.store.project_name(repository)
        pages = 0
        rows_seen = 0

        records = self.store.iter_project_records(
            project, identifiers_only=supported and not legacy
        )
        async with aclosing(records):
            async for rows in records:
                if pages >= self.max_pages:
                    state.complete = False
                    logger.warning(
                        "dedup_scan_page_limit",
                        extra={
                            "repository": repository,
                            "max_pages": self.max_pages,
                            "rows_seen": rows_seen,
                        },
                    )
                    break
                pages += 1
                rows_seen += len(rows)
                for row in rows:
                    if supported and row.identifier:
                        state.identifiers.add(row.identifier)
                    elif legacy and row.fingerprint:
                        state.fingerprints.add(row.fingerprint)

        state.fetched_at = self._clock()
        logger.info(
            "dedup_scan_completed",
            extra={
                "repository": repository,
                "pages": pages,
                "identifiers": len(state.identifiers),
                "fingerprints": len(state.fingerprints),
                "complete": state.complete,
                "legacy_scanned": legacy,
            },
        )
        return state

    # --- Maintenance ---

    def _put(self, repository: str, state: KnownState) -> None:
        self._entries[repository] = state
        self._entries.move_to_end(repository)
        while len(self._entries) > self.max_repos:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("dedup_cache_evicted", extra={"repository": evicted})
        metrics.dedup_cache_repositories.set(len(self._entries))

    def remember(self, repository: str, record: CommitRecord) -> None:
        """Record a successful write in the live entry, if any."""
        entry = self._entries.get(repository)
        if entry is not None:
            entry.add(record, self.message_limit)

    def invalidate(self, repository: str) -> None:
        if self._entries.pop(repository, None) is not None:
            metrics.dedup_cache_repositories.set(len(self._entries))

    def clear(self) -> None:
        self._entries.clear()
        metrics.dedup_cache_repositories.set(0)
