"""Record store interface used by the dedup cache, batch writer and sweeper."""

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Protocol

from .models import Capability, CommitRecord, StoredCommit


class RecordStore(Protocol):
    """Operations the ingestion core needs from the external record store.

    ``find_commit`` and ``create_commit`` are separate calls: the store has
    no conditional create, so the batch writer checks immediately before
    writing. ``create_commit`` may raise DuplicateRecordError for stores
    that enforce uniqueness themselves.
    """

    def project_name(self, repository: str) -> str: ...

    async def probe_identifier_column(self) -> Capability: ...

    async def add_identifier_column(self) -> bool: ...

    def iter_project_records(
        self, project: str, identifiers_only: bool = False
    ) -> AsyncIterator[list[StoredCommit]]: ...

    async def find_commit(
        self, record: CommitRecord, project: str, use_identifier: bool
    ) -> bool: ...

    async def create_commit(
        self, record: CommitRecord, project: str, include_identifier: bool
    ) -> str: ...

    async def latest_commit_timestamp(self, project: str) -> datetime | None: ...

    async def find_duplicates(self, project: str) -> tuple[int, list[StoredCommit]]: ...

    async def archive_record(self, page_id: str) -> None: ...
