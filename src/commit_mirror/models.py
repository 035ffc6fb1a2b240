"""Data models for the commit ingestion pipeline.

CommitRecord is the origin-agnostic unit of work: push events and backfill
pages are both normalized into it, so the dedup cache and batch writer never
need to know where a commit came from.
"""

import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Any

from .config import MONTHS_MAX, MONTHS_MIN
from .errors import InvalidCommitError

__all__ = [
    "MESSAGE_LIMIT",
    "TRUNCATION_MARKER",
    "BatchResult",
    "Capability",
    "CommitRecord",
    "KnownState",
    "RepoSyncResult",
    "StoredCommit",
    "SweepResult",
    "SyncMode",
    "SyncStats",
    "duplicate_rows",
    "legacy_fingerprint",
    "parse_timestamp",
    "truncate_message",
]

# Notion rich text content limit
MESSAGE_LIMIT = 2000
TRUNCATION_MARKER = "..."

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def truncate_message(
    message: str, limit: int = MESSAGE_LIMIT, marker: str = TRUNCATION_MARKER
) -> str:
    """Bound a commit message to the store's field limit.

    A message of exactly ``limit`` characters is returned unchanged. Longer
    messages keep their head and end with ``marker``; the result is exactly
    ``limit`` characters long.
    """
    if len(message) <= limit:
        return message
    return message[: limit - len(marker)] + marker


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts the trailing 'Z' that GitHub emits. Naive values are taken as UTC.

    Raises:
        ValueError: if the value is empty or not ISO 8601.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value or not isinstance(value, str):
            raise ValueError(f"Invalid timestamp: {value!r}")
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _utc_seconds(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def legacy_fingerprint(message: str, timestamp: datetime | date) -> str:
    """Build the ``message|timestamp`` key used when rows carry no SHA.

    ``message`` must already be the stored (truncated) form. A ``date``
    produces the date-only form written by older versions.
    """
    if isinstance(timestamp, datetime):
        return f"{message}|{_utc_seconds(timestamp)}"
    return f"{message}|{timestamp.isoformat()}"


@dataclass(frozen=True)
class CommitRecord:
    """One source-control commit, normalized.

    Attributes:
        identifier: Commit SHA
        message: Full commit message (truncated only when stored)
        author_name: Author display name
        author_email: Author contact string
        timestamp: Authored time, aware UTC
        repository: Owning repository in owner/name form
        url: Link back to the commit on the source system
    """

    identifier: str
    message: str
    author_name: str
    author_email: str
    timestamp: datetime
    repository: str
    url: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.repository, self.identifier)

    def stored_message(self, limit: int = MESSAGE_LIMIT) -> str:
        return truncate_message(self.message, limit)

    def local_date(self, tz: tzinfo = timezone.utc) -> date:
        """Calendar date of the commit as seen in ``tz``."""
        return self.timestamp.astimezone(tz).date()

    def fingerprints(
        self, limit: int = MESSAGE_LIMIT, tz: tzinfo = timezone.utc
    ) -> tuple[str, str]:
        """Full and date-only legacy fingerprints of this commit.

        Date-only rows carry the calendar date in the zone they were written
        in, so the date-only form is computed in ``tz``.
        """
        stored = self.stored_message(limit)
        return (
            legacy_fingerprint(stored, self.timestamp),
            legacy_fingerprint(stored, self.local_date(tz)),
        )

    @classmethod
    def from_push_commit(
        cls, repository: str, payload: dict[str, Any]
    ) -> "CommitRecord":
        """Normalize one entry of a push event's ``commits`` array.

        Raises:
            InvalidCommitError: when id or timestamp is missing or malformed.
        """
        if not isinstance(payload, dict):
            raise InvalidCommitError(f"Commit entry is not an object: {payload!r}")
        identifier = payload.get("id")
        if not identifier or not isinstance(identifier, str):
            raise InvalidCommitError("Push commit has no id")
        author = payload.get("author") or {}
        if not isinstance(author, dict):
            raise InvalidCommitError(f"Push commit {identifier} author is not an object")
        try:
            timestamp = parse_timestamp(payload.get("timestamp"))
        except ValueError as e:
            raise InvalidCommitError(
                f"Push commit {identifier} has invalid timestamp"
            ) from e
        return cls(
            identifier=identifier,
            message=payload.get("message") or "",
            author_name=author.get("name") or author.get("username") or "Unknown",
            author_email=author.get("email") or "",
            timestamp=timestamp,
            repository=repository,
            url=payload.get("url") or "",
        )

    @classmethod
    def from_api_commit(cls, repository: str, item: dict[str, Any]) -> "CommitRecord":
        """Normalize one item of ``GET /repos/{owner}/{repo}/commits``.

        Raises:
            InvalidCommitError: when sha or the author date is missing or malformed.
        """
        if not isinstance(item, dict):
            raise InvalidCommitError(f"Commit item is not an object: {item!r}")
        identifier = item.get("sha")
        if not identifier or not isinstance(identifier, str):
            raise InvalidCommitError("API commit has no sha")
        commit = item.get("commit") or {}
        author = commit.get("author") if isinstance(commit, dict) else None
        if not isinstance(author, dict):
            raise InvalidCommitError(f"API commit {identifier} has no author object")
        try:
            timestamp = parse_timestamp(author.get("date"))
        except ValueError as e:
            raise InvalidCommitError(
                f"API commit {identifier} has invalid author date"
            ) from e
        return cls(
            identifier=identifier,
            message=commit.get("message") or "",
            author_name=author.get("name") or "Unknown",
            author_email=author.get("email") or "",
            timestamp=timestamp,
            repository=repository,
            url=item.get("html_url") or "",
        )

    @classmethod
    def from_submission(cls, item: dict[str, Any]) -> "CommitRecord":
        """Normalize one entry posted to /api/commits.

        Shape: ``{id|hash, message, date, author, projectId, url?}`` where
        ``author`` is a name string or ``{name, email}`` and ``projectId``
        names the repository.

        Raises:
            InvalidCommitError: when id, projectId or date is missing or malformed.
        """
        if not isinstance(item, dict):
            raise InvalidCommitError(f"Commit entry is not an object: {item!r}")
        identifier = item.get("id") or item.get("hash")
        if not identifier or not isinstance(identifier, str):
            raise InvalidCommitError("Submitted commit has no id or hash")
        repository = item.get("projectId")
        if not repository or not isinstance(repository, str):
            raise InvalidCommitError(f"Submitted commit {identifier} has no projectId")
        author = item.get("author") or {}
        if isinstance(author, str):
            author = {"name": author}
        elif not isinstance(author, dict):
            raise InvalidCommitError(f"Submitted commit {identifier} author is malformed")
        try:
            timestamp = parse_timestamp(item.get("date") or item.get("timestamp"))
        except ValueError as e:
            raise InvalidCommitError(
                f"Submitted commit {identifier} has invalid date"
            ) from e
        return cls(
            identifier=identifier,
            message=item.get("message") or "",
            author_name=author.get("name") or "Unknown",
            author_email=author.get("email") or "",
            timestamp=timestamp,
            repository=repository,
            url=item.get("url") or "",
        )


@dataclass(frozen=True)
class StoredCommit:
    """A commit row as read back from the record store."""

    page_id: str
    project: str
    message: str
    timestamp: datetime | None
    date_only: bool = False
    identifier: str | None = None

    @property
    def fingerprint(self) -> str | None:
        if self.timestamp is None:
            return None
        if self.date_only:
            return legacy_fingerprint(self.message, self.timestamp.date())
        return legacy_fingerprint(self.message, self.timestamp)

    @property
    def duplicate_key(self) -> str | None:
        """Grouping key for duplicate cleanup: SHA, else message and UTC day."""
        if self.identifier:
            return f"sha:{self.identifier}"
        if self.timestamp is None:
            return None
        return f"{self.message}|{self.timestamp.date().isoformat()}"


class Capability(str, Enum):
    """Result of probing the record store for the identifier column."""

    PRESENT = "present"
    ABSENT = "absent"
    UNKNOWN = "unknown"


@dataclass
class KnownState:
    """What the dedup cache knows is already stored for one repository.

    Attributes:
        identifiers: SHAs confirmed present
        fingerprints: legacy message|timestamp keys of rows without a SHA
        fetched_at: monotonic time of the scan, for TTL expiry
        complete: False when the scan stopped at its page limit or failed
        identifiers_supported: whether the store has the identifier column
        legacy_scanned: whether rows without a SHA were included in the scan
    """

    identifiers: set[str] = field(default_factory=set)
    fingerprints: set[str] = field(default_factory=set)
    fetched_at: float = field(default_factory=time.monotonic)
    complete: bool = True
    identifiers_supported: bool = False
    legacy_scanned: bool = True

    @classmethod
    def empty(cls, identifiers_supported: bool = False) -> "KnownState":
        """Valid state that knows nothing; used when a scan fails."""
        return cls(complete=False, identifiers_supported=identifiers_supported)

    def contains(
        self,
        record: CommitRecord,
        limit: int = MESSAGE_LIMIT,
        tz: tzinfo = timezone.utc,
    ) -> bool:
        if record.identifier in self.identifiers:
            return True
        if not self.fingerprints:
            return False
        full, date_only = record.fingerprints(limit, tz)
        return full in self.fingerprints or date_only in self.fingerprints

    def add(self, record: CommitRecord, limit: int = MESSAGE_LIMIT) -> None:
        self.identifiers.add(record.identifier)
        self.fingerprints.add(record.fingerprints(limit)[0])


@dataclass
class BatchResult:
    """Counts from processing a set of commit records."""

    processed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.errors

    def merge(self, other: "BatchResult") -> "BatchResult":
        self.processed += other.processed
        self.skipped += other.skipped
        self.errors += other.errors
        return self

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            processed=self.processed + other.processed,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class SyncMode:
    """Backfill window selection.

    ``fixed_window`` fetches the last ``months`` months; ``incremental``
    derives its window from the newest stored commit.
    """

    kind: str
    months: int | None = None
    identifier_only: bool = False

    FIXED_WINDOW = "fixed_window"
    INCREMENTAL = "incremental"

    @classmethod
    def fixed_window(cls, months: int, identifier_only: bool = False) -> "SyncMode":
        if not isinstance(months, int) or not MONTHS_MIN <= months <= MONTHS_MAX:
            raise ValueError(
                f"months must be between {MONTHS_MIN} and {MONTHS_MAX}, got {months!r}"
            )
        return cls(kind=cls.FIXED_WINDOW, months=months, identifier_only=identifier_only)

    @classmethod
    def incremental(cls, identifier_only: bool = False) -> "SyncMode":
        return cls(kind=cls.INCREMENTAL, identifier_only=identifier_only)

    @property
    def is_incremental(self) -> bool:
        return self.kind == self.INCREMENTAL

    def describe(self) -> str:
        if self.is_incremental:
            return "incremental"
        return f"last {self.months} month(s)"


@dataclass
class RepoSyncResult:
    """Outcome of syncing one repository."""

    repository: str
    since: datetime | None = None
    commits_fetched: int = 0
    batch: BatchResult = field(default_factory=BatchResult)
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "since": self.since.isoformat() if self.since else None,
            "commits_fetched": self.commits_fetched,
            **self.batch.to_dict(),
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class SyncStats:
    """Aggregate outcome of a multi-repository sync run.

    Always returned, even when some repositories failed, so callers can tell
    "nothing new" (all zeros, no failures) from "something failed".
    """

    repositories: int = 0
    failed_repositories: int = 0
    commits_fetched: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    delays: int = 0
    delay_seconds: float = 0.0
    duration_seconds: float = 0.0
    results: list[RepoSyncResult] = field(default_factory=list)

    def add(self, result: RepoSyncResult) -> None:
        self.results.append(result)
        self.repositories += 1
        if result.failed:
            self.failed_repositories += 1
        self.commits_fetched += result.commits_fetched
        self.processed += result.batch.processed
        self.skipped += result.batch.skipped
        self.errors += result.batch.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "repositories": self.repositories,
            "failed_repositories": self.failed_repositories,
            "commits_fetched": self.commits_fetched,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "delays": self.delays,
            "delay_seconds": round(self.delay_seconds, 2),
            "duration_seconds": round(self.duration_seconds, 2),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class SweepResult:
    """Outcome of removing duplicate rows for one repository."""

    repository: str
    scanned: int = 0
    duplicates: int = 0
    archived: int = 0
    errors: int = 0
    dry_run: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def duplicate_rows(rows: Iterable[StoredCommit]) -> list[StoredCommit]:
    """Rows that repeat an earlier row of the same commit.

    Rows are grouped by SHA, or by message and calendar day when they carry
    no SHA. The oldest row of each group is kept; every later one is
    returned. Rows with neither a SHA nor a date are never reported.
    """
    ordered = sorted(
        rows, key=lambda r: (r.timestamp is None, r.timestamp or _EPOCH, r.page_id)
    )
    seen: set[str] = set()
    extras = []
    for row in ordered:
        key = row.duplicate_key
        if key is None:
            continue
        if key in seen:
            extras.append(row)
        else:
            seen.add(key)
    return extras
