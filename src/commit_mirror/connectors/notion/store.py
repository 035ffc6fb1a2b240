"""Notion database as the commit record store.

Each commit is one database row:

    Project Name  title      repository name ("widgets" or "acme/widgets")
    Commits       rich_text  commit message, truncated to 2000 characters
    Date          date       authored time (older rows may hold a date only)
    SHA           rich_text  commit identifier, when the column exists
    Author        rich_text  optional, written only if the column exists
    URL           url        optional, written only if the column exists

All translation between CommitRecord/StoredCommit and Notion property JSON
goes through ``record_to_properties`` and ``page_to_stored_commit``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from ...config import DEFAULT_LEGACY_TIMEZONE
from ...models import (
    MESSAGE_LIMIT,
    Capability,
    CommitRecord,
    StoredCommit,
    duplicate_rows,
    parse_timestamp,
)
from .client import NotionClient, NotionClientError

logger = logging.getLogger("commit_mirror.notion.store")

PROP_PROJECT = "Project Name"
PROP_MESSAGE = "Commits"
PROP_DATE = "Date"
PROP_IDENTIFIER = "SHA"
PROP_AUTHOR = "Author"
PROP_URL = "URL"


def _rich_text(content: str) -> dict[str, Any]:
    return {"rich_text": [{"type": "text", "text": {"content": content}}]}


def _plain_text(prop: dict[str, Any] | None) -> str:
    if not prop:
        return ""
    parts = prop.get("title") or prop.get("rich_text") or []
    return "".join(
        p.get("plain_text") or (p.get("text") or {}).get("content", "") for p in parts
    )


def record_to_properties(
    record: CommitRecord,
    project: str,
    message_limit: int = MESSAGE_LIMIT,
    include_identifier: bool = False,
    include_author: bool = False,
    include_url: bool = False,
) -> dict[str, Any]:
    """Build the Notion ``properties`` payload for one commit."""
    properties: dict[str, Any] = {
        PROP_PROJECT: {"title": [{"type": "text", "text": {"content": project}}]},
        PROP_MESSAGE: _rich_text(record.stored_message(message_limit)),
        PROP_DATE: {"date": {"start": record.timestamp.isoformat()}},
    }
    if include_identifier:
        properties[PROP_IDENTIFIER] = _rich_text(record.identifier)
    if include_author and record.author_name:
        properties[PROP_AUTHOR] = _rich_text(record.author_name)
    if include_url and record.url:
        properties[PROP_URL] = {"url": record.url}
    return properties


def page_to_stored_commit(page: dict[str, Any]) -> StoredCommit:
    """Read one Notion page into a StoredCommit.

    Missing properties become empty values; a missing or unparseable date
    leaves ``timestamp`` as None, which excludes the row from fingerprinting.
    """
    props = page.get("properties") or {}

    timestamp = None
    date_only = False
    start = ((props.get(PROP_DATE) or {}).get("date") or {}).get("start")
    if start:
        try:
            timestamp = parse_timestamp(start)
            date_only = len(start) == 10
        except ValueError:
            logger.warning(
                "notion_row_bad_date", extra={"page_id": page.get("id"), "date": start}
            )

    identifier = _plain_text(props.get(PROP_IDENTIFIER)).strip() or None
    return StoredCommit(
        page_id=page.get("id", ""),
        project=_plain_text(props.get(PROP_PROJECT)),
        message=_plain_text(props.get(PROP_MESSAGE)),
        timestamp=timestamp,
        date_only=date_only,
        identifier=identifier,
    )


class NotionRecordStore:
    """Commit rows in one Notion database.

    Args:
        client: NotionClient bound to the target database
        project_name_style: "name" stores "widgets", "full_name" stores "acme/widgets"
        message_limit: Stored message length limit
        page_delay_ms: Delay between query pages
        legacy_timezone: Zone of the calendar date on date-only rows
    """

    def __init__(
        self,
        client: NotionClient,
        project_name_style: str = "name",
        message_limit: int = MESSAGE_LIMIT,
        page_delay_ms: int = 100,
        legacy_timezone: tzinfo | None = None,
    ) -> None:
        self.client = client
        self.project_name_style = project_name_style
        self.message_limit = message_limit
        self.page_delay_ms = page_delay_ms
        self.legacy_timezone = legacy_timezone or ZoneInfo(DEFAULT_LEGACY_TIMEZONE)
        self._schema: dict[str, Any] | None = None

    def project_name(self, repository: str) -> str:
        if self.project_name_style == "full_name":
            return repository
        return repository.split("/")[-1]

    def _has_column(self, name: str, prop_type: str) -> bool:
        if not self._schema:
            return False
        return (self._schema.get(name) or {}).get("type") == prop_type

    # --- Schema capability ---

    async def probe_identifier_column(self) -> Capability:
        """Report whether the database has a rich_text SHA column.

        Never raises: an unreachable store yields Capability.UNKNOWN.
        """
        try:
            database = await self.client.retrieve_database()
        except NotionClientError as e:
            logger.warning("notion_schema_probe_failed", extra={"error": str(e)})
            return Capability.UNKNOWN
        self._schema = database.get("properties") or {}
        if self._has_column(PROP_IDENTIFIER, "rich_text"):
            return Capability.PRESENT
        return Capability.ABSENT

    async def add_identifier_column(self) -> bool:
        """Try to add the SHA column. Returns False when Notion refuses."""
        try:
            database = await self.client.update_database(
                {PROP_IDENTIFIER: {"rich_text": {}}}
            )
        except NotionClientError as e:
            logger.warning(
                "notion_add_identifier_column_failed",
                extra={"error": str(e), "status_code": e.status_code},
            )
            return False
        self._schema = database.get("properties") or {
            **(self._schema or {}),
            PROP_IDENTIFIER: {"type": "rich_text"},
        }
        logger.info("notion_identifier_column_added", extra={"column": PROP_IDENTIFIER})
        return True

    # --- Queries ---

    @staticmethod
    def _project_filter(project: str) -> dict[str, Any]:
        return {"property": PROP_PROJECT, "title": {"equals": project}}

    async def iter_project_records(
        self, project: str, identifiers_only: bool = False
    ) -> AsyncIterator[list[StoredCommit]]:
        """Yield pages of rows for ``project`` until Notion reports no more.

        ``identifiers_only`` restricts the query to rows with a SHA, skipping
        legacy rows entirely.

        Raises:
            NotionClientError: on query failure
        """
        query_filter = self._project_filter(project)
        if identifiers_only:
            query_filter = {
                "and": [
                    query_filter,
                    {"property": PROP_IDENTIFIER, "rich_text": {"is_not_empty": True}},
                ]
            }

        cursor: str | None = None
        page_number = 0
        while True:
            response = await self.client.query_database(
                filter=query_filter, start_cursor=cursor
            )
            page_number += 1
            rows = [page_to_stored_commit(p) for p in response.get("results") or []]
            logger.debug(
                "notion_query_page",
                extra={"project": project, "page": page_number, "count": len(rows)},
            )
            yield rows

            cursor = response.get("next_cursor")
            if not response.get("has_more") or not cursor:
                return
            if self.page_delay_ms:
                await asyncio.sleep(self.page_delay_ms / 1000)

    async def find_commit(
        self, record: CommitRecord, project: str, use_identifier: bool
    ) -> bool:
        """Existence check used right before a write.

        Matches on (project, SHA) when the SHA column exists, otherwise on
        (project, stored message, date). The date matches either the exact
        timestamp or, for date-only rows, the calendar day in
        ``legacy_timezone``.

        Raises:
            NotionClientError: on query failure
        """
        if use_identifier:
            match = {"property": PROP_IDENTIFIER, "rich_text": {"equals": record.identifier}}
            conditions = [self._project_filter(project), match]
        else:
            local_day = record.local_date(self.legacy_timezone)
            conditions = [
                self._project_filter(project),
                {
                    "property": PROP_MESSAGE,
                    "rich_text": {"equals": record.stored_message(self.message_limit)},
                },
                {
                    "or": [
                        {
                            "property": PROP_DATE,
                            "date": {"equals": record.timestamp.isoformat()},
                        },
                        {
                            "property": PROP_DATE,
                            "date": {"equals": local_day.isoformat()},
                        },
                    ]
                },
            ]
        response = await self.client.query_database(
            filter={"and": conditions}, page_size=1
        )
        return bool(response.get("results"))

    async def create_commit(
        self, record: CommitRecord, project: str, include_identifier: bool
    ) -> str:
        """Create the row for ``record`` and return the new page id.

        Raises:
            NotionClientError: on write failure
        """
        properties = record_to_properties(
            record,
            project,
            message_limit=self.message_limit,
            include_identifier=include_identifier,
            include_author=self._has_column(PROP_AUTHOR, "rich_text"),
            include_url=self._has_column(PROP_URL, "url"),
        )
        page = await self.client.create_page(properties)
        return page.get("id", "")

    async def latest_commit_timestamp(self, project: str) -> datetime | None:
        """Newest stored Date for ``project``: the incremental sync cursor.

        Raises:
            NotionClientError: on query failure
        """
        response = await self.client.query_database(
            filter=self._project_filter(project),
            sorts=[{"property": PROP_DATE, "direction": "descending"}],
            page_size=1,
        )
        results = response.get("results") or []
        if not results:
            return None
        return page_to_stored_commit(results[0]).timestamp

    # --- Duplicate cleanup ---

    async def find_duplicates(self, project: str) -> tuple[int, list[StoredCommit]]:
        """Scan every row of ``project`` and return (rows scanned, extra copies).

        Raises:
            NotionClientError: on query failure
        """
        rows: list[StoredCommit] = []
        async for page in self.iter_project_records(project):
            rows.extend(page)
        return len(rows), duplicate_rows(rows)

    async def archive_record(self, page_id: str) -> None:
        """Archive one row.

        Raises:
            NotionClientError: on request failure
        """
        await self.client.archive_page(page_id)
