"""Unit tests for the Notion-backed record store.

Tests NotionRecordStore with:
- Property mapping in both directions
- Schema capability probe and column creation
- Project scans with cursor pagination
- Existence checks by identifier and by legacy fingerprint
- Sync cursor lookup
- Duplicate row lookup and archiving
"""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from commit_mirror.connectors.notion.client import NotionClient, NotionClientError
from commit_mirror.connectors.notion.store import (
    PROP_IDENTIFIER,
    NotionRecordStore,
    page_to_stored_commit,
    record_to_properties,
)
from commit_mirror.models import Capability


def _page(page_id, project, message, start, sha=None):
    props = {
        "Project Name": {"type": "title", "title": [{"plain_text": project}]},
        "Commits": {"type": "rich_text", "rich_text": [{"plain_text": message}]},
        "Date": {"type": "date", "date": {"start": start} if start else None},
    }
    if sha is not None:
        props["SHA"] = {"type": "rich_text", "rich_text": [{"plain_text": sha}]}
    return {"id": page_id, "properties": props}


@pytest.fixture
def client():
    mock = AsyncMock(spec=NotionClient)
    mock.query_database.return_value = {"results": [], "has_more": False}
    return mock


@pytest.fixture
def store(client):
    return NotionRecordStore(client, page_delay_ms=0)


# =============================================================================
# Property mapping
# =============================================================================


class TestMapping:
    """Test record_to_properties and page_to_stored_commit."""

    def test_required_properties(self, make_commit):
        props = record_to_properties(make_commit(), "widgets")
        assert props["Project Name"]["title"][0]["text"]["content"] == "widgets"
        assert props["Commits"]["rich_text"][0]["text"]["content"] == "Fix widget alignment"
        assert props["Date"]["date"]["start"] == "2024-01-02T09:00:00+00:00"
        assert "SHA" not in props
        assert "Author" not in props

    def test_optional_properties(self, make_commit):
        props = record_to_properties(
            make_commit(),
            "widgets",
            include_identifier=True,
            include_author=True,
            include_url=True,
        )
        assert props["SHA"]["rich_text"][0]["text"]["content"] == "a1b2c3d"
        assert props["Author"]["rich_text"][0]["text"]["content"] == "Dana Developer"
        assert props["URL"] == {"url": "https://github.com/acme/widgets/commit/a1b2c3d"}

    def test_message_truncated(self, make_commit):
        props = record_to_properties(make_commit(message="m" * 2500), "widgets")
        content = props["Commits"]["rich_text"][0]["text"]["content"]
        assert len(content) == 2000
        assert content.endswith("...")

    def test_page_with_datetime(self):
        row = page_to_stored_commit(
            _page("p1", "widgets", "Fix bug", "2024-01-01T10:00:00.000Z", sha="abc")
        )
        assert row.timestamp == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert row.date_only is False
        assert row.identifier == "abc"
        assert row.fingerprint == "Fix bug|2024-01-01T10:00:00Z"

    def test_page_with_date_only(self):
        row = page_to_stored_commit(_page("p1", "widgets", "Fix bug", "2024-01-01"))
        assert row.date_only is True
        assert row.identifier is None
        assert row.fingerprint == "Fix bug|2024-01-01"

    def test_page_without_date(self):
        row = page_to_stored_commit(_page("p1", "widgets", "Fix bug", None))
        assert row.timestamp is None
        assert row.fingerprint is None

    def test_blank_sha_is_none(self):
        row = page_to_stored_commit(_page("p1", "widgets", "m", "2024-01-01", sha="  "))
        assert row.identifier is None


# =============================================================================
# Schema capability
# =============================================================================


class TestSchema:
    """Test probe_identifier_column and add_identifier_column."""

    @pytest.mark.asyncio
    async def test_present(self, store, client):
        client.retrieve_database.return_value = {
            "properties": {"SHA": {"type": "rich_text"}}
        }
        assert await store.probe_identifier_column() is Capability.PRESENT

    @pytest.mark.asyncio
    async def test_wrong_type_is_absent(self, store, client):
        client.retrieve_database.return_value = {"properties": {"SHA": {"type": "number"}}}
        assert await store.probe_identifier_column() is Capability.ABSENT

    @pytest.mark.asyncio
    async def test_unreachable_is_unknown(self, store, client):
        client.retrieve_database.side_effect = NotionClientError("down", 503)
        assert await store.probe_identifier_column() is Capability.UNKNOWN

    @pytest.mark.asyncio
    async def test_add_column(self, store, client):
        client.update_database.return_value = {
            "properties": {PROP_IDENTIFIER: {"type": "rich_text"}}
        }
        assert await store.add_identifier_column() is True
        client.update_database.assert_awaited_once_with({"SHA": {"rich_text": {}}})

    @pytest.mark.asyncio
    async def test_add_column_refused(self, store, client):
        client.update_database.side_effect = NotionClientError("forbidden", 403)
        assert await store.add_identifier_column() is False

    @pytest.mark.asyncio
    async def test_optional_columns_follow_schema(self, store, client, make_commit):
        client.retrieve_database.return_value = {
            "properties": {
                "SHA": {"type": "rich_text"},
                "URL": {"type": "url"},
            }
        }
        client.create_page.return_value = {"id": "new-page"}
        await store.probe_identifier_column()

        page_id = await store.create_commit(make_commit(), "widgets", include_identifier=True)

        assert page_id == "new-page"
        props = client.create_page.call_args.args[0]
        assert "URL" in props
        assert "Author" not in props
        assert "SHA" in props


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    """Test scans, existence checks and the sync cursor."""

    def test_project_name_styles(self, client):
        assert NotionRecordStore(client).project_name("acme/widgets") == "widgets"
        assert (
            NotionRecordStore(client, project_name_style="full_name").project_name(
                "acme/widgets"
            )
            == "acme/widgets"
        )

    @pytest.mark.asyncio
    async def test_scan_follows_cursor(self, store, client):
        client.query_database.side_effect = [
            {
                "results": [_page("p1", "widgets", "a", "2024-01-01", sha="s1")],
                "has_more": True,
                "next_cursor": "cur-2",
            },
            {
                "results": [_page("p2", "widgets", "b", "2024-01-02")],
                "has_more": False,
                "next_cursor": None,
            },
        ]

        pages = [page async for page in store.iter_project_records("widgets")]

        assert [[r.page_id for r in page] for page in pages] == [["p1"], ["p2"]]
        first, second = client.query_database.call_args_list
        assert first.kwargs["start_cursor"] is None
        assert second.kwargs["start_cursor"] == "cur-2"
        assert first.kwargs["filter"] == {
            "property": "Project Name",
            "title": {"equals": "widgets"},
        }

    @pytest.mark.asyncio
    async def test_identifier_only_scan_filter(self, store, client):
        _ = [page async for page in store.iter_project_records("widgets", identifiers_only=True)]
        query_filter = client.query_database.call_args.kwargs["filter"]
        assert query_filter["and"][1] == {
            "property": "SHA",
            "rich_text": {"is_not_empty": True},
        }

    @pytest.mark.asyncio
    async def test_scan_error_propagates(self, store, client):
        client.query_database.side_effect = NotionClientError("boom", 500)
        with pytest.raises(NotionClientError):
            _ = [page async for page in store.iter_project_records("widgets")]

    @pytest.mark.asyncio
    async def test_find_by_identifier(self, store, client, make_commit):
        client.query_database.return_value = {"results": [{"id": "p1"}]}

        assert await store.find_commit(make_commit(), "widgets", use_identifier=True)

        kwargs = client.query_database.call_args.kwargs
        assert kwargs["page_size"] == 1
        assert kwargs["filter"]["and"][1] == {
            "property": "SHA",
            "rich_text": {"equals": "a1b2c3d"},
        }

    @pytest.mark.asyncio
    async def test_find_by_fingerprint(self, store, client, make_commit):
        assert not await store.find_commit(make_commit(), "widgets", use_identifier=False)

        conditions = client.query_database.call_args.kwargs["filter"]["and"]
        assert conditions[1] == {
            "property": "Commits",
            "rich_text": {"equals": "Fix widget alignment"},
        }
        assert conditions[2] == {
            "or": [
                {"property": "Date", "date": {"equals": "2024-01-02T09:00:00+00:00"}},
                {"property": "Date", "date": {"equals": "2024-01-02"}},
            ]
        }

    @pytest.mark.asyncio
    async def test_find_by_fingerprint_uses_legacy_timezone_day(self, client, make_commit):
        store = NotionRecordStore(client, legacy_timezone=ZoneInfo("America/New_York"))
        # 22:00 Eastern on Jan 1
        commit = make_commit(
            message="evening fix", timestamp=datetime(2024, 1, 2, 3, 0, tzinfo=timezone.utc)
        )

        await store.find_commit(commit, "widgets", use_identifier=False)

        date_match = client.query_database.call_args.kwargs["filter"]["and"][2]["or"]
        assert date_match[1] == {"property": "Date", "date": {"equals": "2024-01-01"}}

    @pytest.mark.asyncio
    async def test_latest_commit_timestamp(self, store, client):
        client.query_database.return_value = {
            "results": [_page("p1", "widgets", "m", "2024-01-01T10:00:00Z")]
        }

        latest = await store.latest_commit_timestamp("widgets")

        assert latest == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert client.query_database.call_args.kwargs["sorts"] == [
            {"property": "Date", "direction": "descending"}
        ]

    @pytest.mark.asyncio
    async def test_latest_commit_timestamp_empty(self, store):
        assert await store.latest_commit_timestamp("widgets") is None

    @pytest.mark.asyncio
    async def test_latest_date_only_row(self, store, client):
        client.query_database.return_value = {
            "results": [_page("p1", "widgets", "m", "2024-01-01")]
        }
        latest = await store.latest_commit_timestamp("widgets")
        assert latest.date() == date(2024, 1, 1)


# =============================================================================
# Duplicate cleanup
# =============================================================================


class TestDuplicates:
    """Test find_duplicates and archive_record."""

    @pytest.mark.asyncio
    async def test_find_duplicates_scans_every_page(self, store, client):
        client.query_database.side_effect = [
            {
                "results": [
                    _page("p2", "widgets", "a", "2024-01-02T10:00:00Z", sha="s1"),
                    _page("p3", "widgets", "b", "2024-01-02T11:00:00Z"),
                ],
                "has_more": True,
                "next_cursor": "cur-2",
            },
            {
                "results": [
                    _page("p1", "widgets", "a", "2024-01-01T09:00:00Z", sha="s1"),
                    _page("p4", "widgets", "b", "2024-01-02T15:00:00Z"),
                ],
                "has_more": False,
                "next_cursor": None,
            },
        ]

        scanned, extras = await store.find_duplicates("widgets")

        assert scanned == 4
        assert [r.page_id for r in extras] == ["p2", "p4"]
        assert client.query_database.call_count == 2

    @pytest.mark.asyncio
    async def test_find_duplicates_error_propagates(self, store, client):
        client.query_database.side_effect = NotionClientError("boom", 500)
        with pytest.raises(NotionClientError):
            await store.find_duplicates("widgets")

    @pytest.mark.asyncio
    async def test_archive_record(self, store, client):
        await store.archive_record("p9")
        client.archive_page.assert_awaited_once_with("p9")
