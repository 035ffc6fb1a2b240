"""Notion integration package.

Async API client for the Notion REST API plus the record store that maps
commits to rows of a Notion database.
"""

from .client import NotionClient, NotionClientError, NotionRateLimited
from .store import NotionRecordStore, page_to_stored_commit, record_to_properties

__all__ = [
    "NotionClient",
    "NotionClientError",
    "NotionRateLimited",
    "NotionRecordStore",
    "page_to_stored_commit",
    "record_to_properties",
]
