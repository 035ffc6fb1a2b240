"""Notion REST API client.

Provides an async httpx-based client for the database endpoints used to
mirror commits: retrieve/update a database schema, query rows with cursor
pagination, and create or archive pages.

Reference: https://developers.notion.com/reference/intro
Rate limits: https://developers.notion.com/reference/request-limits
"""

import asyncio
import logging
import random
from typing import Any

import httpx

logger = logging.getLogger("commit_mirror.notion.client")


class NotionClientError(Exception):
    """Raised when a Notion API request fails.

    Attributes:
        status_code: HTTP status, None for transport errors
        code: Notion error code (e.g. "validation_error", "object_not_found")
    """

    def __init__(
        self, message: str, status_code: int | None = None, code: str | None = None
    ):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class NotionRateLimited(NotionClientError):
    """Raised when Notion keeps returning 429 after all retries."""


class NotionClient:
    """Notion API client using httpx with Bearer auth.

    Notion allows an average of three requests per second per integration;
    429 responses are retried after Retry-After, and 409 conflicts and 5xx
    responses with exponential backoff.

    Example:
        >>> async with NotionClient("secret_abc", "db-id") as client:
        ...     database = await client.retrieve_database()
    """

    BASE_URL = "https://api.notion.com/v1"
    NOTION_VERSION = "2022-06-28"

    MAX_RETRIES = 3
    BASE_BACKOFF = 1.0  # seconds, doubled per attempt
    MAX_BACKOFF = 30.0
    MAX_PAGE_SIZE = 100

    def __init__(
        self,
        api_key: str,
        database_id: str,
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize Notion client.

        Args:
            api_key: Notion integration token
            database_id: Database holding commit rows
            base_url: API base URL (default: https://api.notion.com/v1)
            timeout: Read timeout in seconds
        """
        self.database_id = database_id
        self.base_url = (base_url or self.BASE_URL).rstrip("/")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(connect=5.0, read=timeout, write=10.0, pool=5.0),
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=50,
                keepalive_expiry=10.0,
            ),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Notion-Version": self.NOTION_VERSION,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def test_connection(self) -> dict[str, Any]:
        """Check that the token can read the configured database.

        Returns:
            dict with success (bool), title (str) or error (str)
        """
        try:
            database = await self.retrieve_database()
        except NotionClientError as e:
            return {"success": False, "error": str(e)}
        title = "".join(
            part.get("plain_text", "") for part in database.get("title") or []
        )
        return {"success": True, "title": title}

    # --- Database endpoints ---

    async def retrieve_database(self) -> dict[str, Any]:
        """GET /databases/{id}: schema including ``properties``."""
        return await self._request("GET", f"/databases/{self.database_id}")

    async def update_database(self, properties: dict[str, Any]) -> dict[str, Any]:
        """PATCH /databases/{id} to add or change columns."""
        return await self._request(
            "PATCH",
            f"/databases/{self.database_id}",
            json={"properties": properties},
        )

    async def query_database(
        self,
        filter: dict[str, Any] | None = None,
        sorts: list[dict[str, Any]] | None = None,
        start_cursor: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> dict[str, Any]:
        """POST /databases/{id}/query: one page of rows.

        Returns:
            Response dict with ``results``, ``has_more``, ``next_cursor``
        """
        body: dict[str, Any] = {"page_size": min(page_size, self.MAX_PAGE_SIZE)}
        if filter:
            body["filter"] = filter
        if sorts:
            body["sorts"] = sorts
        if start_cursor:
            body["start_cursor"] = start_cursor
        return await self._request(
            "POST", f"/databases/{self.database_id}/query", json=body
        )

    async def create_page(self, properties: dict[str, Any]) -> dict[str, Any]:
        """POST /pages: create one row in the database."""
        return await self._request(
            "POST",
            "/pages",
            json={
                "parent": {"database_id": self.database_id},
                "properties": properties,
            },
        )

    async def archive_page(self, page_id: str) -> dict[str, Any]:
        """PATCH /pages/{id} with ``archived: true`` (moves the row to trash)."""
        return await self._request(
            "PATCH", f"/pages/{page_id}", json={"archived": True}
        )

    # --- Core HTTP ---

    def _backoff(self, attempt: int) -> float:
        return min(self.MAX_BACKOFF, self.BASE_BACKOFF * (2**attempt)) + random.uniform(
            0, 0.5
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request with retries and error mapping.

        Raises:
            NotionRateLimited: 429 after all retries
            NotionClientError: any other failure
        """
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, path, json=json)
            except httpx.TimeoutException as e:
                if attempt < self.MAX_RETRIES:
                    backoff = self._backoff(attempt)
                    logger.warning(
                        "Notion request timeout. Retrying in %.1fs (attempt %d/%d)",
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise NotionClientError(
                    f"Notion request timeout after {self.MAX_RETRIES} retries: {e}"
                ) from e
            except httpx.HTTPError as e:
                raise NotionClientError(f"HTTP error: {e}") from e

            status = response.status_code
            if status < 400:
                try:
                    return response.json()
                except ValueError as e:
                    raise NotionClientError(
                        f"Invalid JSON from {path}: {e}", status
                    ) from e

            try:
                body = response.json() if response.content else {}
            except (ValueError, UnicodeDecodeError):
                body = {}
            code = body.get("code") if isinstance(body, dict) else None
            message = body.get("message") if isinstance(body, dict) else None

            if status == 429:
                try:
                    retry_after = float(response.headers.get("Retry-After", "1"))
                except ValueError:
                    retry_after = 1.0
                if attempt < self.MAX_RETRIES:
                    logger.warning(
                        "Notion rate limited. Retry-After: %.1fs (attempt %d/%d)",
                        retry_after,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(retry_after)
                    continue
                raise NotionRateLimited(
                    f"Notion rate limit exceeded after {self.MAX_RETRIES} retries",
                    status,
                    code,
                )

            if status == 409 or status >= 500:
                if attempt < self.MAX_RETRIES:
                    backoff = self._backoff(attempt)
                    logger.warning(
                        "Notion error %d. Retrying in %.1fs (attempt %d/%d)",
                        status,
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue

            raise NotionClientError(
                f"Notion API error {status}: {message or response.text}",
                status,
                code,
            )

        raise NotionClientError("Request failed after all retries")
