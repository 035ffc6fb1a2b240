"""Commit history source for backfill runs.

Walks a repository's commit history page by page and normalizes every item
into a CommitRecord, the same shape push events produce.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

from ...errors import InvalidCommitError
from ...models import CommitRecord
from .client import GitHubClient, GitHubClientError

logger = logging.getLogger("commit_mirror.github.backfill")


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class BackfillSource:
    """Paginates commit history for one repository at a time.

    Args:
        client: Shared GitHubClient
        page_delay_ms: Fixed delay between page fetches
        per_page: Page size; a shorter page ends the walk
        max_pages: Safety cap on pages per repository
    """

    def __init__(
        self,
        client: GitHubClient,
        page_delay_ms: int = 50,
        per_page: int = GitHubClient.DEFAULT_PER_PAGE,
        max_pages: int = 100,
    ) -> None:
        self.client = client
        self.page_delay_ms = page_delay_ms
        self.per_page = per_page
        self.max_pages = max_pages

    async def iter_commit_pages(
        self, repository: str, since: datetime | None = None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield raw commit pages until a page comes back short.

        Raises:
            GitHubClientError: propagated from the client (rate limits included)
        """
        since_param = _iso(since) if since else None
        page = 1
        while True:
            items = await self.client.list_commits_page(
                repository, since=since_param, page=page, per_page=self.per_page
            )
            logger.debug(
                "github_commits_page",
                extra={"repository": repository, "page": page, "count": len(items)},
            )
            if items:
                yield items
            if len(items) < self.per_page:
                return
            if page >= self.max_pages:
                logger.warning(
                    "github_commits_page_limit",
                    extra={"repository": repository, "max_pages": self.max_pages},
                )
                return
            page += 1
            if self.page_delay_ms:
                await asyncio.sleep(self.page_delay_ms / 1000)

    async def fetch_commits(
        self, repository: str, since: datetime | None = None
    ) -> list[CommitRecord]:
        """Collect and normalize all commits of ``repository`` since ``since``.

        Items that cannot be normalized are dropped with a warning. The API
        returns newest first; the result is ordered oldest to newest.
        """
        records: list[CommitRecord] = []
        dropped = 0
        async for page in self.iter_commit_pages(repository, since):
            for item in page:
                try:
                    records.append(CommitRecord.from_api_commit(repository, item))
                except InvalidCommitError as e:
                    dropped += 1
                    logger.warning(
                        "github_commit_invalid",
                        extra={"repository": repository, "error": str(e)},
                    )
        records.reverse()
        logger.info(
            "github_commits_fetched",
            extra={
                "repository": repository,
                "since": _iso(since) if since else None,
                "count": len(records),
                "dropped": dropped,
            },
        )
        return records

    async def list_repositories(
        self, owner: str, include_forks: bool = False
    ) -> list[str]:
        """List ``owner/name`` of the owner's repositories.

        Uses the authenticated listing (which includes private repositories)
        and falls back to the public listing of ``owner`` if that fails.
        """
        try:
            repos = await self.client.list_user_repositories()
            repos = [
                r
                for r in repos
                if (r.get("owner") or {}).get("login", "").lower() == owner.lower()
            ]
        except GitHubClientError as e:
            logger.warning(
                "github_user_repos_failed",
                extra={"owner": owner, "error": str(e)},
            )
            repos = await self.client.list_owner_repositories(owner)

        names = sorted(
            r["full_name"]
            for r in repos
            if r.get("full_name") and (include_forks or not r.get("fork"))
        )
        logger.info("github_repositories_listed", extra={"owner": owner, "count": len(names)})
        return names
