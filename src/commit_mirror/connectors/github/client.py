"""GitHub REST API client.

Provides an async httpx-based client for the GitHub REST API v3 with token
auth. Implements page-number and Link header pagination, adaptive rate
limiting (primary + secondary), and exponential backoff.

Reference: https://docs.github.com/en/rest
Rate limits: https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

import asyncio
import logging
import random
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

logger = logging.getLogger("commit_mirror.github.client")


class GitHubClientError(Exception):
    """Raised when a GitHub API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    ``status_code`` is set for HTTP error responses.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitExceeded(GitHubClientError):
    """Raised when GitHub rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}", 429)


class GitHubClient:
    """GitHub REST API client using httpx with Bearer token auth.

    One client serves every repository of a run; repository names are passed
    per call. Uses a long-lived httpx.AsyncClient with connection pooling.

    Rate limiting:
    - Primary: 5,000 requests/hour (PAT), 20% reserved
    - Secondary: 900 points/minute, 20% reserved
    - Minimum delay between consecutive requests

    Example:
        >>> async with GitHubClient("ghp_token") as client:
        ...     result = await client.test_connection()
        ...     if result["success"]:
        ...         page = await client.list_commits_page("acme/widgets", page=1)
    """

    BASE_URL = "https://api.github.com"

    # Rate limit constants
    PRIMARY_LIMIT = 5000  # requests/hour for PAT
    SECONDARY_LIMIT_POINTS = 900  # points/minute
    SAFETY_MARGIN = 0.20
    MIN_REQUEST_DELAY_MS = 100

    # Timeouts (seconds)
    CONNECT_TIMEOUT = 5.0
    READ_TIMEOUT = 30.0
    WRITE_TIMEOUT = 5.0
    POOL_TIMEOUT = 5.0

    # Retry configuration
    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds, exponential: min(60, 2^attempt)
    MAX_BACKOFF = 60

    DEFAULT_PER_PAGE = 100  # GitHub maximum

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        min_delay_ms: int = MIN_REQUEST_DELAY_MS,
    ) -> None:
        """Initialize GitHub client with token authentication.

        Args:
            token: GitHub Personal Access Token
            base_url: GitHub API base URL (default: https://api.github.com)
            min_delay_ms: Minimum delay between requests in milliseconds
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self._min_delay_s = min_delay_ms / 1000.0

        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: float | None = None
        self._secondary_points_used: int = 0
        self._secondary_window_start: float = time.monotonic()
        self._last_request_time: float = 0.0

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "commit-mirror/1.0",
            },
            timeout=httpx.Timeout(
                connect=self.CONNECT_TIMEOUT,
                read=self.READ_TIMEOUT,
                write=self.WRITE_TIMEOUT,
                pool=self.POOL_TIMEOUT,
            ),
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    @property
    def rate_limit_remaining(self) -> int | None:
        return self._rate_limit_remaining

    # --- Authentication & Connection ---

    async def test_connection(self) -> dict[str, Any]:
        """Validate token and check rate limit status.

        Returns:
            dict with keys: success (bool), user (str), rate_limit (dict)
            or success=False and error (str)
        """
        try:
            response = await self._request("GET", "/user")
            return {
                "success": True,
                "user": response.get("login", "unknown"),
                "rate_limit": {
                    "limit": self.PRIMARY_LIMIT,
                    "remaining": self._rate_limit_remaining,
                    "reset": self._rate_limit_reset,
                },
            }
        except GitHubClientError as e:
            return {"success": False, "error": str(e)}

    # --- Repository Data Endpoints ---

    async def list_commits_page(
        self,
        repository: str,
        since: str | None = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
        sha: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch one page of a repository's commit history (newest first).

        Args:
            repository: Repository in owner/name format
            since: ISO 8601 timestamp -- only commits after this time
            page: 1-based page number
            per_page: Page size (max 100)
            sha: Branch name or commit SHA to start from

        Returns:
            List of commit dicts; empty for empty or missing repositories

        Raises:
            GitHubClientError: On non-retryable errors other than 404/409
            RateLimitExceeded: When rate limit is exhausted after retries
        """
        params: dict[str, str] = {"page": str(page), "per_page": str(per_page)}
        if since:
            params["since"] = since
        if sha:
            params["sha"] = sha

        try:
            data = await self._request(
                "GET", f"/repos/{repository}/commits", params=params
            )
        except GitHubClientError as e:
            # 409: repository has no commits; 404: repository gone or not visible
            if e.status_code in (404, 409):
                logger.info(
                    "github_commits_empty",
                    extra={"repository": repository, "status_code": e.status_code},
                )
                return []
            raise
        return data if isinstance(data, list) else []

    async def list_user_repositories(
        self, affiliation: str = "owner,organization_member"
    ) -> list[dict[str, Any]]:
        """List repositories visible to the authenticated user.

        Includes private repositories the token can read.
        """
        return await self._paginate(
            "/user/repos",
            params={"affiliation": affiliation, "sort": "updated"},
        )

    async def list_owner_repositories(self, owner: str) -> list[dict[str, Any]]:
        """List public repositories of a user via /users/{owner}/repos."""
        return await self._paginate(
            f"/users/{owner}/repos", params={"type": "owner", "sort": "updated"}
        )

    # --- Rate Limiting ---

    async def _enforce_rate_limit(self, point_cost: int) -> None:
        """Enforce primary and secondary rate limits and the minimum delay.

        Args:
            point_cost: Point cost of the upcoming request
        """
        now = time.monotonic()

        if now - self._secondary_window_start >= 60.0:
            self._secondary_points_used = 0
            self._secondary_window_start = now

        effective_secondary = int(
            self.SECONDARY_LIMIT_POINTS * (1 - self.SAFETY_MARGIN)
        )
        if self._secondary_points_used + point_cost > effective_secondary:
            wait_time = 60.0 - (now - self._secondary_window_start)
            if wait_time > 0:
                logger.info(
                    "Secondary rate limit approaching (%d/%d points). Waiting %.1fs",
                    self._secondary_points_used,
                    effective_secondary,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
                self._secondary_points_used = 0
                self._secondary_window_start = time.monotonic()

        effective_primary_margin = int(self.PRIMARY_LIMIT * self.SAFETY_MARGIN)
        if (
            self._rate_limit_remaining is not None
            and self._rate_limit_remaining < int(effective_primary_margin * 0.1)
            and self._rate_limit_reset
        ):
            wait_time = max(0, self._rate_limit_reset - time.time())
            if wait_time > 0:
                logger.warning(
                    "Primary rate limit low (%d remaining). Waiting %.1fs for reset",
                    self._rate_limit_remaining,
                    wait_time,
                )
                await asyncio.sleep(min(wait_time, self.MAX_BACKOFF))

        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self._min_delay_s:
            await asyncio.sleep(self._min_delay_s - elapsed)

    def _update_rate_limits(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                self._rate_limit_remaining = int(remaining)
            except ValueError:
                logger.warning(
                    "Non-numeric X-RateLimit-Remaining header: %r", remaining
                )

        reset = response.headers.get("X-RateLimit-Reset")
        if reset is not None:
            try:
                self._rate_limit_reset = float(reset)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)

    # --- Core HTTP Methods ---

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json() if response.content else {}
        except (ValueError, UnicodeDecodeError):
            body = {}
        if isinstance(body, dict) and body.get("message"):
            return body["message"]
        return response.text

    async def _raw_request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        point_cost: int = 1,
    ) -> httpx.Response:
        """Make an HTTP request with rate limiting, retries, and error handling.

        Args:
            method: HTTP method
            path: API path or absolute URL (for Link header pages)
            params: Query parameters
            point_cost: Request point cost for the secondary rate limit

        Returns:
            httpx.Response with a 2xx status

        Raises:
            GitHubClientError: On non-retryable errors (auth, not found)
            RateLimitExceeded: When rate limit is exhausted after retries
        """
        for attempt in range(self.MAX_RETRIES + 1):
            await self._enforce_rate_limit(point_cost)

            try:
                self._last_request_time = time.monotonic()
                response = await self._client.request(method, path, params=params)

                # Only charge the secondary budget on the first attempt
                self._update_rate_limits(response)
                if attempt == 0:
                    self._secondary_points_used += point_cost

                # Primary rate limit exhausted
                if response.status_code == 403:
                    if response.headers.get("X-RateLimit-Remaining", "") == "0":
                        reset = float(response.headers.get("X-RateLimit-Reset", "0"))
                        reset_dt = datetime.fromtimestamp(reset, tz=timezone.utc)
                        if attempt < self.MAX_RETRIES:
                            wait = max(1, reset - time.time())
                            logger.warning(
                                "Rate limit hit. Waiting %.0fs (attempt %d/%d)",
                                wait,
                                attempt + 1,
                                self.MAX_RETRIES,
                            )
                            await asyncio.sleep(min(wait, self.MAX_BACKOFF))
                            continue
                        raise RateLimitExceeded(reset_dt)
                    raise GitHubClientError(
                        f"GitHub API error 403: {self._error_message(response)}", 403
                    )

                # Secondary rate limit
                if response.status_code == 429:
                    try:
                        retry_after = int(response.headers.get("Retry-After", "60"))
                    except ValueError:
                        retry_after = 60
                    if attempt < self.MAX_RETRIES:
                        logger.warning(
                            "Secondary rate limit. Retry-After: %ds (attempt %d/%d)",
                            retry_after,
                            attempt + 1,
                            self.MAX_RETRIES,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    raise RateLimitExceeded(
                        datetime.fromtimestamp(
                            time.time() + retry_after, tz=timezone.utc
                        ),
                        "Secondary rate limit exceeded",
                    )

                # Client errors (non-retryable)
                if 400 <= response.status_code < 500:
                    raise GitHubClientError(
                        f"GitHub API error {response.status_code}: "
                        f"{self._error_message(response)}",
                        response.status_code,
                    )

                # Server errors (retryable)
                if response.status_code >= 500:
                    if attempt < self.MAX_RETRIES:
                        backoff = min(
                            self.MAX_BACKOFF,
                            self.BASE_BACKOFF ** (attempt + 1),
                        ) + random.uniform(0, 1)
                        logger.warning(
                            "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                            response.status_code,
                            backoff,
                            attempt + 1,
                            self.MAX_RETRIES,
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise GitHubClientError(
                        f"GitHub API server error {response.status_code} after "
                        f"{self.MAX_RETRIES} retries",
                        response.status_code,
                    )

                return response

            except httpx.TimeoutException as e:
                if attempt < self.MAX_RETRIES:
                    backoff = min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1))
                    logger.warning(
                        "Request timeout. Retrying in %.1fs (attempt %d/%d)",
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise GitHubClientError(
                    f"Request timeout after {self.MAX_RETRIES} retries: {e}"
                ) from e

            except httpx.HTTPError as e:
                raise GitHubClientError(f"HTTP error: {e}") from e

        raise GitHubClientError("Request failed after all retries")

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        point_cost: int = 1,
    ) -> Any:
        """Make a single API request and parse the JSON body."""
        response = await self._raw_request(
            method, path, params=params, point_cost=point_cost
        )
        try:
            return response.json()
        except ValueError as e:
            raise GitHubClientError(f"Invalid JSON from {path}: {e}") from e

    async def _paginate(
        self,
        path: str,
        params: dict[str, str] | None = None,
        point_cost: int = 1,
        max_pages: int = 100,
    ) -> list[dict[str, Any]]:
        """Fetch all pages of a list endpoint by following Link headers.

        Args:
            path: API path
            params: Query parameters (per_page is set to 100)
            point_cost: Point cost per page request
            max_pages: Safety cap on pages

        Returns:
            Concatenated list of items across pages
        """
        params = dict(params or {})
        params["per_page"] = str(self.DEFAULT_PER_PAGE)
        results: list[dict[str, Any]] = []
        url: str | None = path
        page_params: dict[str, str] | None = params
        pages = 0

        while url and pages < max_pages:
            response = await self._raw_request(
                "GET", url, params=page_params, point_cost=point_cost
            )
            pages += 1
            try:
                data = response.json()
            except ValueError as e:
                raise GitHubClientError(f"Invalid JSON from {url}: {e}") from e
            if isinstance(data, list):
                results.extend(data)
            elif isinstance(data, dict) and isinstance(data.get("items"), list):
                results.extend(data["items"])

            url = self._parse_next_link(response.headers.get("Link", ""))
            # The next link already carries the query string
            page_params = None

        if url:
            logger.warning(
                "Pagination stopped at %d pages for %s", max_pages, path
            )
        return results

    def _parse_next_link(self, link_header: str) -> str | None:
        """Extract the rel="next" URL from a Link header.

        Only URLs under the configured base URL are followed.
        """
        if not link_header:
            return None
        for part in link_header.split(","):
            match = re.match(r'\s*<([^>]+)>;\s*rel="next"', part)
            if match:
                url = match.group(1)
                if not url.startswith(self.base_url):
                    logger.warning("Ignoring next link outside base URL: %s", url)
                    return None
                return url
        return None
