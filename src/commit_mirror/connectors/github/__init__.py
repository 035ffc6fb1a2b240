"""GitHub integration package.

Provides an async API client for the GitHub REST API v3 with rate limiting,
plus the backfill source that turns commit history into CommitRecords.
"""

from .backfill import BackfillSource
from .client import GitHubClient, GitHubClientError, RateLimitExceeded

__all__ = [
    "BackfillSource",
    "GitHubClient",
    "GitHubClientError",
    "RateLimitExceeded",
]
