"""Shared pytest fixtures for commit-mirror tests.

Fixture Organization:
    - Environment: configuration isolation between tests
    - Sample data: commit record factories
    - Fakes: in-memory record store standing in for Notion
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

from commit_mirror.config import reset_config
from commit_mirror.models import CommitRecord

# Make tests/fakes.py importable from nested test directories
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from fakes import FakeRecordStore  # noqa: E402


# =============================================================================
# Environment
# =============================================================================

_ENV_VARS = (
    "GITHUB_TOKEN",
    "GITHUB_OWNER",
    "GITHUB_REPOS",
    "NOTION_API_KEY",
    "NOTION_DATABASE_ID",
    "WEBHOOK_SECRET",
    "COMMIT_API_KEY",
    "PUSHGATEWAY_ENABLED",
    "LEGACY_TIMEZONE",
    "IDENTIFIER_ONLY_LARGE_BATCHES",
)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep real environment variables and .env files out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    yield
    reset_config()


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def make_commit():
    """Factory for CommitRecords with sensible defaults."""

    def _make(
        identifier: str = "a1b2c3d",
        message: str = "Fix widget alignment",
        timestamp: datetime | None = None,
        repository: str = "acme/widgets",
    ) -> CommitRecord:
        return CommitRecord(
            identifier=identifier,
            message=message,
            author_name="Dana Developer",
            author_email="dana@example.com",
            timestamp=timestamp or datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc),
            repository=repository,
            url=f"https://github.com/{repository}/commit/{identifier}",
        )

    return _make


# =============================================================================
# Fakes
# =============================================================================


@pytest.fixture
def fake_store():
    """In-memory record store with the identifier column present."""
    return FakeRecordStore()
