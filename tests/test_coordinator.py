"""Tests for multi-repository sync orchestration."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from commit_mirror.batch_writer import BatchWriter
from commit_mirror.connectors.github.client import GitHubClientError, RateLimitExceeded
from commit_mirror.coordinator import SyncCoordinator, subtract_months
from commit_mirror.dedup_cache import DedupCache
from commit_mirror.models import SyncMode
from fakes import FakeSource

NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


def _make_coordinator(store, source, **kwargs) -> SyncCoordinator:
    writer = BatchWriter(store, DedupCache(store), batch_delay_ms=0)
    defaults = {
        "repo_delay_ms": 0,
        "batch_delay_ms": 0,
        "rate_limit_max_wait": 0,
        "now": lambda: NOW,
    }
    defaults.update(kwargs)
    return SyncCoordinator(source, store, writer, **defaults)


# -- Window arithmetic ------------------------------------------------


def test_subtract_months_simple():
    assert subtract_months(NOW, 6) == datetime(2023, 7, 3, 12, 0, tzinfo=timezone.utc)


def test_subtract_months_clamps_day():
    moment = datetime(2024, 3, 31, tzinfo=timezone.utc)
    assert subtract_months(moment, 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)


def test_subtract_months_across_years():
    assert subtract_months(NOW, 72).year == 2018


@pytest.mark.asyncio
async def test_fixed_window_starts_months_ago(fake_store):
    coordinator = _make_coordinator(fake_store, FakeSource())
    since = await coordinator.window_start("acme/widgets", SyncMode.fixed_window(3))
    assert since == datetime(2023, 10, 3, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_incremental_without_cursor_uses_fallback(fake_store):
    coordinator = _make_coordinator(fake_store, FakeSource(), fallback_days=7)
    since = await coordinator.window_start("acme/widgets", SyncMode.incremental())
    assert since == NOW - timedelta(days=7)


@pytest.mark.asyncio
async def test_incremental_applies_overlap_to_cursor(fake_store):
    stored = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    fake_store.seed("widgets", "old", stored, identifier="old")
    coordinator = _make_coordinator(fake_store, FakeSource(), overlap_days=1)
    since = await coordinator.window_start("acme/widgets", SyncMode.incremental())
    assert since == datetime(2023, 12, 31, 10, 0, tzinfo=timezone.utc)


# -- Incremental completeness ----------------------------------------


@pytest.mark.asyncio
async def test_incremental_sync_stores_only_new_commit(fake_store, make_commit):
    stored_at = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    fake_store.seed("widgets", "Initial commit", stored_at, identifier="c1")
    source = FakeSource(
        {
            "acme/widgets": [
                make_commit(identifier="c1", message="Initial commit", timestamp=stored_at),
                make_commit(
                    identifier="c2",
                    message="Add spinner",
                    timestamp=datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc),
                ),
            ]
        }
    )
    coordinator = _make_coordinator(fake_store, source)

    stats = await coordinator.sync_repositories(["acme/widgets"], SyncMode.incremental())

    assert source.calls == [
        ("acme/widgets", datetime(2023, 12, 31, 10, 0, tzinfo=timezone.utc))
    ]
    assert (stats.processed, stats.skipped, stats.errors) == (1, 1, 0)
    assert sorted(fake_store.identifiers("widgets")) == ["c1", "c2"]


@pytest.mark.asyncio
async def test_rerunning_sync_is_idempotent(fake_store, make_commit):
    source = FakeSource({"acme/widgets": [make_commit(identifier="c1")]})
    coordinator = _make_coordinator(fake_store, source)

    first = await coordinator.sync_repositories(["acme/widgets"], SyncMode.fixed_window(1))
    second = await coordinator.sync_repositories(["acme/widgets"], SyncMode.fixed_window(1))

    assert first.processed == 1
    assert second.processed == 0
    assert second.skipped == 1
    assert len(fake_store.rows) == 1


# -- Failure isolation ------------------------------------------------


@pytest.mark.asyncio
async def test_failing_repository_does_not_affect_others(fake_store, make_commit):
    source = FakeSource(
        {
            "acme/a": [make_commit(identifier="a1", repository="acme/a")],
            "acme/c": [make_commit(identifier="c1", repository="acme/c")],
        }
    )
    source.failures["acme/b"] = GitHubClientError("GitHub API error 500", 500)
    coordinator = _make_coordinator(fake_store, source)

    stats = await coordinator.sync_repositories(
        ["acme/a", "acme/b", "acme/c"], SyncMode.fixed_window(1)
    )

    assert stats.repositories == 3
    assert stats.failed_repositories == 1
    assert stats.processed == 2
    failed = [r for r in stats.results if r.failed]
    assert failed[0].repository == "acme/b"
    assert failed[0].commits_fetched == 0


@pytest.mark.asyncio
async def test_unexpected_crash_is_isolated(fake_store, make_commit):
    source = FakeSource({"acme/a": [make_commit(identifier="a1", repository="acme/a")]})
    coordinator = _make_coordinator(fake_store, source)
    original = coordinator.sync_repository

    async def flaky(repository, mode, stats=None):
        if repository == "acme/b":
            raise RuntimeError("boom")
        return await original(repository, mode, stats)

    coordinator.sync_repository = flaky
    stats = await coordinator.sync_repositories(["acme/a", "acme/b"], SyncMode.fixed_window(1))

    assert stats.processed == 1
    assert stats.failed_repositories == 1


@pytest.mark.asyncio
async def test_cursor_failure_marks_repository_failed(fake_store):
    coordinator = _make_coordinator(fake_store, FakeSource())
    with patch.object(
        fake_store,
        "latest_commit_timestamp",
        new=AsyncMock(side_effect=ConnectionError("notion down")),
    ):
        stats = await coordinator.sync_repositories(["acme/a"], SyncMode.incremental())
    assert stats.failed_repositories == 1
    assert "notion down" in stats.results[0].error


# -- Rate limits ------------------------------------------------------


@pytest.mark.asyncio
async def test_rate_limited_fetch_is_retried(fake_store, make_commit):
    source = FakeSource({"acme/a": [make_commit(identifier="a1", repository="acme/a")]})
    source.failures["acme/a"] = [RateLimitExceeded(NOW + timedelta(seconds=30))]
    coordinator = _make_coordinator(fake_store, source, rate_limit_retries=2)

    stats = await coordinator.sync_repositories(["acme/a"], SyncMode.fixed_window(1))

    assert len(source.calls) == 2
    assert stats.processed == 1
    assert stats.failed_repositories == 0


@pytest.mark.asyncio
async def test_rate_limit_retries_exhausted(fake_store):
    source = FakeSource()
    source.failures["acme/a"] = [
        RateLimitExceeded(NOW),
        RateLimitExceeded(NOW),
        RateLimitExceeded(NOW),
    ]
    coordinator = _make_coordinator(fake_store, source, rate_limit_retries=1)

    stats = await coordinator.sync_repositories(["acme/a"], SyncMode.fixed_window(1))

    assert len(source.calls) == 2
    assert stats.failed_repositories == 1


# -- Chunking and slicing --------------------------------------------


@pytest.mark.asyncio
async def test_repositories_processed_in_chunks_with_delays(fake_store):
    coordinator = _make_coordinator(
        fake_store, FakeSource(), repo_concurrency=2, repo_delay_ms=300
    )
    with patch("commit_mirror.coordinator.asyncio.sleep", new=AsyncMock()) as sleep:
        stats = await coordinator.sync_repositories(
            ["acme/a", "acme/b", "acme/c", "acme/d", "acme/e"], SyncMode.fixed_window(1)
        )
    # 3 chunks, 2 pauses
    assert sleep.await_count == 2
    assert stats.delays == 2
    assert stats.delay_seconds == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_duplicate_repository_names_synced_once(fake_store):
    source = FakeSource()
    coordinator = _make_coordinator(fake_store, source)
    stats = await coordinator.sync_repositories(["acme/a", "acme/a"], SyncMode.fixed_window(1))
    assert stats.repositories == 1
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_commits_written_in_slices(fake_store, make_commit):
    commits = [
        make_commit(identifier=f"s{i}", timestamp=NOW - timedelta(hours=i)) for i in range(5)
    ]
    coordinator = _make_coordinator(fake_store, FakeSource({"acme/widgets": commits}), batch_size=2)

    with patch.object(
        coordinator.writer, "write", wraps=coordinator.writer.write
    ) as write:
        stats = await coordinator.sync_repositories(["acme/widgets"], SyncMode.fixed_window(1))

    assert [len(call.args[0]) for call in write.call_args_list] == [2, 2, 1]
    assert stats.processed == 5
