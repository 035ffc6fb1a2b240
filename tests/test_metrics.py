"""Tests for Prometheus metrics helpers."""

from unittest.mock import patch

from prometheus_client import REGISTRY

from commit_mirror import metrics
from commit_mirror.models import BatchResult, RepoSyncResult, SyncStats


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_record_batch_increments_by_status():
    labels = {"source": "tests", "status": "processed"}
    before = _sample("commit_mirror_commits_total", labels)
    skipped_before = _sample("commit_mirror_commits_total", {**labels, "status": "skipped"})

    metrics.record_batch("tests", processed=3, skipped=2, errors=0)

    assert _sample("commit_mirror_commits_total", labels) == before + 3
    assert (
        _sample("commit_mirror_commits_total", {**labels, "status": "skipped"})
        == skipped_before + 2
    )


def test_push_sync_metrics_uses_fresh_registry():
    stats = SyncStats()
    stats.add(RepoSyncResult(repository="acme/a", batch=BatchResult(processed=4)))
    stats.add(RepoSyncResult(repository="acme/b", error="boom"))

    with patch("commit_mirror.metrics.pushadd_to_gateway") as push:
        assert metrics.push_sync_metrics(stats, "localhost:9091") is True

    kwargs = push.call_args.kwargs
    assert push.call_args.args == ("localhost:9091",)
    assert kwargs["job"] == "commit_mirror_backfill"
    registry = kwargs["registry"]
    assert registry is not REGISTRY
    assert (
        registry.get_sample_value("commit_mirror_backfill_commits", {"status": "processed"})
        == 4
    )
    assert (
        registry.get_sample_value("commit_mirror_backfill_repositories", {"status": "failed"})
        == 1
    )


def test_push_failure_is_not_raised():
    with patch(
        "commit_mirror.metrics.pushadd_to_gateway",
        side_effect=ConnectionError("gateway down"),
    ):
        assert metrics.push_sync_metrics(SyncStats(), "localhost:9091") is False
