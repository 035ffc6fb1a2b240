"""
Prometheus metrics for commit-mirror.

The webhook server exposes these through /metrics. Backfill runs are
short-lived, so ``push_sync_metrics`` copies a run's totals into a fresh
registry and pushes it to a Pushgateway instead.

Naming: snake_case, commit_mirror_ prefix.
"""

import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    pushadd_to_gateway,
)

logger = logging.getLogger("commit_mirror.metrics")

# ==============================================================================
# COUNTERS
# ==============================================================================

commits_total = Counter(
    "commit_mirror_commits_total",
    "Commit records handled by the batch writer",
    ["source", "status"],
    # source: webhook, backfill, api
    # status: processed, skipped, error
)

webhook_events_total = Counter(
    "commit_mirror_webhook_events_total",
    "Inbound push notifications",
    ["outcome"],
    # outcome: accepted, ping, ignored, rejected_signature, invalid, timeout, failed
)

repository_syncs_total = Counter(
    "commit_mirror_repository_syncs_total",
    "Repository sync attempts",
    ["status"],
    # status: success, failed
)

dedup_refresh_total = Counter(
    "commit_mirror_dedup_refresh_total",
    "Dedup cache lookups",
    ["result"],
    # result: hit, refreshed, incomplete, failed
)

duplicate_rows_total = Counter(
    "commit_mirror_duplicate_rows_total",
    "Duplicate rows handled by the sweep",
    ["result"],
    # result: found, archived, failed
)

# ==============================================================================
# GAUGES / HISTOGRAMS
# ==============================================================================

dedup_cache_repositories = Gauge(
    "commit_mirror_dedup_cache_repositories",
    "Repositories currently held in the dedup cache",
)

sync_duration_seconds = Histogram(
    "commit_mirror_sync_duration_seconds",
    "Duration of one repository sync",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
)


def record_batch(source: str, processed: int, skipped: int, errors: int) -> None:
    """Add a batch's counts to commits_total."""
    if processed:
        commits_total.labels(source=source, status="processed").inc(processed)
    if skipped:
        commits_total.labels(source=source, status="skipped").inc(skipped)
    if errors:
        commits_total.labels(source=source, status="error").inc(errors)


def push_sync_metrics(stats, gateway: str, job: str = "commit_mirror_backfill") -> bool:
    """Push one backfill run's totals to the Pushgateway.

    Failures are logged and never raised; metrics are best effort.

    Args:
        stats: SyncStats of the finished run
        gateway: Pushgateway address (host:port)
        job: Pushgateway job name

    Returns:
        True if the push succeeded.
    """
    try:
        registry = CollectorRegistry()
        items = Gauge(
            "commit_mirror_backfill_commits",
            "Commits handled in the last backfill run",
            ["status"],
            registry=registry,
        )
        items.labels(status="processed").set(stats.processed)
        items.labels(status="skipped").set(stats.skipped)
        items.labels(status="error").set(stats.errors)

        repos = Gauge(
            "commit_mirror_backfill_repositories",
            "Repositories handled in the last backfill run",
            ["status"],
            registry=registry,
        )
        repos.labels(status="success").set(
            stats.repositories - stats.failed_repositories
        )
        repos.labels(status="failed").set(stats.failed_repositories)

        duration = Gauge(
            "commit_mirror_backfill_duration_seconds",
            "Duration of the last backfill run",
            registry=registry,
        )
        duration.set(stats.duration_seconds)

        pushadd_to_gateway(gateway, job=job, registry=registry, timeout=1)
        return True
    except Exception as e:
        logger.warning("metrics_push_failed", extra={"error": str(e), "gateway": gateway})
        return False
