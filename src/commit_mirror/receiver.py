"""Push event intake.

``EventReceiver.on_event`` is synchronous and cheap: it verifies the
signature, decodes the payload and returns an Ack. The HTTP layer sends the
Ack right away and runs ``process`` afterwards, so the sender's delivery
timeout never depends on record store latency. ``process`` has its own hard
timeout and never retries; a lost event is recovered by the next backfill.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from . import metrics
from .batch_writer import BatchWriter
from .errors import InvalidCommitError, InvalidEventError
from .models import BatchResult, CommitRecord

logger = logging.getLogger("commit_mirror.receiver")

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """X-Hub-Signature-256 value for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


@dataclass
class Ack:
    """Immediate response to an inbound event.

    ``commits`` is non-empty only for an accepted push that still has to be
    handed to ``EventReceiver.process``.
    """

    status: int
    body: dict[str, Any]
    repository: str | None = None
    commits: list[CommitRecord] = field(default_factory=list)

    @property
    def has_work(self) -> bool:
        return self.status == 202 and bool(self.commits)


class EventReceiver:
    """Validates push notifications and hands their commits to the writer.

    Args:
        secret: Shared webhook secret
        writer: Batch writer used for accepted events
        timeout_seconds: Hard limit for the asynchronous write
    """

    def __init__(
        self, secret: str, writer: BatchWriter, timeout_seconds: float = 25.0
    ) -> None:
        self._secret = secret
        self.writer = writer
        self.timeout_seconds = timeout_seconds

    def verify_signature(self, body: bytes, signature_header: str | None) -> bool:
        """Constant-time check of ``sha256=<hex>`` over the raw body."""
        if not self._secret or not signature_header:
            return False
        if not signature_header.startswith(SIGNATURE_PREFIX):
            return False
        expected = compute_signature(self._secret, body)
        return hmac.compare_digest(
            expected.encode("utf-8"), signature_header.strip().encode("utf-8")
        )

    @staticmethod
    def parse_push_event(body: bytes) -> tuple[str, list[CommitRecord]]:
        """Decode a push payload into (repository, records).

        Commits that cannot be normalized are dropped with a warning.

        Raises:
            InvalidEventError: malformed JSON or no repository.full_name
        """
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidEventError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise InvalidEventError("Payload is not a JSON object")

        repo_info = payload.get("repository") or {}
        if not isinstance(repo_info, dict):
            raise InvalidEventError("Payload repository is not an object")
        repository = repo_info.get("full_name")
        if not repository or not isinstance(repository, str):
            raise InvalidEventError("Payload has no repository.full_name")

        raw_commits = payload.get("commits") or []
        if not isinstance(raw_commits, list):
            raise InvalidEventError("Payload commits is not a list")

        records = []
        for raw in raw_commits:
            try:
                records.append(CommitRecord.from_push_commit(repository, raw))
            except InvalidCommitError as e:
                logger.warning(
                    "push_commit_invalid",
                    extra={"repository": repository, "error": str(e)},
                )
        return repository, records

    def on_event(
        self,
        body: bytes,
        signature_header: str | None,
        event_type: str | None = "push",
    ) -> Ack:
        """Validate and decode one delivery. Nothing is written here."""
        if not self.verify_signature(body, signature_header):
            logger.warning(
                "webhook_signature_rejected",
                extra={"event_type": event_type, "has_signature": bool(signature_header)},
            )
            metrics.webhook_events_total.labels(outcome="rejected_signature").inc()
            return Ack(401, {"error": "Invalid signature"})

        if event_type == "ping":
            metrics.webhook_events_total.labels(outcome="ping").inc()
            return Ack(200, {"ok": True, "event": "ping"})

        if event_type and event_type != "push":
            metrics.webhook_events_total.labels(outcome="ignored").inc()
            return Ack(200, {"ok": True, "ignored": event_type})

        try:
            repository, records = self.parse_push_event(body)
        except InvalidEventError as e:
            logger.warning("webhook_payload_invalid", extra={"error": str(e)})
            metrics.webhook_events_total.labels(outcome="invalid").inc()
            return Ack(400, {"error": str(e)})

        metrics.webhook_events_total.labels(outcome="accepted").inc()
        logger.info(
            "webhook_accepted",
            extra={"repository": repository, "commits": len(records)},
        )
        return Ack(
            202,
            {"accepted": True, "commits": len(records), "repository": repository},
            repository=repository,
            commits=records,
        )

    async def process(
        self, repository: str, records: list[CommitRecord]
    ) -> BatchResult | None:
        """Write an accepted push's commits under the hard timeout.

        Returns None when the attempt was abandoned; errors are logged only.
        """
        try:
            return await asyncio.wait_for(
                self.writer.write(records, repository, source="webhook"),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "webhook_write_timeout",
                extra={
                    "repository": repository,
                    "commits": len(records),
                    "timeout_seconds": self.timeout_seconds,
                },
            )
            metrics.webhook_events_total.labels(outcome="timeout").inc()
        except Exception as e:
            logger.error(
                "webhook_write_failed",
                extra={"repository": repository, "error": str(e)},
            )
            metrics.webhook_events_total.labels(outcome="failed").inc()
        return None
