"""Tests for webhook signature checks and push event intake."""

import json

import pytest

from commit_mirror.batch_writer import BatchWriter
from commit_mirror.dedup_cache import DedupCache
from commit_mirror.errors import InvalidEventError
from commit_mirror.receiver import EventReceiver, compute_signature

SECRET = "s3cret"


def _push_body(repository="acme/widgets", commits=None) -> bytes:
    payload = {
        "ref": "refs/heads/main",
        "repository": {"full_name": repository, "name": repository.split("/")[-1]},
        "commits": commits
        if commits is not None
        else [
            {
                "id": "c2",
                "message": "Add spinner",
                "timestamp": "2024-01-02T09:00:00Z",
                "url": f"https://github.com/{repository}/commit/c2",
                "author": {"name": "Dana Developer", "email": "dana@example.com"},
            }
        ],
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def receiver(fake_store):
    writer = BatchWriter(fake_store, DedupCache(fake_store), batch_delay_ms=0)
    return EventReceiver(SECRET, writer, timeout_seconds=1.0)


# -- Signatures -------------------------------------------------------


def test_valid_signature_accepted(receiver):
    body = _push_body()
    assert receiver.verify_signature(body, compute_signature(SECRET, body))


def test_tampered_body_rejected(receiver):
    body = _push_body()
    signature = compute_signature(SECRET, body)
    assert not receiver.verify_signature(body + b" ", signature)


@pytest.mark.parametrize(
    "header",
    [None, "", "sha1=abcdef", "sha256=", "sha256=not-hex-at-all"],
)
def test_missing_or_malformed_signature_rejected(receiver, header):
    assert not receiver.verify_signature(_push_body(), header)


def test_empty_secret_rejects_everything(fake_store):
    receiver = EventReceiver("", BatchWriter(fake_store, DedupCache(fake_store)))
    body = _push_body()
    assert not receiver.verify_signature(body, compute_signature("", body))


def test_bad_signature_returns_401_without_work(receiver, fake_store):
    ack = receiver.on_event(_push_body(), "sha256=" + "0" * 64)
    assert ack.status == 401
    assert not ack.has_work
    assert fake_store.rows == []


# -- Event handling ---------------------------------------------------


def test_ping_is_acknowledged(receiver):
    body = b'{"zen": "Keep it logically awesome."}'
    ack = receiver.on_event(body, compute_signature(SECRET, body), event_type="ping")
    assert ack.status == 200
    assert ack.body["event"] == "ping"
    assert not ack.has_work


def test_other_events_are_ignored(receiver):
    body = b"{}"
    ack = receiver.on_event(body, compute_signature(SECRET, body), event_type="issues")
    assert ack.status == 200
    assert ack.body["ignored"] == "issues"


def test_push_is_accepted_with_commits(receiver):
    body = _push_body()
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    assert ack.status == 202
    assert ack.body == {"accepted": True, "commits": 1, "repository": "acme/widgets"}
    assert ack.repository == "acme/widgets"
    assert [c.identifier for c in ack.commits] == ["c2"]
    assert ack.has_work


def test_push_without_commits_has_no_work(receiver):
    body = _push_body(commits=[])
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    assert ack.status == 202
    assert not ack.has_work


def test_invalid_json_returns_400(receiver):
    body = b"{not json"
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    assert ack.status == 400


def test_missing_repository_returns_400(receiver):
    body = json.dumps({"commits": []}).encode("utf-8")
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    assert ack.status == 400
    assert "repository" in ack.body["error"]


@pytest.mark.parametrize("repository", ["acme/widgets", ["acme/widgets"], 42])
def test_non_object_repository_returns_400(receiver, repository):
    body = json.dumps({"repository": repository, "commits": []}).encode("utf-8")
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    assert ack.status == 400
    assert "repository" in ack.body["error"]


def test_commit_with_string_author_is_dropped(receiver):
    body = _push_body(
        commits=[
            {"id": "bad", "message": "m", "timestamp": "2024-01-02T09:00:00Z", "author": "dana"},
            {"id": "ok1", "message": "m", "timestamp": "2024-01-02T09:00:00Z"},
        ]
    )
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    assert ack.status == 202
    assert [c.identifier for c in ack.commits] == ["ok1"]


def test_malformed_commits_are_dropped():
    body = _push_body(
        commits=[
            {"id": "ok1", "message": "m", "timestamp": "2024-01-02T09:00:00Z"},
            {"message": "no id", "timestamp": "2024-01-02T09:00:00Z"},
        ]
    )
    repository, records = EventReceiver.parse_push_event(body)
    assert repository == "acme/widgets"
    assert [r.identifier for r in records] == ["ok1"]


def test_non_object_payload_is_invalid():
    with pytest.raises(InvalidEventError):
        EventReceiver.parse_push_event(b"[1, 2]")


# -- Processing -------------------------------------------------------


@pytest.mark.asyncio
async def test_process_writes_commits(receiver, fake_store):
    body = _push_body()
    ack = receiver.on_event(body, compute_signature(SECRET, body))

    result = await receiver.process(ack.repository, ack.commits)

    assert result.processed == 1
    assert fake_store.identifiers("widgets") == ["c2"]


@pytest.mark.asyncio
async def test_process_timeout_returns_none(receiver, fake_store):
    fake_store.write_delay = 0.5
    receiver.timeout_seconds = 0.01
    body = _push_body()
    ack = receiver.on_event(body, compute_signature(SECRET, body))

    assert await receiver.process(ack.repository, ack.commits) is None


@pytest.mark.asyncio
async def test_process_failure_is_logged_not_raised(receiver, make_commit):
    async def explode(*args, **kwargs):
        raise RuntimeError("store exploded")

    receiver.writer.write = explode
    assert await receiver.process("acme/widgets", [make_commit()]) is None


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped(receiver, fake_store):
    body = _push_body()
    ack = receiver.on_event(body, compute_signature(SECRET, body))
    await receiver.process(ack.repository, ack.commits)

    again = receiver.on_event(body, compute_signature(SECRET, body))
    result = await receiver.process(again.repository, again.commits)

    assert result.skipped == 1
    assert len(fake_store.rows) == 1
