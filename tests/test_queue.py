from __future__ import annotations

import json
from datetime import datetime, timezone

import redis

from src.delivery.queue import QueuePublisher
from src.models.delivery import DeadLetterRecord


class _FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.entries: list[tuple[str, dict, dict]] = []

    def xadd(self, stream, fields, **kwargs):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.entries.append((stream, fields, kwargs))
        return f"1700000000000-{len(self.entries)}"


def test_publish_event_adds_tenant_fields():
    fake = _FakeRedis()
    publisher = QueuePublisher(fake, event_stream="whatsapp_events")

    entry_id = publisher.publish_event('{"type": "Message"}', "tenant-1", "acme")

    assert entry_id == "1700000000000-1"
    stream, fields, kwargs = fake.entries[0]
    assert stream == "whatsapp_events"
    assert json.loads(fields["data"]) == {"type": "Message", "userID": "tenant-1", "instanceName": "acme"}
    assert kwargs == {"maxlen": 10000, "approximate": True}


def test_invalid_event_json_is_dropped():
    fake = _FakeRedis()

    assert QueuePublisher(fake).publish_event("not json", "tenant-1") is None
    assert QueuePublisher(fake).publish_event("[1, 2]", "tenant-1") is None
    assert fake.entries == []


def test_dead_letter_goes_to_error_stream():
    fake = _FakeRedis()
    publisher = QueuePublisher(fake, error_stream="webhook_errors")
    record = DeadLetterRecord(
        url="https://hooks.example",
        payload={"a": "1"},
        user_id="tenant-1",
        attempt_time=datetime(2026, 1, 1, tzinfo=timezone.utc),
        error_message="unexpected status code: 500",
    )

    publisher.publish_dead_letter(record)

    stream, fields, _ = fake.entries[0]
    assert stream == "webhook_errors"
    assert json.loads(fields["data"])["userID"] == "tenant-1"


def test_unconfigured_and_failing_queue_never_raise():
    assert QueuePublisher.from_url(None).enabled is False
    assert QueuePublisher(None).publish("whatsapp_events", b"{}") is None
    assert QueuePublisher(_FakeRedis(fail=True)).publish("whatsapp_events", b"{}") is None


def test_from_url_sets_short_socket_timeouts(monkeypatch):
    captured: dict = {}

    def _from_url(url, **kwargs):
        captured.update(kwargs, url=url)
        return _FakeRedis()

    monkeypatch.setattr(redis, "from_url", _from_url)

    publisher = QueuePublisher.from_url("redis://cache:6379/0", socket_timeout_seconds=0.25, error_stream="errs")

    assert publisher.enabled
    assert publisher.error_stream == "errs"
    assert captured == {
        "url": "redis://cache:6379/0",
        "decode_responses": True,
        "socket_connect_timeout": 0.25,
        "socket_timeout": 0.25,
    }


def test_from_url_without_url_is_disabled():
    assert QueuePublisher.from_url(None).enabled is False
