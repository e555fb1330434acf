from __future__ import annotations

import json
import logging
from typing import Any

import redis

from src.models.delivery import DeadLetterRecord
from src.observability import incr_metric, log_event


DEFAULT_MAX_LEN = 10000
DEFAULT_SOCKET_TIMEOUT_SECONDS = 0.5


class QueuePublisher:
    """
    Best-effort publisher to Redis streams.

    Every entry carries a single ``data`` field holding the JSON document. Without
    a Redis client the publisher is disabled and every publish is a logged no-op.
    Publish failures are logged and never raised.
    """

    def __init__(
        self,
        client: redis.Redis | None,
        *,
        event_stream: str = "whatsapp_events",
        error_stream: str = "webhook_errors",
        max_len: int | None = DEFAULT_MAX_LEN,
    ):
        self.client = client
        self.event_stream = event_stream
        self.error_stream = error_stream
        self.max_len = max_len

    @classmethod
    def from_url(
        cls,
        url: str | None,
        *,
        socket_timeout_seconds: float = DEFAULT_SOCKET_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> "QueuePublisher":
        if not url:
            return cls(None, **kwargs)
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client, **kwargs)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def publish(self, stream: str, data: bytes | str) -> str | None:
        if self.client is None:
            log_event("queue_publish_skipped", level=logging.DEBUG, stream=stream, reason="not configured")
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            if self.max_len:
                entry_id = self.client.xadd(stream, {"data": data}, maxlen=self.max_len, approximate=True)
            else:
                entry_id = self.client.xadd(stream, {"data": data})
        except redis.RedisError as exc:
            incr_metric("queue.publish.failed", stream=stream)
            log_event("queue_publish_failed", level=logging.ERROR, stream=stream, error=str(exc))
            return None
        incr_metric("queue.publish.success", stream=stream)
        log_event("queue_published", level=logging.DEBUG, stream=stream, entry_id=entry_id)
        return entry_id

    def publish_event(
        self,
        event: bytes | str | dict[str, Any],
        tenant_id: str,
        instance_name: str = "",
    ) -> str | None:
        if self.client is None:
            log_event("queue_publish_skipped", level=logging.DEBUG, stream=self.event_stream, reason="not configured")
            return None
        if isinstance(event, dict):
            document = dict(event)
        else:
            try:
                document = json.loads(event)
            except ValueError as exc:
                log_event("queue_event_invalid_json", level=logging.ERROR, tenant_id=tenant_id, error=str(exc))
                return None
            if not isinstance(document, dict):
                log_event("queue_event_invalid_json", level=logging.ERROR, tenant_id=tenant_id, error="not an object")
                return None
        document["userID"] = tenant_id
        document["instanceName"] = instance_name
        return self.publish(self.event_stream, json.dumps(document, sort_keys=True))

    def publish_dead_letter(self, record: DeadLetterRecord) -> str | None:
        entry_id = self.publish(self.error_stream, record.to_json_bytes())
        if entry_id is not None:
            log_event("dead_letter_published", stream=self.error_stream, url=record.url, tenant_id=record.user_id)
        return entry_id
