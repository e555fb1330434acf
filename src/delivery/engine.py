from __future__ import annotations

import hashlib
import hmac
import json
import logging
import mimetypes
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from src.delivery.queue import QueuePublisher
from src.delivery.vault import CredentialDecryptionError, CredentialVault
from src.models.delivery import DeadLetterRecord
from src.observability import incr_metric, log_event


SIGNATURE_HEADER = "x-hmac-signature"


class DeliveryMode(str, Enum):
    FORM = "form"
    JSON = "json"


@dataclass(frozen=True)
class DeliverySettings:
    retry_enabled: bool = False
    retry_count: int = 3
    retry_delay_seconds: float = 5.0
    mode: DeliveryMode = DeliveryMode.FORM
    timeout_seconds: float = 30.0

    @property
    def max_attempts(self) -> int:
        if not self.retry_enabled:
            return 1
        return max(1, self.retry_count)

    @classmethod
    def from_settings(cls, settings: Any) -> "DeliverySettings":
        return cls(
            retry_enabled=settings.webhook_retry_enabled,
            retry_count=settings.webhook_retry_count,
            retry_delay_seconds=settings.webhook_retry_delay_seconds,
            mode=DeliveryMode(settings.webhook_format.strip().lower() or DeliveryMode.FORM.value),
            timeout_seconds=settings.webhook_timeout_seconds,
        )


def _decode_key_column(value: Any) -> bytes | None:
    # bytea comes back from PostgREST as "\x<hex>".
    if not value:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith("\\x"):
        text = text[2:]
    return bytes.fromhex(text)


@dataclass(frozen=True)
class DeliveryTarget:
    tenant_id: str
    instance_name: str = ""
    webhook_url: str | None = None
    encrypted_hmac_key: bytes | None = None

    @classmethod
    def from_tenant_row(cls, row: dict[str, Any]) -> "DeliveryTarget":
        return cls(
            tenant_id=str(row["id"]),
            instance_name=row.get("name") or "",
            webhook_url=row.get("webhook_url") or None,
            encrypted_hmac_key=_decode_key_column(row.get("hmac_key_encrypted")),
        )


def sign_payload(body: bytes, key: str) -> str:
    return hmac.new(key.encode("utf-8"), body, hashlib.sha256).hexdigest()


def canonical_json(document: Any) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class DeliveryEngine:
    """
    Signed, retried HTTP delivery of events to tenant webhooks.

    A delivery makes ``settings.max_attempts`` attempts at most, sleeping
    ``retry_delay_seconds * 2 ** (n - 1)`` between attempt n and n + 1. Any
    non-2xx response (redirects included) or transport error fails the attempt.
    When every attempt fails a DeadLetterRecord goes to the publisher; nothing is
    raised to the caller.
    """

    def __init__(
        self,
        settings: DeliverySettings,
        *,
        vault: CredentialVault | None = None,
        publisher: QueuePublisher | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.vault = vault
        self.publisher = publisher or QueuePublisher(None)
        self.transport = transport
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return self.settings.retry_delay_seconds * (2 ** (attempt - 1))

    def _signature(self, body: bytes, target: DeliveryTarget) -> str | None:
        if not target.encrypted_hmac_key:
            return None
        if self.vault is None:
            log_event("webhook_signing_unavailable", level=logging.WARNING, tenant_id=target.tenant_id)
            return None
        try:
            key = self.vault.decrypt(target.encrypted_hmac_key)
        except CredentialDecryptionError as exc:
            log_event("webhook_signing_failed", level=logging.ERROR, tenant_id=target.tenant_id, error=str(exc))
            return None
        return sign_payload(body, key)

    def render(self, payload: dict[str, str], target: DeliveryTarget) -> tuple[bytes, str, dict[str, Any]]:
        """Return the exact request body, its content type and the document it encodes."""
        if self.settings.mode is DeliveryMode.JSON:
            document: dict[str, Any] = dict(payload)
            raw = payload.get("jsonData")
            if raw is not None:
                try:
                    parsed = json.loads(raw)
                except ValueError:
                    parsed = None
                if isinstance(parsed, dict):
                    document = parsed
                    if "instanceName" in payload:
                        document["instanceName"] = payload["instanceName"]
            document["userID"] = target.tenant_id
            return canonical_json(document), "application/json", document

        body = urlencode(sorted(payload.items())).encode("utf-8")
        return body, "application/x-www-form-urlencoded", dict(payload)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.settings.timeout_seconds, transport=self.transport)

    def _attempt_loop(
        self,
        url: str,
        target: DeliveryTarget,
        send: Callable[[httpx.Client], httpx.Response],
        kind: str,
    ) -> str | None:
        """Run the attempts; return None on success, else the last error message."""
        last_error: str | None = None
        max_attempts = self.settings.max_attempts
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = self.backoff_delay(attempt - 1)
                log_event(
                    "webhook_retrying",
                    level=logging.WARNING,
                    kind=kind,
                    url=url,
                    tenant_id=target.tenant_id,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                self._sleep(delay)

            incr_metric("delivery.attempt", kind=kind)
            try:
                with self._client() as client:
                    response = send(client)
            except (httpx.HTTPError, OSError) as exc:
                last_error = str(exc) or exc.__class__.__name__
                log_event(
                    "webhook_transport_error",
                    level=logging.ERROR,
                    kind=kind,
                    url=url,
                    tenant_id=target.tenant_id,
                    attempt=attempt,
                    error=last_error,
                )
                continue

            if 200 <= response.status_code < 300:
                incr_metric("delivery.success", kind=kind)
                log_event(
                    "webhook_delivered",
                    kind=kind,
                    url=url,
                    tenant_id=target.tenant_id,
                    status_code=response.status_code,
                    attempt=attempt,
                )
                return None

            last_error = f"unexpected status code: {response.status_code}. Body: {response.text[:500]}"
            log_event(
                "webhook_non_2xx",
                level=logging.ERROR,
                kind=kind,
                url=url,
                tenant_id=target.tenant_id,
                status_code=response.status_code,
                attempt=attempt,
            )
            if not self.settings.retry_enabled:
                break
        return last_error or "delivery failed"

    def _dead_letter(
        self,
        url: str,
        document: dict[str, Any],
        target: DeliveryTarget,
        error_message: str,
        file_path: str | None = None,
    ) -> None:
        incr_metric("delivery.dead_letter", kind="file" if file_path else "data")
        log_event(
            "webhook_permanently_failed",
            level=logging.ERROR,
            url=url,
            tenant_id=target.tenant_id,
            file_path=file_path,
            error=error_message,
        )
        record = DeadLetterRecord(
            url=url,
            payload=document,
            user_id=target.tenant_id,
            encrypted_hmac_key=(target.encrypted_hmac_key or b"").hex(),
            file_path=file_path,
            attempt_time=datetime.now(timezone.utc),
            error_message=error_message,
        )
        try:
            self.publisher.publish_dead_letter(record)
        except Exception as exc:
            log_event("dead_letter_publish_failed", level=logging.ERROR, url=url, error=str(exc))

    def deliver(self, url: str, payload: dict[str, str], target: DeliveryTarget) -> bool:
        body, content_type, document = self.render(payload, target)
        headers = {"Content-Type": content_type}
        signature = self._signature(body, target)
        if signature:
            headers[SIGNATURE_HEADER] = signature

        log_event("webhook_sending", url=url, tenant_id=target.tenant_id, mode=self.settings.mode.value)
        error = self._attempt_loop(
            url,
            target,
            lambda client: client.post(url, content=body, headers=headers),
            kind="data",
        )
        if error is None:
            return True
        self._dead_letter(url, document, target, error)
        return False

    def deliver_file(
        self,
        url: str,
        payload: dict[str, str],
        target: DeliveryTarget,
        file_path: str,
    ) -> bool:
        fields = {**payload, "file": file_path}
        headers: dict[str, str] = {}
        # Signed over the field map only; the file content is not covered.
        signature = self._signature(canonical_json(fields), target)
        if signature:
            headers[SIGNATURE_HEADER] = signature
        mime_type = mimetypes.guess_type(file_path)[0] or "application/octet-stream"

        def _send(client: httpx.Client) -> httpx.Response:
            with open(file_path, "rb") as handle:
                return client.post(
                    url,
                    data=fields,
                    files={"file": (os.path.basename(file_path), handle, mime_type)},
                    headers=headers,
                )

        log_event("webhook_file_sending", url=url, tenant_id=target.tenant_id, file_path=file_path)
        error = self._attempt_loop(url, target, _send, kind="file")
        if error is None:
            return True
        self._dead_letter(url, dict(fields), target, error, file_path=file_path)
        return False

    def dispatch_event(self, target: DeliveryTarget, event: dict[str, Any]) -> None:
        """Fan a WhatsApp-originated event out to the tenant webhook and the shared queue."""
        json_data = json.dumps(event, sort_keys=True)
        if target.webhook_url:
            self.deliver(
                target.webhook_url,
                {"jsonData": json_data, "instanceName": target.instance_name},
                target,
            )
        else:
            log_event("webhook_not_configured", level=logging.DEBUG, tenant_id=target.tenant_id)
        self.publisher.publish_event(json_data, target.tenant_id, target.instance_name)
