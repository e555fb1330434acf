from __future__ import annotations

import random
import time
from typing import Any

import httpx

from src.domain.phone import is_group_jid
from src.domain.provider_errors import classify_provider_message


_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0
_DEFAULT_TIMEOUT_SECONDS = 30.0


class ChatwootProviderError(Exception):
    """Provider-level exception for Chatwoot integration failures."""

    @property
    def category(self) -> str:
        return classify_provider_message(
            str(self),
            terminal_markers=(
                "invalid chatwoot api token",
                "endpoint not found",
                "missing chatwoot",
                "unexpected chatwoot",
                "http 422",
            ),
        )

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _build_base_url(base_url: str | None) -> str:
    if not base_url:
        raise ChatwootProviderError("Missing Chatwoot base URL")
    return base_url.rstrip("/")


def _account_path(account_id: str | int, suffix: str) -> str:
    return f"/api/v1/accounts/{account_id}{suffix}"


def _headers(api_token: str, *, json_body: bool = True) -> dict[str, str]:
    headers = {
        "api_access_token": api_token,
        "Accept": "application/json",
    }
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def _send_once(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    data: dict[str, str] | None = None,
    files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
) -> httpx.Response:
    with httpx.Client(timeout=timeout_seconds) as client:
        return client.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json_payload,
            data=data,
            files=files,
        )


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            response = _send_once(
                method=method,
                url=url,
                headers=headers,
                timeout_seconds=timeout_seconds,
                params=params,
            )
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:200]


def _request_json(
    *,
    method: str,
    path: str,
    base_url: str,
    api_token: str,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    data: dict[str, str] | None = None,
    files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
    allow_not_found: bool = False,
) -> Any:
    if not api_token:
        raise ChatwootProviderError("Missing Chatwoot API token")

    url = f"{_build_base_url(base_url)}{path}"
    try:
        if method == "GET":
            # Reads are idempotent; writes go out once so a retry never duplicates remote rows.
            response = _request_with_retry(
                method=method,
                url=url,
                headers=_headers(api_token),
                timeout_seconds=timeout_seconds,
                params=params,
            )
        else:
            response = _send_once(
                method=method,
                url=url,
                headers=_headers(api_token, json_body=files is None),
                timeout_seconds=timeout_seconds,
                params=params,
                json_payload=json_payload,
                data=data,
                files=files,
            )
    except httpx.HTTPError as exc:
        raise ChatwootProviderError(f"Chatwoot connectivity error: {exc}") from exc

    if response.status_code == 404:
        if allow_not_found:
            return None
        raise ChatwootProviderError(f"Chatwoot endpoint not found: {path}")
    if response.status_code in {401, 403}:
        raise ChatwootProviderError("Invalid Chatwoot API token")
    if response.status_code >= 400:
        raise ChatwootProviderError(
            f"Chatwoot API returned HTTP {response.status_code}: {_error_message(response)}"
        )

    try:
        return response.json()
    except ValueError as exc:
        raise ChatwootProviderError("Chatwoot returned non-JSON response") from exc


def _extract_id(payload: Any, *path: str) -> int:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            node = None
            break
        node = node.get(key)
    if isinstance(node, dict) and node.get("id") is not None:
        return int(node["id"])
    raise ChatwootProviderError(f"Unexpected Chatwoot response shape: missing {'.'.join(path) or 'id'}")


def create_inbox(
    base_url: str,
    account_id: str | int,
    api_token: str,
    name: str,
    webhook_url: str,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> int:
    data = _request_json(
        method="POST",
        path=_account_path(account_id, "/inboxes"),
        base_url=base_url,
        api_token=api_token,
        timeout_seconds=timeout_seconds,
        json_payload={"name": name, "channel": {"type": "api", "webhook_url": webhook_url}},
    )
    return _extract_id(data)


def search_contacts(
    base_url: str,
    account_id: str | int,
    api_token: str,
    query: str,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> list[dict[str, Any]]:
    data = _request_json(
        method="GET",
        path=_account_path(account_id, "/contacts/search"),
        base_url=base_url,
        api_token=api_token,
        timeout_seconds=timeout_seconds,
        params={"q": query},
        allow_not_found=True,
    )
    if data is None:
        return []
    if isinstance(data, dict) and isinstance(data.get("payload"), list):
        return data["payload"]
    raise ChatwootProviderError("Unexpected Chatwoot contact search response shape")


def find_contact_by_phone(
    base_url: str,
    account_id: str | int,
    api_token: str,
    phone: str,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> int | None:
    if not phone.startswith("+"):
        phone = f"+{phone}"
    contacts = search_contacts(base_url, account_id, api_token, phone, timeout_seconds=timeout_seconds)
    for contact in contacts:
        if contact.get("id") is not None:
            return int(contact["id"])
    return None


def create_contact(
    base_url: str,
    account_id: str | int,
    api_token: str,
    inbox_id: int,
    name: str,
    phone: str | None = None,
    identifier: str | None = None,
    avatar_url: str | None = None,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> int:
    payload: dict[str, Any] = {"inbox_id": inbox_id, "name": name}
    if identifier:
        payload["identifier"] = identifier
    if avatar_url:
        payload["avatar_url"] = avatar_url
    # Group addresses are not phone numbers.
    if phone and not is_group_jid(phone):
        payload["phone_number"] = phone if phone.startswith("+") else f"+{phone}"
    data = _request_json(
        method="POST",
        path=_account_path(account_id, "/contacts"),
        base_url=base_url,
        api_token=api_token,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    if isinstance(data, dict) and isinstance(data.get("payload"), dict) and "contact" in data["payload"]:
        return _extract_id(data, "payload", "contact")
    return _extract_id(data, "payload")


def create_conversation(
    base_url: str,
    account_id: str | int,
    api_token: str,
    contact_id: int,
    inbox_id: int,
    source_id: str,
    pending: bool = False,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> int:
    payload: dict[str, Any] = {
        "contact_id": str(contact_id),
        "inbox_id": str(inbox_id),
        "source_id": source_id,
    }
    if pending:
        payload["status"] = "pending"
    data = _request_json(
        method="POST",
        path=_account_path(account_id, "/conversations"),
        base_url=base_url,
        api_token=api_token,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    return _extract_id(data)


def create_message(
    base_url: str,
    account_id: str | int,
    api_token: str,
    conversation_id: int,
    message_type: str,
    content: str,
    source_id: str | None = None,
    private: bool = False,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> int:
    payload: dict[str, Any] = {
        "content": content,
        "message_type": message_type,
        "private": private,
    }
    if source_id:
        payload["source_id"] = source_id
    data = _request_json(
        method="POST",
        path=_account_path(account_id, f"/conversations/{conversation_id}/messages"),
        base_url=base_url,
        api_token=api_token,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )
    return _extract_id(data)


def send_media_message(
    base_url: str,
    account_id: str | int,
    api_token: str,
    conversation_id: int,
    message_type: str,
    file_bytes: bytes,
    file_name: str,
    mime_type: str,
    caption: str | None = None,
    source_id: str | None = None,
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
) -> int:
    form: dict[str, str] = {"message_type": message_type}
    if caption:
        form["content"] = caption
    if source_id:
        form["source_id"] = source_id
    data = _request_json(
        method="POST",
        path=_account_path(account_id, f"/conversations/{conversation_id}/messages"),
        base_url=base_url,
        api_token=api_token,
        timeout_seconds=timeout_seconds,
        data=form,
        files=[("attachments[]", (file_name, file_bytes, mime_type or "application/octet-stream"))],
    )
    return _extract_id(data)
