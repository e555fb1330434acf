from __future__ import annotations

import threading

import pytest
from fastapi.testclient import TestClient

from src.auth.dependencies import get_bridge_service
from src.bridge.service import BridgeCancelledError, BridgeService, WebhookResult
from src.bridge.store import BridgeStore, hash_token
from src.bridge.whatsapp import ClientRegistry, MessageContent, MessageEvent
from src.main import app
from src.providers.chatwoot import client as chatwoot_client
from tests.fakes import FakeChatwoot, FakeSupabase, FakeWhatsAppClient


TOKEN = "tenant-token-1234"
CHAT = "5511999999999@s.whatsapp.net"


def _db(**config_overrides) -> FakeSupabase:
    config = {
        "tenant_id": "tenant-1",
        "account_id": "3",
        "api_token": "cw-token-abcd",
        "url": "https://cw.example",
        "inbox_id": 7,
        "enabled": True,
        "sign_delimiter": "\\n",
    }
    config.update(config_overrides)
    return FakeSupabase({
        "tenants": [{"id": "tenant-1", "name": "Acme", "token_hash": hash_token(TOKEN)}],
        "bridge_configs": [config],
    })


def _setup(db: FakeSupabase, wa_client: FakeWhatsAppClient | None = None) -> tuple[BridgeService, TestClient]:
    registry = ClientRegistry()
    if wa_client is not None:
        registry.register("tenant-1", wa_client)
    service = BridgeService(store=BridgeStore(db), clients=registry)
    app.dependency_overrides[get_bridge_service] = lambda: service
    return service, TestClient(app)


def _clear():
    app.dependency_overrides.clear()


def _payload(**overrides) -> dict:
    payload = {
        "event": "message_created",
        "message_type": "outgoing",
        "id": 901,
        "content": "Hi from support",
        "private": False,
        "conversation": {
            "id": 501,
            "meta": {"sender": {"id": 12, "identifier": CHAT, "phone_number": "+5511999999999"}},
            "messages": [{"id": 901, "source_id": None, "attachments": []}],
        },
        "inbox": {"id": 7},
        "sender": {"name": "Ana Agent", "available_name": "Ana"},
    }
    payload.update(overrides)
    return payload


def test_text_is_sent_and_mapping_persisted():
    db = _db()
    wa_client = FakeWhatsAppClient()
    service, client = _setup(db, wa_client)
    try:
        response = client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
    finally:
        _clear()

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert response.headers["X-Request-ID"]
    assert len(wa_client.sent) == 1
    address, content = wa_client.sent[0]
    assert address == CHAT
    assert content.text == "Hi from support"
    assert content.media_url is None
    assert db.tables["bridge_conversations"][0]["conversation_id"] == 501
    assert service.dedup.seen("3EB0SENT1")


def test_query_token_route_is_accepted():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(), wa_client)
    try:
        response = client.post(f"/chatwoot/webhook?token={TOKEN}", json=_payload())
    finally:
        _clear()

    assert response.status_code == 200
    assert len(wa_client.sent) == 1


def test_unknown_or_missing_token_is_unauthorized():
    _, client = _setup(_db(), FakeWhatsAppClient())
    try:
        unknown = client.post("/chatwoot/webhook/nope", json=_payload())
        missing = client.post("/chatwoot/webhook", json=_payload())
    finally:
        _clear()

    assert unknown.status_code == 401
    assert "error" in unknown.json()
    assert missing.status_code == 401


def test_malformed_body_is_bad_request():
    _, client = _setup(_db(), FakeWhatsAppClient())
    try:
        response = client.post(
            f"/chatwoot/webhook/{TOKEN}",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
    finally:
        _clear()

    assert response.status_code == 400
    assert response.json() == {"error": "invalid payload"}


def test_non_actionable_events_are_ignored():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(), wa_client)
    try:
        results = [
            client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload(event="conversation_updated")).json(),
            client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload(message_type="incoming")).json(),
            client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload(private=True)).json(),
        ]
    finally:
        _clear()

    assert [r["reason"] for r in results] == ["not message_created", "not outgoing", "private note"]
    assert all(r["status"] == "ignored" for r in results)
    assert wa_client.sent == []


def test_loop_prevention_ignores_bridge_created_message():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(), wa_client)
    payload = _payload()
    payload["conversation"]["messages"] = [{"id": 901, "source_id": "WAID:3EB0AAA"}]
    try:
        response = client.post(f"/chatwoot/webhook/{TOKEN}", json=payload)
    finally:
        _clear()

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "reason": "loop prevention"}
    assert wa_client.sent == []


def test_missing_destination_is_bad_request():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(), wa_client)
    payload = _payload()
    payload["conversation"]["meta"]["sender"] = {"id": 12}
    try:
        response = client.post(f"/chatwoot/webhook/{TOKEN}", json=payload)
    finally:
        _clear()

    assert response.status_code == 400
    assert response.json() == {"error": "no destination"}
    assert wa_client.sent == []


def test_phone_number_fallback_destination():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(), wa_client)
    payload = _payload()
    payload["conversation"]["meta"]["sender"] = {"id": 12, "phone_number": "+5511988887777"}
    try:
        response = client.post(f"/chatwoot/webhook/{TOKEN}", json=payload)
    finally:
        _clear()

    assert response.status_code == 200
    assert wa_client.sent[0][0] == "5511988887777@s.whatsapp.net"


def test_whatsapp_unavailability_is_503_but_mapping_kept():
    db = _db()
    cases = [
        (None, "whatsapp client not ready"),
        (FakeWhatsAppClient(logged_in=False), "whatsapp not logged in"),
        (FakeWhatsAppClient(connected=False), "whatsapp disconnected"),
    ]
    for wa_client, message in cases:
        _, client = _setup(db, wa_client)
        try:
            response = client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
        finally:
            _clear()
        assert response.status_code == 503
        assert response.json() == {"error": message}

    assert db.tables["bridge_conversations"][0]["conversation_id"] == 501


def test_send_failure_is_500():
    wa_client = FakeWhatsAppClient()
    wa_client.fail_send = True
    _, client = _setup(_db(), wa_client)
    try:
        response = client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
    finally:
        _clear()

    assert response.status_code == 500
    assert response.json() == {"error": "failed to send message"}


def test_attachments_sent_as_media_with_caption_fallback():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(), wa_client)
    payload = _payload(content=None)
    payload["conversation"]["messages"] = [{
        "id": 901,
        "attachments": [
            {"data_url": "https://cw.example/a.png", "file_type": "image"},
            {"data_url": "https://cw.example/b.pdf", "file_type": "file"},
        ],
    }]
    try:
        response = client.post(f"/chatwoot/webhook/{TOKEN}", json=payload)
    finally:
        _clear()

    assert response.status_code == 200
    assert [(c.media_url, c.media_type, c.text) for _, c in wa_client.sent] == [
        ("https://cw.example/a.png", "image", "https://cw.example/a.png"),
        ("https://cw.example/b.pdf", "file", "https://cw.example/b.pdf"),
    ]


def test_agent_signature_prefix():
    wa_client = FakeWhatsAppClient()
    _, client = _setup(_db(sign_msg=True), wa_client)
    try:
        client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
    finally:
        _clear()

    assert wa_client.sent[0][1].text == "*Ana*\nHi from support"


def test_sent_message_echo_is_not_reprocessed(monkeypatch):
    chatwoot = FakeChatwoot().install(monkeypatch, chatwoot_client)
    wa_client = FakeWhatsAppClient()
    service, client = _setup(_db(), wa_client)
    try:
        client.post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
    finally:
        _clear()

    echo = MessageEvent(
        id="3EB0SENT1",
        chat=CHAT,
        sender=CHAT,
        is_from_me=True,
        message=MessageContent(conversation="Hi from support"),
    )
    service.handle_incoming_message("tenant-1", echo, wa_client)

    assert chatwoot.calls == []


class _RecordingBridge:
    def __init__(self, error: Exception | None = None):
        self.cancels: list[threading.Event | None] = []
        self.error = error

    def handle_outgoing_webhook(self, tenant_token, payload, cancel=None, request_id=None):
        self.cancels.append(cancel)
        if self.error:
            raise self.error
        return WebhookResult(200, {"status": "ignored", "reason": "recorded"})


def test_route_hands_a_cancel_event_to_the_bridge():
    bridge = _RecordingBridge()
    app.dependency_overrides[get_bridge_service] = lambda: bridge
    try:
        response = TestClient(app).post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
    finally:
        _clear()

    assert response.status_code == 200
    assert isinstance(bridge.cancels[0], threading.Event)
    assert not bridge.cancels[0].is_set()


def test_cancelled_webhook_returns_client_closed_request():
    app.dependency_overrides[get_bridge_service] = lambda: _RecordingBridge(BridgeCancelledError("cancelled"))
    try:
        response = TestClient(app).post(f"/chatwoot/webhook/{TOKEN}", json=_payload())
    finally:
        _clear()

    assert response.status_code == 499
    assert response.json() == {"error": "request cancelled"}


def test_cancelled_send_stops_before_whatsapp():
    wa_client = FakeWhatsAppClient()
    service, _ = _setup(_db(), wa_client)
    _clear()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(BridgeCancelledError):
        service.handle_outgoing_webhook(TOKEN, _payload(), cancel=cancel)

    assert wa_client.sent == []
