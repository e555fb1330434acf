from __future__ import annotations

from fastapi.testclient import TestClient

from src.auth.dependencies import get_bridge_service, get_bridge_store
from src.bridge.service import BridgeService
from src.bridge.store import BridgeStore, hash_token
from src.bridge.whatsapp import ClientRegistry
from src.main import app
from src.providers.chatwoot import client as chatwoot_client
from src.routers import bridge_config as bridge_config_router
from tests.fakes import FakeChatwoot, FakeSupabase


TOKEN = "tenant-token-1234"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def _setup(monkeypatch, db: FakeSupabase | None = None) -> tuple[FakeSupabase, TestClient]:
    db = db or FakeSupabase({"tenants": [{"id": "tenant-1", "name": "Acme", "token_hash": hash_token(TOKEN)}]})
    store = BridgeStore(db)
    service = BridgeService(store=store, clients=ClientRegistry(), default_inbox_name="WhatsApp Bridge")
    app.dependency_overrides[get_bridge_store] = lambda: store
    app.dependency_overrides[get_bridge_service] = lambda: service
    monkeypatch.setattr(bridge_config_router.settings, "public_base_url", "https://bridge.example")
    return db, TestClient(app)


def _clear():
    app.dependency_overrides.clear()


def _body(**overrides) -> dict:
    body = {
        "account_id": "3",
        "token": "cw-token-abcd",
        "url": "https://cw.example",
        "enabled": True,
    }
    body.update(overrides)
    return body


def test_requires_tenant_token(monkeypatch):
    _, client = _setup(monkeypatch)
    try:
        missing = client.get("/api/bridge/config")
        invalid = client.get("/api/bridge/config", headers={"Authorization": "Bearer wrong"})
    finally:
        _clear()

    assert missing.status_code == 401
    assert invalid.status_code == 401


def test_get_missing_config_is_404(monkeypatch):
    _, client = _setup(monkeypatch)
    try:
        response = client.get("/api/bridge/config", headers=AUTH)
    finally:
        _clear()

    assert response.status_code == 404


def test_put_then_get_masks_token_and_builds_webhook_url(monkeypatch):
    db, client = _setup(monkeypatch)
    try:
        saved = client.put("/api/bridge/config", json=_body(), headers=AUTH)
        fetched = client.get("/api/bridge/config", headers={"Token": TOKEN})
    finally:
        _clear()

    assert saved.status_code == 200
    assert saved.json() == {"status": "success", "message": "Bridge configuration saved successfully"}
    body = fetched.json()
    assert body["token"] == "****abcd"
    assert body["webhook_url"] == f"https://bridge.example/chatwoot/webhook/{TOKEN}"
    assert body["name_inbox"] == "WhatsApp Bridge"
    assert body["sign_delimiter"] == "\\n"
    assert db.tables["bridge_configs"][0]["api_token"] == "cw-token-abcd"


def test_put_requires_account_token_and_url(monkeypatch):
    _, client = _setup(monkeypatch)
    try:
        response = client.put("/api/bridge/config", json=_body(url="   "), headers=AUTH)
    finally:
        _clear()

    assert response.status_code == 400
    assert response.json()["detail"] == "account_id, token, and url are required"


def test_auto_create_provisions_inbox_once(monkeypatch):
    chatwoot = FakeChatwoot().install(monkeypatch, chatwoot_client)
    db, client = _setup(monkeypatch)
    try:
        first = client.put("/api/bridge/config", json=_body(auto_create=True, name_inbox="Support"), headers=AUTH)
        second = client.put("/api/bridge/config", json=_body(auto_create=True, enabled=False), headers=AUTH)
    finally:
        _clear()

    assert first.json()["inbox_id"] == 7
    assert second.json()["inbox_id"] == 7
    assert chatwoot.names() == ["create_inbox", "create_contact"]
    assert chatwoot.calls[0][1] == {
        "name": "Support",
        "webhook_url": f"https://bridge.example/chatwoot/webhook/{TOKEN}",
    }
    bot = chatwoot.calls[1][1]
    assert bot["identifier"] == "123456"
    assert bot["inbox_id"] == 7
    assert len(db.tables["bridge_configs"]) == 1
    assert db.tables["bridge_configs"][0]["enabled"] is False


def test_auto_create_provider_failure_maps_status(monkeypatch):
    def _fail(*_args, **_kwargs):
        raise chatwoot_client.ChatwootProviderError("Invalid Chatwoot API token")

    monkeypatch.setattr(chatwoot_client, "create_inbox", _fail)
    db, client = _setup(monkeypatch)
    try:
        response = client.put("/api/bridge/config", json=_body(auto_create=True), headers=AUTH)
    finally:
        _clear()

    assert response.status_code == 502
    assert response.json()["detail"]["provider"] == "chatwoot"
    assert db.tables.get("bridge_configs", []) == []


def test_bot_contact_failure_is_not_fatal(monkeypatch):
    FakeChatwoot().install(monkeypatch, chatwoot_client)

    def _fail(*_args, **_kwargs):
        raise chatwoot_client.ChatwootProviderError("Chatwoot API returned HTTP 422: identifier taken")

    monkeypatch.setattr(chatwoot_client, "create_contact", _fail)
    _, client = _setup(monkeypatch)
    try:
        response = client.put("/api/bridge/config", json=_body(auto_create=True), headers=AUTH)
    finally:
        _clear()

    assert response.status_code == 200
    assert response.json()["inbox_id"] == 7


def test_delete_config(monkeypatch):
    db, client = _setup(monkeypatch)
    try:
        client.put("/api/bridge/config", json=_body(), headers=AUTH)
        deleted = client.delete("/api/bridge/config", headers=AUTH)
        again = client.delete("/api/bridge/config", headers=AUTH)
    finally:
        _clear()

    assert deleted.status_code == 200
    assert deleted.json()["status"] == "success"
    assert again.status_code == 404
    assert db.tables["bridge_configs"] == []


def test_health_endpoints():
    client = TestClient(app)

    assert client.get("/").json() == {"status": "ok", "service": "whatsapp-bridge"}
    assert client.get("/health").json() == {"status": "healthy"}
