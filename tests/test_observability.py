import json
import logging

from src.models.bridge import BridgeConfigResponse, TenantBridgeConfig
from src.observability import incr_metric, log_event, mask_secret, metrics_snapshot, reset_metrics


def test_mask_secret():
    assert mask_secret("cw-token-abcd") == "****abcd"
    assert mask_secret("abc") == "****"
    assert mask_secret("") == ""


def test_log_event_masks_secret_fields(caplog):
    with caplog.at_level(logging.INFO, logger="whatsapp_bridge"):
        log_event("bridge_config_saving", request_id="req-1", tenant_id="t1", api_token="cw-token-abcd")

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        "event": "bridge_config_saving",
        "request_id": "req-1",
        "tenant_id": "t1",
        "api_token": "****abcd",
    }


def test_metrics_counters_with_labels():
    reset_metrics()
    incr_metric("bridge.inbound.skipped", reason="noise")
    incr_metric("bridge.inbound.skipped", reason="noise")
    incr_metric("bridge.outbound.sent", value=3)

    assert metrics_snapshot() == {
        "bridge.inbound.skipped|reason=noise": 2,
        "bridge.outbound.sent": 3,
    }


def test_config_token_never_rendered_in_full():
    config = TenantBridgeConfig(
        tenant_id="t1", account_id="3", api_token="cw-token-abcd", url="https://cw.example"
    )

    assert "cw-token-abcd" not in repr(config)
    assert "cw-token-abcd" not in str(config)
    response = BridgeConfigResponse.from_config(config, "https://bridge.example/chatwoot/webhook/x")
    assert response.token == "****abcd"
