from __future__ import annotations

import logging
import threading
from typing import Any

from src.bridge.service import BridgeCancelledError, BridgeService
from src.bridge.store import BridgeStore
from src.bridge.whatsapp import ClientRegistry, MessageEvent, WhatsAppClient
from src.delivery.engine import DeliveryEngine, DeliveryTarget
from src.observability import incr_metric, log_event


class EventProcessor:
    """
    Entry point for events raised by a tenant's WhatsApp client.

    Message events go through the bridge first; every event is then dispatched to
    the tenant webhook and the shared queue. A bridge failure is logged here and
    does not stop the dispatch.
    """

    def __init__(
        self,
        *,
        bridge: BridgeService,
        delivery: DeliveryEngine,
        store: BridgeStore,
        clients: ClientRegistry,
    ):
        self.bridge = bridge
        self.delivery = delivery
        self.store = store
        self.clients = clients

    def connect(self, tenant_id: str, client: WhatsAppClient) -> None:
        self.clients.register(tenant_id, client)
        log_event("whatsapp_client_connected", tenant_id=tenant_id)

    def disconnect(self, tenant_id: str) -> None:
        self.clients.unregister(tenant_id)
        log_event("whatsapp_client_disconnected", tenant_id=tenant_id)

    def process_message(
        self,
        tenant_id: str,
        event: MessageEvent,
        raw_event: dict[str, Any],
        cancel: threading.Event | None = None,
    ) -> None:
        wa_client = self.clients.get(tenant_id)
        if wa_client is None:
            incr_metric("bridge.inbound.skipped", reason="no_client")
            log_event("whatsapp_client_missing", level=logging.WARNING, tenant_id=tenant_id, message_id=event.id)
        else:
            try:
                self.bridge.handle_incoming_message(tenant_id, event, wa_client, cancel=cancel)
            except BridgeCancelledError:
                raise
            except Exception as exc:
                log_event(
                    "inbound_bridge_failed",
                    level=logging.ERROR,
                    tenant_id=tenant_id,
                    message_id=event.id,
                    error=str(exc),
                )
        self.dispatch(tenant_id, raw_event)

    def dispatch(self, tenant_id: str, raw_event: dict[str, Any]) -> None:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            log_event("event_dispatch_unknown_tenant", level=logging.WARNING, tenant_id=tenant_id)
            return
        self.delivery.dispatch_event(DeliveryTarget.from_tenant_row(tenant), raw_event)
